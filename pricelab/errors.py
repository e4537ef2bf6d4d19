"""Error taxonomy for the experiment engine.

Not-found and validation failures are kept apart so callers can tell a stale
reference from bad input. Benign no-ops (excluded visitor, duplicate outcome)
are not errors and never raise.
"""
from typing import Optional


class ExperimentError(Exception):
    """Base class for experiment engine errors."""


class ExperimentNotFoundError(ExperimentError):
    def __init__(self, experiment_id):
        self.experiment_id = experiment_id
        super().__init__(f"Experiment not found: {experiment_id}")


class ExperimentValidationError(ExperimentError, ValueError):
    """Rejected input. Nothing was written."""


class InvalidTransitionError(ExperimentValidationError):
    """A status change (or delete) that the current status does not allow."""

    def __init__(
        self,
        experiment_id,
        current: str,
        requested: str,
        message: Optional[str] = None,
        target: Optional[str] = None,
    ):
        self.experiment_id = experiment_id
        self.current = current
        self.requested = requested
        self.target = target
        if message is None:
            message = f"Cannot {requested} experiment {experiment_id}: status is {current}"
            if target is not None:
                message += f", cannot move to {target}"
        super().__init__(message)
