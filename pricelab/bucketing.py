"""Visitor bucketing and outcome recording.

Nothing here raises for the everyday "no" answers: an experiment that is not
running, a visitor outside the traffic allocation, or a duplicate conversion
all come back as None so the caller can fall back to the regular price.
"""
import random
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import ExperimentNotFoundError, ExperimentValidationError
from .logger import get_logger
from .models import Assignment, ExperimentStatus
from .store import ExperimentStore

logger = get_logger(__name__)


@dataclass
class VisitorAssignment:
    """The bucket a visitor was placed in."""
    variant_id: int
    price_cents: int
    created: bool = False  # True only for the call that inserted the row

    def to_dict(self) -> Dict:
        return {
            "assigned": True,
            "variant_id": self.variant_id,
            "price_cents": self.price_cents,
        }


class Bucketer:
    def __init__(self, store: ExperimentStore, rng=None):
        """
        store: the ExperimentStore holding experiments and assignments
        rng: randomness source exposing random() -> float in [0, 1).
             Defaults to random.SystemRandom(); tests pass a scripted one.
        """
        self.store = store
        self.rng = rng or random.SystemRandom()

    def assign_visitor(self, experiment_id: int, visitor_id: str) -> Optional[VisitorAssignment]:
        try:
            experiment = self.store.get_experiment(experiment_id)
        except ExperimentNotFoundError:
            logger.debug("Assign %s: experiment %s not found", visitor_id, experiment_id)
            return None

        if experiment.status != ExperimentStatus.RUNNING or not experiment.variants:
            logger.debug(
                "Assign %s: experiment %s is %s, not bucketing",
                visitor_id, experiment_id, experiment.status.value,
            )
            return None

        existing = self.store.get_assignment(experiment_id, visitor_id)
        if existing is not None:
            return VisitorAssignment(existing.variant_id, existing.variant.price_cents)

        # Excluded visitors are not recorded, so they may be included on a later visit
        if self.rng.random() * 100 >= experiment.traffic_allocation:
            logger.debug(
                "Assign %s: outside %.1f%% traffic allocation of experiment %s",
                visitor_id, experiment.traffic_allocation, experiment_id,
            )
            return None

        variants = experiment.variants
        index = min(int(self.rng.random() * len(variants)), len(variants) - 1)
        chosen = variants[index]

        assignment, created = self.store.insert_assignment(experiment_id, visitor_id, chosen.id)
        if assignment is None:
            # paused, ended or cancelled after the status check above
            return None
        return VisitorAssignment(assignment.variant_id, assignment.variant.price_cents, created)

    def record_conversion(
        self,
        experiment_id: int,
        visitor_id: str,
        customer_id: str,
        subscription_id: str,
        revenue_cents: int,
    ) -> Optional[Assignment]:
        if revenue_cents < 0:
            raise ExperimentValidationError("revenue_cents must not be negative")

        assignment = self.store.get_assignment(experiment_id, visitor_id)
        if assignment is None:
            logger.debug("Conversion for %s ignored: no assignment in experiment %s", visitor_id, experiment_id)
            return None
        if assignment.converted:
            logger.debug("Conversion for %s ignored: already converted", visitor_id)
            return None

        if not self.store.finalize_conversion(assignment.id, customer_id, subscription_id, revenue_cents):
            logger.debug("Conversion for %s ignored: recorded by a concurrent event", visitor_id)
            return None

        return self.store.get_assignment(experiment_id, visitor_id)

    def record_churn(
        self,
        experiment_id: int,
        customer_id: str,
        lifetime_revenue: int,
    ) -> Optional[Assignment]:
        if lifetime_revenue < 0:
            raise ExperimentValidationError("lifetime_revenue must not be negative")

        candidate = self.store.find_churn_candidate(experiment_id, customer_id)
        if candidate is None:
            logger.debug(
                "Churn for customer %s ignored: no open conversion in experiment %s",
                customer_id, experiment_id,
            )
            return None

        if not self.store.finalize_churn(candidate.id, lifetime_revenue):
            logger.debug("Churn for customer %s ignored: recorded by a concurrent event", customer_id)
            return None

        return self.store.get_assignment(experiment_id, candidate.visitor_id)
