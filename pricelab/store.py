"""Persistence for experiments, variants and visitor assignments.

Every method runs in its own short session. Anything that must not race
(status changes, counter increments, first conversion / first churn) is a
single conditional statement in the database, never a read followed by a
write in Python.
"""
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.exc import IntegrityError

from . import config
from .db import SessionLocal
from .errors import ExperimentNotFoundError, ExperimentValidationError, InvalidTransitionError
from .logger import get_logger
from .models import Assignment, Experiment, ExperimentStatus, Variant, utcnow
from .stats import required_sample_size

logger = get_logger(__name__)

CONFIDENCE_LEVELS = (0.90, 0.95, 0.99)

# action -> (statuses it may be applied from, resulting status)
TRANSITIONS = {
    "start": ((ExperimentStatus.DRAFT,), ExperimentStatus.RUNNING),
    "pause": ((ExperimentStatus.RUNNING,), ExperimentStatus.PAUSED),
    "resume": ((ExperimentStatus.PAUSED,), ExperimentStatus.RUNNING),
    "end": ((ExperimentStatus.RUNNING, ExperimentStatus.PAUSED), ExperimentStatus.COMPLETED),
    "cancel": (
        (ExperimentStatus.DRAFT, ExperimentStatus.RUNNING, ExperimentStatus.PAUSED),
        ExperimentStatus.CANCELLED,
    ),
}


def _prepare_variants(variants: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    if len(variants) < 2:
        raise ExperimentValidationError("Experiment must have at least 2 variants")

    prepared = []
    for v in variants:
        name = (v.get("name") or "").strip()
        price_cents = v.get("price_cents")
        if not name:
            raise ExperimentValidationError("Variant name must not be empty")
        if not isinstance(price_cents, int) or isinstance(price_cents, bool) or price_cents < 0:
            raise ExperimentValidationError(
                f"Variant {name!r}: price_cents must be a non-negative integer"
            )
        prepared.append(
            {"name": name, "price_cents": price_cents, "is_control": bool(v.get("is_control"))}
        )

    control_count = sum(1 for v in prepared if v["is_control"])
    if control_count > 1:
        raise ExperimentValidationError("Experiment can only have one control variant")
    if control_count == 0:
        prepared[0]["is_control"] = True

    return prepared


def _owned(experiment_id: int, organization_id: Optional[str]) -> list:
    """WHERE clauses matching one experiment, restricted to its tenant when given."""
    clauses = [Experiment.id == experiment_id]
    if organization_id is not None:
        clauses.append(Experiment.organization_id == organization_id)
    return clauses


class ExperimentStore:
    """
    `organization_id` on the per-experiment methods scopes the lookup to one
    tenant: an experiment owned by another organization is reported as not
    found. Internal callers that already hold a trusted id (bucketing,
    outcome recording) leave it as None.
    """

    def __init__(self, session_factory=SessionLocal, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    def create_experiment(
        self,
        organization_id: str,
        name: str,
        hypothesis: str,
        target_plan_id: str,
        target_plan_name: str,
        planned_duration: int,
        variants: Sequence[Mapping[str, Any]],
        traffic_allocation: Optional[float] = None,
        confidence_level: float = 0.95,
        minimum_sample_size: Optional[int] = None,
        minimum_detectable_effect: Optional[float] = None,
        description: Optional[str] = None,
        ai_generated: bool = False,
        expected_lift: Optional[float] = None,
        priority: Optional[int] = None,
        risks: Optional[List[str]] = None,
    ) -> Experiment:
        """
        Create a DRAFT experiment together with its variants.

        If no variant is flagged as control the first one becomes the
        control. When `minimum_sample_size` is omitted it is sized from
        `minimum_detectable_effect` and `confidence_level`.
        """
        if not name or not name.strip():
            raise ExperimentValidationError("Experiment name must not be empty")
        if not hypothesis or not hypothesis.strip():
            raise ExperimentValidationError("Hypothesis must not be empty")
        if not target_plan_id:
            raise ExperimentValidationError("target_plan_id is required")
        if planned_duration is None or planned_duration <= 0:
            raise ExperimentValidationError("planned_duration must be a positive number of days")

        if traffic_allocation is None:
            traffic_allocation = config.DEFAULT_TRAFFIC_ALLOCATION
        if not 0 < traffic_allocation <= 100:
            raise ExperimentValidationError("traffic_allocation must be in (0, 100]")

        if confidence_level not in CONFIDENCE_LEVELS:
            raise ExperimentValidationError(
                f"confidence_level must be one of {', '.join(str(c) for c in CONFIDENCE_LEVELS)}"
            )

        if minimum_detectable_effect is None:
            minimum_detectable_effect = config.DEFAULT_MINIMUM_DETECTABLE_EFFECT
        if minimum_detectable_effect <= 0:
            raise ExperimentValidationError("minimum_detectable_effect must be positive")

        if minimum_sample_size is None:
            minimum_sample_size = required_sample_size(
                minimum_detectable_effect,
                confidence_level,
                baseline_rate=config.DEFAULT_BASELINE_CONVERSION_RATE,
            )
        elif minimum_sample_size <= 0:
            raise ExperimentValidationError("minimum_sample_size must be positive")

        prepared = _prepare_variants(variants)

        experiment = Experiment(
            organization_id=organization_id,
            name=name.strip(),
            hypothesis=hypothesis.strip(),
            description=description,
            target_plan_id=target_plan_id,
            target_plan_name=target_plan_name,
            status=ExperimentStatus.DRAFT,
            planned_duration=planned_duration,
            traffic_allocation=traffic_allocation,
            minimum_sample_size=minimum_sample_size,
            minimum_detectable_effect=minimum_detectable_effect,
            confidence_level=confidence_level,
            ai_generated=ai_generated,
            expected_lift=expected_lift,
            priority=priority,
            risks=risks,
            created_at=self.clock(),
            variants=[
                Variant(
                    name=v["name"],
                    price_cents=v["price_cents"],
                    original_price_cents=v["price_cents"],
                    is_control=v["is_control"],
                )
                for v in prepared
            ],
        )

        with self.session_factory() as session:
            session.add(experiment)
            session.commit()
            experiment_id = experiment.id

        logger.info(
            "Created experiment %s (%s) with %d variants, minimum sample size %d",
            experiment_id, experiment.name, len(prepared), minimum_sample_size,
        )
        return self.get_experiment(experiment_id)

    def get_experiment(self, experiment_id: int, organization_id: Optional[str] = None) -> Experiment:
        with self.session_factory() as session:
            experiment = session.scalars(
                select(Experiment).where(*_owned(experiment_id, organization_id))
            ).first()
            if experiment is None:
                raise ExperimentNotFoundError(experiment_id)
            return experiment

    def list_experiments(
        self,
        organization_id: str,
        status: Optional[ExperimentStatus] = None,
    ) -> List[Experiment]:
        query = (
            select(Experiment)
            .where(Experiment.organization_id == organization_id)
            .order_by(Experiment.created_at.desc(), Experiment.id.desc())
        )
        if status is not None:
            query = query.where(Experiment.status == status)

        with self.session_factory() as session:
            return list(session.scalars(query).all())

    def assignment_counts(self, experiment_ids: Iterable[int]) -> Dict[int, int]:
        ids = list(experiment_ids)
        counts = {experiment_id: 0 for experiment_id in ids}
        if not ids:
            return counts

        with self.session_factory() as session:
            rows = session.execute(
                select(Assignment.experiment_id, func.count(Assignment.id))
                .where(Assignment.experiment_id.in_(ids))
                .group_by(Assignment.experiment_id)
            )
            for experiment_id, count in rows:
                counts[experiment_id] = count
        return counts

    def running_experiment_for_plan(self, organization_id: str, plan_id: str) -> Optional[Experiment]:
        with self.session_factory() as session:
            return session.scalars(
                select(Experiment)
                .where(
                    Experiment.organization_id == organization_id,
                    Experiment.target_plan_id == plan_id,
                    Experiment.status == ExperimentStatus.RUNNING,
                )
                .order_by(Experiment.started_at.desc())
                .limit(1)
            ).first()

    def _current_status(
        self,
        session,
        experiment_id: int,
        organization_id: Optional[str] = None,
    ) -> ExperimentStatus:
        status = session.scalar(
            select(Experiment.status).where(*_owned(experiment_id, organization_id))
        )
        if status is None:
            raise ExperimentNotFoundError(experiment_id)
        return status

    def transition(
        self,
        experiment_id: int,
        action: str,
        organization_id: Optional[str] = None,
    ) -> Experiment:
        """
        Apply a status action (start, pause, resume, end, cancel).

        The status check and the write are one conditional UPDATE, so two
        racing actions cannot both succeed from the same starting status.
        """
        if action not in TRANSITIONS:
            raise ExperimentValidationError(
                f"Invalid action {action!r}. Use: {', '.join(TRANSITIONS)}"
            )
        allowed, target = TRANSITIONS[action]

        now = self.clock()
        values = {"status": target, "updated_at": now}
        if action == "start":
            values["started_at"] = now
        if target.is_terminal:
            values["ended_at"] = now

        with self.session_factory() as session:
            result = session.execute(
                update(Experiment)
                .where(*_owned(experiment_id, organization_id), Experiment.status.in_(allowed))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                current = self._current_status(session, experiment_id, organization_id)
                raise InvalidTransitionError(experiment_id, current.value, action, target=target.value)
            session.commit()

        logger.info("Experiment %s: %s -> %s", experiment_id, action, target.value)
        return self.get_experiment(experiment_id)

    def delete_experiment(self, experiment_id: int, organization_id: Optional[str] = None) -> None:
        with self.session_factory() as session:
            current = session.scalar(
                select(Experiment.status).where(*_owned(experiment_id, organization_id)).with_for_update()
            )
            if current is None:
                raise ExperimentNotFoundError(experiment_id)
            if current != ExperimentStatus.DRAFT:
                raise InvalidTransitionError(
                    experiment_id, current.value, "delete",
                    f"Only draft experiments can be deleted (experiment {experiment_id} is {current.value})",
                )

            session.execute(
                delete(Variant)
                .where(Variant.experiment_id == experiment_id)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(
                delete(Experiment)
                .where(*_owned(experiment_id, organization_id), Experiment.status == ExperimentStatus.DRAFT)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # started (or cancelled) between the check and the delete
                session.rollback()
                current = self._current_status(session, experiment_id, organization_id)
                raise InvalidTransitionError(experiment_id, current.value, "delete")
            session.commit()

        logger.info("Deleted draft experiment %s", experiment_id)

    # ------------------------------------------------------------------
    # Assignments and counters
    # ------------------------------------------------------------------

    def get_assignment(self, experiment_id: int, visitor_id: str) -> Optional[Assignment]:
        with self.session_factory() as session:
            return session.scalars(
                select(Assignment).where(
                    Assignment.experiment_id == experiment_id,
                    Assignment.visitor_id == visitor_id,
                )
            ).first()

    def insert_assignment(
        self,
        experiment_id: int,
        visitor_id: str,
        variant_id: int,
    ) -> Tuple[Optional[Assignment], bool]:
        """
        Insert the visitor's assignment and bump the variant's visitor count
        in one transaction.

        If another request already assigned this visitor the unique
        constraint rejects the insert, nothing is counted, and the existing
        row is returned instead. If the experiment stopped running since the
        caller checked, nothing is written and (None, False) comes back.
        Returns (assignment, created).
        """
        still_running = exists(
            select(Experiment.id).where(
                Experiment.id == experiment_id,
                Experiment.status == ExperimentStatus.RUNNING,
            )
        )
        with self.session_factory() as session:
            session.add(
                Assignment(
                    experiment_id=experiment_id,
                    visitor_id=visitor_id,
                    variant_id=variant_id,
                    assigned_at=self.clock(),
                )
            )
            try:
                session.flush()
                result = session.execute(
                    update(Variant)
                    .where(Variant.id == variant_id, still_running)
                    .values(visitors=Variant.visitors + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.rollback()
                    logger.debug(
                        "Visitor %s not assigned: experiment %s is no longer running",
                        visitor_id, experiment_id,
                    )
                    return None, False
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.get_assignment(experiment_id, visitor_id)
                if existing is None:
                    raise
                logger.info(
                    "Visitor %s was assigned concurrently in experiment %s; kept variant %s",
                    visitor_id, experiment_id, existing.variant_id,
                )
                return existing, False

        return self.get_assignment(experiment_id, visitor_id), True

    def find_churn_candidate(self, experiment_id: int, customer_id: str) -> Optional[Assignment]:
        """Most recent converted, not yet churned assignment for a customer."""
        with self.session_factory() as session:
            return session.scalars(
                select(Assignment)
                .where(
                    Assignment.experiment_id == experiment_id,
                    Assignment.customer_id == customer_id,
                    Assignment.converted.is_(True),
                    Assignment.churned.is_(False),
                )
                .order_by(Assignment.converted_at.desc(), Assignment.id.desc())
                .limit(1)
            ).first()

    def finalize_conversion(
        self,
        assignment_id: int,
        customer_id: str,
        subscription_id: str,
        revenue_cents: int,
    ) -> bool:
        """
        Mark an assignment converted and count it, exactly once.

        Returns False when the assignment was already converted (a replayed
        event or a concurrent duplicate that got there first).
        """
        with self.session_factory() as session:
            variant_id = session.scalar(
                select(Assignment.variant_id).where(Assignment.id == assignment_id)
            )
            if variant_id is None:
                return False

            result = session.execute(
                update(Assignment)
                .where(Assignment.id == assignment_id, Assignment.converted.is_(False))
                .values(
                    converted=True,
                    converted_at=self.clock(),
                    customer_id=customer_id,
                    subscription_id=subscription_id,
                    conversion_revenue=revenue_cents,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                return False

            session.execute(
                update(Variant)
                .where(Variant.id == variant_id)
                .values(
                    conversions=Variant.conversions + 1,
                    total_revenue=Variant.total_revenue + revenue_cents,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return True

    def finalize_churn(self, assignment_id: int, lifetime_revenue: int) -> bool:
        """Mark a converted assignment churned and count it, exactly once."""
        with self.session_factory() as session:
            variant_id = session.scalar(
                select(Assignment.variant_id).where(Assignment.id == assignment_id)
            )
            if variant_id is None:
                return False

            result = session.execute(
                update(Assignment)
                .where(
                    Assignment.id == assignment_id,
                    Assignment.converted.is_(True),
                    Assignment.churned.is_(False),
                )
                .values(churned=True, churned_at=self.clock(), lifetime_revenue=lifetime_revenue)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                session.rollback()
                return False

            session.execute(
                update(Variant)
                .where(Variant.id == variant_id)
                .values(churned=Variant.churned + 1)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return True
