from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import math

import pandas as pd

from .models import Experiment, ExperimentStatus, Variant, utcnow
from .stats import StatisticalTest, run_statistical_test
from .store import ExperimentStore


@dataclass
class VariantResult:
    id: int
    name: str
    is_control: bool
    price_cents: int
    visitors: int
    conversions: int
    churned: int
    total_revenue: int
    conversion_rate: float
    average_revenue: float
    churn_rate: float
    revenue_per_visitor: float
    z_score: Optional[float] = None  # None for the control
    p_value: Optional[float] = None
    is_winning: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ExperimentResults:
    experiment_id: int
    status: ExperimentStatus
    duration: int  # days
    variants: List[VariantResult]
    winner: Optional[str]
    winner_variant_id: Optional[int]
    is_significant: bool
    confidence: float
    relative_lift: Optional[float]  # percent, best variant vs control
    recommendation: str
    can_end_early: bool
    total_visitors: int
    minimum_sample_size: int
    statistical_test: Optional[StatisticalTest] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "status": self.status.value,
            "duration": self.duration,
            "variants": [v.to_dict() for v in self.variants],
            "winner": self.winner,
            "winner_variant_id": self.winner_variant_id,
            "is_significant": self.is_significant,
            "confidence": self.confidence,
            "relative_lift": self.relative_lift,
            "recommendation": self.recommendation,
            "can_end_early": self.can_end_early,
            "total_visitors": self.total_visitors,
            "minimum_sample_size": self.minimum_sample_size,
            "statistical_test": self.statistical_test.to_dict() if self.statistical_test else None,
        }


def revenue_per_visitor(result: VariantResult) -> float:
    return result.revenue_per_visitor


def conversion_rate(result: VariantResult) -> float:
    return result.conversion_rate


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def _variant_result(variant: Variant) -> VariantResult:
    return VariantResult(
        id=variant.id,
        name=variant.name,
        is_control=variant.is_control,
        price_cents=variant.price_cents,
        visitors=variant.visitors,
        conversions=variant.conversions,
        churned=variant.churned,
        total_revenue=variant.total_revenue,
        conversion_rate=_ratio(variant.conversions, variant.visitors),
        average_revenue=_ratio(variant.total_revenue, variant.conversions),
        churn_rate=_ratio(variant.churned, variant.conversions),
        revenue_per_visitor=_ratio(variant.total_revenue, variant.visitors),
    )


class ResultsAnalyzer:
    """
    Turns stored variant counters into a decision report.

    rank_key picks the candidate winner before the significance test.
    Revenue per visitor is the product default; conversion_rate is the
    obvious alternative.
    """

    def __init__(
        self,
        store: ExperimentStore,
        clock: Callable[[], datetime] = utcnow,
        rank_key: Callable[[VariantResult], float] = revenue_per_visitor,
    ):
        self.store = store
        self.clock = clock
        self.rank_key = rank_key

    def _duration_days(self, experiment: Experiment) -> int:
        start = experiment.started_at or experiment.created_at
        end = experiment.ended_at or self.clock()
        seconds = (end - start).total_seconds()
        return max(0, int(math.ceil(seconds / 86400)))

    def _test(self, experiment: Experiment, control: VariantResult, treatment: VariantResult) -> StatisticalTest:
        return run_statistical_test(
            (control.visitors, control.conversions),
            (treatment.visitors, treatment.conversions),
            experiment.confidence_level,
            experiment.minimum_sample_size,
        )

    def get_results(self, experiment_id: int, organization_id: Optional[str] = None) -> ExperimentResults:
        experiment = self.store.get_experiment(experiment_id, organization_id)

        results = [_variant_result(v) for v in experiment.variants]
        control = next((r for r in results if r.is_control), None)

        if control is not None:
            for r in results:
                if not r.is_control:
                    test = self._test(experiment, control, r)
                    r.z_score = test.z_score
                    r.p_value = test.p_value

        # sorted() is stable, so ties keep display order
        ranked = sorted(results, key=self.rank_key, reverse=True)

        test: Optional[StatisticalTest] = None
        winner: Optional[VariantResult] = None
        relative_lift: Optional[float] = None

        if ranked and control is not None:
            candidate = ranked[0]
            if not candidate.is_control:
                test = self._test(experiment, control, candidate)
                relative_lift = test.relative_lift
                if test.is_significant:
                    winner = candidate
            else:
                # Control leads: it only wins if it beats the best treatment
                treatments = [r for r in ranked if not r.is_control]
                if treatments:
                    test = self._test(experiment, control, treatments[0])
                    relative_lift = -test.relative_lift
                    if test.is_significant:
                        winner = control

        if winner is not None:
            winner.is_winning = True

        is_significant = test.is_significant if test else False
        confidence = 1 - test.p_value if test else 0.0
        total_visitors = sum(r.visitors for r in results)
        required_visitors = experiment.minimum_sample_size * len(results)
        can_end_early = is_significant and total_visitors >= required_visitors

        recommendation = self._recommend(
            experiment.status,
            winner,
            relative_lift,
            confidence,
            is_significant,
            can_end_early,
            total_visitors,
            required_visitors,
        )

        return ExperimentResults(
            experiment_id=experiment.id,
            status=experiment.status,
            duration=self._duration_days(experiment),
            variants=results,
            winner=winner.name if winner else None,
            winner_variant_id=winner.id if winner else None,
            is_significant=is_significant,
            confidence=confidence,
            relative_lift=relative_lift,
            recommendation=recommendation,
            can_end_early=can_end_early,
            total_visitors=total_visitors,
            minimum_sample_size=experiment.minimum_sample_size,
            statistical_test=test,
        )

    @staticmethod
    def _recommend(
        status: ExperimentStatus,
        winner: Optional[VariantResult],
        relative_lift: Optional[float],
        confidence: float,
        is_significant: bool,
        can_end_early: bool,
        total_visitors: int,
        required_visitors: int,
    ) -> str:
        if status == ExperimentStatus.DRAFT:
            return "Start the experiment to begin collecting data."

        if status.is_terminal:
            if winner is not None:
                return (
                    f"Experiment complete. {winner.name} won with {relative_lift:.1f}% lift. "
                    "Consider implementing this price."
                )
            return "Experiment complete. No statistically significant winner found."

        if is_significant and can_end_early:
            return (
                f"{winner.name} is winning with {confidence:.0%} confidence. "
                "You can end the experiment early."
            )

        if total_visitors < required_visitors:
            return f"Need {required_visitors - total_visitors} more visitors for statistical significance."

        return "Continue running to reach statistical significance."


def results_frame(results: ExperimentResults) -> pd.DataFrame:
    """
    One row per variant, for CSV export.
    """
    df = pd.DataFrame([v.to_dict() for v in results.variants])
    df.insert(0, "experiment_id", results.experiment_id)
    df["status"] = results.status.value
    df["is_significant"] = results.is_significant
    return df
