from dataclasses import dataclass
from typing import Dict, Tuple
import math


# Two-tailed critical values for the supported confidence levels
_Z_CRITICAL = {0.90: 1.645, 0.95: 1.96, 0.99: 2.576}

# One-tailed z for common power targets
_Z_POWER = {0.80: 0.842, 0.85: 1.036, 0.90: 1.282, 0.95: 1.645}

# Abramowitz & Stegun 26.2.17
_AS_P = 0.2316419
_AS_B = (0.319381530, -0.356563782, 1.781477937, -1.821255978, 1.330274429)
_INV_SQRT_2PI = 0.3989422804014327


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _nearest(table: Dict[float, float], key: float) -> float:
    return table[min(table, key=lambda k: abs(k - key))]


def z_critical(confidence_level: float) -> float:
    """
    Two-tailed critical z value for a confidence level.

    Only 0.90 / 0.95 / 0.99 are supported; anything else snaps to the
    nearest of those.
    """
    return _nearest(_Z_CRITICAL, confidence_level)


def normal_cdf(x: float) -> float:
    """
    Cumulative distribution function for a standard normal variable.

    Rational-polynomial approximation (Abramowitz & Stegun 26.2.17).
    Absolute error is below 7.5e-8 over the whole real line, which is
    far smaller than the rounding used when reporting p-values.
    """
    ax = abs(x)
    t = 1.0 / (1.0 + _AS_P * ax)
    poly = t * (_AS_B[0] + t * (_AS_B[1] + t * (_AS_B[2] + t * (_AS_B[3] + t * _AS_B[4]))))
    tail = _INV_SQRT_2PI * math.exp(-ax * ax / 2.0) * poly
    return 1.0 - tail if x >= 0 else tail


def z_score_for_proportions(p1: float, n1: int, p2: float, n2: int) -> float:
    """
    Pooled two-proportion z statistic for treatment (p2) vs control (p1).

    Returns 0 when there is no evidence yet (an empty sample or zero
    standard error) instead of dividing by zero.
    """
    if n1 == 0 or n2 == 0:
        return 0.0

    p_pool = (p1 * n1 + p2 * n2) / (n1 + n2)
    se = math.sqrt(max(0.0, p_pool * (1 - p_pool)) * (1 / n1 + 1 / n2))
    if se == 0:
        return 0.0

    return (p2 - p1) / se


def p_value(z: float) -> float:
    """
    Two-sided p-value for a z statistic.
    """
    return _clamp(2 * (1 - normal_cdf(abs(z))))


def confidence_interval(
    p1: float,
    n1: int,
    p2: float,
    n2: int,
    confidence_level: float = 0.95,
) -> Tuple[float, float]:
    """
    Wald interval on the difference p2 - p1 (un-pooled standard error).
    Empty samples count as n=1 so the interval stays finite.
    """
    se = math.sqrt(p1 * (1 - p1) / (n1 or 1) + p2 * (1 - p2) / (n2 or 1))
    margin = z_critical(confidence_level) * se
    diff = p2 - p1
    return diff - margin, diff + margin


def required_sample_size(
    minimum_detectable_effect: float,
    confidence_level: float = 0.95,
    power: float = 0.8,
    baseline_rate: float = 0.03,
) -> int:
    """
    Visitors needed per variant to detect a relative lift of
    `minimum_detectable_effect` over `baseline_rate`.

    n = 2 (z_alpha + z_beta)^2 * p_bar (1 - p_bar) / delta^2
    """
    z_alpha = z_critical(confidence_level)
    z_beta = _nearest(_Z_POWER, power)

    p1 = baseline_rate
    p2 = baseline_rate * (1 + minimum_detectable_effect)
    delta = abs(p2 - p1)
    if delta == 0:
        return 1000

    p_bar = (p1 + p2) / 2
    n = 2 * (z_alpha + z_beta) ** 2 * p_bar * (1 - p_bar) / delta ** 2
    return max(1, int(math.ceil(n)))


def statistical_power(n1: int, n2: int, p1: float, p2: float, alpha: float = 0.05) -> float:
    """
    Approximate achieved power for the observed rates and current sample
    sizes. Informational only; never used to gate a decision.
    """
    if n1 == 0 or n2 == 0:
        return 0.0

    delta = abs(p2 - p1)
    if delta == 0:
        return 0.0

    p_pool = (p1 * n1 + p2 * n2) / (n1 + n2)
    se = math.sqrt(max(0.0, p_pool * (1 - p_pool)) * (1 / n1 + 1 / n2))
    if se == 0:
        return 0.0

    z_beta = delta / se - z_critical(1 - alpha)
    return _clamp(normal_cdf(z_beta))


def relative_lift(p1: float, p2: float) -> float:
    """Percentage change of p2 over p1 (0 when the baseline is 0)."""
    if p1 <= 0:
        return 0.0
    return (p2 - p1) / p1 * 100


@dataclass
class StatisticalTest:
    """Two-proportion test of a treatment against the control."""
    z_score: float
    p_value: float
    is_significant: bool
    ci_lower: float
    ci_upper: float
    relative_lift: float  # percent
    sample_size_reached: bool
    current_power: float
    recommended_sample_size: int

    def to_dict(self) -> Dict:
        return {
            "z_score": self.z_score,
            "p_value": self.p_value,
            "is_significant": self.is_significant,
            "confidence_interval": {"lower": self.ci_lower, "upper": self.ci_upper},
            "relative_lift": self.relative_lift,
            "sample_size_reached": self.sample_size_reached,
            "power_analysis": {
                "current_power": self.current_power,
                "recommended_sample_size": self.recommended_sample_size,
            },
        }


def _rate(conversions: int, visitors: int) -> float:
    return conversions / visitors if visitors > 0 else 0.0


def run_statistical_test(
    control: Tuple[int, int],
    treatment: Tuple[int, int],
    confidence_level: float,
    minimum_sample_size: int,
) -> StatisticalTest:
    """
    Compare treatment against control.

    `control` and `treatment` are (visitors, conversions) pairs. The result
    is significant only when p < 1 - confidence_level and both arms have at
    least `minimum_sample_size` visitors.
    """
    n1, c1 = control
    n2, c2 = treatment
    p1 = _rate(c1, n1)
    p2 = _rate(c2, n2)

    z = z_score_for_proportions(p1, n1, p2, n2)
    p = p_value(z)
    alpha = 1 - confidence_level
    sample_size_reached = n1 >= minimum_sample_size and n2 >= minimum_sample_size
    lower, upper = confidence_interval(p1, n1, p2, n2, confidence_level)

    return StatisticalTest(
        z_score=z,
        p_value=p,
        is_significant=p < alpha and sample_size_reached,
        ci_lower=lower,
        ci_upper=upper,
        relative_lift=relative_lift(p1, p2),
        sample_size_reached=sample_size_reached,
        current_power=statistical_power(n1, n2, p1, p2, alpha),
        recommended_sample_size=minimum_sample_size,
    )
