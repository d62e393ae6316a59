import math
from typing import Iterable, Optional


def round_half_up(value: float) -> int:
    """Round .5 away from zero on the positive side (1.5 -> 2, 2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def safe_ratio(numerator: float, denominator: float, default: float = 0.0) -> float:
    if not denominator:
        return default
    return numerator / denominator


def mean(values: Iterable[float]) -> float:
    vals = list(values)
    if not vals:
        return 0.0
    return sum(vals) / len(vals)


def lift_ratio(rate: float, baseline: float, cap: float) -> float:
    """Ratio of rate to baseline; cap when the baseline is zero but rate is not."""
    if baseline > 0:
        return rate / baseline
    if rate > 0:
        return cap
    return 0.0


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def days_between(later, earlier) -> Optional[int]:
    if later is None or earlier is None:
        return None
    return math.floor((later - earlier).total_seconds() / 86400)


def value_key(value) -> str:
    """String form of a custom-field value used for segment and weight lookups."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
