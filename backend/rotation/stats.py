from __future__ import annotations

from typing import Sequence

# Scales MAD to a consistent estimator of the standard deviation under normality.
MAD_CONSISTENCY = 1.4826


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def median(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    s = sorted(values)
    mid = len(s) // 2
    if len(s) % 2 == 0:
        return (s[mid - 1] + s[mid]) / 2.0
    return float(s[mid])


def median_absolute_deviation(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    med = median(values)
    return median([abs(v - med) for v in values])


def robust_z_score(value: float, values: Sequence[float], consistency: float = MAD_CONSISTENCY) -> float:
    """
    Outlier-resistant z-score: (value - median) / (MAD * consistency).

    Returns 0 when there is not enough spread to say anything (fewer than two
    observations, or MAD == 0).
    """

    if len(values) < 2:
        return 0.0
    mad = median_absolute_deviation(values)
    if mad == 0:
        return 0.0
    return (value - median(values)) / (mad * consistency)
