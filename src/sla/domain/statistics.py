"""
SLA Statistics
==============

Numeric helpers shared by metric calculation, scoring and historical
analysis. Pure functions over numpy arrays; no I/O.

Percentiles and quartiles use the nearest-rank-below convention
(``sorted[floor(p * n)]``, clamped) rather than interpolation, so a p95 is
always an observed sample.
"""

import math
from typing import Optional, Sequence, Tuple

import numpy as np

from config import AggregationMethod
from sla.domain.entities import AggregationResult


def percentile(values: Sequence[float], p: float) -> float:
    """Observed value at rank ``floor(p / 100 * n)`` of the sorted sample."""
    if len(values) == 0:
        raise ValueError("percentile of empty sequence")
    ordered = np.sort(np.asarray(values, dtype=float))
    index = int(math.floor(p / 100.0 * len(ordered)))
    index = max(0, min(index, len(ordered) - 1))
    return float(ordered[index])


def quartiles(values: Sequence[float]) -> Tuple[float, float]:
    """(Q1, Q3) with the same rank convention as ``percentile``."""
    return percentile(values, 25), percentile(values, 75)


def aggregate(
    values: Sequence[float],
    method: str = AggregationMethod.AVG,
    percentile_value: float = 95.0,
) -> AggregationResult:
    """
    Collapse a sample into one value plus descriptive statistics.

    Raises:
        ValueError: for an empty sample or an unknown method
    """
    if len(values) == 0:
        raise ValueError("cannot aggregate an empty sample")
    data = np.asarray(values, dtype=float)

    if method == AggregationMethod.AVG:
        value = float(np.mean(data))
    elif method == AggregationMethod.MIN:
        value = float(np.min(data))
    elif method == AggregationMethod.MAX:
        value = float(np.max(data))
    elif method == AggregationMethod.SUM:
        value = float(np.sum(data))
    elif method == AggregationMethod.COUNT:
        value = float(len(data))
    elif method == AggregationMethod.PERCENTILE:
        value = percentile(data, percentile_value)
    else:
        raise ValueError(f"unknown aggregation method: {method}")

    return AggregationResult(
        value=value,
        count=int(len(data)),
        min=float(np.min(data)),
        max=float(np.max(data)),
        average=float(np.mean(data)),
        percentile_95=percentile(data, 95),
        percentile_99=percentile(data, 99),
        std_deviation=float(np.std(data)),
    )


def linear_fit(x: Sequence[float], y: Sequence[float]) -> Tuple[float, float, float]:
    """
    Ordinary least squares ``y = slope * x + intercept``.

    Returns (slope, intercept, r_squared). A constant ``x`` yields a flat
    line through the mean; a constant ``y`` is a perfect fit.
    """
    xs = np.asarray(x, dtype=float)
    ys = np.asarray(y, dtype=float)
    if len(xs) == 0:
        return 0.0, 0.0, 0.0

    x_mean, y_mean = xs.mean(), ys.mean()
    sxx = float(np.sum((xs - x_mean) ** 2))
    if sxx == 0:
        return 0.0, float(y_mean), 0.0

    slope = float(np.sum((xs - x_mean) * (ys - y_mean)) / sxx)
    intercept = float(y_mean - slope * x_mean)

    ss_tot = float(np.sum((ys - y_mean) ** 2))
    if ss_tot == 0:
        return slope, intercept, 1.0
    ss_res = float(np.sum((ys - (slope * xs + intercept)) ** 2))
    return slope, intercept, max(0.0, 1.0 - ss_res / ss_tot)


def pearson(x: Sequence[float], y: Sequence[float]) -> Optional[float]:
    """Pearson coefficient, or None when undefined (n < 2 or zero variance)."""
    if len(x) != len(y) or len(x) < 2:
        return None
    xs = np.asarray(x, dtype=float)
    ys = np.asarray(y, dtype=float)
    dx, dy = xs - xs.mean(), ys - ys.mean()
    denominator = math.sqrt(float(np.sum(dx ** 2)) * float(np.sum(dy ** 2)))
    if denominator == 0:
        return None
    return float(np.sum(dx * dy) / denominator)


def autocorrelation(values: Sequence[float], lag: int) -> float:
    """Sample autocorrelation at ``lag`` (0 for a constant series)."""
    data = np.asarray(values, dtype=float)
    n = len(data)
    if lag <= 0 or lag >= n:
        return 0.0
    centered = data - data.mean()
    variance = float(np.sum(centered ** 2))
    if variance == 0:
        return 0.0
    return float(np.sum(centered[:-lag] * centered[lag:]) / variance)


def coefficient_of_variation(values: Sequence[float]) -> float:
    """Standard deviation over absolute mean (0 for empty or zero-mean samples)."""
    if len(values) == 0:
        return 0.0
    data = np.asarray(values, dtype=float)
    mean = float(np.mean(data))
    if mean == 0:
        return 0.0
    return float(np.std(data) / abs(mean))
