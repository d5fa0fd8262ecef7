"""
Prediction Models
=================

Built-in forecasting strategies for historical analysis. Both are simple
and deterministic; heavier models plug in through ``IPredictionModel`` and
are registered by name on the analyzer.
"""

import math
from datetime import timedelta
from typing import List

import numpy as np

from sla.application.interfaces import IPredictionModel
from sla.domain import statistics
from sla.domain.results import PredictedPoint, Prediction, SeriesPoint

Z_95 = 1.96


class LinearTrendModel(IPredictionModel):
    """Extends the least-squares line; the interval is +-1.96 residual sigma."""

    name = "linear"

    def predict(self, series: List[SeriesPoint], horizon: int, step: timedelta) -> Prediction:
        if len(series) < 2:
            return Prediction(model=self.name, points=[], confidence=0.0)

        x = list(range(len(series)))
        y = [p.value for p in series]
        slope, intercept, r_squared = statistics.linear_fit(x, y)
        residuals = np.asarray(y) - (slope * np.asarray(x, dtype=float) + intercept)
        sigma = float(np.std(residuals))

        last = series[-1].timestamp
        points = []
        for i in range(1, horizon + 1):
            value = slope * (len(series) - 1 + i) + intercept
            points.append(PredictedPoint(
                timestamp=last + step * i,
                value=value,
                lower_bound=value - Z_95 * sigma,
                upper_bound=value + Z_95 * sigma,
            ))
        return Prediction(model=self.name, points=points, confidence=round(r_squared, 4))


class MovingAverageModel(IPredictionModel):
    """Flat forecast at the mean of the trailing window."""

    name = "moving_average"

    def __init__(self, window: int = 24):
        self.window = window

    def predict(self, series: List[SeriesPoint], horizon: int, step: timedelta) -> Prediction:
        if not series:
            return Prediction(model=self.name, points=[], confidence=0.0)

        tail = [p.value for p in series[-self.window:]]
        mean = float(np.mean(tail))
        sigma = float(np.std(tail))
        cv = sigma / abs(mean) if mean else 1.0
        confidence = max(0.0, min(1.0, 1 - cv)) * min(1.0, len(tail) / self.window)

        last = series[-1].timestamp
        points = [
            PredictedPoint(
                timestamp=last + step * i,
                value=mean,
                lower_bound=mean - Z_95 * sigma,
                upper_bound=mean + Z_95 * sigma,
            )
            for i in range(1, horizon + 1)
        ]
        if not math.isfinite(confidence):
            confidence = 0.0
        return Prediction(model=self.name, points=points, confidence=round(confidence, 4))
