"""
Historical Analysis
===================

Deterministic statistics over stored measurement series:

- trend: least squares slope, bucketed by a significance threshold
- seasonality: best autocorrelation lag up to min(n/4, max lag)
- anomalies: z-score and IQR detectors
- correlation: Pearson coefficient between SLAs aligned by bucket
- predictions: pluggable models (``linear`` and ``moving_average`` built in)
- root-cause hints: anomalies and other SLAs' breaches near a breach start

The detectors are module-level functions so they can be used on any series;
``HistoricalAnalyzer`` wires them to the measurement store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import numpy as np

from config import AnalysisType, Severity, ThresholdBand, TrendDirection
from shared.infrastructure.logging import get_logger, log_latency
from sla.application.breaches import BreachDetector
from sla.application.interfaces import Clock, IPredictionModel, ISLAConfigProvider, utc_now
from sla.application.measurements import MeasurementStore
from sla.application.predictions import LinearTrendModel, MovingAverageModel
from sla.application.tracking import SLARegistry
from sla.domain import SLACalculator, SLADefinition, TimeWindow
from sla.domain import statistics
from sla.domain.engine_config import AnalysisConfig
from sla.domain.results import (
    Anomaly, CorrelationResult, HistoricalAnalysis, Prediction, RootCauseHint,
    SeasonalityResult, SeriesPoint, SeriesSummary, TrendAnalysis
)

logger = get_logger(__name__)

GRANULARITY_STEPS = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
}
ALL_ANALYSES = [
    AnalysisType.TRENDS, AnalysisType.PATTERNS, AnalysisType.ANOMALIES,
    AnalysisType.CORRELATIONS, AnalysisType.PREDICTIONS, AnalysisType.ROOT_CAUSE,
]


@dataclass
class AnalysisRequest:
    """Which SLAs to analyze, over which window and at which granularity."""
    sla_ids: List[str]
    time_window: Optional[TimeWindow] = None
    granularity: str = "hour"
    analysis_types: List[str] = field(default_factory=lambda: list(ALL_ANALYSES))
    compare_with: Optional[List[str]] = None
    prediction_models: Optional[List[str]] = None


# ========== Series helpers ==========

def bucket_start(timestamp: datetime, granularity: str) -> datetime:
    """Floor a timestamp to the start of its bucket."""
    hour = timestamp.replace(minute=0, second=0, microsecond=0)
    if granularity == "hour":
        return hour
    day = hour.replace(hour=0)
    if granularity == "day":
        return day
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    if granularity == "month":
        return day.replace(day=1)
    raise ValueError(f"unknown granularity: {granularity}")


def bucket_series(points, granularity: str) -> List[SeriesPoint]:
    """Mean value per bucket, oldest first."""
    buckets: Dict[datetime, List[float]] = {}
    for point in points:
        buckets.setdefault(bucket_start(point.timestamp, granularity), []).append(point.value)
    return [
        SeriesPoint(timestamp=start, value=float(np.mean(values)))
        for start, values in sorted(buckets.items())
    ]


def summarize(values: List[float]) -> Optional[SeriesSummary]:
    if not values:
        return None
    data = np.asarray(values, dtype=float)
    return SeriesSummary(
        count=len(values),
        mean=float(np.mean(data)),
        median=float(np.median(data)),
        std_deviation=float(np.std(data)),
        min=float(np.min(data)),
        max=float(np.max(data)),
        percentile_95=statistics.percentile(values, 95),
    )


# ========== Detectors ==========

def analyze_trend(values: List[float], significance: float, higher_is_better: bool) -> Optional[TrendAnalysis]:
    """
    OLS trend over the series index.

    The change over the whole series relative to its mean decides the
    direction: below ``significance`` (a fraction) it is stable.
    """
    if len(values) < 3:
        return None
    slope, intercept, r_squared = statistics.linear_fit(list(range(len(values))), values)
    mean = float(np.mean(values))
    change = slope * (len(values) - 1) / abs(mean) * 100 if mean else 0.0

    if abs(change) < significance * 100:
        direction = TrendDirection.STABLE
    elif SLACalculator.goodness(slope, higher_is_better) > 0:
        direction = TrendDirection.IMPROVING
    else:
        direction = TrendDirection.DEGRADING

    return TrendAnalysis(
        direction=direction,
        slope=slope,
        intercept=intercept,
        r_squared=round(r_squared, 4),
        change_percentage=round(change, 4),
    )


def detect_seasonality(
    values: List[float],
    threshold: float,
    max_lag: int,
    granularity: str = "hour"
) -> Optional[SeasonalityResult]:
    """Best lag in [2, min(n/4, max_lag)] whose autocorrelation exceeds ``threshold``."""
    upper = min(len(values) // 4, max_lag)
    best: Optional[SeasonalityResult] = None
    for lag in range(2, upper + 1):
        correlation = statistics.autocorrelation(values, lag)
        if correlation > threshold and (best is None or correlation > best.correlation):
            best = SeasonalityResult(period=lag, correlation=round(correlation, 4), granularity=granularity)
    return best


def anomaly_severity(sigmas: float) -> str:
    sigmas = abs(sigmas)
    if sigmas > 3:
        return Severity.CRITICAL
    if sigmas > 2.5:
        return Severity.HIGH
    if sigmas > 2:
        return Severity.MEDIUM
    return Severity.LOW


def detect_anomalies(
    series: List[SeriesPoint],
    sensitivity: float,
    algorithms: List[str],
    min_points: int = 3,
) -> List[Anomaly]:
    """
    Run the requested detectors independently.

    Each anomaly's ``deviation`` is its distance from the mean in standard
    deviations; severity is bucketed from it.
    """
    if len(series) < min_points:
        return []

    values = [p.value for p in series]
    mean = float(np.mean(values))
    std = float(np.std(values))
    anomalies: List[Anomaly] = []

    def sigmas(value: float) -> float:
        return (value - mean) / std if std > 0 else 0.0

    if "zscore" in algorithms and std > 0:
        for point in series:
            z = sigmas(point.value)
            if abs(z) > sensitivity:
                anomalies.append(Anomaly(
                    timestamp=point.timestamp,
                    value=point.value,
                    expected=mean,
                    deviation=round(z, 4),
                    method="zscore",
                    severity=anomaly_severity(z),
                ))

    if "iqr" in algorithms:
        q1, q3 = statistics.quartiles(values)
        spread = q3 - q1
        lower, upper = q1 - 1.5 * spread, q3 + 1.5 * spread
        median = float(np.median(values))
        for point in series:
            if point.value < lower or point.value > upper:
                z = sigmas(point.value)
                anomalies.append(Anomaly(
                    timestamp=point.timestamp,
                    value=point.value,
                    expected=median,
                    deviation=round(z, 4),
                    method="iqr",
                    severity=anomaly_severity(z),
                ))

    return sorted(anomalies, key=lambda a: a.timestamp)


def correlation_strength(coefficient: float) -> str:
    magnitude = abs(coefficient)
    if magnitude >= 0.7:
        return "strong"
    if magnitude >= 0.4:
        return "moderate"
    return "weak"


def correlate(
    sla_id: str,
    series: List[SeriesPoint],
    other_sla_id: str,
    other: List[SeriesPoint],
    min_correlation: float,
) -> Optional[CorrelationResult]:
    """Pearson coefficient over buckets present in both series."""
    other_by_time = {p.timestamp: p.value for p in other}
    pairs = [(p.value, other_by_time[p.timestamp]) for p in series if p.timestamp in other_by_time]
    if len(pairs) < 3:
        return None
    coefficient = statistics.pearson([a for a, _ in pairs], [b for _, b in pairs])
    if coefficient is None or abs(coefficient) < min_correlation:
        return None
    return CorrelationResult(
        sla_id=sla_id,
        other_sla_id=other_sla_id,
        coefficient=round(coefficient, 4),
        strength=correlation_strength(coefficient),
        sample_count=len(pairs),
    )


# ========== Analyzer ==========

class HistoricalAnalyzer:
    """Runs the detectors over stored measurements per SLA."""

    def __init__(
        self,
        registry: SLARegistry,
        store: MeasurementStore,
        detector: BreachDetector,
        config_provider: ISLAConfigProvider,
        clock: Clock = utc_now,
    ):
        self._registry = registry
        self._store = store
        self._detector = detector
        self._config_provider = config_provider
        self._clock = clock
        self._models: Dict[str, IPredictionModel] = {}
        self.register_model(LinearTrendModel())
        self.register_model(MovingAverageModel(config_provider.get_config().analysis.moving_average_window))

    def register_model(self, model: IPredictionModel) -> None:
        self._models[model.name] = model

    def series(self, sla_id: str, window: TimeWindow, granularity: str) -> List[SeriesPoint]:
        definition = self._registry.get(sla_id)
        points = [
            p for p in self._store.get(sla_id, window, usable_only=True)
            if definition.active_maintenance(p.timestamp) is None
        ]
        return bucket_series(points, granularity)

    def perform_historical_analysis(self, request: AnalysisRequest) -> List[HistoricalAnalysis]:
        """
        One analysis per requested SLA.

        Raises:
            ResourceNotFoundException: an SLA id is unknown
            ValueError: unknown granularity
        """
        if request.granularity not in GRANULARITY_STEPS:
            raise ValueError(f"unknown granularity: {request.granularity}")
        return [self.analyze(sla_id, request) for sla_id in request.sla_ids]

    def analyze(self, sla_id: str, request: AnalysisRequest) -> HistoricalAnalysis:
        definition = self._registry.get(sla_id)
        config = self._config_provider.get_config().analysis
        now = self._clock()
        window = request.time_window or TimeWindow.ending_at(now, timedelta(days=7))
        types = set(request.analysis_types)

        with log_latency(logger, "historical_analysis", sla_id=sla_id):
            series = self.series(sla_id, window, request.granularity)
            values = [p.value for p in series]
            result = HistoricalAnalysis(
                sla_id=sla_id,
                time_window=window,
                granularity=request.granularity,
                summary=summarize(values),
                generated_at=now,
            )

            if AnalysisType.TRENDS in types:
                result.trend = analyze_trend(values, config.trend_significance, definition.higher_is_better)
            if AnalysisType.PATTERNS in types:
                result.seasonality = detect_seasonality(
                    values, config.seasonality_threshold, config.max_seasonality_lag, request.granularity
                )
            if AnalysisType.ANOMALIES in types or AnalysisType.ROOT_CAUSE in types:
                result.anomalies = detect_anomalies(
                    series, config.anomaly_sensitivity, config.anomaly_algorithms, config.anomaly_min_points
                )
            if AnalysisType.CORRELATIONS in types:
                result.correlations = self._correlations(sla_id, series, window, request, config)
            if AnalysisType.PREDICTIONS in types:
                result.predictions = self._predictions(definition, series, request, config)
            if AnalysisType.ROOT_CAUSE in types:
                result.root_causes = self._root_causes(sla_id, window, result.anomalies, config)
            if AnalysisType.ANOMALIES not in types:
                result.anomalies = []

            result.recommendations = self._recommendations(definition, result)
            result.confidence = self._confidence(result, config)

        logger.info(
            "Historical analysis completed",
            extra={
                "sla_id": sla_id,
                "buckets": len(series),
                "anomalies": len(result.anomalies),
                "correlations": len(result.correlations),
            }
        )
        return result

    def _correlations(
        self,
        sla_id: str,
        series: List[SeriesPoint],
        window: TimeWindow,
        request: AnalysisRequest,
        config: AnalysisConfig,
    ) -> List[CorrelationResult]:
        others = request.compare_with
        if others is None:
            others = [d.id for d in self._registry.list() if d.id != sla_id]
        correlations = []
        for other_id in others:
            if other_id == sla_id or other_id not in self._registry:
                continue
            other = self.series(other_id, window, request.granularity)
            result = correlate(sla_id, series, other_id, other, config.min_correlation)
            if result is not None:
                correlations.append(result)
        return sorted(correlations, key=lambda c: -abs(c.coefficient))

    def _predictions(
        self,
        definition: SLADefinition,
        series: List[SeriesPoint],
        request: AnalysisRequest,
        config: AnalysisConfig,
    ) -> List[Prediction]:
        step = GRANULARITY_STEPS[request.granularity]
        horizon = max(1, int(timedelta(hours=config.prediction_horizon_hours) / step))
        band = ThresholdBand.CRITICAL if definition.threshold_value(ThresholdBand.CRITICAL) is not None \
            else ThresholdBand.WARNING
        threshold = definition.threshold_value(band)

        predictions = []
        for name in request.prediction_models or config.prediction_models:
            model = self._models.get(name)
            if model is None:
                logger.warning("Unknown prediction model", extra={"sla_id": definition.id, "model": name})
                continue
            prediction = model.predict(series, horizon, step)
            if threshold is not None:
                prediction.breach_expected = any(
                    SLACalculator.is_breaching(p.value, threshold, definition.higher_is_better)
                    for p in prediction.points
                )
            predictions.append(prediction)
        return predictions

    def _root_causes(
        self,
        sla_id: str,
        window: TimeWindow,
        anomalies: List[Anomaly],
        config: AnalysisConfig,
    ) -> List[RootCauseHint]:
        radius = timedelta(minutes=config.root_cause_window_minutes)
        radius_seconds = radius.total_seconds()
        hints = []
        all_breaches = self._detector.get_breach_history(window=window)

        for breach in (b for b in all_breaches if b.sla_id == sla_id):
            around = TimeWindow(breach.start_time - radius, breach.start_time + radius)

            for anomaly in anomalies:
                if around.contains(anomaly.timestamp):
                    hints.append(RootCauseHint(
                        breach_id=breach.id,
                        kind="anomaly",
                        description=(
                            f"Anomalous value {anomaly.value:g} ({anomaly.method}, "
                            f"{anomaly.deviation:+.2f} sigma) near breach start"
                        ),
                        confidence=round(min(1.0, abs(anomaly.deviation) / (2 * config.anomaly_sensitivity)), 4),
                    ))

            for other in all_breaches:
                if other.sla_id == sla_id or not around.contains(other.start_time):
                    continue
                gap = abs((other.start_time - breach.start_time).total_seconds())
                hints.append(RootCauseHint(
                    breach_id=breach.id,
                    kind="correlated_breach",
                    description=(
                        f"SLA {other.sla_id} breached its {other.threshold} threshold "
                        f"{int(gap)}s from this breach"
                    ),
                    confidence=round(1 - gap / radius_seconds, 4),
                    related_sla_id=other.sla_id,
                ))

        return sorted(hints, key=lambda h: -h.confidence)

    @staticmethod
    def _recommendations(definition: SLADefinition, result: HistoricalAnalysis) -> List[str]:
        recommendations = []
        if result.summary is None:
            return ["No usable measurements in the analysis window"]
        if result.trend and result.trend.direction == TrendDirection.DEGRADING:
            recommendations.append(
                f"{definition.name} is degrading ({result.trend.change_percentage:+.2f}% over the window); "
                "investigate recent changes"
            )
        severe = [a for a in result.anomalies if a.severity in (Severity.CRITICAL, Severity.HIGH)]
        if severe:
            recommendations.append(f"Review {len(severe)} high-severity anomalies")
        if result.seasonality:
            recommendations.append(
                f"Plan capacity around the {result.seasonality.period}-{result.granularity} cycle"
            )
        for prediction in result.predictions:
            if prediction.breach_expected:
                recommendations.append(
                    f"The {prediction.model} forecast crosses a failure threshold; act before it does"
                )
        for correlation in result.correlations:
            if correlation.strength == "strong":
                recommendations.append(
                    f"Review the dependency between {correlation.sla_id} and {correlation.other_sla_id}"
                )
        return recommendations

    @staticmethod
    def _confidence(result: HistoricalAnalysis, config: AnalysisConfig) -> float:
        if result.summary is None:
            return 0.0
        data = min(1.0, result.summary.count / (config.anomaly_min_points * 3))
        fit = result.trend.r_squared if result.trend else 0.0
        return round(data * 0.7 + fit * 0.3, 4)
