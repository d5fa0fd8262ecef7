"""Historical analysis detectors, prediction models and the analyzer."""
from datetime import datetime, timedelta, timezone

import pytest

from core import ResourceNotFoundException
from sla.application.analysis import (
    AnalysisRequest, analyze_trend, anomaly_severity, bucket_start, correlate, detect_anomalies,
    detect_seasonality
)
from sla.application.interfaces import IPredictionModel
from sla.application.predictions import LinearTrendModel, MovingAverageModel
from sla.domain import Breach, MeasurementPoint
from sla.domain.results import PredictedPoint, Prediction, SeriesPoint

from conftest import T0


def _series(values, start=T0):
    return [SeriesPoint(timestamp=start + timedelta(hours=i), value=float(v)) for i, v in enumerate(values)]


@pytest.fixture
def hourly(store, clock):
    """Store one point per hour from T0 and move the clock past the last one."""

    def _hourly(sla_id, values):
        for i, value in enumerate(values):
            store.append(MeasurementPoint(sla_id=sla_id, timestamp=T0 + timedelta(hours=i), value=float(value)))
        clock.now = max(clock.now, T0 + timedelta(hours=len(values)))

    return _hourly


class TestDetectors:
    def test_trend_needs_three_points(self):
        assert analyze_trend([1.0, 2.0], 0.05, True) is None

    def test_trend_direction_follows_polarity(self):
        assert analyze_trend([100, 110, 120], 0.05, True).direction == "improving"
        assert analyze_trend([100, 110, 120], 0.05, False).direction == "degrading"
        assert analyze_trend([100, 100.1, 100], 0.05, True).direction == "stable"

    def test_trend_fit(self):
        trend = analyze_trend([1, 3, 5, 7], 0.05, True)
        assert trend.slope == pytest.approx(2.0)
        assert trend.intercept == pytest.approx(1.0)
        assert trend.r_squared == 1.0

    def test_seasonality_finds_period(self):
        result = detect_seasonality([0, 1, 2, 3, 2, 1] * 8, threshold=0.3, max_lag=168)
        assert result.period == 6
        assert result.correlation > 0.8

    def test_short_series_has_no_seasonality(self):
        assert detect_seasonality([1, 2, 3, 4, 5], threshold=0.3, max_lag=168) is None

    def test_anomaly_detectors(self):
        values = [100.0] * 20
        values[10] = 200.0
        anomalies = detect_anomalies(_series(values), sensitivity=2.0, algorithms=["zscore", "iqr"])

        assert {a.method for a in anomalies} == {"zscore", "iqr"}
        assert all(a.timestamp == T0 + timedelta(hours=10) for a in anomalies)
        assert all(a.severity == "critical" for a in anomalies)

    @pytest.mark.parametrize("sigmas,severity", [
        (3.01, "critical"), (3.0, "high"), (2.6, "high"), (2.5, "medium"), (2.1, "medium"),
        (2.0, "low"), (1.5, "low"), (-3.5, "critical"),
    ])
    def test_anomaly_severity_bands(self, sigmas, severity):
        assert anomaly_severity(sigmas) == severity

    def test_anomalies_need_minimum_points(self):
        assert detect_anomalies(_series([1, 100]), 2.0, ["zscore", "iqr"], min_points=10) == []

    def test_correlate_aligned_series(self):
        a = _series([1, 2, 3, 4, 5])
        b = _series([10, 8, 6, 4, 2])
        result = correlate("a", a, "b", b, min_correlation=0.5)
        assert result.coefficient == pytest.approx(-1.0)
        assert result.strength == "strong"
        assert result.sample_count == 5

    def test_correlate_needs_overlap(self):
        a = _series([1, 2, 3])
        b = _series([1, 2, 3], start=T0 + timedelta(hours=2))
        assert correlate("a", a, "b", b, min_correlation=0.5) is None

    def test_bucket_start(self):
        moment = datetime(2026, 1, 7, 15, 30, tzinfo=timezone.utc)
        assert bucket_start(moment, "hour") == datetime(2026, 1, 7, 15, tzinfo=timezone.utc)
        assert bucket_start(moment, "week") == datetime(2026, 1, 5, tzinfo=timezone.utc)
        assert bucket_start(moment, "month") == datetime(2026, 1, 1, tzinfo=timezone.utc)
        with pytest.raises(ValueError):
            bucket_start(moment, "minute")


class TestPredictionModels:
    def test_linear_extends_the_line(self):
        prediction = LinearTrendModel().predict(_series([1, 2, 3]), horizon=2, step=timedelta(hours=1))
        assert [p.value for p in prediction.points] == pytest.approx([4.0, 5.0])
        assert prediction.points[0].timestamp == T0 + timedelta(hours=3)
        assert prediction.confidence == 1.0

    def test_moving_average_is_flat(self):
        prediction = MovingAverageModel(window=2).predict(_series([1, 2, 3]), horizon=3, step=timedelta(hours=1))
        assert [p.value for p in prediction.points] == [2.5, 2.5, 2.5]

    def test_empty_series(self):
        assert LinearTrendModel().predict([], 3, timedelta(hours=1)).points == []
        assert MovingAverageModel().predict([], 3, timedelta(hours=1)).points == []


class _ConstantModel(IPredictionModel):
    name = "constant"

    def predict(self, series, horizon, step):
        last = series[-1].timestamp
        points = [PredictedPoint(last + step * i, 0.0, 0.0, 0.0) for i in range(1, horizon + 1)]
        return Prediction(model=self.name, points=points, confidence=1.0)


class TestHistoricalAnalyzer:
    def test_full_analysis(self, registry, analyzer, detector, make_sla, make_latency_sla, hourly):
        registry.register_sla(make_sla())
        registry.register_sla(make_latency_sla())
        hourly("checkout-availability", [99.9 - 0.2 * i for i in range(48)])
        hourly("search-latency", [300 + 10 * i for i in range(48)])
        latency_breach = Breach(
            sla_id="search-latency", threshold="critical", severity="critical",
            start_time=T0 + timedelta(hours=10, minutes=20), actual_value=900,
            target_value=300, impact_value=12.5,
        )
        checkout_breach = Breach(
            sla_id="checkout-availability", threshold="critical", severity="critical",
            start_time=T0 + timedelta(hours=10), actual_value=97.0,
            target_value=99.5, impact_value=1.0,
        )
        detector.restore([checkout_breach, latency_breach], [])

        [result] = analyzer.perform_historical_analysis(AnalysisRequest(sla_ids=["checkout-availability"]))

        assert result.summary.count == 48
        assert result.trend.direction == "degrading"
        assert [c.other_sla_id for c in result.correlations] == ["search-latency"]
        assert result.correlations[0].strength == "strong"
        assert {p.model for p in result.predictions} == {"linear", "moving_average"}
        assert all(len(p.points) == 24 for p in result.predictions)
        assert all(p.breach_expected for p in result.predictions)
        [hint] = result.root_causes
        assert hint.kind == "correlated_breach"
        assert hint.related_sla_id == "search-latency"
        assert hint.confidence == pytest.approx(0.6667)
        assert any("degrading" in r for r in result.recommendations)
        assert 0 < result.confidence <= 1

    def test_selected_analyses_only(self, registry, analyzer, make_sla, hourly):
        registry.register_sla(make_sla())
        hourly("checkout-availability", [99.9] * 12)
        [result] = analyzer.perform_historical_analysis(AnalysisRequest(
            sla_ids=["checkout-availability"], analysis_types=["trends"]
        ))
        assert result.trend.direction == "stable"
        assert result.predictions == []
        assert result.correlations == []

    def test_custom_prediction_model(self, registry, analyzer, make_sla, hourly):
        registry.register_sla(make_sla())
        hourly("checkout-availability", [99.9] * 12)
        analyzer.register_model(_ConstantModel())
        [result] = analyzer.perform_historical_analysis(AnalysisRequest(
            sla_ids=["checkout-availability"], analysis_types=["predictions"], prediction_models=["constant", "nope"]
        ))
        assert [p.model for p in result.predictions] == ["constant"]
        assert result.predictions[0].breach_expected

    def test_no_data(self, registry, analyzer, make_sla):
        registry.register_sla(make_sla())
        [result] = analyzer.perform_historical_analysis(AnalysisRequest(sla_ids=["checkout-availability"]))
        assert result.summary is None
        assert result.confidence == 0.0
        assert result.recommendations == ["No usable measurements in the analysis window"]

    def test_unknown_granularity(self, registry, analyzer, make_sla):
        registry.register_sla(make_sla())
        with pytest.raises(ValueError):
            analyzer.perform_historical_analysis(AnalysisRequest(
                sla_ids=["checkout-availability"], granularity="minute"
            ))

    def test_unknown_sla(self, analyzer):
        with pytest.raises(ResourceNotFoundException):
            analyzer.perform_historical_analysis(AnalysisRequest(sla_ids=["missing"]))
