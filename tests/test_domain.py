"""Domain value objects, entities and statistics."""
import json
import math
from datetime import timedelta

import pytest

from core import DomainException
from sla.domain import (
    Breach, MeasurementPoint, SLACalculator, SLADefinition, SLAEngineConfig, TimeWindow
)
from sla.domain import statistics

from conftest import T0


def _make_breach(**overrides) -> Breach:
    data = {
        "sla_id": "checkout-availability",
        "threshold": "critical",
        "severity": "critical",
        "start_time": T0,
        "actual_value": 97.5,
        "target_value": 99.5,
        "impact_value": 0.51,
    }
    data.update(overrides)
    return Breach(**data)


class TestSLACalculator:
    def test_compliance_higher_is_better(self):
        assert SLACalculator.raw_compliance(97.5, 99.5, True) == pytest.approx(97.9899, abs=1e-4)

    def test_compliance_lower_is_better(self):
        # 450ms against a 300ms target is 50% over target
        assert SLACalculator.raw_compliance(450, 300, False) == pytest.approx(50.0)
        assert SLACalculator.raw_compliance(150, 300, False) == pytest.approx(150.0)

    def test_compliance_percentage_is_clamped(self):
        assert SLACalculator.compliance_percentage(150, 300, False) == 100.0
        assert SLACalculator.compliance_percentage(1000, 300, False) == 0.0

    def test_zero_target_is_nan(self):
        assert math.isnan(SLACalculator.compliance_percentage(1, 0, True))

    def test_status_bands(self, make_sla):
        definition = SLADefinition.model_validate(make_sla())
        assert SLACalculator.determine_status(definition, 99.9) == "compliant"
        assert SLACalculator.determine_status(definition, 98.5) == "at_risk"
        assert SLACalculator.determine_status(definition, 97.5) == "breached"

    def test_status_above_target_never_breaches(self, make_latency_sla):
        definition = SLADefinition.model_validate(make_latency_sla())
        assert SLACalculator.determine_status(definition, 100) == "compliant"
        assert SLACalculator.determine_status(definition, 500) == "at_risk"
        assert SLACalculator.determine_status(definition, 900) == "breached"

    def test_is_breaching_respects_polarity(self):
        assert SLACalculator.is_breaching(97, 98, higher_is_better=True)
        assert not SLACalculator.is_breaching(99, 98, higher_is_better=True)
        assert SLACalculator.is_breaching(900, 800, higher_is_better=False)

    @pytest.mark.parametrize("band,severity", [
        ("critical", "critical"), ("escalation", "high"), ("warning", "medium"), ("target", "low"),
    ])
    def test_severity_for_band(self, band, severity):
        assert SLACalculator.severity_for_band(band) == severity

    def test_impact_percentage(self):
        assert SLACalculator.impact_percentage(97.5, 98.0) == pytest.approx(0.51)
        assert SLACalculator.impact_percentage(5, 0) == 0.0


class TestSLADefinition:
    def test_target_threshold_defaults_to_target_value(self, make_sla):
        definition = SLADefinition.model_validate(make_sla())
        assert definition.thresholds.target == 99.5
        assert definition.configured_thresholds() == {"target": 99.5, "warning": 99.0, "critical": 98.0}

    def test_definition_is_immutable(self, make_sla):
        definition = SLADefinition.model_validate(make_sla())
        with pytest.raises(Exception):
            definition.target_value = 50

    def test_active_maintenance(self, make_sla):
        definition = SLADefinition.model_validate(make_sla(maintenance_windows=[
            {"name": "db upgrade", "start_time": T0, "end_time": T0 + timedelta(hours=1)},
        ]))
        assert definition.active_maintenance(T0 + timedelta(minutes=30)).name == "db upgrade"
        assert definition.active_maintenance(T0 + timedelta(hours=1)) is None

    def test_json_round_trip(self, make_sla):
        definition = SLADefinition.model_validate(make_sla(
            detection_rules=[{"id": "r1", "threshold": "critical", "consecutive_failures": 3}],
            notifications=[{"id": "n1", "severity": "critical", "channels": ["slack"]}],
            tags={"team": "payments"},
        ))
        restored = SLADefinition.model_validate_json(definition.model_dump_json())
        assert restored == definition


class TestTimeWindow:
    def test_end_before_start_rejected(self):
        with pytest.raises(ValueError):
            TimeWindow(T0, T0 - timedelta(seconds=1))

    def test_split_last_part_may_be_shorter(self):
        window = TimeWindow(T0, T0 + timedelta(minutes=50))
        parts = window.split(timedelta(minutes=20))
        assert [p.duration for p in parts] == [
            timedelta(minutes=20), timedelta(minutes=20), timedelta(minutes=10)
        ]

    def test_split_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            TimeWindow(T0, T0 + timedelta(hours=1)).split(timedelta(0))


class TestBreachLifecycle:
    def test_acknowledge_then_resolve(self):
        breach = _make_breach()
        breach.acknowledge("alice", T0 + timedelta(minutes=5), "looking")
        assert breach.status == "acknowledged"
        breach.resolve("alice", "failover", T0 + timedelta(minutes=30))
        assert breach.status == "resolved"
        assert breach.duration == timedelta(minutes=30)
        assert not breach.is_open

    def test_acknowledge_twice_rejected(self):
        breach = _make_breach()
        breach.acknowledge("alice", T0)
        with pytest.raises(DomainException):
            breach.acknowledge("bob", T0)

    def test_resolve_twice_rejected(self):
        breach = _make_breach()
        breach.resolve("alice", "fixed", T0)
        with pytest.raises(DomainException):
            breach.resolve("alice", "fixed", T0)

    def test_resolved_breach_cannot_be_updated(self):
        breach = _make_breach()
        breach.resolve("alice", "fixed", T0)
        with pytest.raises(DomainException):
            breach.record_observation(97.0, 1.0, T0)

    def test_record_observation_extends_breach(self):
        breach = _make_breach()
        breach.record_observation(97.0, 1.02, T0 + timedelta(minutes=2))
        assert breach.observations == 2
        assert breach.actual_value == 97.0
        assert breach.duration == timedelta(minutes=2)

    def test_json_round_trip(self):
        breach = _make_breach(metadata={"threshold_value": 98.0})
        breach.acknowledge("alice", T0 + timedelta(minutes=1))
        breach.record_escalation(1, T0 + timedelta(minutes=6))
        restored = Breach.model_validate_json(breach.model_dump_json())
        assert restored == breach
        assert restored.start_time.tzinfo is not None


class TestMeasurementPoint:
    def test_nan_survives_json(self):
        point = MeasurementPoint(sla_id="s", timestamp=T0, value=float("nan"), is_valid=False)
        document = json.loads(point.model_dump_json())
        assert document["value"] == "NaN"
        json.dumps(document, allow_nan=False)
        restored = MeasurementPoint.model_validate(document)
        assert math.isnan(restored.value)
        assert not restored.is_usable


class TestStatistics:
    def test_percentile_nearest_rank_below(self):
        values = list(range(1, 11))
        assert statistics.percentile(values, 95) == 10
        assert statistics.percentile(values, 50) == 6
        assert statistics.percentile(values, 0) == 1

    def test_percentile_empty_raises(self):
        with pytest.raises(ValueError):
            statistics.percentile([], 95)

    @pytest.mark.parametrize("method,expected", [
        ("avg", 2.5), ("min", 1.0), ("max", 4.0), ("sum", 10.0), ("count", 4.0), ("percentile", 4.0),
    ])
    def test_aggregate_methods(self, method, expected):
        result = statistics.aggregate([1, 2, 3, 4], method, 95)
        assert result.value == expected
        assert result.count == 4
        assert result.average == 2.5

    def test_aggregate_unknown_method(self):
        with pytest.raises(ValueError):
            statistics.aggregate([1.0], "median")

    def test_linear_fit_perfect_line(self):
        slope, intercept, r_squared = statistics.linear_fit([0, 1, 2, 3], [1, 3, 5, 7])
        assert slope == pytest.approx(2.0)
        assert intercept == pytest.approx(1.0)
        assert r_squared == pytest.approx(1.0)

    def test_linear_fit_constant_x(self):
        assert statistics.linear_fit([1, 1, 1], [1, 2, 3]) == (0.0, 2.0, 0.0)

    def test_pearson_undefined_for_constant(self):
        assert statistics.pearson([1, 2, 3], [5, 5, 5]) is None
        assert statistics.pearson([1], [1]) is None
        assert statistics.pearson([1, 2, 3], [3, 2, 1]) == pytest.approx(-1.0)

    def test_autocorrelation_of_periodic_series(self):
        values = [0, 1, 2, 3, 2, 1] * 8
        assert statistics.autocorrelation(values, 6) > statistics.autocorrelation(values, 3)
        assert statistics.autocorrelation([5, 5, 5, 5], 1) == 0.0

    def test_coefficient_of_variation(self):
        assert statistics.coefficient_of_variation([10, 10, 10]) == 0.0
        assert statistics.coefficient_of_variation([]) == 0.0


class TestEngineConfig:
    def test_empty_config_uses_defaults(self):
        config = SLAEngineConfig.model_validate({})
        assert config.detection.escalation_timeouts["critical"] == 300
        assert config.detection.default_consecutive_failures == 2

    def test_partial_timeouts_are_filled(self):
        config = SLAEngineConfig.model_validate({"detection": {"escalation_timeouts": {"critical": 60}}})
        assert config.detection.escalation_timeouts["critical"] == 60
        assert config.detection.escalation_timeouts["low"] == 3600

    def test_unknown_severity_rejected(self):
        with pytest.raises(Exception):
            SLAEngineConfig.model_validate({"detection": {"escalation_timeouts": {"urgent": 60}}})

    def test_recipients_beyond_table_use_last_level(self):
        detection = SLAEngineConfig().detection
        assert detection.recipients_for_level(1) == ["team-lead@company.com"]
        assert detection.recipients_for_level(9) == ["cto@company.com"]

    def test_section_digest_changes_with_content(self):
        a = SLAEngineConfig()
        b = SLAEngineConfig.model_validate({"scoring": {"method": "geometric"}})
        assert a.section_digest("scoring") != b.section_digest("scoring")
        assert a.section_digest("detection") == b.section_digest("detection")
