"""Breach detection, lifecycle, escalation and patterns."""
from datetime import timedelta

import pytest

from core import DomainException, ResourceNotFoundException
from sla.domain import Breach, SLAEngineConfig
from sla.domain.events import (
    BreachDetected, BreachEscalated, BreachResolved, BreachUpdated, NotificationRequested
)

from conftest import T0


@pytest.fixture
def tick(calculator, detector, feed):
    """Feed one measurement per value, recalculating and detecting after each."""

    def _tick(sla_id, values):
        breaches = []
        for value in values:
            feed(sla_id, [value])
            metric = calculator.calculate_sla_metric(sla_id)
            breaches = detector.detect_breaches(sla_id, metric)
        return breaches

    return _tick


class TestDetection:
    def test_consecutive_failures_open_one_critical_breach(self, registry, detector, make_sla, tick, events):
        registry.register_sla(make_sla())

        assert tick("checkout-availability", [97.5]) == []
        tick("checkout-availability", [97.5, 97.5])

        active = detector.get_active_breaches()
        assert len(active) == 1
        breach = active[0]
        assert breach.threshold == "critical"
        assert breach.severity == "critical"
        assert breach.rule_id == "default-critical"
        assert breach.observations == 2
        assert breach.metadata["threshold_value"] == 98.0
        assert sum(isinstance(e, BreachDetected) for e in events) == 1
        assert sum(isinstance(e, BreachUpdated) for e in events) == 1
        assert any(isinstance(e, NotificationRequested) for e in events)

    def test_healthy_metric_does_not_close_breach(self, registry, detector, make_sla, tick):
        registry.register_sla(make_sla())
        tick("checkout-availability", [97.5, 97.5])
        assert tick("checkout-availability", [99.9, 99.9]) == []
        assert len(detector.get_active_breaches("checkout-availability")) == 1

    def test_lower_is_better_warning(self, registry, detector, make_latency_sla, tick):
        registry.register_sla(make_latency_sla())
        breaches = tick("search-latency", [500, 500])
        assert [(b.threshold, b.severity) for b in breaches] == [("warning", "medium")]

    def test_explicit_rule_requires_its_run_length(self, registry, make_sla, tick):
        registry.register_sla(make_sla(detection_rules=[
            {"id": "crit-3", "threshold": "critical", "consecutive_failures": 3},
        ]))
        assert tick("checkout-availability", [97.0, 97.0]) == []
        breaches = tick("checkout-availability", [97.0])
        assert [b.rule_id for b in breaches] == ["crit-3"]

    def test_run_broken_by_good_point(self, registry, make_sla, tick):
        registry.register_sla(make_sla(detection_rules=[
            {"id": "crit-2", "threshold": "critical", "consecutive_failures": 2},
        ]))
        # the window average stays below critical but the last two raw points do not both fail
        assert tick("checkout-availability", [90.0, 99.9]) == []
        assert tick("checkout-availability", [90.0]) == []
        assert len(tick("checkout-availability", [90.0])) == 1

    def test_grace_period_delays_breach(self, registry, config_provider, make_sla, tick):
        config_provider.update(SLAEngineConfig.model_validate({"detection": {"grace_period_seconds": 300}}))
        registry.register_sla(make_sla())
        assert tick("checkout-availability", [97.0, 97.0, 97.0]) == []
        breaches = tick("checkout-availability", [97.0, 97.0, 97.0])
        assert [b.threshold for b in breaches] == ["critical"]

    def test_all_bands_when_not_most_severe_only(self, registry, config_provider, make_sla, tick):
        config_provider.update(SLAEngineConfig.model_validate({"detection": {"most_severe_only": False}}))
        registry.register_sla(make_sla())
        breaches = tick("checkout-availability", [97.0, 97.0])
        assert sorted(b.threshold for b in breaches) == ["critical", "warning"]

    def test_unknown_metric_detects_nothing(self, registry, calculator, detector, make_sla):
        registry.register_sla(make_sla())
        metric = calculator.calculate_sla_metric("checkout-availability")
        assert detector.detect_breaches("checkout-availability", metric) == []

    def test_unknown_sla(self, calculator, detector, registry, make_sla):
        registry.register_sla(make_sla())
        metric = calculator.calculate_sla_metric("checkout-availability")
        with pytest.raises(ResourceNotFoundException):
            detector.detect_breaches("missing", metric)


class TestEscalation:
    def test_levels_increase_once_per_timeout(self, registry, detector, make_sla, tick, clock, events):
        registry.register_sla(make_sla())
        breach = tick("checkout-availability", [97.5, 97.5])[0]

        assert detector.check_escalations() == []
        clock.advance(minutes=6)
        first = detector.check_escalations()
        clock.advance(minutes=6)
        second = detector.check_escalations()

        assert [e.level for e in first + second] == [1, 2]
        assert first[0].escalated_to == ["team-lead@company.com"]
        assert second[0].escalated_to == ["manager@company.com"]
        assert breach.escalation_level == 2
        assert [e.level for e in detector.get_escalations(breach.id)] == [1, 2]
        assert sum(isinstance(e, BreachEscalated) for e in events) == 2

    def test_acknowledged_breach_does_not_escalate(self, registry, detector, make_sla, tick, clock):
        registry.register_sla(make_sla())
        breach = tick("checkout-availability", [97.5, 97.5])[0]
        detector.acknowledge_breach(breach.id, "alice", "on it")
        clock.advance(hours=1)
        assert detector.check_escalations() == []
        assert breach.escalation_level == 0

    def test_max_escalation_level(self, registry, detector, config_provider, make_sla, tick, clock):
        config_provider.update(SLAEngineConfig.model_validate({"detection": {"max_escalation_level": 1}}))
        registry.register_sla(make_sla())
        tick("checkout-availability", [97.5, 97.5])
        clock.advance(minutes=6)
        assert len(detector.check_escalations()) == 1
        clock.advance(minutes=6)
        assert detector.check_escalations() == []

    def test_unregistered_sla_stops_escalating(self, registry, detector, make_sla, tick, clock):
        registry.register_sla(make_sla())
        breach = tick("checkout-availability", [97.5, 97.5])[0]
        registry.unregister_sla("checkout-availability")

        clock.advance(minutes=6)
        assert detector.check_escalations() == []
        assert breach.escalation_level == 0
        assert detector.get_escalations(breach.id) == []


class TestLifecycle:
    def test_acknowledge_then_resolve(self, registry, detector, make_sla, tick, clock, events):
        registry.register_sla(make_sla())
        breach = tick("checkout-availability", [97.5, 97.5])[0]
        start = breach.start_time

        clock.advance(minutes=5)
        detector.acknowledge_breach(breach.id, "alice")
        clock.advance(minutes=25)
        resolved = detector.resolve_breach(breach.id, "alice", "rolled back", root_cause="deploy")

        assert resolved.status == "resolved"
        assert resolved.end_time - start == timedelta(minutes=30)
        assert detector.get_active_breaches() == []
        assert isinstance(
            next(e for e in reversed(events) if not isinstance(e, NotificationRequested)),
            BreachResolved,
        )

    def test_resolve_frees_the_band(self, registry, detector, make_sla, tick):
        registry.register_sla(make_sla())
        first = tick("checkout-availability", [97.5, 97.5])[0]
        detector.resolve_breach(first.id, "alice", "fixed")
        second = tick("checkout-availability", [97.5])[0]
        assert second.id != first.id
        assert second.observations == 1

    def test_double_resolve_rejected(self, registry, detector, make_sla, tick):
        registry.register_sla(make_sla())
        breach = tick("checkout-availability", [97.5, 97.5])[0]
        detector.resolve_breach(breach.id, "alice", "fixed")
        with pytest.raises(DomainException):
            detector.resolve_breach(breach.id, "alice", "fixed")
        with pytest.raises(DomainException):
            detector.acknowledge_breach(breach.id, "alice")

    def test_unknown_breach(self, detector):
        with pytest.raises(ResourceNotFoundException):
            detector.get_breach("missing")
        with pytest.raises(ResourceNotFoundException):
            detector.acknowledge_breach("missing", "alice")

    def test_statistics(self, registry, detector, make_sla, tick, clock):
        registry.register_sla(make_sla())
        breach = tick("checkout-availability", [97.5, 97.5])[0]
        clock.advance(minutes=30)
        detector.resolve_breach(breach.id, "alice", "fixed", root_cause="deploy")

        stats = detector.get_breach_statistics("checkout-availability")

        assert stats.total_breaches == 1
        assert stats.resolved_breaches == 1
        assert stats.average_resolution_seconds == pytest.approx(1800)
        assert stats.breaches_by_severity == {"critical": 1}
        assert stats.most_frequent_causes == [{"cause": "deploy", "count": 1}]


def _resolved_breach(hours_ago: float, minutes_open: float = 10) -> Breach:
    start = T0 - timedelta(hours=hours_ago)
    breach = Breach(
        sla_id="checkout-availability",
        threshold="critical",
        severity="critical",
        start_time=start,
        actual_value=97.0,
        target_value=99.5,
        impact_value=1.0,
    )
    breach.resolve("alice", "fixed", start + timedelta(minutes=minutes_open))
    return breach


class TestPatterns:
    def test_frequent_and_recurring(self, registry, detector, make_sla):
        registry.register_sla(make_sla())
        detector.restore([_resolved_breach(h) for h in (5, 4, 3, 2, 1)], [])

        patterns = {p.type: p for p in detector.analyze_breach_patterns("checkout-availability")}

        assert set(patterns) == {"frequent", "recurring"}
        assert patterns["frequent"].frequency == 5
        assert patterns["recurring"].severity == "critical"

    def test_persistent(self, registry, detector, make_sla):
        registry.register_sla(make_sla())
        detector.restore([_resolved_breach(3, minutes_open=90)], [])
        patterns = detector.analyze_breach_patterns("checkout-availability")
        assert [p.type for p in patterns] == ["persistent"]

    def test_irregular_history_has_no_pattern(self, registry, detector, make_sla):
        registry.register_sla(make_sla())
        detector.restore([_resolved_breach(h) for h in (30, 20, 3)], [])
        assert detector.analyze_breach_patterns("checkout-availability") == []

    def test_restore_reopens_open_breaches(self, registry, detector, make_sla):
        registry.register_sla(make_sla())
        open_breach = Breach(
            sla_id="checkout-availability", threshold="warning", severity="medium",
            start_time=T0 - timedelta(minutes=10), actual_value=98.5, target_value=99.5, impact_value=0.5,
        )
        detector.restore([open_breach, _resolved_breach(2)], [])
        assert [b.id for b in detector.get_active_breaches()] == [open_breach.id]
        assert len(detector.get_breach_history("checkout-availability")) == 2
