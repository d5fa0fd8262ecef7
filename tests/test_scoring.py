"""Compliance scoring, grading and score trends."""
from datetime import timedelta

import pytest

from core import ResourceNotFoundException
from sla.application.scoring import ComplianceScorer, ScoringContext
from sla.domain import Breach, BusinessContext, SLAEngineConfig, TimeWindow
from sla.domain.engine_config import ScoringConfig
from sla.domain.events import ScoreCalculated


def _breach(clock, severity="critical", hours=1.0, escalation_level=0, resolved=True) -> Breach:
    start = clock() - timedelta(hours=hours)
    breach = Breach(
        sla_id="checkout-availability",
        threshold="critical" if severity == "critical" else "warning",
        severity=severity,
        start_time=start,
        actual_value=97.0,
        target_value=99.5,
        impact_value=1.0,
        escalation_level=escalation_level,
    )
    if resolved:
        breach.resolve("alice", "fixed", clock())
    return breach


class TestComplianceScore:
    def test_no_data_scores_breach_component_only(self, registry, scorer, make_sla):
        registry.register_sla(make_sla())
        score = scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))

        assert score.overall_score == 15.0
        assert score.grade.grade == "F"
        assert score.confidence == 0
        assert score.recommendations == ["Collect measurements for this SLA before relying on its score"]
        assert score.components["availability"].normalized_value == 0
        assert score.components["breach_impact"].normalized_value == 100

    def test_perfect_compliance(self, registry, scorer, make_sla, feed):
        registry.register_sla(make_sla())
        feed("checkout-availability", [100.0] * 60)

        score = scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))

        assert score.overall_score == 100.0
        assert score.grade.grade == "A+"
        assert score.bonuses == {"perfect_compliance": 2.0}
        assert score.confidence > 0.9

    @pytest.mark.parametrize("method", ["weighted", "geometric", "harmonic"])
    def test_score_is_always_within_bounds(self, registry, scorer, config_provider, make_sla, feed, clock, method):
        config_provider.update(SLAEngineConfig.model_validate({"scoring": {"method": method}}))
        registry.register_sla(make_sla())
        feed("checkout-availability", [100.0, 0.0, 250.0, 99.0, 50.0] * 6)
        storms = [_breach(clock, hours=h, escalation_level=4, resolved=False) for h in (1, 5, 30)]

        for breaches in (None, [], storms):
            score = scorer.calculate_compliance_score(ScoringContext(
                sla_id="checkout-availability", breaches=breaches, use_cache=False
            ))
            assert 0 <= score.overall_score <= 100
            assert score.method == method

    def test_breach_impact_penalty(self, registry, scorer, make_sla, clock):
        registry.register_sla(make_sla())
        # critical x3, one hour falls in the second duration bucket, plus one escalation
        breach = _breach(clock, hours=1, escalation_level=1)
        score = scorer.calculate_compliance_score(ScoringContext(
            sla_id="checkout-availability", metrics=[], breaches=[breach]
        ))
        assert score.components["breach_impact"].normalized_value == pytest.approx(64.25)
        assert score.components["breach_impact"].confidence == 1.0

    def test_minimum_score_recommendation(self, registry, scorer, make_sla, clock):
        registry.register_sla(make_sla())
        score = scorer.calculate_compliance_score(ScoringContext(
            sla_id="checkout-availability",
            metrics=[],
            breaches=[_breach(clock)],
            business_context=BusinessContext(minimum_score=90),
        ))
        assert any("below the contractual minimum of 90" in r for r in score.recommendations)

    def test_cached_within_ttl(self, registry, scorer, make_sla, feed):
        registry.register_sla(make_sla())
        feed("checkout-availability", [99.9] * 10)
        first = scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))
        assert scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability")) is first

        scorer.invalidate("checkout-availability")
        assert scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability")) is not first

    def test_rolling_window_hits_cache_while_clock_moves(self, registry, scorer, make_sla, feed, clock):
        registry.register_sla(make_sla())
        feed("checkout-availability", [99.9] * 10)
        first = scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))

        for _ in range(200):
            clock.advance(1)
            assert scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability")) is first
        assert scorer.cache_size == 1

    def test_expired_entries_are_evicted(self, registry, scorer, make_sla, clock):
        registry.register_sla(make_sla())
        first = scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))

        clock.advance(901)
        second = scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))
        window = TimeWindow(start=clock() - timedelta(hours=2), end=clock())
        scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability", time_window=window))

        assert second is not first
        assert scorer.cache_size == 2
        clock.advance(901)
        scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))
        assert scorer.cache_size == 1

    def test_explicit_inputs_bypass_cache(self, registry, scorer, make_sla):
        registry.register_sla(make_sla())
        first = scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability", metrics=[]))
        second = scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability", metrics=[]))
        assert first is not second

    def test_trend_against_previous_scores(self, registry, scorer, make_sla, feed):
        registry.register_sla(make_sla())
        scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))
        feed("checkout-availability", [100.0] * 60)

        score = scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))

        assert [t.period_days for t in score.trends] == [7, 30, 90]
        assert all(t.direction == "improving" for t in score.trends)
        assert score.trends[0].change == pytest.approx(85.0)
        assert len(scorer.get_historical_scores("checkout-availability")) == 2

    def test_publishes_score(self, registry, scorer, make_sla, events):
        registry.register_sla(make_sla())
        scorer.calculate_compliance_score(ScoringContext(sla_id="checkout-availability"))
        assert isinstance(events[-1], ScoreCalculated)

    def test_unknown_sla(self, scorer):
        with pytest.raises(ResourceNotFoundException):
            scorer.calculate_compliance_score(ScoringContext(sla_id="missing"))


class TestGrades:
    @pytest.mark.parametrize("score,grade", [
        (100, "A+"), (97, "A+"), (96.99, "A"), (92, "A-"), (85, "B"), (60, "D"), (59.99, "F"), (0, "F"),
    ])
    def test_grade_scale(self, score, grade):
        assert ComplianceScorer.grade_for(score, ScoringConfig()).grade == grade

    def test_grade_of_latest_score(self, registry, scorer, make_sla):
        registry.register_sla(make_sla())
        assert scorer.get_compliance_grade("checkout-availability").grade == "F"
        assert len(scorer.get_historical_scores("checkout-availability")) == 1
        assert scorer.get_compliance_grade("checkout-availability").grade == "F"
        assert len(scorer.get_historical_scores("checkout-availability")) == 1
