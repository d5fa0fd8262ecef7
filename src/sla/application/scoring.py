"""
Compliance Scoring
==================

Weighted, penalty and bonus adjusted compliance score for an SLA over a
time window.

Components (each normalized to 0-100):
- availability: share of sub-window metrics that were not breached
- performance: mean compliance percentage
- reliability: penalizes volatility of the measured values
- breach_impact: 100 minus severity and duration weighted breach penalties
- business_context: compliance deficit amplified by business criticality

The combined score plus bonuses is clamped to [0, 100]. Scores are cached
per (sla, window, definition version, scoring config digest).
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import numpy as np

from config import (
    BreachStatus, CriticalityLevel, SLAStatus, TrendDirection
)
from shared.infrastructure.events import EventBus
from shared.infrastructure.logging import get_logger, log_latency
from sla.application.breaches import BreachDetector
from sla.application.interfaces import Clock, ISLAConfigProvider, utc_now
from sla.application.tracking import MetricCalculator, SLARegistry
from sla.domain import Breach, BusinessContext, SLADefinition, SLAMetric, TimeWindow
from sla.domain import statistics
from sla.domain.engine_config import ScoringConfig
from sla.domain.events import ScoreCalculated
from sla.domain.results import ComplianceGrade, ComplianceScore, ScoreComponent, ScoreTrend

logger = get_logger(__name__)

CRITICALITY_MULTIPLIERS = {
    CriticalityLevel.LOW: 0.8,
    CriticalityLevel.MEDIUM: 1.0,
    CriticalityLevel.HIGH: 1.2,
    CriticalityLevel.CRITICAL: 1.5,
}
BUSINESS_HOURS_MULTIPLIER = 1.1
HISTORY_SUB_WINDOWS = 24


@dataclass
class ScoringContext:
    """
    Inputs for one score calculation.

    Metrics and breaches left as None are gathered from the calculator and
    the breach detector; explicit inputs bypass the cache.
    """
    sla_id: str
    time_window: Optional[TimeWindow] = None
    metrics: Optional[List[SLAMetric]] = None
    breaches: Optional[List[Breach]] = None
    business_context: Optional[BusinessContext] = None
    use_cache: bool = True


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    if not math.isfinite(value):
        return low
    return max(low, min(high, value))


class ComplianceScorer:
    """Computes, caches and keeps a history of compliance scores."""

    def __init__(
        self,
        registry: SLARegistry,
        calculator: MetricCalculator,
        detector: BreachDetector,
        config_provider: ISLAConfigProvider,
        event_bus: EventBus,
        clock: Clock = utc_now,
    ):
        self._registry = registry
        self._calculator = calculator
        self._detector = detector
        self._config_provider = config_provider
        self._bus = event_bus
        self._clock = clock
        self._cache: Dict[Tuple, ComplianceScore] = {}
        self._history: Dict[str, List[ComplianceScore]] = {}

    def calculate_compliance_score(self, context: ScoringContext) -> ComplianceScore:
        """
        Score an SLA over a window.

        Empty inputs give a score whose components have zero confidence
        rather than an error.

        Raises:
            ResourceNotFoundException: unknown SLA
        """
        definition = self._registry.get(context.sla_id)
        engine_config = self._config_provider.get_config()
        config = engine_config.scoring
        config_version = engine_config.section_digest("scoring")
        now = self._clock()
        window = context.time_window or self._calculator.default_window(definition, now)

        explicit = context.metrics is not None or context.breaches is not None or context.business_context is not None
        if context.time_window is None:
            # the default window slides with the clock
            cache_key = (definition.id, "rolling", window.duration, definition.version, config_version)
        else:
            cache_key = (definition.id, window.start, window.end, definition.version, config_version)
        if context.use_cache and not explicit:
            cached = self._cache.get(cache_key)
            if cached and (now - cached.calculated_at).total_seconds() < config.cache_ttl_seconds:
                return cached

        with log_latency(logger, "compliance_score", sla_id=definition.id):
            metrics = context.metrics
            if metrics is None:
                metrics = self._calculator.get_sla_history(
                    definition.id, window, window.duration / HISTORY_SUB_WINDOWS
                )
            breaches = context.breaches
            if breaches is None:
                breaches = self._detector.get_breaches_overlapping(definition.id, window)
            business = context.business_context or definition.business_context

            score = self._score(definition, window, metrics, breaches, business, config, config_version, now)

        if not explicit:
            self._evict_expired(now, config.cache_ttl_seconds)
            self._cache[cache_key] = score
        self._remember(score, config)

        logger.info(
            "Compliance score calculated",
            extra={
                "sla_id": definition.id,
                "overall_score": score.overall_score,
                "grade": score.grade.grade,
                "confidence": score.confidence,
            }
        )
        self._bus.publish(ScoreCalculated(sla_id=definition.id, score=score))
        return score

    # ========== Components ==========

    def _score(
        self,
        definition: SLADefinition,
        window: TimeWindow,
        metrics: List[SLAMetric],
        breaches: List[Breach],
        business: BusinessContext,
        config: ScoringConfig,
        config_version: str,
        now: datetime,
    ) -> ComplianceScore:
        valued = [m for m in metrics if m.has_value and m.compliance_percentage is not None]
        data_confidence = self._data_confidence(metrics, valued)
        has_data = bool(valued) or bool(breaches)

        weights = self._normalized_weights(config)
        raw = {
            "availability": self._availability(valued),
            "performance": self._performance(valued),
            "reliability": self._reliability(valued, config),
            "breach_impact": self._breach_impact(breaches, config, now),
            "business_context": self._business_context(valued, business),
        }
        confidences = {
            "availability": data_confidence,
            "performance": data_confidence,
            "reliability": data_confidence,
            "breach_impact": 1.0 if has_data else 0.0,
            "business_context": data_confidence,
        }

        components = {}
        for name, (value, factors) in raw.items():
            normalized = _clamp(value)
            components[name] = ScoreComponent(
                name=name,
                weight=weights[name],
                raw_value=value,
                normalized_value=normalized,
                weighted_value=normalized * weights[name],
                confidence=round(confidences[name], 4),
                factors=factors,
            )

        base = self._combine(components, config.method)
        bonuses = self._bonuses(valued, breaches, config)
        overall = round(_clamp(base + sum(bonuses.values())), 2)

        grade = self.grade_for(overall, config)
        confidence = sum(c.weight * c.confidence for c in components.values())

        return ComplianceScore(
            sla_id=definition.id,
            time_window=window,
            overall_score=overall,
            components=components,
            bonuses=bonuses,
            grade=grade,
            trends=self._trends(definition.id, overall, config, now),
            recommendations=self._recommendations(overall, components, grade, business, has_data, config),
            confidence=round(confidence, 4),
            method=config.method,
            config_version=config_version,
            calculated_at=now,
        )

    @staticmethod
    def _normalized_weights(config: ScoringConfig) -> Dict[str, float]:
        weights = config.weights.model_dump()
        total = sum(weights.values())
        if total <= 0:
            return {name: 1.0 / len(weights) for name in weights}
        return {name: value / total for name, value in weights.items()}

    @staticmethod
    def _data_confidence(metrics: List[SLAMetric], valued: List[SLAMetric]) -> float:
        """Completeness of the window, boosted by sample volume."""
        if not metrics or not valued:
            return 0.0
        completeness = len(valued) / len(metrics)
        samples = sum(len(m.measurements) for m in valued)
        confidence = completeness * 0.8
        if samples >= 24:
            confidence += 0.15
        if samples >= 168:
            confidence += 0.05
        return min(1.0, confidence)

    @staticmethod
    def _availability(valued: List[SLAMetric]) -> Tuple[float, List[str]]:
        if not valued:
            return 0.0, ["No measurements in window"]
        healthy = sum(1 for m in valued if m.status != SLAStatus.BREACHED)
        return healthy / len(valued) * 100, [f"{healthy}/{len(valued)} periods not breached"]

    @staticmethod
    def _performance(valued: List[SLAMetric]) -> Tuple[float, List[str]]:
        if not valued:
            return 0.0, ["No measurements in window"]
        mean = sum(m.compliance_percentage for m in valued) / len(valued)
        return mean, [f"Mean compliance {mean:.2f}%"]

    @staticmethod
    def _reliability(valued: List[SLAMetric], config: ScoringConfig) -> Tuple[float, List[str]]:
        if not valued:
            return 0.0, ["No measurements in window"]
        values = [p.value for m in valued for p in m.measurements] or [m.current_value for m in valued]
        cv = statistics.coefficient_of_variation(values)
        return 100 - cv * 100 * config.volatility_weight, [f"Coefficient of variation {cv:.4f}"]

    @staticmethod
    def _duration_bucket(duration_seconds: float, config: ScoringConfig) -> int:
        return sum(1 for bound in config.penalties.duration_buckets_seconds if duration_seconds >= bound)

    def _breach_impact(
        self,
        breaches: List[Breach],
        config: ScoringConfig,
        now: datetime
    ) -> Tuple[float, List[str]]:
        penalties = config.penalties
        total = 0.0
        for breach in breaches:
            end = breach.end_time if not breach.is_open else now
            duration = max(0.0, ((end or now) - breach.start_time).total_seconds())
            multiplier = penalties.severity_multipliers.get(breach.severity, 1.0)
            total += (
                penalties.breach_penalty
                * multiplier
                * penalties.duration_factor ** self._duration_bucket(duration, config)
            )
            total += penalties.escalation_penalty * breach.escalation_level
        factors = [f"{len(breaches)} breaches, penalty {total:.2f}"] if breaches else ["No breaches"]
        return max(0.0, 100 - total), factors

    @staticmethod
    def _business_context(valued: List[SLAMetric], business: BusinessContext) -> Tuple[float, List[str]]:
        if not valued:
            return 0.0, ["No measurements in window"]
        performance = sum(m.compliance_percentage for m in valued) / len(valued)
        deficit = 100 - performance
        multiplier = CRITICALITY_MULTIPLIERS.get(business.criticality_level, 1.0)
        if business.business_hours:
            multiplier *= BUSINESS_HOURS_MULTIPLIER
        multiplier *= business.seasonal_factor

        value = 100 - deficit * multiplier
        factors = [f"criticality {business.criticality_level} (x{multiplier:.2f})"]
        if business.user_impact > 0.8:
            value -= 5
            factors.append("high user impact")
        if business.revenue_impact > 0.5:
            value -= business.revenue_impact * 10
            factors.append("high revenue impact")
        return value, factors

    @staticmethod
    def _combine(components: Dict[str, ScoreComponent], method: str) -> float:
        if method == "geometric":
            log_sum = sum(c.weight * math.log(max(c.normalized_value, 1e-9)) for c in components.values())
            return math.exp(log_sum)
        if method == "harmonic":
            denominator = sum(c.weight / max(c.normalized_value, 1e-9) for c in components.values())
            return 1.0 / denominator if denominator > 0 else 0.0
        return sum(c.weighted_value for c in components.values())

    @staticmethod
    def _bonuses(
        valued: List[SLAMetric],
        breaches: List[Breach],
        config: ScoringConfig
    ) -> Dict[str, float]:
        bonuses: Dict[str, float] = {}
        if valued and not breaches:
            bonuses["perfect_compliance"] = config.bonuses.perfect_compliance

        resolved = [b for b in breaches if b.status == BreachStatus.RESOLVED and b.resolved_at]
        if resolved:
            mean_ttr = sum((b.resolved_at - b.start_time).total_seconds() for b in resolved) / len(resolved)
            if mean_ttr < config.bonuses.early_resolution_target_seconds:
                bonuses["early_resolution"] = config.bonuses.early_resolution

        if any(b.acknowledged_at is not None and b.escalation_level == 0 for b in breaches):
            bonuses["proactive_action"] = config.bonuses.proactive_action
        return bonuses

    # ========== Grades, trends, recommendations ==========

    @staticmethod
    def grade_for(score: float, config: ScoringConfig) -> ComplianceGrade:
        scale = sorted(config.grade_scale, key=lambda band: band.min_score, reverse=True)
        for band in scale:
            if score >= band.min_score:
                return ComplianceGrade(
                    score=score, grade=band.grade, description=band.description,
                    recommendations=list(band.recommendations),
                )
        lowest = scale[-1] if scale else None
        return ComplianceGrade(
            score=score,
            grade=lowest.grade if lowest else "F",
            description=lowest.description if lowest else "Critical compliance failure",
            recommendations=list(lowest.recommendations) if lowest else [],
        )

    def _trends(self, sla_id: str, score: float, config: ScoringConfig, now: datetime) -> List[ScoreTrend]:
        trends = []
        history = self._history.get(sla_id, [])
        for days in config.trend_periods_days:
            since = now - timedelta(days=days)
            samples = [s.overall_score for s in history if s.calculated_at >= since]
            if not samples:
                continue
            baseline = float(np.mean(samples))
            change = score - baseline
            if change > config.trend_significance:
                direction = TrendDirection.IMPROVING
            elif change < -config.trend_significance:
                direction = TrendDirection.DEGRADING
            else:
                direction = TrendDirection.STABLE
            spread = float(np.std(samples))
            confidence = min(1.0, len(samples) / 10) * max(0.0, 1 - spread / 50)
            trends.append(ScoreTrend(
                period_days=days,
                direction=direction,
                score=round(baseline, 2),
                change=round(change, 2),
                change_percentage=round(change / baseline * 100, 2) if baseline else 0.0,
                confidence=round(confidence, 4),
                samples=len(samples),
            ))
        return trends

    @staticmethod
    def _recommendations(
        score: float,
        components: Dict[str, ScoreComponent],
        grade: ComplianceGrade,
        business: BusinessContext,
        has_data: bool,
        config: ScoringConfig,
    ) -> List[str]:
        if not has_data:
            return ["Collect measurements for this SLA before relying on its score"]

        recommendations = list(grade.recommendations)
        for component in components.values():
            if component.normalized_value < config.thresholds.acceptable:
                recommendations.append(
                    f"Improve {component.name.replace('_', ' ')} "
                    f"(currently {component.normalized_value:.1f})"
                )
        if business.minimum_score is not None and score < business.minimum_score:
            recommendations.append(
                f"Score {score:.2f} is below the contractual minimum of {business.minimum_score:g}"
            )
        return recommendations

    def _remember(self, score: ComplianceScore, config: ScoringConfig) -> None:
        history = self._history.setdefault(score.sla_id, [])
        history.append(score)
        cutoff = score.calculated_at - timedelta(days=config.history_retention_days)
        self._history[score.sla_id] = [s for s in history if s.calculated_at >= cutoff]

    # ========== Queries ==========

    def get_compliance_grade(self, sla_id: str) -> ComplianceGrade:
        """Grade of the latest score, calculating one when none exists."""
        history = self._history.get(sla_id)
        if history:
            return history[-1].grade
        return self.calculate_compliance_score(ScoringContext(sla_id=sla_id)).grade

    def get_historical_scores(self, sla_id: str, window: Optional[TimeWindow] = None) -> List[ComplianceScore]:
        scores = self._history.get(sla_id, [])
        if window is not None:
            scores = [s for s in scores if window.contains(s.calculated_at)]
        return list(scores)

    def invalidate(self, sla_id: Optional[str] = None) -> None:
        if sla_id is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k[0] == sla_id]:
            del self._cache[key]

    def _evict_expired(self, now: datetime, ttl_seconds: float) -> None:
        expired = [
            key for key, score in self._cache.items()
            if (now - score.calculated_at).total_seconds() >= ttl_seconds
        ]
        for key in expired:
            del self._cache[key]

    @property
    def cache_size(self) -> int:
        return len(self._cache)
