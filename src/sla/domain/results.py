"""
SLA Result Objects
==================

Derived, recomputable results of compliance scoring and historical analysis.
None of these are persisted; they can always be produced again from
definitions, measurements and breaches.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sla.domain.value_objects import TimeWindow


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Compliance Scoring ==========

@dataclass
class ScoreComponent:
    """One weighted input to the overall compliance score."""
    name: str
    weight: float
    raw_value: float
    normalized_value: float
    weighted_value: float
    confidence: float
    factors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "weight": self.weight,
            "raw_value": self.raw_value,
            "normalized_value": self.normalized_value,
            "weighted_value": self.weighted_value,
            "confidence": self.confidence,
            "factors": list(self.factors),
        }


@dataclass
class ScoreTrend:
    """Change of the compliance score over a historical period."""
    period_days: int
    direction: str
    score: float
    change: float
    change_percentage: float
    confidence: float
    samples: int

    def to_dict(self) -> dict:
        return {
            "period": f"{self.period_days}d",
            "direction": self.direction,
            "score": self.score,
            "change": self.change,
            "change_percentage": self.change_percentage,
            "confidence": self.confidence,
            "samples": self.samples,
        }


@dataclass
class ComplianceGrade:
    score: float
    grade: str
    description: str
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "grade": self.grade,
            "description": self.description,
            "recommendations": list(self.recommendations),
        }


@dataclass
class ComplianceScore:
    """
    Weighted, penalty/bonus-adjusted compliance score.

    ``overall_score`` is always within [0, 100].
    """
    sla_id: str
    time_window: TimeWindow
    overall_score: float
    components: Dict[str, ScoreComponent]
    bonuses: Dict[str, float]
    grade: ComplianceGrade
    trends: List[ScoreTrend]
    recommendations: List[str]
    confidence: float
    method: str
    config_version: str
    calculated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "sla_id": self.sla_id,
            "time_window": self.time_window.to_dict(),
            "overall_score": self.overall_score,
            "components": {name: c.to_dict() for name, c in self.components.items()},
            "bonuses": dict(self.bonuses),
            "grade": self.grade.to_dict(),
            "trends": [t.to_dict() for t in self.trends],
            "recommendations": list(self.recommendations),
            "confidence": self.confidence,
            "method": self.method,
            "config_version": self.config_version,
            "calculated_at": self.calculated_at.isoformat(),
        }


# ========== Historical Analysis ==========

@dataclass(frozen=True)
class SeriesPoint:
    timestamp: datetime
    value: float


@dataclass
class SeriesSummary:
    count: int
    mean: float
    median: float
    std_deviation: float
    min: float
    max: float
    percentile_95: float

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "mean": self.mean,
            "median": self.median,
            "std_deviation": self.std_deviation,
            "min": self.min,
            "max": self.max,
            "percentile_95": self.percentile_95,
        }


@dataclass
class TrendAnalysis:
    """Ordinary least squares fit over the series index."""
    direction: str
    slope: float
    intercept: float
    r_squared: float
    change_percentage: float

    def to_dict(self) -> dict:
        return {
            "direction": self.direction,
            "slope": self.slope,
            "intercept": self.intercept,
            "r_squared": self.r_squared,
            "change_percentage": self.change_percentage,
        }


@dataclass
class SeasonalityResult:
    """Best autocorrelation lag, in buckets of the analysis granularity."""
    period: int
    correlation: float
    granularity: str

    def to_dict(self) -> dict:
        return {"period": self.period, "correlation": self.correlation, "granularity": self.granularity}


@dataclass
class Anomaly:
    timestamp: datetime
    value: float
    expected: float
    deviation: float
    method: str
    severity: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "expected": self.expected,
            "deviation": self.deviation,
            "method": self.method,
            "severity": self.severity,
        }


@dataclass
class CorrelationResult:
    sla_id: str
    other_sla_id: str
    coefficient: float
    strength: str
    sample_count: int

    def to_dict(self) -> dict:
        return {
            "sla_id": self.sla_id,
            "other_sla_id": self.other_sla_id,
            "coefficient": self.coefficient,
            "strength": self.strength,
            "sample_count": self.sample_count,
        }


@dataclass
class PredictedPoint:
    timestamp: datetime
    value: float
    lower_bound: float
    upper_bound: float


@dataclass
class Prediction:
    """Forecast from a pluggable prediction model."""
    model: str
    points: List[PredictedPoint]
    confidence: float
    breach_expected: bool = False

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "confidence": self.confidence,
            "breach_expected": self.breach_expected,
            "points": [
                {
                    "timestamp": p.timestamp.isoformat(),
                    "value": p.value,
                    "lower_bound": p.lower_bound,
                    "upper_bound": p.upper_bound,
                }
                for p in self.points
            ],
        }


@dataclass
class RootCauseHint:
    breach_id: str
    kind: str
    description: str
    confidence: float
    related_sla_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "breach_id": self.breach_id,
            "kind": self.kind,
            "description": self.description,
            "confidence": self.confidence,
            "related_sla_id": self.related_sla_id,
        }


@dataclass
class HistoricalAnalysis:
    """Everything the analyzer found for one SLA over one window."""
    sla_id: str
    time_window: TimeWindow
    granularity: str
    summary: Optional[SeriesSummary] = None
    trend: Optional[TrendAnalysis] = None
    seasonality: Optional[SeasonalityResult] = None
    anomalies: List[Anomaly] = field(default_factory=list)
    correlations: List[CorrelationResult] = field(default_factory=list)
    predictions: List[Prediction] = field(default_factory=list)
    root_causes: List[RootCauseHint] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    confidence: float = 0.0
    generated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return {
            "sla_id": self.sla_id,
            "time_window": self.time_window.to_dict(),
            "granularity": self.granularity,
            "summary": self.summary.to_dict() if self.summary else None,
            "trend": self.trend.to_dict() if self.trend else None,
            "seasonality": self.seasonality.to_dict() if self.seasonality else None,
            "anomalies": [a.to_dict() for a in self.anomalies],
            "correlations": [c.to_dict() for c in self.correlations],
            "predictions": [p.to_dict() for p in self.predictions],
            "root_causes": [r.to_dict() for r in self.root_causes],
            "recommendations": list(self.recommendations),
            "confidence": self.confidence,
            "generated_at": self.generated_at.isoformat(),
        }
