"""
SLA Engine Configuration
=========================

Engine tuning loaded from YAML (``sla_config.yaml``) and hot-reloaded by
``SLAConfigManager``.

Sections:
- tracking: measurement retention and ingestion validation
- detection: escalation timeouts, grace period, pattern limits
- notifications: delivery retry policy
- scoring: weights, penalties, bonuses, grades and trends
- analysis: anomaly, seasonality, correlation and prediction settings

This is a value object - components read the current instance through
``ISLAConfigProvider.get_config()`` on every use.
"""

import hashlib
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from config import Severity, VALID_SEVERITIES
from sla.domain.value_objects import MeasurementValidationRule, ChannelStr


class EscalationLevelConfig(BaseModel):
    """Configuration for a single escalation level."""
    level: int = Field(ge=1, description="Escalation level (1-based)")
    notify: List[str] = Field(default_factory=list, description="Recipients for this level")


def _default_escalation_levels() -> List[EscalationLevelConfig]:
    return [
        EscalationLevelConfig(level=1, notify=["team-lead@company.com"]),
        EscalationLevelConfig(level=2, notify=["manager@company.com"]),
        EscalationLevelConfig(level=3, notify=["director@company.com"]),
        EscalationLevelConfig(level=4, notify=["cto@company.com"]),
    ]


class TrackingConfig(BaseModel):
    """Measurement collection settings."""
    retention_days: float = Field(default=30, gt=0, description="Measurement retention window")
    validation_rules: List[MeasurementValidationRule] = Field(
        default_factory=list,
        description="Rules applied to every measurement at ingestion"
    )
    trend_min_points: int = Field(default=5, ge=2, description="Points needed for a metric trend")
    trend_stable_percentage: float = Field(
        default=1.0, ge=0,
        description="Relative change over the window below which a metric trend is stable"
    )
    calculation_priority: int = Field(default=1, description="Queue priority of polling recalculations")


class DetectionConfig(BaseModel):
    """Breach detection and escalation settings."""
    escalation_timeouts: Dict[str, float] = Field(
        default_factory=lambda: {
            Severity.CRITICAL: 300,
            Severity.HIGH: 900,
            Severity.MEDIUM: 1800,
            Severity.LOW: 3600,
        },
        description="Seconds an active breach may age per severity before escalating"
    )
    enable_auto_escalation: bool = True
    grace_period_seconds: float = Field(
        default=0, ge=0,
        description="A breaching run must last this long before a breach opens"
    )
    default_consecutive_failures: int = Field(default=2, ge=1)
    most_severe_only: bool = Field(
        default=True,
        description="Report only the most severe band when several fire together"
    )
    escalation_levels: List[EscalationLevelConfig] = Field(
        default_factory=_default_escalation_levels
    )
    max_escalation_level: Optional[int] = Field(default=None, ge=1)
    escalation_channels: List[ChannelStr] = Field(default_factory=lambda: ["log"])
    pattern_window_days: float = 7
    frequent_breach_count: int = 5
    recurring_min_intervals: int = 3
    recurring_tolerance: float = Field(default=0.2, description="Relative distance from mean interval")
    recurring_share: float = Field(default=0.7, description="Share of intervals within tolerance")
    persistent_duration_seconds: float = 3600

    @field_validator("escalation_timeouts")
    @classmethod
    def validate_timeouts(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Fill missing severities with defaults and reject unknown keys."""
        defaults = {Severity.CRITICAL: 300, Severity.HIGH: 900, Severity.MEDIUM: 1800, Severity.LOW: 3600}
        for key in v:
            if key not in VALID_SEVERITIES:
                raise ValueError(f"unknown severity in escalation_timeouts: {key}")
        return {**defaults, **v}

    def recipients_for_level(self, level: int) -> List[str]:
        """Recipients for an escalation level; beyond the table, the last entry."""
        levels = sorted(self.escalation_levels, key=lambda e: e.level)
        for esc in levels:
            if esc.level == level:
                return list(esc.notify)
        if levels and level > levels[-1].level:
            return list(levels[-1].notify)
        return []


class NotificationDeliveryConfig(BaseModel):
    """Notification delivery retry policy."""
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0, description="Linear backoff step")


class ScoringWeights(BaseModel):
    availability: float = Field(default=0.30, ge=0)
    performance: float = Field(default=0.25, ge=0)
    reliability: float = Field(default=0.20, ge=0)
    breach_impact: float = Field(default=0.15, ge=0)
    business_context: float = Field(default=0.10, ge=0)


class ScoringPenalties(BaseModel):
    breach_penalty: float = Field(default=5.0, ge=0)
    escalation_penalty: float = Field(default=2.0, ge=0)
    duration_factor: float = Field(default=1.5, ge=0)
    duration_buckets_seconds: List[float] = Field(
        default_factory=lambda: [900, 3600, 14400, 86400],
        description="Upper bounds of breach duration buckets (15m, 1h, 4h, 24h)"
    )
    severity_multipliers: Dict[str, float] = Field(
        default_factory=lambda: {
            Severity.LOW: 0.5,
            Severity.MEDIUM: 1.0,
            Severity.HIGH: 2.0,
            Severity.CRITICAL: 3.0,
        }
    )


class ScoringBonuses(BaseModel):
    perfect_compliance: float = 2.0
    early_resolution: float = 1.0
    proactive_action: float = 1.0
    early_resolution_target_seconds: float = 3600


class ScoreThresholds(BaseModel):
    excellent: float = 95
    good: float = 85
    acceptable: float = 75
    poor: float = 60


class GradeBand(BaseModel):
    """Lowest score that earns a letter grade."""
    min_score: float
    grade: str
    description: str
    recommendations: List[str] = Field(default_factory=list)


def _default_grade_scale() -> List[GradeBand]:
    return [
        GradeBand(min_score=97, grade="A+", description="Exceptional compliance performance",
                  recommendations=["Maintain current excellence", "Share best practices"]),
        GradeBand(min_score=95, grade="A", description="Excellent compliance performance",
                  recommendations=["Minor optimizations possible", "Monitor for consistency"]),
        GradeBand(min_score=92, grade="A-", description="Very good compliance performance",
                  recommendations=["Focus on consistency", "Address minor issues"]),
        GradeBand(min_score=88, grade="B+", description="Good compliance performance",
                  recommendations=["Improve weak areas", "Enhance monitoring"]),
        GradeBand(min_score=85, grade="B", description="Acceptable compliance performance",
                  recommendations=["Address performance gaps", "Increase oversight"]),
        GradeBand(min_score=80, grade="B-", description="Below average compliance performance",
                  recommendations=["Immediate improvements needed", "Review processes"]),
        GradeBand(min_score=75, grade="C+", description="Poor compliance performance",
                  recommendations=["Significant improvements required", "Management attention needed"]),
        GradeBand(min_score=70, grade="C", description="Unsatisfactory compliance performance",
                  recommendations=["Major process overhaul needed", "Executive review required"]),
        GradeBand(min_score=65, grade="C-", description="Very poor compliance performance",
                  recommendations=["Urgent intervention required", "Consider service restructuring"]),
        GradeBand(min_score=60, grade="D", description="Failing compliance performance",
                  recommendations=["Emergency action plan", "Stakeholder communication"]),
        GradeBand(min_score=0, grade="F", description="Critical compliance failure",
                  recommendations=["Complete service review", "Immediate escalation"]),
    ]


class ScoringConfig(BaseModel):
    """Compliance scoring settings."""
    method: Literal["weighted", "geometric", "harmonic"] = "weighted"
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    penalties: ScoringPenalties = Field(default_factory=ScoringPenalties)
    bonuses: ScoringBonuses = Field(default_factory=ScoringBonuses)
    thresholds: ScoreThresholds = Field(default_factory=ScoreThresholds)
    grade_scale: List[GradeBand] = Field(default_factory=_default_grade_scale)
    trend_periods_days: List[int] = Field(default_factory=lambda: [7, 30, 90])
    trend_significance: float = Field(default=2.0, ge=0, description="Score points")
    volatility_weight: float = Field(default=0.5, ge=0)
    cache_ttl_seconds: float = Field(default=900, ge=0)
    history_retention_days: float = Field(default=90, gt=0)


class AnalysisConfig(BaseModel):
    """Historical analysis settings."""
    anomaly_sensitivity: float = Field(default=2.0, gt=0, description="|z| above which a point is anomalous")
    anomaly_min_points: int = Field(default=10, ge=3)
    anomaly_algorithms: List[Literal["zscore", "iqr"]] = Field(default_factory=lambda: ["zscore", "iqr"])
    seasonality_threshold: float = Field(default=0.3, ge=0, le=1)
    max_seasonality_lag: int = Field(default=168, ge=2)
    trend_significance: float = Field(
        default=0.05, ge=0,
        description="Relative change over the series below which a trend is stable"
    )
    min_correlation: float = Field(default=0.5, ge=0, le=1)
    prediction_horizon_hours: int = Field(default=24, ge=1)
    prediction_models: List[str] = Field(default_factory=lambda: ["linear", "moving_average"])
    moving_average_window: int = Field(default=24, ge=1)
    root_cause_window_minutes: float = Field(default=60, gt=0)


class SLAEngineConfig(BaseModel):
    """
    Engine configuration loaded from YAML.

    Every section falls back to defaults, so an empty file is valid.
    """
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    notifications: NotificationDeliveryConfig = Field(default_factory=NotificationDeliveryConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)

    def section_digest(self, section: str) -> str:
        """Short content hash of a section, used as a config version."""
        payload = getattr(self, section).model_dump_json()
        return hashlib.sha256(payload.encode()).hexdigest()[:16]
