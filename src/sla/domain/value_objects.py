"""
SLA Value Objects
==================

Immutable value objects for the SLA domain.

Value objects are defined by their attributes rather than an identity.
The SLA definition is immutable once registered; changes go through
``SLARegistry.update_sla`` which produces a new version.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Literal, Optional, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from config import (
    SLAStatus, Severity, ThresholdBand,
    HIGHER_IS_BETTER_METRICS,
)


# ========== Type Aliases for Literals ==========
MetricTypeStr = Literal[
    "availability", "uptime", "response_time", "throughput", "error_rate",
    "transaction_success_rate", "data_accuracy", "recovery_time"
]
ThresholdBandStr = Literal["target", "warning", "critical", "escalation", "acceptable", "excellent"]
AggregationMethodStr = Literal["avg", "min", "max", "sum", "count", "percentile"]
SeverityStr = Literal["low", "medium", "high", "critical"]
ChannelStr = Literal["email", "slack", "sms", "webhook", "log"]
NotificationEventStr = Literal["threshold_breach", "recovery", "escalation"]
CriticalityStr = Literal["low", "medium", "high", "critical"]


class SLAThresholds(BaseModel):
    """
    Threshold bands in the metric's own unit.

    ``target`` defaults to the definition's target value when omitted.
    """
    model_config = ConfigDict(frozen=True)

    target: Optional[float] = None
    warning: Optional[float] = None
    critical: Optional[float] = None
    escalation: Optional[float] = None
    acceptable: Optional[float] = None
    excellent: Optional[float] = None


class MeasurementValidationRule(BaseModel):
    """Ingestion rule applied to a measurement field (min / max / range)."""
    model_config = ConfigDict(frozen=True)

    field: str = Field(default="value", description="Measurement attribute to check")
    rule: Literal["min", "max", "range"]
    value: Optional[float] = Field(default=None, description="Bound for min / max rules")
    min: Optional[float] = Field(default=None, description="Lower bound for range rules")
    max: Optional[float] = Field(default=None, description="Upper bound for range rules")
    error_message: str = Field(default="Measurement failed validation")


class MeasurementConfig(BaseModel):
    """How and how often an SLA is measured."""
    model_config = ConfigDict(frozen=True)

    frequency_seconds: float = Field(default=60.0, description="Polling interval")
    aggregation_method: AggregationMethodStr = "avg"
    percentile: float = Field(default=95.0, description="Percentile for percentile aggregation")
    data_source: str = Field(default="static", description="Registered data source name")
    query: Optional[str] = Field(default=None, description="Backend query for the data source")
    validation_rules: List[MeasurementValidationRule] = Field(default_factory=list)


class TimeWindowSpec(BaseModel):
    """Rolling evaluation window ending at calculation time."""
    model_config = ConfigDict(frozen=True)

    type: Literal["rolling"] = "rolling"
    duration_seconds: float = Field(default=3600.0, gt=0)

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self.duration_seconds)


class MaintenanceWindow(BaseModel):
    """Planned window whose measurements are kept but excluded."""
    model_config = ConfigDict(frozen=True)

    name: str
    start_time: datetime
    end_time: datetime
    is_active: bool = True


class NotificationRule(BaseModel):
    """Who hears about which engine event, and over which channels."""
    model_config = ConfigDict(frozen=True)

    id: str
    event: NotificationEventStr = "threshold_breach"
    severity: Optional[SeverityStr] = None
    threshold: Optional[ThresholdBandStr] = None
    channels: List[ChannelStr] = Field(default_factory=lambda: ["log"])
    recipients: List[str] = Field(default_factory=list)
    is_active: bool = True


class DetectionRule(BaseModel):
    """Binds a threshold band to a consecutive-failure requirement."""
    model_config = ConfigDict(frozen=True)

    id: str
    threshold: ThresholdBandStr
    consecutive_failures: int = Field(default=1, ge=1)
    is_active: bool = True


class BusinessContext(BaseModel):
    """Business weighting applied by the compliance scorer."""
    model_config = ConfigDict(frozen=True)

    criticality_level: CriticalityStr = "medium"
    business_hours: bool = False
    seasonal_factor: float = 1.0
    user_impact: float = Field(default=0.0, ge=0.0, le=1.0)
    revenue_impact: float = Field(default=0.0, ge=0.0, le=1.0)
    minimum_score: Optional[float] = Field(
        default=None, description="Contractual minimum compliance score"
    )


class SLADefinition(BaseModel):
    """
    SLA definition owned by the registry.

    Other components receive it by value and never mutate it.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    service_id: str
    name: str
    service_name: str = ""
    description: str = ""
    metric_type: MetricTypeStr
    target_value: float
    unit: str = "%"
    thresholds: SLAThresholds = Field(default_factory=SLAThresholds)
    measurement: MeasurementConfig = Field(default_factory=MeasurementConfig)
    time_window: TimeWindowSpec = Field(default_factory=TimeWindowSpec)
    detection_rules: List[DetectionRule] = Field(default_factory=list)
    notifications: List[NotificationRule] = Field(default_factory=list)
    maintenance_windows: List[MaintenanceWindow] = Field(default_factory=list)
    business_context: BusinessContext = Field(default_factory=BusinessContext)
    tags: Dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    version: int = 1
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="before")
    @classmethod
    def default_target_threshold(cls, data: Any) -> Any:
        """Fill ``thresholds.target`` from ``target_value`` when omitted."""
        if not isinstance(data, dict):
            return data
        thresholds = data.get("thresholds")
        if thresholds is None:
            return {**data, "thresholds": {"target": data.get("target_value")}}
        if isinstance(thresholds, dict) and thresholds.get("target") is None:
            return {**data, "thresholds": {**thresholds, "target": data.get("target_value")}}
        return data

    @property
    def higher_is_better(self) -> bool:
        return self.metric_type in HIGHER_IS_BETTER_METRICS

    def threshold_value(self, band: str) -> Optional[float]:
        """Raw threshold value for a band, target falling back to target_value."""
        value = getattr(self.thresholds, band, None)
        if value is None and band == ThresholdBand.TARGET:
            return self.target_value
        return value

    def configured_thresholds(self) -> Dict[str, float]:
        """All bands that carry a value."""
        bands = {}
        for band in ("target", "warning", "critical", "escalation", "acceptable", "excellent"):
            value = self.threshold_value(band)
            if value is not None:
                bands[band] = value
        return bands

    def active_maintenance(self, at: datetime) -> Optional[MaintenanceWindow]:
        """The maintenance window covering ``at``, if any."""
        for window in self.maintenance_windows:
            if window.is_active and window.start_time <= at < window.end_time:
                return window
        return None


@dataclass(frozen=True)
class TimeWindow:
    """Half-open evaluation interval ``[start, end)``."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError("time window end cannot be before start")

    @classmethod
    def ending_at(cls, end: datetime, duration: timedelta) -> "TimeWindow":
        return cls(start=end - duration, end=end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= timestamp <= self.end

    def split(self, interval: timedelta) -> List["TimeWindow"]:
        """Consecutive sub-windows of ``interval`` length (last may be shorter)."""
        if interval.total_seconds() <= 0:
            raise ValueError("interval must be positive")
        windows = []
        cursor = self.start
        while cursor < self.end:
            upper = min(cursor + interval, self.end)
            windows.append(TimeWindow(cursor, upper))
            cursor = upper
        return windows

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


class SLACalculator:
    """
    Pure functions for SLA calculations.

    Stateless utility class - all polarity-aware comparison logic in one place,
    shared by the metric calculator, the breach detector and the registry.
    """

    @staticmethod
    def raw_compliance(current: float, target: float, higher_is_better: bool) -> float:
        """
        Unclamped compliance ratio as a percentage.

        Higher-is-better: current / target * 100.
        Lower-is-better: 100 - (current - target) / target * 100.
        """
        if target == 0:
            return math.nan
        if higher_is_better:
            return current / target * 100
        return 100 - (current - target) / target * 100

    @staticmethod
    def compliance_percentage(current: float, target: float, higher_is_better: bool) -> float:
        """Compliance percentage clamped to [0, 100]."""
        raw = SLACalculator.raw_compliance(current, target, higher_is_better)
        if math.isnan(raw):
            return raw
        return max(0.0, min(100.0, raw))

    @staticmethod
    def band_percentage(definition: SLADefinition, band: str) -> Optional[float]:
        """Threshold value of a band expressed on the compliance scale."""
        value = definition.threshold_value(band)
        if value is None:
            return None
        return SLACalculator.raw_compliance(value, definition.target_value, definition.higher_is_better)

    @staticmethod
    def determine_status(definition: SLADefinition, current_value: float) -> str:
        """
        Status from compliance against the critical and warning bands.

        Compares the unclamped compliance ratio with each band's percentage so
        values above target never read as breaching.
        """
        compliance = SLACalculator.raw_compliance(
            current_value, definition.target_value, definition.higher_is_better
        )
        critical = SLACalculator.band_percentage(definition, ThresholdBand.CRITICAL)
        warning = SLACalculator.band_percentage(definition, ThresholdBand.WARNING)

        if critical is not None and compliance < critical:
            return SLAStatus.BREACHED
        if warning is not None and compliance < warning:
            return SLAStatus.AT_RISK
        return SLAStatus.COMPLIANT

    @staticmethod
    def is_breaching(value: float, threshold: float, higher_is_better: bool) -> bool:
        """Whether a raw value fails a raw threshold given metric polarity."""
        if higher_is_better:
            return value < threshold
        return value > threshold

    @staticmethod
    def severity_for_band(band: str) -> str:
        """Severity assigned to a breach of the given band."""
        if band == ThresholdBand.CRITICAL:
            return Severity.CRITICAL
        if band == ThresholdBand.ESCALATION:
            return Severity.HIGH
        if band == ThresholdBand.WARNING:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def impact_percentage(current: float, threshold: float) -> float:
        """Relative deviation from the threshold, as a percentage."""
        if threshold == 0:
            return 0.0
        return round(abs(current - threshold) / abs(threshold) * 100, 2)

    @staticmethod
    def goodness(value: float, higher_is_better: bool) -> float:
        """Value on a scale where larger is always better."""
        return value if higher_is_better else -value
