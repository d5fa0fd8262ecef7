"""
SLA Domain Entities
====================

Domain entities for SLA tracking and breach management.

Persisted records (measurements, breaches, escalations, notifications) are
Pydantic models so they round-trip through JSON without losing enum or
timezone information. Derived values recomputed on demand (metrics,
aggregations, trends, patterns) are plain dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from config import BreachStatus, OPEN_BREACH_STATUSES
from core import DomainException
from sla.domain.value_objects import (
    TimeWindow, ThresholdBandStr, SeverityStr, ChannelStr, NotificationEventStr
)


BreachStatusStr = Literal["active", "acknowledged", "resolved"]
NotificationStatusStr = Literal["pending", "sent", "failed"]


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MeasurementPoint(BaseModel):
    """
    One time-stamped sample for an SLA.

    Created once per polling tick; only the validity flags are set, and only
    at ingestion time.
    """
    model_config = ConfigDict(ser_json_inf_nan="strings")

    id: str = Field(default_factory=_new_id)
    sla_id: str
    timestamp: datetime
    value: float
    unit: str = ""
    is_valid: bool = True
    exclude_from_calculation: bool = False
    exclusion_reason: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_usable(self) -> bool:
        """Counts toward calculations."""
        return self.is_valid and not self.exclude_from_calculation


class Escalation(BaseModel):
    """Automatic escalation step for an unresolved breach."""
    id: str = Field(default_factory=_new_id)
    breach_id: str
    sla_id: str
    level: int = Field(ge=1)
    escalated_at: datetime
    escalated_to: List[str] = Field(default_factory=list)
    reason: str
    auto_escalated: bool = True


class Notification(BaseModel):
    """Notification intent and its delivery record."""
    id: str = Field(default_factory=_new_id)
    sla_id: str
    breach_id: Optional[str] = None
    event: NotificationEventStr
    channel: ChannelStr
    recipients: List[str] = Field(default_factory=list)
    subject: str
    message: str
    urgency: SeverityStr = "medium"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: NotificationStatusStr = "pending"
    attempts: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None


class Breach(BaseModel):
    """
    Period during which an SLA fails a threshold band.

    Lifecycle: active -> acknowledged (optional) -> resolved (terminal).
    While open, re-firing evaluations update the same record in place.
    """
    id: str = Field(default_factory=_new_id)
    sla_id: str
    threshold: ThresholdBandStr
    severity: SeverityStr
    start_time: datetime
    end_time: Optional[datetime] = None
    actual_value: float
    target_value: float
    impact_value: float
    status: BreachStatusStr = "active"
    rule_id: Optional[str] = None
    observations: int = 1
    notifications: List[str] = Field(default_factory=list)
    escalation_level: int = 0
    escalated_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    acknowledgment_comment: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    root_cause: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_BREACH_STATUSES

    @property
    def duration(self) -> Optional[timedelta]:
        """Elapsed time between start and end, when an end is known."""
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def age(self, now: datetime) -> timedelta:
        return now - self.start_time

    def record_observation(self, actual_value: float, impact_value: float, at: datetime) -> None:
        """The rule fired again while this breach is open."""
        if not self.is_open:
            raise DomainException(
                f"Breach {self.id} is resolved and cannot be updated",
                {"breach_id": self.id, "status": self.status}
            )
        self.actual_value = actual_value
        self.impact_value = impact_value
        self.end_time = max(at, self.start_time)
        self.observations += 1

    def acknowledge(self, user_id: str, at: datetime, comment: Optional[str] = None) -> None:
        """active -> acknowledged."""
        if self.status != BreachStatus.ACTIVE:
            raise DomainException(
                f"Breach {self.id} cannot be acknowledged from status {self.status}",
                {"breach_id": self.id, "status": self.status}
            )
        self.status = BreachStatus.ACKNOWLEDGED
        self.acknowledged_by = user_id
        self.acknowledged_at = at
        self.acknowledgment_comment = comment

    def resolve(self, user_id: str, resolution: str, at: datetime) -> None:
        """active | acknowledged -> resolved; closes the duration window."""
        if self.status == BreachStatus.RESOLVED:
            raise DomainException(
                f"Breach {self.id} is already resolved",
                {"breach_id": self.id, "status": self.status}
            )
        self.status = BreachStatus.RESOLVED
        self.resolved_by = user_id
        self.resolved_at = at
        self.resolution = resolution
        self.end_time = max(at, self.start_time)

    def record_escalation(self, level: int, at: datetime) -> None:
        self.escalation_level = level
        self.escalated_at = at

    def snapshot(self) -> "Breach":
        """Detached copy for event payloads."""
        return self.model_copy(deep=True)


@dataclass
class AggregationResult:
    """Statistics over the usable measurements of a window."""
    value: float
    count: int
    min: float
    max: float
    average: float
    percentile_95: float
    percentile_99: float
    std_deviation: float

    def to_dict(self) -> dict:
        return {
            "value": self.value,
            "count": self.count,
            "min": self.min,
            "max": self.max,
            "average": self.average,
            "percentile_95": self.percentile_95,
            "percentile_99": self.percentile_99,
            "std_deviation": self.std_deviation,
        }


@dataclass
class MetricTrend:
    """Linear-regression trend over the measurements of a window."""
    period: str
    direction: str
    slope_per_hour: float
    change_percentage: float
    confidence: float
    data_points: int

    def to_dict(self) -> dict:
        return {
            "period": self.period,
            "direction": self.direction,
            "slope_per_hour": self.slope_per_hour,
            "change_percentage": self.change_percentage,
            "confidence": self.confidence,
            "data_points": self.data_points,
        }


@dataclass
class SLAMetric:
    """
    Calculated state of an SLA over a time window.

    One current metric per SLA, overwritten on each recalculation. An
    ``unknown`` metric carries no value.
    """
    sla_id: str
    time_window: TimeWindow
    current_value: Optional[float]
    target_value: float
    compliance_percentage: Optional[float]
    status: str
    unit: str = ""
    trends: List[MetricTrend] = field(default_factory=list)
    breaches: List[str] = field(default_factory=list)
    measurements: List[MeasurementPoint] = field(default_factory=list)
    aggregation: Optional[AggregationResult] = None
    excluded_count: int = 0
    error: Optional[str] = None
    calculated_at: datetime = field(default_factory=_utcnow)

    @property
    def has_value(self) -> bool:
        return self.current_value is not None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "sla_id": self.sla_id,
            "time_window": self.time_window.to_dict(),
            "current_value": self.current_value,
            "target_value": self.target_value,
            "compliance_percentage": self.compliance_percentage,
            "status": self.status,
            "unit": self.unit,
            "trends": [t.to_dict() for t in self.trends],
            "breaches": list(self.breaches),
            "measurement_count": len(self.measurements),
            "excluded_count": self.excluded_count,
            "aggregation": self.aggregation.to_dict() if self.aggregation else None,
            "error": self.error,
            "calculated_at": self.calculated_at.isoformat(),
        }


@dataclass
class BreachPattern:
    """Recurring shape in an SLA's recent breach history."""
    type: str
    description: str
    frequency: int
    time_window: TimeWindow
    affected_slas: List[str]
    severity: str

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "description": self.description,
            "frequency": self.frequency,
            "time_window": self.time_window.to_dict(),
            "affected_slas": list(self.affected_slas),
            "severity": self.severity,
        }


@dataclass
class BreachStatistics:
    """Aggregate view over a set of breaches."""
    total_breaches: int
    active_breaches: int
    acknowledged_breaches: int
    resolved_breaches: int
    average_resolution_seconds: float
    breaches_by_severity: Dict[str, int]
    breaches_by_threshold: Dict[str, int]
    most_frequent_causes: List[Dict[str, Any]]

    def to_dict(self) -> dict:
        return {
            "total_breaches": self.total_breaches,
            "active_breaches": self.active_breaches,
            "acknowledged_breaches": self.acknowledged_breaches,
            "resolved_breaches": self.resolved_breaches,
            "average_resolution_seconds": self.average_resolution_seconds,
            "breaches_by_severity": dict(self.breaches_by_severity),
            "breaches_by_threshold": dict(self.breaches_by_threshold),
            "most_frequent_causes": list(self.most_frequent_causes),
        }
