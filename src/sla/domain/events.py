"""
SLA Domain Events
=================

Typed events emitted by the engine. Each carries the entity id and a
snapshot of the changed record. Delivery is at-most-once: subscribers must
not expect re-delivery after a failure.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sla.domain.entities import (
    Breach, BreachPattern, Escalation, MeasurementPoint, Notification, SLAMetric
)
from sla.domain.results import ComplianceScore
from sla.domain.value_objects import SLADefinition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SLARegistered:
    definition: SLADefinition
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SLAUpdated:
    definition: SLADefinition
    previous_version: int
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class SLAUnregistered:
    sla_id: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class MeasurementCollected:
    measurement: MeasurementPoint
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class MeasurementsPruned:
    sla_id: str
    cutoff: datetime
    removed: int
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class MetricCalculated:
    """Sole trigger for breach detection; fired once per calculation call."""
    sla_id: str
    metric: SLAMetric
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class CalculationFailed:
    sla_id: str
    error: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class TrackingError:
    sla_id: str
    error: str
    error_type: str
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class BreachDetected:
    breach_id: str
    sla_id: str
    breach: Breach
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class BreachUpdated:
    breach_id: str
    sla_id: str
    breach: Breach
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class BreachAcknowledged:
    breach_id: str
    sla_id: str
    user_id: str
    comment: Optional[str]
    breach: Breach
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class BreachResolved:
    breach_id: str
    sla_id: str
    user_id: str
    resolution: str
    breach: Breach
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class BreachEscalated:
    breach_id: str
    sla_id: str
    escalation: Escalation
    breach: Breach
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class PatternDetected:
    sla_id: str
    pattern: BreachPattern
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ScoreCalculated:
    sla_id: str
    score: ComplianceScore
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class NotificationRequested:
    """Notification intents for the delivery queue."""
    sla_id: str
    breach_id: Optional[str]
    notifications: List[Notification]
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class NotificationDelivered:
    notification: Notification
    occurred_at: datetime = field(default_factory=_utcnow)
