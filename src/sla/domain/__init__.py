"""
SLA Domain Layer
================

Domain layer for the SLA engine.

Contains:
- Entities: Records with identity (MeasurementPoint, Breach, Escalation, Notification)
- Value Objects: Immutable definitions and config (SLADefinition, SLAEngineConfig)
- Domain Services: Stateless business logic (SLACalculator)
- Events: Typed engine events

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from sla.domain.entities import (
    MeasurementPoint,
    Escalation,
    Notification,
    Breach,
    AggregationResult,
    MetricTrend,
    SLAMetric,
    BreachPattern,
    BreachStatistics,
)
from sla.domain.value_objects import (
    SLACalculator,
    SLADefinition,
    SLAThresholds,
    MeasurementConfig,
    MeasurementValidationRule,
    TimeWindowSpec,
    TimeWindow,
    MaintenanceWindow,
    NotificationRule,
    DetectionRule,
    BusinessContext,
)
from sla.domain.engine_config import (
    SLAEngineConfig,
    EscalationLevelConfig,
    TrackingConfig,
    DetectionConfig,
    NotificationDeliveryConfig,
    ScoringConfig,
    AnalysisConfig,
)

__all__ = [
    # Entities
    "MeasurementPoint",
    "Escalation",
    "Notification",
    "Breach",
    "AggregationResult",
    "MetricTrend",
    "SLAMetric",
    "BreachPattern",
    "BreachStatistics",
    # Value Objects & Services
    "SLACalculator",
    "SLADefinition",
    "SLAThresholds",
    "MeasurementConfig",
    "MeasurementValidationRule",
    "TimeWindowSpec",
    "TimeWindow",
    "MaintenanceWindow",
    "NotificationRule",
    "DetectionRule",
    "BusinessContext",
    # Configuration
    "SLAEngineConfig",
    "EscalationLevelConfig",
    "TrackingConfig",
    "DetectionConfig",
    "NotificationDeliveryConfig",
    "ScoringConfig",
    "AnalysisConfig",
]
