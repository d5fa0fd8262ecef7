"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for the SLA engine:
- Models: SQLAlchemy ORM models
- Repositories: Engine state persistence
- External: Config watcher, notification channels, data sources, scheduler
"""

from sla.infrastructure.models import (
    SLADefinitionModel,
    MeasurementModel,
    BreachModel,
    EscalationModel,
)
from sla.infrastructure.repositories import (
    InMemorySLAStateRepository,
    SQLAlchemySLAStateRepository,
)
from sla.infrastructure.external import (
    SLAConfigManager,
    StaticConfigProvider,
    load_sla_definitions,
    CircuitBreaker,
    LoggingChannel,
    SlackChannel,
    WebhookChannel,
    StaticDataSource,
    CallableDataSource,
    PrometheusDataSource,
    SLAScheduler,
)

__all__ = [
    "SLADefinitionModel",
    "MeasurementModel",
    "BreachModel",
    "EscalationModel",
    "InMemorySLAStateRepository",
    "SQLAlchemySLAStateRepository",
    "SLAConfigManager",
    "StaticConfigProvider",
    "load_sla_definitions",
    "CircuitBreaker",
    "LoggingChannel",
    "SlackChannel",
    "WebhookChannel",
    "StaticDataSource",
    "CallableDataSource",
    "PrometheusDataSource",
    "SLAScheduler",
]
