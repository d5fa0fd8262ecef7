"""
SLA Application Interfaces
===========================

Abstractions the application services depend on. Concrete implementations
live in ``sla.infrastructure``.

Following SOLID principles:
- Dependency Inversion: services depend on these interfaces, not on
  databases, HTTP clients or metrics backends.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sla.domain import (
    SLADefinition, SLAEngineConfig, MeasurementPoint, Breach, Escalation, Notification
)
from sla.domain.results import Prediction, SeriesPoint


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(timezone.utc)


# ========== Repository Interfaces (Dependency Inversion) ==========

class ISLAStateRepository(ABC):
    """
    Durable store for engine state that must survive restarts.

    Definitions, measurements (bounded retention), breaches and escalations
    are persisted; metrics and scores are recomputable caches.
    """

    @abstractmethod
    async def save_definition(self, definition: SLADefinition) -> None:
        """Insert or replace an SLA definition."""

    @abstractmethod
    async def delete_definition(self, sla_id: str) -> None:
        """Remove an SLA definition."""

    @abstractmethod
    async def list_definitions(self) -> List[SLADefinition]:
        """All stored SLA definitions."""

    @abstractmethod
    async def save_measurement(self, measurement: MeasurementPoint) -> None:
        """Append a measurement point."""

    @abstractmethod
    async def list_measurements(self, since: Optional[datetime] = None) -> List[MeasurementPoint]:
        """Measurements at or after ``since``, oldest first."""

    @abstractmethod
    async def prune_measurements(self, sla_id: str, before: datetime) -> int:
        """Drop an SLA's measurements older than ``before``; returns count removed."""

    @abstractmethod
    async def save_breach(self, breach: Breach) -> None:
        """Insert or replace a breach."""

    @abstractmethod
    async def list_breaches(self) -> List[Breach]:
        """All stored breaches."""

    @abstractmethod
    async def save_escalation(self, escalation: Escalation) -> None:
        """Append an escalation."""

    @abstractmethod
    async def list_escalations(self) -> List[Escalation]:
        """All stored escalations, oldest first."""


class ISLAConfigProvider(ABC):
    """Interface for engine configuration access."""

    @abstractmethod
    def get_config(self) -> SLAEngineConfig:
        """Get current engine configuration."""


# ========== Capability Interfaces (Strategy) ==========

class IDataSource(ABC):
    """Metrics backend returning the raw value of an SLA's metric."""

    name: str = "custom"

    @abstractmethod
    async def query(self, definition: SLADefinition) -> float:
        """
        Query the current raw value.

        Raises:
            DataSourceException: when the backend cannot answer
        """


class IPredictionModel(ABC):
    """Forecasting strategy used by historical analysis."""

    name: str = "custom"

    @abstractmethod
    def predict(self, series: List[SeriesPoint], horizon: int, step: timedelta) -> Prediction:
        """Forecast ``horizon`` points spaced ``step`` apart after the series."""


class INotificationChannel(ABC):
    """Delivery transport for one notification channel."""

    channel: str = "log"

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """
        Deliver a notification.

        Raises:
            NotificationDeliveryException: when delivery fails
        """
