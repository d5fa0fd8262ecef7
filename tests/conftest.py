"""
SLA engine test configuration.

Provides a controllable clock, wired engine components over an in-memory
measurement store and factories for SLA definitions and measurements.
Nothing here touches the network or a real database.
"""
import os

# Must be set before importing config so settings never read a real deployment
os.environ["ENVIRONMENT"] = "test"
os.environ["USE_DATABASE"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SLACK_WEBHOOK_URL"] = ""
os.environ["GRAFANA_HOST"] = ""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from shared.infrastructure.events import EventBus
from sla.application.analysis import HistoricalAnalyzer
from sla.application.breaches import BreachDetector
from sla.application.measurements import MeasurementStore, validate_measurement
from sla.application.orchestrator import TrackingOrchestrator
from sla.application.scoring import ComplianceScorer
from sla.application.tracking import MetricCalculator, SLARegistry
from sla.domain import MeasurementPoint, SLAEngineConfig
from sla.infrastructure.external import StaticConfigProvider, StaticDataSource
from sla.infrastructure.repositories import InMemorySLAStateRepository

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


async def _no_sleep(_seconds: float) -> None:
    return None


# ── Core fixtures ────────────────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_config() -> SLAEngineConfig:
    return SLAEngineConfig()


@pytest.fixture
def config_provider(engine_config) -> StaticConfigProvider:
    return StaticConfigProvider(engine_config)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(event_bus) -> List[Any]:
    """Every event published on the bus, in order."""
    captured: List[Any] = []
    event_bus.subscribe_all(captured.append)
    return captured


@pytest.fixture
def registry(event_bus, clock) -> SLARegistry:
    return SLARegistry(event_bus, clock)


@pytest.fixture
def store() -> MeasurementStore:
    return MeasurementStore()


@pytest.fixture
def calculator(registry, store, config_provider, event_bus, clock) -> MetricCalculator:
    return MetricCalculator(registry, store, config_provider, event_bus, clock)


@pytest.fixture
def detector(registry, store, config_provider, event_bus, clock) -> BreachDetector:
    return BreachDetector(registry, store, config_provider, event_bus, clock)


@pytest.fixture
def scorer(registry, calculator, detector, config_provider, event_bus, clock) -> ComplianceScorer:
    return ComplianceScorer(registry, calculator, detector, config_provider, event_bus, clock)


@pytest.fixture
def analyzer(registry, store, detector, config_provider, clock) -> HistoricalAnalyzer:
    return HistoricalAnalyzer(registry, store, detector, config_provider, clock)


@pytest.fixture
def repository() -> InMemorySLAStateRepository:
    return InMemorySLAStateRepository()


@pytest.fixture
def data_source() -> StaticDataSource:
    return StaticDataSource()


@pytest.fixture
def orchestrator(config_provider, repository, clock, data_source) -> TrackingOrchestrator:
    orch = TrackingOrchestrator(
        config_provider,
        repository=repository,
        clock=clock,
        notification_sleep=_no_sleep,
    )
    orch.register_data_source(data_source)
    return orch


# ── Factories ────────────────────────────────────────────────────────

@pytest.fixture
def make_sla():
    """Dict form of an availability SLA (target 99.5, warning 99, critical 98)."""

    def _make_sla(**overrides) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": "checkout-availability",
            "service_id": "checkout",
            "name": "Checkout availability",
            "metric_type": "availability",
            "target_value": 99.5,
            "unit": "%",
            "thresholds": {"warning": 99.0, "critical": 98.0},
            "measurement": {"frequency_seconds": 60, "data_source": "static"},
            "time_window": {"duration_seconds": 3600},
        }
        data.update(overrides)
        return data

    return _make_sla


@pytest.fixture
def make_latency_sla(make_sla):
    """Lower-is-better response time SLA (target 300ms, warning 400, critical 800)."""

    def _make_latency_sla(**overrides) -> Dict[str, Any]:
        data = make_sla(
            id="search-latency",
            service_id="search",
            name="Search latency",
            metric_type="response_time",
            target_value=300,
            unit="ms",
            thresholds={"warning": 400, "critical": 800},
        )
        data.update(overrides)
        return data

    return _make_latency_sla


@pytest.fixture
def feed(registry, store, clock, engine_config):
    """
    Append validated measurements one step apart.

    The clock advances before each point, so the last point is stamped "now".
    """

    def _feed(sla_id: str, values, step_seconds: float = 60) -> List[MeasurementPoint]:
        definition = registry.get(sla_id)
        points = []
        for value in values:
            clock.advance(step_seconds)
            point = MeasurementPoint(sla_id=sla_id, timestamp=clock(), value=float(value))
            validate_measurement(point, definition, engine_config.tracking.validation_rules)
            store.append(point)
            points.append(point)
        return points

    return _feed
