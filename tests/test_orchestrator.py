"""End-to-end engine behaviour through the orchestrator."""
from datetime import timedelta

import httpx
import pytest

import main
from config import settings
from core import ResourceNotFoundException
from shared.infrastructure.grafana import GrafanaOTLPExporter
from sla.application.analysis import AnalysisRequest
from sla.application.orchestrator import (
    ANALYSIS_JOB_ID, ESCALATION_JOB_ID, CalculationQueue, TrackingOrchestrator
)
from sla.domain import SLAEngineConfig
from sla.domain.events import MeasurementsPruned, TrackingError
from sla.infrastructure import CallableDataSource, SLAScheduler

from conftest import _no_sleep

SLA_ID = "checkout-availability"


@pytest.fixture
def bus_events(orchestrator):
    captured = []
    orchestrator.event_bus.subscribe_all(captured.append)
    return captured


async def _run_ticks(orchestrator, clock, ticks):
    for _ in range(ticks):
        clock.advance(60)
        await orchestrator.poll(SLA_ID)
        orchestrator.run_pending_calculations()


class TestCalculationQueue:
    def test_latest_request_per_sla_wins(self):
        queue = CalculationQueue()
        queue.submit("a")
        queue.submit("b")
        queue.submit("a", priority=1)
        assert len(queue) == 2
        assert [queue.pop().sla_id for _ in range(2)] == ["b", "a"]
        assert queue.pop() is None

    def test_priority_first(self):
        queue = CalculationQueue()
        queue.submit("low")
        queue.submit("high", priority=100)
        assert queue.pop().sla_id == "high"
        assert "low" in queue
        assert queue.discard() == 1
        assert len(queue) == 0


class TestPollingPipeline:
    async def test_breach_detected_then_resolved(self, orchestrator, data_source, make_sla, clock, repository):
        orchestrator.register_sla(make_sla())
        data_source.set(SLA_ID, 97.5)

        await _run_ticks(orchestrator, clock, 5)

        metric = orchestrator.get_metric(SLA_ID)
        assert metric.status == "breached"
        assert metric.compliance_percentage == pytest.approx(97.99, abs=0.01)
        [breach] = orchestrator.get_active_breaches(SLA_ID)
        assert breach.severity == "critical"
        assert breach.observations == 4
        assert await orchestrator.flush_notifications() >= 1

        clock.advance(minutes=10)
        orchestrator.resolve_breach(breach.id, "alice", "rolled back")
        assert orchestrator.get_active_breaches() == []

        await orchestrator.flush_persistence()
        assert SLA_ID in repository.definitions
        assert len(repository.measurements) == 5
        assert repository.breaches[breach.id].status == "resolved"

    async def test_recovery_keeps_breach_open_until_resolved(self, orchestrator, data_source, make_sla, clock):
        orchestrator.register_sla(make_sla())
        data_source.set(SLA_ID, [97.5, 97.5])
        await _run_ticks(orchestrator, clock, 2)
        data_source.set(SLA_ID, 100.0)
        await _run_ticks(orchestrator, clock, 10)

        assert orchestrator.get_metric(SLA_ID).status == "compliant"
        assert len(orchestrator.get_active_breaches(SLA_ID)) == 1

    async def test_missing_value_publishes_tracking_error(self, orchestrator, make_sla, bus_events):
        orchestrator.register_sla(make_sla())
        assert await orchestrator.poll(SLA_ID) is None
        [error] = [e for e in bus_events if isinstance(e, TrackingError)]
        assert error.error_type == "DataSourceException"
        assert len(orchestrator.queue) == 0

    async def test_unknown_data_source(self, orchestrator, make_sla, bus_events):
        orchestrator.register_sla(make_sla(measurement={"data_source": "datadog"}))
        assert await orchestrator.poll(SLA_ID) is None
        [error] = [e for e in bus_events if isinstance(e, TrackingError)]
        assert "datadog" in error.error

    async def test_failing_callable_source(self, orchestrator, make_sla, bus_events):
        def broken(_definition):
            raise RuntimeError("timeout")

        orchestrator.register_data_source(CallableDataSource("custom", broken))
        orchestrator.register_sla(make_sla(measurement={"data_source": "custom"}))
        assert await orchestrator.poll(SLA_ID) is None
        assert any(isinstance(e, TrackingError) for e in bus_events)

    async def test_retention_prunes_old_points(
        self, orchestrator, config_provider, make_sla, clock, repository, bus_events
    ):
        config_provider.update(SLAEngineConfig.model_validate({"tracking": {"retention_days": 1}}))
        orchestrator.register_sla(make_sla())

        orchestrator.record_measurement(SLA_ID, 99.9, timestamp=clock() - timedelta(days=2))

        assert orchestrator.store.count(SLA_ID) == 0
        [pruned] = [e for e in bus_events if isinstance(e, MeasurementsPruned)]
        assert pruned.removed == 1
        await orchestrator.flush_persistence()
        assert repository.measurements == []

    def test_invalid_measurement_is_kept_but_excluded(self, orchestrator, make_sla):
        orchestrator.register_sla(make_sla())
        point = orchestrator.record_measurement(SLA_ID, float("nan"))
        assert not point.is_valid
        assert orchestrator.store.count(SLA_ID) == 1
        assert orchestrator.recalculate(SLA_ID).status == "unknown"


class TestRegistration:
    def test_update_controls_tracking(self, orchestrator, make_sla):
        orchestrator.register_sla(make_sla())
        assert orchestrator.is_tracking(SLA_ID)

        orchestrator.update_sla(SLA_ID, {"is_active": False})
        assert not orchestrator.is_tracking(SLA_ID)
        orchestrator.update_sla(SLA_ID, {"is_active": True})
        assert orchestrator.is_tracking(SLA_ID)

    async def test_unregister_forgets_data_but_keeps_breaches(self, orchestrator, data_source, make_sla, clock):
        orchestrator.register_sla(make_sla())
        data_source.set(SLA_ID, 97.5)
        await _run_ticks(orchestrator, clock, 2)
        orchestrator.submit_calculation(SLA_ID)

        orchestrator.unregister_sla(SLA_ID)

        assert not orchestrator.is_tracking(SLA_ID)
        assert SLA_ID not in orchestrator.queue
        assert orchestrator.store.count(SLA_ID) == 0
        with pytest.raises(ResourceNotFoundException):
            orchestrator.get_metric(SLA_ID)
        assert len(orchestrator.get_breach_history(SLA_ID)) == 1

        clock.advance(minutes=6)
        await orchestrator.escalation_sweep()
        assert orchestrator.get_escalations() == []


class TestQueries:
    async def test_score_and_analysis(self, orchestrator, data_source, make_sla, clock):
        orchestrator.register_sla(make_sla())
        data_source.set(SLA_ID, 99.9)
        await _run_ticks(orchestrator, clock, 12)

        score = orchestrator.calculate_compliance_score(SLA_ID)
        assert score.sla_id == SLA_ID
        assert orchestrator.get_compliance_grade(SLA_ID).grade == score.grade.grade

        with pytest.raises(ResourceNotFoundException):
            orchestrator.get_latest_analysis(SLA_ID)
        [analysis] = orchestrator.perform_historical_analysis(AnalysisRequest(sla_ids=[SLA_ID]))
        assert orchestrator.get_latest_analysis(SLA_ID) is analysis

    async def test_analysis_sweep_covers_active_slas(self, orchestrator, make_sla):
        orchestrator.register_sla(make_sla())
        await orchestrator.analysis_sweep()
        assert orchestrator.get_latest_analysis(SLA_ID).sla_id == SLA_ID

    async def test_escalation_sweep(self, orchestrator, data_source, make_sla, clock):
        orchestrator.register_sla(make_sla())
        data_source.set(SLA_ID, 97.5)
        await _run_ticks(orchestrator, clock, 2)
        clock.advance(minutes=6)

        await orchestrator.escalation_sweep()

        [escalation] = orchestrator.get_escalations()
        assert escalation.level == 1


class TestMetricsExport:
    async def test_without_exporter(self, orchestrator):
        assert await orchestrator.export_metrics() is False

    async def test_exports_snapshots(self, config_provider, clock, data_source, make_sla):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(request)
            return httpx.Response(200)

        exporter = GrafanaOTLPExporter(
            host="https://otlp.grafana.test", api_key="key", instance_id="123",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        orchestrator = TrackingOrchestrator(
            config_provider, clock=clock, grafana_exporter=exporter, notification_sleep=_no_sleep
        )
        orchestrator.register_data_source(data_source)
        orchestrator.register_sla(make_sla())
        data_source.set(SLA_ID, 99.9)
        await _run_ticks(orchestrator, clock, 3)

        [snapshot] = orchestrator.metrics_snapshot()
        assert snapshot["service_id"] == "checkout"
        assert snapshot["active_breaches"] == 0
        assert await orchestrator.export_metrics() is True
        assert len(bodies) == 1


class TestLifecycle:
    async def test_start_and_shutdown(self, config_provider, repository, clock, make_sla):
        scheduler = SLAScheduler()
        orchestrator = TrackingOrchestrator(
            config_provider, repository=repository, clock=clock, scheduler=scheduler,
            notification_sleep=_no_sleep,
        )
        orchestrator.register_sla(make_sla())

        await orchestrator.start()
        assert set(scheduler.job_ids()) == {f"poll:{SLA_ID}", ESCALATION_JOB_ID, ANALYSIS_JOB_ID}

        orchestrator.update_sla(SLA_ID, {"is_active": False})
        assert not scheduler.has_job(f"poll:{SLA_ID}")

        await orchestrator.shutdown()
        assert not scheduler.is_running
        assert repository.definitions[SLA_ID].is_active is False

    async def test_restore_from_repository(self, orchestrator, config_provider, repository, clock, data_source, make_sla):
        orchestrator.register_sla(make_sla())
        data_source.set(SLA_ID, 97.5)
        await _run_ticks(orchestrator, clock, 3)
        await orchestrator.flush_persistence()

        restored = TrackingOrchestrator(config_provider, repository=repository, clock=clock)
        counts = await restored.restore()

        assert counts == {"definitions": 1, "measurements": 3, "breaches": 1, "escalations": 0}
        assert restored.is_tracking(SLA_ID)
        assert len(restored.get_active_breaches(SLA_ID)) == 1
        assert restored.recalculate(SLA_ID).status == "breached"

    async def test_restore_without_repository(self, config_provider, clock):
        counts = await TrackingOrchestrator(config_provider, clock=clock).restore()
        assert set(counts.values()) == {0}


class TestBootstrapDefinitions:
    def test_registers_new_valid_definitions(self, orchestrator, make_sla, tmp_path, monkeypatch):
        path = tmp_path / "slas.yaml"
        path.write_text(
            "slas:\n"
            "  - id: checkout-availability\n"
            "    service_id: checkout\n"
            "    name: Already restored\n"
            "  - id: search-latency\n"
            "    service_id: search\n"
            "    name: Search latency\n"
            "    metric_type: response_time\n"
            "    target_value: 300\n"
            "    thresholds: {warning: 400, critical: 800}\n"
            "  - id: broken\n"
            "    name: Missing service\n"
        )
        monkeypatch.setattr(settings, "sla_definitions_path", path)
        orchestrator.register_sla(make_sla())

        assert main.register_bootstrap_definitions(orchestrator) == 1
        assert orchestrator.get_sla("search-latency").metric_type == "response_time"
        assert orchestrator.get_sla(SLA_ID).name == "Checkout availability"

    def test_nothing_configured(self, orchestrator, monkeypatch):
        monkeypatch.setattr(settings, "sla_definitions_path", None)
        assert main.register_bootstrap_definitions(orchestrator) == 0
