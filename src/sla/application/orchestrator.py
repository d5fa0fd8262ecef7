"""
Tracking Orchestrator
=====================

Facade over the engine components and owner of its loops.

Scheduling model:
- one APScheduler interval job per tracked SLA (``poll:<sla_id>``) collects a
  measurement and submits a recalculation
- a single consumer drains the calculation queue; ``MetricCalculated`` events
  trigger breach detection on that same consumer
- a single consumer delivers notifications
- a single consumer applies persistence writes in event order

All component state is mutated from these consumers or from the facade
methods, never concurrently.
"""

import asyncio
import itertools
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from config import settings
from core import ApplicationException, DataSourceException, ResourceNotFoundException
from shared.infrastructure.events import EventBus
from shared.infrastructure.grafana import GrafanaOTLPExporter
from shared.infrastructure.logging import get_logger, log_latency
from sla.application.analysis import AnalysisRequest, HistoricalAnalyzer
from sla.application.breaches import BreachDetector
from sla.application.interfaces import (
    Clock, IDataSource, INotificationChannel, IPredictionModel,
    ISLAConfigProvider, ISLAStateRepository, utc_now
)
from sla.application.measurements import MeasurementStore, validate_measurement
from sla.application.notifications import NotificationDispatcher
from sla.application.scoring import ComplianceScorer, ScoringContext
from sla.application.tracking import MetricCalculator, SLARegistry
from sla.domain import (
    Breach, BreachPattern, BreachStatistics, Escalation, MeasurementPoint,
    SLADefinition, SLAMetric, TimeWindow
)
from sla.domain.events import (
    BreachAcknowledged, BreachDetected, BreachEscalated, BreachResolved, BreachUpdated,
    MeasurementCollected, MeasurementsPruned, MetricCalculated, NotificationRequested,
    SLARegistered, SLAUnregistered, SLAUpdated, TrackingError
)
from sla.domain.results import ComplianceGrade, ComplianceScore, HistoricalAnalysis
from sla.infrastructure.external import LoggingChannel, SLAScheduler

logger = get_logger(__name__)

ESCALATION_JOB_ID = "escalation_sweep"
ANALYSIS_JOB_ID = "historical_analysis"
METRICS_EXPORT_JOB_ID = "metrics_export"
METRICS_EXPORT_INTERVAL_SECONDS = 60

PERSISTED_EVENTS = (
    SLARegistered, SLAUpdated, SLAUnregistered, MeasurementCollected, MeasurementsPruned,
    BreachDetected, BreachUpdated, BreachAcknowledged, BreachResolved, BreachEscalated,
)


@dataclass
class CalculationRequest:
    sla_id: str
    priority: int
    sequence: int
    window: Optional[TimeWindow] = None


class CalculationQueue:
    """
    Recalculation requests, deduplicated per SLA.

    A new request for an SLA replaces its pending one (latest wins).
    Higher priority pops first, then submission order.
    """

    def __init__(self):
        self._pending: Dict[str, CalculationRequest] = {}
        self._sequence = itertools.count()
        self._ready = asyncio.Event()

    def submit(self, sla_id: str, priority: int = 1, window: Optional[TimeWindow] = None) -> CalculationRequest:
        request = CalculationRequest(sla_id=sla_id, priority=priority, sequence=next(self._sequence), window=window)
        self._pending[sla_id] = request
        self._ready.set()
        return request

    def pop(self) -> Optional[CalculationRequest]:
        if not self._pending:
            self._ready.clear()
            return None
        request = min(self._pending.values(), key=lambda r: (-r.priority, r.sequence))
        del self._pending[request.sla_id]
        if not self._pending:
            self._ready.clear()
        return request

    def discard(self, sla_id: Optional[str] = None) -> int:
        if sla_id is not None:
            return 1 if self._pending.pop(sla_id, None) else 0
        dropped = len(self._pending)
        self._pending.clear()
        self._ready.clear()
        return dropped

    async def wait(self) -> None:
        await self._ready.wait()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, sla_id: str) -> bool:
        return sla_id in self._pending


class TrackingOrchestrator:
    """
    Entry point of the SLA engine.

    Exposes every engine operation (registration, measurement, metrics,
    breaches, scoring, analysis) and runs the polling, calculation,
    notification and persistence loops.
    """

    def __init__(
        self,
        config_provider: ISLAConfigProvider,
        repository: Optional[ISLAStateRepository] = None,
        clock: Clock = utc_now,
        event_bus: Optional[EventBus] = None,
        scheduler: Optional[SLAScheduler] = None,
        grafana_exporter: Optional[GrafanaOTLPExporter] = None,
        notification_sleep=asyncio.sleep,
    ):
        self._config_provider = config_provider
        self._repository = repository
        self._clock = clock
        self.event_bus = event_bus or EventBus()
        self._scheduler = scheduler or SLAScheduler()
        self._grafana = grafana_exporter

        self.registry = SLARegistry(self.event_bus, clock)
        self.store = MeasurementStore()
        self.calculator = MetricCalculator(self.registry, self.store, config_provider, self.event_bus, clock)
        self.detector = BreachDetector(self.registry, self.store, config_provider, self.event_bus, clock)
        self.scorer = ComplianceScorer(
            self.registry, self.calculator, self.detector, config_provider, self.event_bus, clock
        )
        self.analyzer = HistoricalAnalyzer(self.registry, self.store, self.detector, config_provider, clock)
        self.dispatcher = NotificationDispatcher(config_provider, self.event_bus, clock, notification_sleep)
        self.dispatcher.register_channel(LoggingChannel())

        self.queue = CalculationQueue()
        self._data_sources: Dict[str, IDataSource] = {}
        self._tracked: set = set()
        self._analyses: Dict[str, HistoricalAnalysis] = {}
        self._persistence: "asyncio.Queue[Any]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []

        self.event_bus.subscribe(MetricCalculated, self._on_metric_calculated)
        self.event_bus.subscribe(NotificationRequested, self._on_notification_requested)
        if repository is not None:
            self.event_bus.subscribe_all(self._on_persistable_event)

    # ========== Wiring ==========

    def register_data_source(self, source: IDataSource) -> None:
        self._data_sources[source.name] = source

    def register_channel(self, channel: INotificationChannel) -> None:
        self.dispatcher.register_channel(channel)

    def register_prediction_model(self, model: IPredictionModel) -> None:
        self.analyzer.register_model(model)

    def _on_metric_calculated(self, event: MetricCalculated) -> None:
        if event.sla_id in self.registry:
            self.detector.detect_breaches(event.sla_id, event.metric)

    def _on_notification_requested(self, event: NotificationRequested) -> None:
        self.dispatcher.enqueue(event.notifications)

    def _on_persistable_event(self, event: Any) -> None:
        if isinstance(event, PERSISTED_EVENTS):
            self._persistence.put_nowait(event)

    # ========== SLA registration ==========

    def register_sla(self, data: Union[SLADefinition, Dict[str, Any]]) -> SLADefinition:
        """
        Register an SLA and start polling it when active.

        Raises:
            ValidationException: invalid definition (field-level errors)
        """
        definition = self.registry.register_sla(data)
        if definition.is_active:
            self.start_tracking(definition.id)
        return definition

    def update_sla(self, sla_id: str, changes: Dict[str, Any]) -> SLADefinition:
        definition = self.registry.update_sla(sla_id, changes)
        self.scorer.invalidate(sla_id)
        if definition.is_active:
            self.start_tracking(sla_id)
        else:
            self.stop_tracking(sla_id)
        return definition

    def unregister_sla(self, sla_id: str) -> SLADefinition:
        """Stop tracking and forget an SLA; its breaches stay for audit."""
        self.stop_tracking(sla_id)
        definition = self.registry.unregister_sla(sla_id)
        self.queue.discard(sla_id)
        self.store.remove_sla(sla_id)
        self.calculator.forget(sla_id)
        self.scorer.invalidate(sla_id)
        return definition

    def get_sla(self, sla_id: str) -> SLADefinition:
        return self.registry.get(sla_id)

    def list_slas(self, active_only: bool = False) -> List[SLADefinition]:
        return self.registry.list(active_only)

    # ========== Polling ==========

    def start_tracking(self, sla_id: str) -> None:
        """Schedule the polling job (replaces an existing one)."""
        definition = self.registry.get(sla_id)
        self._tracked.add(sla_id)
        if self._scheduler.is_running:
            self._scheduler.add_interval_job(
                f"poll:{sla_id}",
                self.poll,
                seconds=definition.measurement.frequency_seconds,
                name=f"Poll {definition.name}",
                args=[sla_id],
            )
        logger.info(
            "SLA tracking started",
            extra={"sla_id": sla_id, "frequency_seconds": definition.measurement.frequency_seconds}
        )

    def stop_tracking(self, sla_id: str) -> None:
        """Cancel the polling job without waiting for in-flight work."""
        self._tracked.discard(sla_id)
        self._scheduler.remove_job(f"poll:{sla_id}")
        logger.info("SLA tracking stopped", extra={"sla_id": sla_id})

    def is_tracking(self, sla_id: str) -> bool:
        return sla_id in self._tracked

    async def poll(self, sla_id: str) -> Optional[MeasurementPoint]:
        """
        One polling tick: collect a measurement and queue a recalculation.

        Failures are logged and published as ``TrackingError``; the tick is
        skipped and the loop carries on.
        """
        try:
            point = await self.collect_measurement(sla_id)
        except DataSourceException as e:
            logger.warning("Data source query failed", extra={"sla_id": sla_id, "error": e.message})
            self.event_bus.publish(TrackingError(sla_id=sla_id, error=e.message, error_type=type(e).__name__))
            return None
        except ApplicationException as e:
            logger.warning("Polling tick failed", extra={"sla_id": sla_id, "error": e.message})
            self.event_bus.publish(TrackingError(sla_id=sla_id, error=e.message, error_type=type(e).__name__))
            return None
        except Exception as e:
            logger.error("Unexpected polling error", extra={"sla_id": sla_id, "error": str(e)}, exc_info=True)
            self.event_bus.publish(TrackingError(sla_id=sla_id, error=str(e), error_type=type(e).__name__))
            return None

        self.queue.submit(sla_id, priority=self._config_provider.get_config().tracking.calculation_priority)
        return point

    async def collect_measurement(self, sla_id: str) -> MeasurementPoint:
        """
        Query the SLA's data source and record the value.

        Raises:
            ResourceNotFoundException: unknown SLA
            DataSourceException: unknown data source or failed query
        """
        definition = self.registry.get(sla_id)
        source = self._data_sources.get(definition.measurement.data_source)
        if source is None:
            raise DataSourceException(
                f"No data source registered as '{definition.measurement.data_source}'",
                {"sla_id": sla_id}
            )

        try:
            value = await source.query(definition)
        except DataSourceException:
            raise
        except Exception as e:
            raise DataSourceException(
                f"Query for SLA {sla_id} failed: {e}", {"sla_id": sla_id, "source": source.name}
            ) from e

        return self.record_measurement(sla_id, value)

    def record_measurement(
        self,
        sla_id: str,
        value: float,
        timestamp=None,
        tags: Optional[Dict[str, str]] = None,
    ) -> MeasurementPoint:
        """
        Validate, store and announce a measurement, then apply retention.

        Invalid points are stored flagged and excluded, never dropped.
        """
        definition = self.registry.get(sla_id)
        tracking = self._config_provider.get_config().tracking
        now = self._clock()

        point = MeasurementPoint(
            sla_id=sla_id,
            timestamp=timestamp or now,
            value=float(value),
            unit=definition.unit,
            tags=tags or {},
        )
        validate_measurement(point, definition, tracking.validation_rules)
        if not point.is_valid:
            logger.warning(
                "Invalid measurement excluded",
                extra={"sla_id": sla_id, "value": point.value, "reason": point.exclusion_reason}
            )

        self.store.append(point)
        self.event_bus.publish(MeasurementCollected(measurement=point))

        cutoff = now - timedelta(days=tracking.retention_days)
        removed = self.store.prune(sla_id, cutoff)
        if removed:
            self.event_bus.publish(MeasurementsPruned(sla_id=sla_id, cutoff=cutoff, removed=removed))
        return point

    # ========== Calculation queue ==========

    def submit_calculation(
        self,
        sla_id: str,
        priority: Optional[int] = None,
        window: Optional[TimeWindow] = None
    ) -> None:
        self.registry.get(sla_id)
        if priority is None:
            priority = self._config_provider.get_config().tracking.calculation_priority
        self.queue.submit(sla_id, priority, window)

    def _process(self, request: CalculationRequest) -> Optional[SLAMetric]:
        try:
            with log_latency(logger, "metric_calculation", sla_id=request.sla_id):
                return self.calculator.calculate_sla_metric(request.sla_id, request.window)
        except ResourceNotFoundException:
            logger.info("Dropping calculation for unknown SLA", extra={"sla_id": request.sla_id})
        except ApplicationException as e:
            logger.error("Calculation failed", extra={"sla_id": request.sla_id, "error": e.message})
        except Exception as e:
            logger.error(
                "Unexpected calculation error",
                extra={"sla_id": request.sla_id, "error": str(e)},
                exc_info=True
            )
        return None

    def run_pending_calculations(self) -> int:
        """Drain the calculation queue; returns the number of requests processed."""
        processed = 0
        while True:
            request = self.queue.pop()
            if request is None:
                return processed
            self._process(request)
            processed += 1

    async def run_calculation_consumer(self) -> None:
        """Single consumer of the calculation queue; runs until cancelled."""
        while True:
            await self.queue.wait()
            request = self.queue.pop()
            if request is not None:
                self._process(request)
            await asyncio.sleep(0)

    def recalculate(self, sla_id: str, window: Optional[TimeWindow] = None) -> SLAMetric:
        """Queue a high-priority recalculation, drain the queue and return the metric."""
        self.registry.get(sla_id)
        self.queue.submit(sla_id, priority=100, window=window)
        self.run_pending_calculations()
        return self.calculator.get_metric(sla_id)

    def recalculate_all(self) -> List[SLAMetric]:
        for definition in self.registry.list(active_only=True):
            self.queue.submit(definition.id, priority=100)
        self.run_pending_calculations()
        return self.calculator.get_all_metrics()

    # ========== Metrics ==========

    def calculate_sla_metric(self, sla_id: str, window: Optional[TimeWindow] = None) -> SLAMetric:
        return self.calculator.calculate_sla_metric(sla_id, window)

    def get_metric(self, sla_id: str) -> SLAMetric:
        return self.calculator.get_metric(sla_id)

    def get_metrics_by_service(self, service_id: str) -> List[SLAMetric]:
        return self.calculator.get_metrics_by_service(service_id)

    def get_all_metrics(self) -> List[SLAMetric]:
        return self.calculator.get_all_metrics()

    def get_sla_history(self, sla_id: str, window: TimeWindow, interval: timedelta) -> List[SLAMetric]:
        return self.calculator.get_sla_history(sla_id, window, interval)

    # ========== Breaches ==========

    def detect_breaches(self, sla_id: str, metric: Optional[SLAMetric] = None) -> List[Breach]:
        """Manual re-evaluation; defaults to the SLA's current metric."""
        return self.detector.detect_breaches(sla_id, metric or self.calculator.get_metric(sla_id))

    def acknowledge_breach(self, breach_id: str, user_id: str, comment: Optional[str] = None) -> Breach:
        return self.detector.acknowledge_breach(breach_id, user_id, comment)

    def resolve_breach(
        self,
        breach_id: str,
        user_id: str,
        resolution: str,
        root_cause: Optional[str] = None
    ) -> Breach:
        breach = self.detector.resolve_breach(breach_id, user_id, resolution, root_cause)
        self.scorer.invalidate(breach.sla_id)
        return breach

    def get_breach(self, breach_id: str) -> Breach:
        return self.detector.get_breach(breach_id)

    def get_active_breaches(self, sla_id: Optional[str] = None) -> List[Breach]:
        return self.detector.get_active_breaches(sla_id)

    def get_breach_history(self, sla_id: Optional[str] = None, window: Optional[TimeWindow] = None) -> List[Breach]:
        return self.detector.get_breach_history(sla_id, window)

    def get_breach_statistics(
        self,
        sla_id: Optional[str] = None,
        window: Optional[TimeWindow] = None
    ) -> BreachStatistics:
        return self.detector.get_breach_statistics(sla_id, window)

    def get_escalations(self, breach_id: Optional[str] = None) -> List[Escalation]:
        return self.detector.get_escalations(breach_id)

    def analyze_breach_patterns(self, sla_id: str) -> List[BreachPattern]:
        self.registry.get(sla_id)
        return self.detector.analyze_breach_patterns(sla_id)

    def check_escalations(self) -> List[Escalation]:
        return self.detector.check_escalations()

    # ========== Scoring and analysis ==========

    def calculate_compliance_score(self, context: Union[ScoringContext, str]) -> ComplianceScore:
        if isinstance(context, str):
            context = ScoringContext(sla_id=context)
        return self.scorer.calculate_compliance_score(context)

    def get_compliance_grade(self, sla_id: str) -> ComplianceGrade:
        return self.scorer.get_compliance_grade(sla_id)

    def get_historical_scores(self, sla_id: str, window: Optional[TimeWindow] = None) -> List[ComplianceScore]:
        return self.scorer.get_historical_scores(sla_id, window)

    def perform_historical_analysis(self, request: AnalysisRequest) -> List[HistoricalAnalysis]:
        analyses = self.analyzer.perform_historical_analysis(request)
        for analysis in analyses:
            self._analyses[analysis.sla_id] = analysis
        return analyses

    def get_latest_analysis(self, sla_id: str) -> HistoricalAnalysis:
        analysis = self._analyses.get(sla_id)
        if analysis is None:
            raise ResourceNotFoundException("HistoricalAnalysis", sla_id)
        return analysis

    # ========== Scheduled jobs ==========

    async def escalation_sweep(self) -> None:
        try:
            escalations = self.detector.check_escalations()
            if escalations:
                logger.info("Escalation sweep completed", extra={"escalations": len(escalations)})
        except Exception as e:
            logger.error("Escalation sweep failed", extra={"error": str(e)}, exc_info=True)

    async def analysis_sweep(self) -> None:
        sla_ids = [d.id for d in self.registry.list(active_only=True)]
        if not sla_ids:
            return
        try:
            self.perform_historical_analysis(AnalysisRequest(sla_ids=sla_ids))
        except Exception as e:
            logger.error("Historical analysis sweep failed", extra={"error": str(e)}, exc_info=True)

    def metrics_snapshot(self) -> List[Dict[str, Any]]:
        snapshots = []
        for metric in self.calculator.get_all_metrics():
            definition = self.registry.find(metric.sla_id)
            snapshots.append({
                "sla_id": metric.sla_id,
                "service_id": definition.service_id if definition else "",
                "compliance_percentage": metric.compliance_percentage,
                "current_value": metric.current_value,
                "active_breaches": len(self.detector.get_active_breaches(metric.sla_id)),
                "total_breaches": len(self.detector.get_breach_history(metric.sla_id)),
            })
        return snapshots

    async def export_metrics(self) -> bool:
        if self._grafana is None or not self._grafana.is_enabled():
            return False
        return await self._grafana.export_sla_metrics(self.metrics_snapshot())

    # ========== Notifications and persistence ==========

    async def flush_notifications(self) -> int:
        return await self.dispatcher.drain()

    async def _persist(self, event: Any) -> None:
        repo = self._repository
        if isinstance(event, (SLARegistered, SLAUpdated)):
            await repo.save_definition(event.definition)
        elif isinstance(event, SLAUnregistered):
            await repo.delete_definition(event.sla_id)
        elif isinstance(event, MeasurementCollected):
            await repo.save_measurement(event.measurement)
        elif isinstance(event, MeasurementsPruned):
            await repo.prune_measurements(event.sla_id, event.cutoff)
        elif isinstance(event, BreachEscalated):
            await repo.save_breach(event.breach)
            await repo.save_escalation(event.escalation)
        else:
            await repo.save_breach(event.breach)

    async def _persist_safely(self, event: Any) -> None:
        try:
            await self._persist(event)
        except ApplicationException as e:
            logger.error(
                "Persistence write failed",
                extra={"event_type": type(event).__name__, "error": e.message}
            )
        except Exception as e:
            logger.error(
                "Unexpected persistence error",
                extra={"event_type": type(event).__name__, "error": str(e)},
                exc_info=True
            )

    async def flush_persistence(self) -> int:
        """Apply every queued write in order; returns how many were applied."""
        applied = 0
        while not self._persistence.empty():
            event = self._persistence.get_nowait()
            try:
                await self._persist_safely(event)
            finally:
                self._persistence.task_done()
            applied += 1
        return applied

    async def run_persistence_consumer(self) -> None:
        while True:
            event = await self._persistence.get()
            try:
                await self._persist_safely(event)
            finally:
                self._persistence.task_done()

    # ========== Lifecycle ==========

    async def restore(self) -> Dict[str, int]:
        """
        Reload persisted state: definitions, measurements within retention,
        breaches (open ones back into the active index) and escalations.
        """
        if self._repository is None:
            return {"definitions": 0, "measurements": 0, "breaches": 0, "escalations": 0}

        retention = self._config_provider.get_config().tracking.retention_days
        definitions = await self._repository.list_definitions()
        measurements = await self._repository.list_measurements(
            since=self._clock() - timedelta(days=retention)
        )
        breaches = await self._repository.list_breaches()
        escalations = await self._repository.list_escalations()

        self.registry.load(definitions)
        known = {d.id for d in definitions}
        loaded = self.store.load(m for m in measurements if m.sla_id in known)
        self.detector.restore(breaches, escalations)
        for definition in definitions:
            if definition.is_active:
                self.start_tracking(definition.id)

        counts = {
            "definitions": len(definitions),
            "measurements": loaded,
            "breaches": len(breaches),
            "escalations": len(escalations),
        }
        logger.info("Engine state restored", extra=counts)
        return counts

    async def start(self) -> None:
        """Start the scheduler, the polling jobs and the consumers."""
        self._scheduler.start()
        for sla_id in list(self._tracked):
            self.start_tracking(sla_id)

        self._scheduler.add_interval_job(
            ESCALATION_JOB_ID, self.escalation_sweep, seconds=settings.escalation_check_interval,
            name="Escalation sweep",
        )
        if settings.analysis_interval > 0:
            self._scheduler.add_interval_job(
                ANALYSIS_JOB_ID, self.analysis_sweep, seconds=settings.analysis_interval,
                name="Historical analysis",
            )
        if self._grafana is not None and self._grafana.is_enabled():
            self._scheduler.add_interval_job(
                METRICS_EXPORT_JOB_ID, self.export_metrics, seconds=METRICS_EXPORT_INTERVAL_SECONDS,
                name="Grafana metrics export",
            )

        self._tasks = [asyncio.create_task(self.run_calculation_consumer(), name="calculation-consumer"),
                       asyncio.create_task(self.dispatcher.run(), name="notification-consumer")]
        if self._repository is not None:
            self._tasks.append(asyncio.create_task(self.run_persistence_consumer(), name="persistence-consumer"))

        logger.info("SLA engine started", extra={"tracked_slas": len(self._tracked)})

    async def shutdown(self) -> None:
        """
        Stop timers and consumers.

        Pending calculations and notifications are dropped; queued
        persistence writes get one final flush.
        """
        self._scheduler.stop()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        dropped_calculations = self.queue.discard()
        dropped_notifications = self.dispatcher.discard_pending()
        flushed = await self.flush_persistence() if self._repository is not None else 0

        logger.info(
            "SLA engine stopped",
            extra={
                "dropped_calculations": dropped_calculations,
                "dropped_notifications": dropped_notifications,
                "persisted_on_shutdown": flushed,
            }
        )
