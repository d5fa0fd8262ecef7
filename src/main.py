"""
SLA Engine - Main Application
==============================

Long-running SLA breach detection and compliance scoring service.

Startup:
1. Setup structured logging
2. Initialize database and create tables (when persistence is enabled)
3. Load engine configuration and start watching it
4. Register data sources and notification channels
5. Restore persisted state, then register bootstrap SLA definitions
6. Start the orchestrator (scheduler, calculation, notification and
   persistence consumers)

Shutdown (SIGINT/SIGTERM):
1. Stop the orchestrator
2. Stop config watcher
3. Close HTTP clients and database connections
"""

import asyncio
import signal
from typing import List

from config import settings
from core import ApplicationException, ValidationException

from infrastructure.database import init_database, close_database, create_tables
from shared.infrastructure.grafana import init_grafana_exporter
from shared.infrastructure.logging import setup_logging, get_logger
from sla.application import TrackingOrchestrator
from sla.infrastructure import (
    InMemorySLAStateRepository,
    PrometheusDataSource,
    SlackChannel,
    SLAConfigManager,
    SQLAlchemySLAStateRepository,
    StaticDataSource,
    load_sla_definitions,
)

logger = get_logger(__name__)


def register_bootstrap_definitions(orchestrator: TrackingOrchestrator) -> int:
    """Register SLAs from ``settings.sla_definitions_path`` not already restored."""
    if settings.sla_definitions_path is None:
        return 0

    registered = 0
    for data in load_sla_definitions(settings.sla_definitions_path):
        if data.get("id") in orchestrator.registry:
            continue
        try:
            orchestrator.register_sla(data)
            registered += 1
        except ValidationException as e:
            logger.error(
                "Skipping invalid SLA definition",
                extra={"sla_id": data.get("id"), "errors": e.details.get("errors")}
            )
    return registered


async def run() -> None:
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting SLA engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    repository = None
    if settings.use_database:
        logger.info("Initializing database")
        init_database()
        try:
            await create_tables()
            repository = SQLAlchemySLAStateRepository()
        except Exception as e:
            logger.warning(f"Database not available - running without persistence: {e}")
            repository = InMemorySLAStateRepository()

    logger.info("Loading engine configuration")
    config_manager = SLAConfigManager()
    config_manager.load(settings.sla_config_path)
    config_manager.start_watching()

    grafana_exporter = None
    if settings.grafana_host and settings.grafana_api_key and settings.grafana_instance_id:
        grafana_exporter = init_grafana_exporter(
            host=settings.grafana_host,
            api_key=settings.grafana_api_key,
            instance_id=settings.grafana_instance_id
        )

    orchestrator = TrackingOrchestrator(
        config_manager,
        repository=repository,
        grafana_exporter=grafana_exporter,
    )

    closables: List = []
    orchestrator.register_data_source(StaticDataSource())
    if settings.prometheus_url:
        prometheus = PrometheusDataSource(settings.prometheus_url, settings.prometheus_timeout_seconds)
        orchestrator.register_data_source(prometheus)
        closables.append(prometheus)
    if settings.slack_webhook_url:
        slack = SlackChannel()
        orchestrator.register_channel(slack)
        closables.append(slack)

    await orchestrator.restore()
    registered = register_bootstrap_definitions(orchestrator)
    await orchestrator.start()
    logger.info("SLA engine started successfully", extra={"bootstrap_slas": registered})

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            pass

    try:
        await stop_event.wait()
    finally:
        # === SHUTDOWN ===
        logger.info("Shutting down SLA engine")
        await orchestrator.shutdown()
        config_manager.stop_watching()
        for client in closables:
            await client.close()
        if settings.use_database:
            await close_database()
        logger.info("SLA engine shutdown complete")


def main() -> int:
    try:
        asyncio.run(run())
    except ApplicationException as e:
        logger.error("SLA engine failed to start", extra={"error": e.message, "details": e.details})
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
