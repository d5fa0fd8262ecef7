"""
SLA External Service Integrations
==================================

External services for the SLA engine:
- YAML engine config with watchdog hot reload
- SLA definition bootstrap files
- Notification channels (log, Slack, generic webhook) over httpx
- Data sources (static values, callables, Prometheus over httpx)
- APScheduler wrapper for polling, escalation and analysis jobs
"""

import inspect
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from config import settings
from core import ConfigurationException, DataSourceException, NotificationDeliveryException
from shared.infrastructure.logging import get_logger
from sla.application.interfaces import IDataSource, INotificationChannel, ISLAConfigProvider
from sla.domain import Notification, SLADefinition, SLAEngineConfig

logger = get_logger(__name__)


# ========== Configuration ==========

class ConfigFileHandler(FileSystemEventHandler):
    """Watchdog event handler for engine config file changes."""

    def __init__(self, config_manager: "SLAConfigManager", config_path: Path):
        self.config_manager = config_manager
        self.config_path = config_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.config_path.resolve():
            logger.info("Engine config file changed", extra={"path": str(event.src_path)})
            self.config_manager.reload()


class SLAConfigManager(ISLAConfigProvider):
    """
    Thread-safe engine configuration manager with hot-reload support.

    Uses watchdog to monitor the YAML file and swap in a new
    ``SLAEngineConfig`` without restarting. A reload that fails to parse
    keeps the previous configuration.
    """

    def __init__(self):
        self._config: Optional[SLAEngineConfig] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SLAEngineConfig:
        """
        Initial configuration load.

        Raises:
            ConfigurationException: the file exists but is invalid
        """
        self._path = Path(path)
        config = self._load_from_file(self._path)
        with self._lock:
            self._config = config
        return config

    def _load_from_file(self, path: Path) -> SLAEngineConfig:
        """Load and parse the YAML config file."""
        if not path.exists():
            logger.warning("Engine config file not found, using defaults", extra={"path": str(path)})
            return SLAEngineConfig()

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
            return SLAEngineConfig.model_validate(data)
        except (yaml.YAMLError, ValidationError) as e:
            raise ConfigurationException(
                f"Invalid engine configuration in {path}", {"error": str(e)}
            ) from e

    def reload(self) -> bool:
        """Reload configuration from file."""
        if self._path is None:
            return False

        try:
            new_config = self._load_from_file(self._path)
        except ConfigurationException as e:
            logger.error(
                "Failed to reload engine config, keeping previous",
                extra={"path": str(self._path), "error": e.details.get("error")}
            )
            return False

        with self._lock:
            self._config = new_config
        logger.info("Engine configuration reloaded", extra={"path": str(self._path)})
        return True

    def start_watching(self) -> None:
        """
        Start watching the configuration file for changes.

        Skips watching if the file doesn't exist or the platform cannot
        watch files (e.g. some container filesystems).
        """
        if self._path is None:
            raise RuntimeError("Config not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Config file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = ConfigFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching config file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static config", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching configuration file (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    @property
    def config(self) -> SLAEngineConfig:
        """Get current configuration."""
        with self._lock:
            if self._config is None:
                raise RuntimeError("Engine configuration not loaded")
            return self._config

    def get_config(self) -> SLAEngineConfig:
        return self.config


class StaticConfigProvider(ISLAConfigProvider):
    """Fixed configuration, replaceable at runtime (tests, embedded use)."""

    def __init__(self, config: Optional[SLAEngineConfig] = None):
        self._config = config or SLAEngineConfig()

    def get_config(self) -> SLAEngineConfig:
        return self._config

    def update(self, config: SLAEngineConfig) -> None:
        self._config = config


def load_sla_definitions(path: Path) -> List[Dict[str, Any]]:
    """
    Read SLA definitions from a YAML bootstrap file.

    The file holds a top-level ``slas`` list; each entry is validated later
    by the registry.

    Raises:
        ConfigurationException: unreadable or malformed file
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationException(f"SLA definitions file not found: {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationException(f"Invalid SLA definitions file {path}", {"error": str(e)}) from e

    definitions = data.get("slas", []) if isinstance(data, dict) else None
    if not isinstance(definitions, list):
        raise ConfigurationException(f"'slas' must be a list in {path}")
    return definitions


# ========== Circuit breaker ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


# ========== Notification channels ==========

class LoggingChannel(INotificationChannel):
    """Default channel: writes the notification to the structured log."""

    channel = "log"

    async def send(self, notification: Notification) -> None:
        logger.warning(
            notification.subject,
            extra={
                "sla_id": notification.sla_id,
                "breach_id": notification.breach_id,
                "event": notification.event,
                "urgency": notification.urgency,
                "recipients": notification.recipients,
                "notification_message": notification.message,
            }
        )


class _HttpChannel(INotificationChannel):
    """Shared httpx client handling and circuit breaking for HTTP channels."""

    def __init__(
        self,
        timeout: float,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self._timeout = timeout
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def _post(self, url: str, payload: Dict[str, Any], notification: Notification) -> None:
        if not self._circuit_breaker.allow_request():
            raise NotificationDeliveryException(self.channel, "circuit breaker open")

        try:
            client = await self._get_client()
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            self._circuit_breaker.record_failure()
            raise NotificationDeliveryException(self.channel, str(e)) from e

        if response.status_code >= 300:
            self._circuit_breaker.record_failure()
            raise NotificationDeliveryException(
                self.channel, f"HTTP {response.status_code}: {response.text[:200]}"
            )

        self._circuit_breaker.record_success()
        logger.info(
            "Notification posted",
            extra={"channel": self.channel, "sla_id": notification.sla_id, "notification_id": notification.id}
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class SlackChannel(_HttpChannel):
    """Slack incoming-webhook channel using Block Kit messages."""

    channel = "slack"

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        slack_channel: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(settings.slack_timeout_seconds, http_client, circuit_breaker)
        self._webhook_url = webhook_url or settings.slack_webhook_url
        self._slack_channel = slack_channel or settings.slack_channel

    def build_message(self, notification: Notification) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        emoji = {
            "threshold_breach": ":rotating_light:",
            "escalation": ":warning:",
            "recovery": ":white_check_mark:",
        }.get(notification.event, ":information_source:")

        fields = [
            {"type": "mrkdwn", "text": f"*SLA:*\n{notification.sla_id}"},
            {"type": "mrkdwn", "text": f"*Urgency:*\n{notification.urgency.title()}"},
        ]
        if "threshold" in notification.metadata:
            fields.append({"type": "mrkdwn", "text": f"*Threshold:*\n{notification.metadata['threshold']}"})
        if "escalation_level" in notification.metadata:
            fields.append({"type": "mrkdwn", "text": f"*Escalation Level:*\n{notification.metadata['escalation_level']}"})

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{emoji} {notification.subject}", "emoji": True}
            },
            {"type": "section", "fields": fields},
            {"type": "section", "text": {"type": "mrkdwn", "text": notification.message}},
        ]
        if notification.recipients:
            blocks.append({
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": "Notify: " + ", ".join(notification.recipients)}]
            })

        return {"channel": self._slack_channel, "blocks": blocks}

    async def send(self, notification: Notification) -> None:
        if not self._webhook_url:
            raise NotificationDeliveryException(self.channel, "Slack webhook URL not configured")
        await self._post(self._webhook_url, self.build_message(notification), notification)


class WebhookChannel(_HttpChannel):
    """Posts the notification record as JSON to a fixed URL."""

    channel = "webhook"

    def __init__(
        self,
        url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(settings.webhook_timeout_seconds, http_client, circuit_breaker)
        self._url = url

    async def send(self, notification: Notification) -> None:
        await self._post(self._url, notification.model_dump(mode="json"), notification)


# ========== Data sources ==========

class StaticDataSource(IDataSource):
    """
    Values set by hand, per SLA.

    A sequence is consumed one value per query and then repeats its last
    value.
    """

    name = "static"

    def __init__(self, values: Optional[Dict[str, Union[float, Sequence[float]]]] = None):
        self._values: Dict[str, List[float]] = {}
        for sla_id, value in (values or {}).items():
            self.set(sla_id, value)

    def set(self, sla_id: str, value: Union[float, Sequence[float]]) -> None:
        if isinstance(value, (int, float)):
            self._values[sla_id] = [float(value)]
        else:
            self._values[sla_id] = [float(v) for v in value]

    async def query(self, definition: SLADefinition) -> float:
        values = self._values.get(definition.id)
        if not values:
            raise DataSourceException(f"No static value for SLA {definition.id}", {"sla_id": definition.id})
        if len(values) > 1:
            return values.pop(0)
        return values[0]


class CallableDataSource(IDataSource):
    """Wraps a plain or async function ``(definition) -> float``."""

    def __init__(self, name: str, func: Callable[[SLADefinition], Union[float, Awaitable[float]]]):
        self.name = name
        self._func = func

    async def query(self, definition: SLADefinition) -> float:
        try:
            value = self._func(definition)
            if inspect.isawaitable(value):
                value = await value
            return float(value)
        except DataSourceException:
            raise
        except Exception as e:
            raise DataSourceException(
                f"Data source '{self.name}' failed for SLA {definition.id}: {e}",
                {"sla_id": definition.id}
            ) from e


class PrometheusDataSource(IDataSource):
    """Instant query against a Prometheus HTTP API (``measurement.query``)."""

    name = "prometheus"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def query(self, definition: SLADefinition) -> float:
        query = definition.measurement.query
        if not query:
            raise DataSourceException(f"SLA {definition.id} has no Prometheus query", {"sla_id": definition.id})

        try:
            client = await self._get_client()
            response = await client.get(f"{self._base_url}/api/v1/query", params={"query": query})
            response.raise_for_status()
            result = response.json()["data"]["result"]
            return float(result[0]["value"][1])
        except httpx.HTTPError as e:
            raise DataSourceException(
                f"Prometheus query failed for SLA {definition.id}: {e}", {"sla_id": definition.id}
            ) from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise DataSourceException(
                f"Unexpected Prometheus response for SLA {definition.id}", {"sla_id": definition.id}
            ) from e

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Scheduling ==========

class SLAScheduler:
    """
    Wrapper for APScheduler's AsyncIOScheduler.

    Jobs are identified by id (``poll:<sla_id>``, ``escalation_sweep``, ...)
    and replaced when added again. Must be started from a running event loop.
    """

    def __init__(self):
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    def start(self) -> None:
        """Start the scheduler."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.start()
        self._running = True
        logger.info("SLA scheduler started")

    def add_interval_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        seconds: float,
        name: Optional[str] = None,
        args: Optional[list] = None,
    ) -> None:
        """Add or replace an interval job."""
        if self._scheduler is None:
            raise RuntimeError("Scheduler not started. Call start() first.")

        self._scheduler.add_job(
            func,
            "interval",
            seconds=seconds,
            args=args or [],
            id=job_id,
            name=name or job_id,
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.debug("Scheduled job", extra={"job_id": job_id, "interval_seconds": seconds})

    def remove_job(self, job_id: str) -> bool:
        """Remove a job; returns False when it did not exist."""
        if self._scheduler is None or self._scheduler.get_job(job_id) is None:
            return False
        self._scheduler.remove_job(job_id)
        return True

    def has_job(self, job_id: str) -> bool:
        return self._scheduler is not None and self._scheduler.get_job(job_id) is not None

    def job_ids(self) -> List[str]:
        if self._scheduler is None:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    def stop(self) -> None:
        """Stop the scheduler without waiting for running jobs."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._scheduler = None
        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
