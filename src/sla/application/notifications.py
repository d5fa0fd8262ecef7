"""
Notification Intents and Delivery
==================================

Builds notification intents from SLA notification rules and delivers them
through registered channels.

- Builders turn a breach, a recovery or an escalation into ``Notification``
  records (one per matching rule and channel; a single ``log`` notification
  when no rule matches).
- ``NotificationDispatcher`` is the single consumer of the delivery queue.
  Failed deliveries are retried with linear backoff; after the last attempt
  the failure is recorded on the notification, never re-raised.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from config import NotificationChannel, NotificationEvent, NotificationStatus
from core import NotificationDeliveryException
from shared.infrastructure.events import EventBus
from shared.infrastructure.logging import get_logger
from sla.application.interfaces import (
    Clock, INotificationChannel, ISLAConfigProvider, utc_now
)
from sla.domain import Breach, Escalation, Notification, SLADefinition
from sla.domain.events import NotificationDelivered

logger = get_logger(__name__)


# ========== Builders ==========

def _matching_rules(definition: Optional[SLADefinition], event: str, breach: Breach):
    if definition is None:
        return []
    return [
        rule for rule in definition.notifications
        if rule.is_active
        and rule.event == event
        and (rule.severity is None or rule.severity == breach.severity)
        and (rule.threshold is None or rule.threshold == breach.threshold)
    ]


def _fan_out(
    definition: Optional[SLADefinition],
    event: str,
    breach: Breach,
    subject: str,
    message: str,
    metadata: dict,
    extra_channels: Iterable[str] = (),
    extra_recipients: Iterable[str] = (),
) -> List[Notification]:
    notifications = []
    for rule in _matching_rules(definition, event, breach):
        for channel in rule.channels:
            notifications.append(Notification(
                sla_id=breach.sla_id,
                breach_id=breach.id,
                event=event,
                channel=channel,
                recipients=[*rule.recipients, *extra_recipients],
                subject=subject,
                message=message,
                urgency=breach.severity,
                metadata={**metadata, "rule_id": rule.id},
            ))

    covered = {n.channel for n in notifications}
    for channel in extra_channels:
        if channel not in covered:
            notifications.append(Notification(
                sla_id=breach.sla_id,
                breach_id=breach.id,
                event=event,
                channel=channel,
                recipients=list(extra_recipients),
                subject=subject,
                message=message,
                urgency=breach.severity,
                metadata=dict(metadata),
            ))
            covered.add(channel)

    if not notifications:
        notifications.append(Notification(
            sla_id=breach.sla_id,
            breach_id=breach.id,
            event=event,
            channel=NotificationChannel.LOG,
            recipients=list(extra_recipients),
            subject=subject,
            message=message,
            urgency=breach.severity,
            metadata=dict(metadata),
        ))
    return notifications


def _name(definition: Optional[SLADefinition], breach: Breach) -> str:
    return definition.name if definition else breach.sla_id


def build_breach_notifications(
    definition: Optional[SLADefinition],
    breach: Breach,
    is_new: bool
) -> List[Notification]:
    """Intents for a breach that opened or fired again."""
    unit = definition.unit if definition else ""
    threshold_value = breach.metadata.get("threshold_value")
    subject = f"[{breach.severity.upper()}] SLA breach: {_name(definition, breach)}"
    message = (
        f"{_name(definition, breach)} is at {breach.actual_value:g}{unit}, failing the "
        f"{breach.threshold} threshold"
        + (f" of {threshold_value:g}{unit}" if threshold_value is not None else "")
        + f" (target {breach.target_value:g}{unit}, impact {breach.impact_value}%)."
    )
    return _fan_out(
        definition, NotificationEvent.THRESHOLD_BREACH, breach, subject, message,
        {"threshold": breach.threshold, "is_new": is_new, "observations": breach.observations},
    )


def build_recovery_notifications(
    definition: Optional[SLADefinition],
    breach: Breach
) -> List[Notification]:
    """Intents for a resolved breach."""
    duration = breach.duration.total_seconds() if breach.duration else 0.0
    subject = f"[RESOLVED] SLA breach: {_name(definition, breach)}"
    message = (
        f"Breach of the {breach.threshold} threshold was resolved by {breach.resolved_by} "
        f"after {int(duration)}s: {breach.resolution}"
    )
    return _fan_out(
        definition, NotificationEvent.RECOVERY, breach, subject, message,
        {"threshold": breach.threshold, "duration_seconds": duration},
    )


def build_escalation_notifications(
    definition: Optional[SLADefinition],
    breach: Breach,
    escalation: Escalation,
    channels: Iterable[str],
) -> List[Notification]:
    """Intents for an escalation, addressed to the level's recipients."""
    subject = f"[ESCALATION L{escalation.level}] SLA breach: {_name(definition, breach)}"
    message = f"{escalation.reason}. Escalated to level {escalation.level}."
    return _fan_out(
        definition, NotificationEvent.ESCALATION, breach, subject, message,
        {"threshold": breach.threshold, "escalation_level": escalation.level},
        extra_channels=channels,
        extra_recipients=escalation.escalated_to,
    )


# ========== Delivery ==========

class NotificationDispatcher:
    """
    Single-consumer delivery queue.

    ``enqueue`` is safe to call from synchronous event handlers; ``run``
    consumes until cancelled and ``drain`` delivers everything currently
    queued (used on shutdown and in tests).
    """

    def __init__(
        self,
        config_provider: ISLAConfigProvider,
        event_bus: EventBus,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._config_provider = config_provider
        self._bus = event_bus
        self._clock = clock
        self._sleep = sleep
        self._channels: Dict[str, INotificationChannel] = {}
        self._queue: "asyncio.Queue[Notification]" = asyncio.Queue()
        self._records: Dict[str, Notification] = {}

    def register_channel(self, channel: INotificationChannel) -> None:
        self._channels[channel.channel] = channel

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            self._records[notification.id] = notification
            self._queue.put_nowait(notification)

    def get_notifications(self, sla_id: Optional[str] = None) -> List[Notification]:
        """Notifications queued and not yet delivered or failed."""
        records = list(self._records.values())
        if sla_id is not None:
            records = [n for n in records if n.sla_id == sla_id]
        return sorted(records, key=lambda n: n.created_at)

    async def run(self) -> None:
        """Consume the queue until cancelled."""
        while True:
            notification = await self._queue.get()
            try:
                await self.deliver(notification)
            except Exception as e:
                logger.error(
                    "Notification consumer error",
                    extra={"notification_id": notification.id, "error": str(e)},
                    exc_info=True
                )
            finally:
                self._queue.task_done()

    async def drain(self) -> int:
        """Deliver every queued notification; returns how many were processed."""
        processed = 0
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            try:
                await self.deliver(notification)
            finally:
                self._queue.task_done()
            processed += 1
        return processed

    def discard_pending(self) -> int:
        dropped = 0
        while not self._queue.empty():
            notification = self._queue.get_nowait()
            self._records.pop(notification.id, None)
            self._queue.task_done()
            dropped += 1
        return dropped

    async def deliver(self, notification: Notification) -> Notification:
        """
        Send one notification with retries.

        An unregistered channel fails immediately; transport errors are
        retried up to ``retry_attempts`` with ``retry_delay_seconds * attempt``
        between tries.
        """
        policy = self._config_provider.get_config().notifications
        channel = self._channels.get(notification.channel)

        if channel is None:
            notification.status = NotificationStatus.FAILED
            notification.last_error = f"No channel registered for '{notification.channel}'"
            logger.warning(
                "Notification channel not registered",
                extra={"notification_id": notification.id, "channel": notification.channel}
            )
            return self._finish(notification)

        for attempt in range(1, policy.retry_attempts + 1):
            notification.attempts = attempt
            try:
                await channel.send(notification)
            except NotificationDeliveryException as e:
                notification.last_error = e.message
            except Exception as e:
                notification.last_error = str(e)
            else:
                notification.status = NotificationStatus.SENT
                notification.sent_at = self._clock()
                notification.last_error = None
                logger.info(
                    "Notification sent",
                    extra={
                        "sla_id": notification.sla_id,
                        "notification_id": notification.id,
                        "channel": notification.channel,
                        "attempts": attempt,
                    }
                )
                break

            logger.warning(
                "Notification delivery failed",
                extra={
                    "sla_id": notification.sla_id,
                    "notification_id": notification.id,
                    "channel": notification.channel,
                    "attempt": attempt,
                    "error": notification.last_error,
                }
            )
            if attempt < policy.retry_attempts:
                await self._sleep(policy.retry_delay_seconds * attempt)
        else:
            notification.status = NotificationStatus.FAILED

        return self._finish(notification)

    def _finish(self, notification: Notification) -> Notification:
        """Forget a delivered or failed notification; the event carries the final record."""
        self._records.pop(notification.id, None)
        self._bus.publish(NotificationDelivered(notification=notification))
        return notification
