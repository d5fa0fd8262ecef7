"""
Breach Detection
================

Evaluates detection rules against freshly calculated metrics and owns the
breach lifecycle:

    no-breach -> active -> (acknowledged) -> resolved

One open breach exists per (sla_id, threshold band). A rule that fires again
while that breach is open updates it in place. Only an explicit
``resolve_breach`` closes a breach; a healthy metric does not.

Unresolved active breaches escalate each time they outlive the timeout for
their severity, one level at a time.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from config import (
    BreachStatus, SLAStatus, Severity, SEVERITY_RANK, FAILURE_BANDS
)
from core import ResourceNotFoundException
from shared.infrastructure.events import EventBus
from shared.infrastructure.logging import get_logger
from sla.application.interfaces import Clock, ISLAConfigProvider, utc_now
from sla.application.measurements import MeasurementStore
from sla.application.notifications import (
    build_breach_notifications, build_escalation_notifications, build_recovery_notifications
)
from sla.application.tracking import SLARegistry
from sla.domain import (
    Breach, BreachPattern, BreachStatistics, DetectionRule, Escalation,
    SLACalculator, SLADefinition, SLAMetric, TimeWindow, Notification
)
from sla.domain.events import (
    BreachAcknowledged, BreachDetected, BreachEscalated, BreachResolved,
    BreachUpdated, NotificationRequested, PatternDetected
)

logger = get_logger(__name__)


def _max_severity(breaches: List[Breach]) -> str:
    return max((b.severity for b in breaches), key=lambda s: SEVERITY_RANK.get(s, 0), default=Severity.LOW)


class BreachDetector:
    """
    Breach detection, lifecycle and escalation.

    Owns the breach arena (``_breaches`` by id), the open-breach index keyed
    by (sla_id, threshold) and the per-breach escalation lists. All mutation
    happens on the calculation consumer or through the lifecycle methods,
    never concurrently.
    """

    def __init__(
        self,
        registry: SLARegistry,
        store: MeasurementStore,
        config_provider: ISLAConfigProvider,
        event_bus: EventBus,
        clock: Clock = utc_now,
    ):
        self._registry = registry
        self._store = store
        self._config_provider = config_provider
        self._bus = event_bus
        self._clock = clock
        self._breaches: Dict[str, Breach] = {}
        self._open: Dict[Tuple[str, str], str] = {}
        self._escalations: Dict[str, List[Escalation]] = {}

    # ========== Detection ==========

    def get_detection_rules(self, definition: SLADefinition) -> List[DetectionRule]:
        """
        Active rules for an SLA.

        Without explicit rules, one default rule per configured failure band
        (warning, escalation, critical).
        """
        if definition.detection_rules:
            return [r for r in definition.detection_rules if r.is_active]

        consecutive = self._config_provider.get_config().detection.default_consecutive_failures
        return [
            DetectionRule(id=f"default-{band}", threshold=band, consecutive_failures=consecutive)
            for band in FAILURE_BANDS
            if definition.threshold_value(band) is not None
        ]

    def detect_breaches(self, sla_id: str, metric: SLAMetric) -> List[Breach]:
        """
        Evaluate every detection rule against a metric.

        A rule fires when the metric value fails its band and, for rules
        requiring N consecutive failures, the last N usable raw measurements
        all fail it too. Returns the breaches created or updated.

        Raises:
            ResourceNotFoundException: unknown SLA
        """
        definition = self._registry.get(sla_id)
        if metric.current_value is None or metric.status in (SLAStatus.UNKNOWN, SLAStatus.MAINTENANCE):
            return []

        detection = self._config_provider.get_config().detection
        higher_is_better = definition.higher_is_better
        firing: List[Tuple[DetectionRule, float]] = []

        for rule in self.get_detection_rules(definition):
            threshold = definition.threshold_value(rule.threshold)
            if threshold is None:
                continue
            if not SLACalculator.is_breaching(metric.current_value, threshold, higher_is_better):
                continue
            if rule.consecutive_failures > 1 and not self._consecutive_failures(
                definition, threshold, rule.consecutive_failures, metric.time_window.end
            ):
                continue
            if detection.grace_period_seconds > 0 and not self._grace_elapsed(
                definition, threshold, detection.grace_period_seconds, metric.time_window.end
            ):
                continue
            firing.append((rule, threshold))

        if detection.most_severe_only and len(firing) > 1:
            firing = [max(
                firing,
                key=lambda item: SEVERITY_RANK[SLACalculator.severity_for_band(item[0].threshold)]
            )]

        breaches = [
            self.process_breach(definition, rule, threshold, metric)
            for rule, threshold in firing
        ]
        for breach in breaches:
            if breach.id not in metric.breaches:
                metric.breaches.append(breach.id)
        return breaches

    def _usable_points(self, definition: SLADefinition, until: datetime):
        return [
            p for p in self._store.get(definition.id, usable_only=True)
            if p.timestamp <= until and definition.active_maintenance(p.timestamp) is None
        ]

    def _consecutive_failures(
        self,
        definition: SLADefinition,
        threshold: float,
        required: int,
        until: datetime
    ) -> bool:
        recent = self._usable_points(definition, until)[-required:]
        if len(recent) < required:
            return False
        return all(
            SLACalculator.is_breaching(p.value, threshold, definition.higher_is_better)
            for p in recent
        )

    def _grace_elapsed(
        self,
        definition: SLADefinition,
        threshold: float,
        grace_seconds: float,
        until: datetime
    ) -> bool:
        """The trailing run of failing measurements spans at least the grace period."""
        run_start = None
        for point in reversed(self._usable_points(definition, until)):
            if not SLACalculator.is_breaching(point.value, threshold, definition.higher_is_better):
                break
            run_start = point.timestamp
        if run_start is None:
            return False
        return (self._clock() - run_start).total_seconds() >= grace_seconds

    def process_breach(
        self,
        definition: SLADefinition,
        rule: DetectionRule,
        threshold: float,
        metric: SLAMetric,
    ) -> Breach:
        """
        Open a breach or update the open one for (sla, band) in place.

        Always emits a notification intent and, when auto-escalation is
        enabled, runs the escalation check.
        """
        now = self._clock()
        value = metric.current_value
        impact = SLACalculator.impact_percentage(value, threshold)
        key = (definition.id, rule.threshold)

        existing_id = self._open.get(key)
        if existing_id is not None:
            breach = self._breaches[existing_id]
            breach.record_observation(value, impact, now)
            is_new = False
        else:
            breach = Breach(
                sla_id=definition.id,
                threshold=rule.threshold,
                severity=SLACalculator.severity_for_band(rule.threshold),
                start_time=now,
                actual_value=value,
                target_value=definition.target_value,
                impact_value=impact,
                rule_id=rule.id,
                metadata={
                    "threshold_value": threshold,
                    "compliance_percentage": metric.compliance_percentage,
                    "consecutive_failures": rule.consecutive_failures,
                },
            )
            self._breaches[breach.id] = breach
            self._open[key] = breach.id
            is_new = True

        notifications = build_breach_notifications(definition, breach, is_new)
        breach.notifications.extend(n.id for n in notifications)

        if is_new:
            logger.warning(
                "SLA breach detected",
                extra={
                    "sla_id": definition.id,
                    "breach_id": breach.id,
                    "threshold": breach.threshold,
                    "severity": breach.severity,
                    "actual_value": value,
                }
            )
            self._bus.publish(BreachDetected(breach_id=breach.id, sla_id=breach.sla_id, breach=breach.snapshot()))
        else:
            logger.info(
                "SLA breach updated",
                extra={"sla_id": definition.id, "breach_id": breach.id, "observations": breach.observations}
            )
            self._bus.publish(BreachUpdated(breach_id=breach.id, sla_id=breach.sla_id, breach=breach.snapshot()))

        self._request(breach, notifications)

        if self._config_provider.get_config().detection.enable_auto_escalation:
            self.check_escalation(breach.id)

        if is_new:
            for pattern in self.analyze_breach_patterns(definition.id):
                self._bus.publish(PatternDetected(sla_id=definition.id, pattern=pattern))

        return breach

    def _request(self, breach: Breach, notifications: List[Notification]) -> None:
        self._bus.publish(NotificationRequested(
            sla_id=breach.sla_id,
            breach_id=breach.id,
            notifications=notifications,
        ))

    # ========== Escalation ==========

    def check_escalation(self, breach_id: str) -> Optional[Escalation]:
        """
        Escalate an active breach that outlived its severity's timeout.

        The timeout is measured from the start of the breach, then from the
        previous escalation, so levels increase by one per elapsed timeout.
        Acknowledged and resolved breaches never escalate, nor do breaches
        of an SLA that is no longer registered.
        """
        breach = self.get_breach(breach_id)
        if breach.status != BreachStatus.ACTIVE:
            return None
        definition = self._registry.find(breach.sla_id)
        if definition is None:
            return None

        detection = self._config_provider.get_config().detection
        timeout = detection.escalation_timeouts.get(breach.severity)
        if timeout is None:
            return None

        now = self._clock()
        reference = breach.escalated_at or breach.start_time
        if (now - reference).total_seconds() <= timeout:
            return None

        level = breach.escalation_level + 1
        if detection.max_escalation_level is not None and level > detection.max_escalation_level:
            return None

        age = breach.age(now).total_seconds()
        escalation = Escalation(
            breach_id=breach.id,
            sla_id=breach.sla_id,
            level=level,
            escalated_at=now,
            escalated_to=detection.recipients_for_level(level),
            reason=f"{breach.severity} breach unresolved for {int(age)}s (timeout {int(timeout)}s)",
        )
        breach.record_escalation(level, now)
        self._escalations.setdefault(breach.id, []).append(escalation)

        logger.warning(
            "SLA breach escalated",
            extra={
                "sla_id": breach.sla_id,
                "breach_id": breach.id,
                "level": level,
                "escalated_to": escalation.escalated_to,
            }
        )
        self._bus.publish(BreachEscalated(
            breach_id=breach.id, sla_id=breach.sla_id, escalation=escalation, breach=breach.snapshot()
        ))

        self._request(breach, build_escalation_notifications(
            definition, breach, escalation, detection.escalation_channels
        ))
        return escalation

    def check_escalations(self) -> List[Escalation]:
        """Escalation sweep over every open breach."""
        escalations = []
        for breach_id in list(self._open.values()):
            escalation = self.check_escalation(breach_id)
            if escalation is not None:
                escalations.append(escalation)
        return escalations

    # ========== Lifecycle ==========

    def acknowledge_breach(self, breach_id: str, user_id: str, comment: Optional[str] = None) -> Breach:
        """
        active -> acknowledged.

        Raises:
            ResourceNotFoundException: unknown breach
            DomainException: breach is not active
        """
        breach = self.get_breach(breach_id)
        breach.acknowledge(user_id, self._clock(), comment)

        logger.info(
            "SLA breach acknowledged",
            extra={"sla_id": breach.sla_id, "breach_id": breach.id, "user_id": user_id}
        )
        self._bus.publish(BreachAcknowledged(
            breach_id=breach.id, sla_id=breach.sla_id, user_id=user_id,
            comment=comment, breach=breach.snapshot()
        ))
        return breach

    def resolve_breach(
        self,
        breach_id: str,
        user_id: str,
        resolution: str,
        root_cause: Optional[str] = None
    ) -> Breach:
        """
        Close a breach, fixing its duration and freeing its (sla, band) slot.

        Raises:
            ResourceNotFoundException: unknown breach
            DomainException: breach is already resolved
        """
        breach = self.get_breach(breach_id)
        breach.resolve(user_id, resolution, self._clock())
        if root_cause is not None:
            breach.root_cause = root_cause

        key = (breach.sla_id, breach.threshold)
        if self._open.get(key) == breach.id:
            del self._open[key]

        logger.info(
            "SLA breach resolved",
            extra={
                "sla_id": breach.sla_id,
                "breach_id": breach.id,
                "user_id": user_id,
                "duration_seconds": breach.duration.total_seconds(),
            }
        )
        self._bus.publish(BreachResolved(
            breach_id=breach.id, sla_id=breach.sla_id, user_id=user_id,
            resolution=resolution, breach=breach.snapshot()
        ))

        notifications = build_recovery_notifications(self._registry.find(breach.sla_id), breach)
        breach.notifications.extend(n.id for n in notifications)
        self._request(breach, notifications)
        return breach

    # ========== Queries ==========

    def get_breach(self, breach_id: str) -> Breach:
        breach = self._breaches.get(breach_id)
        if breach is None:
            raise ResourceNotFoundException("Breach", breach_id)
        return breach

    def get_active_breaches(self, sla_id: Optional[str] = None) -> List[Breach]:
        """Open breaches, most severe first, then oldest first."""
        breaches = [self._breaches[breach_id] for breach_id in self._open.values()]
        if sla_id is not None:
            breaches = [b for b in breaches if b.sla_id == sla_id]
        return sorted(breaches, key=lambda b: (-SEVERITY_RANK.get(b.severity, 0), b.start_time))

    def get_breach_history(
        self,
        sla_id: Optional[str] = None,
        window: Optional[TimeWindow] = None
    ) -> List[Breach]:
        """Breaches that started inside ``window``, oldest first."""
        breaches = self._breaches.values()
        if sla_id is not None:
            breaches = [b for b in breaches if b.sla_id == sla_id]
        if window is not None:
            breaches = [b for b in breaches if window.contains(b.start_time)]
        return sorted(breaches, key=lambda b: b.start_time)

    def get_breaches_overlapping(self, sla_id: str, window: TimeWindow) -> List[Breach]:
        """Breaches of an SLA that were open at any point inside ``window``."""
        now = self._clock()
        return sorted(
            (
                b for b in self._breaches.values()
                if b.sla_id == sla_id
                and b.start_time <= window.end
                and self._effective_end(b, now) >= window.start
            ),
            key=lambda b: b.start_time,
        )

    @staticmethod
    def _effective_end(breach: Breach, now: datetime) -> datetime:
        if breach.is_open:
            return max(now, breach.start_time)
        return breach.end_time or breach.start_time

    def get_escalations(self, breach_id: Optional[str] = None) -> List[Escalation]:
        if breach_id is not None:
            return list(self._escalations.get(breach_id, []))
        escalations = [e for items in self._escalations.values() for e in items]
        return sorted(escalations, key=lambda e: e.escalated_at)

    def get_breach_statistics(
        self,
        sla_id: Optional[str] = None,
        window: Optional[TimeWindow] = None
    ) -> BreachStatistics:
        breaches = self.get_breach_history(sla_id, window)
        resolved = [b for b in breaches if b.status == BreachStatus.RESOLVED]
        resolution_times = [
            (b.resolved_at - b.start_time).total_seconds()
            for b in resolved if b.resolved_at is not None
        ]
        causes = Counter(b.root_cause for b in breaches if b.root_cause)

        return BreachStatistics(
            total_breaches=len(breaches),
            active_breaches=sum(1 for b in breaches if b.status == BreachStatus.ACTIVE),
            acknowledged_breaches=sum(1 for b in breaches if b.status == BreachStatus.ACKNOWLEDGED),
            resolved_breaches=len(resolved),
            average_resolution_seconds=(
                sum(resolution_times) / len(resolution_times) if resolution_times else 0.0
            ),
            breaches_by_severity=dict(Counter(b.severity for b in breaches)),
            breaches_by_threshold=dict(Counter(b.threshold for b in breaches)),
            most_frequent_causes=[
                {"cause": cause, "count": count} for cause, count in causes.most_common(5)
            ],
        )

    # ========== Patterns ==========

    def analyze_breach_patterns(self, sla_id: str) -> List[BreachPattern]:
        """
        Classify the trailing breach history of an SLA.

        - frequent: at least ``frequent_breach_count`` breaches
        - recurring: start-to-start intervals cluster around their mean
        - persistent: a breach lasted longer than ``persistent_duration_seconds``
        """
        detection = self._config_provider.get_config().detection
        now = self._clock()
        window = TimeWindow.ending_at(now, timedelta(days=detection.pattern_window_days))
        breaches = self.get_breach_history(sla_id, window)
        patterns: List[BreachPattern] = []

        if len(breaches) >= detection.frequent_breach_count:
            patterns.append(BreachPattern(
                type="frequent",
                description=f"{len(breaches)} breaches in the last {detection.pattern_window_days:g} days",
                frequency=len(breaches),
                time_window=window,
                affected_slas=[sla_id],
                severity=_max_severity(breaches),
            ))

        starts = [b.start_time for b in breaches]
        intervals = [(b - a).total_seconds() for a, b in zip(starts, starts[1:])]
        if len(intervals) >= detection.recurring_min_intervals:
            mean = sum(intervals) / len(intervals)
            if mean > 0:
                clustered = [i for i in intervals if abs(i - mean) <= detection.recurring_tolerance * mean]
                if len(clustered) / len(intervals) >= detection.recurring_share:
                    patterns.append(BreachPattern(
                        type="recurring",
                        description=f"Breaches recur roughly every {int(mean)}s",
                        frequency=len(breaches),
                        time_window=window,
                        affected_slas=[sla_id],
                        severity=_max_severity(breaches),
                    ))

        long_running = [
            b for b in breaches
            if (self._effective_end(b, now) - b.start_time).total_seconds() > detection.persistent_duration_seconds
        ]
        if long_running:
            patterns.append(BreachPattern(
                type="persistent",
                description=(
                    f"{len(long_running)} breaches lasted longer than "
                    f"{int(detection.persistent_duration_seconds)}s"
                ),
                frequency=len(long_running),
                time_window=window,
                affected_slas=[sla_id],
                severity=_max_severity(long_running),
            ))

        return patterns

    # ========== Restore ==========

    def restore(self, breaches: List[Breach], escalations: List[Escalation]) -> None:
        """Reload persisted breaches and escalations; open breaches re-enter the index."""
        for breach in sorted(breaches, key=lambda b: b.start_time):
            self._breaches[breach.id] = breach
            if breach.is_open:
                self._open[(breach.sla_id, breach.threshold)] = breach.id
        for escalation in sorted(escalations, key=lambda e: e.escalated_at):
            self._escalations.setdefault(escalation.breach_id, []).append(escalation)
