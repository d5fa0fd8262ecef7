"""
Measurement Store
=================

Holds time-stamped measurement points per SLA, ordered by timestamp.
Append-only with retention pruning; invalid points are kept (flagged and
excluded) so the audit trail survives.

Also contains the ingestion-time validation applied before a point is
appended.
"""

import bisect
import math
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sla.domain import (
    MeasurementPoint, MeasurementValidationRule, SLADefinition, TimeWindow
)


class MeasurementStore:
    """
    In-process measurement store keyed by SLA id.

    Owned by the tracking orchestrator; other components read through its
    methods and never hold the underlying lists.
    """

    def __init__(self):
        self._points: Dict[str, List[MeasurementPoint]] = {}
        self._timestamps: Dict[str, List[datetime]] = {}

    def append(self, point: MeasurementPoint) -> None:
        """Insert a point, keeping per-SLA timestamp order."""
        points = self._points.setdefault(point.sla_id, [])
        stamps = self._timestamps.setdefault(point.sla_id, [])
        index = bisect.bisect_right(stamps, point.timestamp)
        stamps.insert(index, point.timestamp)
        points.insert(index, point)

    def load(self, points: Iterable[MeasurementPoint]) -> int:
        """Bulk insert (restore path); returns number of points loaded."""
        count = 0
        for point in points:
            self.append(point)
            count += 1
        return count

    def get(
        self,
        sla_id: str,
        window: Optional[TimeWindow] = None,
        usable_only: bool = False
    ) -> List[MeasurementPoint]:
        """Points for an SLA, optionally limited to a window (inclusive)."""
        points = self._points.get(sla_id, [])
        if window is not None:
            stamps = self._timestamps[sla_id] if points else []
            lo = bisect.bisect_left(stamps, window.start)
            hi = bisect.bisect_right(stamps, window.end)
            points = points[lo:hi]
        if usable_only:
            return [p for p in points if p.is_usable]
        return list(points)

    def latest(self, sla_id: str) -> Optional[MeasurementPoint]:
        points = self._points.get(sla_id)
        return points[-1] if points else None

    def count(self, sla_id: Optional[str] = None) -> int:
        if sla_id is not None:
            return len(self._points.get(sla_id, []))
        return sum(len(p) for p in self._points.values())

    def sla_ids(self) -> List[str]:
        return list(self._points)

    def prune(self, sla_id: str, before: datetime) -> int:
        """Drop points older than ``before``; returns number removed."""
        stamps = self._timestamps.get(sla_id)
        if not stamps:
            return 0
        cut = bisect.bisect_left(stamps, before)
        if cut:
            del stamps[:cut]
            del self._points[sla_id][:cut]
        return cut

    def remove_sla(self, sla_id: str) -> int:
        """Forget every point of an SLA."""
        self._timestamps.pop(sla_id, None)
        return len(self._points.pop(sla_id, []))


def _rule_failed(value: float, rule: MeasurementValidationRule) -> bool:
    if rule.rule == "min":
        return rule.value is not None and value < rule.value
    if rule.rule == "max":
        return rule.value is not None and value > rule.value
    if rule.rule == "range":
        low = rule.min if rule.min is not None else -math.inf
        high = rule.max if rule.max is not None else math.inf
        return value < low or value > high
    return False


def validate_measurement(
    point: MeasurementPoint,
    definition: SLADefinition,
    rules: Iterable[MeasurementValidationRule]
) -> MeasurementPoint:
    """
    Flag a freshly created point according to ingestion rules.

    - non-finite values are invalid
    - the first failing min/max/range rule marks the point invalid with the
      rule's message
    - points inside an active maintenance window stay valid but are excluded

    Returns the same point (flags set in place before it is stored).
    """
    if not math.isfinite(point.value):
        point.is_valid = False
        point.exclude_from_calculation = True
        point.exclusion_reason = "Non-finite measurement value"
        return point

    for rule in [*rules, *definition.measurement.validation_rules]:
        field_value = getattr(point, rule.field, None)
        if not isinstance(field_value, (int, float)):
            continue
        if _rule_failed(float(field_value), rule):
            point.is_valid = False
            point.exclude_from_calculation = True
            point.exclusion_reason = rule.error_message
            return point

    maintenance = definition.active_maintenance(point.timestamp)
    if maintenance is not None:
        point.exclude_from_calculation = True
        point.exclusion_reason = f"Maintenance: {maintenance.name}"

    return point
