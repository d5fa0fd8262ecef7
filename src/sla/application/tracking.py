"""
SLA Tracking Services
======================

Definition registry and metric calculation.

- SLARegistry: owns SLA definitions, validates them at registration and
  versions them on update.
- MetricCalculator: aggregates a window of measurements into an SLAMetric
  (value, compliance %, status, trend) and keeps one current metric per SLA.
"""

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from config import SLAStatus, TrendDirection, VALID_METRIC_TYPES, AggregationMethod
from core import (
    CalculationException, ResourceNotFoundException, ValidationException
)
from shared.infrastructure.events import EventBus
from shared.infrastructure.logging import get_logger
from sla.application.interfaces import Clock, ISLAConfigProvider, utc_now
from sla.application.measurements import MeasurementStore
from sla.domain import (
    SLACalculator, SLADefinition, SLAMetric, MetricTrend, TimeWindow, MeasurementPoint
)
from sla.domain import statistics
from sla.domain.events import (
    CalculationFailed, MetricCalculated, SLARegistered, SLAUnregistered, SLAUpdated
)

logger = get_logger(__name__)


def _pydantic_errors(exc: PydanticValidationError) -> List[Dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "definition", "message": err["msg"]}
        for err in exc.errors()
    ]


class SLARegistry:
    """
    Registry of SLA definitions.

    Definitions are immutable; ``update_sla`` replaces the stored value with
    a new version.
    """

    def __init__(self, event_bus: EventBus, clock: Clock = utc_now):
        self._definitions: Dict[str, SLADefinition] = {}
        self._bus = event_bus
        self._clock = clock

    # ========== Validation ==========

    @staticmethod
    def validate(definition: SLADefinition) -> None:
        """
        Check a definition, collecting every problem before failing.

        Raises:
            ValidationException: with field-level ``errors``
        """
        errors: List[Dict[str, str]] = []

        for field_name in ("id", "name", "service_id"):
            if not str(getattr(definition, field_name) or "").strip():
                errors.append({"field": field_name, "message": f"{field_name} must not be empty"})

        if definition.metric_type not in VALID_METRIC_TYPES:
            errors.append({"field": "metric_type", "message": f"unknown metric type {definition.metric_type}"})

        if not math.isfinite(definition.target_value) or definition.target_value <= 0:
            errors.append({"field": "target_value", "message": "target_value must be a positive number"})

        if definition.measurement.frequency_seconds <= 0:
            errors.append({
                "field": "measurement.frequency_seconds",
                "message": "measurement frequency must be positive"
            })

        if definition.measurement.aggregation_method == AggregationMethod.PERCENTILE:
            if not 0 < definition.measurement.percentile <= 100:
                errors.append({
                    "field": "measurement.percentile",
                    "message": "percentile must be within (0, 100]"
                })

        errors.extend(SLARegistry._threshold_errors(definition))

        for index, rule in enumerate(definition.detection_rules):
            if definition.threshold_value(rule.threshold) is None:
                errors.append({
                    "field": f"detection_rules.{index}.threshold",
                    "message": f"threshold band '{rule.threshold}' has no configured value"
                })

        for index, window in enumerate(definition.maintenance_windows):
            if window.end_time <= window.start_time:
                errors.append({
                    "field": f"maintenance_windows.{index}",
                    "message": "maintenance window must end after it starts"
                })

        if errors:
            raise ValidationException(
                f"Invalid SLA definition '{definition.id}'",
                errors=errors,
                details={"sla_id": definition.id}
            )

    @staticmethod
    def _threshold_errors(definition: SLADefinition) -> List[Dict[str, str]]:
        """critical < warning <= target <= excellent, in goodness order."""
        hib = definition.higher_is_better
        bands = definition.configured_thresholds()
        errors = []

        for band, value in bands.items():
            if not math.isfinite(value):
                errors.append({"field": f"thresholds.{band}", "message": "threshold must be finite"})
        if errors:
            return errors

        def g(band: str) -> Optional[float]:
            value = bands.get(band)
            return None if value is None else SLACalculator.goodness(value, hib)

        ordering = [
            ("critical", "warning", lambda a, b: a < b, "critical must be worse than warning"),
            ("critical", "target", lambda a, b: a < b, "critical must be worse than target"),
            ("warning", "target", lambda a, b: a <= b, "warning must not be better than target"),
            ("escalation", "target", lambda a, b: a <= b, "escalation must not be better than target"),
            ("target", "excellent", lambda a, b: a <= b, "excellent must not be worse than target"),
        ]
        for lower, upper, ok, message in ordering:
            a, b = g(lower), g(upper)
            if a is not None and b is not None and not ok(a, b):
                errors.append({"field": f"thresholds.{lower}", "message": message})
        return errors

    @staticmethod
    def parse(data: Union[SLADefinition, Dict[str, Any]]) -> SLADefinition:
        """Accept a definition or its dict form, converting parse errors."""
        if isinstance(data, SLADefinition):
            return data
        try:
            return SLADefinition.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationException(
                "Invalid SLA definition",
                errors=_pydantic_errors(e),
                details={"sla_id": data.get("id") if isinstance(data, dict) else None}
            ) from e

    # ========== Commands ==========

    def register_sla(self, data: Union[SLADefinition, Dict[str, Any]]) -> SLADefinition:
        """
        Validate and store a new SLA definition.

        Raises:
            ValidationException: invalid definition or duplicate id
        """
        definition = self.parse(data)
        self.validate(definition)
        if definition.id in self._definitions:
            raise ValidationException(
                f"SLA '{definition.id}' is already registered",
                errors=[{"field": "id", "message": "an SLA with this id already exists"}],
                details={"sla_id": definition.id}
            )

        self._definitions[definition.id] = definition
        logger.info(
            "SLA registered",
            extra={"sla_id": definition.id, "service_id": definition.service_id,
                   "metric_type": definition.metric_type}
        )
        self._bus.publish(SLARegistered(definition=definition))
        return definition

    def update_sla(self, sla_id: str, changes: Dict[str, Any]) -> SLADefinition:
        """
        Apply changes and store the result as the next version.

        Raises:
            ResourceNotFoundException: unknown SLA
            ValidationException: the updated definition is invalid
        """
        current = self.get(sla_id)
        protected = {"id", "version", "created_at"}
        merged = {
            **current.model_dump(),
            **{k: v for k, v in changes.items() if k not in protected},
            "version": current.version + 1,
            "updated_at": self._clock(),
        }
        # a target band that merely mirrored the old target follows the new one
        if "target_value" in changes and "thresholds" not in changes:
            if current.thresholds.target == current.target_value:
                merged["thresholds"] = {**merged["thresholds"], "target": None}
        updated = self.parse(merged)
        self.validate(updated)

        self._definitions[sla_id] = updated
        logger.info("SLA updated", extra={"sla_id": sla_id, "version": updated.version})
        self._bus.publish(SLAUpdated(definition=updated, previous_version=current.version))
        return updated

    def unregister_sla(self, sla_id: str) -> SLADefinition:
        """Remove an SLA definition; raises ResourceNotFoundException if unknown."""
        definition = self.get(sla_id)
        del self._definitions[sla_id]
        logger.info("SLA unregistered", extra={"sla_id": sla_id})
        self._bus.publish(SLAUnregistered(sla_id=sla_id))
        return definition

    def load(self, definitions: List[SLADefinition]) -> None:
        """Restore definitions without re-emitting registration events."""
        for definition in definitions:
            self._definitions[definition.id] = definition

    # ========== Queries ==========

    def get(self, sla_id: str) -> SLADefinition:
        definition = self._definitions.get(sla_id)
        if definition is None:
            raise ResourceNotFoundException("SLA", sla_id)
        return definition

    def find(self, sla_id: str) -> Optional[SLADefinition]:
        return self._definitions.get(sla_id)

    def list(self, active_only: bool = False) -> List[SLADefinition]:
        definitions = list(self._definitions.values())
        if active_only:
            definitions = [d for d in definitions if d.is_active]
        return definitions

    def list_by_service(self, service_id: str) -> List[SLADefinition]:
        return [d for d in self._definitions.values() if d.service_id == service_id]

    def __contains__(self, sla_id: str) -> bool:
        return sla_id in self._definitions


class MetricCalculator:
    """
    Turns measurements into SLA metrics.

    ``compute_metric`` is pure and used for history; ``calculate_sla_metric``
    additionally stores the current metric and emits ``MetricCalculated``
    exactly once per call.
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
        self._current: Dict[str, SLAMetric] = {}

    def default_window(self, definition: SLADefinition, end: Optional[datetime] = None) -> TimeWindow:
        return TimeWindow.ending_at(end or self._clock(), definition.time_window.duration)

    def compute_metric(self, definition: SLADefinition, window: TimeWindow) -> SLAMetric:
        """
        Aggregate the window into a metric without side effects.

        Raises:
            CalculationException: the aggregate is NaN or infinite
        """
        points = self._store.get(definition.id, window)
        usable = []
        excluded = 0
        for point in points:
            if point.is_usable and definition.active_maintenance(point.timestamp) is None:
                usable.append(point)
            else:
                excluded += 1

        if not usable:
            in_maintenance = definition.active_maintenance(window.end) is not None
            return SLAMetric(
                sla_id=definition.id,
                time_window=window,
                current_value=None,
                target_value=definition.target_value,
                compliance_percentage=None,
                status=SLAStatus.MAINTENANCE if in_maintenance else SLAStatus.UNKNOWN,
                unit=definition.unit,
                excluded_count=excluded,
                calculated_at=self._clock(),
            )

        aggregation = statistics.aggregate(
            [p.value for p in usable],
            definition.measurement.aggregation_method,
            definition.measurement.percentile,
        )
        value = aggregation.value
        if not math.isfinite(value):
            raise CalculationException(definition.id, f"aggregate is {value}")

        compliance = SLACalculator.compliance_percentage(
            value, definition.target_value, definition.higher_is_better
        )
        if not math.isfinite(compliance):
            raise CalculationException(definition.id, f"compliance is {compliance}")

        trend = self._compute_trend(definition, usable)

        return SLAMetric(
            sla_id=definition.id,
            time_window=window,
            current_value=value,
            target_value=definition.target_value,
            compliance_percentage=compliance,
            status=SLACalculator.determine_status(definition, value),
            unit=definition.unit,
            trends=[trend] if trend else [],
            measurements=usable,
            aggregation=aggregation,
            excluded_count=excluded,
            calculated_at=self._clock(),
        )

    def _compute_trend(
        self,
        definition: SLADefinition,
        points: List[MeasurementPoint]
    ) -> Optional[MetricTrend]:
        """Linear regression over the window; confidence is R squared."""
        tracking = self._config_provider.get_config().tracking
        if len(points) < tracking.trend_min_points:
            return None

        origin = points[0].timestamp
        hours = [(p.timestamp - origin).total_seconds() / 3600 for p in points]
        values = [p.value for p in points]
        slope, _, r_squared = statistics.linear_fit(hours, values)

        span = hours[-1] - hours[0]
        mean = sum(values) / len(values)
        change = slope * span / abs(mean) * 100 if mean else 0.0

        if abs(change) < tracking.trend_stable_percentage:
            direction = TrendDirection.STABLE
        elif SLACalculator.goodness(slope, definition.higher_is_better) > 0:
            direction = TrendDirection.IMPROVING
        else:
            direction = TrendDirection.DEGRADING

        return MetricTrend(
            period="window",
            direction=direction,
            slope_per_hour=slope,
            change_percentage=round(change, 4),
            confidence=round(r_squared, 4),
            data_points=len(points),
        )

    def calculate_sla_metric(self, sla_id: str, window: Optional[TimeWindow] = None) -> SLAMetric:
        """
        Calculate, store as current and announce an SLA's metric.

        Calculation failures do not propagate: the SLA gets an ``unknown``
        metric carrying the error and a ``CalculationFailed`` event is
        emitted.

        Raises:
            ResourceNotFoundException: unknown SLA
        """
        definition = self._registry.get(sla_id)
        window = window or self.default_window(definition)

        try:
            metric = self.compute_metric(definition, window)
        except CalculationException as e:
            logger.error(
                "Metric calculation failed",
                extra={"sla_id": sla_id, "error": e.message}
            )
            metric = SLAMetric(
                sla_id=sla_id,
                time_window=window,
                current_value=None,
                target_value=definition.target_value,
                compliance_percentage=None,
                status=SLAStatus.UNKNOWN,
                unit=definition.unit,
                error=e.message,
                calculated_at=self._clock(),
            )
            self._bus.publish(CalculationFailed(sla_id=sla_id, error=e.message))

        self._current[sla_id] = metric
        self._bus.publish(MetricCalculated(sla_id=sla_id, metric=metric))
        return metric

    def get_metric(self, sla_id: str) -> SLAMetric:
        """Current metric; raises ResourceNotFoundException when none exists."""
        metric = self._current.get(sla_id)
        if metric is None:
            raise ResourceNotFoundException("SLAMetric", sla_id)
        return metric

    def get_metrics_by_service(self, service_id: str) -> List[SLAMetric]:
        return [
            self._current[d.id]
            for d in self._registry.list_by_service(service_id)
            if d.id in self._current
        ]

    def get_all_metrics(self) -> List[SLAMetric]:
        return list(self._current.values())

    def get_sla_history(
        self,
        sla_id: str,
        window: TimeWindow,
        interval: timedelta,
    ) -> List[SLAMetric]:
        """
        Recompute one metric per sub-interval of ``window``.

        A sub-interval whose calculation fails yields an ``unknown`` metric.
        """
        definition = self._registry.get(sla_id)
        history = []
        for part in window.split(interval):
            try:
                history.append(self.compute_metric(definition, part))
            except CalculationException as e:
                history.append(SLAMetric(
                    sla_id=sla_id,
                    time_window=part,
                    current_value=None,
                    target_value=definition.target_value,
                    compliance_percentage=None,
                    status=SLAStatus.UNKNOWN,
                    unit=definition.unit,
                    error=e.message,
                    calculated_at=self._clock(),
                ))
        return history

    def forget(self, sla_id: str) -> None:
        self._current.pop(sla_id, None)
