"""
SLA Infrastructure Repositories
=================================

Concrete implementations of ``ISLAStateRepository``.

- InMemorySLAStateRepository: process-local, the default without a database
- SQLAlchemySLAStateRepository: async SQLAlchemy (PostgreSQL or SQLite)
"""

import json
from datetime import datetime
from typing import AsyncContextManager, Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core import RepositoryException
from infrastructure.database import get_session_context
from sla.application.interfaces import ISLAStateRepository
from sla.domain import Breach, Escalation, MeasurementPoint, SLADefinition
from sla.infrastructure.models import (
    BreachModel, EscalationModel, MeasurementModel, SLADefinitionModel
)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


def _document(model: BaseModel) -> dict:
    """JSON document of a pydantic model (non-finite measurement values travel as "NaN" strings)."""
    return json.loads(model.model_dump_json())


class InMemorySLAStateRepository(ISLAStateRepository):
    """Dictionary-backed repository for tests and database-less runs."""

    def __init__(self):
        self.definitions: Dict[str, SLADefinition] = {}
        self.measurements: List[MeasurementPoint] = []
        self.breaches: Dict[str, Breach] = {}
        self.escalations: List[Escalation] = []

    async def save_definition(self, definition: SLADefinition) -> None:
        self.definitions[definition.id] = definition

    async def delete_definition(self, sla_id: str) -> None:
        self.definitions.pop(sla_id, None)
        self.measurements = [m for m in self.measurements if m.sla_id != sla_id]

    async def list_definitions(self) -> List[SLADefinition]:
        return list(self.definitions.values())

    async def save_measurement(self, measurement: MeasurementPoint) -> None:
        self.measurements.append(measurement.model_copy())

    async def list_measurements(self, since: Optional[datetime] = None) -> List[MeasurementPoint]:
        points = self.measurements
        if since is not None:
            points = [m for m in points if m.timestamp >= since]
        return sorted(points, key=lambda m: m.timestamp)

    async def prune_measurements(self, sla_id: str, before: datetime) -> int:
        kept = [m for m in self.measurements if m.sla_id != sla_id or m.timestamp >= before]
        removed = len(self.measurements) - len(kept)
        self.measurements = kept
        return removed

    async def save_breach(self, breach: Breach) -> None:
        self.breaches[breach.id] = breach.model_copy(deep=True)

    async def list_breaches(self) -> List[Breach]:
        return list(self.breaches.values())

    async def save_escalation(self, escalation: Escalation) -> None:
        self.escalations.append(escalation)

    async def list_escalations(self) -> List[Escalation]:
        return sorted(self.escalations, key=lambda e: e.escalated_at)


class SQLAlchemySLAStateRepository(ISLAStateRepository):
    """
    SQLAlchemy implementation of the engine state repository.

    Each call opens its own session from ``session_factory`` (committed on
    success); database errors surface as ``RepositoryException``.
    """

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def save_definition(self, definition: SLADefinition) -> None:
        """Insert or replace an SLA definition."""
        model = SLADefinitionModel(
            id=definition.id,
            service_id=definition.service_id,
            metric_type=definition.metric_type,
            version=definition.version,
            is_active=definition.is_active,
            updated_at=definition.updated_at,
            payload=_document(definition),
        )
        try:
            async with self._session_factory() as session:
                await session.merge(model)
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to save SLA definition {definition.id}", {"error": str(e)}
            ) from e

    async def delete_definition(self, sla_id: str) -> None:
        """Remove a definition and its measurements; breaches stay for audit."""
        try:
            async with self._session_factory() as session:
                await session.execute(delete(SLADefinitionModel).where(SLADefinitionModel.id == sla_id))
                await session.execute(delete(MeasurementModel).where(MeasurementModel.sla_id == sla_id))
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to delete SLA definition {sla_id}", {"error": str(e)}) from e

    async def list_definitions(self) -> List[SLADefinition]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(SLADefinitionModel))
                return [SLADefinition.model_validate(m.payload) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            raise RepositoryException("Failed to list SLA definitions", {"error": str(e)}) from e

    async def save_measurement(self, measurement: MeasurementPoint) -> None:
        """Append a measurement point."""
        model = MeasurementModel(
            id=measurement.id,
            sla_id=measurement.sla_id,
            timestamp=measurement.timestamp,
            value=measurement.value if measurement.is_valid else None,
            is_valid=measurement.is_valid,
            payload=_document(measurement),
        )
        try:
            async with self._session_factory() as session:
                session.add(model)
        except SQLAlchemyError as e:
            raise RepositoryException(
                f"Failed to save measurement for SLA {measurement.sla_id}", {"error": str(e)}
            ) from e

    async def list_measurements(self, since: Optional[datetime] = None) -> List[MeasurementPoint]:
        stmt = select(MeasurementModel)
        if since is not None:
            stmt = stmt.where(MeasurementModel.timestamp >= since)
        stmt = stmt.order_by(MeasurementModel.timestamp.asc())

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [MeasurementPoint.model_validate(m.payload) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            raise RepositoryException("Failed to list measurements", {"error": str(e)}) from e

    async def prune_measurements(self, sla_id: str, before: datetime) -> int:
        stmt = delete(MeasurementModel).where(
            MeasurementModel.sla_id == sla_id,
            MeasurementModel.timestamp < before,
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to prune measurements of {sla_id}", {"error": str(e)}) from e

    async def save_breach(self, breach: Breach) -> None:
        """Insert or replace a breach."""
        model = BreachModel(
            id=breach.id,
            sla_id=breach.sla_id,
            threshold=breach.threshold,
            severity=breach.severity,
            status=breach.status,
            start_time=breach.start_time,
            end_time=breach.end_time,
            escalation_level=breach.escalation_level,
            payload=_document(breach),
        )
        try:
            async with self._session_factory() as session:
                await session.merge(model)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to save breach {breach.id}", {"error": str(e)}) from e

    async def list_breaches(self) -> List[Breach]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(BreachModel).order_by(BreachModel.start_time.asc()))
                return [Breach.model_validate(m.payload) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            raise RepositoryException("Failed to list breaches", {"error": str(e)}) from e

    async def save_escalation(self, escalation: Escalation) -> None:
        model = EscalationModel(
            id=escalation.id,
            breach_id=escalation.breach_id,
            sla_id=escalation.sla_id,
            level=escalation.level,
            escalated_at=escalation.escalated_at,
            payload=_document(escalation),
        )
        try:
            async with self._session_factory() as session:
                session.add(model)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to save escalation {escalation.id}", {"error": str(e)}) from e

    async def list_escalations(self) -> List[Escalation]:
        stmt = select(EscalationModel).order_by(EscalationModel.escalated_at.asc())
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [Escalation.model_validate(m.payload) for m in result.scalars().all()]
        except SQLAlchemyError as e:
            raise RepositoryException("Failed to list escalations", {"error": str(e)}) from e
