"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for persisted engine state.

Each row carries the full pydantic document in ``payload`` so restores are
lossless; the remaining columns exist for indexing and ad-hoc queries.
These belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from infrastructure.database import Base


class SLADefinitionModel(Base):
    """Maps to the 'sla_definitions' table."""
    __tablename__ = "sla_definitions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    service_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class MeasurementModel(Base):
    """Maps to the 'sla_measurements' table (bounded retention)."""
    __tablename__ = "sla_measurements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sla_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class BreachModel(Base):
    """Maps to the 'sla_breaches' table (kept for audit)."""
    __tablename__ = "sla_breaches"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sla_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    threshold: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class EscalationModel(Base):
    """Maps to the 'sla_escalations' table."""
    __tablename__ = "sla_escalations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    breach_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    sla_id: Mapped[str] = mapped_column(String(255), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    escalated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
