import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    # naive UTC keeps PostgreSQL and SQLite comparisons consistent
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Shipment(Base):
    __tablename__ = "shipments"
    __table_args__ = (
        Index("ix_shipments_leg_updated", "current_leg", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    booking_reference_id: Mapped[str] = mapped_column(String(64), unique=True)
    status: Mapped[str] = mapped_column(String(30))
    current_leg: Mapped[str] = mapped_column(String(20))
    # optimistic-concurrency token, only ever written through a CAS update
    version: Mapped[int] = mapped_column(Integer, default=1)
    domestic_awb: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    international_awb: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_simulated: Mapped[bool] = mapped_column(Boolean, default=False)

    recipient_name: Mapped[str] = mapped_column(String(200))
    recipient_phone: Mapped[str] = mapped_column(String(20))
    recipient_email: Mapped[Optional[str]] = mapped_column(String(254), nullable=True)
    origin_address: Mapped[str] = mapped_column(String(500))
    destination_address: Mapped[str] = mapped_column(String(500))
    destination_country: Mapped[str] = mapped_column(String(100))
    weight_kg: Mapped[float] = mapped_column(Float)
    declared_value: Mapped[float] = mapped_column(Float)
    shipment_type: Mapped[str] = mapped_column(String(20))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class TimelineEntry(Base):
    """One accepted transition. Rows are inserted once and never changed."""

    __tablename__ = "shipment_timeline"
    __table_args__ = (
        # a transition is identified by the version it produced
        UniqueConstraint("shipment_id", "version", name="uq_timeline_shipment_version"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    shipment_id: Mapped[str] = mapped_column(ForeignKey("shipments.id"), index=True)
    status: Mapped[str] = mapped_column(String(30))
    leg: Mapped[str] = mapped_column(String(20))
    source: Mapped[str] = mapped_column(String(20))
    version: Mapped[int] = mapped_column(Integer)
    # "metadata" is reserved on declarative classes
    details: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ShipmentAlert(Base):
    __tablename__ = "shipment_alerts"
    __table_args__ = (
        UniqueConstraint("shipment_id", "kind", "shipment_version", name="uq_alert_shipment_kind_version"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    shipment_id: Mapped[str] = mapped_column(ForeignKey("shipments.id"), index=True)
    kind: Mapped[str] = mapped_column(String(40))
    shipment_version: Mapped[int] = mapped_column(Integer)
    stuck_hours: Mapped[int] = mapped_column(Integer)
    threshold_hours: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class ApiCallLog(Base):
    __tablename__ = "api_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    shipment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    api_type: Mapped[str] = mapped_column(String(30))
    request_payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    response_payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    http_status: Mapped[int] = mapped_column(Integer)
    execution_time_ms: Mapped[int] = mapped_column(Integer)
    correlation_id: Mapped[str] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
