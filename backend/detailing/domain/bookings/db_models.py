from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from detailing.domain.bookings.statuses import BookingStatus
from detailing.infra.db import Base


class Booking(Base):
    __tablename__ = "bookings"

    booking_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    status: Mapped[str] = mapped_column(String(24), nullable=False, default=BookingStatus.pending.value)
    owner_ref: Mapped[str] = mapped_column(String(320), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    guest_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    guest_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    service_type: Mapped[str] = mapped_column(String(64), nullable=False)
    vehicle_make: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    vehicle_model: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    vehicle_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    inferred_vehicle_size: Mapped[str] = mapped_column(String(16), nullable=False)
    vehicle_size: Mapped[str] = mapped_column(String(16), nullable=False)
    add_ons: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    condition: Mapped[str] = mapped_column(String(32), nullable=False)
    service_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    service_zip: Mapped[str | None] = mapped_column(String(12), nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    original_total_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    coupon_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    pricing_catalog_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pricing_catalog_version: Mapped[str] = mapped_column(String(32), nullable=False)
    pricing_catalog_hash: Mapped[str] = mapped_column(String(80), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    assigned_worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    adjustment_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    adjustment_total_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    adjustment_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    captured_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancellation_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_bookings_status_zip", "status", "service_zip"),
        Index("ix_bookings_owner_ref", "owner_ref", "created_at"),
        Index("ix_bookings_assigned_worker", "assigned_worker_id", "status"),
        Index("ix_bookings_owner_idempotency", "owner_ref", "idempotency_key", unique=True),
    )


class BookingTransition(Base):
    __tablename__ = "booking_transitions"

    transition_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    from_status: Mapped[str | None] = mapped_column(String(24), nullable=True)
    to_status: Mapped[str] = mapped_column(String(24), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(320), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


@event.listens_for(BookingTransition, "before_update", propagate=True)
def _prevent_transition_updates(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Booking transitions are immutable")


@event.listens_for(BookingTransition, "before_delete", propagate=True)
def _prevent_transition_deletes(mapper, connection, target) -> None:  # noqa: ARG001
    raise ValueError("Booking transitions cannot be deleted")
