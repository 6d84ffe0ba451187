"""Booking persistence behind one protocol.

Status changes go through ``compare_and_set``: the write applies only if the
stored status still equals the status the caller read, and the audit row is
appended in the same transaction. A lost race returns ``None``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from detailing.domain.bookings.db_models import Booking, BookingTransition
from detailing.domain.bookings.schemas import BookingSnapshot, GuestContact, TransitionRecord
from detailing.domain.bookings.statuses import BookingStatus
from detailing.domain.errors import ConflictError
from detailing.domain.pricing.models import ServiceAddress, Vehicle

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100


class BookingStore(Protocol):
    async def insert(self, booking: BookingSnapshot, transition: TransitionRecord) -> BookingSnapshot:
        ...

    async def get(self, booking_id: str) -> BookingSnapshot | None:
        ...

    async def get_by_idempotency_key(self, owner_ref: str, idempotency_key: str) -> BookingSnapshot | None:
        ...

    async def compare_and_set(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        changes: dict[str, Any],
        transition: TransitionRecord,
        *,
        expected_worker_id: str | None = None,
    ) -> BookingSnapshot | None:
        ...

    async def list_by_status(
        self,
        status: BookingStatus,
        *,
        service_zips: Iterable[str] | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[BookingSnapshot]:
        ...

    async def list_for_owner(self, owner_ref: str, *, limit: int = DEFAULT_LIST_LIMIT) -> list[BookingSnapshot]:
        ...

    async def list_for_worker(self, worker_id: str, *, limit: int = DEFAULT_LIST_LIMIT) -> list[BookingSnapshot]:
        ...

    async def transitions(self, booking_id: str) -> list[TransitionRecord]:
        ...


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _column_value(value: Any) -> Any:
    if isinstance(value, BookingStatus):
        return value.value
    return value


def _snapshot_to_row(booking: BookingSnapshot) -> Booking:
    guest = booking.guest
    return Booking(
        booking_id=booking.booking_id,
        status=booking.status.value,
        owner_ref=booking.owner_ref,
        customer_id=booking.customer_id,
        guest_name=guest.name if guest else None,
        guest_email=str(guest.email) if guest else None,
        guest_phone=guest.phone if guest else None,
        service_type=booking.service_type,
        vehicle_make=booking.vehicle.make,
        vehicle_model=booking.vehicle.model,
        vehicle_year=booking.vehicle.year,
        inferred_vehicle_size=booking.inferred_vehicle_size.value,
        vehicle_size=booking.vehicle_size.value,
        add_ons=list(booking.add_ons),
        condition=booking.condition,
        service_address=booking.service_address.model_dump() if booking.service_address else None,
        service_zip=booking.service_zip,
        scheduled_at=booking.scheduled_at,
        subtotal_cents=booking.subtotal_cents,
        tax_cents=booking.tax_cents,
        total_cents=booking.total_cents,
        original_total_cents=booking.original_total_cents,
        coupon_code=booking.coupon_code,
        discount_cents=booking.discount_cents,
        currency=booking.currency,
        pricing_catalog_id=booking.pricing_catalog_id,
        pricing_catalog_version=booking.pricing_catalog_version,
        pricing_catalog_hash=booking.pricing_catalog_hash,
        payment_reference=booking.payment_reference,
        assigned_worker_id=booking.assigned_worker_id,
        assigned_at=booking.assigned_at,
        accepted_at=booking.accepted_at,
        started_at=booking.started_at,
        adjustment_requested=booking.adjustment_requested,
        adjustment_total_cents=booking.adjustment_total_cents,
        adjustment_reason=booking.adjustment_reason,
        captured_cents=booking.captured_cents,
        cancellation_fee_cents=booking.cancellation_fee_cents,
        cancel_reason=booking.cancel_reason,
        idempotency_key=booking.idempotency_key,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
    )


def _row_to_snapshot(row: Booking) -> BookingSnapshot:
    guest = None
    if row.guest_email:
        guest = GuestContact(name=row.guest_name or "", email=row.guest_email, phone=row.guest_phone or "")
    return BookingSnapshot(
        booking_id=row.booking_id,
        status=BookingStatus(row.status),
        customer_id=row.customer_id,
        guest=guest,
        owner_ref=row.owner_ref,
        service_type=row.service_type,
        vehicle=Vehicle(make=row.vehicle_make, model=row.vehicle_model, year=row.vehicle_year),
        inferred_vehicle_size=row.inferred_vehicle_size,
        vehicle_size=row.vehicle_size,
        add_ons=list(row.add_ons or []),
        condition=row.condition,
        service_address=ServiceAddress(**row.service_address) if row.service_address else None,
        service_zip=row.service_zip,
        scheduled_at=row.scheduled_at,
        subtotal_cents=row.subtotal_cents,
        tax_cents=row.tax_cents,
        total_cents=row.total_cents,
        original_total_cents=row.original_total_cents,
        coupon_code=row.coupon_code,
        discount_cents=row.discount_cents or 0,
        currency=row.currency,
        pricing_catalog_id=row.pricing_catalog_id,
        pricing_catalog_version=row.pricing_catalog_version,
        pricing_catalog_hash=row.pricing_catalog_hash,
        payment_reference=row.payment_reference,
        assigned_worker_id=row.assigned_worker_id,
        assigned_at=row.assigned_at,
        accepted_at=row.accepted_at,
        started_at=row.started_at,
        adjustment_requested=row.adjustment_requested,
        adjustment_total_cents=row.adjustment_total_cents,
        adjustment_reason=row.adjustment_reason,
        captured_cents=row.captured_cents,
        cancellation_fee_cents=row.cancellation_fee_cents,
        cancel_reason=row.cancel_reason,
        idempotency_key=row.idempotency_key,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
        cancelled_at=row.cancelled_at,
    )


def _transition_row(booking_id: str, transition: TransitionRecord, now: datetime) -> BookingTransition:
    return BookingTransition(
        booking_id=booking_id,
        from_status=transition.from_status.value if transition.from_status else None,
        to_status=transition.to_status.value,
        actor_role=transition.actor_role,
        actor_id=transition.actor_id,
        reason=transition.reason,
        amount_cents=transition.amount_cents,
        payment_reference=transition.payment_reference,
        created_at=transition.created_at or now,
    )


class SqlBookingStore:
    """One short transaction per operation on the injected session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, booking: BookingSnapshot, transition: TransitionRecord) -> BookingSnapshot:
        now = _utcnow()
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    session.add(_snapshot_to_row(booking))
                    await session.flush()
                    session.add(_transition_row(booking.booking_id, transition, now))
            except IntegrityError as exc:
                logger.warning(
                    "booking_insert_conflict",
                    extra={"extra": {"booking_id": booking.booking_id}},
                )
                raise ConflictError(
                    detail="A booking with this request key already exists; no new booking was created.",
                ) from exc
            row = await session.get(Booking, booking.booking_id)
            return _row_to_snapshot(row)

    async def get(self, booking_id: str) -> BookingSnapshot | None:
        async with self._session_factory() as session:
            row = await session.get(Booking, booking_id)
            return _row_to_snapshot(row) if row else None

    async def get_by_idempotency_key(self, owner_ref: str, idempotency_key: str) -> BookingSnapshot | None:
        async with self._session_factory() as session:
            result = await session.execute(
                sa.select(Booking).where(
                    Booking.owner_ref == owner_ref,
                    Booking.idempotency_key == idempotency_key,
                )
            )
            row = result.scalar_one_or_none()
            return _row_to_snapshot(row) if row else None

    async def compare_and_set(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        changes: dict[str, Any],
        transition: TransitionRecord,
        *,
        expected_worker_id: str | None = None,
    ) -> BookingSnapshot | None:
        now = _utcnow()
        values = {key: _column_value(value) for key, value in changes.items()}
        values["updated_at"] = now
        conditions = [Booking.booking_id == booking_id, Booking.status == expected_status.value]
        if expected_worker_id is not None:
            conditions.append(Booking.assigned_worker_id == expected_worker_id)

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    sa.update(Booking)
                    .where(*conditions)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                session.add(_transition_row(booking_id, transition, now))
                await session.flush()
                row = await session.get(Booking, booking_id, populate_existing=True)
                return _row_to_snapshot(row)

    async def list_by_status(
        self,
        status: BookingStatus,
        *,
        service_zips: Iterable[str] | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[BookingSnapshot]:
        stmt = sa.select(Booking).where(Booking.status == status.value)
        zips = list(service_zips or [])
        if zips:
            stmt = stmt.where(Booking.service_zip.in_(zips))
        stmt = stmt.order_by(Booking.created_at.asc(), Booking.booking_id.asc()).limit(limit)
        return await self._list(stmt)

    async def list_for_owner(self, owner_ref: str, *, limit: int = DEFAULT_LIST_LIMIT) -> list[BookingSnapshot]:
        stmt = (
            sa.select(Booking)
            .where(Booking.owner_ref == owner_ref)
            .order_by(Booking.created_at.desc(), Booking.booking_id.desc())
            .limit(limit)
        )
        return await self._list(stmt)

    async def list_for_worker(self, worker_id: str, *, limit: int = DEFAULT_LIST_LIMIT) -> list[BookingSnapshot]:
        stmt = (
            sa.select(Booking)
            .where(Booking.assigned_worker_id == worker_id)
            .order_by(Booking.created_at.desc(), Booking.booking_id.desc())
            .limit(limit)
        )
        return await self._list(stmt)

    async def _list(self, stmt) -> list[BookingSnapshot]:  # noqa: ANN001
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_row_to_snapshot(row) for row in result.scalars().all()]

    async def transitions(self, booking_id: str) -> list[TransitionRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                sa.select(BookingTransition)
                .where(BookingTransition.booking_id == booking_id)
                .order_by(BookingTransition.created_at.asc(), BookingTransition.transition_id.asc())
            )
            return [
                TransitionRecord(
                    from_status=BookingStatus(row.from_status) if row.from_status else None,
                    to_status=BookingStatus(row.to_status),
                    actor_role=row.actor_role,
                    actor_id=row.actor_id,
                    reason=row.reason,
                    amount_cents=row.amount_cents,
                    payment_reference=row.payment_reference,
                    created_at=row.created_at,
                )
                for row in result.scalars().all()
            ]


class InMemoryBookingStore:
    """Process-local store; a per-booking lock makes compare-and-set atomic."""

    def __init__(self) -> None:
        self._bookings: dict[str, BookingSnapshot] = {}
        self._transitions: dict[str, list[TransitionRecord]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._insert_lock = asyncio.Lock()

    def _lock_for(self, booking_id: str) -> asyncio.Lock:
        return self._locks.setdefault(booking_id, asyncio.Lock())

    async def insert(self, booking: BookingSnapshot, transition: TransitionRecord) -> BookingSnapshot:
        async with self._insert_lock:
            if booking.booking_id in self._bookings:
                raise ConflictError(detail="Booking already exists; no new booking was created.")
            if booking.idempotency_key and any(
                existing.owner_ref == booking.owner_ref and existing.idempotency_key == booking.idempotency_key
                for existing in self._bookings.values()
            ):
                raise ConflictError(
                    detail="A booking with this request key already exists; no new booking was created.",
                )
            stored = booking.model_copy()
            self._bookings[booking.booking_id] = stored
            self._transitions[booking.booking_id] = [self._stamp(transition)]
            return stored.model_copy()

    @staticmethod
    def _stamp(transition: TransitionRecord) -> TransitionRecord:
        if transition.created_at is not None:
            return transition
        return replace(transition, created_at=_utcnow())

    async def get(self, booking_id: str) -> BookingSnapshot | None:
        booking = self._bookings.get(booking_id)
        return booking.model_copy() if booking else None

    async def get_by_idempotency_key(self, owner_ref: str, idempotency_key: str) -> BookingSnapshot | None:
        for booking in self._bookings.values():
            if booking.owner_ref == owner_ref and booking.idempotency_key == idempotency_key:
                return booking.model_copy()
        return None

    async def compare_and_set(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        changes: dict[str, Any],
        transition: TransitionRecord,
        *,
        expected_worker_id: str | None = None,
    ) -> BookingSnapshot | None:
        async with self._lock_for(booking_id):
            current = self._bookings.get(booking_id)
            if current is None or current.status != expected_status:
                return None
            if expected_worker_id is not None and current.assigned_worker_id != expected_worker_id:
                return None
            updated = BookingSnapshot.model_validate(
                {**current.model_dump(), **changes, "updated_at": _utcnow()}
            )
            self._bookings[booking_id] = updated
            self._transitions.setdefault(booking_id, []).append(self._stamp(transition))
            return updated.model_copy()

    async def list_by_status(
        self,
        status: BookingStatus,
        *,
        service_zips: Iterable[str] | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[BookingSnapshot]:
        zips = set(service_zips or [])
        matches = [
            booking
            for booking in self._bookings.values()
            if booking.status == status and (not zips or booking.service_zip in zips)
        ]
        matches.sort(key=lambda booking: (booking.created_at, booking.booking_id))
        return [booking.model_copy() for booking in matches[:limit]]

    async def list_for_owner(self, owner_ref: str, *, limit: int = DEFAULT_LIST_LIMIT) -> list[BookingSnapshot]:
        matches = [booking for booking in self._bookings.values() if booking.owner_ref == owner_ref]
        matches.sort(key=lambda booking: (booking.created_at, booking.booking_id), reverse=True)
        return [booking.model_copy() for booking in matches[:limit]]

    async def list_for_worker(self, worker_id: str, *, limit: int = DEFAULT_LIST_LIMIT) -> list[BookingSnapshot]:
        matches = [booking for booking in self._bookings.values() if booking.assigned_worker_id == worker_id]
        matches.sort(key=lambda booking: (booking.created_at, booking.booking_id), reverse=True)
        return [booking.model_copy() for booking in matches[:limit]]

    async def transitions(self, booking_id: str) -> list[TransitionRecord]:
        return list(self._transitions.get(booking_id, []))
