import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from detailing.domain.bookings.schemas import BookingSnapshot
from detailing.domain.notifications.db_models import OutboxEvent
from detailing.infra.metrics import metrics

logger = logging.getLogger(__name__)


class BookingEvent(str, Enum):
    created = "booking.created"
    completed = "booking.completed"
    cancelled = "booking.cancelled"


class BookingNotifier(Protocol):
    async def notify(self, event: BookingEvent, booking: BookingSnapshot) -> None:
        ...


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def build_event_payload(event: BookingEvent, booking: BookingSnapshot) -> dict:
    # Contact details stay in the bookings table; consumers look them up.
    return {
        "event": event.value,
        "booking_id": booking.booking_id,
        "status": booking.status.value,
        "service_type": booking.service_type,
        "total_cents": booking.total_cents,
        "cancellation_fee_cents": booking.cancellation_fee_cents,
        "currency": booking.currency,
        "assigned_worker_id": booking.assigned_worker_id,
        "scheduled_at": booking.scheduled_at.isoformat() if booking.scheduled_at else None,
        "emitted_at": _now().isoformat(),
    }


async def enqueue_outbox_event(
    session: AsyncSession,
    *,
    kind: str,
    booking_id: str,
    payload: dict,
    dedupe_key: str,
) -> OutboxEvent:
    values = {
        "kind": kind,
        "booking_id": booking_id,
        "payload_json": payload,
        "dedupe_key": dedupe_key,
        "status": "pending",
        "attempts": 0,
    }
    bind = session.get_bind()
    dialect = bind.dialect.name if bind else ""
    if dialect == "postgresql":
        stmt = pg_insert(OutboxEvent).values(**values).on_conflict_do_nothing(index_elements=["dedupe_key"])
        result = await session.execute(stmt.returning(OutboxEvent))
        created = result.scalar_one_or_none()
        if created is not None:
            return created
    else:
        try:
            async with session.begin_nested():
                result = await session.execute(insert(OutboxEvent).values(**values).returning(OutboxEvent))
            created = result.scalar_one_or_none()
            if created is not None:
                return created
        except IntegrityError:
            logger.info("outbox_event_deduplicated", extra={"extra": {"dedupe_key": dedupe_key}})
    existing = await session.scalar(select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key))
    if existing is None:
        raise RuntimeError(f"outbox event {dedupe_key} was neither inserted nor found")
    return existing


class OutboxNotifier:
    """Hands lifecycle events to the outbox in a transaction of their own.

    Runs after the booking transition has committed; any failure is logged and
    swallowed so a notification problem never undoes a booking change.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def notify(self, event: BookingEvent, booking: BookingSnapshot) -> None:
        dedupe_key = f"{booking.booking_id}:{event.value}"
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await enqueue_outbox_event(
                        session,
                        kind=event.value,
                        booking_id=booking.booking_id,
                        payload=build_event_payload(event, booking),
                        dedupe_key=dedupe_key,
                    )
        except Exception as exc:  # noqa: BLE001
            metrics.record_notification(event.value, "failed")
            logger.warning(
                "notification_enqueue_failed",
                extra={"extra": {"booking_id": booking.booking_id, "event": event.value, "error": type(exc).__name__}},
            )
            return
        metrics.record_notification(event.value, "enqueued")
