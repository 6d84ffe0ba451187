import logging
from datetime import datetime
from typing import Callable

from detailing.domain.bookings.schemas import BookingSnapshot, TransitionRecord
from detailing.domain.bookings.statuses import BookingStatus
from detailing.domain.bookings.store import BookingStore
from detailing.domain.errors import AlreadyClaimed
from detailing.infra.metrics import metrics

logger = logging.getLogger(__name__)


class AssignmentCoordinator:
    """Arbitrates concurrent claims on a pending booking.

    A claim is a single conditional write (``pending`` -> ``assigned``) that
    also stamps the acceptance time. Exactly one concurrent claimer wins; the
    rest get ``AlreadyClaimed`` and must not retry the same booking.
    """

    def __init__(self, store: BookingStore, clock: Callable[[], datetime]) -> None:
        self.store = store
        self.clock = clock

    async def claim(
        self,
        booking_id: str,
        worker_id: str,
        *,
        actor_role: str = "worker",
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> BookingSnapshot:
        now = self.clock()
        updated = await self.store.compare_and_set(
            booking_id,
            BookingStatus.pending,
            {
                "status": BookingStatus.assigned,
                "assigned_worker_id": worker_id,
                "assigned_at": now,
                "accepted_at": now,
            },
            TransitionRecord(
                from_status=BookingStatus.pending,
                to_status=BookingStatus.assigned,
                actor_role=actor_role,
                actor_id=actor_id or worker_id,
                reason=reason,
                created_at=now,
            ),
        )
        if updated is None:
            metrics.record_claim("lost")
            logger.info("claim_lost", extra={"extra": {"booking_id": booking_id, "worker_id": worker_id}})
            raise AlreadyClaimed(
                detail="This job was already taken by another detailer; you are not assigned.",
            )
        metrics.record_claim("won")
        logger.info("claim_won", extra={"extra": {"booking_id": booking_id, "worker_id": worker_id}})
        return updated
