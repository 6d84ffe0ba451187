"""Payment gateway contract: two-phase card holds.

Every operation is bounded by the adapter's own timeout and fails with a
typed ``PaymentError``. Operations against an existing hold check the hold's
embedded owner and booking before they mutate it.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Protocol

from detailing.domain.errors import OwnershipMismatch, PaymentError
from detailing.infra.metrics import metrics
from detailing.infra.tracing import gateway_span

logger = logging.getLogger(__name__)


class HoldStatus(str, Enum):
    authorized = "authorized"
    captured = "captured"
    voided = "voided"


@dataclass(frozen=True)
class GatewayResult:
    external_ref: str
    status: HoldStatus
    authorized_cents: int
    captured_cents: int = 0


class PaymentGateway(Protocol):
    async def authorize(
        self,
        *,
        amount_cents: int,
        payment_method: str,
        owner_ref: str,
        booking_id: str,
        idempotency_key: str | None = None,
    ) -> GatewayResult:
        ...

    async def capture(
        self,
        external_ref: str,
        *,
        owner_ref: str,
        booking_id: str,
        amount_cents: int | None = None,
    ) -> GatewayResult:
        ...

    async def void(self, external_ref: str, *, owner_ref: str, booking_id: str) -> GatewayResult:
        ...

    async def adjust_authorized_amount(
        self,
        external_ref: str,
        new_amount_cents: int,
        *,
        owner_ref: str,
        booking_id: str,
    ) -> GatewayResult:
        ...


def ensure_hold_ownership(
    metadata: dict | None, *, external_ref: str, owner_ref: str, booking_id: str
) -> None:
    metadata = metadata or {}
    if metadata.get("owner_ref") != owner_ref or metadata.get("booking_id") != booking_id:
        logger.warning(
            "payment_ownership_mismatch",
            extra={"extra": {"external_ref": external_ref, "booking_id": booking_id}},
        )
        raise OwnershipMismatch(
            detail="Payment hold does not belong to this booking; no payment was changed.",
        )


@asynccontextmanager
async def track_gateway_call(operation: str, *, booking_id: str | None = None) -> AsyncIterator[None]:
    """Span plus outcome counter around one gateway operation."""
    with gateway_span(operation, booking_id=booking_id):
        try:
            yield
        except PaymentError as exc:
            metrics.record_gateway_call(operation, type(exc).__name__)
            logger.warning(
                "gateway_call_failed",
                extra={"extra": {"operation": operation, "booking_id": booking_id, "error": type(exc).__name__}},
            )
            raise
        metrics.record_gateway_call(operation, "ok")
