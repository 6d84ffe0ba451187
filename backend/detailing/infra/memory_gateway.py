import asyncio
import uuid
from dataclasses import dataclass, field

from detailing.domain.errors import (
    AlreadyCaptured,
    GatewayDeclined,
    InvalidAmount,
    NotCapturable,
    NotVoidable,
    PaymentError,
)
from detailing.domain.payments.gateway import (
    GatewayResult,
    HoldStatus,
    ensure_hold_ownership,
    track_gateway_call,
)

DECLINED_PAYMENT_METHODS = {"pm_card_chargeDeclined", "pm_card_visa_chargeDeclined"}


@dataclass
class _Hold:
    external_ref: str
    owner_ref: str
    booking_id: str
    authorized_cents: int
    captured_cents: int = 0
    capture_count: int = 0
    status: HoldStatus = HoldStatus.authorized
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayCall:
    operation: str
    external_ref: str | None
    amount_cents: int | None


class InMemoryPaymentGateway:
    """Process-local stand-in for the card processor.

    Tracks authorized and captured amounts per hold and never lets a capture
    exceed the authorization. Like a manual-capture PaymentIntent, lowering the
    amount keeps the original hold and only raising it changes
    ``authorized_cents``; the lower amount is applied by the capture. A repeat
    capture of the amount already captured is answered from the hold without
    moving money again. ``fail_next`` queues an error for the next call of an
    operation.
    """

    def __init__(self, *, min_amount_cents: int = 50) -> None:
        self.min_amount_cents = min_amount_cents
        self._holds: dict[str, _Hold] = {}
        self._authorizations: dict[tuple[str, str], str] = {}
        self._queued_failures: dict[str, list[PaymentError]] = {}
        self._lock = asyncio.Lock()
        self.calls: list[GatewayCall] = []

    def fail_next(self, operation: str, error: PaymentError) -> None:
        self._queued_failures.setdefault(operation, []).append(error)

    def hold(self, external_ref: str) -> _Hold:
        return self._holds[external_ref]

    def calls_for(self, operation: str) -> list[GatewayCall]:
        return [call for call in self.calls if call.operation == operation]

    def _raise_queued(self, operation: str) -> None:
        queued = self._queued_failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _owned_hold(self, external_ref: str, *, owner_ref: str, booking_id: str) -> _Hold:
        hold = self._holds.get(external_ref)
        if hold is None:
            raise NotCapturable(detail="Unknown payment hold; no payment was changed.")
        ensure_hold_ownership(hold.metadata, external_ref=external_ref, owner_ref=owner_ref, booking_id=booking_id)
        return hold

    async def authorize(
        self,
        *,
        amount_cents: int,
        payment_method: str,
        owner_ref: str,
        booking_id: str,
        idempotency_key: str | None = None,
    ) -> GatewayResult:
        async with track_gateway_call("authorize", booking_id=booking_id), self._lock:
            self.calls.append(GatewayCall("authorize", None, amount_cents))
            self._raise_queued("authorize")
            if amount_cents < self.min_amount_cents:
                raise InvalidAmount(
                    detail=f"Amount {amount_cents} is below the minimum of {self.min_amount_cents}. No payment was taken.",
                )
            if payment_method in DECLINED_PAYMENT_METHODS:
                raise GatewayDeclined(detail="Card declined (card_declined). No payment was taken.")
            replay_key = (booking_id, idempotency_key or "")
            existing_ref = self._authorizations.get(replay_key)
            if existing_ref is not None:
                existing = self._holds[existing_ref]
                return GatewayResult(existing_ref, existing.status, existing.authorized_cents, existing.captured_cents)
            external_ref = f"pi_mem_{uuid.uuid4().hex[:24]}"
            self._holds[external_ref] = _Hold(
                external_ref=external_ref,
                owner_ref=owner_ref,
                booking_id=booking_id,
                authorized_cents=amount_cents,
                metadata={"owner_ref": owner_ref, "booking_id": booking_id},
            )
            self._authorizations[replay_key] = external_ref
            return GatewayResult(external_ref, HoldStatus.authorized, amount_cents)

    async def capture(
        self,
        external_ref: str,
        *,
        owner_ref: str,
        booking_id: str,
        amount_cents: int | None = None,
    ) -> GatewayResult:
        async with track_gateway_call("capture", booking_id=booking_id), self._lock:
            self.calls.append(GatewayCall("capture", external_ref, amount_cents))
            hold = self._owned_hold(external_ref, owner_ref=owner_ref, booking_id=booking_id)
            self._raise_queued("capture")
            requested = hold.authorized_cents if amount_cents is None else amount_cents
            if hold.status == HoldStatus.captured and hold.captured_cents == requested:
                return GatewayResult(external_ref, hold.status, hold.authorized_cents, hold.captured_cents)
            if hold.status != HoldStatus.authorized:
                raise NotCapturable(
                    detail=f"Payment hold is {hold.status.value}. No funds were captured; the booking is unchanged.",
                )
            if requested <= 0 or requested > hold.authorized_cents:
                raise InvalidAmount(
                    detail=f"Capture of {requested} exceeds the held {hold.authorized_cents}. No funds were captured.",
                )
            hold.captured_cents = requested
            hold.capture_count += 1
            hold.status = HoldStatus.captured
            return GatewayResult(external_ref, hold.status, hold.authorized_cents, hold.captured_cents)

    async def void(self, external_ref: str, *, owner_ref: str, booking_id: str) -> GatewayResult:
        async with track_gateway_call("void", booking_id=booking_id), self._lock:
            self.calls.append(GatewayCall("void", external_ref, None))
            hold = self._owned_hold(external_ref, owner_ref=owner_ref, booking_id=booking_id)
            self._raise_queued("void")
            if hold.status != HoldStatus.authorized:
                raise NotVoidable(
                    detail=f"Payment hold is already {hold.status.value}. The hold was not released.",
                )
            hold.status = HoldStatus.voided
            return GatewayResult(external_ref, hold.status, hold.authorized_cents)

    async def adjust_authorized_amount(
        self,
        external_ref: str,
        new_amount_cents: int,
        *,
        owner_ref: str,
        booking_id: str,
    ) -> GatewayResult:
        async with track_gateway_call("adjust", booking_id=booking_id), self._lock:
            self.calls.append(GatewayCall("adjust", external_ref, new_amount_cents))
            hold = self._owned_hold(external_ref, owner_ref=owner_ref, booking_id=booking_id)
            self._raise_queued("adjust")
            if new_amount_cents < self.min_amount_cents:
                raise InvalidAmount(
                    detail=f"Amount {new_amount_cents} is below the minimum of {self.min_amount_cents}. "
                    "The hold amount and the booking are unchanged.",
                )
            if hold.status == HoldStatus.captured:
                raise AlreadyCaptured(detail="Payment was already captured. The hold amount and the booking are unchanged.")
            if hold.status == HoldStatus.voided:
                raise NotCapturable(detail="Payment hold was released. The hold amount and the booking are unchanged.")
            if new_amount_cents > hold.authorized_cents:
                hold.authorized_cents = new_amount_cents
            return GatewayResult(external_ref, hold.status, hold.authorized_cents)
