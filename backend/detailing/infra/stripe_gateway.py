import asyncio
import logging
from typing import Any

import stripe

from detailing.domain.errors import (
    AdjustmentUnsupported,
    AlreadyCaptured,
    GatewayDeclined,
    GatewayUnavailable,
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
from detailing.infra.stripe_client import StripeClient
from detailing.infra.stripe_idempotency import make_stripe_idempotency_key
from detailing.shared.circuit_breaker import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

# Side that stays authoritative when an operation fails.
_FAILURE_OUTCOME = {
    "authorize": "No payment was taken.",
    "capture": "No funds were captured; the booking is unchanged.",
    "void": "The hold was not released; the booking is unchanged.",
    "adjust": "The hold amount and the booking are unchanged.",
}

_WRONG_STATE_ERRORS: dict[str, type[PaymentError]] = {
    "capture": NotCapturable,
    "void": NotVoidable,
    "adjust": AlreadyCaptured,
}

_ADJUSTABLE_BEFORE_CONFIRMATION = {"requires_payment_method", "requires_confirmation", "requires_action"}


def _translate_error(exc: Exception, operation: str) -> PaymentError | None:
    outcome = _FAILURE_OUTCOME[operation]
    if isinstance(exc, CircuitBreakerOpenError):
        return GatewayUnavailable(detail=f"Payment processor temporarily unavailable. {outcome}")
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return GatewayUnavailable(detail=f"Payment processor timed out. {outcome}")
    if isinstance(exc, stripe.CardError):
        return GatewayDeclined(
            detail=f"Card declined ({getattr(exc, 'code', None) or 'card_error'}). {outcome}",
        )
    if isinstance(exc, stripe.InvalidRequestError):
        code = getattr(exc, "code", None)
        if code == "amount_too_small":
            return InvalidAmount(detail=f"Amount is below the processor minimum. {outcome}")
        wrong_state = _WRONG_STATE_ERRORS.get(operation)
        if wrong_state is not None:
            return wrong_state(detail=f"Payment hold is not in a usable state ({code or 'invalid_request'}). {outcome}")
        return GatewayDeclined(detail=f"Payment request rejected ({code or 'invalid_request'}). {outcome}")
    if isinstance(exc, stripe.StripeError):
        return GatewayUnavailable(detail=f"Payment processor error ({type(exc).__name__}). {outcome}")
    return None


def _metadata(intent: Any) -> dict:
    return dict(getattr(intent, "metadata", None) or {})


class StripePaymentGateway:
    """Payment holds as manual-capture Stripe PaymentIntents."""

    def __init__(
        self,
        client: StripeClient,
        *,
        currency: str,
        min_amount_cents: int = 50,
    ) -> None:
        self.client = client
        self.currency = currency
        self.min_amount_cents = min_amount_cents

    async def _guarded(self, operation: str, coro_fn, *args, **kwargs) -> Any:  # noqa: ANN001
        try:
            return await coro_fn(*args, **kwargs)
        except PaymentError:
            raise
        except Exception as exc:
            translated = _translate_error(exc, operation)
            if translated is None:
                raise
            raise translated from exc

    async def _load_owned_intent(self, external_ref: str, *, operation: str, owner_ref: str, booking_id: str) -> Any:
        intent = await self._guarded(operation, self.client.retrieve_payment_intent, external_ref)
        ensure_hold_ownership(
            _metadata(intent), external_ref=external_ref, owner_ref=owner_ref, booking_id=booking_id
        )
        return intent

    async def authorize(
        self,
        *,
        amount_cents: int,
        payment_method: str,
        owner_ref: str,
        booking_id: str,
        idempotency_key: str | None = None,
    ) -> GatewayResult:
        async with track_gateway_call("authorize", booking_id=booking_id):
            if amount_cents < self.min_amount_cents:
                raise InvalidAmount(
                    detail=f"Amount {amount_cents} is below the minimum of {self.min_amount_cents}. "
                    + _FAILURE_OUTCOME["authorize"],
                )
            key = make_stripe_idempotency_key(
                "authorize",
                booking_id=booking_id,
                amount_cents=amount_cents,
                currency=self.currency,
                owner_ref=owner_ref,
                extra={"request": idempotency_key} if idempotency_key else None,
            )
            intent = await self._guarded(
                "authorize",
                self.client.create_payment_intent,
                amount_cents=amount_cents,
                currency=self.currency,
                payment_method=payment_method,
                metadata={"owner_ref": owner_ref, "booking_id": booking_id},
                idempotency_key=key,
            )
            external_ref = intent.id
            ensure_hold_ownership(
                _metadata(intent), external_ref=external_ref, owner_ref=owner_ref, booking_id=booking_id
            )
            if intent.status != "requires_capture":
                # 3DS or other customer action cannot be completed server-side.
                logger.warning(
                    "payment_authorization_incomplete",
                    extra={"extra": {"booking_id": booking_id, "status": intent.status}},
                )
                await self._release_incomplete(external_ref, booking_id=booking_id)
                raise GatewayDeclined(
                    detail=f"Card could not be authorized ({intent.status}). " + _FAILURE_OUTCOME["authorize"],
                )
            authorized = int(getattr(intent, "amount_capturable", None) or intent.amount)
            return GatewayResult(
                external_ref=external_ref,
                status=HoldStatus.authorized,
                authorized_cents=authorized,
            )

    async def _release_incomplete(self, external_ref: str, *, booking_id: str) -> None:
        try:
            await self.client.cancel_payment_intent(
                external_ref,
                idempotency_key=make_stripe_idempotency_key("void", booking_id=booking_id, extra={"ref": external_ref}),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "payment_incomplete_release_failed",
                extra={"extra": {"booking_id": booking_id, "error": type(exc).__name__}},
            )

    async def capture(
        self,
        external_ref: str,
        *,
        owner_ref: str,
        booking_id: str,
        amount_cents: int | None = None,
    ) -> GatewayResult:
        async with track_gateway_call("capture", booking_id=booking_id):
            intent = await self._load_owned_intent(
                external_ref, operation="capture", owner_ref=owner_ref, booking_id=booking_id
            )
            if intent.status == "succeeded":
                received = int(getattr(intent, "amount_received", None) or 0)
                requested = int(intent.amount) if amount_cents is None else amount_cents
                if received == requested:
                    # An earlier capture went through but its booking write did not.
                    logger.info(
                        "payment_capture_replayed",
                        extra={"extra": {"booking_id": booking_id, "captured_cents": received}},
                    )
                    return GatewayResult(
                        external_ref=external_ref,
                        status=HoldStatus.captured,
                        authorized_cents=int(intent.amount),
                        captured_cents=received,
                    )
            if intent.status != "requires_capture":
                raise NotCapturable(
                    detail=f"Payment hold is {intent.status}. " + _FAILURE_OUTCOME["capture"],
                )
            capturable = int(getattr(intent, "amount_capturable", None) or intent.amount)
            amount = capturable if amount_cents is None else amount_cents
            if amount <= 0 or amount > capturable:
                raise InvalidAmount(
                    detail=f"Capture of {amount} exceeds the held {capturable}. " + _FAILURE_OUTCOME["capture"],
                )
            captured = await self._guarded(
                "capture",
                self.client.capture_payment_intent,
                external_ref,
                amount_to_capture=amount,
                idempotency_key=make_stripe_idempotency_key(
                    "capture", booking_id=booking_id, amount_cents=amount, extra={"ref": external_ref}
                ),
            )
            return GatewayResult(
                external_ref=external_ref,
                status=HoldStatus.captured,
                authorized_cents=capturable,
                captured_cents=int(getattr(captured, "amount_received", None) or amount),
            )

    async def void(self, external_ref: str, *, owner_ref: str, booking_id: str) -> GatewayResult:
        async with track_gateway_call("void", booking_id=booking_id):
            intent = await self._load_owned_intent(
                external_ref, operation="void", owner_ref=owner_ref, booking_id=booking_id
            )
            if intent.status in {"succeeded", "canceled"}:
                raise NotVoidable(
                    detail=f"Payment hold is already {intent.status}. " + _FAILURE_OUTCOME["void"],
                )
            await self._guarded(
                "void",
                self.client.cancel_payment_intent,
                external_ref,
                idempotency_key=make_stripe_idempotency_key("void", booking_id=booking_id, extra={"ref": external_ref}),
            )
            return GatewayResult(
                external_ref=external_ref,
                status=HoldStatus.voided,
                authorized_cents=int(intent.amount),
            )

    async def adjust_authorized_amount(
        self,
        external_ref: str,
        new_amount_cents: int,
        *,
        owner_ref: str,
        booking_id: str,
    ) -> GatewayResult:
        async with track_gateway_call("adjust", booking_id=booking_id):
            if new_amount_cents < self.min_amount_cents:
                raise InvalidAmount(
                    detail=f"Amount {new_amount_cents} is below the minimum of {self.min_amount_cents}. "
                    + _FAILURE_OUTCOME["adjust"],
                )
            intent = await self._load_owned_intent(
                external_ref, operation="adjust", owner_ref=owner_ref, booking_id=booking_id
            )
            key = make_stripe_idempotency_key(
                "adjust", booking_id=booking_id, amount_cents=new_amount_cents, extra={"ref": external_ref}
            )
            if intent.status == "succeeded":
                raise AlreadyCaptured(detail="Payment was already captured. " + _FAILURE_OUTCOME["adjust"])
            if intent.status == "canceled":
                raise NotCapturable(detail="Payment hold was released. " + _FAILURE_OUTCOME["adjust"])
            if intent.status in _ADJUSTABLE_BEFORE_CONFIRMATION:
                await self._guarded(
                    "adjust",
                    self.client.modify_payment_intent,
                    external_ref,
                    amount_cents=new_amount_cents,
                    idempotency_key=key,
                )
                return GatewayResult(
                    external_ref=external_ref, status=HoldStatus.authorized, authorized_cents=new_amount_cents
                )

            if intent.status != "requires_capture":
                raise NotCapturable(detail=f"Payment hold is {intent.status}. " + _FAILURE_OUTCOME["adjust"])
            held = int(getattr(intent, "amount_capturable", None) or intent.amount)
            if new_amount_cents <= held:
                # Held funds already cover it; completion captures the explicit lower amount.
                return GatewayResult(external_ref=external_ref, status=HoldStatus.authorized, authorized_cents=held)
            try:
                await self._guarded(
                    "adjust",
                    self.client.increment_authorization,
                    external_ref,
                    amount_cents=new_amount_cents,
                    idempotency_key=key,
                )
            except (AlreadyCaptured, GatewayDeclined) as exc:
                raise AdjustmentUnsupported(
                    detail="The card does not support raising this hold. " + _FAILURE_OUTCOME["adjust"],
                ) from exc
            return GatewayResult(
                external_ref=external_ref, status=HoldStatus.authorized, authorized_cents=new_amount_cents
            )
