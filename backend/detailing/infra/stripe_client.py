from __future__ import annotations

from typing import Any, Callable

import anyio
import stripe

from detailing.infra.stripe_resilience import stripe_circuit
from detailing.settings import settings
from detailing.shared.circuit_breaker import CircuitBreaker


MUTATING_METHOD_PREFIXES: tuple[str, ...] = (
    "create_",
    "capture_",
    "cancel_",
    "modify_",
    "increment_",
)

READ_ONLY_METHOD_PREFIXES: tuple[str, ...] = (
    "retrieve_",
    "list_",
    "calculate_",
)

# Answers from Stripe about the request itself; the processor is healthy.
NON_TRIPPING_ERRORS: tuple[type[BaseException], ...] = (
    stripe.CardError,
    stripe.InvalidRequestError,
    stripe.AuthenticationError,
    stripe.PermissionError,
)


def is_mutating_method(method_name: str) -> bool:
    if method_name.startswith(READ_ONLY_METHOD_PREFIXES):
        return False
    return method_name.startswith(MUTATING_METHOD_PREFIXES)


class StripeClient:
    """Thin async wrapper over the synchronous Stripe SDK.

    Calls run on a worker thread inside the ``stripe`` circuit breaker, whose
    timeout bounds every request. Mutating calls must carry an idempotency key.
    """

    def __init__(
        self,
        *,
        secret_key: str | None,
        stripe_sdk: Any | None = None,
        circuit: CircuitBreaker | None = None,
    ) -> None:
        self.stripe = stripe_sdk if stripe_sdk is not None else stripe
        self.secret_key = secret_key or settings.stripe_secret_key
        self.circuit = circuit or stripe_circuit

    async def _call(self, method_name: str, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")
        if is_mutating_method(method_name) and not kwargs.get("idempotency_key"):
            raise ValueError(f"Stripe mutation '{method_name}' requires idempotency_key to be provided")
        self.stripe.api_key = self.secret_key

        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        return await self.circuit.call(
            lambda: anyio.to_thread.run_sync(_sync_call),
            ignore=NON_TRIPPING_ERRORS,
        )

    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        payment_method: str,
        metadata: dict[str, str],
        idempotency_key: str,
        description: str | None = None,
    ) -> Any:
        payload: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "payment_method": payment_method,
            "capture_method": "manual",
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "payment_method_options": {"card": {"request_incremental_authorization": "if_available"}},
            "metadata": metadata,
        }
        if description:
            payload["description"] = description
        return await self._call(
            "create_payment_intent",
            self.stripe.PaymentIntent.create,
            **payload,
            idempotency_key=idempotency_key,
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        return await self._call(
            "retrieve_payment_intent", self.stripe.PaymentIntent.retrieve, payment_intent_id
        )

    async def capture_payment_intent(
        self, payment_intent_id: str, *, amount_to_capture: int, idempotency_key: str
    ) -> Any:
        return await self._call(
            "capture_payment_intent",
            self.stripe.PaymentIntent.capture,
            payment_intent_id,
            amount_to_capture=amount_to_capture,
            idempotency_key=idempotency_key,
        )

    async def cancel_payment_intent(self, payment_intent_id: str, *, idempotency_key: str) -> Any:
        return await self._call(
            "cancel_payment_intent",
            self.stripe.PaymentIntent.cancel,
            payment_intent_id,
            idempotency_key=idempotency_key,
        )

    async def modify_payment_intent(
        self, payment_intent_id: str, *, amount_cents: int, idempotency_key: str
    ) -> Any:
        return await self._call(
            "modify_payment_intent",
            self.stripe.PaymentIntent.modify,
            payment_intent_id,
            amount=amount_cents,
            idempotency_key=idempotency_key,
        )

    async def increment_authorization(
        self, payment_intent_id: str, *, amount_cents: int, idempotency_key: str
    ) -> Any:
        return await self._call(
            "increment_authorization",
            self.stripe.PaymentIntent.increment_authorization,
            payment_intent_id,
            amount=amount_cents,
            idempotency_key=idempotency_key,
        )

    async def calculate_tax(
        self,
        *,
        amount_cents: int,
        currency: str,
        tax_code: str,
        postal_code: str,
        country: str = "US",
    ) -> Any:
        return await self._call(
            "calculate_tax",
            self.stripe.tax.Calculation.create,
            currency=currency,
            line_items=[{"amount": amount_cents, "reference": "detailing_service", "tax_code": tax_code}],
            customer_details={
                "address": {"postal_code": postal_code, "country": country},
                "address_source": "shipping",
            },
        )

    async def list_promotion_codes(self, *, code: str, limit: int = 1) -> Any:
        return await self._call(
            "list_promotion_codes",
            self.stripe.PromotionCode.list,
            code=code,
            active=True,
            limit=limit,
        )

    async def retrieve_coupon(self, coupon_id: str) -> Any:
        return await self._call("retrieve_coupon", self.stripe.Coupon.retrieve, coupon_id)
