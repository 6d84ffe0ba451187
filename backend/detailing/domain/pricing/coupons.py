"""Discount codes applied to the server-computed price before tax.

A code is either a customer-facing Stripe promotion code or a raw coupon id.
Percent and fixed discounts never take the price below the payment minimum.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Protocol

import stripe

from detailing.domain.errors import GatewayUnavailable, InvalidCoupon
from detailing.shared.circuit_breaker import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

INVALID_COUPON_DETAIL = "Invalid or expired discount code; nothing was charged."


def normalize_coupon_code(raw: str | None) -> str:
    return (raw or "").strip().upper()


@dataclass(frozen=True)
class Coupon:
    code: str
    percent_off: float | None = None
    amount_off_cents: int | None = None

    def discount_cents(self, amount_cents: int, *, floor_cents: int) -> int:
        if self.percent_off is not None:
            remaining = Decimal(100) - Decimal(str(self.percent_off))
            discounted = int((Decimal(amount_cents) * remaining / 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
        elif self.amount_off_cents is not None:
            discounted = amount_cents - self.amount_off_cents
        else:
            discounted = amount_cents
        discounted = max(min(floor_cents, amount_cents), discounted)
        return amount_cents - discounted


class CouponLookup(Protocol):
    async def resolve(self, code: str) -> Coupon:
        ...


class StaticCouponLookup:
    """Fixed coupon table; any code not in it is rejected."""

    def __init__(self, coupons: Mapping[str, Coupon] | None = None) -> None:
        self.coupons = {normalize_coupon_code(code): coupon for code, coupon in (coupons or {}).items()}

    async def resolve(self, code: str) -> Coupon:
        coupon = self.coupons.get(normalize_coupon_code(code))
        if coupon is None:
            raise InvalidCoupon(detail=INVALID_COUPON_DETAIL)
        return coupon


def _promotion_coupon(promotion: Any) -> Any:
    nested = getattr(getattr(promotion, "promotion", None), "coupon", None)
    return nested or getattr(promotion, "coupon", None)


def _coupon_from_stripe(coupon: Any, code: str) -> Coupon:
    if not getattr(coupon, "valid", False):
        raise InvalidCoupon(detail=INVALID_COUPON_DETAIL)
    percent_off = getattr(coupon, "percent_off", None)
    amount_off = getattr(coupon, "amount_off", None)
    return Coupon(
        code=code,
        percent_off=float(percent_off) if percent_off is not None else None,
        amount_off_cents=int(amount_off) if amount_off is not None else None,
    )


class StripeCouponLookup:
    def __init__(self, stripe_client: Any) -> None:
        self.stripe_client = stripe_client

    async def resolve(self, code: str) -> Coupon:
        normalized = normalize_coupon_code(code)
        if not normalized:
            raise InvalidCoupon(detail=INVALID_COUPON_DETAIL)
        try:
            coupon = await self._lookup(normalized, code.strip())
        except InvalidCoupon:
            raise
        except stripe.InvalidRequestError as exc:
            raise InvalidCoupon(detail=INVALID_COUPON_DETAIL) from exc
        except (CircuitBreakerOpenError, asyncio.TimeoutError, TimeoutError, stripe.StripeError) as exc:
            logger.warning("coupon_lookup_unavailable", extra={"extra": {"error": type(exc).__name__}})
            raise GatewayUnavailable(
                detail="Discount codes cannot be checked right now; nothing was charged. Retry shortly.",
            ) from exc
        return _coupon_from_stripe(coupon, normalized)

    async def _lookup(self, normalized: str, raw: str) -> Any:
        promotions = await self.stripe_client.list_promotion_codes(code=normalized)
        data = list(getattr(promotions, "data", None) or [])
        if data:
            coupon = _promotion_coupon(data[0])
            if isinstance(coupon, str):
                return await self.stripe_client.retrieve_coupon(coupon)
            if coupon is not None:
                return coupon
        # Raw coupon ids are case-sensitive.
        for candidate in dict.fromkeys((normalized, raw)):
            try:
                return await self.stripe_client.retrieve_coupon(candidate)
            except stripe.InvalidRequestError:
                continue
        raise InvalidCoupon(detail=INVALID_COUPON_DETAIL)
