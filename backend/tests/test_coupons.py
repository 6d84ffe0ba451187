from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe

from detailing.domain.errors import GatewayUnavailable, InvalidCoupon
from detailing.domain.payments.gateway import HoldStatus
from detailing.domain.pricing.coupons import Coupon, StaticCouponLookup, StripeCouponLookup
from detailing.infra.stripe_client import StripeClient
from detailing.shared.circuit_breaker import CircuitBreaker
from tests.conftest import CIVIC_INTERIOR_CENTS, CUSTOMER, booking_request

WELCOME = Coupon(code="WELCOME10", percent_off=10)
TWENTY_OFF = Coupon(code="TWENTYOFF", amount_off_cents=2000)


@pytest.mark.parametrize(
    ("coupon", "amount_cents", "expected"),
    [
        (WELCOME, 17500, 1750),
        (Coupon(code="THIRD", percent_off=33.5), 1001, 335),
        (TWENTY_OFF, 17500, 2000),
        (TWENTY_OFF, 1500, 1450),
        (Coupon(code="FREE", percent_off=100), 17500, 17450),
        (Coupon(code="EMPTY"), 17500, 0),
    ],
)
def test_discount_never_takes_price_below_floor(coupon, amount_cents, expected):
    assert coupon.discount_cents(amount_cents, floor_cents=50) == expected


@pytest.fixture()
def coupons() -> StaticCouponLookup:
    return StaticCouponLookup({"welcome10": WELCOME, "TWENTYOFF": TWENTY_OFF})


@pytest.mark.anyio
async def test_quote_applies_discount_before_tax(make_controller, coupons):
    controller = make_controller(coupons=coupons)

    quote = await controller.quote(booking_request(coupon_code=" welcome10 "))

    assert quote.coupon_code == "WELCOME10"
    assert quote.discount_cents == 1750
    assert quote.price.total_cents == CIVIC_INTERIOR_CENTS
    assert quote.subtotal_cents == CIVIC_INTERIOR_CENTS - 1750
    assert quote.total_cents == CIVIC_INTERIOR_CENTS - 1750


@pytest.mark.anyio
async def test_booking_holds_discounted_total_and_records_code(make_controller, gateway, coupons):
    controller = make_controller(coupons=coupons)

    booking = await controller.create(booking_request(coupon_code="twentyoff"), CUSTOMER)

    assert booking.coupon_code == "TWENTYOFF"
    assert booking.discount_cents == 2000
    assert booking.total_cents == CIVIC_INTERIOR_CENTS - 2000
    assert gateway.hold(booking.payment_reference).authorized_cents == CIVIC_INTERIOR_CENTS - 2000
    stored = await controller.get(booking.booking_id, CUSTOMER)
    assert stored.coupon_code == "TWENTYOFF"
    assert stored.discount_cents == 2000


@pytest.mark.anyio
async def test_unknown_code_rejects_booking_before_payment(make_controller, gateway, coupons):
    controller = make_controller(coupons=coupons)

    with pytest.raises(InvalidCoupon) as excinfo:
        await controller.create(booking_request(coupon_code="EXPIRED"), CUSTOMER)

    assert excinfo.value.status_code == 422
    assert gateway.calls_for("authorize") == []
    assert await controller.list_for_customer(CUSTOMER) == []


@pytest.mark.anyio
async def test_booking_without_code_has_no_discount(controller, gateway):
    booking = await controller.create(booking_request(), CUSTOMER)

    assert booking.coupon_code is None
    assert booking.discount_cents == 0
    assert gateway.hold(booking.payment_reference).status == HoldStatus.authorized


# Stripe-backed lookup


@pytest.fixture()
def sdk():
    return MagicMock()


@pytest.fixture()
def lookup(sdk) -> StripeCouponLookup:
    circuit = CircuitBreaker(name="stripe-coupons-test", failure_threshold=5, recovery_time=60)
    return StripeCouponLookup(StripeClient(secret_key="sk_test_123", stripe_sdk=sdk, circuit=circuit))


def _stripe_coupon(**fields):
    payload = {"id": "co_123", "valid": True, "percent_off": None, "amount_off": None}
    payload.update(fields)
    return SimpleNamespace(**payload)


@pytest.mark.anyio
async def test_promotion_code_resolves_to_its_coupon(lookup, sdk):
    sdk.PromotionCode.list.return_value = SimpleNamespace(
        data=[SimpleNamespace(code="SPRING", coupon=_stripe_coupon(percent_off=15.0))]
    )

    coupon = await lookup.resolve("spring")

    assert coupon == Coupon(code="SPRING", percent_off=15.0)
    assert sdk.PromotionCode.list.call_args.kwargs == {"code": "SPRING", "active": True, "limit": 1}
    sdk.Coupon.retrieve.assert_not_called()


@pytest.mark.anyio
async def test_promotion_code_with_coupon_id_is_retrieved(lookup, sdk):
    sdk.PromotionCode.list.return_value = SimpleNamespace(
        data=[SimpleNamespace(code="SPRING", coupon=None, promotion=SimpleNamespace(type="coupon", coupon="co_spring"))]
    )
    sdk.Coupon.retrieve.return_value = _stripe_coupon(amount_off=1500)

    coupon = await lookup.resolve("SPRING")

    assert coupon.amount_off_cents == 1500
    assert sdk.Coupon.retrieve.call_args.args == ("co_spring",)


@pytest.mark.anyio
async def test_raw_coupon_id_is_accepted_when_no_promotion_code_matches(lookup, sdk):
    sdk.PromotionCode.list.return_value = SimpleNamespace(data=[])
    sdk.Coupon.retrieve.side_effect = [
        stripe.InvalidRequestError("No such coupon: 'VIP5'", "id", code="resource_missing"),
        _stripe_coupon(amount_off=500),
    ]

    coupon = await lookup.resolve("vip5")

    assert coupon.amount_off_cents == 500
    assert [call.args for call in sdk.Coupon.retrieve.call_args_list] == [("VIP5",), ("vip5",)]


@pytest.mark.anyio
async def test_missing_or_expired_coupon_is_invalid(lookup, sdk):
    sdk.PromotionCode.list.return_value = SimpleNamespace(data=[])
    sdk.Coupon.retrieve.side_effect = stripe.InvalidRequestError("No such coupon", "id", code="resource_missing")

    with pytest.raises(InvalidCoupon):
        await lookup.resolve("GONE")

    sdk.Coupon.retrieve.side_effect = None
    sdk.Coupon.retrieve.return_value = _stripe_coupon(percent_off=20.0, valid=False)
    with pytest.raises(InvalidCoupon):
        await lookup.resolve("OLD20")


@pytest.mark.anyio
async def test_stripe_outage_during_lookup_is_retryable(lookup, sdk):
    sdk.PromotionCode.list.side_effect = stripe.APIConnectionError("network down")

    with pytest.raises(GatewayUnavailable) as excinfo:
        await lookup.resolve("SPRING")

    assert excinfo.value.retryable is True
    assert "nothing was charged" in excinfo.value.detail
