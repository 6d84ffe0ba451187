import pytest

from detailing.domain.errors import (
    AlreadyCaptured,
    GatewayDeclined,
    GatewayUnavailable,
    InvalidAmount,
    NotCapturable,
    NotVoidable,
    OwnershipMismatch,
)
from detailing.domain.payments.gateway import HoldStatus
from detailing.infra.memory_gateway import InMemoryPaymentGateway

OWNER = {"owner_ref": "customer:cust-1", "booking_id": "b-1"}


@pytest.fixture()
def gateway() -> InMemoryPaymentGateway:
    return InMemoryPaymentGateway(min_amount_cents=50)


async def _authorize(gateway, amount_cents=10000, **overrides):
    kwargs = {"amount_cents": amount_cents, "payment_method": "pm_card_visa", **OWNER}
    kwargs.update(overrides)
    return await gateway.authorize(**kwargs)


@pytest.mark.anyio
async def test_authorize_then_capture_partial_amount(gateway):
    hold = await _authorize(gateway)

    result = await gateway.capture(hold.external_ref, amount_cents=6000, **OWNER)

    assert result.status == HoldStatus.captured
    assert result.captured_cents == 6000
    assert gateway.hold(hold.external_ref).authorized_cents == 10000


@pytest.mark.anyio
async def test_authorize_replays_for_same_idempotency_key(gateway):
    first = await _authorize(gateway, idempotency_key="key-1")
    second = await _authorize(gateway, idempotency_key="key-1")
    other = await _authorize(gateway, idempotency_key="key-2")

    assert first.external_ref == second.external_ref
    assert other.external_ref != first.external_ref


@pytest.mark.anyio
async def test_declined_card_and_small_amount_take_no_hold(gateway):
    with pytest.raises(GatewayDeclined):
        await _authorize(gateway, payment_method="pm_card_chargeDeclined")
    with pytest.raises(InvalidAmount):
        await _authorize(gateway, amount_cents=49)


@pytest.mark.anyio
async def test_capture_cannot_exceed_authorization(gateway):
    hold = await _authorize(gateway)

    with pytest.raises(InvalidAmount):
        await gateway.capture(hold.external_ref, amount_cents=10001, **OWNER)

    assert gateway.hold(hold.external_ref).status == HoldStatus.authorized


@pytest.mark.anyio
async def test_repeat_capture_replays_and_void_after_capture_is_rejected(gateway):
    hold = await _authorize(gateway)
    first = await gateway.capture(hold.external_ref, **OWNER)

    again = await gateway.capture(hold.external_ref, **OWNER)
    assert again == first
    with pytest.raises(NotCapturable):
        await gateway.capture(hold.external_ref, amount_cents=4000, **OWNER)
    with pytest.raises(NotVoidable):
        await gateway.void(hold.external_ref, **OWNER)

    assert gateway.hold(hold.external_ref).captured_cents == 10000
    assert gateway.hold(hold.external_ref).capture_count == 1


@pytest.mark.anyio
async def test_adjust_changes_hold_until_captured(gateway):
    hold = await _authorize(gateway)

    raised = await gateway.adjust_authorized_amount(hold.external_ref, 12500, **OWNER)
    assert raised.authorized_cents == 12500

    await gateway.capture(hold.external_ref, **OWNER)
    with pytest.raises(AlreadyCaptured):
        await gateway.adjust_authorized_amount(hold.external_ref, 13000, **OWNER)


@pytest.mark.anyio
async def test_lowered_adjust_keeps_the_original_hold(gateway):
    hold = await _authorize(gateway)

    lowered = await gateway.adjust_authorized_amount(hold.external_ref, 7500, **OWNER)
    assert lowered.authorized_cents == 10000

    captured = await gateway.capture(hold.external_ref, amount_cents=7500, **OWNER)
    assert captured.captured_cents == 7500
    assert gateway.hold(hold.external_ref).authorized_cents == 10000

@pytest.mark.anyio
async def test_adjust_on_voided_hold_is_not_capturable(gateway):
    hold = await _authorize(gateway)
    await gateway.void(hold.external_ref, **OWNER)

    with pytest.raises(NotCapturable):
        await gateway.adjust_authorized_amount(hold.external_ref, 9000, **OWNER)


@pytest.mark.anyio
async def test_hold_operations_check_owner_and_booking(gateway):
    hold = await _authorize(gateway)

    with pytest.raises(OwnershipMismatch):
        await gateway.capture(hold.external_ref, owner_ref="customer:cust-2", booking_id="b-1")
    with pytest.raises(OwnershipMismatch):
        await gateway.void(hold.external_ref, owner_ref="customer:cust-1", booking_id="b-2")

    assert gateway.hold(hold.external_ref).status == HoldStatus.authorized


@pytest.mark.anyio
async def test_queued_failure_fires_once(gateway):
    hold = await _authorize(gateway)
    gateway.fail_next("capture", GatewayUnavailable(detail="processor timeout"))

    with pytest.raises(GatewayUnavailable) as excinfo:
        await gateway.capture(hold.external_ref, **OWNER)
    assert excinfo.value.retryable is True

    result = await gateway.capture(hold.external_ref, **OWNER)
    assert result.status == HoldStatus.captured
    assert [call.operation for call in gateway.calls] == ["authorize", "capture", "capture"]
