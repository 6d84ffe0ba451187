from datetime import timedelta

import pytest

from detailing.domain.bookings.cancellation_policy import CancellationFeeSchedule
from detailing.domain.bookings.schemas import Caller, CallerRole
from detailing.domain.bookings.statuses import BookingStatus
from detailing.domain.bookings.store import InMemoryBookingStore
from detailing.domain.errors import (
    AlreadyClaimed,
    AlreadyTerminal,
    BookingNotFound,
    BookingValidationError,
    GatewayUnavailable,
    InvalidTransition,
    NotAuthorized,
    PaymentRequired,
    StaleQuote,
    StaleStatus,
    VehicleSizeBelowFloor,
)
from detailing.domain.payments.gateway import HoldStatus
from detailing.domain.pricing.models import ServiceAddress, Vehicle, VehicleSize
from tests.conftest import (
    ADMIN,
    CIVIC_INTERIOR_CENTS,
    CUSTOMER,
    GUEST,
    OTHER_CUSTOMER,
    OTHER_WORKER,
    WORKER,
    RecordingNotifier,
    booking_request,
    guest_booking_request,
)


class FailingInsertStore(InMemoryBookingStore):
    async def insert(self, booking, transition):  # noqa: ANN001
        raise RuntimeError("database unavailable")


class MissedLookupStore(InMemoryBookingStore):
    """Idempotency lookup misses once, as when two retries race past it."""

    def __init__(self) -> None:
        super().__init__()
        self.miss_next_lookup = False

    async def get_by_idempotency_key(self, owner_ref, idempotency_key):  # noqa: ANN001
        if self.miss_next_lookup:
            self.miss_next_lookup = False
            return None
        return await super().get_by_idempotency_key(owner_ref, idempotency_key)


class LosingStore(InMemoryBookingStore):
    """Conditional write loses the race once when armed."""

    def __init__(self) -> None:
        super().__init__()
        self.lose_next = False

    async def compare_and_set(self, *args, **kwargs):  # noqa: ANN002, ANN003
        if self.lose_next:
            self.lose_next = False
            return None
        return await super().compare_and_set(*args, **kwargs)


class InterleavingStore(InMemoryBookingStore):
    """Runs another caller's intent just before the next conditional write."""

    def __init__(self) -> None:
        super().__init__()
        self.before_next_write = None

    async def compare_and_set(self, *args, **kwargs):  # noqa: ANN002, ANN003
        interleaved, self.before_next_write = self.before_next_write, None
        if interleaved is not None:
            await interleaved()
        return await super().compare_and_set(*args, **kwargs)


async def _assigned(controller, **overrides):
    booking = await controller.create(booking_request(**overrides), CUSTOMER)
    return await controller.claim(booking.booking_id, WORKER)


async def _in_progress(controller, **overrides):
    booking = await _assigned(controller, **overrides)
    return await controller.start(booking.booking_id, WORKER)


# Create


@pytest.mark.anyio
async def test_create_authorizes_hold_and_stores_pending_booking(controller, gateway, notifier):
    booking = await controller.create(booking_request(), CUSTOMER)

    assert booking.status == BookingStatus.pending
    assert booking.owner_ref == "customer:cust-1"
    assert booking.total_cents == CIVIC_INTERIOR_CENTS
    assert booking.vehicle_size == VehicleSize.sedan
    assert booking.service_zip == "94105"
    assert booking.pricing_catalog_version == "v1"
    hold = gateway.hold(booking.payment_reference)
    assert hold.status == HoldStatus.authorized
    assert hold.authorized_cents == CIVIC_INTERIOR_CENTS
    assert notifier.events == [("booking.created", booking.booking_id)]

    history = await controller.history(booking.booking_id, CUSTOMER)
    assert len(history) == 1
    assert history[0].from_status is None
    assert history[0].to_status == BookingStatus.pending


@pytest.mark.anyio
async def test_declined_card_creates_nothing(controller, gateway, notifier):
    with pytest.raises(PaymentRequired) as excinfo:
        await controller.create(booking_request(payment_method="pm_card_chargeDeclined"), CUSTOMER)

    assert excinfo.value.status_code == 402
    assert excinfo.value.errors == [{"reason": "GatewayDeclined"}]
    assert excinfo.value.retryable is False
    assert "No booking was created" in excinfo.value.detail
    assert await controller.list_for_customer(CUSTOMER) == []
    assert notifier.events == []


@pytest.mark.anyio
async def test_gateway_outage_on_create_is_retryable(controller, gateway):
    gateway.fail_next("authorize", GatewayUnavailable(detail="Payment processor timed out."))

    with pytest.raises(PaymentRequired) as excinfo:
        await controller.create(booking_request(), CUSTOMER)

    assert excinfo.value.retryable is True
    assert await controller.list_for_customer(CUSTOMER) == []


@pytest.mark.anyio
async def test_stale_quote_is_rejected_before_payment(controller, gateway):
    with pytest.raises(StaleQuote) as excinfo:
        await controller.create(booking_request(quoted_total_cents=15000), CUSTOMER)

    assert excinfo.value.errors == [{"quoted_total_cents": 15000, "total_cents": CIVIC_INTERIOR_CENTS}]
    assert gateway.calls_for("authorize") == []


@pytest.mark.anyio
async def test_matching_quote_is_accepted(controller):
    booking = await controller.create(booking_request(quoted_total_cents=CIVIC_INTERIOR_CENTS), CUSTOMER)

    assert booking.total_cents == CIVIC_INTERIOR_CENTS


@pytest.mark.anyio
async def test_size_below_floor_is_rejected_before_payment(controller, gateway):
    request = booking_request(vehicle=Vehicle(make="Ford", model="F-150"), vehicle_size=VehicleSize.sedan)

    with pytest.raises(VehicleSizeBelowFloor):
        await controller.create(request, CUSTOMER)

    assert gateway.calls_for("authorize") == []


@pytest.mark.anyio
async def test_retry_with_same_idempotency_key_returns_same_booking(controller, gateway):
    first = await controller.create(booking_request(), CUSTOMER, idempotency_key="idem-1")
    second = await controller.create(booking_request(), CUSTOMER, idempotency_key="idem-1")
    other = await controller.create(booking_request(), CUSTOMER, idempotency_key="idem-2")

    assert second.booking_id == first.booking_id
    assert other.booking_id != first.booking_id
    assert len(gateway.calls_for("authorize")) == 2
    assert len(await controller.list_for_customer(CUSTOMER)) == 2


@pytest.mark.anyio
async def test_racing_retry_reuses_existing_hold_without_voiding(make_controller, gateway):
    store = MissedLookupStore()
    controller = make_controller(store=store)
    first = await controller.create(booking_request(), CUSTOMER, idempotency_key="idem-race")

    store.miss_next_lookup = True
    second = await controller.create(booking_request(), CUSTOMER, idempotency_key="idem-race")

    assert second.booking_id == first.booking_id
    assert second.payment_reference == first.payment_reference
    assert gateway.calls_for("void") == []
    assert gateway.hold(first.payment_reference).status == HoldStatus.authorized


@pytest.mark.anyio
async def test_failed_insert_releases_the_hold(make_controller, gateway, notifier):
    controller = make_controller(store=FailingInsertStore())

    with pytest.raises(RuntimeError):
        await controller.create(booking_request(), CUSTOMER)

    (void_call,) = gateway.calls_for("void")
    assert gateway.hold(void_call.external_ref).status == HoldStatus.voided
    assert notifier.events == []


@pytest.mark.anyio
async def test_guest_booking_is_owned_by_email(controller):
    booking = await controller.create(guest_booking_request(), GUEST)

    assert booking.customer_id is None
    assert booking.guest.email == "guest@example.com"
    assert booking.owner_ref == "guest:guest@example.com"
    assert (await controller.get(booking.booking_id, Caller(CallerRole.guest, "GUEST@example.com"))).booking_id == (
        booking.booking_id
    )


@pytest.mark.anyio
async def test_create_rejects_mismatched_owners(controller, gateway):
    with pytest.raises(BookingValidationError):
        await controller.create(booking_request(), GUEST)
    with pytest.raises(NotAuthorized):
        await controller.create(guest_booking_request(), Caller(CallerRole.guest, "someone@example.com"))
    with pytest.raises(BookingValidationError):
        await controller.create(guest_booking_request(), CUSTOMER)
    with pytest.raises(NotAuthorized):
        await controller.create(booking_request(), WORKER)

    assert gateway.calls == []


@pytest.mark.anyio
async def test_notifier_failure_does_not_undo_booking(make_controller):
    controller = make_controller(notifier=RecordingNotifier(fail=True))

    booking = await controller.create(booking_request(), CUSTOMER)

    assert (await controller.get(booking.booking_id, CUSTOMER)).status == BookingStatus.pending


# Claim, start, complete


@pytest.mark.anyio
async def test_full_flow_captures_total_once(controller, gateway, notifier, clock):
    booking = await controller.create(booking_request(), CUSTOMER)
    clock.advance(minutes=10)
    await controller.claim(booking.booking_id, WORKER)
    clock.advance(hours=1)
    started = await controller.start(booking.booking_id, WORKER)
    assert started.started_at == clock.now
    clock.advance(hours=2)

    completed = await controller.complete(booking.booking_id, WORKER)

    assert completed.status == BookingStatus.completed
    assert completed.captured_cents == CIVIC_INTERIOR_CENTS
    assert completed.completed_at == clock.now
    assert gateway.hold(booking.payment_reference).status == HoldStatus.captured
    assert ("booking.completed", booking.booking_id) in notifier.events

    with pytest.raises(AlreadyTerminal):
        await controller.complete(booking.booking_id, WORKER)
    assert len(gateway.calls_for("capture")) == 1

    history = await controller.history(booking.booking_id, CUSTOMER)
    assert [record.to_status for record in history] == [
        BookingStatus.pending,
        BookingStatus.assigned,
        BookingStatus.in_progress,
        BookingStatus.completed,
    ]
    assert history[-1].amount_cents == CIVIC_INTERIOR_CENTS


@pytest.mark.anyio
async def test_failed_capture_leaves_booking_in_progress(controller, gateway):
    booking = await _in_progress(controller)
    gateway.fail_next("capture", GatewayUnavailable(detail="Payment processor timed out."))

    with pytest.raises(GatewayUnavailable):
        await controller.complete(booking.booking_id, WORKER)

    assert (await controller.get(booking.booking_id, WORKER)).status == BookingStatus.in_progress
    completed = await controller.complete(booking.booking_id, WORKER)
    assert completed.status == BookingStatus.completed


@pytest.mark.anyio
async def test_only_assigned_worker_moves_the_job(controller):
    booking = await _assigned(controller)

    with pytest.raises(NotAuthorized):
        await controller.start(booking.booking_id, OTHER_WORKER)
    with pytest.raises(NotAuthorized):
        await controller.start(booking.booking_id, CUSTOMER)
    with pytest.raises(InvalidTransition):
        await controller.complete(booking.booking_id, WORKER)
    with pytest.raises(NotAuthorized):
        await controller.claim(booking.booking_id, CUSTOMER)


@pytest.mark.anyio
async def test_lost_write_after_capture_reports_stale_status(make_controller, gateway):
    store = LosingStore()
    controller = make_controller(store=store)
    booking = await _in_progress(controller)

    store.lose_next = True
    with pytest.raises(StaleStatus) as excinfo:
        await controller.complete(booking.booking_id, WORKER)

    assert "went through" in excinfo.value.detail
    assert gateway.hold(booking.payment_reference).status == HoldStatus.captured
    assert (await controller.get(booking.booking_id, WORKER)).status == BookingStatus.in_progress

    completed = await controller.complete(booking.booking_id, WORKER)

    assert completed.status == BookingStatus.completed
    assert completed.captured_cents == CIVIC_INTERIOR_CENTS
    assert gateway.hold(booking.payment_reference).capture_count == 1


@pytest.mark.anyio
async def test_complete_after_timed_out_capture_uses_existing_capture(controller, gateway):
    booking = await _in_progress(controller)
    # The processor captured, but the response never reached the controller.
    await gateway.capture(
        booking.payment_reference,
        owner_ref=booking.owner_ref,
        booking_id=booking.booking_id,
        amount_cents=booking.total_cents,
    )

    completed = await controller.complete(booking.booking_id, WORKER)

    assert completed.status == BookingStatus.completed
    assert completed.captured_cents == CIVIC_INTERIOR_CENTS
    assert gateway.hold(booking.payment_reference).capture_count == 1


@pytest.mark.anyio
async def test_lost_write_without_payment_asks_to_retry(make_controller, gateway):
    store = LosingStore()
    controller = make_controller(store=store)
    booking = await _assigned(controller)

    store.lose_next = True
    with pytest.raises(StaleStatus) as excinfo:
        await controller.start(booking.booking_id, WORKER)

    assert "nothing was changed" in excinfo.value.detail


# Cancellation


@pytest.mark.anyio
async def test_cancel_pending_voids_hold_without_fee(controller, gateway, notifier):
    booking = await controller.create(booking_request(), CUSTOMER)

    cancelled = await controller.cancel(booking.booking_id, CUSTOMER, reason="changed plans")

    assert cancelled.status == BookingStatus.cancelled
    assert cancelled.cancellation_fee_cents == 0
    assert cancelled.cancel_reason == "changed plans"
    assert gateway.hold(booking.payment_reference).status == HoldStatus.voided
    assert notifier.events[-1] == ("booking.cancelled", booking.booking_id)


@pytest.mark.parametrize(
    ("elapsed", "expected_fee"),
    [
        (timedelta(minutes=1, seconds=59), 0),
        (timedelta(minutes=2), 500),
        (timedelta(minutes=5), 500),
        (timedelta(minutes=5, seconds=1), 1000),
    ],
)
@pytest.mark.anyio
async def test_cancel_after_acceptance_charges_tiered_fee(controller, gateway, clock, elapsed, expected_fee):
    booking = await _assigned(controller)
    clock.advance(seconds=elapsed.total_seconds())

    cancelled = await controller.cancel(booking.booking_id, CUSTOMER)

    assert cancelled.cancellation_fee_cents == expected_fee
    assert cancelled.captured_cents == expected_fee
    hold = gateway.hold(booking.payment_reference)
    if expected_fee:
        assert hold.status == HoldStatus.captured
        assert hold.captured_cents == expected_fee
    else:
        assert hold.status == HoldStatus.voided


@pytest.mark.anyio
async def test_cancellation_fee_never_exceeds_total(make_controller, gateway, clock):
    controller = make_controller(
        fee_schedule=CancellationFeeSchedule.from_config([{"up_to_minutes": None, "fee_cents": 50000}])
    )
    booking = await _assigned(controller)
    clock.advance(minutes=30)

    cancelled = await controller.cancel(booking.booking_id, CUSTOMER)

    assert cancelled.cancellation_fee_cents == CIVIC_INTERIOR_CENTS
    assert gateway.hold(booking.payment_reference).captured_cents == CIVIC_INTERIOR_CENTS


@pytest.mark.anyio
async def test_claim_between_payment_and_cancel_write_keeps_hold(make_controller, gateway):
    store = InterleavingStore()
    controller = make_controller(store=store)
    booking = await controller.create(booking_request(), CUSTOMER)

    async def worker_claims() -> None:
        await controller.claim(booking.booking_id, WORKER)

    store.before_next_write = worker_claims
    with pytest.raises(StaleStatus) as excinfo:
        await controller.cancel(booking.booking_id, CUSTOMER)

    assert "nothing was changed" in excinfo.value.detail
    current = await controller.get(booking.booking_id, CUSTOMER)
    assert current.status == BookingStatus.assigned
    assert current.assigned_worker_id == WORKER.id
    assert gateway.hold(booking.payment_reference).status == HoldStatus.authorized
    assert gateway.calls_for("void") == []


@pytest.mark.anyio
async def test_claim_between_payment_and_admin_cancel_write_keeps_hold(make_controller, gateway):
    store = InterleavingStore()
    controller = make_controller(store=store)
    booking = await controller.create(booking_request(), CUSTOMER)

    async def worker_claims() -> None:
        await controller.claim(booking.booking_id, WORKER)

    store.before_next_write = worker_claims
    with pytest.raises(StaleStatus):
        await controller.admin_cancel(booking.booking_id, ADMIN)

    assert (await controller.get(booking.booking_id, ADMIN)).status == BookingStatus.assigned
    assert gateway.hold(booking.payment_reference).status == HoldStatus.authorized


@pytest.mark.anyio
async def test_failed_release_after_cancel_keeps_booking_cancelled(controller, gateway, notifier):
    booking = await controller.create(booking_request(), CUSTOMER)
    gateway.fail_next("void", GatewayUnavailable(detail="Payment processor timed out."))

    cancelled = await controller.cancel(booking.booking_id, CUSTOMER)

    assert cancelled.status == BookingStatus.cancelled
    assert (await controller.get(booking.booking_id, CUSTOMER)).status == BookingStatus.cancelled
    assert gateway.hold(booking.payment_reference).status == HoldStatus.authorized
    assert notifier.events[-1] == ("booking.cancelled", booking.booking_id)


@pytest.mark.anyio
async def test_cancel_rejected_once_work_started(controller, gateway):
    booking = await _in_progress(controller)

    with pytest.raises(InvalidTransition):
        await controller.cancel(booking.booking_id, CUSTOMER)

    assert gateway.calls_for("void") == []
    assert gateway.calls_for("capture") == []


@pytest.mark.anyio
async def test_cancel_requires_owner_and_open_booking(controller):
    booking = await controller.create(booking_request(), CUSTOMER)

    with pytest.raises(NotAuthorized):
        await controller.cancel(booking.booking_id, OTHER_CUSTOMER)
    with pytest.raises(NotAuthorized):
        await controller.cancel(booking.booking_id, WORKER)

    await controller.cancel(booking.booking_id, CUSTOMER)
    with pytest.raises(AlreadyTerminal):
        await controller.cancel(booking.booking_id, CUSTOMER)


# Worker decline and admin overrides


@pytest.mark.anyio
async def test_declined_assignment_returns_job_to_pool(controller):
    booking = await _assigned(controller)

    with pytest.raises(NotAuthorized):
        await controller.decline_assignment(booking.booking_id, OTHER_WORKER)
    released = await controller.decline_assignment(booking.booking_id, WORKER)

    assert released.status == BookingStatus.pending
    assert released.assigned_worker_id is None
    assert released.accepted_at is None
    reclaimed = await controller.claim(booking.booking_id, OTHER_WORKER)
    assert reclaimed.assigned_worker_id == OTHER_WORKER.id


@pytest.mark.anyio
async def test_admin_assigns_pending_booking(controller):
    booking = await controller.create(booking_request(), CUSTOMER)

    with pytest.raises(NotAuthorized):
        await controller.admin_assign(booking.booking_id, WORKER.id, CUSTOMER)
    assigned = await controller.admin_assign(booking.booking_id, WORKER.id, ADMIN)

    assert assigned.status == BookingStatus.assigned
    assert assigned.assigned_worker_id == WORKER.id
    history = await controller.history(booking.booking_id, ADMIN)
    assert history[-1].actor_role == "admin"
    assert history[-1].actor_id == ADMIN.id
    assert history[-1].reason == "admin_assign"


@pytest.mark.anyio
async def test_admin_cancel_voids_without_fee_from_any_open_status(controller, gateway, clock):
    booking = await _in_progress(controller)
    clock.advance(hours=1)

    with pytest.raises(NotAuthorized):
        await controller.admin_cancel(booking.booking_id, WORKER)
    cancelled = await controller.admin_cancel(booking.booking_id, ADMIN, reason="weather")

    assert cancelled.status == BookingStatus.cancelled
    assert cancelled.cancellation_fee_cents == 0
    assert cancelled.cancel_reason == "weather"
    assert gateway.hold(booking.payment_reference).status == HoldStatus.voided
    with pytest.raises(AlreadyTerminal):
        await controller.admin_cancel(booking.booking_id, ADMIN)


# Reads


@pytest.mark.anyio
async def test_get_enforces_visibility(controller):
    booking = await controller.create(booking_request(), CUSTOMER)

    assert (await controller.get(booking.booking_id, CUSTOMER)).booking_id == booking.booking_id
    assert (await controller.get(booking.booking_id, OTHER_WORKER)).booking_id == booking.booking_id
    assert (await controller.get(booking.booking_id, ADMIN)).booking_id == booking.booking_id
    with pytest.raises(NotAuthorized):
        await controller.get(booking.booking_id, OTHER_CUSTOMER)

    await controller.claim(booking.booking_id, WORKER)
    with pytest.raises(NotAuthorized):
        await controller.get(booking.booking_id, OTHER_WORKER)
    with pytest.raises(NotAuthorized):
        await controller.history(booking.booking_id, OTHER_WORKER)
    with pytest.raises(BookingNotFound):
        await controller.get("00000000-0000-0000-0000-000000000000", ADMIN)


@pytest.mark.anyio
async def test_available_jobs_filter_by_zip(controller):
    near = await controller.create(booking_request(), CUSTOMER)
    await controller.create(
        booking_request(service_address=ServiceAddress(line1="9 Elm St", postal_code="10001")),
        OTHER_CUSTOMER,
    )
    claimed = await controller.create(booking_request(), CUSTOMER)
    await controller.claim(claimed.booking_id, WORKER)

    nearby = await controller.list_available(OTHER_WORKER, service_zips=["94105"])
    everywhere = await controller.list_available(OTHER_WORKER)

    assert [booking.booking_id for booking in nearby] == [near.booking_id]
    assert len(everywhere) == 2
    with pytest.raises(NotAuthorized):
        await controller.list_available(CUSTOMER)


@pytest.mark.anyio
async def test_lists_are_scoped_to_caller(controller):
    mine = await controller.create(booking_request(), CUSTOMER)
    await controller.create(booking_request(), OTHER_CUSTOMER)
    await controller.claim(mine.booking_id, WORKER)

    assert [booking.booking_id for booking in await controller.list_for_customer(CUSTOMER)] == [mine.booking_id]
    assert [booking.booking_id for booking in await controller.list_for_worker(WORKER)] == [mine.booking_id]
    assert await controller.list_for_worker(OTHER_WORKER) == []
    with pytest.raises(NotAuthorized):
        await controller.list_for_worker(CUSTOMER)
    with pytest.raises(AlreadyClaimed):
        await controller.claim(mine.booking_id, OTHER_WORKER)
