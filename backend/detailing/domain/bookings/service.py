"""Booking lifecycle: intents from customers, detailers and admins.

Each intent reads the booking, validates the transition, performs the payment
call it needs, and only then writes the new status with a conditional update
on the status it read. A payment failure leaves the booking untouched.
Releasing a hold is the exception: it follows the cancelled write, and a
failed release is logged rather than raised.
Nothing here retries on its own; retry decisions belong to the caller.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from detailing.domain.bookings.assignment import AssignmentCoordinator
from detailing.domain.bookings.cancellation_policy import CancellationFeeSchedule
from detailing.domain.bookings.schemas import (
    BookingSnapshot,
    Caller,
    CallerRole,
    CreateBookingRequest,
    TransitionRecord,
    owner_ref_for,
)
from detailing.domain.bookings.statuses import (
    BookingStatus,
    assert_valid_booking_transition,
    is_terminal,
)
from detailing.domain.bookings.store import BookingStore
from detailing.domain.errors import (
    AdjustmentUnsupported,
    AlreadyCaptured,
    AlreadyClaimed,
    AlreadyTerminal,
    BookingNotFound,
    BookingValidationError,
    ConflictError,
    InvalidAdjustment,
    NotAuthorized,
    PaymentError,
    PaymentRequired,
    StaleQuote,
    StaleStatus,
)
from detailing.domain.notifications.service import BookingEvent, BookingNotifier
from detailing.domain.payments.gateway import PaymentGateway
from detailing.domain.pricing import resolver
from detailing.domain.pricing.catalog import PricingCatalog
from detailing.domain.pricing.coupons import CouponLookup, StaticCouponLookup, normalize_coupon_code
from detailing.domain.pricing.models import Quote, QuoteRequest
from detailing.domain.pricing.tax import TaxQuoter
from detailing.domain.pricing.vehicle_size import resolve_vehicle_size
from detailing.infra.metrics import metrics

logger = logging.getLogger(__name__)

BOOKING_ID_NAMESPACE = uuid.UUID("6f1c2d4e-9a57-4c3b-8e21-5d0f7b9a3c10")

OWNER_ROLES = (CallerRole.customer, CallerRole.guest)
CANCELLABLE_STATUSES = frozenset({BookingStatus.pending, BookingStatus.assigned})
ADJUSTABLE_STATUSES = frozenset({BookingStatus.assigned, BookingStatus.in_progress})

ADJUSTMENT_CLEARED = {
    "adjustment_requested": False,
    "adjustment_total_cents": None,
    "adjustment_reason": None,
}


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class BookingLifecycleController:
    def __init__(
        self,
        *,
        store: BookingStore,
        gateway: PaymentGateway,
        catalog: PricingCatalog,
        tax_quoter: TaxQuoter,
        notifier: BookingNotifier,
        fee_schedule: CancellationFeeSchedule,
        decline_fee_cents: int,
        min_amount_cents: int,
        currency: str,
        coupons: CouponLookup | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.catalog = catalog
        self.tax_quoter = tax_quoter
        self.notifier = notifier
        self.fee_schedule = fee_schedule
        self.decline_fee_cents = decline_fee_cents
        self.min_amount_cents = min_amount_cents
        self.currency = currency
        self.coupons = coupons or StaticCouponLookup()
        self.clock = clock
        self.coordinator = AssignmentCoordinator(store, clock)

    # Pricing

    async def quote(self, request: QuoteRequest) -> Quote:
        inferred, effective = resolve_vehicle_size(
            request.vehicle.make, request.vehicle.model, request.vehicle_size
        )
        price = resolver.price(self.catalog, request.service_type, effective, request.add_ons, request.condition)
        coupon_code, discount_cents = await self._discount(request.coupon_code, price.total_cents)
        subtotal_cents = price.total_cents - discount_cents
        tax = await self.tax_quoter.quote(subtotal_cents, request.service_address)
        return Quote(
            service_type=request.service_type,
            inferred_vehicle_size=inferred,
            vehicle_size=effective,
            add_ons=sorted(set(request.add_ons)),
            condition=request.condition,
            price=price,
            coupon_code=coupon_code,
            discount_cents=discount_cents,
            subtotal_cents=subtotal_cents,
            tax_cents=tax.tax_cents,
            total_cents=tax.total_cents,
            currency=self.currency,
            pricing_catalog_id=self.catalog.pricing_catalog_id,
            pricing_catalog_version=self.catalog.pricing_catalog_version,
            pricing_catalog_hash=self.catalog.catalog_hash,
        )

    # Customer intents

    async def create(
        self,
        request: CreateBookingRequest,
        caller: Caller,
        *,
        idempotency_key: str | None = None,
    ) -> BookingSnapshot:
        customer_id, owner_ref = self._resolve_owner(request, caller)
        if idempotency_key:
            existing = await self.store.get_by_idempotency_key(owner_ref, idempotency_key)
            if existing is not None:
                logger.info("booking_create_replayed", extra={"extra": {"booking_id": existing.booking_id}})
                return existing

        quote = await self.quote(request)
        if request.quoted_total_cents is not None and request.quoted_total_cents != quote.total_cents:
            raise StaleQuote(
                detail=(
                    f"Price changed to {quote.total_cents}; no payment was taken and no booking was created. "
                    "Review the new price and retry."
                ),
                errors=[{"quoted_total_cents": request.quoted_total_cents, "total_cents": quote.total_cents}],
            )

        booking_id = self._new_booking_id(owner_ref, idempotency_key)
        try:
            hold = await self.gateway.authorize(
                amount_cents=quote.total_cents,
                payment_method=request.payment_method,
                owner_ref=owner_ref,
                booking_id=booking_id,
                idempotency_key=idempotency_key,
            )
        except PaymentError as exc:
            metrics.record_booking("authorization_failed")
            raise PaymentRequired(
                detail=f"{exc.detail} No booking was created.",
                errors=[{"reason": type(exc).__name__}],
                retryable=exc.retryable,
            ) from exc

        now = self.clock()
        snapshot = BookingSnapshot(
            booking_id=booking_id,
            status=BookingStatus.pending,
            customer_id=customer_id,
            guest=request.guest if customer_id is None else None,
            owner_ref=owner_ref,
            service_type=quote.service_type,
            vehicle=request.vehicle,
            inferred_vehicle_size=quote.inferred_vehicle_size,
            vehicle_size=quote.vehicle_size,
            add_ons=quote.add_ons,
            condition=quote.condition,
            service_address=request.service_address,
            service_zip=request.service_address.postal_code if request.service_address else None,
            scheduled_at=request.scheduled_at,
            subtotal_cents=quote.subtotal_cents,
            tax_cents=quote.tax_cents,
            total_cents=quote.total_cents,
            coupon_code=quote.coupon_code,
            discount_cents=quote.discount_cents,
            currency=quote.currency,
            pricing_catalog_id=quote.pricing_catalog_id,
            pricing_catalog_version=quote.pricing_catalog_version,
            pricing_catalog_hash=quote.pricing_catalog_hash,
            payment_reference=hold.external_ref,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        transition = TransitionRecord(
            from_status=None,
            to_status=BookingStatus.pending,
            actor_role=caller.role.value,
            actor_id=caller.id,
            amount_cents=quote.total_cents,
            payment_reference=hold.external_ref,
            created_at=now,
        )
        try:
            booking = await self.store.insert(snapshot, transition)
        except ConflictError:
            if idempotency_key:
                existing = await self.store.get_by_idempotency_key(owner_ref, idempotency_key)
                if existing is not None and existing.payment_reference == hold.external_ref:
                    return existing
            await self._release_hold(hold.external_ref, owner_ref=owner_ref, booking_id=booking_id, reason="create_failed")
            raise
        except Exception:
            await self._release_hold(hold.external_ref, owner_ref=owner_ref, booking_id=booking_id, reason="create_failed")
            raise

        metrics.record_booking("created")
        logger.info(
            "booking_created",
            extra={"extra": {"booking_id": booking.booking_id, "total_cents": booking.total_cents}},
        )
        await self._notify(BookingEvent.created, booking)
        return booking

    async def approve_adjustment(self, booking_id: str, caller: Caller) -> BookingSnapshot:
        booking = await self._load(booking_id)
        self._require_owner(booking, caller)
        assert_valid_booking_transition(
            booking.status, BookingStatus.in_progress, allowed_from={BookingStatus.pending_approval}
        )
        new_total = int(booking.adjustment_total_cents or 0)
        try:
            await self.gateway.adjust_authorized_amount(
                self._payment_ref(booking),
                new_total,
                owner_ref=booking.owner_ref,
                booking_id=booking.booking_id,
            )
        except AlreadyCaptured as exc:
            raise AdjustmentUnsupported(
                detail=(
                    "Payment was already captured, so the new price cannot be applied to it. "
                    "The booking total is unchanged and still awaits approval."
                ),
            ) from exc

        now = self.clock()
        updated = await self._commit(
            booking,
            BookingStatus.in_progress,
            {
                "total_cents": new_total,
                "original_total_cents": booking.original_total_cents or booking.total_cents,
                "started_at": booking.started_at or now,
                **ADJUSTMENT_CLEARED,
            },
            caller,
            now=now,
            reason="adjustment_approved",
            amount_cents=new_total,
            payment_done="adjust",
        )
        metrics.record_booking("adjustment_approved")
        logger.info(
            "adjustment_approved",
            extra={"extra": {"booking_id": booking_id, "total_cents": new_total, "previous_cents": booking.total_cents}},
        )
        return updated

    async def decline_adjustment(self, booking_id: str, caller: Caller) -> BookingSnapshot:
        booking = await self._load(booking_id)
        self._require_owner(booking, caller)
        assert_valid_booking_transition(
            booking.status, BookingStatus.cancelled, allowed_from={BookingStatus.pending_approval}
        )
        fee_cents = min(self.decline_fee_cents, booking.total_cents)
        captured = await self._capture_fee(booking, fee_cents)

        now = self.clock()
        updated = await self._commit(
            booking,
            BookingStatus.cancelled,
            {
                "cancellation_fee_cents": fee_cents,
                "captured_cents": captured,
                "cancel_reason": "adjustment_declined",
                "cancelled_at": now,
                **ADJUSTMENT_CLEARED,
            },
            caller,
            now=now,
            reason="adjustment_declined",
            amount_cents=fee_cents,
            payment_done="capture" if fee_cents else None,
        )
        if not fee_cents:
            await self._release_booking_hold(updated, reason="adjustment_declined")
        metrics.record_booking("adjustment_declined")
        metrics.record_cancellation_fee("adjustment_declined", fee_cents)
        logger.info("adjustment_declined", extra={"extra": {"booking_id": booking_id, "fee_cents": fee_cents}})
        await self._notify(BookingEvent.cancelled, updated)
        return updated

    async def cancel(self, booking_id: str, caller: Caller, *, reason: str | None = None) -> BookingSnapshot:
        booking = await self._load(booking_id)
        self._require_owner(booking, caller)
        assert_valid_booking_transition(booking.status, BookingStatus.cancelled, allowed_from=CANCELLABLE_STATUSES)

        now = self.clock()
        decision = self.fee_schedule.fee_for(booking.accepted_at, now)
        fee_cents = min(decision.fee_cents, booking.total_cents)
        captured = await self._capture_fee(booking, fee_cents)

        updated = await self._commit(
            booking,
            BookingStatus.cancelled,
            {
                "cancellation_fee_cents": fee_cents,
                "captured_cents": captured,
                "cancel_reason": reason or "customer_cancelled",
                "cancelled_at": now,
            },
            caller,
            now=now,
            reason=reason or "customer_cancelled",
            amount_cents=fee_cents,
            payment_done="capture" if fee_cents else None,
        )
        if not fee_cents:
            await self._release_booking_hold(updated, reason="customer_cancelled")
        metrics.record_booking("cancelled")
        metrics.record_cancellation_fee(decision.tier, fee_cents)
        logger.info(
            "booking_cancelled",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "fee_cents": fee_cents,
                    "fee_tier": decision.tier,
                    "elapsed_minutes": decision.elapsed_minutes,
                }
            },
        )
        await self._notify(BookingEvent.cancelled, updated)
        return updated

    # Worker intents

    async def claim(self, booking_id: str, caller: Caller) -> BookingSnapshot:
        self._require_role(caller, CallerRole.worker)
        booking = await self._load(booking_id)
        self._ensure_claimable(booking)
        updated = await self.coordinator.claim(booking_id, caller.id)
        metrics.record_booking("claimed")
        return updated

    async def start(self, booking_id: str, caller: Caller) -> BookingSnapshot:
        booking = await self._load(booking_id)
        self._require_assignee(booking, caller)
        assert_valid_booking_transition(
            booking.status, BookingStatus.in_progress, allowed_from={BookingStatus.assigned}
        )
        now = self.clock()
        updated = await self._commit(booking, BookingStatus.in_progress, {"started_at": now}, caller, now=now)
        metrics.record_booking("started")
        logger.info("booking_started", extra={"extra": {"booking_id": booking_id}})
        return updated

    async def request_adjustment(
        self,
        booking_id: str,
        caller: Caller,
        *,
        new_total_cents: int,
        reason: str,
    ) -> BookingSnapshot:
        booking = await self._load(booking_id)
        self._require_assignee(booking, caller)
        assert_valid_booking_transition(
            booking.status, BookingStatus.pending_approval, allowed_from=ADJUSTABLE_STATUSES
        )
        cleaned_reason = (reason or "").strip()
        if not cleaned_reason:
            raise InvalidAdjustment(detail="A reason is required for a price adjustment; the booking is unchanged.")
        if new_total_cents < self.min_amount_cents:
            raise InvalidAdjustment(
                detail=f"Adjusted total must be at least {self.min_amount_cents}; the booking is unchanged.",
            )
        if new_total_cents == booking.total_cents:
            raise InvalidAdjustment(detail="Adjusted total equals the current total; the booking is unchanged.")

        now = self.clock()
        updated = await self._commit(
            booking,
            BookingStatus.pending_approval,
            {
                "adjustment_requested": True,
                "adjustment_total_cents": new_total_cents,
                "adjustment_reason": cleaned_reason,
            },
            caller,
            now=now,
            reason=cleaned_reason,
            amount_cents=new_total_cents,
        )
        metrics.record_booking("adjustment_requested")
        logger.info(
            "adjustment_requested",
            extra={"extra": {"booking_id": booking_id, "new_total_cents": new_total_cents}},
        )
        return updated

    async def complete(self, booking_id: str, caller: Caller) -> BookingSnapshot:
        booking = await self._load(booking_id)
        self._require_assignee(booking, caller)
        assert_valid_booking_transition(
            booking.status, BookingStatus.completed, allowed_from={BookingStatus.in_progress}
        )
        result = await self.gateway.capture(
            self._payment_ref(booking),
            owner_ref=booking.owner_ref,
            booking_id=booking.booking_id,
            amount_cents=booking.total_cents,
        )
        now = self.clock()
        updated = await self._commit(
            booking,
            BookingStatus.completed,
            {"captured_cents": result.captured_cents, "completed_at": now},
            caller,
            now=now,
            amount_cents=result.captured_cents,
            payment_done="capture",
        )
        metrics.record_booking("completed")
        logger.info(
            "booking_completed",
            extra={"extra": {"booking_id": booking_id, "captured_cents": result.captured_cents}},
        )
        await self._notify(BookingEvent.completed, updated)
        return updated

    async def decline_assignment(self, booking_id: str, caller: Caller) -> BookingSnapshot:
        booking = await self._load(booking_id)
        self._require_assignee(booking, caller)
        assert_valid_booking_transition(booking.status, BookingStatus.pending, allowed_from={BookingStatus.assigned})
        now = self.clock()
        updated = await self._commit(
            booking,
            BookingStatus.pending,
            {"assigned_worker_id": None, "assigned_at": None, "accepted_at": None},
            caller,
            now=now,
            reason="assignment_declined",
        )
        metrics.record_booking("assignment_declined")
        logger.info("assignment_declined", extra={"extra": {"booking_id": booking_id, "worker_id": caller.id}})
        return updated

    # Admin overrides

    async def admin_assign(self, booking_id: str, worker_id: str, caller: Caller) -> BookingSnapshot:
        self._require_role(caller, CallerRole.admin)
        booking = await self._load(booking_id)
        self._ensure_claimable(booking)
        updated = await self.coordinator.claim(
            booking_id,
            worker_id,
            actor_role=caller.role.value,
            actor_id=caller.id,
            reason="admin_assign",
        )
        metrics.record_booking("admin_assigned")
        return updated

    async def admin_cancel(self, booking_id: str, caller: Caller, *, reason: str | None = None) -> BookingSnapshot:
        self._require_role(caller, CallerRole.admin)
        booking = await self._load(booking_id)
        assert_valid_booking_transition(booking.status, BookingStatus.cancelled)
        self._payment_ref(booking)

        now = self.clock()
        updated = await self._commit(
            booking,
            BookingStatus.cancelled,
            {
                "cancellation_fee_cents": 0,
                "captured_cents": 0,
                "cancel_reason": reason or "admin_cancelled",
                "cancelled_at": now,
                **ADJUSTMENT_CLEARED,
            },
            caller,
            now=now,
            reason=reason or "admin_cancelled",
            amount_cents=0,
        )
        await self._release_booking_hold(updated, reason="admin_cancelled")
        metrics.record_booking("admin_cancelled")
        logger.info("booking_admin_cancelled", extra={"extra": {"booking_id": booking_id, "admin": caller.id}})
        await self._notify(BookingEvent.cancelled, updated)
        return updated

    # Reads

    async def get(self, booking_id: str, caller: Caller) -> BookingSnapshot:
        booking = await self._load(booking_id)
        if caller.role == CallerRole.admin:
            return booking
        if caller.role in OWNER_ROLES and caller.owner_ref == booking.owner_ref:
            return booking
        if caller.role == CallerRole.worker and (
            booking.assigned_worker_id == caller.id or booking.status == BookingStatus.pending
        ):
            return booking
        raise NotAuthorized(detail="You cannot view this booking.")

    async def list_available(
        self, caller: Caller, *, service_zips: Iterable[str] | None = None
    ) -> list[BookingSnapshot]:
        self._require_role(caller, CallerRole.worker, CallerRole.admin)
        return await self.store.list_by_status(BookingStatus.pending, service_zips=service_zips)

    async def list_for_customer(self, caller: Caller) -> list[BookingSnapshot]:
        self._require_role(caller, *OWNER_ROLES)
        return await self.store.list_for_owner(caller.owner_ref)

    async def list_for_worker(self, caller: Caller) -> list[BookingSnapshot]:
        self._require_role(caller, CallerRole.worker)
        return await self.store.list_for_worker(caller.id)

    async def history(self, booking_id: str, caller: Caller) -> list[TransitionRecord]:
        await self.get(booking_id, caller)
        return await self.store.transitions(booking_id)

    # Helpers

    def _resolve_owner(self, request: CreateBookingRequest, caller: Caller) -> tuple[str | None, str]:
        if caller.role == CallerRole.customer:
            if request.guest is not None:
                raise BookingValidationError(
                    detail="Signed-in customers book without guest contact details; nothing was charged.",
                )
            return caller.id, owner_ref_for(customer_id=caller.id, guest_email=None)
        if caller.role == CallerRole.guest:
            if request.guest is None:
                raise BookingValidationError(
                    detail="Guest bookings need a name, email and phone; nothing was charged.",
                    errors=[{"field": "guest"}],
                )
            if str(request.guest.email).strip().lower() != caller.id.strip().lower():
                raise NotAuthorized(detail="Guest contact does not match the caller; nothing was charged.")
            return None, owner_ref_for(customer_id=None, guest_email=str(request.guest.email))
        raise NotAuthorized(detail="Only customers and guests can create bookings; nothing was charged.")

    async def _discount(self, raw_code: str | None, amount_cents: int) -> tuple[str | None, int]:
        code = normalize_coupon_code(raw_code)
        if not code:
            return None, 0
        coupon = await self.coupons.resolve(code)
        discount_cents = coupon.discount_cents(amount_cents, floor_cents=self.min_amount_cents)
        logger.info("coupon_applied", extra={"extra": {"coupon_code": code, "discount_cents": discount_cents}})
        return code, discount_cents

    @staticmethod
    def _new_booking_id(owner_ref: str, idempotency_key: str | None) -> str:
        # Retries with the same key map to the same booking and payment hold.
        if idempotency_key:
            return str(uuid.uuid5(BOOKING_ID_NAMESPACE, f"{owner_ref}|{idempotency_key}"))
        return str(uuid.uuid4())

    async def _release_hold(self, external_ref: str, *, owner_ref: str, booking_id: str, reason: str) -> None:
        try:
            await self.gateway.void(external_ref, owner_ref=owner_ref, booking_id=booking_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "payment_compensation_failed",
                extra={
                    "extra": {
                        "booking_id": booking_id,
                        "external_ref": external_ref,
                        "reason": reason,
                        "error": type(exc).__name__,
                    }
                },
            )
            return
        logger.info("payment_hold_released", extra={"extra": {"booking_id": booking_id, "reason": reason}})

    async def _release_booking_hold(self, booking: BookingSnapshot, *, reason: str) -> None:
        # Only after the cancelled status is committed.
        await self._release_hold(
            self._payment_ref(booking), owner_ref=booking.owner_ref, booking_id=booking.booking_id, reason=reason
        )

    async def _capture_fee(self, booking: BookingSnapshot, fee_cents: int) -> int:
        external_ref = self._payment_ref(booking)
        if fee_cents <= 0:
            return 0
        result = await self.gateway.capture(
            external_ref,
            owner_ref=booking.owner_ref,
            booking_id=booking.booking_id,
            amount_cents=fee_cents,
        )
        return result.captured_cents

    async def _commit(
        self,
        booking: BookingSnapshot,
        target: BookingStatus,
        changes: dict[str, Any],
        caller: Caller,
        *,
        now: datetime,
        reason: str | None = None,
        amount_cents: int | None = None,
        payment_done: str | None = None,
    ) -> BookingSnapshot:
        expected_worker_id = booking.assigned_worker_id if caller.role == CallerRole.worker else None
        updated = await self.store.compare_and_set(
            booking.booking_id,
            booking.status,
            {"status": target, **changes},
            TransitionRecord(
                from_status=booking.status,
                to_status=target,
                actor_role=caller.role.value,
                actor_id=caller.id,
                reason=reason,
                amount_cents=amount_cents,
                payment_reference=booking.payment_reference,
                created_at=now,
            ),
            expected_worker_id=expected_worker_id,
        )
        if updated is not None:
            return updated
        if payment_done:
            logger.error(
                f"payment_{payment_done}_status_stale",
                extra={"extra": {"booking_id": booking.booking_id, "expected_status": booking.status.value}},
            )
            raise StaleStatus(
                detail=(
                    f"The payment {payment_done} went through, but the booking changed concurrently and was not "
                    "updated. The payment processor is authoritative; re-fetch the booking."
                ),
            )
        raise StaleStatus(detail="The booking changed concurrently; nothing was changed. Re-fetch and retry.")

    async def _notify(self, event: BookingEvent, booking: BookingSnapshot) -> None:
        try:
            await self.notifier.notify(event, booking)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification_failed",
                extra={"extra": {"booking_id": booking.booking_id, "event": event.value, "error": type(exc).__name__}},
            )

    async def _load(self, booking_id: str) -> BookingSnapshot:
        booking = await self.store.get(booking_id)
        if booking is None:
            raise BookingNotFound(detail=f"Booking {booking_id} was not found.")
        return booking

    @staticmethod
    def _payment_ref(booking: BookingSnapshot) -> str:
        if not booking.payment_reference:
            raise PaymentRequired(detail="Booking has no payment authorization; nothing was charged.")
        return booking.payment_reference

    @staticmethod
    def _ensure_claimable(booking: BookingSnapshot) -> None:
        if is_terminal(booking.status):
            raise AlreadyTerminal(detail=f"Booking is already {booking.status.value}; nothing was changed.")
        if booking.status != BookingStatus.pending:
            raise AlreadyClaimed(detail="This job was already taken by another detailer; you are not assigned.")

    @staticmethod
    def _require_role(caller: Caller, *roles: CallerRole) -> None:
        if caller.role not in roles:
            raise NotAuthorized(detail=f"Role '{caller.role.value}' cannot perform this action; nothing was changed.")

    @staticmethod
    def _require_owner(booking: BookingSnapshot, caller: Caller) -> None:
        if caller.role not in OWNER_ROLES or caller.owner_ref != booking.owner_ref:
            raise NotAuthorized(detail="Only the booking's customer can do this; nothing was changed.")

    @staticmethod
    def _require_assignee(booking: BookingSnapshot, caller: Caller) -> None:
        if caller.role != CallerRole.worker or booking.assigned_worker_id != caller.id:
            raise NotAuthorized(detail="Only the assigned detailer can do this; nothing was changed.")
