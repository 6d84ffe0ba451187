from typing import List

from fastapi import APIRouter, Depends, Header, Query, status

from detailing.api.identity import get_caller, require_admin
from detailing.dependencies import get_controller
from detailing.domain.bookings import schemas as booking_schemas
from detailing.domain.bookings.schemas import Caller
from detailing.domain.bookings.service import BookingLifecycleController
from detailing.domain.pricing.models import Quote, QuoteRequest

router = APIRouter()


def _respond(booking: booking_schemas.BookingSnapshot) -> booking_schemas.BookingResponse:
    return booking_schemas.BookingResponse.from_snapshot(booking)


@router.post("/v1/quotes", response_model=Quote)
async def create_quote(
    request: QuoteRequest,
    controller: BookingLifecycleController = Depends(get_controller),
) -> Quote:
    return await controller.quote(request)


@router.post("/v1/bookings", response_model=booking_schemas.BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: booking_schemas.CreateBookingRequest,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key", max_length=255),
) -> booking_schemas.BookingResponse:
    booking = await controller.create(request, caller, idempotency_key=idempotency_key)
    return _respond(booking)


@router.get("/v1/bookings", response_model=List[booking_schemas.BookingResponse])
async def list_bookings(
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> List[booking_schemas.BookingResponse]:
    if caller.role == booking_schemas.CallerRole.worker:
        bookings = await controller.list_for_worker(caller)
    else:
        bookings = await controller.list_for_customer(caller)
    return [_respond(booking) for booking in bookings]


@router.get("/v1/jobs/available", response_model=List[booking_schemas.BookingResponse])
async def list_available_jobs(
    service_zip: List[str] | None = Query(None, alias="zip"),
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> List[booking_schemas.BookingResponse]:
    bookings = await controller.list_available(caller, service_zips=service_zip)
    return [_respond(booking) for booking in bookings]


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingResponse)
async def get_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    return _respond(await controller.get(booking_id, caller))


@router.get("/v1/bookings/{booking_id}/transitions", response_model=List[booking_schemas.TransitionResponse])
async def get_booking_transitions(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> List[booking_schemas.TransitionResponse]:
    transitions = await controller.history(booking_id, caller)
    return [booking_schemas.TransitionResponse.model_validate(item) for item in transitions]


@router.post("/v1/bookings/{booking_id}/claim", response_model=booking_schemas.BookingResponse)
async def claim_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    return _respond(await controller.claim(booking_id, caller))


@router.post("/v1/bookings/{booking_id}/start", response_model=booking_schemas.BookingResponse)
async def start_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    return _respond(await controller.start(booking_id, caller))


@router.post("/v1/bookings/{booking_id}/adjustment", response_model=booking_schemas.BookingResponse)
async def request_adjustment(
    booking_id: str,
    request: booking_schemas.AdjustmentRequest,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    booking = await controller.request_adjustment(
        booking_id,
        caller,
        new_total_cents=request.new_total_cents,
        reason=request.reason,
    )
    return _respond(booking)


@router.post("/v1/bookings/{booking_id}/adjustment/approve", response_model=booking_schemas.BookingResponse)
async def approve_adjustment(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    return _respond(await controller.approve_adjustment(booking_id, caller))


@router.post("/v1/bookings/{booking_id}/adjustment/decline", response_model=booking_schemas.BookingResponse)
async def decline_adjustment(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    return _respond(await controller.decline_adjustment(booking_id, caller))


@router.post("/v1/bookings/{booking_id}/complete", response_model=booking_schemas.BookingResponse)
async def complete_booking(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    return _respond(await controller.complete(booking_id, caller))


@router.post("/v1/bookings/{booking_id}/cancel", response_model=booking_schemas.BookingResponse)
async def cancel_booking(
    booking_id: str,
    request: booking_schemas.CancelRequest | None = None,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    reason = request.reason if request else None
    return _respond(await controller.cancel(booking_id, caller, reason=reason))


@router.post("/v1/bookings/{booking_id}/decline-assignment", response_model=booking_schemas.BookingResponse)
async def decline_assignment(
    booking_id: str,
    caller: Caller = Depends(get_caller),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    return _respond(await controller.decline_assignment(booking_id, caller))


@router.post("/v1/admin/bookings/{booking_id}/assign", response_model=booking_schemas.BookingResponse)
async def admin_assign_booking(
    booking_id: str,
    request: booking_schemas.AdminAssignRequest,
    admin: Caller = Depends(require_admin),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    return _respond(await controller.admin_assign(booking_id, request.worker_id, admin))


@router.post("/v1/admin/bookings/{booking_id}/cancel", response_model=booking_schemas.BookingResponse)
async def admin_cancel_booking(
    booking_id: str,
    request: booking_schemas.CancelRequest | None = None,
    admin: Caller = Depends(require_admin),
    controller: BookingLifecycleController = Depends(get_controller),
) -> booking_schemas.BookingResponse:
    reason = request.reason if request else None
    return _respond(await controller.admin_cancel(booking_id, admin, reason=reason))
