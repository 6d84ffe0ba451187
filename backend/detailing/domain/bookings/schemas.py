from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, EmailStr, Field, conint, field_validator, model_validator

from detailing.domain.bookings.statuses import BookingStatus
from detailing.domain.pricing.models import QuoteRequest, ServiceAddress, Vehicle, VehicleSize


class CallerRole(str, Enum):
    customer = "customer"
    guest = "guest"
    worker = "worker"
    admin = "admin"


@dataclass(frozen=True)
class Caller:
    role: CallerRole
    id: str

    @property
    def owner_ref(self) -> str:
        if self.role == CallerRole.guest:
            return owner_ref_for(customer_id=None, guest_email=self.id)
        return owner_ref_for(customer_id=self.id, guest_email=None)


def owner_ref_for(*, customer_id: str | None, guest_email: str | None) -> str:
    if customer_id:
        return f"customer:{customer_id}"
    return f"guest:{(guest_email or '').strip().lower()}"


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class GuestContact(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    phone: str = Field(..., min_length=7, max_length=32)


class BookingSnapshot(BaseModel):
    """Point-in-time view of one booking, shared by both store implementations."""

    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    status: BookingStatus
    customer_id: str | None = None
    guest: GuestContact | None = None
    owner_ref: str
    service_type: str
    vehicle: Vehicle
    inferred_vehicle_size: VehicleSize
    vehicle_size: VehicleSize
    add_ons: List[str] = Field(default_factory=list)
    condition: str
    service_address: ServiceAddress | None = None
    service_zip: str | None = None
    scheduled_at: datetime | None = None
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    original_total_cents: int | None = None
    coupon_code: str | None = None
    discount_cents: int = 0
    currency: str
    pricing_catalog_id: str
    pricing_catalog_version: str
    pricing_catalog_hash: str
    payment_reference: str | None = None
    assigned_worker_id: str | None = None
    assigned_at: datetime | None = None
    accepted_at: datetime | None = None
    started_at: datetime | None = None
    adjustment_requested: bool = False
    adjustment_total_cents: int | None = None
    adjustment_reason: str | None = None
    captured_cents: int = 0
    cancellation_fee_cents: int | None = None
    cancel_reason: str | None = None
    idempotency_key: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @field_validator(
        "scheduled_at",
        "assigned_at",
        "accepted_at",
        "started_at",
        "created_at",
        "updated_at",
        "completed_at",
        "cancelled_at",
    )
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @model_validator(mode="after")
    def validate_owner(self) -> "BookingSnapshot":
        if (self.customer_id is None) == (self.guest is None):
            raise ValueError("exactly one of customer_id or guest must be set")
        return self


@dataclass(frozen=True)
class TransitionRecord:
    from_status: BookingStatus | None
    to_status: BookingStatus
    actor_role: str
    actor_id: str | None
    reason: str | None = None
    amount_cents: int | None = None
    payment_reference: str | None = None
    created_at: datetime | None = None


class CreateBookingRequest(QuoteRequest):
    guest: GuestContact | None = None
    payment_method: str = Field(..., min_length=1, max_length=255)
    scheduled_at: datetime | None = None
    quoted_total_cents: conint(ge=0) | None = None


class AdjustmentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_total_cents: conint(gt=0)
    reason: str = Field(..., min_length=1, max_length=500)


class CancelRequest(BaseModel):
    reason: str | None = Field(None, max_length=500)


class AdminAssignRequest(BaseModel):
    worker_id: str = Field(..., min_length=1, max_length=128)


class BookingResponse(BaseModel):
    booking_id: str
    status: BookingStatus
    service_type: str
    vehicle: Vehicle
    vehicle_size: VehicleSize
    add_ons: List[str]
    condition: str
    service_zip: str | None
    scheduled_at: datetime | None
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    original_total_cents: int | None
    coupon_code: str | None
    discount_cents: int
    currency: str
    assigned_worker_id: str | None
    accepted_at: datetime | None
    adjustment_requested: bool
    adjustment_total_cents: int | None
    adjustment_reason: str | None
    cancellation_fee_cents: int | None
    pricing_catalog_version: str
    created_at: datetime
    completed_at: datetime | None
    cancelled_at: datetime | None

    @classmethod
    def from_snapshot(cls, booking: BookingSnapshot) -> "BookingResponse":
        return cls.model_validate(booking.model_dump())


class TransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: BookingStatus | None
    to_status: BookingStatus
    actor_role: str
    actor_id: str | None
    reason: str | None
    amount_cents: int | None
    created_at: datetime | None
