from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field, conint


class VehicleSize(str, Enum):
    sedan = "sedan"
    medium = "medium"
    large = "large"
    xl = "xl"

    @property
    def rank(self) -> int:
        return VEHICLE_SIZE_ORDER.index(self)


VEHICLE_SIZE_ORDER: tuple[VehicleSize, ...] = (
    VehicleSize.sedan,
    VehicleSize.medium,
    VehicleSize.large,
    VehicleSize.xl,
)


class Vehicle(BaseModel):
    make: str = Field("", max_length=80)
    model: str = Field("", max_length=120)
    year: conint(ge=1900, le=2100) | None = None


class ServiceAddress(BaseModel):
    line1: str = Field(..., min_length=1, max_length=200)
    city: str | None = Field(None, max_length=120)
    state: str | None = Field(None, max_length=40)
    postal_code: str = Field(..., min_length=3, max_length=12)
    country: str = Field("US", min_length=2, max_length=2)


class QuoteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    service_type: str = Field(..., min_length=1)
    vehicle: Vehicle
    vehicle_size: VehicleSize | None = None
    add_ons: List[str] = Field(default_factory=list)
    condition: str = "normal"
    service_address: ServiceAddress | None = None
    coupon_code: str | None = Field(None, max_length=64)


class PriceBreakdown(BaseModel):
    """Output of the resolver, all amounts in minor units, before tax."""

    base_cents: int
    add_ons_cents: int
    subtotal_cents: int
    surcharge_cents: int
    total_cents: int


class TaxQuote(BaseModel):
    tax_cents: int
    total_cents: int


class Quote(BaseModel):
    service_type: str
    inferred_vehicle_size: VehicleSize
    vehicle_size: VehicleSize
    add_ons: List[str]
    condition: str
    price: PriceBreakdown
    coupon_code: str | None = None
    discount_cents: int = 0
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    currency: str
    pricing_catalog_id: str
    pricing_catalog_version: str
    pricing_catalog_hash: str
