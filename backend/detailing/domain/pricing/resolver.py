from typing import Iterable

from detailing.domain.errors import BookingValidationError
from detailing.domain.pricing.catalog import PricingCatalog
from detailing.domain.pricing.models import PriceBreakdown, VehicleSize


def price(
    catalog: PricingCatalog,
    service_type: str,
    vehicle_size: VehicleSize,
    add_ons: Iterable[str],
    condition: str,
) -> PriceBreakdown:
    """Server-side price in minor units.

    ``subtotal`` is the service price plus add-ons, ``surcharge`` the condition
    upcharge, and ``total`` their sum. Duplicate add-on ids are charged once.
    """
    base_cents = catalog.service_price_cents(service_type, vehicle_size)
    unique_add_ons = sorted(set(add_ons))
    add_ons_cents = sum(catalog.add_on_price_cents(add_on_id) for add_on_id in unique_add_ons)
    surcharge_cents = catalog.condition_upcharge_cents(condition)
    subtotal_cents = base_cents + add_ons_cents
    total_cents = subtotal_cents + surcharge_cents
    if total_cents < catalog.minimum_charge_cents:
        raise BookingValidationError(
            detail=f"Price {total_cents} is below the minimum charge; nothing was charged.",
        )
    return PriceBreakdown(
        base_cents=base_cents,
        add_ons_cents=add_ons_cents,
        subtotal_cents=subtotal_cents,
        surcharge_cents=surcharge_cents,
        total_cents=total_cents,
    )
