import logging
from typing import Any, Protocol

from detailing.domain.pricing.models import ServiceAddress, TaxQuote

logger = logging.getLogger(__name__)


class TaxQuoter(Protocol):
    async def quote(self, subtotal_cents: int, address: ServiceAddress | None) -> TaxQuote:
        ...


class ZeroTaxQuoter:
    async def quote(self, subtotal_cents: int, address: ServiceAddress | None) -> TaxQuote:
        return TaxQuote(tax_cents=0, total_cents=subtotal_cents)


class StripeTaxQuoter:
    """Stripe Tax calculation; any failure quotes zero tax rather than blocking a booking."""

    def __init__(self, stripe_client: Any, *, currency: str, tax_code: str) -> None:
        self.stripe_client = stripe_client
        self.currency = currency
        self.tax_code = tax_code

    async def quote(self, subtotal_cents: int, address: ServiceAddress | None) -> TaxQuote:
        if address is None:
            return TaxQuote(tax_cents=0, total_cents=subtotal_cents)
        try:
            calculation = await self.stripe_client.calculate_tax(
                amount_cents=subtotal_cents,
                currency=self.currency,
                tax_code=self.tax_code,
                postal_code=address.postal_code,
                country=address.country,
            )
            tax_cents = int(getattr(calculation, "tax_amount_exclusive", 0) or 0)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "tax_quote_failed",
                extra={"extra": {"error": type(exc).__name__, "subtotal_cents": subtotal_cents}},
            )
            tax_cents = 0
        tax_cents = max(0, tax_cents)
        return TaxQuote(tax_cents=tax_cents, total_cents=subtotal_cents + tax_cents)
