from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from detailing.domain.bookings.cancellation_policy import CancellationFeeSchedule
from detailing.domain.bookings.service import BookingLifecycleController, utcnow
from detailing.domain.bookings.store import BookingStore, SqlBookingStore
from detailing.domain.notifications.service import BookingNotifier, OutboxNotifier
from detailing.domain.payments.gateway import PaymentGateway
from detailing.domain.pricing.catalog import PricingCatalog, load_pricing_catalog
from detailing.domain.pricing.coupons import CouponLookup, StaticCouponLookup, StripeCouponLookup
from detailing.domain.pricing.tax import StripeTaxQuoter, TaxQuoter, ZeroTaxQuoter
from detailing.infra.db import get_session_factory
from detailing.infra.memory_gateway import InMemoryPaymentGateway
from detailing.infra.metrics import Metrics, configure_metrics
from detailing.infra.stripe_client import StripeClient
from detailing.infra.stripe_gateway import StripePaymentGateway
from detailing.infra.stripe_resilience import build_stripe_circuit


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    catalog: PricingCatalog
    store: BookingStore
    gateway: PaymentGateway
    tax_quoter: TaxQuoter
    coupons: CouponLookup
    notifier: BookingNotifier
    controller: BookingLifecycleController
    stripe_client: StripeClient | None
    metrics: Metrics


def _build_stripe_client(app_settings) -> StripeClient:
    return StripeClient(
        secret_key=app_settings.stripe_secret_key,
        circuit=build_stripe_circuit(app_settings),
    )


def build_app_services(
    app_settings,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    store: BookingStore | None = None,
    gateway: PaymentGateway | None = None,
    notifier: BookingNotifier | None = None,
    tax_quoter: TaxQuoter | None = None,
    coupons: CouponLookup | None = None,
    clock: Callable[[], datetime] | None = None,
    metrics: Metrics | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    catalog = load_pricing_catalog(app_settings.pricing_catalog_path)

    stripe_client: StripeClient | None = None
    if app_settings.payment_gateway_mode == "stripe" or app_settings.tax_mode == "stripe":
        stripe_client = _build_stripe_client(app_settings)

    if gateway is None:
        if app_settings.payment_gateway_mode == "memory":
            gateway = InMemoryPaymentGateway(min_amount_cents=app_settings.gateway_min_amount_cents)
        else:
            gateway = StripePaymentGateway(
                stripe_client,
                currency=app_settings.currency,
                min_amount_cents=app_settings.gateway_min_amount_cents,
            )

    if tax_quoter is None:
        if app_settings.tax_mode == "stripe":
            tax_quoter = StripeTaxQuoter(stripe_client, currency=app_settings.currency, tax_code=app_settings.tax_code)
        else:
            tax_quoter = ZeroTaxQuoter()

    if coupons is None:
        if app_settings.payment_gateway_mode == "stripe":
            coupons = StripeCouponLookup(stripe_client)
        else:
            coupons = StaticCouponLookup()

    if store is None or notifier is None:
        factory = session_factory or get_session_factory()
        store = store or SqlBookingStore(factory)
        notifier = notifier or OutboxNotifier(factory)

    controller = BookingLifecycleController(
        store=store,
        gateway=gateway,
        catalog=catalog,
        tax_quoter=tax_quoter,
        notifier=notifier,
        fee_schedule=CancellationFeeSchedule.from_config(app_settings.cancellation_fee_schedule),
        decline_fee_cents=app_settings.adjustment_decline_fee_cents,
        min_amount_cents=max(app_settings.gateway_min_amount_cents, catalog.minimum_charge_cents),
        currency=app_settings.currency,
        coupons=coupons,
        clock=clock or utcnow,
    )
    return AppServices(
        catalog=catalog,
        store=store,
        gateway=gateway,
        tax_quoter=tax_quoter,
        coupons=coupons,
        notifier=notifier,
        controller=controller,
        stripe_client=stripe_client,
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
