from fastapi import Depends, Request

from detailing.domain.bookings.service import BookingLifecycleController
from detailing.services import AppServices, resolve_services


def get_services(request: Request) -> AppServices:
    services = resolve_services(request.app)
    if services is None:
        raise RuntimeError("application services are not configured")
    return services


def get_controller(services: AppServices = Depends(get_services)) -> BookingLifecycleController:
    return services.controller
