from dataclasses import dataclass
from typing import List

PROBLEM_BASE = "https://example.com/problems"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = f"{PROBLEM_BASE}/domain-error"
    errors: List[dict] | None = None
    status_code: int = 400
    retryable: bool = False

    def __post_init__(self) -> None:
        super().__init__(self.detail)


# Validation: rejected before any external call.


@dataclass
class BookingValidationError(DomainError):
    title: str = "Validation Error"
    type: str = f"{PROBLEM_BASE}/validation-error"
    status_code: int = 422


@dataclass
class VehicleSizeBelowFloor(BookingValidationError):
    title: str = "Vehicle Size Below Floor"
    type: str = f"{PROBLEM_BASE}/vehicle-size-below-floor"


@dataclass
class StaleQuote(BookingValidationError):
    title: str = "Stale Quote"
    type: str = f"{PROBLEM_BASE}/stale-quote"


@dataclass
class InvalidAdjustment(BookingValidationError):
    title: str = "Invalid Adjustment"
    type: str = f"{PROBLEM_BASE}/invalid-adjustment"


@dataclass
class InvalidCoupon(BookingValidationError):
    title: str = "Invalid Coupon"
    type: str = f"{PROBLEM_BASE}/invalid-coupon"


@dataclass
class ConfigurationError(DomainError):
    title: str = "Configuration Error"
    type: str = f"{PROBLEM_BASE}/configuration-error"
    status_code: int = 422


# Caller identity / lookup.


@dataclass
class NotAuthorized(DomainError):
    title: str = "Not Authorized"
    type: str = f"{PROBLEM_BASE}/not-authorized"
    status_code: int = 403


@dataclass
class BookingNotFound(DomainError):
    title: str = "Booking Not Found"
    type: str = f"{PROBLEM_BASE}/booking-not-found"
    status_code: int = 404


# Conflicts: caller must re-fetch and decide whether to retry.


@dataclass
class ConflictError(DomainError):
    title: str = "Conflict"
    type: str = f"{PROBLEM_BASE}/conflict"
    status_code: int = 409


@dataclass
class AlreadyClaimed(ConflictError):
    title: str = "Already Claimed"
    type: str = f"{PROBLEM_BASE}/already-claimed"


@dataclass
class AlreadyTerminal(ConflictError):
    title: str = "Already Terminal"
    type: str = f"{PROBLEM_BASE}/already-terminal"


@dataclass
class InvalidTransition(ConflictError):
    title: str = "Invalid Transition"
    type: str = f"{PROBLEM_BASE}/invalid-transition"


@dataclass
class StaleStatus(ConflictError):
    title: str = "Stale Status"
    type: str = f"{PROBLEM_BASE}/stale-status"


# Payment: surfaced verbatim, booking state unchanged.


@dataclass
class PaymentError(DomainError):
    title: str = "Payment Error"
    type: str = f"{PROBLEM_BASE}/payment-error"
    status_code: int = 402


@dataclass
class GatewayDeclined(PaymentError):
    title: str = "Payment Declined"
    type: str = f"{PROBLEM_BASE}/gateway-declined"


@dataclass
class GatewayUnavailable(PaymentError):
    title: str = "Payment Gateway Unavailable"
    type: str = f"{PROBLEM_BASE}/gateway-unavailable"
    status_code: int = 503
    retryable: bool = True


@dataclass
class InvalidAmount(PaymentError):
    title: str = "Invalid Amount"
    type: str = f"{PROBLEM_BASE}/invalid-amount"
    status_code: int = 422


@dataclass
class NotCapturable(PaymentError):
    title: str = "Payment Not Capturable"
    type: str = f"{PROBLEM_BASE}/not-capturable"
    status_code: int = 409


@dataclass
class NotVoidable(PaymentError):
    title: str = "Payment Not Voidable"
    type: str = f"{PROBLEM_BASE}/not-voidable"
    status_code: int = 409


@dataclass
class AlreadyCaptured(PaymentError):
    title: str = "Payment Already Captured"
    type: str = f"{PROBLEM_BASE}/already-captured"
    status_code: int = 409


@dataclass
class OwnershipMismatch(PaymentError):
    title: str = "Payment Ownership Mismatch"
    type: str = f"{PROBLEM_BASE}/ownership-mismatch"
    status_code: int = 403


@dataclass
class PaymentRequired(PaymentError):
    title: str = "Payment Required"
    type: str = f"{PROBLEM_BASE}/payment-required"


@dataclass
class AdjustmentUnsupported(PaymentError):
    title: str = "Adjustment Unsupported"
    type: str = f"{PROBLEM_BASE}/adjustment-unsupported"
    status_code: int = 409
