from detailing.settings import Settings, settings
from detailing.shared.circuit_breaker import CircuitBreaker


def build_stripe_circuit(app_settings: Settings) -> CircuitBreaker:
    return CircuitBreaker(
        name="stripe",
        failure_threshold=app_settings.stripe_circuit_failure_threshold,
        recovery_time=app_settings.stripe_circuit_recovery_seconds,
        window_seconds=app_settings.stripe_circuit_window_seconds,
        half_open_max_calls=app_settings.stripe_circuit_half_open_max_calls,
        timeout_seconds=app_settings.stripe_request_timeout_seconds,
    )


stripe_circuit = build_stripe_circuit(settings)
