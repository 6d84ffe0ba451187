from __future__ import annotations

import hashlib
import json
from typing import Any


def _stable_extra_value(value: Any) -> str:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return str(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def make_stripe_idempotency_key(
    operation: str,
    *,
    booking_id: str | None = None,
    amount_cents: int | None = None,
    currency: str | None = None,
    owner_ref: str | None = None,
    extra: dict | None = None,
) -> str:
    """Deterministic idempotency key for one logical payment mutation.

    Re-issuing the same intent (same operation, booking, amount and
    discriminators) yields the same key, so Stripe replays the original
    response instead of authorizing or capturing a second time.

    Format: ``<prefix8>-<sha256hex32>``; the prefix is the first 8 characters
    of *operation* for readability in the Stripe dashboard.
    """
    parts: list[str] = [operation]
    if booking_id is not None:
        parts.append(f"b:{booking_id}")
    if amount_cents is not None:
        parts.append(f"a:{amount_cents}")
    if currency is not None:
        parts.append(f"c:{currency.lower()}")
    if owner_ref is not None:
        parts.append(f"o:{owner_ref}")
    if extra:
        for key in sorted(extra.keys()):
            parts.append(f"x:{key}:{_stable_extra_value(extra[key])}")

    digest = hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]
    prefix = operation[:8].replace("_", "-").rstrip("-")
    return f"{prefix}-{digest}"
