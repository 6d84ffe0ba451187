"""Vehicle size tier inference from free-text make/model.

Patterns are matched against whole tokens of the normalized ``"make model"``
string, largest tier first. A pattern may run into a model number (``is300``)
but never starts or ends inside a word, so ``nv`` does not match ``envision``.
Anything unrecognised is treated as ``medium`` so an unknown vehicle is never
priced as a sedan.
"""

import re

from detailing.domain.errors import VehicleSizeBelowFloor
from detailing.domain.pricing.models import VehicleSize

XL_MODEL_PATTERNS: tuple[str, ...] = (
    "transit", "sprinter", "promaster", "nv", "express", "savana",
    "dualy", "dually", "3500", "4500", "5500", "chassis cab",
    "e-series", "econoline",
)

LARGE_MODEL_PATTERNS: tuple[str, ...] = (
    "f-150", "f150", "silverado", "sierra 1500", "sierra 2500", "sierra 3500",
    "ram 1500", "ram 2500", "ram 3500", "tundra", "titan",
    "suburban", "yukon xl", "escalade esv", "navigator l", "armada",
    "tahoe", "yukon", "expedition", "sequoia", "4runner",
    "wrangler", "gladiator", "bronco", "ranger",
    "colorado", "canyon", "frontier", "tacoma", "ridgeline",
    "sierra", "denali", "durango", "grand cherokee", "telluride", "palisade",
    "atlas", "ascent", "highlander", "pilot", "passport", "explorer",
    "traverse", "atlas cross sport",
)

MEDIUM_MODEL_PATTERNS: tuple[str, ...] = (
    "cr-v", "crv", "rav4", "rav 4", "escape", "equinox", "rogue", "tucson",
    "sportage", "cx-5", "cx5", "forester", "outback", "crosstrek",
    "edge", "murano", "pathfinder", "acadia", "enclave",
    "compass", "renegade", "cherokee", "bronco sport",
    "model y", "model x", "id.4", "ev6", "ioniq 5", "mach-e", "mustang mach-e",
)

SEDAN_MODEL_PATTERNS: tuple[str, ...] = (
    "civic", "accord", "camry", "corolla", "altima", "maxima", "sentra",
    "fusion", "malibu", "impala", "cruze", "spark",
    "elantra", "sonata", "optima", "k5", "forte", "rio",
    "passat", "jetta", "golf", "gli", "gti",
    "mazda3", "mazda 3", "mazda6", "mazda 6", "legacy", "wrx", "impreza",
    "model 3", "model s", "a3", "a4", "a6", "3 series", "5 series",
    "c-class", "e-class", "is", "es", "gs", "ls",
    "tlx", "ilx", "rlx", "cts", "ct5", "ct6",
)

# Make-level fallbacks when the model itself matched nothing.
LARGE_MAKE_HINTS: dict[str, tuple[str, ...]] = {
    "gmc": ("sierra", "yukon", "canyon", "denali"),
    "ford": ("f-", "f150", "ranger", "expedition", "bronco"),
    "chevrolet": ("silverado", "tahoe", "suburban"),
    "toyota": ("tundra", "tacoma", "sequoia", "4runner"),
    "jeep": ("wrangler", "gladiator", "grand cherokee"),
}

_TIERED_PATTERNS: tuple[tuple[VehicleSize, tuple[str, ...]], ...] = (
    (VehicleSize.xl, XL_MODEL_PATTERNS),
    (VehicleSize.large, LARGE_MODEL_PATTERNS),
    (VehicleSize.medium, MEDIUM_MODEL_PATTERNS),
    (VehicleSize.sedan, SEDAN_MODEL_PATTERNS),
)

_WHITESPACE_RE = re.compile(r"\s+")


def _token_pattern(pattern: str) -> re.Pattern[str]:
    """Match ``pattern`` only where a token starts, and not inside a longer word or number."""
    pattern = pattern.strip()
    last = pattern[-1]
    if last.isdigit():
        tail = "(?![0-9])"
    elif last.isalpha():
        tail = "(?![a-z])"
    else:
        tail = ""
    return re.compile(rf"(?<![a-z0-9]){re.escape(pattern)}{tail}")


_TIERED_RES: tuple[tuple[VehicleSize, tuple[re.Pattern[str], ...]], ...] = tuple(
    (size, tuple(_token_pattern(pattern) for pattern in patterns)) for size, patterns in _TIERED_PATTERNS
)
_MAKE_HINT_RES: dict[str, tuple[re.Pattern[str], ...]] = {
    make: tuple(_token_pattern(hint) for hint in hints) for make, hints in LARGE_MAKE_HINTS.items()
}


def _normalize(value: str | None) -> str:
    return _WHITESPACE_RE.sub(" ", (value or "").strip().lower())


def infer_vehicle_size(make: str | None, model: str | None) -> VehicleSize:
    normalized_make = _normalize(make)
    normalized_model = _normalize(model)
    if not normalized_make or not normalized_model:
        return VehicleSize.medium

    combined = f"{normalized_make} {normalized_model}"
    for size, patterns in _TIERED_RES:
        if any(pattern.search(combined) for pattern in patterns):
            return size

    if normalized_make == "ram":
        return VehicleSize.large
    hints = _MAKE_HINT_RES.get(normalized_make, ())
    if any(hint.search(normalized_model) for hint in hints):
        return VehicleSize.large
    return VehicleSize.medium


def is_smaller(size: VehicleSize, other: VehicleSize) -> bool:
    return size.rank < other.rank


def resolve_vehicle_size(
    make: str | None, model: str | None, requested: VehicleSize | None = None
) -> tuple[VehicleSize, VehicleSize]:
    """Return ``(inferred, effective)`` tiers, rejecting a request below the floor."""
    inferred = infer_vehicle_size(make, model)
    if requested is None:
        return inferred, inferred
    if is_smaller(requested, inferred):
        raise VehicleSizeBelowFloor(
            detail=(
                f"Vehicle size '{requested.value}' is below the minimum '{inferred.value}' for this "
                "vehicle; nothing was charged."
            ),
            errors=[
                {"field": "vehicle_size", "requested": requested.value, "minimum": inferred.value}
            ],
        )
    return inferred, requested
