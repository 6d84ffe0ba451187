import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from detailing.domain.errors import ConfigurationError
from detailing.domain.pricing.models import VEHICLE_SIZE_ORDER, VehicleSize


@dataclass(frozen=True)
class PricingCatalog:
    pricing_catalog_id: str
    pricing_catalog_version: str
    catalog_hash: str
    data: Dict[str, Any]

    @property
    def currency(self) -> str:
        return str(self.data.get("currency", "usd")).lower()

    @property
    def minimum_charge_cents(self) -> int:
        return int(self.data.get("minimum_charge_cents", 0))

    def service_price_cents(self, service_type: str, size: VehicleSize) -> int:
        service = self.data["services"].get(service_type)
        if service is None:
            raise ConfigurationError(
                detail=f"Unknown service type '{service_type}'; nothing was charged.",
                errors=[{"field": "service_type", "value": service_type}],
            )
        return int(service["prices_cents"][size.value])

    def add_on_price_cents(self, add_on_id: str) -> int:
        add_on = self.data["add_ons"].get(add_on_id)
        if add_on is None:
            raise ConfigurationError(
                detail=f"Unknown add-on '{add_on_id}'; nothing was charged.",
                errors=[{"field": "add_ons", "value": add_on_id}],
            )
        return int(add_on["price_cents"])

    def condition_upcharge_cents(self, condition: str) -> int:
        level = self.data["conditions"].get(condition)
        if level is None:
            raise ConfigurationError(
                detail=f"Unknown condition level '{condition}'; nothing was charged.",
                errors=[{"field": "condition", "value": condition}],
            )
        return int(level["upcharge_cents"])


def _canonical_json(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def _resolve_catalog_path(path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    cwd_candidate = (Path.cwd() / candidate).resolve()
    if cwd_candidate.exists():
        return cwd_candidate
    module_candidate = Path(__file__).resolve().parents[3] / candidate
    if module_candidate.exists():
        return module_candidate
    raise FileNotFoundError(f"Pricing catalog not found at {path}")


def _validate_catalog(data: Dict[str, Any]) -> None:
    for key in ("pricing_catalog_id", "pricing_catalog_version", "services", "add_ons", "conditions"):
        if key not in data:
            raise ValueError(f"Pricing catalog is missing '{key}'")
    for service_id, service in data["services"].items():
        prices = service.get("prices_cents", {})
        missing = [size.value for size in VEHICLE_SIZE_ORDER if size.value not in prices]
        if missing:
            raise ValueError(f"Service '{service_id}' has no price for tiers {missing}")
        # A larger vehicle never costs less than a smaller one.
        ordered = [int(prices[size.value]) for size in VEHICLE_SIZE_ORDER]
        if ordered != sorted(ordered):
            raise ValueError(f"Service '{service_id}' prices must not decrease with vehicle size")


def load_pricing_catalog(path: str) -> PricingCatalog:
    resolved_path = _resolve_catalog_path(path)
    data = json.loads(resolved_path.read_text(encoding="utf-8"))
    _validate_catalog(data)
    catalog_hash = hashlib.sha256(_canonical_json(data).encode("utf-8")).hexdigest()
    return PricingCatalog(
        pricing_catalog_id=data["pricing_catalog_id"],
        pricing_catalog_version=str(data["pricing_catalog_version"]),
        catalog_hash=f"sha256:{catalog_hash}",
        data=data,
    )
