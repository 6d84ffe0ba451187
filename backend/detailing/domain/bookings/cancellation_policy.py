from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence


@dataclass(frozen=True)
class FeeTier:
    up_to_minutes: float | None
    fee_cents: int
    inclusive: bool = True

    def covers(self, elapsed_minutes: float) -> bool:
        if self.up_to_minutes is None:
            return True
        if self.inclusive:
            return elapsed_minutes <= self.up_to_minutes
        return elapsed_minutes < self.up_to_minutes


@dataclass(frozen=True)
class FeeDecision:
    fee_cents: int
    tier: str
    elapsed_minutes: float | None


NO_ACCEPTANCE_TIER = "no_acceptance"


class CancellationFeeSchedule:
    """Ordered fee tiers keyed on minutes since a worker accepted the job.

    The first tier covering the elapsed time wins. The last tier is
    open-ended, so every elapsed time maps to exactly one fee.
    """

    def __init__(self, tiers: Sequence[FeeTier]) -> None:
        if not tiers or tiers[-1].up_to_minutes is not None:
            raise ValueError("the last cancellation fee tier must be open-ended")
        self.tiers = tuple(tiers)

    @classmethod
    def from_config(cls, raw_tiers: Iterable[dict[str, Any]]) -> "CancellationFeeSchedule":
        tiers = []
        for raw in raw_tiers:
            bound = raw.get("up_to_minutes")
            tiers.append(
                FeeTier(
                    up_to_minutes=None if bound is None else float(bound),
                    fee_cents=int(raw["fee_cents"]),
                    inclusive=bool(raw.get("inclusive", True)),
                )
            )
        return cls(tiers)

    def fee_for(self, accepted_at: datetime | None, now: datetime) -> FeeDecision:
        if accepted_at is None:
            return FeeDecision(fee_cents=0, tier=NO_ACCEPTANCE_TIER, elapsed_minutes=None)
        elapsed_minutes = max(0.0, (now - accepted_at).total_seconds() / 60)
        for index, tier in enumerate(self.tiers):
            if tier.covers(elapsed_minutes):
                return FeeDecision(fee_cents=tier.fee_cents, tier=f"tier_{index}", elapsed_minutes=elapsed_minutes)
        raise AssertionError("open-ended tier always matches")
