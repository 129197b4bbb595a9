"""
Display-side mining projection.

Pure functions that turn a server snapshot (GET /api/mining/status) into an
estimated running balance and countdown between refetches. Nothing in the
ledger imports this module; credited amounts are always recomputed by
services.mining.accrued_tokens at claim time.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from . import money


@dataclass(frozen=True)
class MiningSnapshot:
    accumulated_tokens: Decimal
    snapshot_at: datetime
    tokens_per_second: Decimal
    mining_speed: Decimal
    cycle_cap: Decimal
    next_claim_at: Optional[datetime] = None

    @classmethod
    def from_status(cls, status: dict, tokens_per_cycle: Decimal) -> "MiningSnapshot":
        speed = money.to_decimal(status["mining_speed"])
        return cls(
            accumulated_tokens=money.to_decimal(status["accumulated_tokens"]),
            snapshot_at=status["snapshot_at"],
            tokens_per_second=money.to_decimal(status["tokens_per_second"]),
            mining_speed=speed,
            cycle_cap=money.to_decimal(tokens_per_cycle) * speed,
            next_claim_at=status.get("next_claim_at"),
        )


@dataclass(frozen=True)
class Projection:
    estimated_tokens: Decimal
    seconds_remaining: int
    capped: bool


def project(snapshot: MiningSnapshot, at: datetime) -> Projection:
    """Estimate the balance shown at `at`; never earlier than the snapshot."""
    elapsed = max(Decimal("0"), Decimal(str((at - snapshot.snapshot_at).total_seconds())))
    estimate = snapshot.accumulated_tokens + elapsed * snapshot.tokens_per_second * snapshot.mining_speed
    capped = estimate >= snapshot.cycle_cap
    if capped:
        estimate = snapshot.cycle_cap
    remaining = 0
    if snapshot.next_claim_at is not None:
        remaining = max(0, int((snapshot.next_claim_at - at).total_seconds()))
    return Projection(estimated_tokens=money.tokens(estimate), seconds_remaining=remaining, capped=capped)
