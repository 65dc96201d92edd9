"""
Allocation Decision Engine
==========================
Pure cost-benefit check run per pool of a strategy:

  amount → expected APY → annual yield vs gas → APY delta vs threshold → verdict

Skips are decisions too: every pool yields exactly one AllocationDecision,
in input order, with a rationale that can be stored verbatim in the ledger.
Comparisons use the raw floats; rounding only happens in the rationale text.
"""
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from strategies.base import PoolAllocation


@dataclass(frozen=True)
class AllocationDecision:
    """What the engine decided for one pool."""
    pool: PoolAllocation
    amount_usd: float
    expected_apy: float
    gas_cost_usd: float
    should_execute: bool
    rationale: str

    def to_dict(self) -> dict:
        return {
            "pool": self.pool.to_dict(),
            "amount_usd": self.amount_usd,
            "expected_apy": self.expected_apy,
            "gas_cost_usd": self.gas_cost_usd,
            "should_execute": self.should_execute,
            "rationale": self.rationale,
        }


def compute_allocations(
    pool_allocations: Sequence[PoolAllocation],
    total_amount_usd: float,
    current_rates: Mapping[str, float],
    gas_price: float,
    rebalance_threshold: float,
    current_apy: Optional[float] = None,
) -> list[AllocationDecision]:
    return [
        _decide(pool, total_amount_usd, current_rates, gas_price, rebalance_threshold, current_apy)
        for pool in pool_allocations
    ]


def _decide(pool, total_amount_usd, current_rates, gas_price, rebalance_threshold, current_apy) -> AllocationDecision:
    amount_usd = total_amount_usd * (pool.allocation_percentage / 100)
    expected_apy = current_rates.get(pool.key) or 0
    annual_yield_usd = amount_usd * (expected_apy / 100)
    gas_cost_usd = gas_price

    def decision(should_execute: bool, rationale: str) -> AllocationDecision:
        return AllocationDecision(pool, amount_usd, expected_apy, gas_cost_usd, should_execute, rationale)

    if expected_apy == 0 or annual_yield_usd <= gas_cost_usd:
        return decision(
            False,
            f"Skipped: gas cost (${gas_cost_usd:.4f}) exceeds projected annual yield (${annual_yield_usd:.4f})",
        )

    if current_apy is not None and abs(expected_apy - current_apy) < rebalance_threshold:
        return decision(
            False,
            f"Skipped: APY improvement {expected_apy - current_apy:.2f}% is below "
            f"rebalance threshold {rebalance_threshold}% (current {current_apy:.2f}%, offered {expected_apy:.2f}%)",
        )

    return decision(
        True,
        f"Supply ${amount_usd:.2f} to {pool.protocol} on {pool.chain} at {expected_apy}% APY "
        f"(gas: ${gas_cost_usd:.4f}, annual yield: ${annual_yield_usd:.2f})",
    )
