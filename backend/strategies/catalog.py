"""
Seeded strategies, one per risk tier.

rebalance_threshold is the minimum APY improvement, in percentage points,
that justifies moving funds between pools.
"""
from strategies.base import PoolAllocation, StrategyTemplate, register


@register
def safe_harbor() -> StrategyTemplate:
    return StrategyTemplate(
        name="Safe Harbor",
        risk_level="conservative",
        description=(
            "Your savings stay on Ethereum, the most established network, earning steady "
            "yield through Aave. Minimal movement, maximum predictability."
        ),
        pool_allocations=[PoolAllocation("ethereum", "Aave v3", "USDC", 100)],
        expected_apy_min=3,
        expected_apy_max=5,
        rebalance_threshold=2,
        allowed_chains=["ethereum"],
    )


@register
def steady_growth() -> StrategyTemplate:
    return StrategyTemplate(
        name="Steady Growth",
        risk_level="balanced",
        description=(
            "A balanced split between Ethereum and Base. The agent rebalances when a "
            "meaningfully better rate appears."
        ),
        pool_allocations=[
            PoolAllocation("ethereum", "Aave v3", "USDC", 60),
            PoolAllocation("base", "Aave v3", "USDC", 40),
        ],
        expected_apy_min=5,
        expected_apy_max=8,
        rebalance_threshold=1.5,
        allowed_chains=["ethereum", "base"],
    )


@register
def max_yield() -> StrategyTemplate:
    return StrategyTemplate(
        name="Max Yield",
        risk_level="growth",
        description=(
            "Chases the highest available rate across Base, Polygon and Ethereum, moving "
            "funds whenever a better opportunity arises."
        ),
        pool_allocations=[
            PoolAllocation("base", "Aave v3", "USDC", 40),
            PoolAllocation("polygon", "Aave v3", "USDC", 40),
            PoolAllocation("ethereum", "Aave v3", "USDC", 20),
        ],
        expected_apy_min=7,
        expected_apy_max=12,
        rebalance_threshold=1,
        allowed_chains=["ethereum", "base", "polygon"],
    )
