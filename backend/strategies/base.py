"""
Strategy templates and registry.

To add a new strategy:
1. Describe it as a StrategyTemplate in strategies/catalog.py (or a new module)
2. Decorate the factory with @register
3. Import the module in strategies/__init__.py

On startup every registered template that is missing from the strategies table
is inserted. Seeded rows are never updated afterwards.
"""
from dataclasses import dataclass, field
from typing import Callable, Optional
import logging

logger = logging.getLogger(__name__)

RISK_LEVELS = ("conservative", "balanced", "growth")


@dataclass(frozen=True)
class PoolAllocation:
    """One approved (chain, protocol, asset) venue and its share of the strategy."""
    chain: str
    protocol: str
    asset: str
    allocation_percentage: float

    @property
    def key(self) -> str:
        return pool_key(self.chain, self.protocol, self.asset)

    def to_dict(self) -> dict:
        return {
            "chain": self.chain,
            "protocol": self.protocol,
            "asset": self.asset,
            "allocation_percentage": self.allocation_percentage,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PoolAllocation":
        return cls(
            chain=data["chain"],
            protocol=data["protocol"],
            asset=data["asset"],
            allocation_percentage=float(data.get("allocation_percentage", data.get("allocationPercentage", 0))),
        )


def pool_key(chain: str, protocol: str, asset: str) -> str:
    return f"{chain}:{protocol}:{asset}"


def validate_allocations(allocations: list[PoolAllocation]) -> None:
    total = sum(p.allocation_percentage for p in allocations)
    if round(total) != 100:
        raise ValueError(f"Pool allocations must sum to 100, got {total}")


@dataclass(frozen=True)
class StrategyTemplate:
    name: str
    risk_level: str
    description: str
    pool_allocations: list[PoolAllocation]
    expected_apy_min: float
    expected_apy_max: float
    rebalance_threshold: float
    allowed_chains: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.risk_level not in RISK_LEVELS:
            raise ValueError(f"Unknown risk level '{self.risk_level}'")
        validate_allocations(self.pool_allocations)


# Registry: name -> template factory
_REGISTRY: dict[str, Callable[[], StrategyTemplate]] = {}


def register(factory: Callable[[], StrategyTemplate]) -> Callable[[], StrategyTemplate]:
    """Decorator to register a strategy template factory."""
    template = factory()
    _REGISTRY[template.name] = factory
    return factory


def get_template(name: str) -> Optional[StrategyTemplate]:
    factory = _REGISTRY.get(name)
    return factory() if factory else None


def all_registered() -> dict[str, StrategyTemplate]:
    return {name: factory() for name, factory in _REGISTRY.items()}
