"""
Portfolio Reconciliation
========================
Derives the live portfolio from the agent-action ledger plus on-chain balances.
Nothing is cached or persisted: every read is recomputed from those two sources.

Per pool (chain, protocol, asset):
  net_invested = Σ executed supplies - Σ executed withdrawals
  earned_yield = max(0, on_chain_balance - net_invested)

on_chain_balance is the single yield-token balance of the wallet, shared by
every pool of the investment. Multi-pool investments therefore over-report
per-pool balances; the aggregate totals are exact.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.errors import OnChainReadError
from core.onchain import BalanceReader
from models.db import AgentAction, Investment, Strategy
from models.repositories import AgentActionRepository, InvestmentRepository, StrategyRepository

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass
class PoolPosition:
    chain: str
    protocol: str
    asset: str
    on_chain_balance: Decimal
    total_supplied: Decimal
    total_withdrawn: Decimal
    net_invested: Decimal
    earned_yield: Decimal
    latest_apy: Optional[float]
    allocation_percent: float
    actions: list[AgentAction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "pool": {"chain": self.chain, "protocol": self.protocol, "asset": self.asset},
            "on_chain_balance_usd": float(self.on_chain_balance),
            "total_supplied_usd": float(self.total_supplied),
            "total_withdrawn_usd": float(self.total_withdrawn),
            "net_invested_usd": float(self.net_invested),
            "earned_yield_usd": float(self.earned_yield),
            "latest_apy_percent": self.latest_apy,
            "allocation_percent": self.allocation_percent,
            "actions": [a.to_dict() for a in self.actions],
        }


@dataclass
class Portfolio:
    investment_id: str
    strategy_name: str
    risk_level: str
    wallet_address: str
    wallet_balance: Decimal
    invested_balance: Decimal
    total_value: Decimal
    total_invested: Decimal
    total_earned: Decimal
    pools: list[PoolPosition] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "investment_id": self.investment_id,
            "strategy_name": self.strategy_name,
            "risk_level": self.risk_level,
            "wallet_address": self.wallet_address,
            "wallet_balance_usd": float(self.wallet_balance),
            "invested_balance_usd": float(self.invested_balance),
            "total_value_usd": float(self.total_value),
            "total_invested_usd": float(self.total_invested),
            "total_earned_usd": float(self.total_earned),
            "pools": [p.to_dict() for p in self.pools],
        }


def _executed_total(actions: Sequence[AgentAction], action_type: str) -> Decimal:
    return sum(
        (Decimal(a.amount) for a in actions if a.action_type == action_type and a.status == "executed"),
        ZERO,
    )


def _latest_apy(actions: Sequence[AgentAction]) -> Optional[float]:
    latest = None
    for a in actions:
        if a.expected_apy_after is None:
            continue
        # later rows win ties so the ledger order breaks equal timestamps
        if latest is None or a.executed_at >= latest.executed_at:
            latest = a
    return latest.expected_apy_after if latest else None


def reconcile(
    investment: Investment,
    strategy: Optional[Strategy],
    actions: Sequence[AgentAction],
    wallet_balance: Decimal,
    invested_balance: Decimal,
    wallet_address: str = "",
) -> Portfolio:
    grouped: dict[tuple[str, str, str], list[AgentAction]] = {}
    for a in actions:
        grouped.setdefault((a.chain, a.protocol, a.asset), []).append(a)

    allocations = {p.key: p.allocation_percentage for p in strategy.pools} if strategy else {}

    pools = []
    for (chain, protocol, asset), rows in grouped.items():
        supplied = _executed_total(rows, "supply")
        withdrawn = _executed_total(rows, "withdraw")
        net = supplied - withdrawn
        pools.append(PoolPosition(
            chain=chain,
            protocol=protocol,
            asset=asset,
            on_chain_balance=invested_balance,
            total_supplied=supplied,
            total_withdrawn=withdrawn,
            net_invested=net,
            earned_yield=max(ZERO, invested_balance - net),
            latest_apy=_latest_apy(rows),
            allocation_percent=allocations.get(f"{chain}:{protocol}:{asset}", 100),
            actions=sorted(rows, key=lambda a: a.executed_at, reverse=True),
        ))

    total_invested = sum((p.net_invested for p in pools), ZERO)
    return Portfolio(
        investment_id=investment.id,
        strategy_name=strategy.name if strategy else "Unknown",
        risk_level=strategy.risk_level if strategy else "unknown",
        wallet_address=wallet_address,
        wallet_balance=wallet_balance,
        invested_balance=invested_balance,
        total_value=wallet_balance + invested_balance,
        total_invested=total_invested,
        total_earned=max(ZERO, invested_balance - total_invested),
        pools=pools,
    )


def to_units(raw: int, decimals: int) -> Decimal:
    return Decimal(raw) / (Decimal(10) ** decimals)


async def read_balances(reader: BalanceReader, owner: str) -> tuple[Decimal, Decimal]:
    """(wallet-held base asset, yield-bearing token) in whole units."""
    try:
        wallet_raw, invested_raw = await asyncio.gather(
            reader.balance_of(settings.base_asset_address, owner),
            reader.balance_of(settings.yield_token_address, owner),
        )
    except Exception as e:
        logger.error(f"On-chain balance read failed for {owner}: {e}")
        raise OnChainReadError(f"Failed to read on-chain balance: {e}")
    return to_units(wallet_raw, settings.token_decimals), to_units(invested_raw, settings.token_decimals)


async def get_portfolio(db: AsyncSession, user_id: str, reader: BalanceReader) -> Optional[Portfolio]:
    investment = await InvestmentRepository(db).find_active_by_user_id(user_id)
    if investment is None:
        return None
    strategy = await StrategyRepository(db).find_by_id(investment.strategy_id)
    actions = await AgentActionRepository(db).find_by_investment_id(investment.id)
    owner = settings.wallet_address
    wallet_balance, invested_balance = await read_balances(reader, owner)
    return reconcile(investment, strategy, actions, wallet_balance, invested_balance, wallet_address=owner)
