"""Repository ports over an AsyncSession. Callers own commit/rollback."""
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.db import AgentAction, Investment, Strategy
from strategies.base import all_registered


class StrategyRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, strategy_id: str) -> Optional[Strategy]:
        return await self.db.get(Strategy, strategy_id)

    async def list_all(self) -> list[Strategy]:
        result = await self.db.execute(select(Strategy).order_by(Strategy.expected_apy_min, Strategy.name))
        return list(result.scalars().all())

    async def seed_registered(self) -> list[str]:
        """Insert registered templates missing from the table. Existing rows are left untouched."""
        result = await self.db.execute(select(Strategy.name))
        existing = set(result.scalars().all())
        added = []
        for name, template in all_registered().items():
            if name in existing:
                continue
            self.db.add(Strategy.from_template(template))
            added.append(name)
        return added


class InvestmentRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, investment: Investment) -> None:
        self.db.add(investment)
        await self.db.flush()

    async def find_by_id(self, investment_id: str) -> Optional[Investment]:
        return await self.db.get(Investment, investment_id)

    async def find_active_by_user_id(self, user_id: str) -> Optional[Investment]:
        result = await self.db.execute(
            select(Investment).where(Investment.user_id == user_id, Investment.status == "active")
        )
        return result.scalar_one_or_none()


class AgentActionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, action: AgentAction) -> None:
        self.db.add(action)
        await self.db.flush()

    async def find_by_investment_id(self, investment_id: str) -> list[AgentAction]:
        result = await self.db.execute(
            select(AgentAction)
            .where(AgentAction.investment_id == investment_id)
            .order_by(AgentAction.executed_at)
        )
        return list(result.scalars().all())

    async def existing_dedupe_keys(self, keys: Iterable[str]) -> set[str]:
        keys = list(keys)
        if not keys:
            return set()
        result = await self.db.execute(select(AgentAction.dedupe_key).where(AgentAction.dedupe_key.in_(keys)))
        return set(result.scalars().all())

    async def find_pending_placeholder(self, investment_id: str, run_id: Optional[str] = None) -> Optional[AgentAction]:
        q = select(AgentAction).where(
            AgentAction.investment_id == investment_id,
            AgentAction.status == "pending",
            AgentAction.run_id.is_not(None),
        )
        if run_id:
            q = q.where(AgentAction.run_id == run_id)
        result = await self.db.execute(q.order_by(AgentAction.executed_at).limit(1))
        return result.scalar_one_or_none()

    async def find_stale_pending(self, cutoff: datetime) -> list[AgentAction]:
        result = await self.db.execute(
            select(AgentAction)
            .where(
                AgentAction.status == "pending",
                AgentAction.run_id.is_not(None),
                AgentAction.executed_at < cutoff,
            )
            .order_by(AgentAction.executed_at)
        )
        return list(result.scalars().all())
