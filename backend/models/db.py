import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from core.database import Base
from core.errors import LedgerStateError
from strategies.base import PoolAllocation, StrategyTemplate, validate_allocations

JSONType = JSON().with_variant(JSONB(), "postgresql")

ACTION_TYPES = ("supply", "withdraw", "rebalance", "rate_check")
TERMINAL_STATUSES = ("executed", "failed", "skipped")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Strategy(Base):
    __tablename__ = "strategies"
    id = Column(Text, primary_key=True, default=_uuid)
    name = Column(Text, nullable=False, unique=True)
    risk_level = Column(Text, nullable=False)
    description = Column(Text, nullable=False, default="")
    pool_allocations = Column(JSONType, nullable=False, default=list)
    expected_apy_min = Column(Float, nullable=False)
    expected_apy_max = Column(Float, nullable=False)
    rebalance_threshold = Column(Float, nullable=False)
    allowed_chains = Column(JSONType, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @classmethod
    def from_template(cls, template: StrategyTemplate) -> "Strategy":
        return cls(
            id=_uuid(),
            name=template.name,
            risk_level=template.risk_level,
            description=template.description,
            pool_allocations=[p.to_dict() for p in template.pool_allocations],
            expected_apy_min=template.expected_apy_min,
            expected_apy_max=template.expected_apy_max,
            rebalance_threshold=template.rebalance_threshold,
            allowed_chains=list(template.allowed_chains),
        )

    @property
    def pools(self) -> list[PoolAllocation]:
        return [PoolAllocation.from_dict(p) for p in self.pool_allocations or []]

    @property
    def primary_chain(self) -> Optional[str]:
        return self.allowed_chains[0] if self.allowed_chains else None

    def validate_allocations(self) -> None:
        validate_allocations(self.pools)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "risk_level": self.risk_level,
            "description": self.description,
            "pool_allocations": [p.to_dict() for p in self.pools],
            "expected_apy_min": self.expected_apy_min,
            "expected_apy_max": self.expected_apy_max,
            "rebalance_threshold": self.rebalance_threshold,
            "allowed_chains": list(self.allowed_chains or []),
        }


class Investment(Base):
    __tablename__ = "investments"
    __table_args__ = (
        # at most one active investment per user
        Index(
            "uq_investments_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )
    id = Column(Text, primary_key=True, default=_uuid)
    user_id = Column(Text, nullable=False, index=True)
    strategy_id = Column(Text, ForeignKey("strategies.id"), nullable=False)
    status = Column(Text, nullable=False, default="active")
    activated_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    @classmethod
    def create(cls, user_id: str, strategy_id: str) -> "Investment":
        return cls(id=_uuid(), user_id=user_id, strategy_id=strategy_id, status="active", activated_at=_now())

    def deactivate(self) -> None:
        if self.status == "inactive":
            raise LedgerStateError(f"Investment {self.id} is already inactive")
        self.status = "inactive"
        self.deactivated_at = _now()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "strategy_id": self.strategy_id,
            "status": self.status,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "deactivated_at": self.deactivated_at.isoformat() if self.deactivated_at else None,
        }


class AgentAction(Base):
    """
    One ledger row per decision or attempt.

    Lifecycle is pending -> executed | failed | skipped, exactly once.
    Failure and skip reasons are appended to the rationale, never replace it.
    tx_hash is set iff the row is executed.
    """
    __tablename__ = "agent_actions"
    id = Column(Text, primary_key=True, default=_uuid)
    investment_id = Column(Text, ForeignKey("investments.id"), nullable=False, index=True)
    user_id = Column(Text, nullable=False)
    strategy_id = Column(Text, nullable=False)
    action_type = Column(Text, nullable=False)
    chain = Column(Text, nullable=False)
    protocol = Column(Text, nullable=False)
    asset = Column(Text, nullable=False)
    amount = Column(Text, nullable=False, default="0")
    gas_cost_usd = Column(Float, nullable=True)
    expected_apy_before = Column(Float, nullable=True)
    expected_apy_after = Column(Float, nullable=True)
    rationale = Column(Text, nullable=False, default="")
    status = Column(Text, nullable=False, default="pending")
    tx_hash = Column(Text, nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    run_id = Column(Text, nullable=True, index=True)
    dedupe_key = Column(Text, nullable=True, unique=True)

    @classmethod
    def create(
        cls,
        *,
        investment_id: str,
        user_id: str,
        strategy_id: str,
        action_type: str,
        chain: str,
        protocol: str,
        asset: str,
        amount: str,
        rationale: str,
        gas_cost_usd: Optional[float] = None,
        expected_apy_before: Optional[float] = None,
        expected_apy_after: Optional[float] = None,
        run_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> "AgentAction":
        if action_type not in ACTION_TYPES:
            raise ValueError(f"Unknown action type '{action_type}'")
        return cls(
            id=_uuid(),
            investment_id=investment_id,
            user_id=user_id,
            strategy_id=strategy_id,
            action_type=action_type,
            chain=chain,
            protocol=protocol,
            asset=asset,
            amount=amount,
            rationale=rationale,
            status="pending",
            gas_cost_usd=gas_cost_usd,
            expected_apy_before=expected_apy_before,
            expected_apy_after=expected_apy_after,
            tx_hash=None,
            executed_at=_now(),
            run_id=run_id,
            dedupe_key=dedupe_key,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def pool_key(self) -> str:
        return f"{self.chain}:{self.protocol}:{self.asset}"

    def _ensure_pending(self, target: str) -> None:
        if self.is_terminal:
            raise LedgerStateError(f"Agent action {self.id} is already {self.status}, cannot mark {target}")

    def mark_executed(self, tx_hash: str) -> None:
        self._ensure_pending("executed")
        if not tx_hash:
            raise LedgerStateError(f"Agent action {self.id} cannot be executed without a transaction hash")
        self.status = "executed"
        self.tx_hash = tx_hash

    def mark_failed(self, reason: str) -> None:
        self._ensure_pending("failed")
        self.status = "failed"
        self.rationale = f"{self.rationale} | FAILED: {reason}"

    def mark_skipped(self, reason: str) -> None:
        self._ensure_pending("skipped")
        self.status = "skipped"
        self.rationale = f"{self.rationale} | SKIPPED: {reason}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "investment_id": self.investment_id,
            "action_type": self.action_type,
            "chain": self.chain,
            "protocol": self.protocol,
            "asset": self.asset,
            "amount": self.amount,
            "gas_cost_usd": self.gas_cost_usd,
            "expected_apy_before": self.expected_apy_before,
            "expected_apy_after": self.expected_apy_after,
            "rationale": self.rationale,
            "status": self.status,
            "tx_hash": self.tx_hash,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }
