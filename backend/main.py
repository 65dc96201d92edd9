import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from core.agent_client import AgentClient
from core.agent_protocol import AgentResultEnvelope, parse_agent_result
from core.config import settings
from core.database import AsyncSessionLocal, Base, engine, get_db
from core.engine import ExecutionEngine
from core.errors import NotFoundError, register_exception_handlers
from core.onchain import BalanceReader
from core.portfolio import get_portfolio
from core.stream import StreamBroker
from models.repositories import AgentActionRepository, InvestmentRepository, StrategyRepository
from strategies.optimizer import compute_allocations
import strategies  # noqa: F401  (registers strategy templates)

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as db:
        added = await StrategyRepository(db).seed_registered()
        await db.commit()
    if added:
        logger.info(f"Seeded strategies: {', '.join(added)}")

    broker = StreamBroker(
        max_queue=settings.stream_queue_size,
        max_lifetime_seconds=settings.stream_max_lifetime_seconds,
        keepalive_seconds=settings.stream_keepalive_seconds,
    )
    agent_client = AgentClient(settings.agent_service_url) if settings.agent_enabled else None
    app.state.broker = broker
    app.state.reader = BalanceReader(settings.rpc_url)
    app.state.engine = ExecutionEngine(AsyncSessionLocal, broker, agent_client)
    await app.state.engine.start()
    yield
    await app.state.engine.stop()
    broker.close()


app = FastAPI(title="Autopilot Yield", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_exception_handlers(app)


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


def get_broker(request: Request) -> StreamBroker:
    return request.app.state.broker


def get_reader(request: Request) -> BalanceReader:
    return request.app.state.reader


# ── Schemas ──────────────────────────────────────────────────────────────────

class StartInvesting(BaseModel):
    user_id: str = Field(min_length=1)
    strategy_id: str = Field(min_length=1)
    user_amount: Optional[float] = None


class SwitchStrategy(BaseModel):
    user_id: str = Field(min_length=1)
    new_strategy_id: str = Field(min_length=1)
    user_amount: float = 0


class ExecuteInvestment(BaseModel):
    investment_id: str = Field(min_length=1)
    user_amount: float


class AllocationPreview(BaseModel):
    amount_usd: float
    rates: dict[str, float] = {}
    gas_price_usd: float = 0
    current_apy: Optional[float] = None


class ProgressEvent(BaseModel):
    event: str
    data: dict = {}


# ── Strategies ────────────────────────────────────────────────────────────────

@app.get("/api/strategies")
async def list_strategies(db: AsyncSession = Depends(get_db)):
    rows = await StrategyRepository(db).list_all()
    return [r.to_dict() for r in rows]


@app.get("/api/strategies/{strategy_id}")
async def get_strategy(strategy_id: str, db: AsyncSession = Depends(get_db)):
    row = await StrategyRepository(db).find_by_id(strategy_id)
    if not row:
        raise HTTPException(status_code=404, detail="Strategy not found")
    return row.to_dict()


@app.post("/api/strategies/{strategy_id}/preview")
async def preview_allocations(strategy_id: str, body: AllocationPreview, db: AsyncSession = Depends(get_db)):
    """Dry run of the allocation decision engine over caller-supplied rates."""
    row = await StrategyRepository(db).find_by_id(strategy_id)
    if not row:
        raise HTTPException(status_code=404, detail="Strategy not found")
    decisions = compute_allocations(
        pool_allocations=row.pools,
        total_amount_usd=body.amount_usd,
        current_rates=body.rates,
        gas_price=body.gas_price_usd,
        rebalance_threshold=row.rebalance_threshold,
        current_apy=body.current_apy,
    )
    return {
        "strategy_id": row.id,
        "decisions": [d.to_dict() for d in decisions],
        "executable_usd": sum(d.amount_usd for d in decisions if d.should_execute),
    }


# ── Investments ───────────────────────────────────────────────────────────────

@app.post("/api/investments/start", status_code=201)
async def start_investing(body: StartInvesting, engine_: ExecutionEngine = Depends(get_engine)):
    return await engine_.start_investing(body.user_id, body.strategy_id, body.user_amount)


@app.patch("/api/investments/switch")
async def switch_strategy(body: SwitchStrategy, engine_: ExecutionEngine = Depends(get_engine)):
    return await engine_.switch_strategy(body.user_id, body.new_strategy_id, body.user_amount)


@app.post("/api/investments/execute", status_code=202)
async def execute_investment(body: ExecuteInvestment, engine_: ExecutionEngine = Depends(get_engine)):
    return await engine_.execute_investment(body.investment_id, body.user_amount)


@app.get("/api/investments/active")
async def get_active_investment(user_id: str, db: AsyncSession = Depends(get_db)):
    investment = await InvestmentRepository(db).find_active_by_user_id(user_id)
    if not investment:
        raise NotFoundError("Active investment for user", user_id)
    strategy = await StrategyRepository(db).find_by_id(investment.strategy_id)
    if not strategy:
        raise NotFoundError("Strategy", investment.strategy_id)
    actions = await AgentActionRepository(db).find_by_investment_id(investment.id)
    last = actions[-1] if actions else None
    return {
        "investment_id": investment.id,
        "strategy": strategy.to_dict(),
        "status": investment.status,
        "activated_at": investment.activated_at.isoformat(),
        "total_actions": len(actions),
        "last_agent_action": {
            "action_type": last.action_type,
            "status": last.status,
            "executed_at": last.executed_at.isoformat(),
        } if last else None,
    }


@app.get("/api/investments/portfolio")
async def portfolio(user_id: str, db: AsyncSession = Depends(get_db), reader: BalanceReader = Depends(get_reader)):
    """Ledger + on-chain balances, recomputed on every call."""
    result = await get_portfolio(db, user_id, reader)
    if result is None:
        raise NotFoundError("Active investment for user", user_id)
    return result.to_dict()


@app.get("/api/investments/{investment_id}/actions")
async def list_actions(investment_id: str, db: AsyncSession = Depends(get_db)):
    rows = await AgentActionRepository(db).find_by_investment_id(investment_id)
    return {"investment_id": investment_id, "actions": [r.to_dict() for r in rows]}


@app.post("/api/investments/{investment_id}/actions/report")
async def report_actions(investment_id: str, request: Request, engine_: ExecutionEngine = Depends(get_engine)):
    """Agent callback. A body that is not a valid envelope is kept as raw text instead of rejected."""
    raw = (await request.body()).decode("utf-8", errors="replace")
    try:
        envelope = AgentResultEnvelope.model_validate_json(raw)
    except ValidationError:
        logger.warning(f"[{investment_id}] Unstructured agent report, parsing as text")
        envelope = parse_agent_result(investment_id, raw)
    if envelope.parsed and not envelope.actions and envelope.raw_result:
        # agent forwarded its final text instead of structured actions
        reparsed = parse_agent_result(investment_id, envelope.raw_result)
        if reparsed.parsed:
            envelope = reparsed.model_copy(update={
                "user_id": envelope.user_id,
                "strategy_id": envelope.strategy_id,
                "run_id": envelope.run_id or reparsed.run_id,
            })
    return await engine_.report_agent_results(investment_id, envelope)


@app.post("/api/investments/{investment_id}/events", status_code=202)
async def forward_progress(investment_id: str, body: ProgressEvent, engine_: ExecutionEngine = Depends(get_engine)):
    try:
        delivered = engine_.publish_progress(investment_id, body.event, body.data)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"delivered": delivered}


# ── Live stream ───────────────────────────────────────────────────────────────

@app.get("/api/stream/{investment_id}")
async def stream(investment_id: str, request: Request, broker: StreamBroker = Depends(get_broker)):
    sub = broker.subscribe(investment_id)
    return StreamingResponse(
        broker.stream(sub, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── Ops ───────────────────────────────────────────────────────────────────────

@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/agent-stats")
async def agent_stats(engine_: ExecutionEngine = Depends(get_engine)):
    """Trigger call counts, error rates, and avg latency per agent endpoint."""
    client = engine_.agent_client
    if client is None:
        return {"enabled": False, "totals": None, "endpoints": []}
    return {"enabled": True, "totals": client.stats.totals(), "endpoints": client.stats.summary()}
