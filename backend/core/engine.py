"""
Execution Engine
================
Turns user intent (start, switch, execute) into detached agent runs and
records every outcome in the agent-action ledger.

Run flow:
  placeholder (pending rate_check) → POST agent /execute|/rebalance → 202
    → ... agent works out-of-band, streaming progress ...
    → callback report → terminal ledger rows → placeholder resolved → `done`

Every run leaves a ledger trace: a failed trigger marks its placeholder failed,
offline mode leaves it pending, a callback resolves it. Callers never wait for
the run itself.
"""
import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.agent_client import AgentClient
from core.agent_protocol import AgentResultEnvelope, ReportedAction, execute_payload, rebalance_payload
from core.config import Settings, settings as default_settings
from core.errors import ConflictError, DispatchError, NotFoundError
from core.stream import StreamBroker
from models.db import ACTION_TYPES, AgentAction, Investment, Strategy
from models.repositories import AgentActionRepository, InvestmentRepository, StrategyRepository

logger = logging.getLogger(__name__)

RAW_RESULT_AUDIT_CHARS = 500
FINISHED_RUNS_KEPT = 10_000


class ExecutionEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        broker: StreamBroker,
        agent_client: Optional[AgentClient] = None,
        settings: Settings = default_settings,
    ):
        self.session_factory = session_factory
        self.broker = broker
        self.agent_client = agent_client
        self.settings = settings
        self.scheduler = AsyncIOScheduler()
        self._tasks: set[asyncio.Task] = set()
        # run ids whose `done` went out, oldest first
        self._finished_runs: OrderedDict[str, None] = OrderedDict()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self):
        timeout = self.settings.pending_timeout_minutes
        if timeout:
            self.scheduler.add_job(
                self.expire_stale_pending,
                "interval",
                seconds=self.settings.reaper_interval_seconds,
                id="pending_reaper",
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"Pending reaper scheduled: placeholders expire after {timeout} min")
        self.scheduler.start()
        mode = f"agent at {self.agent_client.base_url}" if self.agent_client else "offline (no agent service)"
        logger.info(f"Execution engine started, {mode}")

    async def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def drain(self):
        """Wait for every detached run spawned so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro, investment_id: str, strategy_id: str, user_id: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)

        def _finished(t: asyncio.Task):
            self._tasks.discard(t)
            if t.cancelled() or t.exception() is None:
                return
            logger.error(f"[{investment_id}] Agent run crashed: {t.exception()!r}")
            # the run's own error channel: record the crash in the ledger
            follow_up = asyncio.ensure_future(
                self._record_crash(investment_id, user_id, strategy_id, repr(t.exception()))
            )
            self._tasks.add(follow_up)
            follow_up.add_done_callback(self._tasks.discard)

        task.add_done_callback(_finished)
        return task

    # ── Use cases ────────────────────────────────────────────────────────────

    async def start_investing(self, user_id: str, strategy_id: str, user_amount: Optional[float] = None) -> dict:
        async with self.session_factory() as db:
            strategy = await StrategyRepository(db).find_by_id(strategy_id)
            if strategy is None:
                raise NotFoundError("Strategy", strategy_id)
            investments = InvestmentRepository(db)
            if await investments.find_active_by_user_id(user_id):
                raise ConflictError("You already have an active investment. Use the switch endpoint instead.")
            investment = Investment.create(user_id, strategy.id)
            try:
                await investments.save(investment)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConflictError("You already have an active investment. Use the switch endpoint instead.")

        logger.info(f"[{investment.id}] User {user_id} started '{strategy.name}'")
        if user_amount and user_amount > 0:
            self._spawn(self.run_execution(investment, strategy, user_amount), investment.id, strategy.id, user_id)

        return {
            "investment_id": investment.id,
            "strategy_id": strategy.id,
            "strategy_name": strategy.name,
            "status": investment.status,
            "activated_at": investment.activated_at.isoformat(),
            "agent_message": "Agent is processing your investment..." if user_amount else None,
        }

    async def switch_strategy(self, user_id: str, new_strategy_id: str, total_amount_usd: float = 0) -> dict:
        async with self.session_factory() as db:
            strategies = StrategyRepository(db)
            investments = InvestmentRepository(db)
            new_strategy = await strategies.find_by_id(new_strategy_id)
            if new_strategy is None:
                raise NotFoundError("Strategy", new_strategy_id)
            current = await investments.find_active_by_user_id(user_id)
            if current is None:
                raise NotFoundError("Active investment for user", user_id)
            if current.strategy_id == new_strategy_id:
                raise ConflictError("You are already invested in this strategy.")
            old_strategy = await strategies.find_by_id(current.strategy_id)

            current.deactivate()
            successor = Investment.create(user_id, new_strategy.id)
            try:
                await investments.save(current)
                await investments.save(successor)
                await db.commit()
            except IntegrityError:
                # a concurrent switch for the same user committed first
                await db.rollback()
                raise ConflictError("Another strategy switch for this user is already in progress.")

        logger.info(f"[{successor.id}] User {user_id} switched '{old_strategy.name}' -> '{new_strategy.name}'")
        self._spawn(
            self.trigger_rebalance(successor, old_strategy, new_strategy, total_amount_usd),
            successor.id, new_strategy.id, user_id,
        )
        return {
            "investment_id": successor.id,
            "previous_strategy": {"id": old_strategy.id, "name": old_strategy.name},
            "new_strategy": {"id": new_strategy.id, "name": new_strategy.name},
            "status": successor.status,
            "activated_at": successor.activated_at.isoformat(),
            "agent_message": "Rebalancing agent is processing your strategy switch...",
        }

    async def execute_investment(self, investment_id: str, user_amount: float) -> dict:
        async with self.session_factory() as db:
            investment = await InvestmentRepository(db).find_by_id(investment_id)
            if investment is None:
                raise NotFoundError("Investment", investment_id)
            strategy = await StrategyRepository(db).find_by_id(investment.strategy_id)
            if strategy is None:
                raise NotFoundError("Strategy", investment.strategy_id)

        self._spawn(self.run_execution(investment, strategy, user_amount), investment.id, strategy.id, investment.user_id)
        return {
            "investment_id": investment_id,
            "status": "executing",
            "message": "Agent is processing your investment...",
        }

    # ── Runs ─────────────────────────────────────────────────────────────────

    async def run_execution(self, investment: Investment, strategy: Strategy, user_amount: float) -> None:
        run_id = str(uuid.uuid4())
        if self.agent_client:
            rationale = f"Agent dispatched: allocating ${user_amount} across {strategy.name} pools (run {run_id})."
        else:
            rationale = (
                f"Agent queued: will allocate ${user_amount} across {strategy.name} pools. "
                "Set AGENT_SERVICE_URL to enable live execution."
            )
        placeholder = await self._create_placeholder(investment, strategy, run_id, user_amount, rationale)
        payload = execute_payload(
            investment_id=investment.id,
            user_id=investment.user_id,
            run_id=run_id,
            strategy=strategy,
            user_amount=user_amount,
            wallet_address=self.settings.wallet_address,
            max_turns=self.settings.execute_max_turns,
            callback_url=self._callback_url(investment.id),
        )
        await self._dispatch(placeholder, "execute", payload)

    async def trigger_rebalance(
        self,
        investment: Investment,
        previous_strategy: Strategy,
        new_strategy: Strategy,
        total_amount_usd: float,
    ) -> None:
        run_id = str(uuid.uuid4())
        rationale = (
            f"Rebalance queued: withdraw from {previous_strategy.name} and supply to {new_strategy.name} pools"
        )
        if self.agent_client:
            rationale += f" (run {run_id})."
        else:
            rationale += ". Set AGENT_SERVICE_URL to enable live execution."
        placeholder = await self._create_placeholder(investment, new_strategy, run_id, total_amount_usd, rationale)
        payload = rebalance_payload(
            investment_id=investment.id,
            user_id=investment.user_id,
            run_id=run_id,
            previous_strategy=previous_strategy,
            new_strategy=new_strategy,
            total_amount_usd=total_amount_usd,
            wallet_address=self.settings.wallet_address,
            max_turns=self.settings.rebalance_max_turns,
            callback_url=self._callback_url(investment.id),
        )
        await self._dispatch(placeholder, "rebalance", payload)

    async def _create_placeholder(
        self, investment: Investment, strategy: Strategy, run_id: str, amount: float, rationale: str
    ) -> AgentAction:
        placeholder = AgentAction.create(
            investment_id=investment.id,
            user_id=investment.user_id,
            strategy_id=strategy.id,
            action_type="rate_check",
            chain=strategy.primary_chain or self.settings.default_chain,
            protocol=self.settings.default_protocol,
            asset=self.settings.default_asset,
            amount=str(amount),
            rationale=rationale,
            run_id=run_id,
        )
        async with self.session_factory() as db:
            await AgentActionRepository(db).save(placeholder)
            await db.commit()
        return placeholder

    async def _dispatch(self, placeholder: AgentAction, kind: str, payload: dict) -> None:
        investment_id = placeholder.investment_id
        if self.agent_client is None:
            logger.info(f"[{investment_id}] AGENT_SERVICE_URL not set, {kind} run {placeholder.run_id} left pending")
            self.broker.publish(investment_id, "status", {"description": f"{kind.capitalize()} queued, agent service offline"})
            self._finish_run(investment_id, placeholder.run_id, "queued")
            return

        self.broker.publish(investment_id, "status", {"description": f"Dispatching {kind} to agent"})
        try:
            if kind == "rebalance":
                await self.agent_client.rebalance(payload)
            else:
                await self.agent_client.execute(payload)
        except DispatchError as e:
            logger.error(f"[{investment_id}] Agent {kind} dispatch failed: {e.message}")
            await self._fail_placeholder(placeholder.id, f"Agent execution failed: {e.message}")
            self.broker.publish(investment_id, "error", {"message": e.message})
            self._finish_run(investment_id, placeholder.run_id, "failed")
            return
        self.broker.publish(investment_id, "status", {"description": "Agent accepted the run"})

    async def _fail_placeholder(self, action_id: str, reason: str) -> None:
        async with self.session_factory() as db:
            action = await db.get(AgentAction, action_id)
            action.mark_failed(reason)
            await db.commit()

    async def _record_crash(self, investment_id: str, user_id: str, strategy_id: str, reason: str) -> None:
        async with self.session_factory() as db:
            action = AgentAction.create(
                investment_id=investment_id,
                user_id=user_id,
                strategy_id=strategy_id,
                action_type="rate_check",
                chain=self.settings.default_chain,
                protocol=self.settings.default_protocol,
                asset=self.settings.default_asset,
                amount="0",
                rationale=f"Agent execution failed: {reason}",
            )
            action.mark_failed(reason)
            await AgentActionRepository(db).save(action)
            await db.commit()
        self.broker.publish(investment_id, "error", {"message": reason})
        self.broker.publish(investment_id, "done", {"outcome": "failed"})

    def _finish_run(self, investment_id: str, run_id: str, outcome: str) -> None:
        """Emit `done` for a run, at most once per run id."""
        if run_id in self._finished_runs:
            return
        self._finished_runs[run_id] = None
        if len(self._finished_runs) > FINISHED_RUNS_KEPT:
            self._finished_runs.popitem(last=False)
        self.broker.publish(investment_id, "done", {"run_id": run_id, "outcome": outcome})

    def _callback_url(self, investment_id: str) -> str:
        return f"{self.settings.callback_base_url}/investments/{investment_id}/actions/report"

    # ── Callback sink ────────────────────────────────────────────────────────

    async def report_agent_results(self, investment_id: str, envelope: AgentResultEnvelope) -> dict:
        """
        Persist a run's reported actions as terminal ledger rows.
        Redelivery of the same envelope is a no-op. Rows carrying a txHash are
        keyed by investment, txHash, pool and action type; the rest by
        investment, batch, position, pool and action type.
        """
        batch = envelope.batch_token()
        async with self.session_factory() as db:
            investment = await InvestmentRepository(db).find_by_id(investment_id)
            if investment is None:
                raise NotFoundError("Investment", investment_id)
            user_id = envelope.user_id or investment.user_id
            strategy_id = envelope.strategy_id or investment.strategy_id
            actions = AgentActionRepository(db)

            rows = [
                self._ledger_row(investment_id, user_id, strategy_id, reported, batch, i)
                for i, reported in enumerate(envelope.actions)
            ]
            seen = await actions.existing_dedupe_keys(r.dedupe_key for r in rows)
            fresh = []
            for r in rows:
                if r.dedupe_key not in seen:
                    seen.add(r.dedupe_key)
                    fresh.append(r)
            for row in fresh:
                db.add(row)

            placeholder = await actions.find_pending_placeholder(investment_id, envelope.run_id)
            if placeholder is not None and (fresh or not rows):
                placeholder.mark_skipped(self._resolution_note(envelope))

            try:
                await db.commit()
            except IntegrityError:
                # a concurrent delivery of the same batch won the race
                await db.rollback()
                logger.warning(f"[{investment_id}] Duplicate agent report for batch {batch} ignored")
                return {"investment_id": investment_id, "recorded": 0, "duplicates": len(rows)}

        resolved = placeholder is not None and placeholder.is_terminal
        logger.info(
            f"[{investment_id}] Agent report batch {batch}: {len(fresh)} recorded, "
            f"{len(rows) - len(fresh)} duplicate"
        )
        if fresh or resolved:
            self.broker.publish(investment_id, "result", {
                "text": envelope.summary,
                "actions": len(fresh),
                "total_allocated": envelope.total_allocated,
                "average_apy": envelope.average_apy,
            })
        if resolved:
            self._finish_run(investment_id, placeholder.run_id, "reported")
        return {"investment_id": investment_id, "recorded": len(fresh), "duplicates": len(rows) - len(fresh)}

    def _ledger_row(
        self, investment_id: str, user_id: str, strategy_id: str, reported: ReportedAction, batch: str, position: int
    ) -> AgentAction:
        pool = reported.pool
        chain = (pool and pool.chain) or self.settings.default_chain
        protocol = (pool and pool.protocol) or self.settings.default_protocol
        asset = (pool and pool.asset) or self.settings.default_asset
        action_type = reported.action_type if reported.action_type in ACTION_TYPES else "supply"

        row = AgentAction.create(
            investment_id=investment_id,
            user_id=user_id,
            strategy_id=strategy_id,
            action_type=action_type,
            chain=chain,
            protocol=protocol,
            asset=asset,
            amount=str(reported.amount_usd or 0),
            rationale=reported.rationale,
            gas_cost_usd=reported.gas_cost_usd,
            expected_apy_after=reported.expected_apy,
            dedupe_key=self._dedupe_key(investment_id, batch, position, reported.tx_hash, chain, protocol, asset, action_type),
        )
        if reported.status == "executed" and reported.tx_hash:
            row.mark_executed(reported.tx_hash)
        elif reported.status == "executed":
            row.mark_failed("Agent reported execution without a transaction hash")
        elif reported.status == "failed":
            row.mark_failed("Agent reported failure")
        elif reported.status == "skipped":
            row.mark_skipped("Agent reported skip")
        else:
            row.mark_failed(f"Agent reported unknown status '{reported.status}'")
        return row

    @staticmethod
    def _dedupe_key(investment_id, batch, position, tx_hash, chain, protocol, asset, action_type) -> str:
        # a transaction hash identifies the action whatever batch or position it arrives in
        if tx_hash:
            return f"{investment_id}:tx:{tx_hash}:{chain}:{protocol}:{asset}:{action_type}"
        return f"{investment_id}:{batch}:{position}:{chain}:{protocol}:{asset}:{action_type}"

    @staticmethod
    def _resolution_note(envelope: AgentResultEnvelope) -> str:
        note = f"Agent run reported {len(envelope.actions)} action(s): {envelope.summary}"
        if not envelope.parsed and envelope.raw_result:
            note += f" | raw: {envelope.raw_result[:RAW_RESULT_AUDIT_CHARS]}"
        return note

    # ── Progress forwarding ──────────────────────────────────────────────────

    def publish_progress(self, investment_id: str, event: str, data: dict) -> int:
        if event in ("result", "done"):
            raise ValueError(f"'{event}' is emitted by the engine when the run is reported")
        return self.broker.publish(investment_id, event, data)

    # ── Reaper ───────────────────────────────────────────────────────────────

    async def expire_stale_pending(self) -> int:
        """Fail placeholders whose run never called back. Only scheduled when a timeout is configured."""
        timeout = self.settings.pending_timeout_minutes
        if not timeout:
            return 0
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=timeout)
        async with self.session_factory() as db:
            stale = await AgentActionRepository(db).find_stale_pending(cutoff)
            for action in stale:
                action.mark_failed(f"No agent callback received within {timeout} minutes")
            await db.commit()
        for action in stale:
            logger.warning(f"[{action.investment_id}] Run {action.run_id} expired without a callback")
            if action.run_id not in self._finished_runs:
                self.broker.publish(action.investment_id, "error", {"message": "Agent run timed out"})
            self._finish_run(action.investment_id, action.run_id, "expired")
        return len(stale)
