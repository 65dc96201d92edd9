"""
Remote agent service client.
The agent answers 202 immediately and reports back through the callback
endpoint, so nothing in the trigger response body is relied upon.

Tracks per-endpoint dispatch outcomes and latency in memory.
"""
import time
import logging
import httpx
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Optional
from core.config import settings
from core.errors import DispatchError

logger = logging.getLogger(__name__)


# ── In-memory stats ───────────────────────────────────────────────────────────

DISPATCH_OUTCOMES = ("accepted", "rejected", "timeout", "unreachable")


class DispatchStats:
    """Trigger outcomes and latency per agent endpoint since process start."""

    def __init__(self):
        self._outcomes: dict[str, Counter] = defaultdict(Counter)
        self._latency_ms: dict[str, float] = defaultdict(float)
        self.started_at = datetime.now(timezone.utc)

    def record(self, label: str, outcome: str, elapsed_ms: float):
        self._outcomes[label][outcome] += 1
        self._latency_ms[label] += elapsed_ms

    def summary(self) -> list[dict]:
        rows = []
        for label in sorted(self._outcomes):
            counts = self._outcomes[label]
            calls = sum(counts.values())
            rows.append({
                "endpoint": label,
                "calls": calls,
                "errors": calls - counts["accepted"],
                "outcomes": {o: counts[o] for o in DISPATCH_OUTCOMES},
                "avg_ms": round(self._latency_ms[label] / calls, 1),
            })
        return rows

    def totals(self) -> dict:
        calls = sum(sum(c.values()) for c in self._outcomes.values())
        accepted = sum(c["accepted"] for c in self._outcomes.values())
        return {
            "total_calls": calls,
            "total_errors": calls - accepted,
            "uptime_seconds": int((datetime.now(timezone.utc) - self.started_at).total_seconds()),
        }


# ── Client ────────────────────────────────────────────────────────────────────

class AgentClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = settings.agent_timeout_seconds,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.stats = DispatchStats()
        self._transport = transport

    async def _post(self, label: str, path: str, payload: dict) -> None:
        t0 = time.monotonic()
        outcome = "accepted"
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                r = await client.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
            if r.status_code != 202:
                outcome = "rejected"
                raise DispatchError(f"Agent service returned {r.status_code}")
        except httpx.TimeoutException:
            outcome = "timeout"
            raise DispatchError(f"Agent service did not acknowledge within {self.timeout}s")
        except httpx.HTTPError as e:
            outcome = "unreachable"
            raise DispatchError(f"Agent service unreachable: {type(e).__name__}: {e}")
        finally:
            self.stats.record(label, outcome, (time.monotonic() - t0) * 1000)

    async def execute(self, payload: dict) -> None:
        await self._post("POST /execute", "/execute", payload)
        logger.info(f"[{payload['investmentId']}] Agent accepted execute run {payload['runId']}")

    async def rebalance(self, payload: dict) -> None:
        await self._post("POST /rebalance", "/rebalance", payload)
        logger.info(f"[{payload['investmentId']}] Agent accepted rebalance run {payload['runId']}")
