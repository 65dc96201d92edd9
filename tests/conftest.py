"""
Pytest configuration.

Run all tests: python -m pytest tests/ -v
"""

import os
import sys
from pathlib import Path

# Make the flat backend/ layout importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.pop("AGENT_SERVICE_URL", None)
os.environ.pop("PENDING_TIMEOUT_MINUTES", None)

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from core.agent_client import AgentClient
from core.config import Settings
from core.database import Base, make_engine, make_session_factory
from core.engine import ExecutionEngine
from core.stream import StreamBroker
from models.db import Strategy
from models.repositories import StrategyRepository


# =============================================================================
# DATABASE
# =============================================================================

@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database with the registered strategies seeded."""
    db_engine = make_engine("sqlite+aiosqlite:///:memory:")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = make_session_factory(db_engine)
    async with factory() as db:
        await StrategyRepository(db).seed_registered()
        await db.commit()
    yield factory
    await db_engine.dispose()


@pytest_asyncio.fixture
async def strategies(session_factory) -> dict[str, Strategy]:
    async with session_factory() as db:
        result = await db.execute(select(Strategy))
        return {s.name: s for s in result.scalars().all()}


# =============================================================================
# ENGINE
# =============================================================================

@pytest.fixture
def test_settings():
    return Settings(
        agent_service_url=None,
        api_public_url="http://api.test/api",
        wallet_address="0x5E047DeB5eb22F4E4A7f2207087369468575e3EF",
    )


@pytest.fixture
def broker():
    return StreamBroker(max_queue=16, max_lifetime_seconds=5, keepalive_seconds=0.05)


class RecordingAgent:
    """httpx MockTransport handler standing in for the remote agent service."""

    def __init__(self, status_code: int = 202):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"status": "accepted"})


@pytest.fixture
def recording_agent():
    return RecordingAgent()


@pytest_asyncio.fixture
async def offline_engine(session_factory, broker, test_settings):
    eng = ExecutionEngine(session_factory, broker, agent_client=None, settings=test_settings)
    yield eng
    await eng.stop()


@pytest_asyncio.fixture
async def online_engine(session_factory, broker, test_settings, recording_agent):
    client = AgentClient("http://agent.test", timeout=1, transport=httpx.MockTransport(recording_agent))
    eng = ExecutionEngine(session_factory, broker, agent_client=client, settings=test_settings)
    yield eng
    await eng.stop()


def drain_queue(sub) -> list[tuple[str, dict]]:
    """Everything queued for a stream subscriber so far."""
    events = []
    while not sub.queue.empty():
        events.append(sub.queue.get_nowait())
    return events


# =============================================================================
# MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
