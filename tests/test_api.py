"""
HTTP surface through an ASGI transport. The lifespan is not run: app state and
the database session are wired to the test fixtures instead.

Run: python -m pytest tests/test_api.py -v
"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from core.database import get_db
from main import app


@pytest.fixture
def reader():
    reader = AsyncMock()
    reader.balance_of.side_effect = [0, 520_000_000]
    return reader


@pytest_asyncio.fixture
async def client(session_factory, offline_engine, broker, reader):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.engine = offline_engine
    app.state.broker = broker
    app.state.reader = reader
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://api.test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_list_and_get_strategies(client):
    r = await client.get("/api/strategies")
    assert r.status_code == 200
    names = [s["name"] for s in r.json()]
    assert names == ["Safe Harbor", "Steady Growth", "Max Yield"]

    strategy_id = r.json()[1]["id"]
    r = await client.get(f"/api/strategies/{strategy_id}")
    assert r.json()["risk_level"] == "balanced"
    assert len(r.json()["pool_allocations"]) == 2

    r = await client.get("/api/strategies/nope")
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_preview_allocations(client, strategies):
    strategy = strategies["Steady Growth"]
    r = await client.post(f"/api/strategies/{strategy.id}/preview", json={
        "amount_usd": 1000,
        "rates": {"ethereum:Aave v3:USDC": 5.2, "base:Aave v3:USDC": 0.0001},
        "gas_price_usd": 0.5,
    })
    assert r.status_code == 200
    body = r.json()
    assert [d["amount_usd"] for d in body["decisions"]] == [600, 400]
    assert [d["should_execute"] for d in body["decisions"]] == [True, False]
    assert body["executable_usd"] == 600


@pytest.mark.asyncio
async def test_start_then_conflict(client, strategies):
    payload = {"user_id": "user-1", "strategy_id": strategies["Safe Harbor"].id}
    r = await client.post("/api/investments/start", json=payload)
    assert r.status_code == 201
    assert r.json()["status"] == "active"

    r = await client.post("/api/investments/start", json=payload)
    assert r.status_code == 409
    assert r.json()["error"] == "ConflictError"


@pytest.mark.asyncio
async def test_start_unknown_strategy(client):
    r = await client.post("/api/investments/start", json={"user_id": "user-1", "strategy_id": "nope"})
    assert r.status_code == 404
    assert r.json()["detail"] == "Strategy 'nope' not found"


@pytest.mark.asyncio
async def test_start_validates_body(client):
    r = await client.post("/api/investments/start", json={"user_id": ""})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_switch_and_active(client, strategies, offline_engine):
    await client.post("/api/investments/start", json={"user_id": "user-1", "strategy_id": strategies["Safe Harbor"].id})
    r = await client.patch("/api/investments/switch", json={
        "user_id": "user-1", "new_strategy_id": strategies["Max Yield"].id, "user_amount": 1000,
    })
    assert r.status_code == 200
    await offline_engine.drain()

    r = await client.get("/api/investments/active", params={"user_id": "user-1"})
    assert r.status_code == 200
    body = r.json()
    assert body["strategy"]["name"] == "Max Yield"
    assert body["total_actions"] == 1
    assert body["last_agent_action"]["status"] == "pending"


@pytest.mark.asyncio
async def test_active_without_investment(client):
    r = await client.get("/api/investments/active", params={"user_id": "nobody"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_execute_accepted(client, strategies, offline_engine):
    started = (await client.post(
        "/api/investments/start", json={"user_id": "user-1", "strategy_id": strategies["Safe Harbor"].id}
    )).json()
    r = await client.post("/api/investments/execute", json={
        "investment_id": started["investment_id"], "user_amount": 250,
    })
    assert r.status_code == 202
    assert r.json()["status"] == "executing"
    await offline_engine.drain()

    r = await client.get(f"/api/investments/{started['investment_id']}/actions")
    [action] = r.json()["actions"]
    assert action["action_type"] == "rate_check"
    assert action["amount"] == "250.0"


@pytest.mark.asyncio
async def test_report_structured_envelope_is_idempotent(client, strategies, offline_engine):
    started = (await client.post(
        "/api/investments/start",
        json={"user_id": "user-1", "strategy_id": strategies["Safe Harbor"].id, "user_amount": 500},
    )).json()
    await offline_engine.drain()
    investment_id = started["investment_id"]
    report = {
        "investmentId": investment_id,
        "actions": [{
            "actionType": "supply",
            "pool": {"chain": "ethereum", "protocol": "Aave v3", "asset": "USDC"},
            "amountUsd": 500,
            "expectedApy": 4.1,
            "status": "executed",
            "txHash": "0xabc",
        }],
        "totalAllocated": 500,
        "averageApy": 4.1,
        "summary": "Supplied $500",
    }

    first = await client.post(f"/api/investments/{investment_id}/actions/report", json=report)
    second = await client.post(f"/api/investments/{investment_id}/actions/report", json=report)

    assert first.json()["recorded"] == 1
    assert second.json() == {"investment_id": investment_id, "recorded": 0, "duplicates": 1}
    actions = (await client.get(f"/api/investments/{investment_id}/actions")).json()["actions"]
    assert sorted(a["status"] for a in actions) == ["executed", "skipped"]

    r = await client.get("/api/investments/portfolio", params={"user_id": "user-1"})
    assert r.status_code == 200
    body = r.json()
    assert body["total_invested_usd"] == 500
    assert body["total_earned_usd"] == 20


@pytest.mark.asyncio
async def test_report_unstructured_body(client, strategies, offline_engine):
    started = (await client.post(
        "/api/investments/start",
        json={"user_id": "user-1", "strategy_id": strategies["Safe Harbor"].id, "user_amount": 500},
    )).json()
    await offline_engine.drain()
    investment_id = started["investment_id"]

    r = await client.post(
        f"/api/investments/{investment_id}/actions/report",
        content="Sorry, the RPC was down and nothing was supplied.",
        headers={"Content-Type": "text/plain"},
    )

    assert r.status_code == 200
    assert r.json()["recorded"] == 0
    [placeholder] = (await client.get(f"/api/investments/{investment_id}/actions")).json()["actions"]
    assert placeholder["status"] == "skipped"
    assert "RPC was down" in placeholder["rationale"]


@pytest.mark.asyncio
async def test_report_final_text_in_raw_result(client, strategies, offline_engine):
    started = (await client.post(
        "/api/investments/start",
        json={"user_id": "user-1", "strategy_id": strategies["Safe Harbor"].id, "user_amount": 500},
    )).json()
    await offline_engine.drain()
    investment_id = started["investment_id"]
    final_text = "All done.\n```json\n" + json.dumps({
        "actions": [{"actionType": "supply", "amountUsd": 500, "status": "executed", "txHash": "0xdef"}],
        "summary": "Supplied $500",
    }) + "\n```"

    r = await client.post(
        f"/api/investments/{investment_id}/actions/report",
        json={"investmentId": investment_id, "rawResult": final_text},
    )

    assert r.json()["recorded"] == 1


@pytest.mark.asyncio
async def test_portfolio_without_investment(client):
    r = await client.get("/api/investments/portfolio", params={"user_id": "nobody"})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_portfolio_rpc_failure_is_503(client, strategies, reader):
    reader.balance_of.side_effect = ConnectionError("rpc down")
    await client.post("/api/investments/start", json={"user_id": "user-1", "strategy_id": strategies["Safe Harbor"].id})

    r = await client.get("/api/investments/portfolio", params={"user_id": "user-1"})
    assert r.status_code == 503
    assert r.json()["error"] == "OnChainReadError"


@pytest.mark.asyncio
async def test_forward_progress(client, broker):
    sub = broker.subscribe("inv-1")
    r = await client.post("/api/investments/inv-1/events", json={"event": "tool_start", "data": {"tool": "get_rates"}})
    assert r.status_code == 202
    assert r.json() == {"delivered": 1}
    assert sub.queue.get_nowait() == ("tool_start", {"tool": "get_rates"})


@pytest.mark.asyncio
@pytest.mark.parametrize("event", ["done", "result", "bogus"])
async def test_forward_progress_rejects_terminal_and_unknown_events(client, event):
    r = await client.post("/api/investments/inv-1/events", json={"event": event, "data": {}})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_agent_stats_offline(client):
    r = await client.get("/api/agent-stats")
    assert r.json() == {"enabled": False, "totals": None, "endpoints": []}
