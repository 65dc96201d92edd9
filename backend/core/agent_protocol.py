"""
Remote agent wire protocol.

Trigger: POST {agent}/execute | {agent}/rebalance -> 202, body ignored.
Callback: POST {api}/investments/{id}/actions/report with AgentResultEnvelope.

Field names on the wire are camelCase.
"""
import hashlib
import json
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.db import Strategy

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)\s*```")

UNPARSED_SUMMARY = "Agent completed. Could not parse structured result."


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReportedPool(WireModel):
    chain: Optional[str] = None
    protocol: Optional[str] = None
    asset: Optional[str] = None


class ReportedAction(WireModel):
    action_type: Optional[str] = None
    pool: Optional[ReportedPool] = None
    amount_usd: Optional[float] = None
    expected_apy: Optional[float] = None
    gas_cost_usd: Optional[float] = None
    status: Optional[str] = None
    tx_hash: Optional[str] = None
    rationale: str = ""


class AgentResultEnvelope(WireModel):
    investment_id: Optional[str] = None
    user_id: Optional[str] = None
    strategy_id: Optional[str] = None
    run_id: Optional[str] = None
    actions: list[ReportedAction] = Field(default_factory=list)
    total_allocated: float = 0
    average_apy: float = 0
    summary: str = "Agent completed execution."
    raw_result: Optional[str] = None
    parsed: bool = Field(default=True, exclude=True)

    def batch_token(self) -> str:
        """runId when the agent echoed it, otherwise a digest of the reported actions."""
        if self.run_id:
            return self.run_id
        # digest ignores action order
        canonical = json.dumps(sorted(
            json.dumps(a.model_dump(by_alias=True), sort_keys=True, separators=(",", ":")) for a in self.actions
        ))
        return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def parse_agent_result(investment_id: str, result_text: str) -> AgentResultEnvelope:
    """
    Parse the agent's final text. Accepts a ```json fenced block or bare JSON.
    Never raises: unparseable text yields an envelope with no actions and the
    raw text preserved for audit.
    """
    match = _JSON_FENCE.search(result_text or "")
    json_str = match.group(1) if match else (result_text or "").strip()
    try:
        envelope = AgentResultEnvelope.model_validate_json(json_str)
    except ValueError:
        return AgentResultEnvelope(
            investment_id=investment_id,
            summary=UNPARSED_SUMMARY,
            raw_result=result_text,
            parsed=False,
        )
    return envelope.model_copy(update={"investment_id": investment_id, "raw_result": result_text})


def strategy_payload(strategy: Strategy) -> dict:
    return {
        "id": strategy.id,
        "name": strategy.name,
        "riskLevel": strategy.risk_level,
        "poolAllocations": [
            {
                "chain": p.chain,
                "protocol": p.protocol,
                "asset": p.asset,
                "allocationPercentage": p.allocation_percentage,
            }
            for p in strategy.pools
        ],
        "rebalanceThreshold": strategy.rebalance_threshold,
        "allowedChains": list(strategy.allowed_chains or []),
    }


def execute_payload(
    *,
    investment_id: str,
    user_id: str,
    run_id: str,
    strategy: Strategy,
    user_amount: float,
    wallet_address: str,
    max_turns: int,
    callback_url: str,
) -> dict:
    return {
        "investmentId": investment_id,
        "userId": user_id,
        "runId": run_id,
        "strategy": strategy_payload(strategy),
        "userAmount": user_amount,
        "walletAddress": wallet_address,
        "maxTurns": max_turns,
        "callbackUrl": callback_url,
    }


def rebalance_payload(
    *,
    investment_id: str,
    user_id: str,
    run_id: str,
    previous_strategy: Strategy,
    new_strategy: Strategy,
    total_amount_usd: float,
    wallet_address: str,
    max_turns: int,
    callback_url: str,
) -> dict:
    return {
        "investmentId": investment_id,
        "userId": user_id,
        "runId": run_id,
        "walletAddress": wallet_address,
        "totalAmountUsd": total_amount_usd,
        "previousStrategy": strategy_payload(previous_strategy),
        "newStrategy": strategy_payload(new_strategy),
        "maxTurns": max_turns,
        "callbackUrl": callback_url,
    }
