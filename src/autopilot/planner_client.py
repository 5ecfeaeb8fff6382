# src/autopilot/planner_client.py
from __future__ import annotations

import json
import logging
import os
from typing import Optional

from pydantic import ValidationError

from core.models import TraderConfig
from .planner_client_gpt import LLMPlannerClient, OracleConfigError, OracleError
from .schemas import MarketSnapshot, OracleDecision, flat_plan, validate_plan

log = logging.getLogger(__name__)

# Env
PROVIDER = os.getenv("PLANNER_PROVIDER", "llm").strip().lower()   # "llm" | "flat"


class FlatPlanner:
    """
    Never trades. Used when the oracle is disabled; the tick still runs exits,
    equity sampling and status narration.
    """
    provider = "flat"

    def decide(self, snapshot: MarketSnapshot, cfg: TraderConfig) -> OracleDecision:
        return OracleDecision(plan=flat_plan(), provider=self.provider, model="none")


class OraclePlanner:
    """
    Wraps the LLM client so a decision is always produced: any failure
    (missing key, HTTP error, timeout, invalid JSON, schema violation,
    out-of-universe symbol) becomes FLAT with the error recorded.
    """
    def __init__(self, client: Optional[LLMPlannerClient] = None) -> None:
        self._client = client

    @property
    def provider(self) -> str:
        return LLMPlannerClient.provider

    def _get_client(self) -> LLMPlannerClient:
        if self._client is None:
            self._client = LLMPlannerClient()
        return self._client

    def decide(self, snapshot: MarketSnapshot, cfg: TraderConfig) -> OracleDecision:
        raw: Optional[str] = None
        try:
            client = self._get_client()
            raw = client.complete(snapshot, cfg)
            plan = validate_plan(json.loads(raw), cfg.universe)
            return OracleDecision(plan=plan, provider=self.provider, model=cfg.model, raw=raw)
        except (OracleConfigError, OracleError, ValidationError, ValueError, TypeError) as e:
            # json.JSONDecodeError is a ValueError; a non-text reply is a TypeError
            log.warning("oracle decision failed, going FLAT: %s", e)
            return OracleDecision(plan=flat_plan(), provider=self.provider, model=cfg.model,
                                  raw=raw if isinstance(raw, str) else None, error=str(e))


def get_planner_client():
    if PROVIDER == "flat":
        return FlatPlanner()
    return OraclePlanner()
