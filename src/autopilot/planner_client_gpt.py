# src/autopilot/planner_client_gpt.py
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import requests

from core.models import TraderConfig
from .schemas import MarketSnapshot

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"
STATE_MAX_CHARS = 9000


class OracleConfigError(RuntimeError):
    """Oracle API key is not configured."""


class OracleError(RuntimeError):
    """Oracle HTTP call failed or returned no content."""


def system_prompt(cfg: TraderConfig) -> str:
    universe = ", ".join(cfg.universe)
    return f"""You are a short-horizon crypto perpetual futures trader working 1-15 minute setups.
Each symbol comes with indicators: ema9, ema21, rsi14, atr14, vwap, rangePct, plus price and change24h.

Look for trades on any reasonable edge: RSI extremes, EMA crossovers, momentum, VWAP reclaim or rejection, trend continuation.
Require at least 1.2:1 reward to risk (take-profit distance >= 1.2x stop distance).
Pick the single best setup. Answer FLAT only when every symbol is choppy.

Return ONLY a JSON object with keys:
- action: LONG, SHORT or FLAT
- symbol: one of {universe}
- size_usd: number <= maxRiskPerTradeUsd={cfg.max_risk_per_trade_usd:g}
- thesis: one or two sentences on the setup
- stop_loss_price: number, typically 0.5-2% from entry
- take_profit_price: number
- min_hold_minutes: number between 15 and 90

Risk limits: maxRiskPerTradeUsd={cfg.max_risk_per_trade_usd:g}, maxExposureUsd={cfg.max_exposure_usd:g}, leverage<={cfg.leverage_cap:g}x, margin={cfg.margin_mode}."""


def user_message(snapshot: MarketSnapshot) -> str:
    state = json.dumps(snapshot.model_dump(mode="json"), separators=(",", ":"))
    return "State: " + state[:STATE_MAX_CHARS]


class LLMPlannerClient:
    """
    Decision oracle over an OpenAI-compatible Chat Completions API, using 'requests'.
    Env:
      - ORACLE_API_KEY (or QWEN_API_KEY; required)
      - ORACLE_BASE_URL (default DashScope compatible-mode endpoint)
      - ORACLE_TIMEOUT (default '30')
    The model comes from the trader config.
    """
    provider = "qwen"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None) -> None:
        self.api_key = (api_key or os.getenv("ORACLE_API_KEY") or os.getenv("QWEN_API_KEY") or "").strip()
        if not self.api_key:
            raise OracleConfigError("ORACLE_API_KEY not set")
        base = (base_url or os.getenv("ORACLE_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.url = f"{base}/chat/completions"
        self.timeout = float(timeout if timeout is not None else os.getenv("ORACLE_TIMEOUT", "30"))

    def _chat(self, model: str, system: str, user: str) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "response_format": {"type": "json_object"},
        }
        try:
            resp = requests.post(self.url, headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise OracleError(f"oracle request failed: {e}") from e
        if not resp.ok:
            raise OracleError(f"oracle HTTP {resp.status_code}: {resp.text[:300]}")
        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise OracleError(f"oracle reply malformed: {e}") from e
        if not isinstance(content, str):
            raise OracleError(f"oracle reply has no text content: {content!r}")
        return content

    def complete(self, snapshot: MarketSnapshot, cfg: TraderConfig) -> str:
        """One oracle call; returns the raw reply content."""
        text = self._chat(cfg.model, system_prompt(cfg), user_message(snapshot))
        log.debug("oracle raw reply: %s", text)
        return text

