"""
REST client for the Aster futures API (Binance-style ``/fapi`` endpoints).

Public market data needs only the base URL. Account, position and order
calls are signed with one of two schemes:

* API key + secret: HMAC-SHA256 over the canonical query string
  (``timestamp``, ``recvWindow``, ``signature``; key in ``X-MBX-APIKEY``).
* Wallet key: EIP-191 ``personal_sign`` over
  ``"{ts}\\n{METHOD}\\n{path}\\n{sha256(body)}"`` sent in ``x-aster-*`` headers.

If neither is configured, signed calls raise ExchangeConfigError.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests
from eth_account import Account
from eth_account.messages import encode_defunct

from execution.base import ExchangeClient, ExchangeConfigError, ExchangeError
from execution.types import AccountSnapshot, Candle, LivePosition, OrderResult, OrderSide, SymbolRules

log = logging.getLogger(__name__)

RECV_WINDOW_MS = 5000
DEFAULT_STEP = 0.0001


def _fmt_qty(qty: float) -> str:
    return f"{qty:.8f}".rstrip("0").rstrip(".")


def _num(v: Any, default: float = 0.0) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return default
    return f if f == f else default  # NaN -> default


def parse_symbol_rules(info: Dict[str, Any], symbol: str) -> SymbolRules:
    """Extract LOT_SIZE step and minimum notional for ``symbol`` from exchangeInfo."""
    for s in (info or {}).get("symbols") or []:
        if s.get("symbol") != symbol:
            continue
        step = DEFAULT_STEP
        min_notional: Optional[float] = None
        for f in s.get("filters") or []:
            ftype = f.get("filterType")
            if ftype == "LOT_SIZE":
                v = _num(f.get("stepSize"))
                if v > 0:
                    step = v
            elif ftype in ("MIN_NOTIONAL", "NOTIONAL"):
                v = _num(f.get("notional") or f.get("minNotional"))
                if v > 0:
                    min_notional = v
        return SymbolRules(symbol=symbol, step_size=step, min_notional=min_notional)
    return SymbolRules(symbol=symbol, step_size=DEFAULT_STEP)


class AsterClient(ExchangeClient):
    name = "aster"

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        private_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else os.getenv("ASTER_API_BASE", "")).strip().rstrip("/")
        self.api_key = (api_key if api_key is not None else os.getenv("ASTER_API_KEY", "")).strip()
        self.api_secret = (api_secret if api_secret is not None else os.getenv("ASTER_API_SECRET", "")).strip()
        self.private_key = (private_key if private_key is not None else os.getenv("ASTER_PRIVATE_KEY", "")).strip()
        self.timeout = float(timeout if timeout is not None else os.getenv("EXCHANGE_TIMEOUT", "10"))
        self.session = session or requests.Session()
        self._info: Optional[Dict[str, Any]] = None

    # -------- auth -------- #

    @property
    def has_hmac(self) -> bool:
        return bool(self.api_key and self.api_secret)

    @property
    def has_wallet(self) -> bool:
        return bool(self.private_key)

    def _require_base(self) -> None:
        if not self.base_url:
            raise ExchangeConfigError("ASTER_API_BASE missing")

    def _hmac_query(self, params: Dict[str, Any]) -> str:
        q = dict(params)
        q["timestamp"] = int(time.time() * 1000)
        q["recvWindow"] = RECV_WINDOW_MS
        query = urlencode(q)
        sig = hmac.new(self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{query}&signature={sig}"

    def wallet_headers(self, method: str, path: str, body_text: str, ts: Optional[int] = None) -> Dict[str, str]:
        ts = int(ts if ts is not None else time.time())
        body_sha = hashlib.sha256(body_text.encode("utf-8")).hexdigest()
        canonical = f"{ts}\n{method.upper()}\n{path}\n{body_sha}"
        signed = Account.sign_message(encode_defunct(text=canonical), private_key=self.private_key)
        return {
            "content-type": "application/json",
            "x-aster-address": Account.from_key(self.private_key).address,
            "x-aster-timestamp": str(ts),
            "x-aster-signature": "0x" + bytes(signed.signature).hex(),
        }

    def _signed(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        self._require_base()
        params = params or {}
        m = method.upper()
        if self.has_hmac:
            query = self._hmac_query(params)
            headers = {"X-MBX-APIKEY": self.api_key}
            if m == "GET":
                return self.session.get(f"{self.base_url}{path}?{query}", headers=headers, timeout=self.timeout)
            headers["content-type"] = "application/x-www-form-urlencoded"
            return self.session.request(m, f"{self.base_url}{path}", headers=headers, data=query, timeout=self.timeout)
        if self.has_wallet:
            if m == "GET":
                full = f"{path}?{urlencode(params)}" if params else path
                headers = self.wallet_headers(m, full, "")
                return self.session.get(f"{self.base_url}{full}", headers=headers, timeout=self.timeout)
            body_text = json.dumps(params, separators=(",", ":"))
            headers = self.wallet_headers(m, path, body_text)
            return self.session.request(m, f"{self.base_url}{path}", headers=headers, data=body_text, timeout=self.timeout)
        raise ExchangeConfigError("exchange auth not configured (set ASTER_API_KEY/ASTER_API_SECRET or ASTER_PRIVATE_KEY)")

    @staticmethod
    def _decode(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return {"raw": resp.text}

    def _checked(self, resp: requests.Response, what: str) -> Any:
        body = self._decode(resp)
        if not resp.ok:
            raise ExchangeError(f"{what} failed: HTTP {resp.status_code}", status=resp.status_code, body=body)
        return body

    def _public(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        self._require_base()
        try:
            resp = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ExchangeError(f"GET {path} failed: {e}") from e
        return self._checked(resp, f"GET {path}")

    def _private(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        try:
            return self._signed(method, path, params)
        except requests.RequestException as e:
            raise ExchangeError(f"{method} {path} failed: {e}") from e

    # -------- market data -------- #

    def get_price(self, symbol: str) -> float:
        data = self._public("/fapi/v1/ticker/price", {"symbol": symbol})
        return _num((data or {}).get("price"))

    def get_24h_changes(self) -> Dict[str, float]:
        data = self._public("/fapi/v1/ticker/24hr")
        out: Dict[str, float] = {}
        for s in data if isinstance(data, list) else []:
            sym = str(s.get("symbol") or "")
            if sym:
                out[sym] = _num(s.get("priceChangePercent", s.get("P")))
        return out

    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        data = self._public("/fapi/v1/klines", {"symbol": symbol, "interval": interval, "limit": int(limit)})
        out: List[Candle] = []
        for r in data if isinstance(data, list) else []:
            out.append(Candle(
                open_time=int(_num(r[0])),
                open=_num(r[1]),
                high=_num(r[2]),
                low=_num(r[3]),
                close=_num(r[4]),
                volume=_num(r[5]),
            ))
        return out

    def exchange_info(self) -> Dict[str, Any]:
        if self._info is None:
            self._info = self._public("/fapi/v1/exchangeInfo") or {}
        return self._info

    def get_symbol_rules(self, symbol: str) -> SymbolRules:
        return parse_symbol_rules(self.exchange_info(), symbol)

    # -------- account -------- #

    def get_account(self) -> AccountSnapshot:
        body = self._checked(self._private("GET", "/fapi/v2/account"), "account")
        wallet = _num(body.get("totalWalletBalance") or body.get("totalMarginBalance"))
        return AccountSnapshot(
            wallet_balance=wallet,
            unrealized_pnl=_num(body.get("totalUnrealizedProfit")),
            available_balance=_num(body.get("availableBalance")),
        )

    def get_positions(self) -> List[LivePosition]:
        body = self._checked(self._private("GET", "/fapi/v2/positionRisk"), "positionRisk")
        out: List[LivePosition] = []
        for p in body if isinstance(body, list) else []:
            sym = str(p.get("symbol") or "")
            if not sym:
                continue
            out.append(LivePosition(
                symbol=sym,
                position_amt=_num(p.get("positionAmt")),
                entry_price=_num(p.get("entryPrice")),
                mark_price=_num(p.get("markPrice")),
                unrealized_pnl=_num(p.get("unRealizedProfit")),
            ))
        return out

    # -------- orders -------- #

    def place_market_order(self, symbol: str, side: OrderSide, qty: float,
                           reduce_only: bool = False) -> OrderResult:
        params: Dict[str, Any] = {"symbol": symbol, "side": side.value, "type": "MARKET", "quantity": _fmt_qty(qty)}
        if reduce_only:
            params["reduceOnly"] = "true"
        resp = self._private("POST", "/fapi/v1/order", params)
        body = self._decode(resp)
        avg = _num(body.get("avgPrice") or body.get("price")) if isinstance(body, dict) else 0.0
        executed = _num(body.get("executedQty")) if isinstance(body, dict) else 0.0
        if not resp.ok:
            log.warning("order %s %s %s rejected: HTTP %s %s", symbol, side.value, _fmt_qty(qty), resp.status_code, body)
        return OrderResult(
            ok=resp.ok,
            status=resp.status_code,
            symbol=symbol,
            side=side,
            qty=qty,
            reduce_only=reduce_only,
            avg_price=avg or None,
            executed_qty=executed or None,
            body=body,
        )
