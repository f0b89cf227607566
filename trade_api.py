import logging
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from config import RAYDIUM_PRICE_URL
from errors import TradeFailed
from sessions import TradeSession

CONFIRMED_STATUSES = {"confirmed", "transaction confirmed", "success"}
PRIORITY_FEE_ACCOUNT = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"


@dataclass(frozen=True)
class TradeResult:
    status: str
    receipt_id: str
    result_amount: float


@dataclass(frozen=True)
class PriorityFees:
    low: int
    medium: int
    high: int


def parse_trade_response(data: Dict[str, Any], amount_field: str) -> TradeResult:
    """Map the trade API's reply onto a TradeResult, raising TradeFailed unless it confirmed."""
    status = str(data.get("status") or data.get("message") or "").strip()
    if status.lower() not in CONFIRMED_STATUSES:
        raise TradeFailed(f"Trade not confirmed: {status or data}")

    receipt_id = data.get("receiptId") or data.get("txid")
    if not receipt_id:
        raise TradeFailed(f"Trade response has no transaction id: {data}")

    amount = data.get("resultAmount", data.get(amount_field, 0))
    try:
        result_amount = float(amount)
    except (TypeError, ValueError):
        raise TradeFailed(f"Trade response has a malformed amount: {amount!r}")
    return TradeResult(status=status, receipt_id=str(receipt_id), result_amount=result_amount)


class TradeAPIClient:
    """Forwards buy/sell requests to the remote trade-execution API."""

    def __init__(self, base_url: str, timeout: float = 60, buy_path: str = "/buy", sell_path: str = "/sell"):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.buy_path = buy_path
        self.sell_path = sell_path
        self._session: Optional[aiohttp.ClientSession] = None

    async def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def _payload(self, session: TradeSession) -> Dict[str, Any]:
        if not session.mint or not session.amount:
            raise TradeFailed("Token and amount must be set before trading")
        return {
            "private_key": session.private_key,
            "public_key": session.public_key,
            "mint": session.mint,
            "amount": session.amount,
            "priorityFee": session.priority_fee,
            "slippage": session.slippage_bps,
            "useJito": session.use_jito,
        }

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        http = await self._http()
        url = f"{self.base_url}{path}"
        logging.info(f"POST {url} for mint {payload.get('mint')}")
        try:
            async with http.post(url, json=payload) as resp:
                data = await resp.json(content_type=None)
                if resp.status != 200:
                    message = data.get("error") or data.get("message") if isinstance(data, dict) else data
                    raise TradeFailed(f"Trade API returned HTTP {resp.status}: {message}", status=resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TradeFailed(f"Trade API request failed: {e}") from e
        if not isinstance(data, dict):
            raise TradeFailed(f"Unexpected trade API response: {data!r}")
        return data

    async def buy(self, session: TradeSession) -> TradeResult:
        data = await self._post(self.buy_path, self._payload(session))
        result = parse_trade_response(data, "tokensPurchased")
        logging.info(f"Buy confirmed for {session.user_id}: {result.receipt_id}")
        return result

    async def sell(self, session: TradeSession) -> TradeResult:
        data = await self._post(self.sell_path, self._payload(session))
        result = parse_trade_response(data, "solReceived")
        logging.info(f"Sell confirmed for {session.user_id}: {result.receipt_id}")
        return result

    async def token_price(self, mint: str) -> Optional[float]:
        """Token price from the Raydium mint price API, None if unknown."""
        http = await self._http()
        try:
            async with http.get(RAYDIUM_PRICE_URL, params={"mints": mint}) as resp:
                if resp.status != 200:
                    return None
                data = await resp.json(content_type=None)
                price = (data.get("data") or {}).get(mint)
                return float(price) if price is not None else None
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError) as e:
            logging.warning(f"Error fetching token price for {mint}: {e}")
            return None

    async def estimate_priority_fees(self, rpc_url: str) -> Optional[PriorityFees]:
        """Per-compute-unit fee estimates from a QuickNode-style RPC."""
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "qn_estimatePriorityFees",
            "params": {"last_n_blocks": 100, "account": PRIORITY_FEE_ACCOUNT}
        }
        http = await self._http()
        try:
            async with http.post(rpc_url, json=payload) as resp:
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logging.warning(f"Error fetching priority fees: {e}")
            return None
        per_cu = ((data or {}).get("result") or {}).get("per_compute_unit")
        if not per_cu:
            logging.error(f"Expected data not found in response: {data}")
            return None
        return PriorityFees(low=int(per_cu["low"]), medium=int(per_cu["medium"]), high=int(per_cu["high"]))
