"""
Bitunix futures REST client.

Handles:
- Request signing (double SHA-256 over nonce, timestamp, key, sorted query and body)
- Rate limiting (token bucket)
- Mapping venue responses onto the gateway error taxonomy
"""
import asyncio
import hashlib
import json
import secrets
import ssl
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
import certifi

from position_ladder.constants import (
    BITUNIX_BASE_URL,
    CANCEL_ORDERS_ENDPOINT,
    CHANGE_LEVERAGE_ENDPOINT,
    DEFAULT_API_TIMEOUT,
    EXPECTED_REJECTION_MARKERS,
    HISTORY_PAGE_SIZE,
    HISTORY_POSITIONS_ENDPOINT,
    PENDING_ORDERS_ENDPOINT,
    PENDING_POSITIONS_ENDPOINT,
    PLACE_ORDER_ENDPOINT,
    PLACE_TPSL_ENDPOINT,
    PRIVATE_API_CAPACITY,
    PRIVATE_API_REFILL_RATE,
)
from position_ladder.domain.models import LivePosition, PendingOrder
from position_ladder.exceptions import (
    ExpectedRejection,
    OrderRejectedError,
    TransientGatewayError,
)
from position_ladder.monitoring.logger import get_logger

logger = get_logger(__name__)

ORDER_ENDPOINTS = frozenset({PLACE_ORDER_ENDPOINT, PLACE_TPSL_ENDPOINT, CANCEL_ORDERS_ENDPOINT})


def is_expected_rejection(message: str) -> bool:
    """Duplicate / limit-exceeded style rejections."""
    text = (message or "").lower()
    return any(marker in text for marker in EXPECTED_REJECTION_MARKERS)


def sorted_query_string(params: Optional[Dict[str, Any]]) -> str:
    """Query params sorted by key, concatenated as key+value with no separators."""
    if not params:
        return ""
    return "".join(f"{k}{params[k]}" for k in sorted(params))


def sign_request(
    api_key: str,
    api_secret: str,
    nonce: str,
    timestamp: str,
    params: Optional[Dict[str, Any]] = None,
    body: str = "",
) -> str:
    digest = hashlib.sha256(
        (nonce + timestamp + api_key + sorted_query_string(params) + body).encode("utf-8")
    ).hexdigest()
    return hashlib.sha256((digest + api_secret).encode("utf-8")).hexdigest()


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""
    capacity: int
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    def __init__(self, capacity: int, refill_rate: float):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()

    def consume(self, tokens: int = 1) -> bool:
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def wait_for_token(self) -> None:
        while not self.consume(1):
            await asyncio.sleep(0.05)


class BitunixClient:
    """
    Exchange gateway for Bitunix USDT-margined futures.

    Every method raises ``TransientGatewayError`` on transport failures and
    non-zero API codes; order endpoints raise ``OrderRejectedError`` (or
    ``ExpectedRejection``) when the venue refuses the order itself.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = BITUNIX_BASE_URL,
        margin_coin: str = "USDT",
        timeout_seconds: float = DEFAULT_API_TIMEOUT,
    ):
        self.api_key = (api_key or "").strip()
        self.api_secret = (api_secret or "").strip()
        self.base_url = base_url.rstrip("/")
        self.margin_coin = margin_coin
        self.timeout_seconds = timeout_seconds
        self.limiter = RateLimiter(capacity=PRIVATE_API_CAPACITY, refill_rate=PRIVATE_API_REFILL_RATE)
        self._session: Optional[aiohttp.ClientSession] = None
        self._ssl_context: Optional[ssl.SSLContext] = None

    @classmethod
    def from_config(cls, config) -> "BitunixClient":
        ex = config.exchange
        return cls(
            ex.api_key or "",
            ex.api_secret or "",
            base_url=ex.base_url,
            margin_coin=ex.margin_coin,
            timeout_seconds=ex.request_timeout_seconds,
        )

    def has_valid_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(ssl=self._get_ssl_context()),
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self, params: Optional[Dict[str, Any]], body: str) -> Dict[str, str]:
        nonce = secrets.token_hex(16)
        timestamp = str(int(time.time() * 1000))
        return {
            "api-key": self.api_key,
            "nonce": nonce,
            "timestamp": timestamp,
            "sign": sign_request(self.api_key, self.api_secret, nonce, timestamp, params, body),
            "language": "en-US",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Signed request. Returns the ``data`` member of a successful response."""
        if not self.has_valid_credentials():
            raise TransientGatewayError("Exchange API credentials not configured")

        await self.limiter.wait_for_token()

        query = {k: str(v) for k, v in (params or {}).items() if v is not None}
        body_text = json.dumps(body, separators=(",", ":")) if body is not None else ""
        headers = self._headers(query, body_text)

        try:
            session = self._get_session()
            async with session.request(
                method,
                self.base_url + path,
                params=query or None,
                data=body_text or None,
                headers=headers,
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise TransientGatewayError(
                        f"HTTP {response.status} from {path}: {text[:200]}", code=str(response.status)
                    )
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientGatewayError(f"{method} {path} failed: {e}") from e
        except json.JSONDecodeError as e:
            raise TransientGatewayError(f"{method} {path} returned invalid JSON: {e}") from e

        return self._unwrap(path, payload)

    @staticmethod
    def _unwrap(path: str, payload: Any) -> Any:
        if not isinstance(payload, dict):
            raise TransientGatewayError(f"Unexpected response from {path}: {str(payload)[:200]}")
        code = payload.get("code")
        if code in (0, "0"):
            return payload.get("data")

        message = str(payload.get("msg") or payload.get("message") or "Unknown")
        code_str = str(code)
        if path in ORDER_ENDPOINTS:
            if is_expected_rejection(message):
                raise ExpectedRejection(f"API Error {code_str}: {message}", code=code_str)
            raise OrderRejectedError(f"API Error {code_str}: {message}", code=code_str)
        raise TransientGatewayError(f"API Error {code_str}: {message}", code=code_str)

    async def list_open_positions(self) -> List[LivePosition]:
        data = await self._request("GET", PENDING_POSITIONS_ENDPOINT)
        raw = data if isinstance(data, list) else (data or {}).get("positionList", [])
        positions = [LivePosition.from_exchange(p) for p in raw or []]
        logger.debug("Open positions fetched", count=len(positions))
        return positions

    async def list_pending_orders(self, symbol: Optional[str] = None) -> List[PendingOrder]:
        data = await self._request("GET", PENDING_ORDERS_ENDPOINT, params={"symbol": symbol})
        raw = data if isinstance(data, list) else (data or {}).get("orderList", [])
        return [PendingOrder.from_exchange(o) for o in raw or []]

    async def place_order(self, params: Dict[str, Any]) -> str:
        body = {"reduceOnly": False, "effect": "GTC", "tradeSide": "OPEN", **params}
        data = await self._request("POST", PLACE_ORDER_ENDPOINT, body=body)
        order_id = str((data or {}).get("orderId") or "")
        logger.info(
            "ORDER_PLACED",
            symbol=body.get("symbol"),
            side=body.get("side"),
            qty=body.get("qty"),
            order_type=body.get("orderType"),
            reduce_only=body.get("reduceOnly"),
            order_id=order_id,
        )
        return order_id

    async def place_tpsl_order(self, params: Dict[str, Any]) -> str:
        data = await self._request("POST", PLACE_TPSL_ENDPOINT, body=params)
        return str((data or {}).get("orderId") or "")

    async def cancel_orders(self, order_ids: List[str], symbol: str) -> bool:
        if not order_ids:
            return True
        body = {"symbol": symbol, "orderList": [{"orderId": oid} for oid in order_ids]}
        data = await self._request("POST", CANCEL_ORDERS_ENDPOINT, body=body)
        success = (data or {}).get("successList") or []
        failed = (data or {}).get("failureList") or []
        if failed:
            logger.warning("CANCEL_PARTIAL_FAILURE", symbol=symbol, failed=failed)
        return len(success) == len(order_ids)

    async def change_leverage(self, symbol: str, leverage: int) -> None:
        await self._request(
            "POST",
            CHANGE_LEVERAGE_ENDPOINT,
            body={"symbol": symbol, "leverage": int(leverage), "marginCoin": self.margin_coin},
        )
        logger.info("LEVERAGE_CHANGED", symbol=symbol, leverage=leverage)

    async def list_closed_positions(self, start_ms: int, end_ms: int) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            HISTORY_POSITIONS_ENDPOINT,
            params={"startTime": start_ms, "endTime": end_ms, "pageSize": HISTORY_PAGE_SIZE},
        )
        raw = data if isinstance(data, list) else (data or {}).get("positionList", [])
        return list(raw or [])
