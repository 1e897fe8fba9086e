"""
Bitunix public WebSocket last-price feed.

Connects to the public endpoint, subscribes to the ``ticker`` channel for the
current symbol set and forwards every last price to a handler. The symbol set
can change while connected; subscriptions are adjusted in place and replayed
after a reconnect.
"""
from __future__ import annotations

import asyncio
import json
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional, Set

import websockets

from position_ladder.constants import BITUNIX_WS_URL
from position_ladder.domain.protocols import PriceHandler
from position_ladder.monitoring.logger import get_logger

logger = get_logger(__name__)

MAX_SYMBOLS_PER_SUB = 50


class BitunixPriceFeed:
    """Streams last prices for a dynamic symbol set."""

    def __init__(
        self,
        on_price: PriceHandler,
        *,
        ws_url: str = BITUNIX_WS_URL,
        reconnect_delay_seconds: float = 5.0,
        max_retries: int = 1000,
    ):
        self._on_price = on_price
        self._ws_url = ws_url
        self._reconnect_delay = reconnect_delay_seconds
        self._max_retries = max_retries
        self._ws: Optional[websockets.ClientConnection] = None
        self._symbols: Set[str] = set()
        self._running = False
        self._retry_count = 0
        self._received_count = 0

    @property
    def symbols(self) -> Set[str]:
        return set(self._symbols)

    async def set_symbols(self, symbols: Iterable[str]) -> None:
        """Replace the subscribed symbol set."""
        wanted = {s.upper() for s in symbols}
        added = wanted - self._symbols
        removed = self._symbols - wanted
        self._symbols = wanted
        if not (added or removed):
            return
        logger.info("PRICE_FEED_SYMBOLS", added=sorted(added), removed=sorted(removed), total=len(wanted))
        ws = self._ws
        if ws is None:
            return
        try:
            if removed:
                await self._send_op(ws, "unsubscribe", sorted(removed))
            if added:
                await self._send_op(ws, "subscribe", sorted(added))
        except websockets.ConnectionClosed:
            # Replayed from self._symbols on reconnect
            logger.info("PRICE_FEED_SUBSCRIBE_DEFERRED", reason="connection closed")

    async def run(self) -> None:
        """Connect and stream until stopped, reconnecting with backoff."""
        self._running = True
        while self._running and self._retry_count < self._max_retries:
            try:
                await self._connect_and_stream()
            except asyncio.CancelledError:
                logger.info("Price feed cancelled")
                break
            except Exception as e:
                if not self._running:
                    break
                self._retry_count += 1
                backoff = self._reconnect_delay * (2 ** min(self._retry_count - 1, 4))
                logger.warning(
                    "PRICE_FEED_DISCONNECT",
                    error=str(e),
                    error_type=type(e).__name__,
                    retry=self._retry_count,
                    backoff_s=backoff,
                )
                await asyncio.sleep(backoff)
            else:
                if self._running:
                    await asyncio.sleep(self._reconnect_delay)

        self._running = False
        self._ws = None
        logger.info("Price feed stopped", total_received=self._received_count)

    async def stop(self) -> None:
        self._running = False
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except websockets.WebSocketException as e:
                logger.debug("Price feed close error", error=str(e))

    async def _connect_and_stream(self) -> None:
        async with websockets.connect(
            self._ws_url,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
        ) as ws:
            self._ws = ws
            self._retry_count = 0
            logger.info("PRICE_FEED_CONNECTED", symbols=len(self._symbols))
            try:
                if self._symbols:
                    await self._send_op(ws, "subscribe", sorted(self._symbols))
                async for raw in ws:
                    try:
                        msg = json.loads(raw)
                    except (json.JSONDecodeError, ValueError):
                        continue
                    await self._handle_message(msg)
            finally:
                self._ws = None

    async def _send_op(self, ws, op: str, symbols: list) -> None:
        for i in range(0, len(symbols), MAX_SYMBOLS_PER_SUB):
            batch = symbols[i : i + MAX_SYMBOLS_PER_SUB]
            payload = {"op": op, "args": [{"symbol": s, "ch": "ticker"} for s in batch]}
            await ws.send(json.dumps(payload))

    async def _handle_message(self, msg: dict) -> None:
        if msg.get("ch") != "ticker":
            return
        symbol = str(msg.get("symbol") or "").upper()
        data = msg.get("data") or {}
        raw_price = data.get("la") if isinstance(data, dict) else None
        if not symbol or raw_price in (None, ""):
            return
        try:
            price = Decimal(str(raw_price))
        except InvalidOperation:
            return
        self._received_count += 1
        try:
            await self._on_price(symbol, price)
        except Exception as e:
            # A failing handler must not drop the connection
            logger.error("PRICE_HANDLER_ERROR", symbol=symbol, error=str(e), error_type=type(e).__name__)
