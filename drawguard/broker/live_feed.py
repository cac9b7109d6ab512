"""Shared live-feed websocket client.

One connection carries events for every subscribed account; accounts are
addressed by the login/server/session id in each subscribe message.

Handles:
- Lazy connection with a bounded wait for the first handshake
- Automatic reconnection with capped exponential backoff
- A terminal "gave up" callback once the attempt budget is spent
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from drawguard.broker.models import EQUITY_UPDATE, ORDER_PROFIT, LiveEvent
from drawguard.errors import LiveFeedError

logger = logging.getLogger("drawguard.live_feed")

# Wire message type → event kind
_MESSAGE_KINDS = {
    "EquityUpdate": EQUITY_UPDATE,
    "OnOrderProfit": ORDER_PROFIT,
}

EventHandler = Callable[[LiveEvent], Awaitable[None]]
SignalHandler = Callable[[], Awaitable[None]]


def parse_message(message: dict) -> Optional[LiveEvent]:
    """Turn a decoded feed message into a ``LiveEvent``, or ``None`` if unknown."""
    kind = _MESSAGE_KINDS.get(message.get("type"))
    if kind is None:
        return None

    def _float(key: str) -> Optional[float]:
        value = message.get(key)
        return float(value) if value is not None else None

    order_id = message.get("order_id")
    account_id = message.get("account_id")
    login = message.get("login")
    return LiveEvent(
        kind=kind,
        equity=_float("equity"),
        profit=_float("profit"),
        order_id=int(order_id) if order_id is not None else None,
        session_id=message.get("session_id"),
        login=str(login) if login is not None else None,
        server=message.get("server"),
        account_id=int(account_id) if account_id is not None else None,
        raw=message,
    )


class LiveFeedClient:
    """Persistent duplex websocket to the broker's event feed.

    Args:
        url: Feed URL.
        on_event: Awaited for every recognised inbound event.
        on_connected: Awaited after every (re)connect, before events flow.
        on_gave_up: Awaited once when reconnection attempts are exhausted.
        reconnect_base_seconds: First backoff delay.
        reconnect_max_seconds: Backoff cap.
        max_reconnect_attempts: Consecutive failed attempts before giving up.
        connect: Connection factory (``websockets.connect`` by default).
    """

    def __init__(
        self,
        url: str,
        on_event: EventHandler,
        on_connected: Optional[SignalHandler] = None,
        on_gave_up: Optional[SignalHandler] = None,
        reconnect_base_seconds: float = 1.0,
        reconnect_max_seconds: float = 60.0,
        max_reconnect_attempts: int = 10,
        connect=websockets.connect,
    ) -> None:
        self._url = url
        self._on_event = on_event
        self._on_connected = on_connected
        self._on_gave_up = on_gave_up
        self._reconnect_base = reconnect_base_seconds
        self._reconnect_max = reconnect_max_seconds
        self._max_attempts = max_reconnect_attempts
        self._connect = connect

        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._connected = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._connected.is_set()

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self, timeout: float = 10.0) -> None:
        """Start the connection loop and wait for the first handshake.

        Raises:
            LiveFeedError: Not connected within *timeout*.  The loop keeps
                retrying in the background.
        """
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.create_task(self._run(), name="live-feed")
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise LiveFeedError(f"Live feed not connected after {timeout:.0f}s") from exc

    async def close(self) -> None:
        """Stop reconnecting and close the socket."""
        self._running = False
        self._connected.clear()
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        # Called from an event handler: the loop exits on its own
        if self._task is asyncio.current_task():
            self._task = None
            logger.info("Live feed closed")
            return
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Live feed closed")

    async def send(self, message: dict) -> None:
        """Send one JSON message.

        Raises:
            LiveFeedError: No open connection.
        """
        if not self.connected:
            raise LiveFeedError("Live feed not connected")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as exc:
            raise LiveFeedError(f"Live feed closed while sending: {exc}") from exc

    # ── Connection loop ──────────────────────────────────────────────────

    async def _run(self) -> None:
        attempts = 0
        while self._running:
            try:
                async with self._connect(self._url) as ws:
                    self._ws = ws
                    self._connected.set()
                    attempts = 0
                    logger.info("Live feed connected to %s", self._url)
                    if self._on_connected is not None:
                        await self._on_connected()
                    async for raw in ws:
                        await self._dispatch(raw)
            except ConnectionClosed:
                logger.warning("Live feed disconnected")
            except (InvalidHandshake, InvalidURI, OSError, asyncio.TimeoutError) as exc:
                logger.warning("Live feed connection failed: %s", exc)
            finally:
                self._ws = None
                self._connected.clear()

            if not self._running:
                break
            if attempts >= self._max_attempts:
                logger.error(
                    "Live feed gave up after %d reconnect attempts", attempts
                )
                self._running = False
                if self._on_gave_up is not None:
                    await self._on_gave_up()
                break

            delay = min(self._reconnect_base * (2 ** attempts), self._reconnect_max)
            attempts += 1
            logger.info(
                "Live feed reconnecting in %.1fs (attempt %d/%d)",
                delay, attempts, self._max_attempts,
            )
            await asyncio.sleep(delay)

    async def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Live feed sent a non-JSON message: %r", raw)
            return
        if not isinstance(message, dict):
            logger.debug("Ignoring live feed message: %r", message)
            return

        event = parse_message(message)
        if event is None:
            logger.debug("Ignoring live feed message type %r", message.get("type"))
            return
        try:
            await self._on_event(event)
        except Exception:
            logger.exception("Live feed event handler failed for %s", event.kind)
