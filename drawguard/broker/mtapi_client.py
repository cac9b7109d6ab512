"""MT API REST async client.

Handles all communication with the broker bridge: session creation, account
summaries, order history and session teardown.  The bridge speaks plain
query-string GETs; ``ConnectEx`` answers with a bare session id in the body.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

import httpx

from drawguard.broker.models import AccountSummary, BrokerOrder
from drawguard.config import Config
from drawguard.errors import BrokerError, SessionExpiredError, TransientBrokerError
from drawguard.trading_calendar import parse_iso, to_iso

logger = logging.getLogger("drawguard.broker")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_SESSION_STATUS_CODES = {401, 403}

_MIN_SESSION_ID_LENGTH = 30
_BROKER_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


class MtApiClient:
    """Async client wrapping the MT API REST bridge.

    Args:
        config: Application config (base URL, timeout, broker timezone).
        retry_base_delay: First backoff delay in seconds.
    """

    def __init__(self, config: Config, retry_base_delay: float = _RETRY_BASE_DELAY) -> None:
        self._base_url = config.broker_base_url
        self._timeout = config.broker_timeout_seconds
        self._broker_tz = config.broker_timezone
        self._retry_base_delay = retry_base_delay
        self._headers = {"Accept": "application/json, text/plain"}

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        path: str,
        params: dict,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """GET *path* with exponential-backoff retry.

        Retries on timeouts, transport errors, rate limits (429) and 5xx.
        401/403 raise ``SessionExpiredError`` immediately.

        Raises:
            SessionExpiredError: The session id was rejected.
            TransientBrokerError: Retries exhausted.
            BrokerError: Any other non-success status.
        """
        url = f"{self._base_url}/{path}"
        last_error = ""

        for attempt in range(_MAX_RETRIES):
            delay = self._retry_base_delay * (2 ** attempt)
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(
                        url,
                        headers=self._headers,
                        params=params,
                        timeout=timeout or self._timeout,
                    )
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Broker GET %s transport error (%s), retry %d/%d in %.1fs",
                    path, last_error, attempt + 1, _MAX_RETRIES, delay,
                )
                await asyncio.sleep(delay)
                continue

            if resp.status_code in _SESSION_STATUS_CODES:
                raise SessionExpiredError(
                    f"Broker GET {path} returned {resp.status_code}"
                )

            if resp.status_code in _RETRYABLE_STATUS_CODES:
                last_error = f"status {resp.status_code}"
                logger.warning(
                    "Broker GET %s returned %d, retry %d/%d in %.1fs",
                    path, resp.status_code, attempt + 1, _MAX_RETRIES, delay,
                )
                await asyncio.sleep(delay)
                continue

            if resp.status_code >= 400:
                raise BrokerError(
                    f"Broker GET {path} failed with status {resp.status_code}: "
                    f"{resp.text[:200]}"
                )
            return resp

        raise TransientBrokerError(
            f"Broker GET {path} failed after {_MAX_RETRIES} attempts ({last_error})"
        )

    # ── Session ──────────────────────────────────────────────────────────

    async def connect(self, login: str, password: str, server: str) -> str:
        """Open a broker session and return its id.

        Raises:
            BrokerError: Credentials rejected or malformed session id.
        """
        params = {
            "user": login,
            "password": password,
            "server": server,
            "connectTimeoutSeconds": 60,
            "connectTimeoutClusterMemberSeconds": 20,
        }
        try:
            resp = await self._request_with_retry("ConnectEx", params)
        except SessionExpiredError as exc:
            raise BrokerError(
                f"Invalid credentials or access denied for {login}@{server}"
            ) from exc

        session_id = resp.text.strip().strip('"')
        if len(session_id) < _MIN_SESSION_ID_LENGTH:
            raise BrokerError(f"ConnectEx returned an invalid session id: {session_id!r}")
        return session_id

    async def disconnect(self, session_id: str) -> None:
        """Close a session.  Failures are logged, never raised."""
        try:
            await self._request_with_retry("Disconnect", {"id": session_id}, timeout=10.0)
        except BrokerError as exc:
            logger.warning("Disconnect failed (non-critical): %s", exc)

    # ── Account ──────────────────────────────────────────────────────────

    async def account_summary(self, session_id: str) -> AccountSummary:
        """Query balance and equity for the session's account."""
        resp = await self._request_with_retry("AccountSummary", {"id": session_id})

        data = resp.json()
        if not isinstance(data, dict) or "equity" not in data:
            raise BrokerError(f"Invalid AccountSummary response: {data!r}")
        return AccountSummary(
            balance=float(data.get("balance") or 0.0),
            equity=float(data["equity"]),
            currency=data.get("currency") or "",
            margin=_optional_float(data.get("margin")),
            free_margin=_optional_float(data.get("freeMargin")),
            leverage=_optional_float(data.get("leverage")),
        )

    # ── Orders ───────────────────────────────────────────────────────────

    async def order_history(
        self,
        session_id: str,
        start: datetime,
        end: datetime,
    ) -> list[BrokerOrder]:
        """Fetch orders closed between *start* and *end*, oldest first.

        Bounds are sent as broker-local wall-clock times; returned timestamps
        are normalised to UTC.
        """
        params = {
            "id": session_id,
            "from": self._broker_time(start),
            "to": self._broker_time(end),
            "sort": "CloseTime",
            "ascending": "true",
        }
        resp = await self._request_with_retry(
            "OrderHistory", params, timeout=max(self._timeout, 60.0)
        )

        data = resp.json() or {}
        raw_orders = data.get("orders") or []
        if not isinstance(raw_orders, list):
            return []
        orders: list[BrokerOrder] = []
        for o in raw_orders:
            if o.get("ticket") is None:
                continue
            order = self._parse_order(o)
            if not order.time_open:
                logger.warning("Skipping order %d without open or close time", order.order_id)
                continue
            orders.append(order)
        return orders

    # ── Parsing ──────────────────────────────────────────────────────────

    def _broker_time(self, moment: datetime) -> str:
        return moment.astimezone(ZoneInfo(self._broker_tz)).strftime(_BROKER_TIME_FORMAT)

    def _utc(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        parsed = parse_iso(value, assume_tz=self._broker_tz)
        # open orders report a zero close time
        if parsed.year < 1971:
            return None
        return to_iso(parsed)

    def _parse_order(self, o: dict) -> BrokerOrder:
        return BrokerOrder(
            order_id=int(o["ticket"]),
            symbol=o.get("symbol") or "",
            type=(o.get("orderType") or o.get("dealType") or "").lower(),
            # "lots", not "volume": volume is in contract base units
            volume=float(o.get("lots") or 0.0),
            price_open=float(o.get("openPrice") or 0.0),
            price_close=_optional_float(o.get("closePrice")),
            profit=float(o.get("profit") or 0.0),
            swap=float(o.get("swap") or 0.0),
            commission=float(o.get("commission") or 0.0),
            time_open=self._utc(o.get("openTime")) or self._utc(o.get("closeTime")) or "",
            time_close=self._utc(o.get("closeTime")),
            comment=o.get("comment") or "",
            raw=o,
        )


def _optional_float(value) -> Optional[float]:
    return float(value) if value is not None else None
