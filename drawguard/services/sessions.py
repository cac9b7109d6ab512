"""Broker session keeper.

A stored session is trusted when it has an id, has not expired and was
validated within the last hour.  Anything else is replaced by reconnecting
with the account's stored credentials.  Reconnects back off exponentially
and give up after a fixed number of attempts, leaving the account in
``connection_state = 'error'``; a connection problem never fails an account.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from drawguard.errors import BrokerError, SessionExpiredError
from drawguard.models import Account
from drawguard.repos.account_repo import AccountRepo
from drawguard.trading_calendar import parse_iso, utc_now

logger = logging.getLogger("drawguard.sessions")

SESSION_VALIDATION_WINDOW = timedelta(hours=1)

T = TypeVar("T")


def is_session_valid(account: Account, now: Optional[datetime] = None) -> bool:
    """``True`` when the stored session can be used without reconnecting."""
    if not account.session_id or not account.session_expires_at:
        return False
    now = now or utc_now()
    if parse_iso(account.session_expires_at) <= now:
        return False
    if not account.session_last_validated:
        return False
    return now - parse_iso(account.session_last_validated) <= SESSION_VALIDATION_WINDOW


class BrokerSessions:
    """Keeps one usable broker session per account.

    Args:
        broker: ``MtApiClient`` (or duck-type for tests).
        db_path: Path to the SQLite database file.
        session_ttl_hours: Lifetime recorded for new sessions.
        reconnect_attempts: Connect attempts before giving up.
        backoff_base: First delay between attempts, in seconds.
        subscriptions: ``SubscriptionManager`` told about every new session
            so live-feed routing follows it; optional.
    """

    def __init__(
        self,
        broker,
        db_path: str,
        session_ttl_hours: int = 24,
        reconnect_attempts: int = 3,
        backoff_base: float = 1.0,
        subscriptions=None,
    ) -> None:
        self._broker = broker
        self._accounts = AccountRepo(db_path)
        self._ttl = timedelta(hours=session_ttl_hours)
        self._attempts = max(1, reconnect_attempts)
        self._backoff_base = backoff_base
        self._subscriptions = subscriptions
        # account_id → session id obtained during this process
        self._sessions: dict[int, str] = {}

    async def ensure_session(
        self, account: Account, now: Optional[datetime] = None
    ) -> Optional[str]:
        """Return a usable session id, reconnecting if needed; ``None`` on failure."""
        if is_session_valid(account, now):
            self._sessions[account.id] = account.session_id
            return account.session_id
        return await self.reconnect(account)

    async def reconnect(self, account: Account) -> Optional[str]:
        """Open a fresh session with exponential backoff.

        On exhaustion the account is flagged ``connection_state = 'error'``.
        """
        last_error: Optional[BrokerError] = None
        for attempt in range(self._attempts):
            try:
                session_id = await self._broker.connect(
                    account.login, account.investor_password, account.server
                )
            except BrokerError as exc:
                last_error = exc
                if attempt + 1 < self._attempts:
                    delay = self._backoff_base * (2 ** attempt)
                    logger.warning(
                        "Account %d reconnect %d/%d failed (%s), retrying in %.1fs",
                        account.id, attempt + 1, self._attempts, exc, delay,
                    )
                    await asyncio.sleep(delay)
                continue

            now = utc_now()
            self._accounts.record_session(account.id, session_id, now + self._ttl, now=now)
            self._sessions[account.id] = session_id
            logger.info("Account %d reconnected to broker", account.id)
            if self._subscriptions is not None:
                await self._subscriptions.refresh(account.id, session_id)
            return session_id

        message = f"Reconnect failed after {self._attempts} attempts: {last_error}"
        self._accounts.mark_connection_error(account.id, message)
        self._sessions.pop(account.id, None)
        logger.error("Account %d: %s", account.id, message)
        return None

    async def call(
        self,
        account: Account,
        fn: Callable[[str], Awaitable[T]],
        now: Optional[datetime] = None,
    ) -> T:
        """Run ``fn(session_id)``; on ``SessionExpiredError`` reconnect once and re-issue.

        Raises:
            SessionExpiredError: No session could be (re)established.
            BrokerError: Whatever the re-issued call raised.
        """
        session_id = self._sessions.get(account.id) or await self.ensure_session(account, now)
        if session_id is None:
            raise SessionExpiredError(f"No broker session for account {account.id}")
        try:
            result = await fn(session_id)
        except SessionExpiredError:
            logger.warning("Account %d session expired, reconnecting", account.id)
            session_id = await self.reconnect(account)
            if session_id is None:
                raise
            result = await fn(session_id)
        self._accounts.touch_session(account.id)
        return result

    def current(self, account_id: int) -> Optional[str]:
        """Session id last obtained for *account_id* in this process."""
        return self._sessions.get(account_id)

    def forget(self, account_id: int) -> None:
        self._sessions.pop(account_id, None)
