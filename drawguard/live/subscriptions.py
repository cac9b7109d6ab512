"""Subscription manager — routes the shared live feed to accounts.

Keeps an in-memory registry ``account_id → Subscription`` over a single
``LiveFeedClient``.  The connection is opened on the first subscription and
closed when the last account leaves.  Inbound events are matched to an
account by session id, then ``(login, server)``, then an explicit account id;
anything else is dropped.
"""

import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional

from drawguard.broker.live_feed import LiveFeedClient
from drawguard.broker.models import LiveEvent
from drawguard.errors import LiveFeedError
from drawguard.models import CONNECTED, DISCONNECTED, ERROR, Account
from drawguard.repos.account_repo import AccountRepo
from drawguard.trading_calendar import utc_now

logger = logging.getLogger("drawguard.live")

EventHandler = Callable[[LiveEvent], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    account_id: int
    login: str
    server: str
    session_id: Optional[str] = None

    def message(self, action: str) -> dict:
        return {
            "action": action,
            "login": self.login,
            "server": self.server,
            "session_id": self.session_id,
        }


class SubscriptionManager:
    """Registry of live-monitored accounts over one shared feed connection.

    Args:
        feed_url: Websocket URL of the live feed.
        account_repo: Used to record ``feed_subscribed_at``; optional.
        feed_factory: Builds the feed client; receives the URL and the
            ``on_event`` / ``on_connected`` / ``on_gave_up`` callbacks.
        subscribe_timeout: Seconds to wait for the connection on subscribe.
        **feed_options: Reconnect settings forwarded to ``LiveFeedClient``.
    """

    def __init__(
        self,
        feed_url: str,
        account_repo: Optional[AccountRepo] = None,
        feed_factory: Optional[Callable[..., LiveFeedClient]] = None,
        subscribe_timeout: float = 10.0,
        **feed_options,
    ) -> None:
        self._feed_url = feed_url
        self._account_repo = account_repo
        self._feed_factory = feed_factory or LiveFeedClient
        self._subscribe_timeout = subscribe_timeout
        self._feed_options = feed_options

        self._subscriptions: dict[int, Subscription] = {}
        self._feed: Optional[LiveFeedClient] = None
        self._event_handler: Optional[EventHandler] = None
        self._gave_up = False

    def set_event_handler(self, handler: EventHandler) -> None:
        """Register the coroutine that receives routed events."""
        self._event_handler = handler

    # ── Introspection ────────────────────────────────────────────────────

    @property
    def connection_state(self) -> str:
        if self._gave_up:
            return ERROR
        if self._feed is not None and self._feed.connected:
            return CONNECTED
        return DISCONNECTED

    def is_subscribed(self, account_id: int) -> bool:
        return account_id in self._subscriptions

    def subscribed_ids(self) -> list[int]:
        return sorted(self._subscriptions)

    # ── Subscribe / unsubscribe ──────────────────────────────────────────

    async def subscribe(self, account: Account) -> bool:
        """Register *account* and send a subscribe message.

        The registry entry is kept even when the feed is unreachable, so the
        account is resubscribed as soon as a connection comes up.

        Returns:
            ``True`` when the subscribe message was sent.
        """
        sub = Subscription(
            account_id=account.id,
            login=account.login,
            server=account.server,
            session_id=account.session_id,
        )
        self._subscriptions[account.id] = sub

        try:
            if self._feed is not None and self._feed.connected:
                await self._feed.send(sub.message("subscribe"))
            else:
                # on_connected resubscribes every registered account
                await self._ensure_feed()
        except LiveFeedError as exc:
            logger.warning(
                "Account %d registered but not yet subscribed: %s", account.id, exc
            )
            return False

        if self._account_repo is not None:
            self._account_repo.set_feed_subscription(account.id, utc_now())
        logger.info(
            "Subscribed account %d (%s@%s) to live feed",
            account.id, account.login, account.server,
        )
        return True

    async def unsubscribe(self, account_id: int) -> None:
        """Remove *account_id*; close the feed when nobody is left."""
        sub = self._subscriptions.pop(account_id, None)
        if sub is None:
            return

        if self._feed is not None and self._feed.connected:
            try:
                await self._feed.send(sub.message("unsubscribe"))
            except LiveFeedError as exc:
                logger.warning("Unsubscribe of account %d not sent: %s", account_id, exc)
        if self._account_repo is not None:
            self._account_repo.set_feed_subscription(account_id, None)
        logger.info("Unsubscribed account %d from live feed", account_id)

        if not self._subscriptions:
            await self.close()

    async def refresh(self, account_id: int, session_id: Optional[str]) -> bool:
        """Move a registered account onto a new broker session.

        The entry is replaced and the subscribe message re-sent, so events
        carrying the new session id route back to the account.

        Returns:
            ``True`` when the registry entry changed.
        """
        sub = self._subscriptions.get(account_id)
        if sub is None or not session_id or sub.session_id == session_id:
            return False
        sub = replace(sub, session_id=session_id)
        self._subscriptions[account_id] = sub
        logger.info("Account %d live subscription moved to a new session", account_id)

        if self._feed is not None and self._feed.connected:
            try:
                await self._feed.send(sub.message("subscribe"))
            except LiveFeedError as exc:
                logger.warning("Resubscribe of account %d not sent: %s", account_id, exc)
        return True

    async def ensure_connected(self) -> bool:
        """Reopen the feed if accounts are registered but it is down."""
        if not self._subscriptions:
            return False
        if self._feed is not None and self._feed.connected:
            return True
        try:
            await self._ensure_feed()
        except LiveFeedError as exc:
            logger.warning("Live feed still unavailable: %s", exc)
            return False
        return True

    async def close(self) -> None:
        """Close the shared connection (registry is kept)."""
        feed, self._feed = self._feed, None
        if feed is not None:
            await feed.close()

    # ── Routing ──────────────────────────────────────────────────────────

    def route(self, event: LiveEvent) -> Optional[int]:
        """Return the account an event belongs to, or ``None``."""
        if event.session_id:
            for sub in self._subscriptions.values():
                if sub.session_id == event.session_id:
                    return sub.account_id
        if event.login and event.server:
            for sub in self._subscriptions.values():
                if sub.login == event.login and sub.server == event.server:
                    return sub.account_id
        if event.account_id is not None and event.account_id in self._subscriptions:
            return event.account_id
        return None

    async def _handle_event(self, event: LiveEvent) -> None:
        account_id = self.route(event)
        if account_id is None:
            logger.warning(
                "Dropping unroutable %s event (session=%s login=%s server=%s)",
                event.kind, event.session_id, event.login, event.server,
            )
            return
        if self._event_handler is None:
            logger.debug("No event handler registered; %s dropped", event.kind)
            return
        await self._event_handler(replace(event, account_id=account_id))

    # ── Connection management ────────────────────────────────────────────

    async def _ensure_feed(self) -> LiveFeedClient:
        if self._feed is None:
            self._gave_up = False
            self._feed = self._feed_factory(
                self._feed_url,
                on_event=self._handle_event,
                on_connected=self._resubscribe_all,
                on_gave_up=self._on_gave_up,
                **self._feed_options,
            )
        if not self._feed.connected:
            await self._feed.start(timeout=self._subscribe_timeout)
        return self._feed

    async def _resubscribe_all(self) -> None:
        """Send a subscribe message for every registered account."""
        if self._feed is None:
            return
        subs = list(self._subscriptions.values())
        if subs:
            logger.info("Resubscribing %d accounts after connect", len(subs))
        for sub in subs:
            if sub.account_id not in self._subscriptions:
                continue
            sub = self._current_session(sub)
            try:
                await self._feed.send(sub.message("subscribe"))
            except LiveFeedError as exc:
                logger.error("Failed to resubscribe account %d: %s", sub.account_id, exc)
                return
            if self._account_repo is not None:
                self._account_repo.set_feed_subscription(sub.account_id, utc_now())

    def _current_session(self, sub: Subscription) -> Subscription:
        # Sessions renewed by the poll path are only visible in the store
        if self._account_repo is None:
            return sub
        account = self._account_repo.get_account(sub.account_id)
        if account is None or not account.session_id or account.session_id == sub.session_id:
            return sub
        sub = replace(sub, session_id=account.session_id)
        self._subscriptions[sub.account_id] = sub
        return sub

    async def _on_gave_up(self) -> None:
        logger.error(
            "Live feed unavailable; %d accounts fall back to polling",
            len(self._subscriptions),
        )
        self._gave_up = True
        self._feed = None
