"""Live monitor — evaluates accounts in ``live`` on every feed event.

Routed events from ``SubscriptionManager`` go straight to ``RuleChecker``.
A re-sync loop subscribes any ``live`` account missing from the registry
(e.g. after a restart, or an account promoted while the feed was down).
"""

import asyncio
import logging
from typing import Optional

from drawguard.broker.models import EQUITY_UPDATE, ORDER_PROFIT, LiveEvent
from drawguard.errors import BrokerError, ComputationError
from drawguard.live.subscriptions import SubscriptionManager
from drawguard.repos.account_repo import AccountRepo
from drawguard.services.rule_checker import CheckResult, RuleChecker
from drawguard.services.sessions import BrokerSessions

logger = logging.getLogger("drawguard.live_monitor")

_SUMMARY_TIMEOUT_SECONDS = 5.0


class LiveMonitor:
    """Feed event handler plus the periodic registry re-sync.

    Args:
        db_path: Path to the SQLite database file.
        rule_checker: Shared ``RuleChecker``.
        subscriptions: Shared ``SubscriptionManager``.
        broker: Used to fetch equity for ``order_profit`` events that carry
            none; optional.
        sessions: ``BrokerSessions`` for those fetches; optional.
        resync_seconds: Interval of the registry re-sync.
    """

    def __init__(
        self,
        db_path: str,
        rule_checker: RuleChecker,
        subscriptions: SubscriptionManager,
        broker=None,
        sessions: Optional[BrokerSessions] = None,
        resync_seconds: int = 60,
    ) -> None:
        self._accounts = AccountRepo(db_path)
        self._rule_checker = rule_checker
        self._subscriptions = subscriptions
        self._broker = broker
        self._sessions = sessions
        self._resync_seconds = resync_seconds
        self._running = False
        self.events_processed = 0
        subscriptions.set_event_handler(self.handle_event)

    def stop(self) -> None:
        self._running = False

    # ── Events ───────────────────────────────────────────────────────────

    async def handle_event(self, event: LiveEvent) -> Optional[CheckResult]:
        """Run the rule check for one routed event."""
        if event.account_id is None:
            return None
        if event.kind not in (EQUITY_UPDATE, ORDER_PROFIT):
            logger.debug("Ignoring live event kind %r", event.kind)
            return None

        equity = event.equity
        balance = None
        if equity is None and event.kind == ORDER_PROFIT:
            equity, balance = await self._fetch_equity(event.account_id)

        try:
            # equity None → the latest stored snapshot is reused
            result = await self._rule_checker.check(
                event.account_id, equity=equity, balance=balance, source="live"
            )
        except ComputationError as exc:
            logger.error("Live check for account %d failed: %s", event.account_id, exc)
            return None
        self.events_processed += 1
        return result

    async def _fetch_equity(self, account_id: int) -> tuple[Optional[float], Optional[float]]:
        """Best-effort broker equity for an event that carried none."""
        if self._broker is None or self._sessions is None:
            return None, None
        account = self._accounts.get_account(account_id)
        if account is None:
            return None, None
        try:
            summary = await asyncio.wait_for(
                self._sessions.call(account, lambda sid: self._broker.account_summary(sid)),
                timeout=_SUMMARY_TIMEOUT_SECONDS,
            )
        except (BrokerError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Account %d: no fresh equity for order_profit event (%s)", account_id, exc
            )
            return None, None
        return summary.equity, summary.balance

    # ── Re-sync ──────────────────────────────────────────────────────────

    async def resync(self) -> list[int]:
        """Subscribe every ``live`` account missing from the registry.

        Registered accounts whose stored session changed are moved onto it.

        Returns:
            Ids newly subscribed.
        """
        await self._subscriptions.ensure_connected()
        added: list[int] = []
        for account in self._accounts.list_live():
            if self._subscriptions.is_subscribed(account.id):
                await self._subscriptions.refresh(account.id, account.session_id)
                continue
            if await self._subscriptions.subscribe(account):
                added.append(account.id)
        if added:
            logger.info("Live re-sync subscribed accounts %s", added)
        return added

    async def run(self) -> None:
        """Re-sync immediately, then every ``resync_seconds`` until stopped."""
        self._running = True
        logger.info("Live monitor started (re-sync every %ds)", self._resync_seconds)
        while self._running:
            try:
                await self.resync()
            except Exception:
                logger.exception("Live re-sync failed")

            for _ in range(self._resync_seconds):
                if not self._running:
                    break
                await asyncio.sleep(1)

        await self._subscriptions.close()
        logger.info("Live monitor stopped")
