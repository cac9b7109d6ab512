"""Poll worker — periodic broker sweep over every non-failed account.

Each cycle refreshes sessions, pulls new order history, records the daily
snapshot inside the reset window and hands the fresh equity to
``RuleChecker``.  The cycle start time bounds the order-history request and
the reset-window check; the rule check stamps its own time.  Accounts are processed concurrently behind a semaphore;
one account's exception never aborts the batch.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from drawguard.config import Config
from drawguard.errors import BrokerError, ComputationError
from drawguard.models import Account
from drawguard.repos.account_repo import AccountRepo
from drawguard.repos.order_repo import OrderRepo
from drawguard.repos.snapshot_repo import DailySnapshotRepo
from drawguard.risk.stats import initial_balance
from drawguard.services.rule_checker import RuleChecker
from drawguard.services.sessions import BrokerSessions
from drawguard.trading_calendar import (
    is_reset_window,
    parse_iso,
    trading_date,
    utc_now,
)

logger = logging.getLogger("drawguard.poll_worker")


class PollWorker:
    """Runs the poll loop.

    Args:
        config: Application config.
        broker: ``MtApiClient`` (or duck-type for tests).
        rule_checker: Shared ``RuleChecker``.
        sessions: ``BrokerSessions``; built from *broker* when omitted.
    """

    def __init__(
        self,
        config: Config,
        broker,
        rule_checker: RuleChecker,
        sessions: Optional[BrokerSessions] = None,
    ) -> None:
        self._config = config
        self._broker = broker
        self._rule_checker = rule_checker
        self._sessions = sessions or BrokerSessions(
            broker,
            config.db_path,
            session_ttl_hours=config.session_ttl_hours,
            reconnect_attempts=config.reconnect_attempts,
        )
        self._accounts = AccountRepo(config.db_path)
        self._orders = OrderRepo(config.db_path)
        self._daily_snapshots = DailySnapshotRepo(config.db_path)
        self._history_start = datetime.fromisoformat(
            config.order_history_start
        ).replace(tzinfo=timezone.utc)

        self._running = False
        self._cycle_count = 0
        self.last_cycle_at: Optional[str] = None
        self.last_cycle_summary: dict = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    def stop(self) -> None:
        """Signal the loop to stop after the current cycle."""
        self._running = False

    # ── Loop ─────────────────────────────────────────────────────────────

    async def run(self, max_cycles: int = 0) -> None:
        """Poll until stopped (or for *max_cycles* cycles when > 0)."""
        self._running = True
        cycle = 0
        logger.info(
            "Poll worker started (interval %ds, concurrency %d)",
            self._config.poll_interval_seconds, self._config.poll_concurrency,
        )
        while self._running:
            cycle += 1
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Poll cycle %d crashed", cycle)

            if max_cycles > 0 and cycle >= max_cycles:
                break

            # Interruptible sleep — checks _running every second
            for _ in range(self._config.poll_interval_seconds):
                if not self._running:
                    break
                await asyncio.sleep(1)

        self._running = False
        logger.info("Poll worker stopped after %d cycles", cycle)

    async def run_cycle(self, now: Optional[datetime] = None) -> dict:
        """Process every non-failed account once.

        Returns:
            Summary dict: ``accounts``, ``checked``, ``skipped``, ``errors``,
            ``failed`` (ids newly failed this cycle).
        """
        now = now or utc_now()
        accounts = self._accounts.list_active()
        semaphore = asyncio.Semaphore(self._config.poll_concurrency)

        async def _guarded(account: Account) -> dict:
            async with semaphore:
                try:
                    return await self.process_account(account, now)
                except (BrokerError, ComputationError) as exc:
                    logger.error("Account %d poll failed: %s", account.id, exc)
                    return {"account_id": account.id, "action": "error", "reason": str(exc)}
                except Exception as exc:
                    logger.exception("Account %d poll crashed", account.id)
                    return {"account_id": account.id, "action": "error", "reason": str(exc)}

        results = await asyncio.gather(*(_guarded(a) for a in accounts))

        summary = {
            "accounts": len(accounts),
            "checked": sum(1 for r in results if r["action"] == "checked"),
            "skipped": sum(1 for r in results if r["action"] == "skipped"),
            "errors": sum(1 for r in results if r["action"] == "error"),
            "failed": [r["account_id"] for r in results if r.get("newly_failed")],
        }
        self._cycle_count += 1
        self.last_cycle_at = now.isoformat()
        self.last_cycle_summary = summary
        logger.info(
            "Poll cycle %d: %d accounts, %d checked, %d skipped, %d errors",
            self._cycle_count, summary["accounts"], summary["checked"],
            summary["skipped"], summary["errors"],
        )
        return summary

    # ── Per account ──────────────────────────────────────────────────────

    async def process_account(self, account: Account, now: datetime) -> dict:
        """Run the full poll sequence for one account."""
        session_id = await self._sessions.ensure_session(account, now)
        if session_id is None:
            return {"account_id": account.id, "action": "skipped", "reason": "connection_error"}

        await self._sync_orders(account, now)

        summary = await self._sessions.call(
            account, lambda sid: self._broker.account_summary(sid), now
        )

        if is_reset_window(now, self._config.trading_timezone, self._config.reset_time):
            day = trading_date(now, self._config.trading_timezone)
            if self._daily_snapshots.record(
                account.id, day, summary.equity, summary.balance, now=now
            ):
                logger.info("Account %d daily snapshot recorded for %s", account.id, day)

        # Judged at decision time, not at cycle start
        result = await self._rule_checker.check(
            account.id,
            equity=summary.equity,
            balance=summary.balance,
            source="poll",
        )
        if result.newly_failed:
            # Failed accounts are never polled again
            live_session = self._sessions.current(account.id) or session_id
            self._sessions.forget(account.id)
            await self._broker.disconnect(live_session)
        return {
            "account_id": account.id,
            "action": "checked",
            "equity": summary.equity,
            "monitoring_state": result.monitoring_state,
            "is_failed": result.is_failed,
            "newly_failed": result.newly_failed,
        }

    def order_fetch_start(self, account: Account) -> datetime:
        """Lower bound of the next order-history request.

        One second past the latest stored close time; for a first fetch, the
        later of account creation and the configured history start.
        """
        latest = self._orders.latest_close_time(account.id)
        if latest:
            return parse_iso(latest) + timedelta(seconds=1)
        if account.created_at:
            return max(parse_iso(account.created_at), self._history_start)
        return self._history_start

    async def _sync_orders(self, account: Account, now: datetime) -> int:
        start = self.order_fetch_start(account)
        orders = await self._sessions.call(
            account, lambda sid: self._broker.order_history(sid, start, now), now
        )
        written = self._orders.upsert_orders(account.id, orders, plan_id=account.plan_id)
        self._accounts.set_orders_fetched(account.id, now)

        deposits = initial_balance(self._orders.get_all(account.id))
        if deposits > 0 and deposits != account.initial_balance:
            self._accounts.set_initial_balance(account.id, deposits)
            logger.info("Account %d initial balance set to %.2f", account.id, deposits)
        if written:
            logger.debug("Account %d: %d orders stored", account.id, written)
        return written
