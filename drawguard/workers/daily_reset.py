"""Daily reset scheduler.

Fires at the configured wall-clock time in the trading timezone.  Each
firing re-baselines the daily limit of every connected, non-failed account
from its broker balance and records the day's snapshot.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from drawguard.config import Config
from drawguard.errors import BrokerError
from drawguard.models import Account
from drawguard.repos.account_repo import AccountRepo
from drawguard.repos.plan_repo import PlanRepo
from drawguard.repos.snapshot_repo import DailySnapshotRepo
from drawguard.services.sessions import BrokerSessions
from drawguard.trading_calendar import next_reset_time, trading_date, utc_now

logger = logging.getLogger("drawguard.daily_reset")

# A boundary further away than this means one passed within the last hour
CATCH_UP_THRESHOLD = timedelta(hours=23)


def needs_catch_up(now: datetime, tz_name: str, reset_at) -> bool:
    """``True`` when the process starts shortly after a missed boundary."""
    return next_reset_time(now, tz_name, reset_at) - now > CATCH_UP_THRESHOLD


class DailyResetScheduler:
    """Timer loop that applies the daily baseline reset.

    Args:
        config: Application config (timezone, reset time, DB path).
        broker: ``MtApiClient`` (or duck-type for tests).
        sessions: ``BrokerSessions``; built from *broker* when omitted.
    """

    def __init__(self, config: Config, broker, sessions: Optional[BrokerSessions] = None) -> None:
        self._config = config
        self._broker = broker
        self._sessions = sessions or BrokerSessions(
            broker,
            config.db_path,
            session_ttl_hours=config.session_ttl_hours,
            reconnect_attempts=config.reconnect_attempts,
        )
        self._accounts = AccountRepo(config.db_path)
        self._plans = PlanRepo(config.db_path)
        self._daily_snapshots = DailySnapshotRepo(config.db_path)
        self._running = False
        self.last_reset_at: Optional[str] = None
        self.next_reset_at: Optional[str] = None

    def stop(self) -> None:
        self._running = False

    async def run(self) -> None:
        """Catch up if a boundary was just missed, then fire at every boundary."""
        self._running = True
        tz_name, reset_at = self._config.trading_timezone, self._config.reset_time

        if needs_catch_up(utc_now(), tz_name, reset_at):
            logger.info("Reset time passed within the last hour; resetting now")
            await self._safe_reset()

        while self._running:
            now = utc_now()
            target = next_reset_time(now, tz_name, reset_at)
            self.next_reset_at = target.isoformat()
            logger.info(
                "Next daily reset at %s (in %d minutes)",
                target.isoformat(), int((target - now).total_seconds() // 60),
            )
            # Interruptible sleep — re-checks the clock every second
            while self._running and utc_now() < target:
                await asyncio.sleep(min(1.0, max(0.0, (target - utc_now()).total_seconds())))
            if not self._running:
                break
            await self._safe_reset()

        logger.info("Daily reset scheduler stopped")

    async def _safe_reset(self) -> None:
        try:
            await self.perform_reset()
        except Exception:
            logger.exception("Daily reset failed")

    async def perform_reset(self, now: Optional[datetime] = None) -> dict:
        """Reset every connected, non-failed account.

        Returns:
            ``{"accounts": n, "reset": n, "errors": n}``
        """
        now = now or utc_now()
        accounts = self._accounts.list_connected()
        logger.info("Daily reset: processing %d accounts", len(accounts))

        reset = errors = 0
        for account in accounts:
            try:
                if await self.reset_account(account, now):
                    reset += 1
            except Exception:
                errors += 1
                logger.exception("Daily reset failed for account %d", account.id)

        self.last_reset_at = now.isoformat()
        logger.info("Daily reset complete: %d reset, %d errors", reset, errors)
        return {"accounts": len(accounts), "reset": reset, "errors": errors}

    async def reset_account(self, account: Account, now: datetime) -> bool:
        """Re-baseline one account.  ``False`` if it could not be reset."""
        balance: Optional[float] = None
        equity: Optional[float] = None
        try:
            summary = await self._sessions.call(
                account, lambda sid: self._broker.account_summary(sid), now
            )
            balance, equity = summary.balance, summary.equity
        except BrokerError as exc:
            logger.warning(
                "Account %d: broker balance unavailable (%s), using stored value",
                account.id, exc,
            )

        if balance is None:
            balance = account.daily_start_equity or account.starting_equity
        if balance is None:
            logger.warning("Account %d has no balance to reset from", account.id)
            return False

        plan = self._plans.get_plan(account.plan_id) if account.plan_id else None
        if plan is not None:
            limit_amount = balance * plan.daily_limit_percent / 100.0
        else:
            limit_amount = account.daily_limit_amount

        if not self._accounts.apply_daily_reset(account.id, balance, limit_amount, now=now):
            return False

        day = trading_date(now, self._config.trading_timezone)
        self._daily_snapshots.record(
            account.id, day, equity if equity is not None else balance, balance, now=now
        )
        logger.info(
            "Account %d daily reset: start=%.2f limit=%s",
            account.id, balance,
            f"{limit_amount:.2f}" if limit_amount is not None else "n/a",
        )
        return True
