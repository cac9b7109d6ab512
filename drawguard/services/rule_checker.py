"""Rule checker — the one place an equity observation is judged.

``RuleChecker.check`` is called by the poll worker after every broker
round-trip and by the live monitor for every feed event.  It stores a
metrics snapshot, then drives the account state machine:

    normal ──(usage ≥ 97% on either limit)──▶ live      (subscribe)
    live   ──(usage < 90% on both limits)───▶ normal    (unsubscribe)
    any    ──(equity ≤ breach threshold)────▶ failed    (unsubscribe, terminal)

Every transition is a conditional write guarded by ``is_failed = 0``; two
observers racing on the same breach both see the account failed, but only
the first one writes its reason.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional

from drawguard.errors import AccountNotFoundError
from drawguard.models import LIVE, NORMAL
from drawguard.repos.account_repo import AccountRepo
from drawguard.risk.drawdown import (
    check_daily_violation,
    check_max_violation,
    next_monitoring_state,
)
from drawguard.services.metrics import MetricsResult, MetricsService
from drawguard.trading_calendar import format_local, utc_now

logger = logging.getLogger("drawguard.rules")

DAILY_LIMIT = "daily"
MAX_LIMIT = "max"

_LIMIT_LABELS = {
    DAILY_LIMIT: "Daily drawdown limit",
    MAX_LIMIT: "Max drawdown limit",
}


def failure_reason(limit: str, moment: datetime, tz_name: str) -> str:
    """Human-readable breach description, localised to the trading timezone.

    e.g. ``"Daily drawdown limit breached on 2025-06-10 at 14:03:00 (Asia/Tehran)"``
    """
    day, clock = format_local(moment, tz_name)
    return f"{_LIMIT_LABELS[limit]} breached on {day} at {clock} ({tz_name})"


@dataclass(frozen=True)
class CheckResult:
    """What one ``check`` call decided."""

    account_id: int
    monitoring_state: str
    is_failed: bool
    newly_failed: bool = False
    breached_limit: Optional[str] = None
    failure_reason: Optional[str] = None
    metrics: Optional[MetricsResult] = None


class RuleChecker:
    """Evaluates drawdown rules and applies state transitions.

    Args:
        db_path: Path to the SQLite database file.
        tz_name: Trading-calendar timezone.
        day_start: Local start of the trading day (the daily reset time).
        subscriptions: ``SubscriptionManager`` for live-feed side effects;
            ``None`` runs without a live feed.
    """

    def __init__(
        self,
        db_path: str,
        tz_name: str,
        subscriptions=None,
        day_start: Optional[time] = None,
    ) -> None:
        self._tz_name = tz_name
        self._accounts = AccountRepo(db_path)
        self._metrics = MetricsService(db_path, tz_name, day_start)
        self._subscriptions = subscriptions

    async def check(
        self,
        account_id: int,
        equity: Optional[float] = None,
        balance: Optional[float] = None,
        source: str = "poll",
        now: Optional[datetime] = None,
    ) -> CheckResult:
        """Record metrics for one observation and apply any transition.

        A failed account is left untouched; late events for it are no-ops.

        Raises:
            ComputationError: Account or plan missing, or no equity known.
        """
        now = now or utc_now()
        account = self._accounts.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        if account.is_failed:
            logger.debug("Account %d already failed; %s observation ignored", account_id, source)
            return CheckResult(
                account_id=account_id,
                monitoring_state=account.monitoring_state,
                is_failed=True,
                failure_reason=account.failure_reason,
            )

        result = self._metrics.compute_and_store(
            account_id, equity=equity, balance=balance, source=source, now=now
        )
        return await self._apply(result, source, now)

    async def _apply(self, result: MetricsResult, source: str, now: datetime) -> CheckResult:
        account = result.account
        dd = result.drawdown

        daily_breach = check_daily_violation(result.equity, dd.daily_breach_equity)
        max_breach = check_max_violation(result.equity, dd.max_breach_equity)

        if daily_breach or max_breach:
            # Daily wins when both limits are crossed by the same observation
            limit = DAILY_LIMIT if daily_breach else MAX_LIMIT
            reason = failure_reason(limit, now, self._tz_name)
            newly_failed = self._accounts.mark_failed(account.id, reason, now=now)
            if newly_failed:
                logger.warning(
                    "Account %d FAILED via %s: %s (equity=%.2f threshold=%.2f)",
                    account.id, source, reason, result.equity,
                    dd.daily_breach_equity if daily_breach else dd.max_breach_equity,
                )
            else:
                reason = self._stored_reason(account.id) or reason
            await self._unsubscribe(account.id)
            return CheckResult(
                account_id=account.id,
                monitoring_state=NORMAL,
                is_failed=True,
                newly_failed=newly_failed,
                breached_limit=limit,
                failure_reason=reason,
                metrics=result,
            )

        current = account.monitoring_state
        target = next_monitoring_state(
            current, dd.daily_usage_percent_of_limit, dd.max_usage_percent_of_limit
        )
        state = current
        if target != current:
            if self._accounts.set_monitoring_state(account.id, target, expected_state=current):
                state = target
                logger.info(
                    "Account %d %s → %s (daily %.1f%%, max %.1f%%)",
                    account.id, current, target,
                    dd.daily_usage_percent_of_limit, dd.max_usage_percent_of_limit,
                )
                if target == LIVE:
                    await self._subscribe(account)
                else:
                    await self._unsubscribe(account.id)
            else:
                # Lost the race to another observer (or a failure)
                latest = self._accounts.get_account(account.id)
                if latest is not None:
                    state = latest.monitoring_state

        return CheckResult(
            account_id=account.id,
            monitoring_state=state,
            is_failed=False,
            metrics=result,
        )

    def _stored_reason(self, account_id: int) -> Optional[str]:
        account = self._accounts.get_account(account_id)
        return account.failure_reason if account else None

    async def _subscribe(self, account) -> None:
        if self._subscriptions is not None:
            await self._subscriptions.subscribe(account)

    async def _unsubscribe(self, account_id: int) -> None:
        if self._subscriptions is not None:
            await self._subscriptions.unsubscribe(account_id)
