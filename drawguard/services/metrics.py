"""Metrics snapshot writer.

Reads everything one evaluation needs (account, plan, stored peaks, orders),
runs the drawdown calculator, raises floating peaks and appends a metrics
row.  Both the poll worker and the live monitor reach this through
``RuleChecker``; neither computes drawdown on its own.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, time
from typing import Optional

from drawguard.errors import AccountNotFoundError, ComputationError, PlanNotFoundError
from drawguard.models import ALL_TIME_PEAK, DAILY_PEAK, Account, Plan
from drawguard.repos.account_repo import AccountRepo
from drawguard.repos.order_repo import OrderRepo
from drawguard.repos.peak_repo import EquityPeakRepo
from drawguard.repos.plan_repo import PlanRepo
from drawguard.repos.snapshot_repo import MetricsRepo
from drawguard.risk.drawdown import DrawdownMetrics, compute_drawdown
from drawguard.risk.stats import calculate_trading_stats, initial_balance
from drawguard.trading_calendar import trading_date, utc_now

logger = logging.getLogger("drawguard.metrics")


@dataclass(frozen=True)
class MetricsResult:
    """Outcome of one metrics computation."""

    account: Account
    plan: Plan
    equity: float
    balance: float
    drawdown: DrawdownMetrics
    values: dict
    metrics_id: int


class MetricsService:
    """Computes and persists metrics snapshots.

    Args:
        db_path: Path to the SQLite database file.
        tz_name: Trading-calendar timezone (daily peaks, trading days).
        day_start: Local time the trading day starts (the daily reset);
            daily peaks are partitioned on it.
    """

    def __init__(
        self, db_path: str, tz_name: str, day_start: Optional[time] = None
    ) -> None:
        self._tz_name = tz_name
        self._day_start = day_start
        self._accounts = AccountRepo(db_path)
        self._plans = PlanRepo(db_path)
        self._orders = OrderRepo(db_path)
        self._peaks = EquityPeakRepo(db_path)
        self._metrics = MetricsRepo(db_path)

    def compute_and_store(
        self,
        account_id: int,
        equity: Optional[float] = None,
        balance: Optional[float] = None,
        source: str = "poll",
        now: Optional[datetime] = None,
    ) -> MetricsResult:
        """Evaluate the account at *equity* and append a metrics row.

        Missing *equity*/*balance* fall back to the latest stored snapshot,
        then to the starting equity.

        Raises:
            AccountNotFoundError: Unknown account.
            PlanNotFoundError: Account has no (existing) plan.
            ComputationError: No equity value is available at all.
        """
        now = now or utc_now()

        account = self._accounts.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        plan = self._plans.get_plan(account.plan_id) if account.plan_id else None
        if plan is None:
            raise PlanNotFoundError(account.plan_id)

        latest = self._metrics.get_latest(account_id)
        if equity is None and latest and latest["current_equity"] is not None:
            equity = float(latest["current_equity"])
        if equity is None:
            equity = account.starting_equity
        if equity is None:
            raise ComputationError(f"No equity available for account {account_id}")
        if balance is None and latest and latest["current_balance"] is not None:
            balance = float(latest["current_balance"])
        if balance is None:
            balance = equity

        starting_equity = account.starting_equity if account.starting_equity is not None else equity
        daily_start_equity = (
            account.daily_start_equity
            if account.daily_start_equity is not None
            else starting_equity
        )

        today = trading_date(now, self._tz_name, self._day_start)
        stored_daily, stored_all_time = self._peaks.get_peaks(account_id, today)

        dd = compute_drawdown(
            plan,
            current_equity=equity,
            starting_equity=starting_equity,
            daily_start_equity=daily_start_equity,
            stored_daily_peak=stored_daily,
            stored_all_time_peak=stored_all_time,
        )

        # Peaks are only tracked where they set the baseline
        if plan.daily_limit_is_floating:
            self._peaks.update_peak(
                account_id, DAILY_PEAK, dd.daily_peak_equity, trading_date=today, now=now
            )
        if plan.max_limit_is_floating:
            self._peaks.update_peak(account_id, ALL_TIME_PEAK, dd.all_time_peak_equity, now=now)

        orders = self._orders.get_all(account_id)
        stats = calculate_trading_stats(orders, self._tz_name)

        initial = account.initial_balance or initial_balance(orders)
        change_pct = (balance - initial) / initial * 100.0 if initial > 0 else 0.0

        values = {
            **asdict(dd),
            **stats,
            "initial_balance": initial,
            "current_balance": balance,
            "balance_change_percent": change_pct,
            "current_equity": equity,
            "starting_equity": starting_equity,
        }
        metrics_id = self._metrics.insert_metrics(
            account_id, values, source=source, computed_at=now
        )
        logger.debug(
            "Account %d metrics: equity=%.2f daily=%.1f%% max=%.1f%%",
            account_id, equity,
            dd.daily_usage_percent_of_limit, dd.max_usage_percent_of_limit,
        )
        return MetricsResult(
            account=account,
            plan=plan,
            equity=equity,
            balance=balance,
            drawdown=dd,
            values=values,
            metrics_id=metrics_id,
        )
