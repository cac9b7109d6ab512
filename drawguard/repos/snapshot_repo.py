"""Snapshot repositories — append-only metrics rows and once-a-day snapshots."""

from datetime import datetime
from typing import Optional

from drawguard.repos.db import get_connection
from drawguard.trading_calendar import to_iso, utc_now

METRICS_COLUMNS = (
    "initial_balance",
    "current_balance",
    "balance_change_percent",
    "current_equity",
    "starting_equity",
    "daily_start_equity",
    "baseline_daily_equity",
    "daily_peak_equity",
    "baseline_max_equity",
    "all_time_peak_equity",
    "daily_limit_amount",
    "daily_breach_equity",
    "daily_used_amount",
    "daily_usage_percent_of_limit",
    "max_limit_amount",
    "max_breach_equity",
    "max_used_amount",
    "max_usage_percent_of_limit",
    "win_rate",
    "loss_rate",
    "profit_factor",
    "best_trade",
    "worst_trade",
    "gross_profit",
    "gross_loss",
    "trading_days",
    "total_lots",
    "trades_count",
)


class MetricsRepo:
    """Append-only store of computed account metrics.

    The row with the highest ``id`` is the account's current metrics.  Rows
    are never updated or deleted.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def insert_metrics(
        self,
        account_id: int,
        values: dict,
        source: str = "poll",
        computed_at: Optional[datetime] = None,
    ) -> int:
        """Append one metrics row and return its ``id``."""
        columns = ", ".join(METRICS_COLUMNS)
        placeholders = ", ".join("?" for _ in METRICS_COLUMNS)
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                f"""
                INSERT INTO account_metrics
                    (account_id, computed_at, source, {columns})
                VALUES (?, ?, ?, {placeholders})
                """,
                (
                    account_id,
                    to_iso(computed_at or utc_now()),
                    source,
                    *(values.get(col) for col in METRICS_COLUMNS),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def get_latest(self, account_id: int) -> dict | None:
        """Return the most recent metrics row, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM account_metrics WHERE account_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (account_id,),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def count(self, account_id: int) -> int:
        conn = get_connection(self._db_path)
        try:
            return conn.execute(
                "SELECT COUNT(*) FROM account_metrics WHERE account_id = ?",
                (account_id,),
            ).fetchone()[0]
        finally:
            conn.close()


class DailySnapshotRepo:
    """One balance/equity snapshot per account and trading date."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def record(
        self,
        account_id: int,
        snapshot_date: str,
        equity: float,
        balance: float,
        now: Optional[datetime] = None,
    ) -> bool:
        """Insert today's snapshot unless one exists.  ``True`` if inserted."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO account_snapshots
                    (account_id, snapshot_date, equity, balance, snapshot_time)
                VALUES (?, ?, ?, ?, ?)
                """,
                (account_id, snapshot_date, equity, balance, to_iso(now or utc_now())),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def get(self, account_id: int, snapshot_date: str) -> dict | None:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM account_snapshots WHERE account_id = ? AND snapshot_date = ?",
                (account_id, snapshot_date),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()
