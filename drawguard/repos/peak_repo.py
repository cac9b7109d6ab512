"""Equity peak repository — high-water marks for floating drawdown limits.

``update_peak`` is one atomic statement: insert, or on conflict keep
``MAX(stored, new)``.  The poll worker and the live monitor may call it for
the same account at the same time; a read-then-write here would lose updates.
"""

from datetime import datetime
from typing import Optional

from drawguard.models import ALL_TIME_PEAK, DAILY_PEAK
from drawguard.repos.db import get_connection
from drawguard.trading_calendar import to_iso, utc_now

_UPSERT_DAILY = """
    INSERT INTO equity_peaks (account_id, peak_kind, equity, recorded_at, trading_date)
    VALUES (?, 'daily_peak', ?, ?, ?)
    ON CONFLICT (account_id, peak_kind, trading_date) WHERE peak_kind = 'daily_peak'
    DO UPDATE SET
        recorded_at = CASE
            WHEN excluded.equity > equity_peaks.equity THEN excluded.recorded_at
            ELSE equity_peaks.recorded_at
        END,
        equity = MAX(equity_peaks.equity, excluded.equity)
"""

_UPSERT_ALL_TIME = """
    INSERT INTO equity_peaks (account_id, peak_kind, equity, recorded_at)
    VALUES (?, 'all_time_peak', ?, ?)
    ON CONFLICT (account_id, peak_kind) WHERE peak_kind = 'all_time_peak'
    DO UPDATE SET
        recorded_at = CASE
            WHEN excluded.equity > equity_peaks.equity THEN excluded.recorded_at
            ELSE equity_peaks.recorded_at
        END,
        equity = MAX(equity_peaks.equity, excluded.equity)
"""


class EquityPeakRepo:
    """Data access layer for equity peaks.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def update_peak(
        self,
        account_id: int,
        kind: str,
        equity: float,
        trading_date: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Raise the stored peak to *equity* if it is higher.

        Args:
            account_id: Account the peak belongs to.
            kind: ``"daily_peak"`` or ``"all_time_peak"``.
            equity: Observed equity.
            trading_date: Trading-calendar date, required for daily peaks.
            now: Timestamp recorded when the peak moves.
        """
        recorded_at = to_iso(now or utc_now())
        if kind == DAILY_PEAK:
            if not trading_date:
                raise ValueError("trading_date is required for daily peaks")
            sql, params = _UPSERT_DAILY, (account_id, equity, recorded_at, trading_date)
        elif kind == ALL_TIME_PEAK:
            sql, params = _UPSERT_ALL_TIME, (account_id, equity, recorded_at)
        else:
            raise ValueError(f"unknown peak kind: {kind!r}")

        conn = get_connection(self._db_path)
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    def get_peak(
        self,
        account_id: int,
        kind: str,
        trading_date: Optional[str] = None,
    ) -> Optional[dict]:
        """Return the stored peak row as a dict, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            if kind == DAILY_PEAK:
                row = conn.execute(
                    """
                    SELECT * FROM equity_peaks
                    WHERE account_id = ? AND peak_kind = 'daily_peak'
                      AND trading_date = ?
                    """,
                    (account_id, trading_date),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM equity_peaks
                    WHERE account_id = ? AND peak_kind = 'all_time_peak'
                    """,
                    (account_id,),
                ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def get_peaks(
        self, account_id: int, trading_date: str
    ) -> tuple[Optional[float], Optional[float]]:
        """Return ``(daily_peak, all_time_peak)`` equities for the given day."""
        daily = self.get_peak(account_id, DAILY_PEAK, trading_date)
        all_time = self.get_peak(account_id, ALL_TIME_PEAK)
        return (
            float(daily["equity"]) if daily else None,
            float(all_time["equity"]) if all_time else None,
        )
