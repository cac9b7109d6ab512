"""Account repository — SQLite operations for the accounts table.

Every write that can race between the poll worker and the live monitor is a
single conditional ``UPDATE``.  State writes are guarded by ``is_failed = 0``
so a failed account is never touched again, and the failure write itself
reports whether it was the one that flipped the latch.
"""

import sqlite3
from datetime import datetime
from typing import Optional

from drawguard.errors import DuplicateAccountError
from drawguard.models import CONNECTED, DISCONNECTED, ERROR, NORMAL, Account
from drawguard.repos.db import get_connection
from drawguard.trading_calendar import to_iso, utc_now


class AccountRepo:
    """Data access layer for accounts.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def _execute(self, sql: str, params: tuple) -> int:
        """Run one write statement and return the affected row count."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def _fetch(self, sql: str, params: tuple = ()) -> list[Account]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(sql, params).fetchall()
            return [Account.from_row(row) for row in rows]
        finally:
            conn.close()

    # ── Create ───────────────────────────────────────────────────────────

    def create_account(
        self,
        login: str,
        server: str,
        investor_password: str,
        plan_id: Optional[int],
        starting_equity: Optional[float] = None,
        session_id: Optional[str] = None,
        session_expires_at: Optional[datetime] = None,
        initial_balance: Optional[float] = None,
        daily_limit_amount: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Insert a new account and return its ``id``.

        Raises:
            DuplicateAccountError: ``(login, server)`` is already registered.
        """
        now_iso = to_iso(now or utc_now())
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO accounts
                    (login, server, investor_password, plan_id,
                     starting_equity, daily_start_equity, daily_limit_amount,
                     initial_balance,
                     session_id, session_expires_at, session_last_validated,
                     connection_state, last_seen, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    login, server, investor_password, plan_id,
                    starting_equity, starting_equity, daily_limit_amount,
                    initial_balance,
                    session_id,
                    to_iso(session_expires_at) if session_expires_at else None,
                    now_iso if session_id else None,
                    CONNECTED if session_id else DISCONNECTED,
                    now_iso if session_id else None,
                    now_iso, now_iso,
                ),
            )
            conn.commit()
            return cur.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateAccountError(
                f"Account with login {login} on {server} already exists"
            ) from exc
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_account(self, account_id: int) -> Optional[Account]:
        """Return the account, or ``None``."""
        rows = self._fetch("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return rows[0] if rows else None

    def get_by_login(self, login: str, server: str) -> Optional[Account]:
        rows = self._fetch(
            "SELECT * FROM accounts WHERE login = ? AND server = ?", (login, server)
        )
        return rows[0] if rows else None

    def list_active(self) -> list[Account]:
        """All accounts that have not failed."""
        return self._fetch("SELECT * FROM accounts WHERE is_failed = 0 ORDER BY id")

    def list_connected(self) -> list[Account]:
        """Non-failed accounts with a live broker connection."""
        return self._fetch(
            "SELECT * FROM accounts WHERE is_failed = 0 AND connection_state = ? "
            "ORDER BY id",
            (CONNECTED,),
        )

    def list_live(self) -> list[Account]:
        """Non-failed accounts currently in live monitoring."""
        return self._fetch(
            "SELECT * FROM accounts WHERE is_failed = 0 AND monitoring_state = 'live' "
            "ORDER BY id"
        )

    # ── Session / connection ─────────────────────────────────────────────

    def record_session(
        self,
        account_id: int,
        session_id: str,
        expires_at: datetime,
        equity: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Store a fresh broker session and mark the account connected.

        *equity* seeds ``starting_equity`` and ``daily_start_equity`` only
        when they are still unset.
        """
        now_iso = to_iso(now or utc_now())
        self._execute(
            """
            UPDATE accounts
            SET session_id = ?, session_expires_at = ?,
                session_last_validated = ?, connection_state = ?,
                connection_error = NULL,
                starting_equity = COALESCE(starting_equity, ?),
                daily_start_equity = COALESCE(daily_start_equity, ?),
                updated_at = ?
            WHERE id = ?
            """,
            (
                session_id, to_iso(expires_at), now_iso, CONNECTED,
                equity, equity, now_iso, account_id,
            ),
        )

    def touch_session(self, account_id: int, now: Optional[datetime] = None) -> None:
        """Record a successful broker round-trip."""
        now_iso = to_iso(now or utc_now())
        self._execute(
            "UPDATE accounts SET last_seen = ?, session_last_validated = ? WHERE id = ?",
            (now_iso, now_iso, account_id),
        )

    def mark_connection_error(self, account_id: int, message: str) -> None:
        """Drop the session and surface a connection error (never fails the account)."""
        self._execute(
            """
            UPDATE accounts
            SET connection_state = ?, connection_error = ?,
                session_id = NULL, session_expires_at = NULL, updated_at = ?
            WHERE id = ?
            """,
            (ERROR, message, to_iso(utc_now()), account_id),
        )

    def set_initial_balance(self, account_id: int, amount: float) -> None:
        self._execute(
            "UPDATE accounts SET initial_balance = ? WHERE id = ?",
            (amount, account_id),
        )

    def set_orders_fetched(self, account_id: int, now: Optional[datetime] = None) -> None:
        self._execute(
            "UPDATE accounts SET last_orders_fetched_at = ? WHERE id = ?",
            (to_iso(now or utc_now()), account_id),
        )

    def set_feed_subscription(
        self, account_id: int, subscribed_at: Optional[datetime]
    ) -> None:
        """Record (or clear, with ``None``) the live-feed subscription time."""
        self._execute(
            "UPDATE accounts SET feed_subscribed_at = ? WHERE id = ?",
            (to_iso(subscribed_at) if subscribed_at else None, account_id),
        )

    # ── State machine ────────────────────────────────────────────────────

    def set_monitoring_state(
        self, account_id: int, new_state: str, expected_state: str
    ) -> bool:
        """Move ``expected_state → new_state`` unless the account has failed.

        Returns ``True`` when this call performed the transition.
        """
        changed = self._execute(
            """
            UPDATE accounts
            SET monitoring_state = ?, updated_at = ?
            WHERE id = ? AND is_failed = 0 AND monitoring_state = ?
            """,
            (new_state, to_iso(utc_now()), account_id, expected_state),
        )
        return changed == 1

    def mark_failed(
        self, account_id: int, reason: str, now: Optional[datetime] = None
    ) -> bool:
        """Latch ``is_failed``.  Only the first caller gets ``True``.

        A concurrent duplicate detection matches zero rows, so the first
        reason written is the one that stays.
        """
        now_iso = to_iso(now or utc_now())
        changed = self._execute(
            """
            UPDATE accounts
            SET is_failed = 1, failure_reason = ?, failed_at = ?,
                monitoring_state = ?, updated_at = ?
            WHERE id = ? AND is_failed = 0
            """,
            (reason, now_iso, NORMAL, now_iso, account_id),
        )
        return changed == 1

    def apply_daily_reset(
        self,
        account_id: int,
        daily_start_equity: float,
        daily_limit_amount: Optional[float],
        now: Optional[datetime] = None,
    ) -> bool:
        """Re-baseline the daily limit of a non-failed account."""
        now_iso = to_iso(now or utc_now())
        changed = self._execute(
            """
            UPDATE accounts
            SET daily_start_equity = ?, daily_limit_amount = ?,
                daily_reset_at = ?, updated_at = ?
            WHERE id = ? AND is_failed = 0
            """,
            (daily_start_equity, daily_limit_amount, now_iso, now_iso, account_id),
        )
        return changed == 1
