"""Order repository — SQLite upserts and reads for the orders table."""

import json
from typing import Iterable, Optional

from drawguard.broker.models import BrokerOrder
from drawguard.repos.db import get_connection


class OrderRepo:
    """Data access layer for broker order records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def upsert_orders(
        self,
        account_id: int,
        orders: Iterable[BrokerOrder],
        plan_id: Optional[int] = None,
    ) -> int:
        """Insert or refresh orders keyed by ``(account_id, order_id)``.

        Fetching the same broker order twice updates the existing row, so
        overlapping history windows never create duplicates.

        Returns:
            Number of orders written.
        """
        rows = [
            (
                account_id, o.order_id, o.symbol, o.type.lower(), o.volume,
                o.price_open, o.price_close, o.profit, o.swap, o.commission,
                o.time_open, o.time_close, o.comment, int(o.is_demo_deposit),
                plan_id, json.dumps(o.raw) if o.raw is not None else None,
            )
            for o in orders
        ]
        if not rows:
            return 0

        conn = get_connection(self._db_path)
        try:
            conn.executemany(
                """
                INSERT INTO orders
                    (account_id, order_id, symbol, type, volume, price_open,
                     price_close, profit, swap, commission, time_open,
                     time_close, comment, is_demo_deposit, plan_id, raw_data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (account_id, order_id) DO UPDATE SET
                    symbol = excluded.symbol,
                    type = excluded.type,
                    volume = excluded.volume,
                    price_open = excluded.price_open,
                    price_close = excluded.price_close,
                    profit = excluded.profit,
                    swap = excluded.swap,
                    commission = excluded.commission,
                    time_open = excluded.time_open,
                    time_close = excluded.time_close,
                    comment = excluded.comment,
                    is_demo_deposit = excluded.is_demo_deposit,
                    plan_id = excluded.plan_id,
                    raw_data = excluded.raw_data,
                    fetched_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                rows,
            )
            conn.commit()
            return len(rows)
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def latest_close_time(self, account_id: int) -> Optional[str]:
        """Close time of the most recently closed stored order, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT time_close FROM orders
                WHERE account_id = ? AND time_close IS NOT NULL
                ORDER BY time_close DESC LIMIT 1
                """,
                (account_id,),
            ).fetchone()
            return row["time_close"] if row else None
        finally:
            conn.close()

    def get_all(self, account_id: int) -> list[dict]:
        """Every stored order of the account, oldest first."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM orders WHERE account_id = ? ORDER BY time_open, id",
                (account_id,),
            ).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def list_orders(
        self,
        account_id: int,
        symbol: Optional[str] = None,
        order_type: Optional[str] = None,
        closed_only: bool = False,
        include_deposits: bool = True,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> dict:
        """Return a filtered page of orders, newest first.

        Returns:
            ``{"orders": [...], "total": int}``
        """
        conditions = ["account_id = ?"]
        params: list = [account_id]

        if symbol:
            conditions.append("symbol = ?")
            params.append(symbol)
        if order_type:
            conditions.append("type = ?")
            params.append(order_type.lower())
        if closed_only:
            conditions.append("time_close IS NOT NULL")
        if not include_deposits:
            conditions.append("is_demo_deposit = 0")
        if since:
            conditions.append("time_open >= ?")
            params.append(since)
        if until:
            conditions.append("time_open < ?")
            params.append(until)

        where_clause = "WHERE " + " AND ".join(conditions)

        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                f"SELECT * FROM orders {where_clause} "
                "ORDER BY time_open DESC, id DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
            total = conn.execute(
                f"SELECT COUNT(*) FROM orders {where_clause}",
                params,
            ).fetchone()[0]

            orders = []
            for row in rows:
                order = dict(row)
                order["is_demo_deposit"] = bool(order["is_demo_deposit"])
                order["raw_data"] = (
                    json.loads(order["raw_data"]) if order["raw_data"] else None
                )
                orders.append(order)
            return {"orders": orders, "total": total}
        finally:
            conn.close()
