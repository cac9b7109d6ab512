"""Plan repository — SQLite operations for the plans table."""

from typing import Optional

from drawguard.models import Plan
from drawguard.repos.db import get_connection


class PlanRepo:
    """Data access layer for plans.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def create_plan(
        self,
        name: str,
        daily_limit_percent: float,
        max_limit_percent: float,
        daily_limit_is_floating: bool = False,
        max_limit_is_floating: bool = False,
    ) -> int:
        """Insert a plan and return its ``id``."""
        if daily_limit_percent < 0 or max_limit_percent < 0:
            raise ValueError("limit percentages must be non-negative")
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT INTO plans
                    (name, daily_limit_percent, max_limit_percent,
                     daily_limit_is_floating, max_limit_is_floating)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    name, daily_limit_percent, max_limit_percent,
                    int(daily_limit_is_floating), int(max_limit_is_floating),
                ),
            )
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        """Return the plan, or ``None``."""
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM plans WHERE id = ?", (plan_id,)
            ).fetchone()
            return Plan.from_row(row) if row else None
        finally:
            conn.close()
