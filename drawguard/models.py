"""Domain models — typed views over the plans and accounts tables."""

import sqlite3
from dataclasses import dataclass
from typing import Optional

# Monitoring states
NORMAL = "normal"
LIVE = "live"

# Connection states
DISCONNECTED = "disconnected"
CONNECTED = "connected"
ERROR = "error"

# Equity peak kinds
DAILY_PEAK = "daily_peak"
ALL_TIME_PEAK = "all_time_peak"


@dataclass(frozen=True)
class Plan:
    """Drawdown rules shared by every account on the plan."""

    id: int
    name: str
    daily_limit_percent: float
    max_limit_percent: float
    daily_limit_is_floating: bool = False
    max_limit_is_floating: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Plan":
        return cls(
            id=row["id"],
            name=row["name"],
            daily_limit_percent=float(row["daily_limit_percent"]),
            max_limit_percent=float(row["max_limit_percent"]),
            daily_limit_is_floating=bool(row["daily_limit_is_floating"]),
            max_limit_is_floating=bool(row["max_limit_is_floating"]),
        )


@dataclass(frozen=True)
class Account:
    """A funded account as stored; a fresh instance is read for every cycle."""

    id: int
    login: str
    server: str
    plan_id: Optional[int]
    investor_password: str = ""
    starting_equity: Optional[float] = None
    daily_start_equity: Optional[float] = None
    daily_limit_amount: Optional[float] = None
    initial_balance: Optional[float] = None
    monitoring_state: str = NORMAL
    is_failed: bool = False
    failure_reason: Optional[str] = None
    failed_at: Optional[str] = None
    connection_state: str = DISCONNECTED
    connection_error: Optional[str] = None
    session_id: Optional[str] = None
    session_expires_at: Optional[str] = None
    session_last_validated: Optional[str] = None
    last_seen: Optional[str] = None
    last_orders_fetched_at: Optional[str] = None
    feed_subscribed_at: Optional[str] = None
    daily_reset_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Account":
        data = dict(row)
        data["is_failed"] = bool(data["is_failed"])
        for key in (
            "starting_equity", "daily_start_equity",
            "daily_limit_amount", "initial_balance",
        ):
            if data[key] is not None:
                data[key] = float(data[key])
        return cls(**data)

    def public_dict(self) -> dict:
        """Return the account without its stored credentials."""
        data = dict(self.__dict__)
        data.pop("investor_password", None)
        return data
