"""Broker data models — typed representations of MT API objects."""

from dataclasses import dataclass, field
from typing import Any, Optional

DEMO_DEPOSIT_TYPE = "balance"
DEMO_DEPOSIT_MARKER = "demo deposit"

# Live feed event kinds
EQUITY_UPDATE = "equity_update"
ORDER_PROFIT = "order_profit"


@dataclass(frozen=True)
class AccountSummary:
    """Balance and equity of a broker account."""

    balance: float
    equity: float
    currency: str = ""
    margin: Optional[float] = None
    free_margin: Optional[float] = None
    leverage: Optional[float] = None


@dataclass(frozen=True)
class BrokerOrder:
    """A closed or open order (or balance operation) from the order history.

    ``time_open`` and ``time_close`` are UTC ISO-8601 strings.
    """

    order_id: int
    symbol: str
    type: str
    volume: float
    price_open: float
    price_close: Optional[float]
    profit: float
    swap: float
    commission: float
    time_open: str
    time_close: Optional[str] = None
    comment: str = ""
    raw: Optional[dict[str, Any]] = field(default=None, compare=False)

    @property
    def is_demo_deposit(self) -> bool:
        """Positive balance operation whose comment marks it as a demo deposit."""
        return (
            self.type.lower() == DEMO_DEPOSIT_TYPE
            and self.profit > 0
            and DEMO_DEPOSIT_MARKER in (self.comment or "").lower()
        )


@dataclass(frozen=True)
class LiveEvent:
    """One event pushed by the shared live feed.

    Routing keys (``session_id``, ``login``/``server``, ``account_id``) are
    whatever the feed supplied; ``account_id`` is filled in by routing.
    """

    kind: str
    equity: Optional[float] = None
    profit: Optional[float] = None
    order_id: Optional[int] = None
    session_id: Optional[str] = None
    login: Optional[str] = None
    server: Optional[str] = None
    account_id: Optional[int] = None
    raw: Optional[dict[str, Any]] = field(default=None, compare=False)
