"""Trading statistics — pure functions over closed trades."""

from typing import Optional

from drawguard.trading_calendar import parse_iso, trading_date

TRADE_TYPES = ("buy", "sell")


def is_closed_trade(order: dict) -> bool:
    """Buy/sell order with a close time that is not a demo deposit."""
    return (
        not order.get("is_demo_deposit")
        and (order.get("type") or "").lower() in TRADE_TYPES
        and bool(order.get("time_close"))
    )


def calculate_trading_stats(orders: list[dict], tz_name: str) -> dict:
    """Compute summary statistics from an account's stored orders.

    Deposits, balance entries and still-open orders are ignored.  Each
    remaining order dict needs ``profit``, ``volume`` and ``time_open``.

    Returns:
        Dict matching the trading-stat columns of ``account_metrics``:
        ``win_rate``, ``loss_rate``, ``profit_factor``, ``best_trade``,
        ``worst_trade``, ``gross_profit``, ``gross_loss``, ``trading_days``,
        ``total_lots``, ``trades_count``.
    """
    trades = [o for o in orders if is_closed_trade(o)]
    if not trades:
        return {
            "win_rate": 0.0,
            "loss_rate": 0.0,
            "profit_factor": None,
            "best_trade": 0.0,
            "worst_trade": 0.0,
            "gross_profit": 0.0,
            "gross_loss": 0.0,
            "trading_days": 0,
            "total_lots": 0.0,
            "trades_count": 0,
        }

    profits = [float(t["profit"] or 0.0) for t in trades]
    total = len(profits)
    winners = [p for p in profits if p > 0]
    losers = [p for p in profits if p < 0]

    win_rate = len(winners) / total * 100.0
    gross_profit = sum(winners)
    gross_loss = abs(sum(losers))
    profit_factor: Optional[float] = (
        gross_profit / gross_loss if gross_loss > 0 else None
    )

    days = {
        trading_date(parse_iso(t["time_open"]), tz_name)
        for t in trades
    }

    return {
        "win_rate": round(win_rate, 2),
        "loss_rate": round(100.0 - win_rate, 2),
        "profit_factor": round(profit_factor, 4) if profit_factor is not None else None,
        "best_trade": max(profits),
        "worst_trade": min(profits),
        "gross_profit": round(gross_profit, 2),
        "gross_loss": round(gross_loss, 2),
        "trading_days": len(days),
        "total_lots": round(sum(float(t["volume"] or 0.0) for t in trades), 2),
        "trades_count": total,
    }


def initial_balance(orders: list[dict]) -> float:
    """Sum of positive demo-deposit credits."""
    return sum(
        float(o["profit"])
        for o in orders
        if o.get("is_demo_deposit") and float(o.get("profit") or 0) > 0
    )
