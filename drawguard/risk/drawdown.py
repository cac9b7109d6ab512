"""Drawdown limits, breach thresholds and usage — pure math, no I/O.

Both observation paths (poll worker and live monitor) evaluate accounts with
the functions in this module, so breach and hysteresis rules exist exactly
once.  Callers pass in the latest persisted peaks; nothing here reads storage.
"""

from dataclasses import dataclass
from typing import Optional

from drawguard.models import LIVE, NORMAL, Plan

# Live-monitoring hysteresis band (percent of limit used)
LIVE_ENTER_USAGE_PCT = 97.0
LIVE_EXIT_USAGE_PCT = 90.0


@dataclass(frozen=True)
class DrawdownMetrics:
    """Limits and usage for one equity observation."""

    baseline_daily_equity: float
    baseline_max_equity: float
    daily_start_equity: float
    daily_peak_equity: float
    all_time_peak_equity: float
    daily_limit_amount: float
    max_limit_amount: float
    daily_breach_equity: float
    max_breach_equity: float
    daily_used_amount: float
    max_used_amount: float
    daily_usage_percent_of_limit: float
    max_usage_percent_of_limit: float


# ── Peaks ────────────────────────────────────────────────────────────────


def daily_peak_equity(
    daily_start_equity: float,
    current_equity: float,
    is_floating: bool,
    stored_peak: Optional[float] = None,
) -> float:
    """Highest equity seen today, or the fixed daily start for static limits."""
    if not is_floating:
        return daily_start_equity
    candidates = [daily_start_equity, current_equity]
    if stored_peak is not None:
        candidates.append(stored_peak)
    return max(candidates)


def all_time_peak_equity(
    starting_equity: float,
    current_equity: float,
    is_floating: bool,
    stored_peak: Optional[float] = None,
) -> float:
    """Highest equity ever seen, or the starting equity for static limits."""
    if not is_floating:
        return starting_equity
    candidates = [starting_equity, current_equity]
    if stored_peak is not None:
        candidates.append(stored_peak)
    return max(candidates)


# ── Limits ───────────────────────────────────────────────────────────────


def usage_percent(used_amount: float, limit_amount: float) -> float:
    """Share of the limit consumed, in percent.  ``0.0`` for a zero limit."""
    if limit_amount <= 0:
        return 0.0
    return (used_amount / limit_amount) * 100.0


def compute_drawdown(
    plan: Plan,
    current_equity: float,
    starting_equity: float,
    daily_start_equity: float,
    stored_daily_peak: Optional[float] = None,
    stored_all_time_peak: Optional[float] = None,
) -> DrawdownMetrics:
    """Compute daily and max drawdown metrics for one equity observation.

    Args:
        plan: The account's plan (limit percentages and floating flags).
        current_equity: Equity being evaluated.
        starting_equity: Equity when the account was first connected.
        daily_start_equity: Equity baseline of the current trading day.
        stored_daily_peak: Persisted daily peak for today, if any.
        stored_all_time_peak: Persisted all-time peak, if any.
    """
    daily_peak = daily_peak_equity(
        daily_start_equity, current_equity,
        plan.daily_limit_is_floating, stored_daily_peak,
    )
    all_time_peak = all_time_peak_equity(
        starting_equity, current_equity,
        plan.max_limit_is_floating, stored_all_time_peak,
    )

    baseline_daily = daily_peak if plan.daily_limit_is_floating else daily_start_equity
    baseline_max = all_time_peak if plan.max_limit_is_floating else starting_equity

    daily_limit = baseline_daily * (plan.daily_limit_percent / 100.0)
    max_limit = baseline_max * (plan.max_limit_percent / 100.0)

    daily_used = max(0.0, baseline_daily - current_equity)
    max_used = max(0.0, baseline_max - current_equity)

    return DrawdownMetrics(
        baseline_daily_equity=baseline_daily,
        baseline_max_equity=baseline_max,
        daily_start_equity=daily_start_equity,
        daily_peak_equity=daily_peak,
        all_time_peak_equity=all_time_peak,
        daily_limit_amount=daily_limit,
        max_limit_amount=max_limit,
        daily_breach_equity=baseline_daily - daily_limit,
        max_breach_equity=baseline_max - max_limit,
        daily_used_amount=daily_used,
        max_used_amount=max_used,
        daily_usage_percent_of_limit=usage_percent(daily_used, daily_limit),
        max_usage_percent_of_limit=usage_percent(max_used, max_limit),
    )


# ── Rules ────────────────────────────────────────────────────────────────


def check_daily_violation(current_equity: float, daily_breach_equity: float) -> bool:
    """Touching the threshold counts as a breach."""
    return current_equity <= daily_breach_equity


def check_max_violation(current_equity: float, max_breach_equity: float) -> bool:
    return current_equity <= max_breach_equity


def should_enter_live_monitoring(daily_usage_pct: float, max_usage_pct: float) -> bool:
    return (
        daily_usage_pct >= LIVE_ENTER_USAGE_PCT
        or max_usage_pct >= LIVE_ENTER_USAGE_PCT
    )


def should_exit_live_monitoring(daily_usage_pct: float, max_usage_pct: float) -> bool:
    return (
        daily_usage_pct < LIVE_EXIT_USAGE_PCT
        and max_usage_pct < LIVE_EXIT_USAGE_PCT
    )


def next_monitoring_state(
    current_state: str,
    daily_usage_pct: float,
    max_usage_pct: float,
) -> str:
    """Apply the hysteresis band to the current monitoring state.

    Between the exit and enter thresholds the current state is kept.
    """
    if current_state == NORMAL and should_enter_live_monitoring(
        daily_usage_pct, max_usage_pct
    ):
        return LIVE
    if current_state == LIVE and should_exit_live_monitoring(
        daily_usage_pct, max_usage_pct
    ):
        return NORMAL
    return current_state
