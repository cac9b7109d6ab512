"""Internal API routers — /status and read-only /accounts endpoints.

No business logic, no DB access. Delegates to ``AccountQueries`` and the
worker manager.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

logger = logging.getLogger("drawguard.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_queries = None         # Set via configure_routers()
_worker_manager = None  # Set via configure_routers()


def configure_routers(queries, worker_manager=None) -> None:
    """Inject dependencies from the application startup.

    Args:
        queries: An ``AccountQueries`` instance (or duck-type for tests).
        worker_manager: A ``WorkerManager`` instance for ``/status``.
    """
    global _queries, _worker_manager  # noqa: PLW0603
    _queries = queries
    _worker_manager = worker_manager


def _require_queries():
    if _queries is None:
        raise HTTPException(status_code=503, detail="Queries not configured")
    return _queries


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get("/status")
async def get_status():
    """Worker, live-feed and account overview."""
    workers = _worker_manager.get_status() if _worker_manager is not None else {}
    accounts = _queries.list_accounts() if _queries is not None else []
    return {
        "workers": workers,
        "active_accounts": len(accounts),
        "live_accounts": sum(1 for a in accounts if a["monitoring_state"] == "live"),
    }


@router.get("/accounts/{account_id}")
async def get_account(account_id: int):
    """Return one account (without credentials)."""
    account = _require_queries().get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    return account


@router.get("/accounts/{account_id}/metrics")
async def get_account_metrics(account_id: int):
    """Return the latest metrics snapshot."""
    queries = _require_queries()
    if queries.get_account(account_id) is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    metrics = queries.get_latest_metrics(account_id)
    if metrics is None:
        raise HTTPException(status_code=404, detail="No metrics computed yet")
    return metrics


@router.get("/accounts/{account_id}/orders")
async def get_account_orders(
    account_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    symbol: Optional[str] = Query(default=None),
    type: Optional[str] = Query(default=None),
    closed_only: bool = Query(default=False),
    include_deposits: bool = Query(default=True),
    since: Optional[str] = Query(default=None),
    until: Optional[str] = Query(default=None),
):
    """Return stored orders, newest first."""
    queries = _require_queries()
    if queries.get_account(account_id) is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    return queries.list_orders(
        account_id,
        symbol=symbol,
        order_type=type,
        closed_only=closed_only,
        include_deposits=include_deposits,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
