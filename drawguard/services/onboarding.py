"""Account onboarding — the first successful broker connection creates the account."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from drawguard.config import Config
from drawguard.errors import BrokerError, DuplicateAccountError, PlanNotFoundError
from drawguard.models import Account
from drawguard.repos.account_repo import AccountRepo
from drawguard.repos.order_repo import OrderRepo
from drawguard.repos.plan_repo import PlanRepo
from drawguard.trading_calendar import utc_now

logger = logging.getLogger("drawguard.onboarding")


async def connect_account(
    config: Config,
    broker,
    login: str,
    server: str,
    investor_password: str,
    plan_id: int,
    now: Optional[datetime] = None,
) -> Account:
    """Connect to the broker and register a new monitored account.

    Captures the starting (and first daily-start) equity from the account
    summary, and the initial balance from demo-deposit credits in the full
    order history.  A failed history fetch leaves the initial balance for
    the poll worker to fill in.

    Raises:
        PlanNotFoundError: *plan_id* does not exist.
        DuplicateAccountError: ``(login, server)`` is already registered.
        BrokerError: Credentials rejected or the broker is unreachable.
    """
    now = now or utc_now()
    accounts = AccountRepo(config.db_path)
    orders_repo = OrderRepo(config.db_path)

    plan = PlanRepo(config.db_path).get_plan(plan_id)
    if plan is None:
        raise PlanNotFoundError(plan_id)
    if accounts.get_by_login(login, server) is not None:
        raise DuplicateAccountError(f"Account with login {login} on {server} already exists")

    session_id = await broker.connect(login, investor_password, server)
    summary = await broker.account_summary(session_id)

    history = []
    history_start = datetime.fromisoformat(config.order_history_start).replace(
        tzinfo=timezone.utc
    )
    try:
        history = await broker.order_history(session_id, history_start, now)
    except BrokerError as exc:
        logger.warning("Order history unavailable for %s@%s: %s", login, server, exc)

    deposits = sum(o.profit for o in history if o.is_demo_deposit)

    account_id = accounts.create_account(
        login=login,
        server=server,
        investor_password=investor_password,
        plan_id=plan_id,
        starting_equity=summary.equity,
        session_id=session_id,
        session_expires_at=now + timedelta(hours=config.session_ttl_hours),
        initial_balance=deposits or None,
        daily_limit_amount=summary.equity * plan.daily_limit_percent / 100.0,
        now=now,
    )
    if history:
        orders_repo.upsert_orders(account_id, history, plan_id=plan_id)
        accounts.set_orders_fetched(account_id, now)

    logger.info(
        "Account %d created for %s@%s on plan '%s' (equity %.2f, initial balance %.2f)",
        account_id, login, server, plan.name, summary.equity, deposits,
    )
    return accounts.get_account(account_id)
