"""Tests for drawguard.workers.poll_worker — the periodic broker sweep."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from drawguard.broker.models import AccountSummary, BrokerOrder
from drawguard.config import Config
from drawguard.errors import BrokerError, SessionExpiredError, TransientBrokerError
from drawguard.models import ERROR
from drawguard.repos.account_repo import AccountRepo
from drawguard.repos.db import init_db
from drawguard.repos.order_repo import OrderRepo
from drawguard.repos.plan_repo import PlanRepo
from drawguard.repos.snapshot_repo import DailySnapshotRepo, MetricsRepo
from drawguard.services.rule_checker import RuleChecker
from drawguard.services.sessions import BrokerSessions
from drawguard.trading_calendar import to_iso
from drawguard.workers.poll_worker import PollWorker

NOW = datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def tmp_db(tmp_path):
    db_path = str(tmp_path / "test.db")
    init_db(db_path)
    return db_path


def _make_config(db_path, **overrides) -> Config:
    defaults = dict(
        broker_base_url="http://mtapi.test:5000",
        live_feed_url="ws://mtapi.test:5001/events",
        db_path=db_path,
        log_level="DEBUG",
        health_port=8080,
        poll_interval_seconds=1,
        poll_concurrency=2,
        broker_timeout_seconds=5.0,
        reconnect_attempts=2,
        session_ttl_hours=24,
        trading_timezone="Asia/Tehran",
        broker_timezone="Europe/Istanbul",
        daily_reset_time="01:30",
        order_history_start="2025-06-01",
    )
    defaults.update(overrides)
    return Config(**defaults)


def _broker(equity=10_000.0, balance=10_000.0, orders=None):
    broker = MagicMock()
    broker.connect = AsyncMock(return_value="n" * 36)
    broker.account_summary = AsyncMock(
        return_value=AccountSummary(balance=balance, equity=equity, currency="USD")
    )
    broker.order_history = AsyncMock(return_value=orders or [])
    broker.disconnect = AsyncMock()
    return broker


def _order(order_id, profit=25.0, type_="buy", comment="", close="2025-06-10T09:00:00+00:00"):
    return BrokerOrder(
        order_id=order_id, symbol="EURUSD", type=type_, volume=0.1,
        price_open=1.1, price_close=1.2, profit=profit, swap=0.0, commission=0.0,
        time_open="2025-06-10T08:00:00+00:00", time_close=close, comment=comment,
    )


def _add_account(db_path, login="1001", session=True, created=NOW, plan_id=None):
    if plan_id is None:
        plan_id = PlanRepo(db_path).create_plan(f"Plan {login}", 5.0, 10.0)
    return AccountRepo(db_path).create_account(
        login, "Demo-Server", "investor", plan_id,
        starting_equity=10_000.0,
        session_id=(login * 10)[:36] if session else None,
        session_expires_at=created + timedelta(hours=24) if session else None,
        now=created,
    )


def _worker(config, broker):
    sessions = BrokerSessions(
        broker, config.db_path, reconnect_attempts=config.reconnect_attempts, backoff_base=0.0
    )
    checker = RuleChecker(config.db_path, config.trading_timezone, day_start=config.reset_time)
    return PollWorker(config, broker, checker, sessions)


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_checks_account_with_valid_session(self, tmp_db):
        aid = _add_account(tmp_db)
        broker = _broker(equity=9_900.0)
        worker = _worker(_make_config(tmp_db), broker)

        summary = await worker.run_cycle(now=NOW + timedelta(minutes=10))

        assert summary["accounts"] == 1
        assert summary["checked"] == 1
        assert summary["errors"] == 0
        broker.connect.assert_not_awaited()
        latest = MetricsRepo(tmp_db).get_latest(aid)
        assert latest["current_equity"] == 9_900.0
        assert latest["source"] == "poll"
        assert worker.cycle_count == 1
        assert worker.last_cycle_summary == summary

    @pytest.mark.asyncio
    async def test_reconnects_without_session(self, tmp_db):
        aid = _add_account(tmp_db, session=False)
        broker = _broker()
        worker = _worker(_make_config(tmp_db), broker)

        summary = await worker.run_cycle(now=NOW)

        assert summary["checked"] == 1
        broker.connect.assert_awaited_once()
        assert AccountRepo(tmp_db).get_account(aid).session_id == "n" * 36

    @pytest.mark.asyncio
    async def test_connection_failure_skips_without_failing(self, tmp_db):
        aid = _add_account(tmp_db, session=False)
        broker = _broker()
        broker.connect = AsyncMock(side_effect=BrokerError("invalid credentials"))
        worker = _worker(_make_config(tmp_db), broker)

        summary = await worker.run_cycle(now=NOW)

        assert summary["skipped"] == 1
        account = AccountRepo(tmp_db).get_account(aid)
        assert account.connection_state == ERROR
        assert account.is_failed is False
        broker.account_summary.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_account_error_does_not_abort_batch(self, tmp_db):
        bad = _add_account(tmp_db, login="1001")
        good = _add_account(tmp_db, login="2002")
        bad_session = AccountRepo(tmp_db).get_account(bad).session_id

        broker = _broker()

        async def _summary(session_id):
            if session_id == bad_session:
                raise TransientBrokerError("503")
            return AccountSummary(balance=10_000.0, equity=10_050.0)

        broker.account_summary = AsyncMock(side_effect=_summary)
        worker = _worker(_make_config(tmp_db), broker)

        summary = await worker.run_cycle(now=NOW + timedelta(minutes=5))

        assert summary["accounts"] == 2
        assert summary["checked"] == 1
        assert summary["errors"] == 1
        assert MetricsRepo(tmp_db).get_latest(good)["current_equity"] == 10_050.0
        assert MetricsRepo(tmp_db).get_latest(bad) is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_isolated(self, tmp_db):
        _add_account(tmp_db)
        broker = _broker()
        broker.order_history = AsyncMock(side_effect=RuntimeError("boom"))
        worker = _worker(_make_config(tmp_db), broker)

        summary = await worker.run_cycle(now=NOW + timedelta(minutes=5))
        assert summary["errors"] == 1

    @pytest.mark.asyncio
    async def test_breach_fails_account(self, tmp_db):
        aid = _add_account(tmp_db)
        broker = _broker(equity=9_400.0)
        worker = _worker(_make_config(tmp_db), broker)

        summary = await worker.run_cycle(now=NOW + timedelta(minutes=5))

        assert summary["failed"] == [aid]
        assert AccountRepo(tmp_db).get_account(aid).is_failed is True
        broker.disconnect.assert_awaited_once()
        # failed accounts are no longer polled
        assert (await worker.run_cycle(now=NOW + timedelta(minutes=6)))["accounts"] == 0

    @pytest.mark.asyncio
    async def test_breach_stamped_when_detected(self, tmp_db, monkeypatch):
        aid = _add_account(tmp_db)
        detected = NOW + timedelta(minutes=3)
        monkeypatch.setattr("drawguard.services.rule_checker.utc_now", lambda: detected)
        worker = _worker(_make_config(tmp_db), _broker(equity=9_400.0))

        await worker.run_cycle(now=NOW)

        account = AccountRepo(tmp_db).get_account(aid)
        assert account.failed_at == to_iso(detected)
        # 12:03 UTC is 15:33 in Tehran
        assert account.failure_reason == (
            "Daily drawdown limit breached on 2025-06-10 at 15:33:00 (Asia/Tehran)"
        )
        assert MetricsRepo(tmp_db).get_latest(aid)["computed_at"] == to_iso(detected)

    @pytest.mark.asyncio
    async def test_breach_disconnects_session_renewed_mid_cycle(self, tmp_db):
        _add_account(tmp_db)
        broker = _broker()
        broker.account_summary = AsyncMock(side_effect=[
            SessionExpiredError("401"),
            AccountSummary(balance=10_000.0, equity=9_400.0),
        ])
        worker = _worker(_make_config(tmp_db), broker)

        summary = await worker.run_cycle(now=NOW + timedelta(minutes=5))

        assert len(summary["failed"]) == 1
        broker.connect.assert_awaited_once()
        broker.disconnect.assert_awaited_once_with("n" * 36)


class TestOrderSync:
    @pytest.mark.asyncio
    async def test_same_orders_across_cycles_are_not_duplicated(self, tmp_db):
        aid = _add_account(tmp_db)
        broker = _broker(orders=[_order(1), _order(2)])
        worker = _worker(_make_config(tmp_db), broker)

        await worker.run_cycle(now=NOW + timedelta(minutes=5))
        await worker.run_cycle(now=NOW + timedelta(minutes=10))

        assert len(OrderRepo(tmp_db).get_all(aid)) == 2
        assert AccountRepo(tmp_db).get_account(aid).last_orders_fetched_at is not None

    def test_first_fetch_starts_at_later_of_creation_and_history_start(self, tmp_db):
        aid = _add_account(tmp_db, created=NOW)
        worker = _worker(_make_config(tmp_db), _broker())
        account = AccountRepo(tmp_db).get_account(aid)
        assert worker.order_fetch_start(account) == NOW

        worker = _worker(_make_config(tmp_db, order_history_start="2025-07-01"), _broker())
        assert worker.order_fetch_start(account) == datetime(2025, 7, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_incremental_fetch_after_latest_close(self, tmp_db):
        aid = _add_account(tmp_db)
        broker = _broker(orders=[_order(1, close="2025-06-10T09:00:00+00:00")])
        worker = _worker(_make_config(tmp_db), broker)

        await worker.run_cycle(now=NOW + timedelta(minutes=5))
        await worker.run_cycle(now=NOW + timedelta(minutes=10))

        start = broker.order_history.await_args_list[-1].args[1]
        assert start == datetime(2025, 6, 10, 9, 0, 1, tzinfo=timezone.utc)
        assert worker.order_fetch_start(AccountRepo(tmp_db).get_account(aid)) == start

    @pytest.mark.asyncio
    async def test_demo_deposits_set_initial_balance(self, tmp_db):
        aid = _add_account(tmp_db)
        orders = [
            _order(1, profit=10_000.0, type_="balance", comment="Demo deposit"),
            _order(2, profit=40.0),
        ]
        worker = _worker(_make_config(tmp_db), _broker(balance=10_040.0, orders=orders))

        await worker.run_cycle(now=NOW + timedelta(minutes=5))

        assert AccountRepo(tmp_db).get_account(aid).initial_balance == 10_000.0
        latest = MetricsRepo(tmp_db).get_latest(aid)
        assert latest["balance_change_percent"] == pytest.approx(0.4)


class TestDailySnapshot:
    @pytest.mark.asyncio
    async def test_snapshot_inside_reset_window(self, tmp_db):
        # 22:02 UTC is 01:32 in Tehran, inside the 01:30 window
        in_window = datetime(2025, 6, 10, 22, 2, tzinfo=timezone.utc)
        aid = _add_account(tmp_db, created=in_window - timedelta(minutes=10))
        worker = _worker(_make_config(tmp_db), _broker(equity=10_100.0, balance=10_000.0))

        await worker.run_cycle(now=in_window)
        await worker.run_cycle(now=in_window + timedelta(minutes=1))

        snap = DailySnapshotRepo(tmp_db).get(aid, "2025-06-11")
        assert snap["equity"] == 10_100.0
        assert snap["balance"] == 10_000.0

    @pytest.mark.asyncio
    async def test_no_snapshot_outside_window(self, tmp_db):
        aid = _add_account(tmp_db)
        worker = _worker(_make_config(tmp_db), _broker())
        await worker.run_cycle(now=NOW + timedelta(minutes=5))
        assert DailySnapshotRepo(tmp_db).get(aid, "2025-06-10") is None


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_max_cycles(self, tmp_db):
        _add_account(tmp_db, created=datetime.now(timezone.utc))
        worker = _worker(_make_config(tmp_db), _broker())
        await worker.run(max_cycles=1)
        assert worker.cycle_count == 1
        assert worker.running is False
