"""Tests for drawguard.workers.daily_reset — the daily baseline reset."""

from datetime import datetime, time, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from drawguard.broker.models import AccountSummary
from drawguard.config import Config
from drawguard.errors import TransientBrokerError
from drawguard.repos.account_repo import AccountRepo
from drawguard.repos.db import init_db
from drawguard.repos.plan_repo import PlanRepo
from drawguard.repos.snapshot_repo import DailySnapshotRepo
from drawguard.services.sessions import BrokerSessions
from drawguard.workers.daily_reset import DailyResetScheduler, needs_catch_up

TZ = "Asia/Tehran"
RESET = time(1, 30)
# 22:00 UTC is the 01:30 boundary in Tehran
BOUNDARY = datetime(2025, 6, 10, 22, 0, tzinfo=timezone.utc)


@pytest.fixture
def tmp_db(tmp_path):
    db_path = str(tmp_path / "test.db")
    init_db(db_path)
    return db_path


def _make_config(db_path) -> Config:
    return Config(
        broker_base_url="http://mtapi.test:5000",
        live_feed_url="ws://mtapi.test:5001/events",
        db_path=db_path,
        log_level="DEBUG",
        health_port=8080,
        poll_interval_seconds=240,
        poll_concurrency=5,
        broker_timeout_seconds=5.0,
        reconnect_attempts=1,
        session_ttl_hours=24,
        trading_timezone=TZ,
        broker_timezone="Europe/Istanbul",
        daily_reset_time="01:30",
        order_history_start="2025-06-01",
    )


def _add_account(db_path, login="1001", session=True):
    plan_id = PlanRepo(db_path).create_plan(f"Plan {login}", 5.0, 10.0)
    return AccountRepo(db_path).create_account(
        login, "Demo-Server", "investor", plan_id,
        starting_equity=10_000.0,
        daily_limit_amount=500.0,
        session_id=(login * 10)[:36] if session else None,
        session_expires_at=BOUNDARY + timedelta(hours=24) if session else None,
        now=BOUNDARY - timedelta(minutes=5),
    )


def _scheduler(db_path, broker):
    config = _make_config(db_path)
    sessions = BrokerSessions(broker, db_path, reconnect_attempts=1, backoff_base=0.0)
    return DailyResetScheduler(config, broker, sessions)


def _broker(balance=10_400.0, equity=10_450.0):
    broker = MagicMock()
    broker.connect = AsyncMock(return_value="n" * 36)
    broker.account_summary = AsyncMock(
        return_value=AccountSummary(balance=balance, equity=equity)
    )
    return broker


class TestNeedsCatchUp:
    def test_just_after_boundary(self):
        assert needs_catch_up(BOUNDARY + timedelta(minutes=30), TZ, RESET) is True

    def test_mid_day(self):
        assert needs_catch_up(BOUNDARY + timedelta(hours=12), TZ, RESET) is False

    def test_just_before_boundary(self):
        assert needs_catch_up(BOUNDARY - timedelta(minutes=1), TZ, RESET) is False


class TestPerformReset:
    @pytest.mark.asyncio
    async def test_reset_from_broker_balance(self, tmp_db):
        aid = _add_account(tmp_db)
        scheduler = _scheduler(tmp_db, _broker(balance=10_400.0, equity=10_450.0))

        result = await scheduler.perform_reset(now=BOUNDARY)

        assert result == {"accounts": 1, "reset": 1, "errors": 0}
        account = AccountRepo(tmp_db).get_account(aid)
        assert account.daily_start_equity == 10_400.0
        assert account.daily_limit_amount == pytest.approx(520.0)
        snap = DailySnapshotRepo(tmp_db).get(aid, "2025-06-11")
        assert snap["balance"] == 10_400.0
        assert snap["equity"] == 10_450.0
        assert scheduler.last_reset_at == BOUNDARY.isoformat()

    @pytest.mark.asyncio
    async def test_falls_back_to_stored_value(self, tmp_db):
        aid = _add_account(tmp_db)
        broker = _broker()
        broker.account_summary = AsyncMock(side_effect=TransientBrokerError("503"))
        scheduler = _scheduler(tmp_db, broker)

        result = await scheduler.perform_reset(now=BOUNDARY)

        assert result["reset"] == 1
        account = AccountRepo(tmp_db).get_account(aid)
        assert account.daily_start_equity == 10_000.0
        assert account.daily_limit_amount == pytest.approx(500.0)

    @pytest.mark.asyncio
    async def test_failed_and_disconnected_accounts_skipped(self, tmp_db):
        failed = _add_account(tmp_db, login="1001")
        _add_account(tmp_db, login="2002", session=False)
        live = _add_account(tmp_db, login="3003")
        AccountRepo(tmp_db).mark_failed(failed, "breach")

        result = await _scheduler(tmp_db, _broker()).perform_reset(now=BOUNDARY)

        assert result["accounts"] == 1
        assert AccountRepo(tmp_db).get_account(live).daily_start_equity == 10_400.0
        assert AccountRepo(tmp_db).get_account(failed).daily_start_equity == 10_000.0

    @pytest.mark.asyncio
    async def test_one_account_error_counted(self, tmp_db):
        _add_account(tmp_db, login="1001")
        scheduler = _scheduler(tmp_db, _broker())
        scheduler.reset_account = AsyncMock(side_effect=RuntimeError("boom"))

        result = await scheduler.perform_reset(now=BOUNDARY)
        assert result == {"accounts": 1, "reset": 0, "errors": 1}
