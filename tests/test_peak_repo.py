"""Tests for drawguard.repos.peak_repo — monotonic equity peaks."""

import threading

import pytest

from drawguard.models import ALL_TIME_PEAK, DAILY_PEAK
from drawguard.repos.account_repo import AccountRepo
from drawguard.repos.db import init_db
from drawguard.repos.peak_repo import EquityPeakRepo
from drawguard.repos.plan_repo import PlanRepo


@pytest.fixture
def tmp_db(tmp_path):
    db_path = str(tmp_path / "test.db")
    init_db(db_path)
    return db_path


@pytest.fixture
def account_id(tmp_db):
    plan_id = PlanRepo(tmp_db).create_plan("Floating", 5.0, 10.0, True, True)
    return AccountRepo(tmp_db).create_account(
        "1001", "Demo-Server", "investor", plan_id, starting_equity=10_000.0
    )


class TestEquityPeakRepo:
    def test_all_time_peak_is_monotonic(self, tmp_db, account_id):
        repo = EquityPeakRepo(tmp_db)
        for equity in (5.0, 3.0, 9.0, 7.0):
            repo.update_peak(account_id, ALL_TIME_PEAK, equity)
        assert repo.get_peak(account_id, ALL_TIME_PEAK)["equity"] == 9.0

    def test_daily_peaks_partitioned_by_date(self, tmp_db, account_id):
        repo = EquityPeakRepo(tmp_db)
        repo.update_peak(account_id, DAILY_PEAK, 10_500.0, trading_date="2025-06-10")
        repo.update_peak(account_id, DAILY_PEAK, 10_200.0, trading_date="2025-06-11")
        repo.update_peak(account_id, DAILY_PEAK, 10_100.0, trading_date="2025-06-11")
        assert repo.get_peaks(account_id, "2025-06-10") == (10_500.0, None)
        assert repo.get_peaks(account_id, "2025-06-11") == (10_200.0, None)
        assert repo.get_peaks(account_id, "2025-06-12") == (None, None)

    def test_daily_peak_requires_date(self, tmp_db, account_id):
        with pytest.raises(ValueError):
            EquityPeakRepo(tmp_db).update_peak(account_id, DAILY_PEAK, 1.0)

    def test_unknown_kind(self, tmp_db, account_id):
        with pytest.raises(ValueError):
            EquityPeakRepo(tmp_db).update_peak(account_id, "weekly_peak", 1.0)

    def test_concurrent_updates_keep_maximum(self, tmp_db, account_id):
        repo = EquityPeakRepo(tmp_db)
        values = [10_000.0 + (i * 37) % 500 for i in range(40)]

        def _update(equity):
            repo.update_peak(account_id, ALL_TIME_PEAK, equity)
            repo.update_peak(account_id, DAILY_PEAK, equity, trading_date="2025-06-10")

        threads = [threading.Thread(target=_update, args=(v,)) for v in values]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert repo.get_peaks(account_id, "2025-06-10") == (max(values), max(values))
