"""Read-only projections consumed by the API layer."""

from typing import Optional

from drawguard.repos.account_repo import AccountRepo
from drawguard.repos.order_repo import OrderRepo
from drawguard.repos.snapshot_repo import MetricsRepo


class AccountQueries:
    """Account, metrics and order reads.  Never writes.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._accounts = AccountRepo(db_path)
        self._orders = OrderRepo(db_path)
        self._metrics = MetricsRepo(db_path)

    def get_account(self, account_id: int) -> Optional[dict]:
        """Account record without its stored password, or ``None``."""
        account = self._accounts.get_account(account_id)
        return account.public_dict() if account else None

    def get_latest_metrics(self, account_id: int) -> Optional[dict]:
        """Most recent metrics snapshot, or ``None``."""
        return self._metrics.get_latest(account_id)

    def list_orders(self, account_id: int, **filters) -> dict:
        """Filtered page of orders; see ``OrderRepo.list_orders`` for filters."""
        return self._orders.list_orders(account_id, **filters)

    def list_accounts(self) -> list[dict]:
        """Non-failed accounts, for status reporting."""
        return [a.public_dict() for a in self._accounts.list_active()]
