"""Error taxonomy for the monitoring engine.

Broker failures split into two classes that callers handle differently:
transient errors are retried with backoff, session-expired errors trigger a
reconnect and are never retried as-is.  A drawdown breach is not an error.
"""


class DrawguardError(Exception):
    """Base class for every error raised by drawguard."""


class BrokerError(DrawguardError):
    """A call to the broker REST API failed."""


class TransientBrokerError(BrokerError):
    """Timeout, transport failure, rate limit or 5xx — safe to retry."""


class SessionExpiredError(BrokerError):
    """The broker rejected the session (401/403) — reconnect, do not retry."""


class LiveFeedError(DrawguardError):
    """The shared live feed is unavailable or a subscribe timed out."""


class ComputationError(DrawguardError):
    """Metrics could not be computed; the account is left unchanged."""


class AccountNotFoundError(ComputationError):
    def __init__(self, account_id: int) -> None:
        super().__init__(f"Account with id {account_id} not found")
        self.account_id = account_id


class PlanNotFoundError(ComputationError):
    def __init__(self, plan_id) -> None:
        super().__init__(f"Plan with id {plan_id} not found")
        self.plan_id = plan_id


class DuplicateAccountError(DrawguardError):
    """An account with this (login, server) pair is already registered."""
