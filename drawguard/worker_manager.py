"""WorkerManager — wires and runs the monitoring workers concurrently.

The poll worker, daily reset scheduler and live monitor share one
``RuleChecker``, one ``BrokerSessions`` and one ``SubscriptionManager``;
they run as concurrent ``asyncio`` tasks and stop together.
"""

import asyncio
import logging

from drawguard.config import Config
from drawguard.live.subscriptions import SubscriptionManager
from drawguard.repos.account_repo import AccountRepo
from drawguard.services.rule_checker import RuleChecker
from drawguard.services.sessions import BrokerSessions
from drawguard.workers.daily_reset import DailyResetScheduler
from drawguard.workers.live_monitor import LiveMonitor
from drawguard.workers.poll_worker import PollWorker

logger = logging.getLogger("drawguard.worker_manager")


class WorkerManager:
    """Lifecycle manager for the monitoring workers.

    Args:
        config: Global ``Config`` loaded from ``.env``.
        broker: Shared ``MtApiClient`` instance.
        feed_factory: Optional live-feed client factory (tests).
    """

    def __init__(self, config: Config, broker, feed_factory=None) -> None:
        self._config = config
        self._tasks: dict[str, asyncio.Task] = {}

        self.subscriptions = SubscriptionManager(
            config.live_feed_url,
            account_repo=AccountRepo(config.db_path),
            feed_factory=feed_factory,
            reconnect_base_seconds=config.feed_reconnect_base_seconds,
            reconnect_max_seconds=config.feed_reconnect_max_seconds,
            max_reconnect_attempts=config.feed_max_reconnect_attempts,
        )
        self.rule_checker = RuleChecker(
            config.db_path,
            config.trading_timezone,
            subscriptions=self.subscriptions,
            day_start=config.reset_time,
        )
        self.sessions = BrokerSessions(
            broker,
            config.db_path,
            session_ttl_hours=config.session_ttl_hours,
            reconnect_attempts=config.reconnect_attempts,
            subscriptions=self.subscriptions,
        )
        self.poll_worker = PollWorker(config, broker, self.rule_checker, self.sessions)
        self.daily_reset = DailyResetScheduler(config, broker, self.sessions)
        self.live_monitor = LiveMonitor(
            config.db_path,
            self.rule_checker,
            self.subscriptions,
            broker=broker,
            sessions=self.sessions,
            resync_seconds=config.live_resync_seconds,
        )

    # ── Public API ───────────────────────────────────────────────────────

    async def run_all(self) -> None:
        """Launch every worker and wait until they all finish."""
        workers = {
            "poll": self.poll_worker.run,
            "daily_reset": self.daily_reset.run,
            "live_monitor": self.live_monitor.run,
        }
        self._tasks = {
            name: asyncio.create_task(run(), name=name) for name, run in workers.items()
        }
        for name, task in self._tasks.items():
            try:
                await task
            except asyncio.CancelledError:
                logger.info("Worker '%s' cancelled.", name)
            except Exception as exc:
                logger.error("Worker '%s' crashed: %s", name, exc)

    def stop_all(self) -> None:
        """Signal every worker to stop gracefully."""
        self.poll_worker.stop()
        self.daily_reset.stop()
        self.live_monitor.stop()
        logger.info("Stop signal sent to all workers.")

    def get_status(self) -> dict:
        """Worker and live-feed status for the internal API."""
        return {
            "poll_worker": {
                "running": self.poll_worker.running,
                "cycle_count": self.poll_worker.cycle_count,
                "last_cycle_at": self.poll_worker.last_cycle_at,
                "last_cycle": self.poll_worker.last_cycle_summary,
            },
            "daily_reset": {
                "last_reset_at": self.daily_reset.last_reset_at,
                "next_reset_at": self.daily_reset.next_reset_at,
            },
            "live_feed": {
                "connection_state": self.subscriptions.connection_state,
                "subscribed_accounts": self.subscriptions.subscribed_ids(),
                "events_processed": self.live_monitor.events_processed,
            },
        }
