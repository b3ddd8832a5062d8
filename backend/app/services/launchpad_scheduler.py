"""Background scheduler for phase timing, reservation expiry, confirmation polling and stuck detection."""
import asyncio
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import get_settings
from app.models.database import async_session_factory, session_scope
from app.services.actor import Actor
from app.services.chain_client import get_chain_client
from app.services.mint_state import MintStateMachine
from app.services.phase_scheduler import PhaseScheduler
from app.services.reconciliation import BulkReconciler
from app.services.stuck_recovery import StuckTransactionRecovery

logger = structlog.get_logger()


class LaunchpadScheduler:
    """
    Background loop that keeps launches moving without a request.

    Each run opens and closes phases, expires abandoned reservations, polls
    the chain for in-flight mints and flags broadcasts that stalled past the
    stuck threshold. Every job commits in its own transaction, so a failing
    job does not undo the others.
    """

    def __init__(
        self,
        interval_seconds: int = 60,
        session_factory: Optional[async_sessionmaker] = None,
        chain=None,
    ):
        """
        Initialize the launchpad scheduler.

        Args:
            interval_seconds: How often to run the jobs (default: 60s)
            session_factory: Session factory, defaults to the application's
            chain: Chain client, defaults to the shared mempool client
        """
        self.interval_seconds = interval_seconds
        self.session_factory = session_factory or async_session_factory
        self.chain = chain
        self.actor = Actor.system("launchpad_scheduler")
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the background scheduler."""
        if self._running:
            logger.warning("Launchpad scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Launchpad scheduler started", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Stop the background scheduler."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Launchpad scheduler stopped")

    async def _run_loop(self):
        """Main scheduler loop."""
        while self._running:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, now: Optional[datetime] = None) -> dict:
        """Run every job once. Errors are logged per job and do not stop the loop."""
        now = now or datetime.utcnow()
        summary = {}

        try:
            async with session_scope(self.session_factory) as db:
                summary["phases"] = (await PhaseScheduler(db).tick(now)).to_dict()
        except Exception as e:
            logger.error("Error in phase scheduler", error=str(e))

        try:
            async with session_scope(self.session_factory) as db:
                summary["expired"] = await MintStateMachine(db).expire_stale_reservations(self.actor, now)
        except Exception as e:
            logger.error("Error expiring reservations", error=str(e))

        try:
            chain = self.chain or await get_chain_client()
            async with session_scope(self.session_factory) as db:
                poll = await BulkReconciler(db, chain).poll_unconfirmed(self.actor, now)
                summary["polled"] = poll.processed
        except Exception as e:
            logger.error("Error polling mint confirmations", error=str(e))

        try:
            chain = self.chain or await get_chain_client()
            async with session_scope(self.session_factory) as db:
                detection = await StuckTransactionRecovery(db, chain).detect(self.actor, now)
                summary["stuck_detected"] = detection.detected
        except Exception as e:
            logger.error("Error detecting stuck transactions", error=str(e))

        return summary


# Singleton instance
_scheduler: Optional[LaunchpadScheduler] = None


def get_launchpad_scheduler(interval_seconds: Optional[int] = None) -> LaunchpadScheduler:
    """Get or create the singleton launchpad scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = LaunchpadScheduler(
            interval_seconds=interval_seconds or get_settings().scheduler_interval_seconds
        )
    return _scheduler


async def start_launchpad_scheduler(interval_seconds: Optional[int] = None):
    """Start the launchpad scheduler."""
    scheduler = get_launchpad_scheduler(interval_seconds)
    await scheduler.start()


async def stop_launchpad_scheduler():
    """Stop the launchpad scheduler."""
    global _scheduler
    if _scheduler:
        await _scheduler.stop()
        _scheduler = None
