"""Run Scheduler - Wakes waiting runs and fires step timeouts

Every tick scans all organizations for running instances whose wake_at or
timeout_at has passed. Settling is guarded by the instance version, so two
servers ticking at once cannot both advance the same run.
"""
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..domain.errors import DomainError
from ..domain.models import Transaction
from ..engine.engine import WorkflowEngine
from ..repositories.store import StoreAdapter
from ..services.notification_service import Notifier, get_default_notifier
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger
from ..utils.time import utc_now, parse_iso

logger = get_logger(__name__)


class RunScheduler:
    """
    APScheduler job driving time-based run transitions

    Responsibilities:
    - Resume runs parked on a wait step once wake_at passes
    - Fire step timeouts once timeout_at passes
    """

    def __init__(self, store: StoreAdapter, notifier: Optional[Notifier] = None):
        self.store = store
        self.notifier = notifier or get_default_notifier()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False
        self._engines: Dict[str, WorkflowEngine] = {}

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=settings.scheduler_interval_seconds),
            id="process_due_runs",
            name="Wake waiting runs and fire step timeouts",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Run scheduler started",
            extra={"interval_seconds": settings.scheduler_interval_seconds}
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Run scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Process every due run once; returns how many were handled"""
        now = now or utc_now()
        correlation_id = generate_correlation_id()
        due = await self.store.find_due_instances(now)
        if not due:
            return 0

        logger.info(
            f"Found {len(due)} due runs",
            extra={"count": len(due), "correlation_id": correlation_id}
        )
        handled = 0
        for transaction in due:
            try:
                await self._process(transaction, now)
                handled += 1
            except DomainError as e:
                # Typically a lost race with a completion or another server
                logger.warning(
                    f"Skipped due run {transaction.id}: {e.message}",
                    extra={"run_id": transaction.id, "error_code": e.error_code, "correlation_id": correlation_id}
                )
            except Exception as e:
                logger.error(
                    f"Error processing due run {transaction.id}: {e}",
                    exc_info=True,
                    extra={"run_id": transaction.id, "correlation_id": correlation_id}
                )
        return handled

    async def _process(self, transaction: Transaction, now: datetime) -> None:
        engine = self._engine_for(transaction.organization_id)
        wake_at = transaction.metadata.get("wake_at")
        if wake_at and parse_iso(wake_at) <= now:
            await engine.handle_wait_elapsed(transaction.id)
        else:
            await engine.handle_timeout(transaction.id)

    def _engine_for(self, organization_id: str) -> WorkflowEngine:
        engine = self._engines.get(organization_id)
        if engine is None:
            engine = WorkflowEngine(self.store, organization_id, notifier=self.notifier)
            self._engines[organization_id] = engine
        return engine
