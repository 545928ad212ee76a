"""
Scheduler/Driver - periodic sync of every active connection.

Connections run on a fixed-size worker pool so provider-wide rate limits
are shared by a bounded number of concurrent passes. Each worker has its
own database session, and a failure in one connection never reaches its
siblings.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app import config
from app.database import SessionLocal, session_scope
from app.models.connection import Connection, Provider
from app.services import db_service
from app.services.reconciler import ReadStateReconciler
from app.services.sync_engine import SyncEngine, SyncResult, SyncStage

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "sync_all_connections"


def _failed_result(connection_id: int, user_id: str, error: str) -> SyncResult:
    result = SyncResult(connection_id=connection_id, user_id=user_id)
    result.stage = SyncStage.FAILED
    result.error = error
    return result


class SyncDriver:
    """Runs sync passes for all active connections with bounded concurrency."""

    def __init__(
        self,
        mailbox,
        session_factory=SessionLocal,
        max_workers: int = None,
        engine: SyncEngine = None,
        reconciler: ReadStateReconciler = None
    ):
        self.mailbox = mailbox
        self.session_factory = session_factory
        self.max_workers = max_workers or config.SYNC_MAX_WORKERS
        self.stop_event = threading.Event()
        self.reconciler = reconciler or ReadStateReconciler()
        self.engine = engine or SyncEngine(
            mailbox, reconciler=self.reconciler, stop_event=self.stop_event
        )
        self._scheduler: Optional[BackgroundScheduler] = None

    def run_all(self, provider: str = Provider.GOOGLE.value) -> dict:
        """
        One sync pass per ACTIVE connection.

        Returns:
            {"processed": int, "results": [SyncResult.to_dict(), ...]}
        """
        with session_scope(self.session_factory) as db:
            connection_ids = [c.id for c in db_service.list_active_connections(db, provider)]

        logger.info("Starting sync for %d active connections", len(connection_ids))

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="mail-sync") as pool:
            futures = [pool.submit(self.sync_connection, cid) for cid in connection_ids]
            results = [f.result() for f in futures]

        failed = sum(1 for r in results if r.failed)
        logger.info("Completed sync for %d connections (%d failed)", len(results), failed)

        return {
            "processed": len(results),
            "results": [r.to_dict() for r in results]
        }

    def sync_connection(self, connection_id: int, force_full: bool = False) -> SyncResult:
        """Run one pass in a fresh session; never raises."""
        user_id = ""
        try:
            with session_scope(self.session_factory) as db:
                connection = db.get(Connection, connection_id)
                if connection is None:
                    return _failed_result(connection_id, user_id, "Connection not found")

                user_id = connection.user_id
                result = self.engine.run(db, connection, force_full=force_full)
                if not result.failed:
                    self.reconciler.push_pending(db, connection, self.mailbox)
                return result
        except Exception as e:
            # Isolation boundary: one connection must not abort the batch
            logger.exception("Unexpected error syncing connection %s", connection_id)
            return _failed_result(connection_id, user_id, f"Unexpected error: {e.__class__.__name__}")

    # ============ TIMER ============

    def start(self, interval_minutes: int = None) -> None:
        """Schedule run_all on a fixed interval in a background thread."""
        if self._scheduler is not None:
            return
        self.stop_event.clear()
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self.run_all,
            trigger=IntervalTrigger(minutes=interval_minutes or config.SYNC_INTERVAL_MINUTES),
            id=SYNC_JOB_ID,
            name="Sync all active mailbox connections",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self._scheduler.start()
        logger.info("✅ Mailbox sync scheduled every %s minutes", interval_minutes or config.SYNC_INTERVAL_MINUTES)

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop scheduling new passes.

        In-flight passes finish the batch they are committing; the stop
        flag is only checked between batches.
        """
        self.stop_event.set()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=wait)
            self._scheduler = None
        logger.info("🛑 Mailbox sync scheduler stopped")
