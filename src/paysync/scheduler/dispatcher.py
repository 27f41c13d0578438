"""
APScheduler-backed dispatcher for sync jobs.

start_sync only creates the job row; the import itself runs as a one-shot
`date` job on an AsyncIOScheduler so the caller gets the job id back
immediately and polls for progress. There is no recurring schedule: every
run is triggered explicitly.

If run_job itself raises (a database outage, a bug), the scheduler's
job-error event is the failure channel: the listener forces the job to
`failed` so it never sits in `processing` with nobody working on it.
"""
import logging
from datetime import timezone
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "sync:"


def build_scheduler() -> AsyncIOScheduler:
    """
    Create the scheduler used for sync jobs.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    return AsyncIOScheduler(timezone=timezone.utc)


def scheduler_job_id(job_id: str) -> str:
    return f"{JOB_ID_PREFIX}{job_id}"


class SyncDispatcher:
    """Spawns SyncEngine.run_job as independent units of work."""

    def __init__(self, sync_engine, scheduler: Optional[AsyncIOScheduler] = None):
        """
        Args:
            sync_engine: SyncEngine whose run_job is dispatched.
            scheduler: AsyncIOScheduler; defaults to build_scheduler().
        """
        self.sync_engine = sync_engine
        self.scheduler = scheduler or build_scheduler()
        self.scheduler.add_listener(self._on_job_failure, EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Start the scheduler. Must be called with an asyncio loop available."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Sync dispatcher started")

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Sync dispatcher stopped")

    def submit(self, job_id: str) -> None:
        """Queue run_job(job_id) to run as soon as the scheduler is free."""
        self.scheduler.add_job(
            self.sync_engine.run_job,
            trigger="date",
            args=[job_id],
            id=scheduler_job_id(job_id),
            name=f"sync job {job_id}",
            misfire_grace_time=None,  # never drop a queued sync
        )
        logger.info("Dispatched sync job %s", job_id)

    def _on_job_failure(self, event) -> None:
        if not event.job_id.startswith(JOB_ID_PREFIX):
            return
        job_id = event.job_id[len(JOB_ID_PREFIX):]
        if event.code == EVENT_JOB_MISSED:
            reason = "dispatch missed"
            logger.error("Sync job %s was never run by the scheduler", job_id)
        else:
            reason = f"internal error: {event.exception}"
            logger.error("Sync job %s crashed: %s", job_id, event.exception, exc_info=event.exception)
        self.sync_engine.fail_unfinished(job_id, reason)
