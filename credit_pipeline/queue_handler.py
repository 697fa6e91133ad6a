import logging
from typing import Optional

from credit_pipeline.models import (
    ClaimedJob,
    JOB_TIMEOUT_REASON,
    PROGRESS_DOWNLOADING,
    PROGRESS_ERROR,
)
from credit_pipeline.pipeline_db import PipelineDB
from credit_pipeline.settings import settings

logger = logging.getLogger(__name__)

# Advisory lock key shared by every worker's watchdog ("credit" in ASCII).
WATCHDOG_LOCK_KEY = 0x637265646974

CLAIM_SQL = """
select id::text, user_id, report_id::text, created_at
from jobs
where status='queued'
order by created_at asc, id asc
limit 1
for update skip locked
"""

MARK_CLAIMED_SQL = """
update jobs set status='processing', progress=%s, updated_at=now()
where id=%s::uuid
"""

SWEEP_SQL = """
update jobs set status='failed', progress=%s, error=%s, updated_at=now()
where status in ('queued', 'processing')
  and updated_at < now() - %s::int * interval '1 second'
returning id::text
"""


class JobQueueHandler:
    """Postgres table-as-queue for credit report jobs."""

    def __init__(self, db: Optional[PipelineDB] = None):
        self.db = db or PipelineDB()

    def claim_next_job(self) -> Optional[ClaimedJob]:
        """
        Claim the oldest queued job for this worker.

        The row is selected with FOR UPDATE SKIP LOCKED and moved to
        processing before the transaction commits, so concurrent workers
        never see the same job as queued. Returns None when nothing is
        claimable; never waits on rows locked by other workers.

        Raises:
            TransientStoreError: the database could not be reached
        """
        with self.db.connect() as conn:
            row = conn.execute(CLAIM_SQL).fetchone()
            if row is None:
                return None
            conn.execute(MARK_CLAIMED_SQL, (PROGRESS_DOWNLOADING, row["id"]))
        job = ClaimedJob(
            id=row["id"],
            user_id=row["user_id"],
            report_id=row["report_id"],
            created_at=row.get("created_at"),
        )
        logger.info("claim_job job=%s report=%s user=%s", job.id, job.report_id, job.user_id)
        return job

    def sweep_stale_jobs(self, stale_after_s: Optional[int] = None) -> int:
        """
        Fail queued/processing jobs whose updated_at is older than the threshold.

        A transaction-scoped advisory lock keeps concurrent watchdogs from
        sweeping at the same time; a worker that cannot take it skips the
        tick and returns 0. Jobs updated within the threshold are untouched.

        Returns the number of jobs moved to failed/job_timeout.

        Raises:
            ValueError: the threshold is not a positive number of seconds
        """
        if stale_after_s is None:
            stale_after_s = settings.job_stale_after_s
        if stale_after_s <= 0:
            raise ValueError("stale_after_s must be positive")
        with self.db.connect() as conn:
            locked = conn.execute(
                "select pg_try_advisory_xact_lock(%s) as locked", (WATCHDOG_LOCK_KEY,)
            ).fetchone()
            if not locked or not locked["locked"]:
                logger.debug("queue_watchdog_lock_held skipping")
                return 0
            rows = conn.execute(
                SWEEP_SQL, (PROGRESS_ERROR, JOB_TIMEOUT_REASON, stale_after_s)
            ).fetchall()

        for row in rows:
            logger.warning("queue_watchdog_timed_out job=%s stale_after_s=%d", row["id"], stale_after_s)
        return len(rows)

    def queue_length(self) -> int:
        with self.db.connect() as conn:
            row = conn.execute("select count(*) as n from jobs where status='queued'").fetchone()
        return int(row["n"]) if row else 0

    def is_healthy(self) -> bool:
        """Check if the database connection is healthy."""
        try:
            return self.db.ping()
        except Exception as exc:
            logger.warning("queue_health_check_failed: %s", exc)
            return False
