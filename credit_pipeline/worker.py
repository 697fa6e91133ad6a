import logging
import signal
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional

from credit_pipeline.exceptions import TransientStoreError
from credit_pipeline.job_processors import CreditReportProcessor
from credit_pipeline.queue_handler import JobQueueHandler
from credit_pipeline.settings import settings
from credit_pipeline.storage_client import StorageClient

logger = logging.getLogger(__name__)


class LoopOutcome(str, Enum):
    PROCESSED = "processed"
    IDLE = "idle"
    BACKOFF = "backoff"


class CreditWorker:
    """Main credit report pipeline worker class."""

    def __init__(self, queue_handler: Optional[JobQueueHandler] = None,
                 processor: Optional[CreditReportProcessor] = None,
                 sleep: Optional[Callable[[float], Any]] = None):
        self.queue_handler = queue_handler or JobQueueHandler()
        self._processor = processor
        self.running = False
        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._watchdog_thread: Optional[threading.Thread] = None

    @property
    def processor(self) -> CreditReportProcessor:
        if self._processor is None:
            self._processor = CreditReportProcessor(db=self.queue_handler.db)
        return self._processor

    def start(self):
        """Start the worker loop."""
        logger.info("Starting credit report worker")
        self.running = True
        self._stop_event.clear()

        # Set up signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self._start_watchdog()

        try:
            self._worker_loop()
        finally:
            logger.info("Worker stopped")

    def stop(self):
        """Stop the worker."""
        logger.info("Stopping worker...")
        self.running = False
        self._stop_event.set()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.stop()

    def _start_watchdog(self) -> None:
        """Start the background watchdog thread that times out stale jobs."""
        self._watchdog_thread = threading.Thread(
            target=self._watchdog_loop,
            name="credit-watchdog",
            daemon=True,  # exits when main thread exits
        )
        self._watchdog_thread.start()
        logger.info(
            "queue_watchdog_started interval_s=%d stale_after_s=%d",
            settings.watchdog_interval_s,
            settings.job_stale_after_s,
        )

    def _watchdog_loop(self) -> None:
        """
        Background loop: periodically fail jobs nobody has updated for longer
        than JOB_STALE_AFTER_S.

        Runs every WATCHDOG_INTERVAL_S seconds, independent of the poll
        cadence. sweep_stale_jobs() takes a Postgres advisory lock so only
        one worker instance sweeps at a time.
        """
        while self.running:
            if self._stop_event.wait(settings.watchdog_interval_s):
                break
            self.watchdog_tick()

    def watchdog_tick(self) -> int:
        try:
            swept = self.queue_handler.sweep_stale_jobs(settings.job_stale_after_s)
        except Exception as exc:
            logger.error("queue_watchdog_tick_error: %s", exc)
            return 0
        if swept:
            logger.info("queue_watchdog_tick_done swept=%d", swept)
        return swept

    def _worker_loop(self):
        """Main worker processing loop."""
        logger.info("Worker loop started (poll_interval=%.1fs)", settings.worker_poll_interval_s)
        while self.running:
            outcome = self.run_once()
            delay = self.delay_for(outcome)
            if delay > 0 and self.running:
                self._sleep(delay)

    def run_once(self) -> LoopOutcome:
        """
        One loop iteration: claim a job and process it fully, or report idle.

        Never raises; every error is logged and mapped to BACKOFF so a single
        job or an unreachable store cannot stop the worker.
        """
        try:
            job = self.queue_handler.claim_next_job()
        except TransientStoreError as exc:
            logger.warning("claim_failed transient: %s", exc)
            return LoopOutcome.BACKOFF
        except Exception as exc:
            logger.error("claim_failed: %s", exc)
            return LoopOutcome.BACKOFF

        if job is None:
            logger.debug("no queued jobs found")
            return LoopOutcome.IDLE

        try:
            result = self.processor.process_job(job)
        except Exception as e:
            logger.error(f"Error processing job {job.id}: {e}")
            return LoopOutcome.BACKOFF

        logger.info("job_finished job=%s outcome=%s", result.job_id, result.outcome.value)
        return LoopOutcome.PROCESSED

    @staticmethod
    def delay_for(outcome: LoopOutcome) -> float:
        """Seconds to sleep before the next iteration."""
        if outcome is LoopOutcome.PROCESSED:
            return 0.0
        if outcome is LoopOutcome.IDLE:
            return settings.worker_poll_interval_s
        return settings.worker_error_backoff_s

    def check_health(self) -> Dict[str, Any]:
        """Perform health check."""
        health_status = {
            "healthy": True,
            "checks": {}
        }

        # Check database connection
        try:
            db_healthy = self.queue_handler.is_healthy()
            health_status["checks"]["database"] = {"healthy": db_healthy}
            if db_healthy:
                health_status["checks"]["database"]["queued_jobs"] = self.queue_handler.queue_length()
            else:
                health_status["healthy"] = False
        except Exception as e:
            health_status["checks"]["database"] = {"healthy": False, "error": str(e)}
            health_status["healthy"] = False

        # Check storage connection
        try:
            storage_healthy = StorageClient().is_healthy()
            health_status["checks"]["storage"] = {"healthy": storage_healthy}
            if not storage_healthy:
                health_status["healthy"] = False
        except Exception as e:
            health_status["checks"]["storage"] = {"healthy": False, "error": str(e)}
            health_status["healthy"] = False

        # Check environment
        missing = settings.missing_required()
        health_status["checks"]["environment"] = {"healthy": not missing}
        if missing:
            health_status["checks"]["environment"]["error"] = f"missing: {', '.join(missing)}"
            health_status["healthy"] = False

        return health_status
