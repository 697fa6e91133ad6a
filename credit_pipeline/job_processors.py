import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from credit_pipeline.analysis_engine import AnalysisEngine
from credit_pipeline.exceptions import JobFailure, ReportNotFoundError, StorageError, TransientStoreError
from credit_pipeline.letters import LetterBatch, LetterGenerator
from credit_pipeline.models import (
    ClaimedJob,
    PROGRESS_ANALYZING,
    PROGRESS_DOWNLOADING,
    PROGRESS_GENERATING_LETTERS,
    PROGRESS_PARSING,
)
from credit_pipeline.pipeline_db import PipelineDB
from credit_pipeline.storage_client import StorageClient
from credit_pipeline.text_extractor import TextExtractor

logger = logging.getLogger(__name__)


def _ms_since(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class JobOutcome(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class JobResult:
    job_id: str
    outcome: JobOutcome
    error: Optional[str] = None
    letters: Optional[LetterBatch] = None


class CreditReportProcessor:
    """
    Drives one claimed job through download, parse, analyze, persist,
    letter generation and completion.

    Stages 1-4 are fatal on error: the job is marked failed with a short
    reason and processing stops. Letter generation is best-effort.
    """

    def __init__(self, db: Optional[PipelineDB] = None, storage: Optional[StorageClient] = None,
                 extractor: Optional[TextExtractor] = None, engine: Optional[AnalysisEngine] = None,
                 letters: Optional[LetterGenerator] = None):
        self.db = db or PipelineDB()
        self.storage = storage or StorageClient()
        self.extractor = extractor or TextExtractor()
        self.engine = engine or AnalysisEngine()
        self.letters = letters or LetterGenerator(self.db, self.storage)

    def process_job(self, job: ClaimedJob) -> JobResult:
        """
        Process a claimed job to a terminal state.

        Raises:
            TransientStoreError: the failure itself could not be recorded; the
                job stays processing until the stale sweep times it out
        """
        logger.info("job_start job=%s report=%s user=%s", job.id, job.report_id, job.user_id)
        metrics: Dict[str, Any] = {"job_id": job.id, "stages": {}}

        try:
            letters = self._run_stages(job, metrics)
        except Exception as exc:
            reason = exc.reason if isinstance(exc, JobFailure) else self._describe(exc)
            logger.error("job_failed job=%s report=%s error=%s", job.id, job.report_id, reason)
            self.db.mark_job_failed(job.id, reason)
            return JobResult(job_id=job.id, outcome=JobOutcome.FAILED, error=reason)

        if not self.db.mark_job_complete(job.id):
            logger.warning("job_complete_ignored job=%s no longer processing", job.id)
            return JobResult(job_id=job.id, outcome=JobOutcome.FAILED, error="job_no_longer_processing")
        logger.info("job_succeeded job=%s metrics=%s", job.id, metrics)
        return JobResult(job_id=job.id, outcome=JobOutcome.COMPLETE, letters=letters)

    def _run_stages(self, job: ClaimedJob, metrics: Dict[str, Any]) -> LetterBatch:
        stages = metrics["stages"]

        # 1) Downloading
        start = time.perf_counter()
        report = self.db.get_report(job.report_id, job.user_id)
        if report is None:
            raise ReportNotFoundError()
        self._set_stage(job, PROGRESS_DOWNLOADING)
        data = self.storage.download_bytes(report.file_key)
        if not data:
            raise StorageError("blob_empty_body")
        stages["download_ms"] = _ms_since(start)
        metrics["pdf_bytes"] = len(data)

        # 2) Parsing
        self._set_stage(job, PROGRESS_PARSING)
        start = time.perf_counter()
        text = self.extractor.extract_text(data)
        stages["parse_ms"] = _ms_since(start)
        metrics["text_chars"] = len(text)

        # 3) Analyzing
        self._set_stage(job, PROGRESS_ANALYZING)
        start = time.perf_counter()
        analysis = self.engine.analyze(text)
        stages["analyze_ms"] = _ms_since(start)

        # 4) Persisting result
        if not self.db.upsert_analysis_result(job.id, job.report_id, job.user_id, analysis):
            raise JobFailure("job_no_longer_processing")

        # 5) Generating letters (best-effort)
        self._set_stage(job, PROGRESS_GENERATING_LETTERS)
        start = time.perf_counter()
        batch = self.letters.generate(job.id, job.report_id, job.user_id, analysis)
        stages["letters_ms"] = _ms_since(start)
        metrics["letters_ok"] = len(batch.succeeded)
        metrics["letters_failed"] = len(batch.failed)
        return batch

    def _set_stage(self, job: ClaimedJob, progress: str) -> None:
        if not self.db.update_job_progress(job.id, progress):
            # Swept as stale or deleted by a retry while we were working.
            raise JobFailure("job_no_longer_processing")
        logger.info("job_stage job=%s progress=%s", job.id, progress)

    @staticmethod
    def _describe(exc: Exception) -> str:
        if isinstance(exc, TransientStoreError):
            return f"persistence_failed: {exc}"
        message = str(exc)
        return f"{type(exc).__name__}: {message}" if message else type(exc).__name__
