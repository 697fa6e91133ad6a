import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from credit_pipeline.exceptions import TransientStoreError
from credit_pipeline.models import (
    DisputeLetter,
    Job,
    PROGRESS_COMPLETE,
    PROGRESS_ERROR,
    PROGRESS_QUEUED,
    Report,
)
from credit_pipeline.schema import DROP_SQL, SQL
from credit_pipeline.settings import settings

logger = logging.getLogger(__name__)

# Error messages are shown to users; keep the column short.
MAX_ERROR_CHARS = 500

_JOB_COLUMNS = "id::text, user_id, report_id::text, status, progress, error, created_at, updated_at"

# Artifact writes are conditional on their job still owning the report.
_JOB_STILL_PROCESSING = "exists (select 1 from jobs where id=%s::uuid and status='processing' for share)"


class PipelineDB:
    """Postgres access for reports, jobs, analysis results and dispute letters."""

    def __init__(self, dsn: Optional[str] = None, connect_timeout: Optional[int] = None):
        self.dsn = dsn or settings.database_url
        self.connect_timeout = connect_timeout or settings.database_connect_timeout_s

    @contextmanager
    def connect(self) -> Iterator[psycopg.Connection]:
        """
        Open a connection that commits on clean exit and rolls back on error.

        Connectivity failures surface as TransientStoreError so the worker loop
        can back off without touching any job.
        """
        try:
            conn = psycopg.connect(self.dsn, row_factory=dict_row, connect_timeout=self.connect_timeout)
        except psycopg.OperationalError as exc:
            raise TransientStoreError(f"database_unreachable: {exc}") from exc
        try:
            with conn:
                yield conn
        except psycopg.OperationalError as exc:
            raise TransientStoreError(f"database_error: {exc}") from exc

    def migrate(self, reset: bool = False) -> None:
        with self.connect() as conn:
            conn.execute("create extension if not exists pgcrypto")
            if reset:
                logger.warning("db_migrate_reset dropping pipeline tables")
                conn.execute(DROP_SQL)
            conn.execute(SQL)
        logger.info("db_migrate_done reset=%s", reset)

    def ping(self) -> bool:
        with self.connect() as conn:
            row = conn.execute("select 1 as ok").fetchone()
        return bool(row and row["ok"] == 1)

    # ── reports ─────────────────────────────────────────────────────────────

    def create_report(self, user_id: str, file_key: str, filename: str) -> Tuple[Report, Job]:
        """Insert a report and its first queued job in one transaction."""
        with self.connect() as conn:
            report_row = conn.execute(
                """
                insert into reports (user_id, file_key, filename)
                values (%s, %s, %s)
                returning id::text, user_id, file_key, filename, created_at
                """,
                (user_id, file_key, filename),
            ).fetchone()
            job_row = conn.execute(
                f"""
                insert into jobs (user_id, report_id, status, progress)
                values (%s, %s::uuid, 'queued', %s)
                returning {_JOB_COLUMNS}
                """,
                (user_id, report_row["id"], PROGRESS_QUEUED),
            ).fetchone()
        report = Report(**report_row)
        job = Job.from_row(job_row)
        logger.info("report_created report=%s job=%s user=%s", report.id, job.id, user_id)
        return report, job

    def get_report(self, report_id: str, user_id: str) -> Optional[Report]:
        row = self._query_one(
            """
            select id::text, user_id, file_key, filename, created_at
            from reports
            where id=%s::uuid and user_id=%s
            """,
            (report_id, user_id),
        )
        return Report(**row) if row else None

    def reset_report(self, report_id: str, user_id: str) -> Optional[Job]:
        """
        Clear every artifact of a report and queue a fresh job.

        Ownership check, deletes and the insert share one transaction: either
        the whole reset happens or nothing changes. Returns None when the
        report does not exist for this user.
        """
        with self.connect() as conn:
            owned = conn.execute(
                "select id from reports where id=%s::uuid and user_id=%s for update",
                (report_id, user_id),
            ).fetchone()
            if not owned:
                return None
            conn.execute("delete from jobs where report_id=%s::uuid", (report_id,))
            conn.execute("delete from analysis_results where report_id=%s::uuid", (report_id,))
            conn.execute("delete from dispute_letters where report_id=%s::uuid", (report_id,))
            job_row = conn.execute(
                f"""
                insert into jobs (report_id, user_id, status, progress)
                values (%s::uuid, %s, 'queued', %s)
                returning {_JOB_COLUMNS}
                """,
                (report_id, user_id, PROGRESS_QUEUED),
            ).fetchone()
        job = Job.from_row(job_row)
        logger.info("report_reset report=%s new_job=%s", report_id, job.id)
        return job

    # ── jobs ────────────────────────────────────────────────────────────────

    def get_job(self, job_id: str, user_id: Optional[str] = None) -> Optional[Job]:
        if user_id is None:
            row = self._query_one(f"select {_JOB_COLUMNS} from jobs where id=%s::uuid", (job_id,))
        else:
            row = self._query_one(
                f"select {_JOB_COLUMNS} from jobs where id=%s::uuid and user_id=%s",
                (job_id, user_id),
            )
        return Job.from_row(row) if row else None

    def list_report_jobs(self, report_id: str) -> List[Job]:
        rows = self._query_all(
            f"select {_JOB_COLUMNS} from jobs where report_id=%s::uuid order by created_at asc",
            (report_id,),
        )
        return [Job.from_row(r) for r in rows]

    def update_job_progress(self, job_id: str, progress: str) -> bool:
        """Record a stage transition. False when the job is no longer processing."""
        return self._exec(
            """
            update jobs set status='processing', progress=%s, updated_at=now()
            where id=%s::uuid and status='processing'
            """,
            (progress, job_id),
        ) > 0

    def mark_job_complete(self, job_id: str) -> bool:
        return self._exec(
            """
            update jobs set status='complete', progress=%s, error=null, updated_at=now()
            where id=%s::uuid and status='processing'
            """,
            (PROGRESS_COMPLETE, job_id),
        ) > 0

    def mark_job_failed(self, job_id: str, error_message: str) -> bool:
        return self._exec(
            """
            update jobs set status='failed', progress=%s, error=%s, updated_at=now()
            where id=%s::uuid and status in ('queued', 'processing')
            """,
            (PROGRESS_ERROR, (error_message or "worker_error")[:MAX_ERROR_CHARS], job_id),
        ) > 0

    # ── analysis results ────────────────────────────────────────────────────

    def upsert_analysis_result(self, job_id: str, report_id: str, user_id: str,
                               payload: Dict[str, Any]) -> bool:
        """
        Store the report's analysis on behalf of a processing job.

        The write only happens while the job is still processing; the job row
        is share-locked so a concurrent retry or sweep waits for this
        statement. Returns False when the job was swept or deleted.
        """
        return self._exec(
            f"""
            insert into analysis_results (report_id, user_id, result_json)
            select %s::uuid, %s, %s
            where {_JOB_STILL_PROCESSING}
            on conflict (report_id) do update set
                result_json = excluded.result_json,
                user_id = excluded.user_id,
                created_at = now()
            """,
            (report_id, user_id, Jsonb(payload), job_id),
        ) > 0

    def get_analysis_result(self, report_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self._query_one(
            "select result_json, created_at from analysis_results where report_id=%s::uuid and user_id=%s",
            (report_id, user_id),
        )

    # ── dispute letters ─────────────────────────────────────────────────────

    def insert_dispute_letter(self, job_id: str, report_id: str, user_id: str, bureau: str,
                              file_key: str, content_text: str) -> Optional[DisputeLetter]:
        """Record a letter for a processing job; None when the job is no longer processing."""
        row = self._query_one(
            f"""
            insert into dispute_letters (report_id, user_id, bureau, file_key, content_text)
            select %s::uuid, %s, %s, %s, %s
            where {_JOB_STILL_PROCESSING}
            returning id::text, report_id::text, user_id, bureau, file_key, content_text, created_at
            """,
            (report_id, user_id, bureau, file_key, content_text, job_id),
        )
        return DisputeLetter(**row) if row else None

    def list_dispute_letters(self, report_id: str, user_id: str) -> List[DisputeLetter]:
        rows = self._query_all(
            """
            select id::text, report_id::text, user_id, bureau, file_key, content_text, created_at
            from dispute_letters
            where report_id=%s::uuid and user_id=%s
            order by created_at asc, bureau asc
            """,
            (report_id, user_id),
        )
        return [DisputeLetter(**r) for r in rows]

    # ── helpers ─────────────────────────────────────────────────────────────

    def _exec(self, query: str, params: tuple) -> int:
        with self.connect() as conn:
            cur = conn.execute(query, params)
            return cur.rowcount

    def _query_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            return conn.execute(query, params).fetchone()

    def _query_all(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            return list(conn.execute(query, params).fetchall() or [])
