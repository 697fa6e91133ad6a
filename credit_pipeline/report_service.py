import logging
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from credit_pipeline.exceptions import ForbiddenKeyError, ReportNotFoundError
from credit_pipeline.models import Job, Report
from credit_pipeline.pipeline_db import PipelineDB
from credit_pipeline.settings import settings
from credit_pipeline.storage_client import StorageClient

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
MAX_FILENAME_CHARS = 120


def safe_filename(name: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", name)[:MAX_FILENAME_CHARS]


def upload_key(user_id: str, filename: str, now: Optional[datetime] = None) -> str:
    """Blob key for a user upload, namespaced by owner."""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%f")
    return f"{user_id}/{stamp}_{secrets.token_hex(6)}_{safe_filename(filename)}"


def user_owns_key(user_id: str, file_key: str) -> bool:
    return file_key.startswith(f"{user_id}/") or file_key.startswith(f"letters/{user_id}/")


class ReportService:
    """
    Report-facing operations used by the API layer and the CLI: upload and
    download URLs, report creation, status reads and resubmission.
    """

    def __init__(self, db: Optional[PipelineDB] = None, storage: Optional[StorageClient] = None):
        self.db = db or PipelineDB()
        self._storage = storage

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = StorageClient()
        return self._storage

    def presign_upload(self, user_id: str, filename: str,
                       content_type: str = "application/pdf") -> Dict[str, Any]:
        file_key = upload_key(user_id, filename)
        expires_in = settings.signed_url_expires_s
        url = self.storage.presigned_put_url(file_key, content_type=content_type, expires_in=expires_in)
        return {"file_key": file_key, "upload_url": url, "expires_in": expires_in}

    def presign_download(self, user_id: str, file_key: str) -> Dict[str, Any]:
        if not user_owns_key(user_id, file_key):
            raise ForbiddenKeyError("forbidden")
        expires_in = settings.signed_url_expires_s
        url = self.storage.presigned_get_url(file_key, expires_in=expires_in)
        return {"download_url": url, "expires_in": expires_in}

    def create_report(self, user_id: str, file_key: str, filename: str) -> Tuple[Report, Job]:
        """Register an uploaded file and queue its first job."""
        return self.db.create_report(user_id, file_key, filename)

    def get_job_status(self, job_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        job = self.db.get_job(job_id, user_id)
        return job.to_status_dict() if job else None

    def get_result(self, report_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.get_analysis_result(report_id, user_id)
        if not row:
            return None
        created_at = row.get("created_at")
        return {
            "result_json": row["result_json"],
            "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
        }

    def list_letters(self, report_id: str, user_id: str) -> List[Dict[str, Any]]:
        return [letter.to_dict() for letter in self.db.list_dispute_letters(report_id, user_id)]

    def retry_report(self, report_id: str, user_id: str) -> Job:
        """
        Reset a report and queue a fresh job.

        Raises:
            ReportNotFoundError: the report does not exist for this user
        """
        job = self.db.reset_report(report_id, user_id)
        if job is None:
            raise ReportNotFoundError()
        return job
