from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


# Progress labels shown to polling clients
PROGRESS_QUEUED = "Queued"
PROGRESS_DOWNLOADING = "Downloading"
PROGRESS_PARSING = "Parsing"
PROGRESS_ANALYZING = "Analyzing"
PROGRESS_GENERATING_LETTERS = "Generating letters"
PROGRESS_COMPLETE = "Complete"
PROGRESS_ERROR = "Error"

JOB_TIMEOUT_REASON = "job_timeout"


def _iso(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


@dataclass
class Report:
    """One uploaded credit report document"""
    id: str
    user_id: str
    file_key: str
    filename: str
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "file_key": self.file_key,
            "filename": self.filename,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Job:
    """One unit of pipeline work for a report"""
    id: str
    user_id: str
    report_id: str
    status: JobStatus
    progress: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            id=str(row["id"]),
            user_id=row["user_id"],
            report_id=str(row["report_id"]),
            status=JobStatus(row["status"]),
            progress=row.get("progress"),
            error=row.get("error"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_status_dict(self) -> Dict[str, Any]:
        """Job status read model consumed by clients polling for progress."""
        return {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "report_id": self.report_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class ClaimedJob:
    """A job this worker has moved from queued to processing."""
    id: str
    user_id: str
    report_id: str
    created_at: Optional[datetime] = None


@dataclass
class DisputeLetter:
    id: str
    report_id: str
    user_id: str
    bureau: str
    file_key: str
    content_text: str = ""
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bureau": self.bureau,
            "file_key": self.file_key,
            "created_at": _iso(self.created_at),
        }
