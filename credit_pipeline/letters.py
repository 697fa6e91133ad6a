import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import OpenAI
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from credit_pipeline.analysis_engine import build_openai_client
from credit_pipeline.exceptions import LetterError
from credit_pipeline.pipeline_db import PipelineDB
from credit_pipeline.prompts import DisputeLetterPrompt
from credit_pipeline.settings import settings
from credit_pipeline.storage_client import StorageClient

logger = logging.getLogger(__name__)

FONT_NAME = "Helvetica"
FONT_SIZE = 11
MARGIN = 50
LINE_HEIGHT = FONT_SIZE * 1.5


def letter_key(user_id: str, report_id: str, bureau: str) -> str:
    return f"letters/{user_id}/{report_id}_{bureau.lower()}.pdf"


def extract_findings(analysis: Any) -> List[Dict[str, Any]]:
    """Negative items from the analysis document; empty when absent."""
    if not isinstance(analysis, dict):
        return []
    negatives = analysis.get("negatives")
    return negatives if isinstance(negatives, list) else []


class LetterRenderer:
    """Drafts dispute letter text with the LLM and renders it to PDF."""

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None):
        self._client = client
        self.model = model or settings.openai_model

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = build_openai_client()
        return self._client

    def draft(self, bureau: str, findings: List[Dict[str, Any]]) -> str:
        completion = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": DisputeLetterPrompt.system_prompt},
                {"role": "user", "content": DisputeLetterPrompt.user_prompt(bureau, findings)},
            ],
        )
        content = completion.choices[0].message.content if completion.choices else None
        if not content or not content.strip():
            raise LetterError(f"empty letter draft for {bureau}")
        return content.strip()

    def render(self, text: str) -> bytes:
        """Lay out plain text on US Letter pages with word wrapping."""
        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=letter)
        width, height = letter
        max_width = width - MARGIN * 2
        pdf.setFont(FONT_NAME, FONT_SIZE)
        y = height - MARGIN

        for paragraph in text.split("\n"):
            lines = simpleSplit(paragraph, FONT_NAME, FONT_SIZE, max_width) or [""]
            for line in lines:
                if y < MARGIN + FONT_SIZE:
                    pdf.showPage()
                    pdf.setFont(FONT_NAME, FONT_SIZE)
                    y = height - MARGIN
                pdf.drawString(MARGIN, y, line)
                y -= LINE_HEIGHT

        pdf.save()
        return buffer.getvalue()


@dataclass
class LetterOutcome:
    bureau: str
    file_key: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class LetterBatch:
    """
    Per-bureau results of one letter generation run.

    The batch is a partial result: individual failures never make the
    generation itself fail.
    """
    report_id: str
    outcomes: List[LetterOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[LetterOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[LetterOutcome]:
        return [o for o in self.outcomes if not o.ok]


class LetterGenerator:
    """Generates, uploads and records one dispute letter per bureau."""

    def __init__(self, db: PipelineDB, storage: StorageClient,
                 renderer: Optional[LetterRenderer] = None,
                 bureaus: Optional[List[str]] = None):
        self.db = db
        self.storage = storage
        self.renderer = renderer or LetterRenderer()
        self.bureaus = list(bureaus) if bureaus is not None else settings.bureaus

    def generate(self, job_id: str, report_id: str, user_id: str, analysis: Dict[str, Any]) -> LetterBatch:
        findings = extract_findings(analysis)
        logger.info("letters_start report=%s bureaus=%d findings=%d", report_id, len(self.bureaus), len(findings))

        batch = LetterBatch(report_id=report_id)
        for bureau in self.bureaus:
            batch.outcomes.append(self._generate_one(job_id, report_id, user_id, bureau, findings))

        logger.info(
            "letters_done report=%s succeeded=%d failed=%d",
            report_id, len(batch.succeeded), len(batch.failed),
        )
        return batch

    def _generate_one(self, job_id: str, report_id: str, user_id: str, bureau: str,
                      findings: List[Dict[str, Any]]) -> LetterOutcome:
        try:
            text = self.renderer.draft(bureau, findings)
            pdf_bytes = self.renderer.render(text)
            file_key = letter_key(user_id, report_id, bureau)
            self.storage.upload_bytes(file_key, pdf_bytes, content_type="application/pdf")
            if self.db.insert_dispute_letter(job_id, report_id, user_id, bureau, file_key, text) is None:
                raise LetterError("job_no_longer_processing")
        except Exception as exc:
            logger.error("letter_failed report=%s bureau=%s error=%s", report_id, bureau, exc)
            return LetterOutcome(bureau=bureau, error=str(exc) or type(exc).__name__)

        logger.info("letter_generated report=%s bureau=%s key=%s", report_id, bureau, file_key)
        return LetterOutcome(bureau=bureau, file_key=file_key)
