import io
import logging

from PyPDF2 import PdfReader
from PyPDF2.errors import PyPdfError

from credit_pipeline.exceptions import ExtractionError

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF-"
# Leading junk before the header is tolerated within the first kilobyte.
SIGNATURE_WINDOW = 1024


class TextExtractor:
    """Extracts the plain text layer of an uploaded PDF."""

    def extract_text(self, data: bytes) -> str:
        """
        Return the concatenated text of every page, in page order.

        A document without a text layer yields an empty string. Bytes that are
        not a readable PDF raise ExtractionError.
        """
        if not data:
            raise ExtractionError("extraction_failed: empty document")
        header_at = data.find(PDF_SIGNATURE, 0, SIGNATURE_WINDOW)
        if header_at < 0:
            raise ExtractionError("extraction_failed: pdf_signature_missing")
        try:
            # Object offsets are relative to the header, not to any junk before it.
            reader = PdfReader(io.BytesIO(data[header_at:]))
            pages = [page.extract_text() or "" for page in reader.pages]
        except (PyPdfError, ValueError, KeyError, TypeError) as exc:
            raise ExtractionError(f"extraction_failed: {exc}") from exc

        text = "\n".join(pages)
        logger.info("text_extracted pages=%d chars=%d", len(pages), len(text))
        return text
