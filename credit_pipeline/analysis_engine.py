import json
import logging
from typing import Any, Dict, Optional

from openai import OpenAI, OpenAIError

from credit_pipeline.exceptions import AnalysisError
from credit_pipeline.prompts import CreditReportAnalysisPrompt
from credit_pipeline.settings import settings

logger = logging.getLogger(__name__)


def build_openai_client() -> OpenAI:
    return OpenAI(api_key=settings.openai_api_key or None, timeout=settings.openai_timeout_s)


class AnalysisEngine:
    """
    Turns extracted report text into the structured analysis document.

    The document's shape is owned by the prompt; the pipeline only requires
    a non-empty JSON object back.
    """

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None,
                 max_chars: Optional[int] = None):
        self.client = client or build_openai_client()
        self.model = model or settings.openai_model
        self.max_chars = max_chars or settings.analysis_max_chars

    def analyze(self, text: str) -> Dict[str, Any]:
        """
        Analyze credit report text. Only the first ``max_chars`` characters are sent.

        Raises:
            AnalysisError: the call failed, or returned empty or non-object JSON
        """
        clipped = (text or "")[:self.max_chars]
        logger.info(
            "analysis_start model=%s chars=%d clipped=%s",
            self.model, len(clipped), len(text or "") > len(clipped),
        )
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": CreditReportAnalysisPrompt.system_prompt},
                    {"role": "user", "content": CreditReportAnalysisPrompt.user_prompt(clipped)},
                ],
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            logger.error("analysis_request_failed: %s", exc)
            raise AnalysisError(f"analysis_failed: {exc}") from exc

        content = resp.choices[0].message.content if resp.choices else None
        if not content or not content.strip():
            raise AnalysisError("analysis_failed: empty content")
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise AnalysisError(f"analysis_failed: invalid JSON ({exc.msg})") from exc
        if not isinstance(payload, dict) or not payload:
            raise AnalysisError("analysis_failed: expected a JSON object")

        logger.info("analysis_done keys=%s", sorted(payload.keys()))
        return payload
