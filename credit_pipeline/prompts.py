import json
from typing import Any, Dict, List


def build_system_prompt(instruction: str="", example: str="", schema_outline: str="") -> str:
    delimiter = "\n\n---\n\n"
    schema = f"Your answer should be in JSON and strictly follow this outline, filling in the fields in the order they are given:\n```\n{schema_outline}\n```" if schema_outline else ""
    if example:
        example = delimiter + example.strip()
    if schema:
        schema = delimiter + schema.strip()

    system_prompt = instruction.strip() + schema + example
    return system_prompt


class CreditReportAnalysisPrompt:
    instruction = """
You are a credit report extraction engine.

Your job: extract structured credit metrics from raw credit report text and return VALID JSON ONLY.

Rules:
- Output MUST be a single JSON object. No markdown, no commentary.
- Do NOT guess. If a value is not present, use null and add the field name to quality.missingFields.
- Every metric MUST include evidence: a short snippet from the source text and a page number if available.
- Prefer numbers over adjectives. Convert $ and % to numeric values.
- If values contradict each other, prefer the summary section and record a warning in quality.warnings.
- Never output more than 100% utilization.
- Do not include PII (full SSN, full account numbers, date of birth, full address). Redact with "***" in snippets.
- Compute derived fields when inputs exist (overallUtilizationPct = creditUsed / creditLimit * 100).
- Rank impactRanking 1..N (1 is highest priority) by severity, recency and scoring impact
  (payment history > utilization > derogatories > inquiries > age/mix).
"""

    schema_outline = """
{
  "meta": {"bureau": "experian|equifax|transunion|unknown", "generatedDate": str|null, "reportSource": str|null},
  "score": {"model": str|null, "value": int|null, "rating": str|null, "evidence": [Evidence]},
  "accountSummary": {"openAccounts": int|null, "closedAccounts": int|null, "collectionsCount": int|null,
                     "accountsEverLate": int|null, "averageAccountAge": str|null, "oldestAccountAge": str|null,
                     "evidence": [Evidence]},
  "utilization": {"overall": {"creditUsed": int|null, "creditLimit": int|null, "overallUtilizationPct": int|null},
                  "revolvingAccounts": [{"creditor": str, "balance": int|null, "limit": int|null,
                                         "utilizationPct": int|null, "status": str|null, "evidence": [Evidence]}]},
  "negatives": [{"category": str, "creditor": str|null, "amount": int|null, "status": str|null,
                 "lastReported": str|null, "severity": "Critical|High|Medium|Low", "evidence": [Evidence]}],
  "inquiries": [{"creditor": str|null, "date": str|null, "type": "Hard|Soft|Unknown", "evidence": [Evidence]}],
  "impactRanking": [{"priority": int, "issueKey": str, "title": str, "whyItMatters": str,
                     "whatToDoNext": [str], "expectedImpact": str|null, "evidence": [Evidence]}],
  "nextBestMove": {"title": str, "steps": [str], "expectedImpact": str|null, "timeframe": str|null},
  "quality": {"completenessScore": int, "missingFields": [str], "warnings": [str]}
}
Evidence = {"snippet": str, "page": int|null}
"""

    system_prompt = build_system_prompt(instruction, schema_outline=schema_outline)

    @staticmethod
    def user_prompt(text: str) -> str:
        return f"Extract structured data from this credit report text:\n\n---\n{text}\n---"


class DisputeLetterPrompt:
    system_prompt = "You draft professional credit dispute letters."

    @staticmethod
    def user_prompt(bureau: str, findings: List[Dict[str, Any]]) -> str:
        return f"""
Draft a formal dispute letter for {bureau} based on these findings: {json.dumps(findings, ensure_ascii=False)}.

Include:
- A professional header (placeholders for name/address).
- The date (today).
- Each disputed item with a clear reason (e.g. "The balance is incorrect", "I have no knowledge of this account").
- A demand for investigation under the FCRA.
- A professional sign-off.

Keep the tone formal but firm. Do not use markdown bold/italic; plain text only.
""".strip()
