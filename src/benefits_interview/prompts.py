"""Prompt scaffolding for the coverage oracle."""

from __future__ import annotations

COVERAGE_SYSTEM_PROMPT = """
You are assessing a SNAP interview transcript to determine whether key sections were covered.
Return ONLY strict JSON with booleans for each section id.

Sections to assess (true if the interviewer asked and the applicant provided a substantive answer):
- household: household composition (who lives there, sizes/ages/relationships)
- income: work/income sources and amounts or lack thereof
- expenses: housing/utilities/medical/childcare costs
- assets: bank accounts, vehicles, property, savings
- special: special circumstances like disability, elderly, pregnancy, students

Output JSON schema:
{
  "sections": {
    "household": boolean,
    "income": boolean,
    "expenses": boolean,
    "assets": boolean,
    "special": boolean
  }
}
""".strip()

TRANSCRIPT_PREFIX = "Transcript to assess:\n\n"


def build_coverage_request(transcript_text: str) -> str:
    """Wrap the transcript in the user message sent to the oracle."""

    return f"{TRANSCRIPT_PREFIX}{transcript_text}"
