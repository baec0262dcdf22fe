"""Checkpoint persistence and the keyword heuristics that feed it."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .lifecycle import RecordLifecycleGuard, RecordUnavailableError
from .models import (
    SECTION_IDS,
    SUMMARY_SECTION,
    Checkpoint,
    Role,
    SectionCoverage,
    TranscriptEntry,
    utcnow,
)
from .store import StoreError

logger = logging.getLogger(__name__)

SECTION_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "household": ("household", "lives with", "family"),
    "income": ("income", "earn", "salary", "wages"),
    "expenses": ("rent", "mortgage", "utilities", "expenses"),
    "assets": ("bank account", "savings", "vehicle", "assets"),
    "special": ("disability", "elderly", "pregnant", "student"),
}

FLAG_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("Incomplete information", ("not sure", "don't know")),
    ("Complex case", ("complex", "complicated")),
)

_HOUSEHOLD_SIZE = re.compile(r"(\d+)\s*(?:people|person|members?)")
_MONTHLY_INCOME = re.compile(
    r"\$?(\d+(?:,\d{3})*)\s*(?:per month|monthly|/mo)"
)
_APPLICANT_NAME = re.compile(
    r"\b(?i:my name is|my name's|this is)\s+([A-Z][a-z'-]+(?:\s+[A-Z][a-z'-]+)?)"
)


@dataclass(slots=True)
class TranscriptAnalysis:
    """Advisory, keyword-derived view of a transcript."""

    coverage: SectionCoverage
    current_section: str
    applicant_name: Optional[str] = None
    household_size: Optional[int] = None
    monthly_income: Optional[int] = None
    flags: List[str] = field(default_factory=list)

    @property
    def completed_sections(self) -> List[str]:
        return self.coverage.covered()

    def metadata(self) -> Dict[str, Any]:
        return {
            "applicant_name": self.applicant_name,
            "household_size": self.household_size,
            "monthly_income": self.monthly_income,
        }


def next_section(coverage: SectionCoverage) -> str:
    """First section in interview order that is not yet covered."""

    for name in SECTION_IDS:
        if not getattr(coverage, name):
            return name
    return SUMMARY_SECTION


def analyze_transcript(transcript: Sequence[TranscriptEntry]) -> TranscriptAnalysis:
    """Cheap synchronous stand-in for the oracle, plus scalar extraction."""

    full_text = " ".join(entry.content for entry in transcript)
    lowered = full_text.lower()
    coverage = SectionCoverage.from_mapping(
        {
            name: any(keyword in lowered for keyword in keywords)
            for name, keywords in SECTION_KEYWORDS.items()
        }
    )

    household_size: Optional[int] = None
    match = _HOUSEHOLD_SIZE.search(lowered)
    if match:
        household_size = int(match.group(1))

    monthly_income: Optional[int] = None
    match = _MONTHLY_INCOME.search(lowered)
    if match:
        monthly_income = int(match.group(1).replace(",", ""))

    applicant_name: Optional[str] = None
    user_text = " ".join(
        entry.content for entry in transcript if entry.role is Role.USER
    )
    match = _APPLICANT_NAME.search(user_text)
    if match:
        applicant_name = match.group(1)

    flags = [
        label
        for label, phrases in FLAG_KEYWORDS
        if any(phrase in lowered for phrase in phrases)
    ]

    return TranscriptAnalysis(
        coverage=coverage,
        current_section=next_section(coverage),
        applicant_name=applicant_name,
        household_size=household_size,
        monthly_income=monthly_income,
        flags=flags,
    )


def format_transcript(transcript: Sequence[TranscriptEntry]) -> str:
    return "\n\n".join(entry.as_line() for entry in transcript)


class CheckpointWriter:
    """Writes rollups onto the record and appends a checkpoint row."""

    def __init__(self, guard: RecordLifecycleGuard) -> None:
        self._guard = guard
        self._store = guard.store

    async def save(
        self,
        session_id: str,
        transcript: Sequence[TranscriptEntry],
        *,
        audio_enabled: bool = False,
    ) -> Optional[Checkpoint]:
        """Persist the transcript; empty transcripts are a no-op."""

        if not transcript:
            return None

        record = await self._guard.ensure_exists(
            session_id,
            audio_enabled=audio_enabled,
        )
        entries = list(transcript)
        analysis = analyze_transcript(entries)
        user_turns = sum(1 for entry in entries if entry.role is Role.USER)

        try:
            await self._store.update(
                session_id,
                transcript=format_transcript(entries),
                current_section=analysis.current_section,
                completed_sections=analysis.completed_sections,
                applicant_name=analysis.applicant_name,
                household_size=analysis.household_size,
                monthly_income=analysis.monthly_income,
                flags=analysis.flags,
                exchange_count=user_turns,
                save_state={
                    "transcript": [entry.to_dict() for entry in entries],
                    "last_saved": utcnow().isoformat(),
                },
            )
            checkpoint = await self._store.append_checkpoint(
                record.id,
                transcript=entries,
                current_section=analysis.current_section,
                completed_sections=analysis.completed_sections,
                metadata=analysis.metadata(),
            )
        except StoreError as exc:
            raise RecordUnavailableError(
                session_id,
                f"Failed to save checkpoint for session '{session_id}'",
            ) from exc

        logger.debug(
            "Saved checkpoint %s for %s (%d entries, section=%s)",
            checkpoint.id,
            session_id,
            len(entries),
            analysis.current_section,
        )
        return checkpoint

    async def latest_checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        """Most recent checkpoint for a session, used to resume it."""

        try:
            record = await self._store.get_by_session(session_id)
            if record is None:
                return None
            checkpoints = await self._store.list_checkpoints(record.id)
        except StoreError as exc:
            raise RecordUnavailableError(
                session_id,
                f"Checkpoints for session '{session_id}' are unavailable",
            ) from exc
        return checkpoints[0] if checkpoints else None

    async def resume(self, checkpoint_id: int) -> Checkpoint:
        try:
            checkpoint = await self._store.get_checkpoint(checkpoint_id)
        except StoreError as exc:
            raise RecordUnavailableError(
                "", f"Checkpoint {checkpoint_id} is unavailable"
            ) from exc
        if checkpoint is None:
            raise LookupError(f"Checkpoint {checkpoint_id} not found")
        return checkpoint
