"""Interview completion detection and finalization.

Completion can be requested from several places at once: the user, the
agent's own closing line, the idle watchdog and the message ceiling. The
decision function picks exactly one reason in a fixed priority order, and
:class:`CompletionPolicy` makes the finalization itself non-overlapping and
idempotent per session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from .checkpoints import CheckpointWriter
from .config import CompletionThresholds
from .lifecycle import RecordLifecycleGuard, RecordUnavailableError
from .models import (
    SECTION_IDS,
    SECTION_LABELS,
    InterviewRecord,
    InterviewStatus,
    Role,
    SectionCoverage,
    TranscriptEntry,
    utcnow,
)

logger = logging.getLogger(__name__)

COMPLETION_PHRASES = (
    "interview is complete",
    "that completes our interview",
    "we're all done",
    "interview has been completed",
)


class CompletionTrigger(str, Enum):
    """Why an interview was (or was not) completed."""

    MANUAL = "manual"
    AGENT_SIGNAL = "agent_signal"
    IDLE_TIMEOUT = "idle_timeout"
    MESSAGE_CEILING = "message_ceiling"
    NONE = "none"


TRIGGER_REASONS: Dict[CompletionTrigger, str] = {
    CompletionTrigger.MANUAL: "User manually ended interview",
    CompletionTrigger.AGENT_SIGNAL: "Agent signaled completion",
    CompletionTrigger.IDLE_TIMEOUT: "Interview idle for 5+ minutes",
    CompletionTrigger.MESSAGE_CEILING: "Maximum message count reached",
    CompletionTrigger.NONE: "Interview in progress",
}


@dataclass(frozen=True, slots=True)
class CompletionDecision:
    should_complete: bool
    trigger: CompletionTrigger
    reason: str


def detect_completion_in_message(message: str) -> bool:
    """True when an assistant utterance contains a closing phrase."""

    lowered = message.lower()
    return any(phrase in lowered for phrase in COMPLETION_PHRASES)


def _decision(trigger: CompletionTrigger, reason: Optional[str] = None) -> CompletionDecision:
    return CompletionDecision(
        should_complete=trigger is not CompletionTrigger.NONE,
        trigger=trigger,
        reason=reason or TRIGGER_REASONS[trigger],
    )


def should_complete_interview(
    *,
    message_count: int,
    user_message_count: int,
    last_activity_at: datetime,
    agent_signal: bool = False,
    manual_end: bool = False,
    now: Optional[datetime] = None,
    thresholds: Optional[CompletionThresholds] = None,
) -> CompletionDecision:
    """Evaluate the completion triggers; the first match wins."""

    limits = thresholds or CompletionThresholds()
    if manual_end:
        return _decision(CompletionTrigger.MANUAL)
    if agent_signal:
        return _decision(CompletionTrigger.AGENT_SIGNAL)
    current = now or utcnow()
    idle_minutes = (current - last_activity_at).total_seconds() / 60
    if (
        idle_minutes > limits.idle_timeout_minutes
        and user_message_count > limits.idle_min_user_messages
    ):
        return _decision(
            CompletionTrigger.IDLE_TIMEOUT,
            "Interview idle for {:g}+ minutes".format(limits.idle_timeout_minutes),
        )
    if message_count >= limits.max_messages:
        return _decision(CompletionTrigger.MESSAGE_CEILING)
    return _decision(CompletionTrigger.NONE)


def completion_percentage(coverage: SectionCoverage) -> int:
    """Share of all five sections covered, ``special`` included."""

    covered = len(coverage.covered())
    return round(100 * covered / len(SECTION_IDS))


def completion_status(coverage: Optional[SectionCoverage]) -> str:
    """Human-readable progress line. Presentational only."""

    if coverage is None:
        return "Starting interview..."
    percentage = completion_percentage(coverage)
    missing = ", ".join(SECTION_LABELS[name] for name in coverage.missing())
    if percentage == 100:
        return "All sections complete! You can submit your interview."
    if percentage >= 80:
        return f"Nearly complete ({percentage}%). Just need: {missing}."
    if percentage >= 60:
        return f"Good progress ({percentage}%). Still need: {missing}."
    if percentage >= 40:
        return (
            f"Making progress ({percentage}%). Please continue with: {missing}."
        )
    if percentage >= 20:
        return f"Getting started ({percentage}%). Next: {missing}."
    return "Just beginning. Let's start with your household information."


@dataclass(frozen=True, slots=True)
class CompletionSummary:
    """Summary attached to a completed interview record."""

    total_messages: int
    exchange_count: int
    completed_sections: List[str]
    timestamp: datetime
    reason: str

    @classmethod
    def build(
        cls,
        transcript: Sequence[TranscriptEntry],
        coverage: Optional[SectionCoverage],
        reason: str,
    ) -> "CompletionSummary":
        covered = coverage.covered() if coverage is not None else []
        return cls(
            total_messages=len(transcript),
            exchange_count=sum(
                1 for entry in transcript if entry.role is Role.USER
            ),
            completed_sections=[name for name in covered if name != "special"],
            timestamp=utcnow(),
            reason=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalMessages": self.total_messages,
            "exchangeCount": self.exchange_count,
            "completedSections": list(self.completed_sections),
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
        }


class CompletionError(RuntimeError):
    """Finalization did not happen; the caller may retry."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(message)
        self.session_id = session_id


class CompletionPolicy:
    """Runs ensure-record, final checkpoint and mark-complete as one step."""

    def __init__(
        self,
        guard: RecordLifecycleGuard,
        writer: CheckpointWriter,
        *,
        thresholds: Optional[CompletionThresholds] = None,
    ) -> None:
        self._guard = guard
        self._writer = writer
        self._store = guard.store
        self.thresholds = thresholds or CompletionThresholds()
        self._completing: Set[str] = set()

    def is_completing(self, session_id: str) -> bool:
        return session_id in self._completing

    def evaluate(
        self,
        *,
        transcript: Sequence[TranscriptEntry],
        last_activity_at: datetime,
        agent_signal: bool = False,
        manual_end: bool = False,
        now: Optional[datetime] = None,
    ) -> CompletionDecision:
        return should_complete_interview(
            message_count=len(transcript),
            user_message_count=sum(
                1 for entry in transcript if entry.role is Role.USER
            ),
            last_activity_at=last_activity_at,
            agent_signal=agent_signal,
            manual_end=manual_end,
            now=now,
            thresholds=self.thresholds,
        )

    async def finalize(
        self,
        session_id: str,
        transcript: Sequence[TranscriptEntry],
        coverage: Optional[SectionCoverage],
        *,
        reason: str,
        audio_enabled: bool = False,
    ) -> Optional[InterviewRecord]:
        """Complete the interview.

        Returns ``None`` when another finalization for the session is already
        running, and the unchanged record when it is already terminal.
        Raises ``RecordUnavailableError`` when the record cannot be reached and
        ``CompletionError`` for any other failure.
        """

        if session_id in self._completing:
            logger.info("Completion already in progress for %s", session_id)
            return None
        self._completing.add(session_id)
        try:
            return await self._finalize(
                session_id,
                list(transcript),
                coverage,
                reason=reason,
                audio_enabled=audio_enabled,
            )
        except (CompletionError, RecordUnavailableError):
            raise
        except Exception as exc:  # noqa: BLE001 # pylint: disable=broad-except
            logger.warning("Completing %s failed: %s", session_id, exc)
            raise CompletionError(
                session_id,
                "Failed to complete interview. Please try again.",
            ) from exc
        finally:
            self._completing.discard(session_id)

    async def _finalize(
        self,
        session_id: str,
        transcript: List[TranscriptEntry],
        coverage: Optional[SectionCoverage],
        *,
        reason: str,
        audio_enabled: bool,
    ) -> InterviewRecord:
        record = await self._guard.ensure_exists(
            session_id,
            audio_enabled=audio_enabled,
        )
        if record.status.is_terminal:
            logger.info(
                "Interview %s already %s; nothing to complete",
                session_id,
                record.status.value,
            )
            return record
        if transcript:
            await self._writer.save(
                session_id,
                transcript,
                audio_enabled=audio_enabled,
            )
        summary = CompletionSummary.build(transcript, coverage, reason)
        completed = await self._store.update(
            session_id,
            status=InterviewStatus.COMPLETED,
            completed_at=summary.timestamp,
            summary=summary.to_dict(),
        )
        logger.info("Interview %s completed: %s", session_id, reason)
        return completed

