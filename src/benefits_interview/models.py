"""Domain types shared by the coverage and completion engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Speaker of a transcript entry."""

    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def from_string(cls, role: str | None) -> "Role":
        """Normalize arbitrary input into a valid role."""
        normalized = (role or "").strip().lower()
        for candidate in cls:
            if candidate.value == normalized:
                return candidate
        raise ValueError(f"Unsupported transcript role: {role}")


class InterviewStatus(str, Enum):
    """Lifecycle status of an interview record."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not InterviewStatus.IN_PROGRESS


SECTION_IDS: Tuple[str, ...] = (
    "household",
    "income",
    "expenses",
    "assets",
    "special",
)
REQUIRED_SECTION_IDS: Tuple[str, ...] = SECTION_IDS[:4]
SUMMARY_SECTION = "summary"

SECTION_LABELS: Dict[str, str] = {
    "household": "household information",
    "income": "income details",
    "expenses": "expenses",
    "assets": "assets",
    "special": "special circumstances",
}


@dataclass(frozen=True, slots=True)
class TranscriptEntry:
    """A single utterance in the interview conversation."""

    role: Role
    content: str
    occurred_at: datetime = field(default_factory=utcnow)

    def as_line(self) -> str:
        return f"{self.role.value}: {self.content}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TranscriptEntry":
        occurred_raw = payload.get("occurred_at")
        occurred_at = (
            parse_timestamp(occurred_raw)
            if isinstance(occurred_raw, str)
            else utcnow()
        )
        return cls(
            role=Role.from_string(str(payload.get("role", ""))),
            content=str(payload.get("content", "")),
            occurred_at=occurred_at,
        )


def transcript_text(entries: Sequence[TranscriptEntry]) -> str:
    """Role-prefixed lines used as the oracle input."""

    return "\n".join(entry.as_line() for entry in entries)


@dataclass(frozen=True, slots=True)
class SectionCoverage:
    """Per-section coverage flags. Always replaced, never patched."""

    household: bool = False
    income: bool = False
    expenses: bool = False
    assets: bool = False
    special: bool = False

    @property
    def complete(self) -> bool:
        return all(getattr(self, name) for name in REQUIRED_SECTION_IDS)

    @classmethod
    def empty(cls) -> "SectionCoverage":
        return cls()

    @classmethod
    def from_mapping(cls, sections: Mapping[str, Any]) -> "SectionCoverage":
        values = {name: _coerce_flag(sections.get(name)) for name in SECTION_IDS}
        return cls(**values)

    def covered(self) -> List[str]:
        return [name for name in SECTION_IDS if getattr(self, name)]

    def missing(self) -> List[str]:
        return [name for name in SECTION_IDS if not getattr(self, name)]

    def to_dict(self) -> Dict[str, bool]:
        payload = {name: bool(getattr(self, name)) for name in SECTION_IDS}
        payload["complete"] = self.complete
        return payload


def _coerce_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


@dataclass(slots=True)
class InterviewRecord:
    """Durable aggregate for a single interview session."""

    id: int
    session_id: str
    status: InterviewStatus = InterviewStatus.IN_PROGRESS
    started_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    audio_enabled: bool = False
    demo_scenario_id: Optional[str] = None
    current_section: Optional[str] = None
    completed_sections: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)
    exchange_count: int = 0
    transcript: Optional[str] = None
    save_state: Optional[Dict[str, Any]] = None
    applicant_name: Optional[str] = None
    household_size: Optional[int] = None
    monthly_income: Optional[int] = None
    summary: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "audio_enabled": self.audio_enabled,
            "demo_scenario_id": self.demo_scenario_id,
            "current_section": self.current_section,
            "completed_sections": list(self.completed_sections),
            "flags": list(self.flags),
            "exchange_count": self.exchange_count,
            "transcript": self.transcript,
            "save_state": self.save_state,
            "applicant_name": self.applicant_name,
            "household_size": self.household_size,
            "monthly_income": self.monthly_income,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "InterviewRecord":
        completed_raw = payload.get("completed_at")
        return cls(
            id=int(payload["id"]),
            session_id=str(payload["session_id"]),
            status=InterviewStatus(payload.get("status", "in_progress")),
            started_at=parse_timestamp(str(payload.get("started_at"))),
            last_updated=parse_timestamp(str(payload.get("last_updated"))),
            completed_at=(
                parse_timestamp(completed_raw)
                if isinstance(completed_raw, str)
                else None
            ),
            audio_enabled=bool(payload.get("audio_enabled", False)),
            demo_scenario_id=payload.get("demo_scenario_id"),
            current_section=payload.get("current_section"),
            completed_sections=list(payload.get("completed_sections") or []),
            flags=list(payload.get("flags") or []),
            exchange_count=int(payload.get("exchange_count") or 0),
            transcript=payload.get("transcript"),
            save_state=payload.get("save_state"),
            applicant_name=payload.get("applicant_name"),
            household_size=payload.get("household_size"),
            monthly_income=payload.get("monthly_income"),
            summary=payload.get("summary"),
        )


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """Immutable snapshot appended on every save."""

    id: int
    interview_id: int
    created_at: datetime
    transcript_snapshot: Tuple[TranscriptEntry, ...]
    current_section: str
    completed_sections: Tuple[str, ...]
    metadata: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "interview_id": self.interview_id,
            "created_at": self.created_at.isoformat(),
            "transcript_snapshot": [
                entry.to_dict() for entry in self.transcript_snapshot
            ],
            "current_section": self.current_section,
            "completed_sections": list(self.completed_sections),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Checkpoint":
        return cls(
            id=int(payload["id"]),
            interview_id=int(payload["interview_id"]),
            created_at=parse_timestamp(str(payload.get("created_at"))),
            transcript_snapshot=tuple(
                TranscriptEntry.from_dict(item)
                for item in payload.get("transcript_snapshot") or []
            ),
            current_section=str(payload.get("current_section", "")),
            completed_sections=tuple(payload.get("completed_sections") or []),
            metadata=dict(payload.get("metadata") or {}),
        )


def parse_timestamp(value: str) -> datetime:
    cleaned = value
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
