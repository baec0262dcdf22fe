"""Shared session orchestration for benefits interviews."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Union,
)

from .activity import ActivityTracker, Clock
from .checkpoints import CheckpointWriter, analyze_transcript
from .completion import (
    CompletionError,
    CompletionPolicy,
    completion_percentage,
    completion_status,
    detect_completion_in_message,
)
from .config import AppSettings
from .coverage_oracle import CoverageOracleClient
from .debouncer import CoverageDebouncer
from .lifecycle import RecordLifecycleGuard, RecordUnavailableError
from .models import (
    SECTION_LABELS,
    Checkpoint,
    InterviewRecord,
    Role,
    SectionCoverage,
    TranscriptEntry,
    transcript_text,
    utcnow,
)
from .store import InterviewStore

logger = logging.getLogger(__name__)

Confirmation = Union[
    bool,
    Callable[[], Union[bool, Awaitable[bool]]],
]


@dataclass(slots=True)
class SessionStatus:
    """Point-in-time view of a session for the API and CLI."""

    session_id: str
    message_count: int
    coverage: Optional[Dict[str, bool]]
    percentage: int
    missing_sections: List[str]
    status_text: str
    coverage_loading: bool
    coverage_degraded: bool
    idle_warning: str
    is_completing: bool
    completed: bool
    completion_reason: Optional[str] = None
    last_error: Optional[str] = None
    checkpoints_saved: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "message_count": self.message_count,
            "coverage": self.coverage,
            "percentage": self.percentage,
            "missing_sections": list(self.missing_sections),
            "status_text": self.status_text,
            "coverage_loading": self.coverage_loading,
            "coverage_degraded": self.coverage_degraded,
            "idle_warning": self.idle_warning,
            "is_completing": self.is_completing,
            "completed": self.completed,
            "completion_reason": self.completion_reason,
            "last_error": self.last_error,
            "checkpoints_saved": self.checkpoints_saved,
        }


class InterviewSession:
    """Encapsulates coverage, checkpoints and completion for one interview."""

    def __init__(
        self,
        session_id: str,
        *,
        guard: RecordLifecycleGuard,
        writer: CheckpointWriter,
        policy: CompletionPolicy,
        debouncer: CoverageDebouncer,
        tracker: ActivityTracker,
        checkpoint_every: int = 5,
        audio_enabled: bool = False,
        demo_scenario_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id
        self.audio_enabled = audio_enabled
        self.demo_scenario_id = demo_scenario_id
        self._guard = guard
        self._writer = writer
        self._policy = policy
        self._debouncer = debouncer
        self._tracker = tracker
        self._checkpoint_every = max(1, checkpoint_every)
        self._transcript: List[TranscriptEntry] = []
        self._started = False
        self._completed = False
        self._completion_reason: Optional[str] = None
        self._last_error: Optional[str] = None
        self._idle_warning = ""
        self._checkpoints_saved = 0

    @property
    def transcript(self) -> List[TranscriptEntry]:
        return list(self._transcript)

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def completion_reason(self) -> Optional[str]:
        return self._completion_reason

    @property
    def debouncer(self) -> CoverageDebouncer:
        return self._debouncer

    @property
    def tracker(self) -> ActivityTracker:
        return self._tracker

    @property
    def effective_coverage(self) -> Optional[SectionCoverage]:
        """Oracle coverage when healthy, keyword coverage otherwise."""

        oracle_coverage = self._debouncer.coverage
        if oracle_coverage is not None and not self._debouncer.degraded:
            return oracle_coverage
        if not self._transcript:
            return None
        return analyze_transcript(self._transcript).coverage

    async def start(self, *, watch_idle: bool = False) -> InterviewRecord:
        """Make sure the record exists before anything is written to it."""

        record = await self._guard.ensure_exists(
            self.session_id,
            audio_enabled=self.audio_enabled,
            demo_scenario_id=self.demo_scenario_id,
        )
        if record.status.is_terminal:
            self._completed = True
            if record.summary:
                self._completion_reason = record.summary.get("reason")
        elif watch_idle and not self._started:
            self._tracker.start(self.check_idle)
        self._started = True
        return record

    def restore(self, checkpoint: Checkpoint) -> None:
        """Resume from a saved checkpoint's transcript."""

        self._transcript = list(checkpoint.transcript_snapshot)
        self._tracker.touch()
        if self._transcript:
            self._debouncer.update(transcript_text(self._transcript))
        logger.info(
            "Restored %s from checkpoint %s (%d entries)",
            self.session_id,
            checkpoint.id,
            len(self._transcript),
        )

    async def handle_event(
        self,
        role: Union[Role, str],
        content: str,
        *,
        now: Optional[datetime] = None,
    ) -> SessionStatus:
        """Append a transcript event and run the automatic triggers."""

        if self._completed:
            logger.info(
                "Ignoring event for completed interview %s", self.session_id
            )
            return self.status()

        entry_role = role if isinstance(role, Role) else Role.from_string(role)
        entry = TranscriptEntry(
            role=entry_role,
            content=content,
            occurred_at=now or utcnow(),
        )
        self._transcript.append(entry)
        self._tracker.touch(entry.occurred_at)
        self._idle_warning = ""
        agent_signal = entry_role is Role.ASSISTANT and (
            detect_completion_in_message(content)
        )
        self._debouncer.update(transcript_text(self._transcript))

        if len(self._transcript) % self._checkpoint_every == 0:
            try:
                await self.checkpoint()
            except RecordUnavailableError as exc:
                logger.warning(
                    "Periodic checkpoint for %s failed: %s",
                    self.session_id,
                    exc,
                )

        decision = self._policy.evaluate(
            transcript=self._transcript,
            last_activity_at=self._tracker.last_activity_at,
            agent_signal=agent_signal,
            now=entry.occurred_at,
        )
        if decision.should_complete:
            await self._complete_quietly(decision.reason)
        return self.status()

    async def checkpoint(self) -> Optional[Checkpoint]:
        try:
            checkpoint = await self._writer.save(
                self.session_id,
                self._transcript,
                audio_enabled=self.audio_enabled,
            )
        except RecordUnavailableError as exc:
            self._last_error = str(exc)
            raise
        if checkpoint is not None:
            self._checkpoints_saved += 1
            self._last_error = None
        return checkpoint

    async def request_manual_end(
        self,
        confirm: Confirmation = True,
    ) -> Optional[InterviewRecord]:
        """End the interview if the user confirms.

        ``confirm`` may be a plain bool or a callable returning a bool or an
        awaitable bool. Declining leaves the session untouched.
        """

        confirmed: Any = confirm() if callable(confirm) else confirm
        if inspect.isawaitable(confirmed):
            confirmed = await confirmed
        if not confirmed:
            logger.info("Manual end declined for %s", self.session_id)
            return None
        decision = self._policy.evaluate(
            transcript=self._transcript,
            last_activity_at=self._tracker.last_activity_at,
            manual_end=True,
        )
        return await self._complete(decision.reason)

    async def check_idle(self, now: Optional[datetime] = None) -> str:
        """Refresh the idle warning and auto-complete abandoned sessions."""

        if self._completed:
            return ""
        current = now or utcnow()
        self._idle_warning = self._tracker.warning(current)
        decision = self._policy.evaluate(
            transcript=self._transcript,
            last_activity_at=self._tracker.last_activity_at,
            now=current,
        )
        if decision.should_complete:
            await self._complete_quietly(decision.reason)
        return self._idle_warning

    def status(self) -> SessionStatus:
        coverage = self.effective_coverage
        return SessionStatus(
            session_id=self.session_id,
            message_count=len(self._transcript),
            coverage=coverage.to_dict() if coverage is not None else None,
            percentage=(
                completion_percentage(coverage) if coverage is not None else 0
            ),
            missing_sections=(
                [SECTION_LABELS[name] for name in coverage.missing()]
                if coverage is not None
                else []
            ),
            status_text=completion_status(coverage),
            coverage_loading=self._debouncer.is_loading,
            coverage_degraded=self._debouncer.degraded,
            idle_warning=self._idle_warning,
            is_completing=self._policy.is_completing(self.session_id),
            completed=self._completed,
            completion_reason=self._completion_reason,
            last_error=self._last_error,
            checkpoints_saved=self._checkpoints_saved,
        )

    async def close(self) -> None:
        await self._tracker.stop()
        await self._debouncer.close()

    async def _complete(self, reason: str) -> Optional[InterviewRecord]:
        try:
            record = await self._policy.finalize(
                self.session_id,
                self._transcript,
                self.effective_coverage,
                reason=reason,
                audio_enabled=self.audio_enabled,
            )
        except (CompletionError, RecordUnavailableError) as exc:
            self._last_error = str(exc)
            raise
        if record is None:
            return None
        if record.status.is_terminal:
            self._completed = True
            self._idle_warning = ""
            summary_reason = (record.summary or {}).get("reason")
            self._completion_reason = summary_reason or reason
            self._last_error = None
            await self._tracker.stop()
        return record

    async def _complete_quietly(self, reason: str) -> None:
        try:
            await self._complete(reason)
        except (CompletionError, RecordUnavailableError) as exc:
            logger.warning(
                "Automatic completion of %s failed (%s): %s",
                self.session_id,
                reason,
                exc,
            )


class SessionRegistry:
    """Keeps live sessions by id on top of one shared store."""

    def __init__(
        self,
        settings: AppSettings,
        store: InterviewStore,
        oracle: CoverageOracleClient,
        *,
        clock: Clock = utcnow,
        watch_idle: bool = True,
    ) -> None:
        self._settings = settings
        self._oracle = oracle
        self._clock = clock
        self._watch_idle = watch_idle
        self.store = store
        self.guard = RecordLifecycleGuard(store)
        self.writer = CheckpointWriter(self.guard)
        self.policy = CompletionPolicy(
            self.guard,
            self.writer,
            thresholds=settings.thresholds,
        )
        self._sessions: Dict[str, InterviewSession] = {}
        self._opening: Dict[str, asyncio.Lock] = {}

    @property
    def oracle(self) -> CoverageOracleClient:
        return self._oracle

    def get(self, session_id: str) -> Optional[InterviewSession]:
        return self._sessions.get(session_id)

    def sessions(self) -> Sequence[InterviewSession]:
        return list(self._sessions.values())

    async def open(
        self,
        session_id: str,
        *,
        audio_enabled: bool = False,
        demo_scenario_id: Optional[str] = None,
        resume: bool = False,
    ) -> InterviewSession:
        """Return the live session, creating and starting it on first use.

        With ``resume`` a newly opened session picks up the transcript of its
        latest checkpoint, so a restarted process carries on where it left off.
        """

        session = self._sessions.get(session_id)
        if session is not None:
            return session
        lock = self._opening.setdefault(session_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(session_id)
            if session is not None:
                return session
            session = InterviewSession(
                session_id,
                guard=self.guard,
                writer=self.writer,
                policy=self.policy,
                debouncer=CoverageDebouncer(
                    self._oracle,
                    quiet_period=self._settings.coverage_debounce_seconds,
                ),
                tracker=ActivityTracker(
                    self._settings.thresholds,
                    clock=self._clock,
                    check_interval=self._settings.idle_check_seconds,
                ),
                checkpoint_every=self._settings.checkpoint_every,
                audio_enabled=audio_enabled,
                demo_scenario_id=demo_scenario_id,
            )
            try:
                if resume:
                    checkpoint = await self.writer.latest_checkpoint(session_id)
                    if checkpoint is not None:
                        session.restore(checkpoint)
                await session.start(watch_idle=self._watch_idle)
            except Exception:
                await session.close()
                raise
            self._sessions[session_id] = session
        self._opening.pop(session_id, None)
        return session

    async def close(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.close()

    async def aclose(self) -> None:
        for session_id in list(self._sessions):
            await self.close(session_id)
        await self.store.close()
