"""Guarantees an interview record exists exactly once per session."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from .models import InterviewRecord
from .store import DuplicateRecordError, InterviewStore, StoreError

logger = logging.getLogger(__name__)


class RecordUnavailableError(RuntimeError):
    """Raised when the interview record can be neither found nor created."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(message)
        self.session_id = session_id


class RecordLifecycleGuard:
    """Single choke point for record creation.

    Creation for one session id is serialized with an in-process lock; the
    store's uniqueness constraint covers callers in other processes, and a
    lost insert is resolved by re-fetching the winner.
    """

    def __init__(self, store: InterviewStore) -> None:
        self._store = store
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @property
    def store(self) -> InterviewStore:
        return self._store

    async def ensure_exists(
        self,
        session_id: str,
        *,
        audio_enabled: bool = False,
        demo_scenario_id: Optional[str] = None,
    ) -> InterviewRecord:
        """Return the session's record, creating it on first use."""

        if not session_id:
            raise ValueError("session_id is required")
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._waiters[session_id] = self._waiters.get(session_id, 0) + 1
        try:
            async with lock:
                return await self._lookup_or_create(
                    session_id,
                    audio_enabled=audio_enabled,
                    demo_scenario_id=demo_scenario_id,
                )
        finally:
            remaining = self._waiters[session_id] - 1
            if remaining:
                self._waiters[session_id] = remaining
            else:
                del self._waiters[session_id]
                self._locks.pop(session_id, None)

    async def _lookup_or_create(
        self,
        session_id: str,
        *,
        audio_enabled: bool,
        demo_scenario_id: Optional[str],
    ) -> InterviewRecord:
        try:
            record = await self._store.get_by_session(session_id)
            if record is not None:
                return record
            try:
                record = await self._store.insert(
                    session_id,
                    audio_enabled=audio_enabled,
                    demo_scenario_id=demo_scenario_id,
                )
            except DuplicateRecordError:
                logger.info(
                    "Interview for %s created concurrently; reusing it",
                    session_id,
                )
                record = await self._store.get_by_session(session_id)
                if record is None:
                    raise RecordUnavailableError(
                        session_id,
                        f"Interview for session '{session_id}' vanished "
                        "after a creation conflict",
                    )
                return record
        except StoreError as exc:
            raise RecordUnavailableError(
                session_id,
                f"Interview record for session '{session_id}' is unavailable",
            ) from exc
        logger.info("Created interview %s for session %s", record.id, session_id)
        return record
