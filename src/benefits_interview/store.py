"""Persistence for interview records and their checkpoint log."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

import redis.asyncio as redis_async
from redis.exceptions import RedisError, WatchError

from .models import (
    Checkpoint,
    InterviewRecord,
    InterviewStatus,
    TranscriptEntry,
    utcnow,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "completed_at",
        "audio_enabled",
        "demo_scenario_id",
        "current_section",
        "completed_sections",
        "flags",
        "exchange_count",
        "transcript",
        "save_state",
        "applicant_name",
        "household_size",
        "monthly_income",
        "summary",
    }
)


class StoreError(RuntimeError):
    """Base error for record store failures."""


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached."""


class DuplicateRecordError(StoreError):
    """Raised when inserting a record for an existing session id."""


class RecordNotFoundError(StoreError):
    """Raised when updating a record that does not exist."""


class InterviewStore(ABC):
    """Key-value-by-session-id record store with an append-only checkpoint log."""

    @abstractmethod
    async def get_by_session(self, session_id: str) -> Optional[InterviewRecord]:
        """Return the record for a session, or ``None``."""

    @abstractmethod
    async def get_by_id(self, record_id: int) -> Optional[InterviewRecord]:
        """Return the record with the given store id, or ``None``."""

    @abstractmethod
    async def insert(
        self,
        session_id: str,
        *,
        audio_enabled: bool = False,
        demo_scenario_id: Optional[str] = None,
    ) -> InterviewRecord:
        """Create an IN_PROGRESS record; raise DuplicateRecordError on conflict."""

    @abstractmethod
    async def update(self, session_id: str, **fields: Any) -> InterviewRecord:
        """Merge fields into the record and refresh ``last_updated``."""

    @abstractmethod
    async def append_checkpoint(
        self,
        interview_id: int,
        *,
        transcript: Sequence[TranscriptEntry],
        current_section: str,
        completed_sections: Sequence[str],
        metadata: Dict[str, Any],
    ) -> Checkpoint:
        """Append an immutable checkpoint row."""

    @abstractmethod
    async def list_checkpoints(self, interview_id: int) -> List[Checkpoint]:
        """Return checkpoints for a record, newest first."""

    @abstractmethod
    async def get_checkpoint(self, checkpoint_id: int) -> Optional[Checkpoint]:
        """Return a single checkpoint by id."""

    @abstractmethod
    async def list_records(
        self,
        *,
        status: Optional[InterviewStatus] = None,
    ) -> List[InterviewRecord]:
        """Return records ordered by ``last_updated``, newest first."""

    @abstractmethod
    async def delete(self, record_id: int) -> bool:
        """Remove a record and its checkpoints. Housekeeping only."""

    async def close(self) -> None:
        return None


def _validate_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(
            "Unsupported interview fields: {}".format(", ".join(sorted(unknown)))
        )


class InMemoryInterviewStore(InterviewStore):
    """Dict-backed store. Every operation yields to the event loop once."""

    def __init__(self, *, latency: float = 0.0) -> None:
        self._latency = latency
        self._records: Dict[str, InterviewRecord] = {}
        self._checkpoints: Dict[int, List[Checkpoint]] = {}
        self._next_record_id = 1
        self._next_checkpoint_id = 1
        self.insert_calls = 0
        self.available = True

    async def _yield(self) -> None:
        await asyncio.sleep(self._latency)
        if not self.available:
            raise StoreUnavailableError("In-memory store marked unavailable")

    async def get_by_session(self, session_id: str) -> Optional[InterviewRecord]:
        await self._yield()
        record = self._records.get(session_id)
        return replace(record) if record else None

    async def get_by_id(self, record_id: int) -> Optional[InterviewRecord]:
        await self._yield()
        for record in self._records.values():
            if record.id == record_id:
                return replace(record)
        return None

    async def insert(
        self,
        session_id: str,
        *,
        audio_enabled: bool = False,
        demo_scenario_id: Optional[str] = None,
    ) -> InterviewRecord:
        await self._yield()
        self.insert_calls += 1
        if session_id in self._records:
            raise DuplicateRecordError(
                f"Interview for session '{session_id}' already exists"
            )
        now = utcnow()
        record = InterviewRecord(
            id=self._next_record_id,
            session_id=session_id,
            started_at=now,
            last_updated=now,
            audio_enabled=audio_enabled,
            demo_scenario_id=demo_scenario_id,
        )
        self._next_record_id += 1
        self._records[session_id] = record
        return replace(record)

    async def update(self, session_id: str, **fields: Any) -> InterviewRecord:
        _validate_fields(fields)
        await self._yield()
        record = self._records.get(session_id)
        if record is None:
            raise RecordNotFoundError(
                f"Interview for session '{session_id}' not found"
            )
        updated = replace(record, **fields, last_updated=utcnow())
        self._records[session_id] = updated
        return replace(updated)

    async def append_checkpoint(
        self,
        interview_id: int,
        *,
        transcript: Sequence[TranscriptEntry],
        current_section: str,
        completed_sections: Sequence[str],
        metadata: Dict[str, Any],
    ) -> Checkpoint:
        await self._yield()
        checkpoint = Checkpoint(
            id=self._next_checkpoint_id,
            interview_id=interview_id,
            created_at=utcnow(),
            transcript_snapshot=tuple(transcript),
            current_section=current_section,
            completed_sections=tuple(completed_sections),
            metadata=dict(metadata),
        )
        self._next_checkpoint_id += 1
        self._checkpoints.setdefault(interview_id, []).append(checkpoint)
        return checkpoint

    async def list_checkpoints(self, interview_id: int) -> List[Checkpoint]:
        await self._yield()
        return list(reversed(self._checkpoints.get(interview_id, [])))

    async def get_checkpoint(self, checkpoint_id: int) -> Optional[Checkpoint]:
        await self._yield()
        for checkpoints in self._checkpoints.values():
            for checkpoint in checkpoints:
                if checkpoint.id == checkpoint_id:
                    return checkpoint
        return None

    async def list_records(
        self,
        *,
        status: Optional[InterviewStatus] = None,
    ) -> List[InterviewRecord]:
        await self._yield()
        records = [
            replace(record)
            for record in self._records.values()
            if status is None or record.status == status
        ]
        records.sort(key=lambda record: record.last_updated, reverse=True)
        return records

    async def delete(self, record_id: int) -> bool:
        await self._yield()
        for session_id, record in list(self._records.items()):
            if record.id == record_id:
                del self._records[session_id]
                self._checkpoints.pop(record_id, None)
                return True
        return False


class RedisInterviewStore(InterviewStore):
    """Stores records as JSON blobs in Redis.

    Session uniqueness comes from ``SET NX`` on the session key, so two
    processes racing on creation see exactly one winner. Updates run as
    ``WATCH``/``MULTI`` transactions and retry when another writer got there
    first, so concurrent partial updates never overwrite each other.
    """

    SESSION_KEY = "interview:session:{session_id}"
    ID_KEY = "interview:id:{record_id}"
    CHECKPOINTS_KEY = "interview:{record_id}:checkpoints"
    CHECKPOINT_KEY = "checkpoint:{checkpoint_id}"
    INDEX_KEY = "interviews:index"
    RECORD_SEQ = "interviews:seq"
    CHECKPOINT_SEQ = "checkpoints:seq"
    UPDATE_ATTEMPTS = 10

    def __init__(self, client: "redis_async.Redis") -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisInterviewStore":
        client = redis_async.from_url(url, decode_responses=True)
        return cls(client)

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except RedisError as exc:  # pragma: no cover - best effort
            logger.warning("Redis close failed: %s", exc)

    async def get_by_session(self, session_id: str) -> Optional[InterviewRecord]:
        key = self.SESSION_KEY.format(session_id=session_id)
        try:
            raw = await self._client.get(key)
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis read failed for {key}") from exc
        return self._decode_record(raw)

    async def get_by_id(self, record_id: int) -> Optional[InterviewRecord]:
        try:
            session_id = await self._client.get(
                self.ID_KEY.format(record_id=record_id)
            )
        except RedisError as exc:
            raise StoreUnavailableError("Redis id lookup failed") from exc
        if not session_id:
            return None
        return await self.get_by_session(session_id)

    async def insert(
        self,
        session_id: str,
        *,
        audio_enabled: bool = False,
        demo_scenario_id: Optional[str] = None,
    ) -> InterviewRecord:
        key = self.SESSION_KEY.format(session_id=session_id)
        try:
            record_id = int(await self._client.incr(self.RECORD_SEQ))
            now = utcnow()
            record = InterviewRecord(
                id=record_id,
                session_id=session_id,
                started_at=now,
                last_updated=now,
                audio_enabled=audio_enabled,
                demo_scenario_id=demo_scenario_id,
            )
            created = await self._client.set(
                key,
                json.dumps(record.to_dict(), ensure_ascii=False),
                nx=True,
            )
            if not created:
                raise DuplicateRecordError(
                    f"Interview for session '{session_id}' already exists"
                )
            await self._client.set(
                self.ID_KEY.format(record_id=record_id),
                session_id,
            )
            await self._client.zadd(
                self.INDEX_KEY,
                {session_id: now.timestamp()},
            )
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis insert failed for {key}") from exc
        return record

    async def update(self, session_id: str, **fields: Any) -> InterviewRecord:
        _validate_fields(fields)
        key = self.SESSION_KEY.format(session_id=session_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for _ in range(self.UPDATE_ATTEMPTS):
                    try:
                        await pipe.watch(key)
                        record = self._decode_record(await pipe.get(key))
                        if record is None:
                            raise RecordNotFoundError(
                                f"Interview for session '{session_id}' not found"
                            )
                        updated = replace(record, **fields, last_updated=utcnow())
                        pipe.multi()
                        pipe.set(
                            key,
                            json.dumps(updated.to_dict(), ensure_ascii=False),
                            xx=True,
                        )
                        pipe.zadd(
                            self.INDEX_KEY,
                            {session_id: updated.last_updated.timestamp()},
                        )
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("Concurrent write on %s; retrying update", key)
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis update failed for {key}") from exc
        raise StoreUnavailableError(
            f"Redis update for {key} kept conflicting with other writers"
        )

    async def append_checkpoint(
        self,
        interview_id: int,
        *,
        transcript: Sequence[TranscriptEntry],
        current_section: str,
        completed_sections: Sequence[str],
        metadata: Dict[str, Any],
    ) -> Checkpoint:
        try:
            checkpoint_id = int(await self._client.incr(self.CHECKPOINT_SEQ))
            checkpoint = Checkpoint(
                id=checkpoint_id,
                interview_id=interview_id,
                created_at=utcnow(),
                transcript_snapshot=tuple(transcript),
                current_section=current_section,
                completed_sections=tuple(completed_sections),
                metadata=dict(metadata),
            )
            blob = json.dumps(checkpoint.to_dict(), ensure_ascii=False)
            await self._client.set(
                self.CHECKPOINT_KEY.format(checkpoint_id=checkpoint_id),
                blob,
            )
            await self._client.lpush(
                self.CHECKPOINTS_KEY.format(record_id=interview_id),
                blob,
            )
        except RedisError as exc:
            raise StoreUnavailableError("Redis checkpoint append failed") from exc
        return checkpoint

    async def list_checkpoints(self, interview_id: int) -> List[Checkpoint]:
        key = self.CHECKPOINTS_KEY.format(record_id=interview_id)
        try:
            blobs = await self._client.lrange(key, 0, -1)
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis read failed for {key}") from exc
        checkpoints: List[Checkpoint] = []
        for blob in blobs:
            checkpoint = self._decode_checkpoint(blob)
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        return checkpoints

    async def get_checkpoint(self, checkpoint_id: int) -> Optional[Checkpoint]:
        key = self.CHECKPOINT_KEY.format(checkpoint_id=checkpoint_id)
        try:
            blob = await self._client.get(key)
        except RedisError as exc:
            raise StoreUnavailableError(f"Redis read failed for {key}") from exc
        return self._decode_checkpoint(blob)

    async def list_records(
        self,
        *,
        status: Optional[InterviewStatus] = None,
    ) -> List[InterviewRecord]:
        try:
            session_ids: List[str] = await self._client.zrevrange(
                self.INDEX_KEY, 0, -1
            )
        except RedisError as exc:
            raise StoreUnavailableError("Redis index read failed") from exc
        records: List[InterviewRecord] = []
        for session_id in session_ids:
            record = await self.get_by_session(session_id)
            if record is None:
                continue
            if status is not None and record.status != status:
                continue
            records.append(record)
        return records

    async def delete(self, record_id: int) -> bool:
        record = await self.get_by_id(record_id)
        if record is None:
            return False
        checkpoints = await self.list_checkpoints(record_id)
        try:
            await self._client.delete(
                self.SESSION_KEY.format(session_id=record.session_id),
                self.ID_KEY.format(record_id=record_id),
                self.CHECKPOINTS_KEY.format(record_id=record_id),
                *[
                    self.CHECKPOINT_KEY.format(checkpoint_id=checkpoint.id)
                    for checkpoint in checkpoints
                ],
            )
            await self._client.zrem(self.INDEX_KEY, record.session_id)
        except RedisError as exc:
            raise StoreUnavailableError("Redis delete failed") from exc
        return True

    @staticmethod
    def _decode_record(raw: Optional[str]) -> Optional[InterviewRecord]:
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed interview record: %s", raw)
            return None
        if not isinstance(payload, dict):
            return None
        return InterviewRecord.from_dict(payload)

    @staticmethod
    def _decode_checkpoint(raw: Optional[str]) -> Optional[Checkpoint]:
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed checkpoint row: %s", raw)
            return None
        if not isinstance(payload, dict):
            return None
        return Checkpoint.from_dict(payload)


def create_store(redis_url: Optional[str]) -> InterviewStore:
    """Build the Redis store when a URL is configured, else in-memory."""

    if redis_url:
        return RedisInterviewStore.from_url(redis_url)
    logger.info("No Redis URL configured; interviews are kept in memory.")
    return InMemoryInterviewStore()
