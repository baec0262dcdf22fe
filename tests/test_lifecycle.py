import asyncio

import pytest

from benefits_interview.lifecycle import RecordLifecycleGuard, RecordUnavailableError
from benefits_interview.models import InterviewStatus
from benefits_interview.store import DuplicateRecordError, InMemoryInterviewStore


@pytest.mark.asyncio
async def test_first_call_creates_record(guard, store):
    record = await guard.ensure_exists("session-1", audio_enabled=True)

    assert record.session_id == "session-1"
    assert record.status is InterviewStatus.IN_PROGRESS
    assert record.audio_enabled is True
    assert (await store.get_by_session("session-1")).id == record.id


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_record():
    store = InMemoryInterviewStore(latency=0.01)
    guard = RecordLifecycleGuard(store)

    records = await asyncio.gather(
        *(guard.ensure_exists("session-1") for _ in range(10))
    )

    assert len({record.id for record in records}) == 1
    assert store.insert_calls == 1
    assert len(await store.list_records()) == 1


@pytest.mark.asyncio
async def test_existing_record_is_returned_unchanged(guard, store):
    created = await store.insert("session-1", demo_scenario_id="demo-a")

    record = await guard.ensure_exists("session-1", demo_scenario_id="other")

    assert record.id == created.id
    assert record.demo_scenario_id == "demo-a"
    assert store.insert_calls == 1


class _RacingStore(InMemoryInterviewStore):
    """Another process wins the insert between our lookup and insert."""

    async def insert(self, session_id, *, audio_enabled=False, demo_scenario_id=None):
        await super().insert(session_id)
        raise DuplicateRecordError(f"Interview for session '{session_id}' already exists")


@pytest.mark.asyncio
async def test_lost_insert_race_reuses_the_winner():
    store = _RacingStore()
    guard = RecordLifecycleGuard(store)

    record = await guard.ensure_exists("session-1")

    assert record.session_id == "session-1"
    assert len(await store.list_records()) == 1


@pytest.mark.asyncio
async def test_store_outage_raises_record_unavailable(guard, store):
    store.available = False

    with pytest.raises(RecordUnavailableError) as excinfo:
        await guard.ensure_exists("session-1")

    assert excinfo.value.session_id == "session-1"


@pytest.mark.asyncio
async def test_blank_session_id_is_rejected(guard):
    with pytest.raises(ValueError):
        await guard.ensure_exists("")
