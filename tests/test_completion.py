import asyncio
from datetime import timedelta

import pytest

from benefits_interview.completion import (
    CompletionError,
    CompletionPolicy,
    CompletionTrigger,
    completion_percentage,
    completion_status,
    detect_completion_in_message,
    should_complete_interview,
)
from benefits_interview.config import CompletionThresholds
from benefits_interview.lifecycle import RecordUnavailableError
from benefits_interview.models import InterviewStatus, SectionCoverage, utcnow
from benefits_interview.store import InMemoryInterviewStore

NOW = utcnow()


def _decide(**overrides):
    params = dict(
        message_count=4,
        user_message_count=2,
        last_activity_at=NOW,
        now=NOW,
    )
    params.update(overrides)
    return should_complete_interview(**params)


def test_in_progress_by_default():
    decision = _decide()
    assert not decision.should_complete
    assert decision.trigger is CompletionTrigger.NONE
    assert decision.reason == "Interview in progress"


def test_manual_end_beats_every_other_trigger():
    decision = _decide(
        manual_end=True,
        agent_signal=True,
        message_count=60,
        user_message_count=30,
        last_activity_at=NOW - timedelta(minutes=10),
    )
    assert decision.trigger is CompletionTrigger.MANUAL
    assert decision.reason == "User manually ended interview"


def test_agent_signal_beats_idle_and_ceiling():
    decision = _decide(
        agent_signal=True,
        message_count=60,
        user_message_count=30,
        last_activity_at=NOW - timedelta(minutes=10),
    )
    assert decision.trigger is CompletionTrigger.AGENT_SIGNAL
    assert decision.reason == "Agent signaled completion"


def test_idle_requires_enough_user_messages():
    stale = NOW - timedelta(minutes=6)
    assert not _decide(last_activity_at=stale, user_message_count=10).should_complete

    decision = _decide(last_activity_at=stale, user_message_count=11)
    assert decision.trigger is CompletionTrigger.IDLE_TIMEOUT
    assert decision.reason == "Interview idle for 5+ minutes"


def test_idle_threshold_is_strict():
    decision = _decide(
        last_activity_at=NOW - timedelta(minutes=5), user_message_count=20
    )
    assert not decision.should_complete


def test_idle_beats_message_ceiling():
    decision = _decide(
        last_activity_at=NOW - timedelta(minutes=6),
        user_message_count=25,
        message_count=50,
    )
    assert decision.trigger is CompletionTrigger.IDLE_TIMEOUT


def test_message_ceiling():
    assert not _decide(message_count=49).should_complete
    decision = _decide(message_count=50)
    assert decision.trigger is CompletionTrigger.MESSAGE_CEILING
    assert decision.reason == "Maximum message count reached"


def test_thresholds_are_configurable():
    limits = CompletionThresholds(idle_timeout_minutes=3, max_messages=10)
    decision = _decide(message_count=10, thresholds=limits)
    assert decision.trigger is CompletionTrigger.MESSAGE_CEILING
    decision = _decide(
        last_activity_at=NOW - timedelta(minutes=3.5),
        user_message_count=11,
        thresholds=limits,
    )
    assert decision.reason == "Interview idle for 3+ minutes"


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Thank you! Your interview is complete.", True),
        ("That completes our interview for today.", True),
        ("Great, we're all done here.", True),
        ("Your interview has been completed.", True),
        ("Let's talk about your expenses next.", False),
    ],
)
def test_detect_completion_in_message(message, expected):
    assert detect_completion_in_message(message) is expected


def test_percentage_counts_special_in_denominator():
    assert completion_percentage(SectionCoverage()) == 0
    assert completion_percentage(SectionCoverage(household=True, income=True)) == 40
    coverage = SectionCoverage(household=True, income=True, expenses=True, assets=True)
    assert coverage.complete
    assert completion_percentage(coverage) == 80


def test_status_banding():
    assert completion_status(None) == "Starting interview..."
    assert completion_status(SectionCoverage()).startswith("Just beginning")
    status = completion_status(SectionCoverage(household=True, income=True))
    assert status == (
        "Making progress (40%). Please continue with: "
        "expenses, assets, special circumstances."
    )
    full = SectionCoverage(
        household=True, income=True, expenses=True, assets=True, special=True
    )
    assert completion_status(full).startswith("All sections complete")


@pytest.mark.asyncio
async def test_finalize_marks_record_completed(policy, store, transcript):
    coverage = SectionCoverage(household=True, income=True, special=True)

    record = await policy.finalize(
        "session-1", transcript, coverage, reason="User manually ended interview"
    )

    assert record.status is InterviewStatus.COMPLETED
    assert record.completed_at is not None
    assert record.summary["reason"] == "User manually ended interview"
    assert record.summary["totalMessages"] == len(transcript)
    assert record.summary["exchangeCount"] == 3
    assert record.summary["completedSections"] == ["household", "income"]
    assert len(await store.list_checkpoints(record.id)) == 1
    assert not policy.is_completing("session-1")


@pytest.mark.asyncio
async def test_finalize_is_idempotent(policy, store, transcript):
    first = await policy.finalize("session-1", transcript, None, reason="first")
    second = await policy.finalize("session-1", transcript, None, reason="second")

    assert second.completed_at == first.completed_at
    assert second.summary["reason"] == "first"
    assert len(await store.list_checkpoints(first.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_finalize_runs_once(transcript):
    from benefits_interview.checkpoints import CheckpointWriter
    from benefits_interview.lifecycle import RecordLifecycleGuard

    store = InMemoryInterviewStore(latency=0.01)
    guard = RecordLifecycleGuard(store)
    policy = CompletionPolicy(guard, CheckpointWriter(guard))

    results = await asyncio.gather(
        policy.finalize("session-1", transcript, None, reason="manual"),
        policy.finalize("session-1", transcript, None, reason="idle"),
    )

    assert results[1] is None
    assert results[0].status is InterviewStatus.COMPLETED
    record = await store.get_by_session("session-1")
    assert record.summary["reason"] == "manual"
    assert len(await store.list_checkpoints(record.id)) == 1


@pytest.mark.asyncio
async def test_failed_finalize_leaves_record_in_progress(policy, store, transcript):
    await store.insert("session-1")
    original_update = store.update

    async def failing_update(session_id, **fields):
        if fields.get("status") is InterviewStatus.COMPLETED:
            raise RuntimeError("write rejected")
        return await original_update(session_id, **fields)

    store.update = failing_update

    with pytest.raises(CompletionError):
        await policy.finalize("session-1", transcript, None, reason="manual")

    record = await store.get_by_session("session-1")
    assert record.status is InterviewStatus.IN_PROGRESS
    assert not policy.is_completing("session-1")


@pytest.mark.asyncio
async def test_finalize_empty_transcript_skips_checkpoint(policy, store):
    record = await policy.finalize("session-1", [], None, reason="manual")

    assert record.status is InterviewStatus.COMPLETED
    assert record.summary["totalMessages"] == 0
    assert await store.list_checkpoints(record.id) == []


@pytest.mark.asyncio
async def test_unreachable_store_is_reported_as_record_unavailable(
    policy, store, transcript
):
    store.available = False

    with pytest.raises(RecordUnavailableError):
        await policy.finalize("session-1", transcript, None, reason="manual")

    assert not policy.is_completing("session-1")
    store.available = True
    assert await store.get_by_session("session-1") is None
