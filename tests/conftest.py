# tests/conftest.py
import asyncio
import json
from datetime import timedelta
from typing import Callable, Iterable, List, Optional, Union

import pytest

from benefits_interview.checkpoints import CheckpointWriter
from benefits_interview.completion import CompletionPolicy
from benefits_interview.config import AppSettings, CompletionThresholds, ModelSettings
from benefits_interview.coverage_oracle import (
    CoverageEvaluation,
    CoverageOracleClient,
)
from benefits_interview.lifecycle import RecordLifecycleGuard
from benefits_interview.maf_client import ChatMessage
from benefits_interview.models import Role, SectionCoverage, TranscriptEntry, utcnow
from benefits_interview.store import InMemoryInterviewStore

# -------------------------------------------------------------------------------------------------
# Fake chat clients (no network)
# -------------------------------------------------------------------------------------------------
Reply = Union[str, Exception, Callable[[List[ChatMessage]], str]]


def sections_payload(**flags: bool) -> str:
    sections = {
        name: flags.get(name, False)
        for name in ("household", "income", "expenses", "assets", "special")
    }
    return json.dumps({"sections": sections})


class FakeChatClient:
    """Replays canned replies; an exception reply is raised instead."""

    def __init__(
        self,
        replies: Iterable[Reply] = (),
        *,
        model_name: str = "fake-primary",
        delay: float = 0.0,
    ):
        self._replies = list(replies)
        self._model_name = model_name
        self.delay = delay
        self.calls: List[List[ChatMessage]] = []

    @property
    def model_name(self) -> str:
        return self._model_name

    async def complete(self, messages):
        messages = list(messages)
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        reply = self._replies.pop(0) if len(self._replies) > 1 else self._replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(messages)
        return ChatMessage(role="assistant", content=reply)


class GatedOracle:
    """Oracle whose evaluations block until the test releases them."""

    def __init__(self, coverage: Optional[SectionCoverage] = None, *, gated: bool = True):
        self.coverage = coverage or SectionCoverage(household=True)
        self.calls: List[str] = []
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()
        self.error = None

    async def evaluate(self, transcript_text: str) -> CoverageEvaluation:
        self.calls.append(transcript_text)
        await self.gate.wait()
        if self.error is not None:
            return CoverageEvaluation(coverage=SectionCoverage.empty(), error=self.error)
        return CoverageEvaluation(coverage=self.coverage, model_used="gated")


# -------------------------------------------------------------------------------------------------
# Settings & shared components
# -------------------------------------------------------------------------------------------------
@pytest.fixture()
def thresholds():
    return CompletionThresholds()


@pytest.fixture()
def settings(thresholds):
    return AppSettings(
        model=ModelSettings(
            provider="openai",
            model="fake-primary",
            fallback_model="fake-fallback",
            endpoint=None,
            api_key="test-key",
            api_version=None,
            request_timeout=1.0,
        ),
        redis_url=None,
        coverage_debounce_seconds=0.01,
        checkpoint_every=5,
        idle_check_seconds=60.0,
        thresholds=thresholds,
    )


@pytest.fixture()
def store():
    return InMemoryInterviewStore()


@pytest.fixture()
def guard(store):
    return RecordLifecycleGuard(store)


@pytest.fixture()
def writer(guard):
    return CheckpointWriter(guard)


@pytest.fixture()
def policy(guard, writer, thresholds):
    return CompletionPolicy(guard, writer, thresholds=thresholds)


@pytest.fixture()
def chat_client():
    return FakeChatClient([sections_payload(household=True, income=True)])


@pytest.fixture()
def oracle(chat_client):
    return CoverageOracleClient(chat_client, timeout=1.0)


# -------------------------------------------------------------------------------------------------
# Helper: build transcripts
# -------------------------------------------------------------------------------------------------
def make_transcript(*turns: str, start=None) -> List[TranscriptEntry]:
    """Alternate user/assistant turns, starting with the assistant."""

    start = start or utcnow()
    entries = []
    for index, content in enumerate(turns):
        role = Role.ASSISTANT if index % 2 == 0 else Role.USER
        entries.append(
            TranscriptEntry(
                role=role,
                content=content,
                occurred_at=start + timedelta(seconds=index),
            )
        )
    return entries


@pytest.fixture()
def transcript():
    return make_transcript(
        "Hello! Let's start with your household. Who lives with you?",
        "My name is Maria Lopez. I live with my two kids, so 3 people.",
        "Thanks. What is your income?",
        "I earn about $2,400 per month from wages.",
        "What about rent and utilities?",
        "Rent is $1,100 and utilities are about $150.",
    )
