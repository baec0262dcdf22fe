import asyncio
import json

import pytest

from benefits_interview.cli import read_events, replay_transcript, run_cli
from benefits_interview.interviews_cli import run_interviews_cli
from benefits_interview.models import InterviewStatus, Role, TranscriptEntry

from conftest import GatedOracle, make_transcript


def _seed(store):
    async def seed():
        await store.insert("empty-1")
        await store.insert("abandoned-1")
        busy = await store.insert("busy-1")
        await store.update(
            "busy-1",
            transcript="user: I live alone",
            exchange_count=1,
            applicant_name="Maria Lopez",
        )
        await store.append_checkpoint(
            busy.id,
            transcript=[TranscriptEntry(role=Role.USER, content="I live alone")],
            current_section="income",
            completed_sections=["household"],
            metadata={},
        )

    asyncio.run(seed())


def test_list_and_show(settings, store, capsys):
    _seed(store)

    run_interviews_cli(settings, ["list"], store=store)
    out = capsys.readouterr().out
    assert "Showing 3 interviews:" in out
    assert "busy-1 | in_progress" in out

    run_interviews_cli(settings, ["show", "busy-1"], store=store)
    out = capsys.readouterr().out
    assert "Applicant: Maria Lopez" in out
    assert "user: I live alone" in out

    run_interviews_cli(settings, ["show", "missing"], store=store)
    assert "not found" in capsys.readouterr().out


def test_checkpoints_command(settings, store, capsys):
    _seed(store)

    run_interviews_cli(settings, ["checkpoints", "busy-1"], store=store)
    out = capsys.readouterr().out
    assert "Found 1 checkpoint(s):" in out
    assert "section=income | covered=household" in out


def test_abandon_then_filter_by_status(settings, store, capsys):
    _seed(store)

    run_interviews_cli(settings, ["abandon", "abandoned-1"], store=store)
    assert "marked as abandoned" in capsys.readouterr().out
    run_interviews_cli(settings, ["abandon", "abandoned-1"], store=store)
    assert "already abandoned" in capsys.readouterr().out

    run_interviews_cli(settings, ["list", "--status", "abandoned"], store=store)
    out = capsys.readouterr().out
    assert "Showing 1 interviews:" in out
    assert "abandoned-1" in out


def test_cleanup_removes_only_empty_in_progress_records(settings, store, capsys):
    _seed(store)
    run_interviews_cli(settings, ["abandon", "abandoned-1"], store=store)
    capsys.readouterr()

    run_interviews_cli(settings, ["cleanup"], store=store)

    assert "Removed 1 empty interview(s)." in capsys.readouterr().out
    remaining = asyncio.run(store.list_records())
    assert sorted(r.session_id for r in remaining) == ["abandoned-1", "busy-1"]
    assert any(r.status is InterviewStatus.ABANDONED for r in remaining)


def test_read_events_parses_jsonl(tmp_path):
    path = tmp_path / "call.jsonl"
    path.write_text(
        "\n".join(
            [
                json.dumps({"role": "assistant", "content": "Who lives with you?"}),
                "",
                json.dumps({"role": "USER", "content": "My mom."}),
            ]
        ),
        encoding="utf-8",
    )

    assert list(read_events(path)) == [
        (Role.ASSISTANT, "Who lives with you?"),
        (Role.USER, "My mom."),
    ]


def test_read_events_reports_bad_lines(tmp_path):
    path = tmp_path / "bad.jsonl"
    path.write_text('{"role": "narrator", "content": "x"}\n', encoding="utf-8")

    with pytest.raises(ValueError, match="line 1"):
        list(read_events(path))


@pytest.mark.asyncio
async def test_replay_transcript_runs_a_full_session(settings, store):
    events = [
        (entry.role, entry.content)
        for entry in make_transcript(
            "Who lives with you?",
            "My two kids.",
            "Thank you, that completes our interview.",
            "Bye!",
        )
    ]

    status = await replay_transcript(
        settings, "replayed", events, store=store, oracle=GatedOracle(gated=False)
    )

    assert status.completed
    assert status.message_count == 3
    assert status.completion_reason == "Agent signaled completion"
    record = await store.get_by_session("replayed")
    assert record.status is InterviewStatus.COMPLETED


@pytest.mark.asyncio
async def test_replay_with_manual_end(settings, store):
    status = await replay_transcript(
        settings,
        "replayed",
        [(Role.ASSISTANT, "Hello"), (Role.USER, "Hi")],
        store=store,
        oracle=GatedOracle(gated=False),
        end=True,
    )

    assert status.completion_reason == "User manually ended interview"


def test_run_cli_dispatches_interviews_command(monkeypatch, capsys):
    monkeypatch.setenv("MAF_MODEL", "gpt-test")
    monkeypatch.setenv("MAF_MODEL_API_KEY", "test-key")
    monkeypatch.delenv("MAF_REDIS_URL", raising=False)

    run_cli(["interviews", "list"])

    assert "No interviews found." in capsys.readouterr().out
