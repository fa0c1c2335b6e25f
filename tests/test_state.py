from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from polyrev.config import Scope
from polyrev.errors import PersistenceError
from polyrev.orchestrate import Orchestrator, RunOptions
from polyrev.runner import StatusKind
from polyrev.state import RunState

from conftest import FakeRunner, make_reviewer, scripted

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def test_ran_recently_window() -> None:
    state = RunState()
    state.record("sec", 2, now=NOW - timedelta(hours=2))
    state.record("perf", 0, now=NOW - timedelta(hours=25))

    assert state.ran_recently("sec", NOW)
    assert not state.ran_recently("perf", NOW)
    assert not state.ran_recently("never", NOW)


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    state = RunState()
    state.record("sec", 3, now=NOW)
    state.save(tmp_path)

    loaded = RunState.load(tmp_path)
    assert loaded.reviewers["sec"].findings_count == 3
    assert loaded.reviewers["sec"].last_run == NOW
    assert (tmp_path / ".polyrev" / "state.json").exists()


def test_missing_state_is_empty(tmp_path: Path) -> None:
    assert RunState.load(tmp_path).reviewers == {}


def test_corrupt_state(tmp_path: Path) -> None:
    path = RunState.path_for(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text("{not json")

    with pytest.raises(PersistenceError):
        RunState.load(tmp_path)
    assert RunState.load_or_empty(tmp_path).reviewers == {}


def test_naive_timestamps_are_utc(tmp_path: Path) -> None:
    path = RunState.path_for(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text('{"reviewers": {"sec": {"last_run": "2026-03-10T11:00:00", "findings_count": 1}}}')

    assert RunState.load(tmp_path).ran_recently("sec", NOW)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("hours_ago", "force", "expected"),
    [
        (2, False, StatusKind.SKIPPED),
        (2, True, StatusKind.COMPLETED),
        (25, False, StatusKind.COMPLETED),
        (25, True, StatusKind.COMPLETED),
    ],
)
async def test_skip_logic(
    tmp_path: Path, make_config, hours_ago: int, force: bool, expected: StatusKind
) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')\n")
    (tmp_path / "prompts").mkdir()
    (tmp_path / "prompts" / "sec.md").write_text("Review for security.")

    config = make_config(
        reviewers=[make_reviewer("sec", ["src"])],
        scopes={"src": Scope(paths=[Path("src")])},
    )
    state = RunState()
    state.record("sec", 0, now=NOW - timedelta(hours=hours_ago))

    runner = FakeRunner(scripted('{"findings": []}'))
    orchestrator = Orchestrator(config, lambda kind: runner)
    report = await orchestrator.run(RunOptions(force=force), state, now=NOW)

    assert [r.status.kind for r in report.results] == [expected]
    if expected == StatusKind.SKIPPED:
        assert report.results[0].status.detail == "already ran today"
        assert runner.calls == []
