import asyncio
import json
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from polyrev.config import Priority, ProviderKind, Scope
from polyrev.errors import NoUnitsMatchedError, ProviderTimeout
from polyrev.orchestrate import Orchestrator, RunOptions, execution_plan, run_review
from polyrev.providers import ProviderOutput, ProviderRunner, SessionInfo
from polyrev.runner import StatusKind
from polyrev.state import RunState

from conftest import FakeRunner, make_reviewer, scripted, write_files

TWO_FINDINGS = json.dumps(
    {
        "findings": [
            {
                "id": "SEC-1",
                "type": "injection",
                "title": "Unsanitised query",
                "priority": "p0",
                "file": "src/db.py",
                "line": 3,
                "description": "Query built by string concatenation.",
                "remediation": "Use bound parameters.",
            },
            {
                "id": "SEC-2",
                "type": "logging",
                "title": "Token logged",
                "priority": "p2",
                "file": "src/app.py",
                "line": 1,
                "description": "A token ends up in logs.",
                "remediation": "Redact it.",
            },
        ]
    }
)


def write_prompts(root: Path, *reviewer_ids: str) -> None:
    (root / "prompts").mkdir(exist_ok=True)
    for reviewer_id in reviewer_ids:
        (root / "prompts" / f"{reviewer_id}.md").write_text(f"REVIEWER:{reviewer_id}\nFind bugs.")


def by_reviewer(prompt: str, session: SessionInfo | None) -> str:
    if "REVIEWER:slow" in prompt:
        raise ProviderTimeout(300)
    if "REVIEWER:sec" in prompt:
        return json.dumps({"type": "result", "result": TWO_FINDINGS})
    return '{"findings": []}'


@pytest.mark.asyncio
async def test_end_to_end_mixed_outcomes(tmp_path: Path, make_config) -> None:
    write_files(tmp_path, "src/app.py", "src/db.py")
    write_prompts(tmp_path, "empty", "slow", "sec")
    config = make_config(
        reviewers=[
            make_reviewer("empty", ["docs"]),
            make_reviewer("slow", ["src"]),
            make_reviewer("sec", ["src"]),
        ],
        scopes={
            "src": Scope(paths=[Path("src")]),
            "docs": Scope(paths=[Path("docs")]),
        },
    )
    runner = FakeRunner(by_reviewer)
    report_dir = tmp_path / "reports" / "2026-03-10"

    outcome = await run_review(config, RunOptions(), report_dir, lambda kind: runner)
    report = outcome.report

    statuses = {r.reviewer_id: r.status for r in report.results}
    assert len(report.results) == 3
    assert statuses["empty"].kind == StatusKind.SKIPPED
    assert statuses["empty"].detail == "no matching files"
    assert statuses["slow"].kind == StatusKind.FAILED
    assert statuses["sec"].kind == StatusKind.COMPLETED

    results = {r.reviewer_id: r for r in report.results}
    assert results["slow"].findings == []
    assert [f.priority for f in results["sec"].findings] == [Priority.P0, Priority.P2]
    assert results["sec"].files_scanned == 2

    totals = report.totals
    assert (totals.p0, totals.p1, totals.p2) == (1, 0, 1)

    # Two attempts for the timing-out reviewer, one for the successful one.
    slow_calls = [c for c in runner.calls if "REVIEWER:slow" in c[0]]
    assert len(slow_calls) == 2

    summary = json.loads((report_dir / "summary.json").read_text())
    assert summary["exit_code"] == 1
    assert summary["totals"] == {"p0": 1, "p1": 0, "p2": 1}
    assert summary["skipped"] == ["empty"]
    assert summary["failed"] == ["slow"]
    assert (report_dir / "sec.md").exists()
    assert len(json.loads((report_dir / "sec.findings.json").read_text())) == 2
    assert not (report_dir / "slow.findings.json").exists()

    state = RunState.load(tmp_path)
    assert set(state.reviewers) == {"sec"}
    assert state.reviewers["sec"].findings_count == 2


@pytest.mark.asyncio
async def test_multi_chunk_session_threading(tmp_path: Path, make_config) -> None:
    write_files(tmp_path, *(f"src/m{i}.py" for i in range(5)))
    write_prompts(tmp_path, "sec")
    config = make_config(
        reviewers=[make_reviewer("sec", ["src"], max_files=2)],
        scopes={"src": Scope(paths=[Path("src")])},
    )
    runner = FakeRunner(scripted("Chunk 1/3 received.", "Chunk 2/3 received.", TWO_FINDINGS))

    report = await Orchestrator(config, lambda kind: runner).run(RunOptions(), RunState())

    result = report.results[0]
    assert result.status.kind == StatusKind.COMPLETED
    assert len(result.findings) == 2
    assert result.files_scanned == 5

    sessions = [c[2] for c in runner.calls]
    assert len(sessions) == 3
    assert all(s is not None for s in sessions)
    assert len({s.session_id for s in sessions if s}) == 1
    assert [s.is_resume for s in sessions if s] == [False, True, True]

    prompts = [c[0] for c in runner.calls]
    assert "ACCUMULATING" in prompts[0]
    assert "ACCUMULATING" in prompts[1]
    assert "FINAL CHUNK" in prompts[2]
    assert [len(c[1]) for c in runner.calls] == [2, 2, 1]


@pytest.mark.asyncio
async def test_provider_minted_session_is_adopted(tmp_path: Path, make_config) -> None:
    write_files(tmp_path, "src/a.py", "src/b.py", "src/c.py")
    write_prompts(tmp_path, "sec")
    config = make_config(
        reviewers=[make_reviewer("sec", ["src"], max_files=2, provider=ProviderKind.CODEX_CLI)],
        scopes={"src": Scope(paths=[Path("src")])},
    )
    runner = FakeRunner(scripted("ack", TWO_FINDINGS), session_id="th-42", mints=True)

    report = await Orchestrator(config, lambda kind: runner).run(RunOptions(), RunState())

    assert report.results[0].status.kind == StatusKind.COMPLETED
    first, second = (c[2] for c in runner.calls)
    assert first is None
    assert second == SessionInfo("th-42", is_resume=True)


@pytest.mark.asyncio
async def test_failed_chunk_aborts_remaining(tmp_path: Path, make_config) -> None:
    write_files(tmp_path, *(f"src/m{i}.py" for i in range(6)))
    write_prompts(tmp_path, "sec")
    config = make_config(
        reviewers=[make_reviewer("sec", ["src"], max_files=2)],
        scopes={"src": Scope(paths=[Path("src")])},
    )
    runner = FakeRunner(scripted("Chunk 1/3 received.", ProviderTimeout(10)))

    report = await Orchestrator(config, lambda kind: runner).run(RunOptions(), RunState())

    result = report.results[0]
    assert result.status.kind == StatusKind.FAILED
    assert result.status.detail == "1 of 2 chunks failed; partial results returned"
    assert result.findings == []
    # One call for chunk 1, two attempts for chunk 2, none for chunk 3.
    assert len(runner.calls) == 3


class SlowRunner(ProviderRunner):
    def __init__(self) -> None:
        super().__init__("slow", "slow", Path("."))
        self.active = 0
        self.peak = 0

    async def execute(
        self,
        prompt: str,
        files: Sequence[Path],
        timeout: float,
        session: SessionInfo | None = None,
    ) -> ProviderOutput:
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.02)
        self.active -= 1
        return ProviderOutput(stdout='{"findings": []}', stderr="", exit_code=0, duration_seconds=0.02)


@pytest.mark.asyncio
async def test_concurrency_is_bounded(tmp_path: Path, make_config) -> None:
    write_files(tmp_path, "src/a.py")
    ids = [f"r{i}" for i in range(5)]
    write_prompts(tmp_path, *ids)
    config = make_config(
        reviewers=[make_reviewer(i, ["src"]) for i in ids],
        scopes={"src": Scope(paths=[Path("src")])},
        concurrency=2,
    )
    runner = SlowRunner()

    report = await Orchestrator(config, lambda kind: runner).run(RunOptions(), RunState())

    assert len(report.results) == 5
    assert all(r.status.kind == StatusKind.COMPLETED for r in report.results)
    assert runner.peak <= 2


@pytest.mark.asyncio
async def test_crashing_unit_becomes_failed(tmp_path: Path, make_config) -> None:
    write_files(tmp_path, "src/a.py")
    write_prompts(tmp_path, "boom")
    config = make_config(
        reviewers=[make_reviewer("boom", ["src"])],
        scopes={"src": Scope(paths=[Path("src")])},
    )

    def broken_factory(kind: ProviderKind) -> ProviderRunner:
        raise RuntimeError("no runner")

    report = await Orchestrator(config, broken_factory).run(RunOptions(), RunState())

    assert report.results[0].status.kind == StatusKind.FAILED
    assert report.results[0].status.detail == "internal error: no runner"


@pytest.mark.asyncio
async def test_missing_prompt_fails_unit(tmp_path: Path, make_config) -> None:
    write_files(tmp_path, "src/a.py")
    config = make_config(
        reviewers=[make_reviewer("sec", ["src"])],
        scopes={"src": Scope(paths=[Path("src")])},
    )
    runner = FakeRunner(scripted(TWO_FINDINGS))

    report = await Orchestrator(config, lambda kind: runner).run(RunOptions(), RunState())

    assert report.results[0].status.kind == StatusKind.FAILED
    assert "Failed to read prompt file" in (report.results[0].status.detail or "")
    assert runner.calls == []


@pytest.mark.asyncio
async def test_filters_that_match_nothing(make_config) -> None:
    config = make_config(
        reviewers=[make_reviewer("sec", ["src"])],
        scopes={"src": Scope(paths=[Path("src")])},
    )
    with pytest.raises(NoUnitsMatchedError):
        await Orchestrator(config).run(RunOptions(reviewer_filter=["perf"]), RunState())


def test_execution_plan_marks_recent_runs(make_config) -> None:
    config = make_config(
        reviewers=[make_reviewer("sec", ["src"]), make_reviewer("perf", ["src"])],
        scopes={"src": Scope(paths=[Path("src")])},
    )
    state = RunState()
    state.record("sec", 1)

    plan = execution_plan(config, RunOptions(), state)

    assert [(r.id, action) for r, action in plan] == [
        ("sec", "skip (already ran today)"),
        ("perf", "run"),
    ]


@pytest.mark.asyncio
async def test_launch_delay_between_units_not_chunks(tmp_path: Path, make_config, monkeypatch) -> None:
    write_files(tmp_path, *(f"src/m{i}.py" for i in range(5)))
    write_prompts(tmp_path, "sec", "perf", "style")
    config = make_config(
        reviewers=[
            make_reviewer("sec", ["src"], max_files=2),
            make_reviewer("perf", ["src"]),
            make_reviewer("style", ["src"]),
        ],
        scopes={"src": Scope(paths=[Path("src")])},
        launch_delay_ms=250,
    )
    real_sleep = asyncio.sleep
    delays: list[float] = []

    async def recording_sleep(delay: float, *args, **kwargs) -> None:
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", recording_sleep)
    runner = FakeRunner(lambda prompt, session: '{"findings": []}')

    report = await Orchestrator(config, lambda kind: runner).run(RunOptions(), RunState())

    assert [r.status.kind for r in report.results] == [StatusKind.COMPLETED] * 3
    assert len(runner.calls) == 5
    assert delays == [0.25, 0.25]


@pytest.mark.asyncio
async def test_bad_diff_base_fails_units_without_aborting(tmp_path: Path, make_config) -> None:
    write_files(tmp_path, "src/app.py", "docs/guide.md")
    write_prompts(tmp_path, "sec", "docs")
    config = make_config(
        reviewers=[make_reviewer("sec", ["src"]), make_reviewer("docs", ["docs"])],
        scopes={"src": Scope(paths=[Path("src")]), "docs": Scope(paths=[Path("docs")])},
    )
    runner = FakeRunner(by_reviewer)

    report = await Orchestrator(config, lambda kind: runner).run(
        RunOptions(diff_base="no-such-ref"), RunState()
    )

    assert {r.reviewer_id for r in report.results} == {"sec", "docs"}
    for result in report.results:
        assert result.status.kind == StatusKind.FAILED
        assert "git diff against no-such-ref failed" in result.status.detail
    assert runner.calls == []


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
async def test_diff_base_reviews_only_changed_files(tmp_path: Path, make_config) -> None:
    write_files(tmp_path, "src/app.py", "src/db.py", "docs/guide.md")
    write_prompts(tmp_path, "sec", "docs")
    for args in (["init", "-q"], ["add", "."], ["commit", "-q", "-m", "initial"]):
        subprocess.run(
            ["git", "-c", "user.email=ci@example.com", "-c", "user.name=ci", *args],
            cwd=tmp_path,
            check=True,
            capture_output=True,
        )
    (tmp_path / "src" / "db.py").write_text("query = 'SELECT ' + name\n")
    config = make_config(
        reviewers=[make_reviewer("sec", ["src"]), make_reviewer("docs", ["docs"])],
        scopes={"src": Scope(paths=[Path("src")]), "docs": Scope(paths=[Path("docs")])},
    )
    runner = FakeRunner(by_reviewer)

    report = await Orchestrator(config, lambda kind: runner).run(RunOptions(diff_base="HEAD"), RunState())

    results = {r.reviewer_id: r for r in report.results}
    assert results["sec"].status.kind == StatusKind.COMPLETED
    assert results["sec"].files_scanned == 1
    assert results["docs"].status.kind == StatusKind.SKIPPED
    assert results["docs"].status.detail == "no matching files"
    assert [c[1] for c in runner.calls] == [[Path("src/db.py")]]
