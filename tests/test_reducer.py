import json
from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

from polyrev.errors import NoFragmentsToReduceError, ParseError
from polyrev.planner.reducer import (
    assign_task_ids,
    build_revision_prompt,
    parse_revision_yaml,
    plan_output_dir,
    reduce_plan,
    revise_plan,
    sanitize_plan_name,
    write_fragments,
    write_plan,
)
from polyrev.planner.types import (
    PerspectiveResult,
    PerspectiveStatus,
    PlanFragment,
    PlanningResult,
    TaskFiles,
    TaskPriority,
    UnifiedPlan,
    UnifiedQuestion,
    UnifiedTask,
)

from conftest import FakeRunner, scripted


def completed(perspective_id: str, *titles: str) -> PerspectiveResult:
    return PerspectiveResult(
        perspective_id=perspective_id,
        perspective_name=perspective_id.title(),
        status=PerspectiveStatus.COMPLETED,
        fragment=PlanFragment.model_validate(
            {"perspective": perspective_id, "tasks": [{"title": t} for t in titles]}
        ),
    )


def failed(perspective_id: str) -> PerspectiveResult:
    return PerspectiveResult(
        perspective_id=perspective_id,
        perspective_name=perspective_id.title(),
        status=PerspectiveStatus.FAILED,
        error="boom",
    )


ORIGINAL = UnifiedPlan(
    tasks=[
        UnifiedTask(
            id="impl-001",
            title="Add auth middleware",
            description="Check tokens.",
            files=TaskFiles(target=["api/auth.py"], context=["api/app.py"]),
            perspectives=["security"],
            workflow="tdd",
            priority=TaskPriority.HIGH,
        ),
        UnifiedTask(id="impl-002", title="Document auth", depends_on=["impl-001"]),
    ],
    questions=[UnifiedQuestion(question="JWT or opaque?", answer="JWT")],
    summary="Original summary.",
)


def test_assign_ids_and_resolve_title_dependencies() -> None:
    plan = UnifiedPlan(
        tasks=[
            UnifiedTask(title="Schema"),
            UnifiedTask(id="impl-002", title="Endpoints", depends_on=["Schema"]),
            UnifiedTask(title="Docs", depends_on=["impl-002", "Unknown thing"]),
        ]
    )

    tasks = assign_task_ids(plan).tasks

    assert [t.id for t in tasks] == ["impl-001", "impl-002", "impl-003"]
    assert tasks[1].depends_on == ["impl-001"]
    assert tasks[2].depends_on == ["impl-002", "Unknown thing"]


def test_minted_ids_skip_existing() -> None:
    plan = UnifiedPlan(tasks=[UnifiedTask(title="A"), UnifiedTask(id="impl-001", title="B")])

    tasks = assign_task_ids(plan).tasks

    assert [t.id for t in tasks] == ["impl-002", "impl-001"]


@pytest.mark.asyncio
async def test_reduce_plan_uses_completed_fragments(make_config) -> None:
    planning = PlanningResult(
        results=[completed("security", "Add auth"), failed("testing"), completed("api", "Version API")]
    )
    reply = json.dumps({"tasks": [{"title": "Add auth"}, {"title": "Version API", "depends_on": ["Add auth"]}]})
    runner = FakeRunner(scripted(reply))

    result = await reduce_plan(make_config(), planning, lambda kind: runner)

    assert result.fragment_count == 2
    assert result.task_count_before == 2
    assert result.task_count_after == 2
    assert result.plan.tasks[1].depends_on == ["impl-001"]
    prompt = runner.calls[0][0]
    assert "## Input Fragments" in prompt
    assert '"perspective": "api"' in prompt
    assert '"perspective": "testing"' not in prompt


@pytest.mark.asyncio
async def test_reduce_plan_without_fragments(make_config) -> None:
    with pytest.raises(NoFragmentsToReduceError):
        await reduce_plan(make_config(), PlanningResult(results=[failed("security")]))


def test_revision_prompt_sections() -> None:
    prompt = build_revision_prompt(ORIGINAL, [("JWT or opaque?", "JWT")])

    assert "## Original Tasks" in prompt
    assert "1. Q: JWT or opaque?\n   A: JWT" in prompt
    section = prompt.split("## Original Tasks", 1)[1]
    tasks_yaml = section.split("```yaml\n", 1)[1].split("```", 1)[0]
    assert yaml.safe_load(tasks_yaml)["tasks"][0] == {
        "title": "Add auth middleware",
        "description": "Check tokens.",
        "acceptance_criteria": [],
        "files": ["api/auth.py"],
    }


def test_revision_keeps_ids_for_unchanged_titles() -> None:
    raw = """Here you go:

```yaml
tasks:
  - title: Add auth middleware
    description: Verify JWTs.
    acceptance_criteria:
      - Expired tokens are rejected
    files: [api/auth.py, api/jwt.py]
  - title: Document auth
    depends_on: [Add auth middleware]
  - title: Rotate signing keys
    depends_on: [impl-001]
revision_summary: Switched to JWT.
```
"""

    revised = parse_revision_yaml(raw, ORIGINAL)

    assert [t.id for t in revised.tasks] == ["impl-001", "impl-002", "impl-003"]
    first = revised.tasks[0]
    assert first.files.target == ["api/auth.py", "api/jwt.py"]
    assert first.files.context == ["api/app.py"]
    assert first.perspectives == ["security"]
    assert first.workflow == "tdd"
    assert first.priority == TaskPriority.HIGH
    assert first.acceptance_criteria[0].criterion == "Expired tokens are rejected"
    assert revised.tasks[1].depends_on == ["impl-001"]
    assert revised.tasks[2].priority == TaskPriority.NORMAL
    assert revised.summary == "Switched to JWT."
    assert revised.questions == ORIGINAL.questions


def test_revision_without_summary_keeps_original() -> None:
    revised = parse_revision_yaml("tasks:\n  - title: Add auth middleware\n", ORIGINAL)
    assert revised.summary == "Original summary."


@pytest.mark.parametrize("raw", ["no yaml here: [", "tasks: []", "tasks:\n  - description: untitled\n"])
def test_revision_parse_errors(raw: str) -> None:
    with pytest.raises(ParseError):
        parse_revision_yaml(raw, ORIGINAL)


@pytest.mark.asyncio
async def test_revise_plan_retries_then_succeeds(make_config) -> None:
    config = make_config(planning={"revision_attempts": 3})
    runner = FakeRunner(scripted("garbage", "tasks:\n  - title: Add auth middleware\n"))

    revised = await revise_plan(config, ORIGINAL, [("JWT or opaque?", "JWT")], lambda kind: runner)

    assert len(runner.calls) == 2
    assert [t.id for t in revised.tasks] == ["impl-001"]
    assert len(ORIGINAL.tasks) == 2


@pytest.mark.asyncio
async def test_revise_plan_gives_up(make_config) -> None:
    config = make_config(planning={"revision_attempts": 2})
    runner = FakeRunner(scripted("garbage"))

    with pytest.raises(ParseError):
        await revise_plan(config, ORIGINAL, [("q", "a")], lambda kind: runner)
    assert len(runner.calls) == 2


@pytest.mark.asyncio
async def test_revise_plan_without_answers_is_identity(make_config) -> None:
    assert await revise_plan(make_config(), ORIGINAL, []) is ORIGINAL


@pytest.mark.parametrize(
    ("spec", "expected"),
    [
        ("Add OAuth2 login (Google & GitHub) to the web app\nmore text", "add-oauth2-login-google-github"),
        ("fix: crash on   empty input", "fix-crash-on-empty-input"),
        ("!!!", "plan"),
        ("", "plan"),
    ],
)
def test_sanitize_plan_name(spec: str, expected: str) -> None:
    assert sanitize_plan_name(spec) == expected


def test_plan_output_dir_uses_local_date(tmp_path: Path) -> None:
    now = datetime(2026, 3, 10, 23, 30, tzinfo=UTC)
    plus_two = timezone(timedelta(hours=2))

    assert plan_output_dir("Add login", UTC, now, base=tmp_path) == tmp_path / "2026-03-10-add-login"
    assert plan_output_dir("Add login", plus_two, now, base=tmp_path) == tmp_path / "2026-03-11-add-login"


def test_write_plan_and_fragments(tmp_path: Path) -> None:
    write_plan(tmp_path / "out" / "plan.json", ORIGINAL)
    write_fragments(tmp_path / "out", PlanningResult(results=[completed("security", "A"), failed("api")]))

    saved = UnifiedPlan.model_validate_json((tmp_path / "out" / "plan.json").read_text())
    assert saved.tasks[0].id == "impl-001"
    assert (tmp_path / "out" / "security.fragment.json").exists()
    assert not (tmp_path / "out" / "api.fragment.json").exists()
