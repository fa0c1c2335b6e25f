"""Plan reducer: merge perspective fragments into one plan, and revise it from human answers."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from functools import partial
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..config import Config, ProviderKind, RetryConfig, settings
from ..errors import NoFragmentsToReduceError, ParseError
from ..extract import extract_yaml_mapping
from ..providers import ProviderRunner, create_runner
from ..retry import retry_with_backoff
from ..templates import embedded_prompt, load_prompt
from .parser import parse_unified_plan
from .types import (
    AcceptanceCriterion,
    PlanningResult,
    TaskFiles,
    TaskPriority,
    UnifiedPlan,
    UnifiedTask,
)

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[ProviderKind], ProviderRunner]

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9 \-]")


@dataclass
class ReductionResult:
    plan: UnifiedPlan
    fragment_count: int
    task_count_before: int
    task_count_after: int


class _IdMinter:
    """Hands out `impl-NNN` ids that never collide with ones already in use."""

    def __init__(self, used: Iterable[str] = ()):
        self.used = set(used)

    def mint(self, n: int) -> str:
        while f"impl-{n:03}" in self.used:
            n += 1
        task_id = f"impl-{n:03}"
        self.used.add(task_id)
        return task_id


def _resolve_dependencies(deps: list[str], ids: set[str], title_to_id: dict[str, str]) -> list[str]:
    # Ids pass through, titles resolve, anything else stays literal.
    return [dep if dep in ids else title_to_id.get(dep, dep) for dep in deps]


def assign_task_ids(plan: UnifiedPlan) -> UnifiedPlan:
    """Give id-less tasks fresh ids and rewrite title dependencies into ids."""
    minter = _IdMinter(t.id for t in plan.tasks if t.id)
    tasks: list[UnifiedTask] = []
    for i, task in enumerate(plan.tasks):
        task_id = task.id or minter.mint(i + 1)
        tasks.append(task.model_copy(update={"id": task_id}))

    ids = {t.id for t in tasks}
    title_to_id = {t.title: t.id for t in tasks}
    resolved = [
        t.model_copy(update={"depends_on": _resolve_dependencies(t.depends_on, ids, title_to_id)})
        for t in tasks
    ]
    return plan.model_copy(update={"tasks": resolved})


async def _invoke(config: Config, prompt: str, runner_factory: RunnerFactory | None) -> str:
    runner = (runner_factory or partial(create_runner, config))(config.planning.provider)
    logger.debug("Invoking reducer with %d byte prompt", len(prompt))
    output = await runner.execute(prompt, [], config.planning.timeout_sec)
    return output.stdout


async def reduce_plan(
    config: Config,
    planning_result: PlanningResult,
    runner_factory: RunnerFactory | None = None,
) -> ReductionResult:
    """Merge every completed fragment into a UnifiedPlan with one provider call."""
    fragments = planning_result.completed_fragments()
    if not fragments:
        raise NoFragmentsToReduceError("No plan fragments to reduce - every perspective failed")

    task_count_before = sum(len(f.tasks) for f in fragments)
    logger.info("Reducing %d fragments with %d total tasks", len(fragments), task_count_before)

    template = load_prompt(config, config.planning.reducer_prompt, embedded="plan/reduce.md")
    fragments_json = json.dumps([f.model_dump(mode="json") for f in fragments], indent=2)
    prompt = f"{template}\n\n## Input Fragments\n\n```json\n{fragments_json}\n```"

    raw = await retry_with_backoff(config.retry, lambda: _invoke(config, prompt, runner_factory))
    plan = assign_task_ids(parse_unified_plan(raw))

    logger.info(
        "Reduction complete: %d fragments -> %d tasks (from %d suggested)",
        len(fragments),
        len(plan.tasks),
        task_count_before,
    )
    return ReductionResult(
        plan=plan,
        fragment_count=len(fragments),
        task_count_before=task_count_before,
        task_count_after=len(plan.tasks),
    )


class _RevisedTask(BaseModel):
    title: str
    description: str = ""
    acceptance_criteria: list[str | AcceptanceCriterion] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)


class _RevisionOutput(BaseModel):
    tasks: list[_RevisedTask]
    revision_summary: str | None = None


def condensed_tasks_yaml(plan: UnifiedPlan) -> str:
    """The task list as the small YAML document handed to the reviser."""
    tasks = [
        {
            "title": t.title,
            "description": " ".join(t.description.split()),
            "acceptance_criteria": [ac.criterion for ac in t.acceptance_criteria],
            "files": t.files.target,
        }
        for t in plan.tasks
    ]
    return yaml.safe_dump({"tasks": tasks}, sort_keys=False, allow_unicode=True)


def build_revision_prompt(plan: UnifiedPlan, answers: list[tuple[str, str]]) -> str:
    template = embedded_prompt("plan/revise.md")
    if template is None:
        raise FileNotFoundError("Prompt template not found: plan/revise.md")

    answers_text = "\n\n".join(
        f"{i}. Q: {question}\n   A: {answer}" for i, (question, answer) in enumerate(answers, start=1)
    )
    return (
        f"{template}\n\n## Original Tasks\n\n```yaml\n{condensed_tasks_yaml(plan)}```\n\n"
        f"## User's Answers\n\n{answers_text}\n\n## Instructions\n\n"
        "Revise ALL tasks to match the user's answers. Output the complete revised task list as YAML."
    )


def _criterion(item: str | AcceptanceCriterion) -> AcceptanceCriterion:
    if isinstance(item, AcceptanceCriterion):
        return item
    return AcceptanceCriterion(criterion=item)


def parse_revision_yaml(raw: str, original: UnifiedPlan) -> UnifiedPlan:
    """Turn the reviser's YAML task list into a full plan.

    Tasks whose title matches an original task keep its id, context files,
    perspectives, workflow and priority. Questions, risks and deferred work
    carry over from the original plan.
    """
    data = extract_yaml_mapping(raw, "tasks")
    if data is None:
        raise ParseError("Could not extract YAML from revision output")

    try:
        revision = _RevisionOutput.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Failed to parse revision YAML: {e}") from e

    if not revision.tasks:
        raise ParseError("Revision produced no tasks")

    by_title = {t.title: t for t in original.tasks}
    minter = _IdMinter(t.id for t in original.tasks)
    matched: set[str] = set()
    assigned: list[tuple[_RevisedTask, str]] = []
    for i, revised in enumerate(revision.tasks):
        source = by_title.get(revised.title)
        if source is not None and source.id not in matched:
            task_id = source.id
            matched.add(task_id)
        else:
            task_id = minter.mint(i + 1)
        assigned.append((revised, task_id))

    ids = {task_id for _, task_id in assigned} | {t.id for t in original.tasks}
    title_to_id = {revised.title: task_id for revised, task_id in assigned}

    tasks: list[UnifiedTask] = []
    for revised, task_id in assigned:
        source = by_title.get(revised.title)
        tasks.append(
            UnifiedTask(
                id=task_id,
                title=revised.title,
                description=revised.description,
                files=TaskFiles(
                    target=revised.files,
                    context=source.files.context if source else [],
                ),
                depends_on=_resolve_dependencies(revised.depends_on, ids, title_to_id),
                acceptance_criteria=[_criterion(c) for c in revised.acceptance_criteria],
                perspectives=source.perspectives if source else [],
                workflow=source.workflow if source else None,
                priority=source.priority if source else TaskPriority.NORMAL,
            )
        )

    return UnifiedPlan(
        tasks=tasks,
        questions=original.questions,
        risks=original.risks,
        deferred=original.deferred,
        summary=revision.revision_summary or original.summary,
    )


async def revise_plan(
    config: Config,
    plan: UnifiedPlan,
    answers: list[tuple[str, str]],
    runner_factory: RunnerFactory | None = None,
) -> UnifiedPlan:
    """Rewrite the task list from (question, answer) pairs.

    The original plan is never modified; on failure the last error is raised
    and the caller still holds it.
    """
    if not answers:
        return plan

    logger.info("Revising plan based on %d answered questions", len(answers))
    prompt = build_revision_prompt(plan, answers)

    async def attempt() -> UnifiedPlan:
        raw = await _invoke(config, prompt, runner_factory)
        return parse_revision_yaml(raw, plan)

    policy = RetryConfig(
        max_attempts=config.planning.revision_attempts,
        backoff_base_ms=config.retry.backoff_base_ms,
    )
    revised = await retry_with_backoff(policy, attempt)
    logger.info("Revision complete: %d tasks (was %d)", len(revised.tasks), len(plan.tasks))
    return revised


def sanitize_plan_name(spec: str) -> str:
    """Short directory-safe slug from the first line of a spec."""
    first_line = spec.strip().splitlines()[0] if spec.strip() else ""
    words = _UNSAFE_NAME_CHARS.sub("", first_line).split()[:5]
    return "-".join(words).lower() or "plan"


def plan_output_dir(
    spec: str, tz: tzinfo, now: datetime | None = None, base: Path | None = None
) -> Path:
    """`.agentic/plans/{date}-{slug}` for a spec, dated in `tz` like report directories."""
    day = (now or datetime.now(UTC)).astimezone(tz).strftime("%Y-%m-%d")
    return (base or settings.plans_dir) / f"{day}-{sanitize_plan_name(spec)}"


def write_plan(output_path: Path, plan: UnifiedPlan) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(plan.model_dump_json(indent=2))
    logger.info("Wrote plan to %s", output_path)


def write_fragments(output_dir: Path, planning_result: PlanningResult) -> None:
    """Write each perspective's fragment as `{id}.fragment.json` for debugging."""
    output_dir.mkdir(parents=True, exist_ok=True)
    for result in planning_result.results:
        if result.fragment is None:
            continue
        path = output_dir / f"{result.perspective_id}.fragment.json"
        path.write_text(result.fragment.model_dump_json(indent=2))
        logger.debug("Wrote fragment to %s", path)
