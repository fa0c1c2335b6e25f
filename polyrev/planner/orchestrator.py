"""Planning orchestrator - runs perspectives in parallel and selects which ones to run."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

from ..config import Config, Perspective, ProviderKind, settings
from ..errors import NoUnitsMatchedError
from ..providers import ProviderRunner, create_runner
from ..retry import retry_with_backoff
from ..templates import embedded_prompt, load_prompt
from .parser import parse_plan_fragment, parse_selection
from .types import PerspectiveResult, PerspectiveStatus, PlanningResult

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[ProviderKind], ProviderRunner]


@dataclass
class PlanOptions:
    spec: str
    perspective_filter: list[str] | None = None


def build_perspective_prompt(template: str, spec: str, perspective: Perspective) -> str:
    return (
        f"{template}\n\n## Feature/Task to Plan\n\n{spec}\n\n"
        f"## Your Perspective: {perspective.name}\n\nFocus: {perspective.focus}"
    )


async def execute_perspective(
    config: Config,
    perspective: Perspective,
    spec: str,
    runner: ProviderRunner,
) -> PerspectiveResult:
    """Run one perspective; every failure is folded into a Failed result."""
    start = time.monotonic()

    def failed(error: str) -> PerspectiveResult:
        return PerspectiveResult(
            perspective_id=perspective.id,
            perspective_name=perspective.name,
            status=PerspectiveStatus.FAILED,
            error=error,
            duration_seconds=time.monotonic() - start,
        )

    try:
        template = load_prompt(config, perspective.prompt_file, embedded=f"plan/{perspective.id}.md")
    except OSError as e:
        return failed(f"{e} (no embedded default for '{perspective.id}')")

    prompt = build_perspective_prompt(template, spec, perspective)
    timeout = config.planning.timeout_sec

    try:
        output = await retry_with_backoff(config.retry, lambda: runner.execute(prompt, [], timeout))
    except Exception as e:
        logger.warning("Perspective %s failed: %s", perspective.id, e)
        return failed(str(e))

    logger.debug("Perspective %s completed in %.1fs", perspective.id, output.duration_seconds)

    try:
        fragment = parse_plan_fragment(output.stdout, perspective.id)
    except Exception as e:
        return failed(f"Failed to parse output: {e}")

    return PerspectiveResult(
        perspective_id=perspective.id,
        perspective_name=perspective.name,
        status=PerspectiveStatus.COMPLETED,
        fragment=fragment,
        duration_seconds=time.monotonic() - start,
    )


def select_for_run(perspectives: list[Perspective], options: PlanOptions) -> list[Perspective]:
    """Enabled perspectives that pass the id filter."""
    return [
        p
        for p in perspectives
        if p.enabled and (not options.perspective_filter or p.id in options.perspective_filter)
    ]


class PlanOrchestrator:
    """Fans planning perspectives out under the same permit pool and launch pacing as reviews."""

    def __init__(
        self,
        config: Config,
        perspectives: list[Perspective] | None = None,
        runner_factory: RunnerFactory | None = None,
    ):
        self.config = config
        self.perspectives = perspectives if perspectives is not None else config.planning.perspectives
        self.runner_factory = runner_factory or partial(create_runner, config)
        self._semaphore = asyncio.Semaphore(config.concurrency)

    async def _run_with_permit(self, perspective: Perspective, spec: str) -> PerspectiveResult:
        try:
            runner = self.runner_factory(self.config.planning.provider)
            return await execute_perspective(self.config, perspective, spec, runner)
        finally:
            self._semaphore.release()

    async def run(self, options: PlanOptions) -> PlanningResult:
        start = time.monotonic()

        perspectives = select_for_run(self.perspectives, options)
        if not perspectives:
            raise NoUnitsMatchedError("No perspectives matched")

        logger.info(
            "Running %d planning perspectives with concurrency %d",
            len(perspectives),
            self.config.concurrency,
        )

        launch_delay = self.config.launch_delay_ms / 1000
        task_perspectives: dict[asyncio.Task[PerspectiveResult], Perspective] = {}
        for idx, perspective in enumerate(perspectives):
            if idx > 0 and launch_delay > 0:
                await asyncio.sleep(launch_delay)
            await self._semaphore.acquire()
            task = asyncio.create_task(self._run_with_permit(perspective, options.spec))
            task_perspectives[task] = perspective

        results: list[PerspectiveResult] = []
        pending = set(task_perspectives)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                perspective = task_perspectives[task]
                try:
                    result = task.result()
                except Exception as e:
                    logger.warning("Perspective %s crashed: %s", perspective.id, e)
                    result = PerspectiveResult(
                        perspective_id=perspective.id,
                        perspective_name=perspective.name,
                        status=PerspectiveStatus.FAILED,
                        error=f"internal error: {e}",
                    )

                fragment = result.fragment
                logger.info(
                    "Completed %s: %d tasks, %d concerns (%s)",
                    result.perspective_id,
                    len(fragment.tasks) if fragment else 0,
                    len(fragment.concerns) if fragment else 0,
                    result.status,
                )
                results.append(result)

        return PlanningResult(results=results, duration_seconds=time.monotonic() - start)


@dataclass
class SelectionResult:
    selected: list[str]
    reasoning: str = ""


def build_selection_prompt(perspectives: list[Perspective], spec: str, max_count: int) -> str:
    template = embedded_prompt("plan/select.md")
    if template is None:
        raise FileNotFoundError("Prompt template not found: plan/select.md")

    listing = "\n".join(
        f"- **{p.name}** (id: `{p.id}`): {p.focus}" for p in perspectives if p.enabled
    )
    return (
        template.replace("{{PERSPECTIVES}}", listing)
        .replace("{{SPEC}}", spec)
        .replace("{{MAX_COUNT}}", str(max_count))
    )


async def select_perspectives(
    config: Config,
    perspectives: list[Perspective],
    spec: str,
    max_count: int,
    runner_factory: RunnerFactory | None = None,
) -> SelectionResult:
    """Ask the provider which perspectives suit `spec`, keeping at most `max_count` known ids."""
    logger.info("Auto-selecting up to %d perspectives for task", max_count)

    prompt = build_selection_prompt(perspectives, spec, max_count)
    runner = (runner_factory or partial(create_runner, config))(config.planning.provider)
    output = await retry_with_backoff(
        config.retry, lambda: runner.execute(prompt, [], settings.select_timeout)
    )
    selection = parse_selection(output.stdout)

    known = {p.id for p in perspectives if p.enabled}
    selected: list[str] = []
    for perspective_id in selection.selected:
        if perspective_id not in known:
            logger.warning("Ignoring unknown perspective '%s' from selection", perspective_id)
            continue
        if perspective_id not in selected:
            selected.append(perspective_id)

    result = SelectionResult(selected=selected[:max_count], reasoning=selection.reasoning)
    logger.info("Selected %d perspectives: %s", len(result.selected), result.selected)
    logger.debug("Selection reasoning: %s", result.reasoning)
    return result


def apply_selection_policy(selected: list[str], fallback: str) -> list[str]:
    """Always include the fallback perspective alongside the model's picks."""
    if fallback in selected:
        return list(selected)
    return [*selected, fallback]
