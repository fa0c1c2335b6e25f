"""Review orchestrator - runs reviewers in parallel under a permit pool."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any

from .config import Config, ProviderKind, Reviewer
from .errors import NoUnitsMatchedError, PersistenceError
from .postprocess import PostprocessResult, run_postprocess
from .providers import ProviderRunner, create_runner
from .report import build_summary, write_reviewer_report, write_summary
from .runner import ReviewerResult, ReviewerStatus, RunReport, StatusKind, execute_reviewer
from .state import RunState

logger = logging.getLogger(__name__)

RunnerFactory = Callable[[ProviderKind], ProviderRunner]


@dataclass
class RunOptions:
    reviewer_filter: list[str] | None = None
    scope_filter: list[str] | None = None
    diff_base: str | None = None
    force: bool = False


def select_reviewers(config: Config, options: RunOptions) -> list[Reviewer]:
    """Enabled reviewers that pass the reviewer and scope filters."""
    selected = []
    for reviewer in config.reviewers:
        if not reviewer.enabled:
            continue
        if options.reviewer_filter and reviewer.id not in options.reviewer_filter:
            continue
        if options.scope_filter and not any(s in options.scope_filter for s in reviewer.scopes):
            continue
        selected.append(reviewer)
    return selected


class Orchestrator:
    """Fans reviewers out as asyncio tasks.

    A reviewer holds its permit for its whole chunk sequence, so `concurrency`
    bounds both running reviewers and live provider processes. Launches are
    spaced by `launch_delay_ms`.
    """

    def __init__(self, config: Config, runner_factory: RunnerFactory | None = None):
        self.config = config
        self.runner_factory = runner_factory or partial(create_runner, config)
        self._semaphore = asyncio.Semaphore(config.concurrency)

    def _skipped(self, reviewer: Reviewer, reason: str) -> ReviewerResult:
        return ReviewerResult(
            reviewer_id=reviewer.id,
            reviewer_name=reviewer.name,
            status=ReviewerStatus.skipped(reason),
        )

    async def _run_with_permit(self, reviewer: Reviewer, diff_base: str | None) -> ReviewerResult:
        try:
            runner = self.runner_factory(reviewer.provider)
            return await execute_reviewer(self.config, reviewer, runner, diff_base)
        finally:
            self._semaphore.release()

    def _write_report(self, report_dir: Path | None, result: ReviewerResult) -> None:
        if report_dir is None:
            return
        try:
            write_reviewer_report(report_dir, result)
        except OSError as e:
            logger.warning("Failed to write report for %s: %s", result.reviewer_id, e)

    async def run(
        self,
        options: RunOptions,
        state: RunState,
        report_dir: Path | None = None,
        now: datetime | None = None,
    ) -> RunReport:
        start = time.monotonic()

        candidates = select_reviewers(self.config, options)
        if not candidates:
            raise NoUnitsMatchedError("No reviewers matched the given filters")

        to_run: list[Reviewer] = []
        results: list[ReviewerResult] = []
        for reviewer in candidates:
            if not options.force and state.ran_recently(reviewer.id, now):
                logger.info("Skipping %s - already ran within last 24 hours", reviewer.id)
                results.append(self._skipped(reviewer, "already ran today"))
            else:
                to_run.append(reviewer)

        if not to_run:
            logger.info("All matching reviewers already ran today. Use --force to re-run.")
            return RunReport(results=results, duration_seconds=time.monotonic() - start, report_dir=report_dir)

        logger.info("Running %d reviewers with concurrency %d", len(to_run), self.config.concurrency)

        launch_delay = self.config.launch_delay_ms / 1000
        tasks: list[asyncio.Task[ReviewerResult]] = []
        task_reviewers: dict[asyncio.Task[ReviewerResult], Reviewer] = {}
        for idx, reviewer in enumerate(to_run):
            if idx > 0 and launch_delay > 0:
                await asyncio.sleep(launch_delay)
            await self._semaphore.acquire()
            task = asyncio.create_task(self._run_with_permit(reviewer, options.diff_base))
            tasks.append(task)
            task_reviewers[task] = reviewer

        pending: set[asyncio.Task[ReviewerResult]] = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                reviewer = task_reviewers[task]
                try:
                    result = task.result()
                except Exception as e:
                    logger.warning("Reviewer %s crashed: %s", reviewer.id, e)
                    result = ReviewerResult(
                        reviewer_id=reviewer.id,
                        reviewer_name=reviewer.name,
                        status=ReviewerStatus.failed(f"internal error: {e}"),
                    )
                logger.info(
                    "Completed %s: %s, %d findings (%.1fs)",
                    result.reviewer_id,
                    result.status,
                    len(result.findings),
                    result.duration_seconds,
                )
                self._write_report(report_dir, result)
                results.append(result)

        return RunReport(results=results, duration_seconds=time.monotonic() - start, report_dir=report_dir)


def execution_plan(config: Config, options: RunOptions, state: RunState) -> list[tuple[Reviewer, str]]:
    """What a run would do per reviewer, without calling any provider."""
    plan: list[tuple[Reviewer, str]] = []
    for reviewer in select_reviewers(config, options):
        if not options.force and state.ran_recently(reviewer.id):
            plan.append((reviewer, "skip (already ran today)"))
        else:
            plan.append((reviewer, "run"))
    return plan


@dataclass
class ReviewOutcome:
    report: RunReport
    summary: dict[str, Any]
    postprocess: PostprocessResult | None = None


async def run_review(
    config: Config,
    options: RunOptions,
    report_dir: Path,
    runner_factory: RunnerFactory | None = None,
) -> ReviewOutcome:
    """Full review run: orchestrate, persist state, summarise and postprocess."""
    state = RunState.load_or_empty(config.target)
    orchestrator = Orchestrator(config, runner_factory)
    report = await orchestrator.run(options, state, report_dir)

    for result in report.results:
        if result.status.kind == StatusKind.COMPLETED:
            state.record(result.reviewer_id, len(result.findings))

    try:
        state.save(config.target)
    except PersistenceError as e:
        logger.warning("Failed to save state: %s", e)

    try:
        summary = write_summary(report_dir, report, config.target)
    except OSError as e:
        logger.warning("Failed to write summary: %s", e)
        summary = build_summary(report, config.target)

    postprocessed = None
    if config.postprocess.enabled:
        try:
            postprocessed = await run_postprocess(config, report_dir, runner_factory)
        except Exception as e:
            logger.warning("Postprocess step failed: %s", e)

    return ReviewOutcome(report=report, summary=summary, postprocess=postprocessed)
