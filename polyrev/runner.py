"""Reviewer runner - executes one reviewer's chunked provider calls and parses its findings."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from .config import Config, Priority, Reviewer
from .discovery import chunk_files, discover_files_for_reviewer
from .errors import DiscoveryError
from .findings import Finding, parse_findings
from .providers import ProviderOutput, ProviderRunner, SessionInfo
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)


class StatusKind(StrEnum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class ReviewerStatus:
    kind: StatusKind
    detail: str | None = None

    @classmethod
    def completed(cls) -> ReviewerStatus:
        return cls(StatusKind.COMPLETED)

    @classmethod
    def skipped(cls, reason: str) -> ReviewerStatus:
        return cls(StatusKind.SKIPPED, reason)

    @classmethod
    def timed_out(cls) -> ReviewerStatus:
        return cls(StatusKind.TIMED_OUT)

    @classmethod
    def failed(cls, error: str) -> ReviewerStatus:
        return cls(StatusKind.FAILED, error)

    def __str__(self) -> str:
        if self.detail:
            return f"{self.kind.value}: {self.detail}"
        return self.kind.value


@dataclass(frozen=True)
class ReviewerResult:
    """Outcome of one reviewer in one run."""

    reviewer_id: str
    reviewer_name: str
    status: ReviewerStatus
    files_scanned: int = 0
    findings: list[Finding] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class FindingCounts:
    p0: int = 0
    p1: int = 0
    p2: int = 0

    @classmethod
    def of(cls, findings: Sequence[Finding]) -> FindingCounts:
        priorities = [f.priority for f in findings]
        return cls(
            p0=priorities.count(Priority.P0),
            p1=priorities.count(Priority.P1),
            p2=priorities.count(Priority.P2),
        )

    def __add__(self, other: FindingCounts) -> FindingCounts:
        return FindingCounts(self.p0 + other.p0, self.p1 + other.p1, self.p2 + other.p2)

    def as_dict(self) -> dict[str, int]:
        return {"p0": self.p0, "p1": self.p1, "p2": self.p2}


@dataclass
class RunReport:
    """Aggregate of one review run, in completion order."""

    results: list[ReviewerResult] = field(default_factory=list)
    duration_seconds: float = 0.0
    report_dir: Path | None = None

    @property
    def totals(self) -> FindingCounts:
        total = FindingCounts()
        for r in self.results:
            total = total + FindingCounts.of(r.findings)
        return total

    def by_status(self, kind: StatusKind) -> list[ReviewerResult]:
        return [r for r in self.results if r.status.kind == kind]


def build_chunk_prompt(base_prompt: str, chunk_idx: int, total_chunks: int, files: Sequence[Path]) -> str:
    """Prompt for one chunk; only the final chunk asks for findings."""
    if total_chunks == 1:
        return base_prompt

    file_list = "\n".join(f"- {f}" for f in files)
    position = f"{chunk_idx + 1}/{total_chunks}"
    if chunk_idx + 1 == total_chunks:
        return (
            f"{base_prompt}\n\n---\n\n"
            f"**[CHUNKED REVIEW: {position} - FINAL CHUNK]**\n\n"
            f"You have now received ALL files across {total_chunks} chunks. "
            "Analyze ALL files from ALL chunks together and output your findings as JSON.\n\n"
            f"Files in this final chunk:\n{file_list}"
        )
    return (
        f"{base_prompt}\n\n---\n\n"
        f"**[CHUNKED REVIEW: {position} - ACCUMULATING]**\n\n"
        f"This review is split into {total_chunks} chunks. Read and index these files. "
        "Do NOT output findings yet - wait for the final chunk.\n\n"
        f"Reply ONLY with: `Chunk {position} received. {len(files)} files indexed.`\n\n"
        f"Files in this chunk:\n{file_list}"
    )


async def execute_reviewer(
    config: Config,
    reviewer: Reviewer,
    runner: ProviderRunner,
    diff_base: str | None = None,
) -> ReviewerResult:
    """Run every chunk of a reviewer in order.

    Never raises for per-reviewer problems: discovery, prompt and provider
    failures all come back as a Failed result.
    """
    start = time.monotonic()

    def result(status: ReviewerStatus, files_scanned: int = 0, findings: list[Finding] | None = None) -> ReviewerResult:
        return ReviewerResult(
            reviewer_id=reviewer.id,
            reviewer_name=reviewer.name,
            status=status,
            files_scanned=files_scanned,
            findings=findings or [],
            duration_seconds=time.monotonic() - start,
        )

    try:
        files = await asyncio.to_thread(discover_files_for_reviewer, config, reviewer, diff_base)
    except DiscoveryError as e:
        return result(ReviewerStatus.failed(str(e)))

    if not files:
        logger.info("Skipping %s - no matching files", reviewer.id)
        return result(ReviewerStatus.skipped("no matching files"))

    logger.info("Reviewer %s found %d files", reviewer.id, len(files))

    prompt_path = config.resolve_path(reviewer.prompt_file)
    try:
        prompt = prompt_path.read_text()
    except OSError as e:
        return result(ReviewerStatus.failed(f"Failed to read prompt file ({prompt_path}): {e}"))

    timeout = config.reviewer_timeout(reviewer)
    chunks = chunk_files(files, config.reviewer_max_files(reviewer))
    total_chunks = len(chunks)
    logger.debug("Reviewer %s split into %d chunks", reviewer.id, total_chunks)

    findings: list[Finding] = []
    chunk_successes = 0
    chunk_failures = 0
    last_error: str | None = None

    session_id: str | None = None
    if total_chunks > 1 and not runner.mints_session_id:
        session_id = str(uuid.uuid4())

    for chunk_idx, chunk in enumerate(chunks):
        chunk_prompt = build_chunk_prompt(prompt, chunk_idx, total_chunks, chunk)
        session = SessionInfo(session_id=session_id, is_resume=chunk_idx > 0) if session_id else None

        async def invoke(
            chunk_prompt: str = chunk_prompt,
            chunk: list[Path] = chunk,
            session: SessionInfo | None = session,
        ) -> ProviderOutput:
            return await runner.execute(chunk_prompt, chunk, timeout, session)

        try:
            output = await retry_with_backoff(config.retry, invoke)
        except Exception as e:
            logger.warning(
                "Reviewer %s chunk %d failed after retries: %s", reviewer.id, chunk_idx + 1, e
            )
            chunk_failures += 1
            last_error = str(e)
            if chunk_idx < total_chunks - 1:
                logger.warning("Reviewer %s aborting remaining chunks due to session failure", reviewer.id)
                break
            continue

        if session_id is None and output.session_id:
            session_id = output.session_id
            logger.debug("Reviewer %s obtained session id %s", reviewer.id, session_id)

        if chunk_idx + 1 == total_chunks:
            findings = parse_findings(output.stdout, reviewer.id, reviewer.priority_default)
        else:
            first_line = output.stdout.strip().splitlines()[0] if output.stdout.strip() else "(no response)"
            logger.debug("Reviewer %s chunk %d acknowledged: %s", reviewer.id, chunk_idx + 1, first_line)
        chunk_successes += 1

    if chunk_successes == 0:
        status = ReviewerStatus.failed(last_error or "all chunks failed")
    elif chunk_failures > 0:
        status = ReviewerStatus.failed(
            f"{chunk_failures} of {chunk_successes + chunk_failures} chunks failed; partial results returned"
        )
    else:
        status = ReviewerStatus.completed()

    return result(status, files_scanned=len(files), findings=findings)
