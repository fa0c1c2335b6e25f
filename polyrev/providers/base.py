"""Base provider runner and the subprocess plumbing shared by all providers."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import NonZeroExit, ProviderIOError, ProviderTimeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    """Conversation handle carried across the chunks of one reviewer."""

    session_id: str | None = None
    is_resume: bool = False


@dataclass
class ProviderOutput:
    """Result of one provider process invocation."""

    stdout: str
    stderr: str
    exit_code: int
    duration_seconds: float
    session_id: str | None = None


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float


def format_file_list(prompt: str, files: Sequence[Path]) -> str:
    """Append the files under review to a prompt."""
    if not files:
        return prompt
    file_list = "\n".join(str(f) for f in files)
    return f"{prompt}\n\n## Files to Review\n```\n{file_list}\n```"


def scrubbed_env(names: Sequence[str]) -> dict[str, str]:
    """Copy the current environment without the given variables."""
    env = os.environ.copy()
    for name in names:
        env.pop(name, None)
    return env


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        pass


async def run_process(
    cmd: Sequence[str],
    *,
    cwd: Path,
    env: dict[str, str],
    timeout: float,
    stdin_data: str | None = None,
) -> ProcessResult:
    """Run one external process to completion.

    Raises ProviderTimeout when the wall clock runs out (the process group is
    killed), ProviderIOError when the process cannot be spawned and NonZeroExit
    on a failing exit status.
    """
    start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=True,
        )
    except OSError as e:
        raise ProviderIOError(f"failed to start {cmd[0]}: {e}") from e

    input_bytes = stdin_data.encode() if stdin_data is not None else None
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(input=input_bytes), timeout=timeout
        )
    except TimeoutError:
        _kill_process_group(proc)
        await proc.wait()
        raise ProviderTimeout(time.monotonic() - start) from None
    except asyncio.CancelledError:
        _kill_process_group(proc)
        await proc.wait()
        raise
    except OSError as e:
        _kill_process_group(proc)
        await proc.wait()
        raise ProviderIOError(f"I/O error talking to {cmd[0]}: {e}") from e

    result = ProcessResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout_bytes.decode(errors="replace"),
        stderr=stderr_bytes.decode(errors="replace"),
        duration_seconds=time.monotonic() - start,
    )
    logger.debug("%s exited %d after %.1fs", cmd[0], result.returncode, result.duration_seconds)

    if result.returncode != 0:
        raise NonZeroExit(result.returncode, result.stderr)
    return result


class ProviderRunner:
    """Base class for provider CLIs.

    Subclasses spawn exactly one process per `execute` call and never retry.
    """

    name: str = "provider"
    # Set when the provider assigns its own session id on the first call.
    mints_session_id: bool = False

    def __init__(self, binary: str, model: str, working_dir: Path, scrub_env: Sequence[str] = ()):
        self.binary = binary
        self.model = model
        self.working_dir = working_dir
        self.scrub_env = list(scrub_env)

    async def execute(
        self,
        prompt: str,
        files: Sequence[Path],
        timeout: float,
        session: SessionInfo | None = None,
    ) -> ProviderOutput:
        raise NotImplementedError
