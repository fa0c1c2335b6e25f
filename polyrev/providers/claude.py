"""Claude CLI provider."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from .base import ProviderOutput, ProviderRunner, SessionInfo, format_file_list, run_process, scrubbed_env


class ClaudeRunner(ProviderRunner):
    """Runs `claude -p` with JSON output.

    Sessions are named by the caller: a fresh session is opened with
    `--session-id` and later chunks continue it with `--resume`.
    """

    name = "claude_cli"

    def __init__(
        self,
        binary: str,
        model: str,
        working_dir: Path,
        tools: Sequence[str] = (),
        permission_mode: str = "acceptEdits",
        scrub_env: Sequence[str] = ("ANTHROPIC_API_KEY",),
    ):
        super().__init__(binary, model, working_dir, scrub_env)
        self.tools = list(tools)
        self.permission_mode = permission_mode

    def build_command(self, prompt: str, session: SessionInfo | None = None) -> list[str]:
        cmd = [self.binary]
        if session is not None and session.session_id:
            if session.is_resume:
                cmd.extend(["--resume", session.session_id])
            else:
                cmd.extend(["--session-id", session.session_id])

        cmd.extend(["-p", prompt, "--model", self.model, "--output-format", "json"])
        if self.tools:
            cmd.extend(["--allowedTools", ",".join(self.tools)])
        cmd.extend(["--permission-mode", self.permission_mode])
        return cmd

    async def execute(
        self,
        prompt: str,
        files: Sequence[Path],
        timeout: float,
        session: SessionInfo | None = None,
    ) -> ProviderOutput:
        full_prompt = format_file_list(prompt, files)
        result = await run_process(
            self.build_command(full_prompt, session),
            cwd=self.working_dir,
            env=scrubbed_env(self.scrub_env),
            timeout=timeout,
        )
        return ProviderOutput(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
            duration_seconds=result.duration_seconds,
        )
