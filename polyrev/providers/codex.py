"""Codex CLI provider."""

from __future__ import annotations

import json
import tempfile
from collections.abc import Sequence
from pathlib import Path

from .base import ProviderOutput, ProviderRunner, SessionInfo, format_file_list, run_process, scrubbed_env


def extract_thread_id(jsonl: str) -> str | None:
    """Return the last `thread_id` announced in a Codex JSONL event stream."""
    thread_id = None
    for line in jsonl.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict) and isinstance(event.get("thread_id"), str):
            thread_id = event["thread_id"]
    return thread_id


class CodexRunner(ProviderRunner):
    """Runs `codex exec` with the prompt on stdin.

    A fresh run streams JSON events (the session id arrives as `thread_id`) and
    writes the final message to a file; `codex exec resume` prints the final
    message directly.
    """

    name = "codex_cli"
    mints_session_id = True

    def build_command(self, session: SessionInfo | None, last_message_path: Path | None) -> list[str]:
        if session is not None and session.is_resume:
            cmd = [self.binary, "exec", "resume"]
            if session.session_id:
                cmd.append(session.session_id)
        else:
            cmd = [self.binary, "exec", "--model", self.model, "--json"]
            if last_message_path is not None:
                cmd.extend(["--output-last-message", str(last_message_path)])
        cmd.append("-")
        return cmd

    async def execute(
        self,
        prompt: str,
        files: Sequence[Path],
        timeout: float,
        session: SessionInfo | None = None,
    ) -> ProviderOutput:
        full_prompt = format_file_list(prompt, files)
        env = scrubbed_env(self.scrub_env)

        if session is not None and session.is_resume:
            result = await run_process(
                self.build_command(session, None),
                cwd=self.working_dir,
                env=env,
                timeout=timeout,
                stdin_data=full_prompt,
            )
            return ProviderOutput(
                stdout=result.stdout,
                stderr=result.stderr,
                exit_code=result.returncode,
                duration_seconds=result.duration_seconds,
            )

        with tempfile.TemporaryDirectory(prefix="polyrev-codex-") as tmp:
            last_message_path = Path(tmp) / "last-message.txt"
            result = await run_process(
                self.build_command(session, last_message_path),
                cwd=self.working_dir,
                env=env,
                timeout=timeout,
                stdin_data=full_prompt,
            )
            try:
                final_message = last_message_path.read_text()
            except OSError:
                final_message = ""

        return ProviderOutput(
            stdout=final_message,
            stderr=result.stderr,
            exit_code=result.returncode,
            duration_seconds=result.duration_seconds,
            session_id=extract_thread_id(result.stdout),
        )
