"""Shared test fixtures and configuration for pytest."""

from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from polyrev.config import Config, ProviderKind, Reviewer, RetryConfig, Scope
from polyrev.providers import ProviderOutput, ProviderRunner, SessionInfo

Respond = Callable[[str, SessionInfo | None], str]


class FakeRunner(ProviderRunner):
    """In-process provider whose reply is computed from the prompt."""

    name = "fake"

    def __init__(self, respond: Respond, session_id: str | None = None, mints: bool = False):
        super().__init__(binary="fake", model="fake", working_dir=Path("."))
        self.respond = respond
        self.session_id = session_id
        self.mints_session_id = mints
        self.calls: list[tuple[str, list[Path], SessionInfo | None]] = []

    async def execute(
        self,
        prompt: str,
        files: Sequence[Path],
        timeout: float,
        session: SessionInfo | None = None,
    ) -> ProviderOutput:
        self.calls.append((prompt, list(files), session))
        stdout = self.respond(prompt, session)
        return ProviderOutput(
            stdout=stdout,
            stderr="",
            exit_code=0,
            duration_seconds=0.01,
            session_id=self.session_id,
        )


def scripted(*outcomes: str | Exception) -> Respond:
    """Replies in order; the last outcome repeats once the script runs out."""
    remaining = list(outcomes)

    def respond(prompt: str, session: SessionInfo | None) -> str:
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return respond


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_attempts=2, backoff_base_ms=0)


@pytest.fixture
def make_config(tmp_path: Path, fast_retry: RetryConfig) -> Callable[..., Config]:
    """Build a Config rooted at tmp_path with no launch delay and instant retries."""

    def _make(
        reviewers: list[Reviewer] | None = None,
        scopes: dict[str, Scope] | None = None,
        **overrides: object,
    ) -> Config:
        data: dict[str, object] = {
            "target": tmp_path,
            "launch_delay_ms": 0,
            "retry": fast_retry,
            "scopes": scopes or {},
            "reviewers": reviewers or [],
        }
        data.update(overrides)
        return Config.model_validate(data)

    return _make


def make_reviewer(reviewer_id: str, scopes: list[str], **overrides: object) -> Reviewer:
    data: dict[str, object] = {
        "id": reviewer_id,
        "name": reviewer_id.title(),
        "provider": ProviderKind.CLAUDE_CLI,
        "scopes": scopes,
        "prompt_file": Path(f"prompts/{reviewer_id}.md"),
    }
    data.update(overrides)
    return Reviewer.model_validate(data)


def write_files(root: Path, *names: str) -> None:
    for name in names:
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"# {name}\n")
