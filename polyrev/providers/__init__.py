"""Provider runners for the external AI CLIs."""

from __future__ import annotations

from ..config import Config, ProviderKind
from .base import ProviderOutput, ProviderRunner, SessionInfo
from .claude import ClaudeRunner
from .codex import CodexRunner


def create_runner(config: Config, provider: ProviderKind) -> ProviderRunner:
    """Build the runner for a provider, working inside the configured target."""
    if provider == ProviderKind.CLAUDE_CLI:
        claude = config.providers.claude_cli
        return ClaudeRunner(
            binary=claude.binary,
            model=claude.model,
            working_dir=config.target,
            tools=claude.tools,
            permission_mode=claude.permission_mode,
            scrub_env=claude.scrub_env,
        )
    if provider == ProviderKind.CODEX_CLI:
        codex = config.providers.codex_cli
        return CodexRunner(
            binary=codex.binary,
            model=codex.model,
            working_dir=config.target,
            scrub_env=codex.scrub_env,
        )
    raise ValueError(f"Unknown provider: {provider}")


__all__ = [
    "ClaudeRunner",
    "CodexRunner",
    "ProviderOutput",
    "ProviderRunner",
    "SessionInfo",
    "create_runner",
]
