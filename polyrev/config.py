"""Configuration for polyrev: environment settings and the polyrev.yaml schema."""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


def _default_claude_binary() -> str:
    """Resolve the default Claude CLI binary.

    Priority:
    1. POLYREV_CLAUDE_CMD environment variable (handled by pydantic)
    2. ~/.claude/local/claude (local installs)
    3. `claude` on PATH
    """
    local_install = Path.home() / ".claude" / "local" / "claude"
    if local_install.exists():
        return str(local_install)
    return "claude"


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    config_path: Path = Path("polyrev.yaml")
    state_dir: str = ".polyrev"
    plans_dir: Path = Path(".agentic") / "plans"

    # Provider CLI commands
    claude_cmd: str = _default_claude_binary()
    codex_cmd: str = "codex"

    # Timeouts (seconds)
    select_timeout: int = 60

    log_level: str = "WARNING"

    model_config = SettingsConfigDict(env_prefix="POLYREV_", env_file=".env", extra="ignore")


settings = Settings()


class ProviderKind(StrEnum):
    """Supported provider CLIs."""

    CLAUDE_CLI = "claude_cli"
    CODEX_CLI = "codex_cli"


class Priority(StrEnum):
    """Finding priority, P0 being the most severe."""

    P0 = "p0"
    P1 = "p1"
    P2 = "p2"

    @classmethod
    def parse(cls, value: str) -> Priority:
        """Map a priority or severity word onto a Priority."""
        normalized = value.strip().lower()
        if normalized in ("p0", "critical", "high"):
            return cls.P0
        if normalized in ("p1", "medium"):
            return cls.P1
        if normalized in ("p2", "low"):
            return cls.P2
        raise ValueError(f"Unknown priority: {value}")


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True)


class ClaudeCliConfig(_Model):
    binary: str = Field(default_factory=lambda: settings.claude_cmd)
    model: str = "sonnet"
    tools: list[str] = Field(default_factory=lambda: ["Read", "Grep", "Glob"])
    permission_mode: str = "acceptEdits"
    scrub_env: list[str] = Field(default_factory=lambda: ["ANTHROPIC_API_KEY"])


class CodexCliConfig(_Model):
    binary: str = Field(default_factory=lambda: settings.codex_cmd)
    model: str = "gpt-4.1"
    scrub_env: list[str] = Field(default_factory=list)


class ProvidersConfig(_Model):
    claude_cli: ClaudeCliConfig = Field(default_factory=ClaudeCliConfig)
    codex_cli: CodexCliConfig = Field(default_factory=CodexCliConfig)


class RetryConfig(_Model):
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_ms: int = Field(default=1000, ge=0)


class Scope(_Model):
    """A named file set: root paths filtered by include/exclude globs."""

    paths: list[Path]
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


class Reviewer(_Model):
    id: str
    name: str
    enabled: bool = True
    provider: ProviderKind
    scopes: list[str]
    prompt_file: Path
    priority_default: Priority = Priority.P1
    max_files: int | None = Field(default=None, ge=0)
    timeout_sec: int | None = Field(default=None, gt=0)

    @field_validator("priority_default", mode="before")
    @classmethod
    def parse_priority(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Priority.parse(value)
        return value


class Perspective(_Model):
    """A planning viewpoint, run as one provider call per plan."""

    id: str
    name: str
    focus: str = ""
    prompt_file: Path | None = None
    enabled: bool = True


def default_perspectives() -> list[Perspective]:
    return [
        Perspective(
            id="architecture",
            name="Architecture",
            focus="system design, module boundaries, data flow, patterns",
            prompt_file=Path("prompts/plan/architecture.md"),
        ),
        Perspective(
            id="testing",
            name="Testing",
            focus="test strategy, edge cases, fixtures, coverage",
            prompt_file=Path("prompts/plan/testing.md"),
        ),
        Perspective(
            id="security",
            name="Security",
            focus="auth, validation, secrets, attack surface",
            prompt_file=Path("prompts/plan/security.md"),
        ),
        Perspective(
            id="api",
            name="API Design",
            focus="interface design, backwards compat, errors, docs",
            prompt_file=Path("prompts/plan/api.md"),
        ),
        Perspective(
            id="incremental",
            name="Incremental Delivery",
            focus="smallest shippable slices, parallel work, dependencies",
            prompt_file=Path("prompts/plan/incremental.md"),
        ),
        Perspective(
            id="skeptic",
            name="Skeptic",
            focus="challenge assumptions, hidden complexity, scope creep, simpler alternatives",
            prompt_file=Path("prompts/plan/skeptic.md"),
        ),
        Perspective(
            id="generalist",
            name="Generalist",
            focus="overall approach, code organization, conventions, edge cases, documentation",
            prompt_file=Path("prompts/plan/generalist.md"),
        ),
    ]


class PostprocessConfig(_Model):
    enabled: bool = False
    tool: ProviderKind = ProviderKind.CLAUDE_CLI
    prompt_file: Path = Path("prompts/reduce.md")
    timeout_sec: int = Field(default=300, gt=0)
    min_findings: int = Field(default=2, ge=0)


class PlanningConfig(_Model):
    provider: ProviderKind = ProviderKind.CLAUDE_CLI
    perspectives: list[Perspective] = Field(default_factory=default_perspectives)
    reducer_prompt: Path = Path("prompts/plan/reduce.md")
    fallback_perspective: str = "generalist"
    timeout_sec: int = Field(default=300, gt=0)
    revision_attempts: int = Field(default=3, ge=1)


class Config(_Model):
    """Top-level polyrev.yaml schema."""

    version: int = 1
    target: Path = Path(".")
    concurrency: int = Field(default=6, ge=1)
    report_dir: Path = Path("reports")
    diff_base: str | None = None
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    postprocess: PostprocessConfig = Field(default_factory=PostprocessConfig)
    planning: PlanningConfig = Field(default_factory=PlanningConfig)
    timeout_sec: int = Field(default=300, gt=0)
    max_files: int = Field(default=50, ge=0)
    launch_delay_ms: int = Field(default=500, ge=0)
    scopes: dict[str, Scope] = Field(default_factory=dict)
    reviewers: list[Reviewer] = Field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> Config:
        """Read and parse a YAML config file."""
        try:
            raw = yaml.safe_load(path.read_text())
        except OSError as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        return cls.from_dict(raw or {}, source=str(path))

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str = "<config>") -> Config:
        if not isinstance(data, dict):
            raise ConfigurationError(f"{source}: expected a mapping at the top level")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"{source}: {e}") from e

    def validate_reviewers(self) -> None:
        """Check reviewer scope references and that at least one reviewer is enabled."""
        for reviewer in self.reviewers:
            for scope_name in reviewer.scopes:
                if scope_name not in self.scopes:
                    raise ConfigurationError(
                        f"Reviewer '{reviewer.id}' references unknown scope '{scope_name}'"
                    )

        if not any(r.enabled for r in self.reviewers):
            raise ConfigurationError("No reviewers are enabled")

    def reviewer_timeout(self, reviewer: Reviewer) -> int:
        return reviewer.timeout_sec or self.timeout_sec

    def reviewer_max_files(self, reviewer: Reviewer) -> int:
        if reviewer.max_files is not None:
            return reviewer.max_files
        return self.max_files

    def resolve_path(self, path: Path) -> Path:
        """Resolve a config-relative path against the review target."""
        if path.is_absolute():
            return path
        return self.target / path


def load_config(path: Path | None = None) -> Config:
    """Load polyrev.yaml, falling back to defaults when the file is absent."""
    config_path = path or settings.config_path
    if not config_path.exists():
        return Config()
    return Config.load(config_path)
