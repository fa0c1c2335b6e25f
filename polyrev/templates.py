"""Prompt templates: project files first, packaged defaults second."""

from __future__ import annotations

from importlib import resources
from pathlib import Path

from .config import Config


def embedded_prompt(name: str) -> str | None:
    """Read a prompt shipped with the package, e.g. `plan/skeptic.md`."""
    resource = resources.files("polyrev").joinpath("prompts", *name.split("/"))
    if not resource.is_file():
        return None
    return resource.read_text(encoding="utf-8")


def load_prompt(config: Config, path: Path | None, embedded: str | None = None) -> str:
    """Load a prompt file relative to the target, falling back to a packaged prompt."""
    if path is not None:
        prompt_path = config.resolve_path(path)
        if prompt_path.is_file():
            return prompt_path.read_text()

    if embedded is not None:
        text = embedded_prompt(embedded)
        if text is not None:
            return text

    raise FileNotFoundError(f"Prompt template not found: {path or embedded}")
