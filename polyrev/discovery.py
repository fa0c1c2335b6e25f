"""File discovery: scope resolution, diff filtering and chunking."""

from __future__ import annotations

import os
import re
import subprocess
from collections.abc import Iterable, Sequence
from functools import lru_cache
from pathlib import Path, PurePosixPath

from .config import Config, Reviewer, Scope
from .errors import DiscoveryError


def run_command(cmd: list[str], cwd: Path | None = None, timeout: int = 60) -> tuple[int, str, str]:
    """Run a command and return exit code, stdout, stderr."""
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, "", "Command timed out"
    except FileNotFoundError:
        return -1, "", f"Command not found: {cmd[0]}"


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    """Compile a glob where `**/` matches zero or more directories.

    `*` and `?` also match `/`, so `*.py` matches at any depth.
    """
    parts: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern[i] == "*":
            while i < n and pattern[i] == "*":
                i += 1
            parts.append(".*")
        elif pattern[i] == "?":
            parts.append(".")
            i += 1
        elif pattern[i] == "[" and pattern.find("]", i + 2) != -1:
            end = pattern.find("]", i + 2)
            body = pattern[i + 1 : end].replace("\\", "\\\\")
            if body.startswith("!"):
                body = "^" + body[1:]
            parts.append(f"[{body}]")
            i = end + 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


def matches_any(rel_path: str, patterns: Iterable[str]) -> bool:
    """Glob match with globstar support: `src/**/*.py` also matches `src/main.py`."""
    return any(_glob_regex(pattern).match(rel_path) for pattern in patterns)


def _is_hidden(rel_parts: Sequence[str]) -> bool:
    return any(part.startswith(".") and part not in (".", "..") for part in rel_parts)


def _git_listed_files(target: Path, scope_path: Path) -> list[str] | None:
    """Tracked and untracked-but-not-ignored files under `scope_path`, or None outside git."""
    code, stdout, _ = run_command(
        ["git", "ls-files", "--cached", "--others", "--exclude-standard", "--", str(scope_path)],
        cwd=target,
    )
    if code != 0:
        return None
    return [line for line in stdout.splitlines() if line]


def _walk_files(target: Path, full_path: Path) -> list[str]:
    if full_path.is_file():
        return [full_path.relative_to(target).as_posix()]

    files: list[str] = []
    for root, dirs, names in os.walk(full_path):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for name in names:
            if name.startswith("."):
                continue
            files.append((Path(root) / name).relative_to(target).as_posix())
    return files


def resolve_scope(target: Path, scope: Scope) -> list[Path]:
    """List files of a scope relative to `target`.

    Hidden entries are skipped; inside a git work tree, ignored files are too.
    """
    files: set[str] = set()
    for scope_path in scope.paths:
        full_path = target / scope_path
        if not full_path.exists():
            continue

        listed = _git_listed_files(target, scope_path)
        if listed is None:
            listed = _walk_files(target, full_path)

        for rel in listed:
            rel = PurePosixPath(rel).as_posix()
            if _is_hidden(PurePosixPath(rel).parts):
                continue
            if scope.include and not matches_any(rel, scope.include):
                continue
            if matches_any(rel, scope.exclude):
                continue
            if not (target / rel).is_file():
                continue
            files.add(rel)

    return [Path(f) for f in sorted(files)]


def get_changed_files(target: Path, base: str) -> set[Path]:
    """Files changed relative to `base`, as reported by `git diff --name-only`."""
    code, stdout, stderr = run_command(["git", "diff", "--name-only", base], cwd=target)
    if code != 0:
        raise DiscoveryError(f"git diff against {base} failed: {stderr.strip()}")
    return {Path(line) for line in stdout.splitlines() if line}


def discover_files_for_reviewer(
    config: Config, reviewer: Reviewer, diff_base: str | None = None
) -> list[Path]:
    """Union of the reviewer's scopes, optionally narrowed to files changed since `diff_base`."""
    changed = get_changed_files(config.target, diff_base) if diff_base else None

    all_files: set[Path] = set()
    for scope_name in reviewer.scopes:
        scope = config.scopes.get(scope_name)
        if scope is None:
            raise DiscoveryError(f"Unknown scope '{scope_name}'")
        for file in resolve_scope(config.target, scope):
            if changed is None or file in changed:
                all_files.add(file)

    return sorted(all_files)


def chunk_files(files: Sequence[Path], max_size: int) -> list[list[Path]]:
    """Split files into groups of at most `max_size`; 0 disables chunking."""
    if max_size == 0 or len(files) <= max_size:
        return [list(files)]
    return [list(files[i : i + max_size]) for i in range(0, len(files), max_size)]
