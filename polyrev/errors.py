"""Error types for the review and planning workflows."""

from __future__ import annotations

import click


class PolyrevError(Exception):
    """Base class for polyrev errors."""


class ConfigurationError(PolyrevError, click.ClickException):
    """Raised when the configuration is missing, malformed or inconsistent."""


class NoUnitsMatchedError(PolyrevError, click.ClickException):
    """Raised when no reviewer or perspective survives the run filters."""


class DiscoveryError(PolyrevError):
    """Raised when a file scope cannot be resolved."""


class ProviderError(PolyrevError):
    """Base class for failures of an external provider process."""


class ProviderTimeout(ProviderError):
    def __init__(self, duration: float) -> None:
        self.duration = duration
        super().__init__(f"provider timed out after {duration:.0f}s")


class NonZeroExit(ProviderError):
    def __init__(self, code: int, stderr: str) -> None:
        self.code = code
        self.stderr = stderr
        detail = stderr.strip()
        if len(detail) > 500:
            detail = detail[:500] + "..."
        super().__init__(f"provider exited with code {code}: {detail}")


class ProviderIOError(ProviderError):
    """Raised when the provider process cannot be spawned or read."""


class ParseError(PolyrevError):
    """Raised when no structured data can be recovered from provider output."""


class PersistenceError(PolyrevError):
    """Raised when the run state file cannot be read or written."""


class PlannerError(PolyrevError):
    """Raised when a planning step cannot produce a usable result."""


class NoFragmentsToReduceError(PlannerError, click.ClickException):
    """Raised when every perspective failed, leaving nothing to merge."""
