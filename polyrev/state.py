"""Run state: when each reviewer last ran, used to skip redundant runs."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import settings
from .errors import PersistenceError

logger = logging.getLogger(__name__)

FRESHNESS_WINDOW = timedelta(hours=24)


class ReviewerState(BaseModel):
    last_run: datetime
    findings_count: int = 0

    @field_validator("last_run")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class RunState(BaseModel):
    """Persisted as `{reviewers: {id: {last_run, findings_count}}}`."""

    reviewers: dict[str, ReviewerState] = Field(default_factory=dict)

    @staticmethod
    def path_for(target: Path) -> Path:
        return target / settings.state_dir / "state.json"

    @classmethod
    def load(cls, target: Path) -> RunState:
        """Load state for `target`; a missing file is an empty state."""
        path = cls.path_for(target)
        if not path.exists():
            return cls()
        try:
            return cls.model_validate_json(path.read_text())
        except (OSError, ValidationError, ValueError) as e:
            raise PersistenceError(f"Failed to read state file {path}: {e}") from e

    @classmethod
    def load_or_empty(cls, target: Path) -> RunState:
        """Load run state, logging and starting fresh when the file is unreadable."""
        try:
            return cls.load(target)
        except PersistenceError as e:
            logger.warning("%s; starting with empty state", e)
            return cls()

    def save(self, target: Path) -> None:
        path = self.path_for(target)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self.model_dump(mode="json"), indent=2))
        except OSError as e:
            raise PersistenceError(f"Failed to write state file {path}: {e}") from e

    def ran_recently(self, reviewer_id: str, now: datetime | None = None) -> bool:
        entry = self.reviewers.get(reviewer_id)
        if entry is None:
            return False
        now = now or datetime.now(UTC)
        return now - entry.last_run < FRESHNESS_WINDOW

    def record(self, reviewer_id: str, findings_count: int, now: datetime | None = None) -> None:
        self.reviewers[reviewer_id] = ReviewerState(
            last_run=now or datetime.now(UTC),
            findings_count=findings_count,
        )
