"""Recover plan fragments, unified plans and perspective selections from provider output."""

from __future__ import annotations

import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import ParseError
from ..extract import extract_json, unwrap_envelope
from .types import (
    Concern,
    DeferredTask,
    FragmentTask,
    PlanFragment,
    Question,
    Risk,
    UnifiedPlan,
    UnifiedQuestion,
    UnifiedTask,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_FRAGMENT_KEYS = {
    "tasks": ("tasks", "proposed_tasks"),
    "concerns": ("concerns", "identified_concerns"),
    "questions": ("questions", "open_questions"),
}
_PLAN_KEYS = {"questions": ("questions", "questions_for_human")}


def _lookup(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _convert_each(model: type[M], items: Any) -> list[M]:
    """Validate each element of `items`, dropping the ones that don't fit."""
    if not isinstance(items, list):
        return []
    converted: list[M] = []
    for item in items:
        try:
            converted.append(model.model_validate(item))
        except ValidationError as e:
            logger.debug("Dropping malformed %s: %s", model.__name__, e)
    return converted


def _as_str(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _payload(raw: str) -> str:
    # An envelope is never itself the payload.
    inner = unwrap_envelope(raw)
    return inner if inner is not None else raw


def _with_synonyms(data: dict[str, Any], synonyms: dict[str, tuple[str, ...]]) -> dict[str, Any]:
    """Copy `data` with each canonical key filled from its first present synonym."""
    normalized = dict(data)
    for key, names in synonyms.items():
        if key not in normalized:
            value = _lookup(data, names)
            if value is not None:
                normalized[key] = value
    return normalized


def _fragment_from(data: Any, perspective_id: str) -> PlanFragment | None:
    if not isinstance(data, dict):
        return None
    data = _with_synonyms(data, _FRAGMENT_KEYS)

    try:
        fragment = PlanFragment.model_validate(data)
    except ValidationError:
        pass
    else:
        if not fragment.perspective:
            fragment.perspective = perspective_id
        return fragment

    # Convert element by element, dropping what does not fit.
    return PlanFragment(
        perspective=_as_str(data.get("perspective"), "") or perspective_id,
        summary=_as_str(data.get("summary"), ""),
        tasks=_convert_each(FragmentTask, data.get("tasks")),
        concerns=_convert_each(Concern, data.get("concerns")),
        questions=_convert_each(Question, data.get("questions")),
    )


def parse_plan_fragment(raw: str, perspective_id: str) -> PlanFragment:
    """Parse one perspective's output into a PlanFragment.

    A fragment that names no perspective takes `perspective_id`.
    """
    data = extract_json(_payload(raw), allow_array=True)
    fragment = _fragment_from(data, perspective_id)
    if fragment is not None:
        return fragment

    logger.debug("Failed to parse plan fragment from: %s...", raw[:200])
    raise ParseError(f"Could not parse plan fragment from perspective {perspective_id} output")


def _plan_from(data: Any) -> UnifiedPlan | None:
    if not isinstance(data, dict):
        return None
    data = _with_synonyms(data, _PLAN_KEYS)

    try:
        return UnifiedPlan.model_validate(data)
    except ValidationError:
        pass

    summary = data.get("summary")
    return UnifiedPlan(
        tasks=_convert_each(UnifiedTask, data.get("tasks")),
        questions=_convert_each(UnifiedQuestion, data.get("questions")),
        risks=_convert_each(Risk, data.get("risks")),
        deferred=_convert_each(DeferredTask, data.get("deferred")),
        summary=summary if isinstance(summary, str) else None,
    )


def parse_unified_plan(raw: str) -> UnifiedPlan:
    """Parse reducer output into a UnifiedPlan."""
    plan = _plan_from(extract_json(_payload(raw), allow_array=True))
    if plan is not None:
        return plan

    logger.debug("Failed to parse unified plan from: %s...", raw[:200])
    raise ParseError("Could not parse unified plan from reducer output")


class Selection(BaseModel):
    selected: list[str]
    reasoning: str = ""


def parse_selection(raw: str) -> Selection:
    """Parse a `{selected: [...], reasoning}` perspective selection."""
    data = extract_json(_payload(raw))
    if data is None:
        raise ParseError("Could not find JSON in selection response")
    try:
        return Selection.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Failed to parse selection JSON: {e}") from e
