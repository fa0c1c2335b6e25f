"""Review findings and the tolerant parser that recovers them from provider output."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import Priority
from .extract import extract_json, unwrap_envelope

logger = logging.getLogger(__name__)

_TABLE_ROW_RE = re.compile(
    r"^\|\s*([^|]+)\s*\|\s*(\d+)\s*\|\s*(p[012]|high|medium|low|critical)\s*\|"
    r"\s*([^|]+)\s*\|\s*([^|]+)\s*\|\s*([^|]+)\s*\|",
    re.MULTILINE | re.IGNORECASE,
)


class Finding(BaseModel):
    """One issue reported by a reviewer."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    finding_type: str = Field(default="", validation_alias=AliasChoices("finding_type", "type"))
    title: str
    priority: Priority = Priority.P1
    file: str
    line: int = 0  # 0 means no specific line
    snippet: str | None = None
    description: str
    remediation: str = Field(default="", validation_alias=AliasChoices("remediation", "recommendation"))
    acceptance_criteria: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)

    @field_validator("priority", mode="before")
    @classmethod
    def parse_priority(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Priority.parse(value)
        return value

    @field_validator("line", mode="before")
    @classmethod
    def null_line(cls, value: Any) -> Any:
        return 0 if value is None else value

    def normalized_snippet(self) -> str:
        return " ".join((self.snippet or "").split())

    def fingerprint(self, reviewer_id: str) -> str:
        """Stable identity of this finding as reported by `reviewer_id`."""
        key = f"{reviewer_id}|{self.file}|{self.line}|{self.finding_type}|{self.normalized_snippet()}"
        return hashlib.sha256(key.encode()).hexdigest()[:12]


class _FindingsDocument(BaseModel):
    findings: list[Finding]


def _parse_findings_json(text: str) -> list[Finding] | None:
    data = extract_json(text)
    if data is None:
        return None
    try:
        return _FindingsDocument.model_validate(data).findings
    except ValidationError as e:
        logger.debug("Failed to parse findings JSON: %s", e)
        return None


def parse_findings_json(raw: str) -> list[Finding] | None:
    """Decode `{findings: [...]}` from raw output, looking inside an envelope first."""
    inner = unwrap_envelope(raw)
    if inner is not None:
        findings = _parse_findings_json(inner)
        if findings is not None:
            return findings
    return _parse_findings_json(raw)


def parse_markdown_table(raw: str, reviewer_id: str, default_priority: Priority) -> list[Finding]:
    """Recover findings from a `| file | line | severity | type | issue | recommendation |` table."""
    findings: list[Finding] = []
    for match in _TABLE_ROW_RE.finditer(raw):
        file, line, severity, finding_type, issue, recommendation = (g.strip() for g in match.groups())
        if file.lower() == "file":
            continue
        try:
            priority = Priority.parse(severity)
        except ValueError:
            priority = default_priority

        findings.append(
            Finding(
                id=f"{reviewer_id.upper()}-{len(findings) + 1}",
                finding_type=finding_type,
                title=issue,
                priority=priority,
                file=file,
                line=int(line),
                description=issue,
                remediation=recommendation,
            )
        )
    return findings


def parse_findings(raw: str, reviewer_id: str, default_priority: Priority) -> list[Finding]:
    """Parse provider output into findings.

    JSON (possibly wrapped in an envelope, fenced, or embedded in prose) wins;
    a markdown table is the fallback. Output with neither yields an empty list.
    """
    findings = parse_findings_json(raw)
    if findings is not None:
        return findings

    findings = parse_markdown_table(raw, reviewer_id, default_priority)
    if findings:
        return findings

    logger.warning("Could not parse findings from output for reviewer %s", reviewer_id)
    return []
