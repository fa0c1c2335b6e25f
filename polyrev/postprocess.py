"""Postprocess: merge duplicate findings across reviewers with one more provider call."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from .config import Config, ProviderKind
from .errors import ParseError
from .extract import extract_json_payload
from .findings import Finding
from .providers import ProviderRunner, create_runner
from .retry import retry_with_backoff
from .templates import load_prompt

logger = logging.getLogger(__name__)


class SourcedFinding(BaseModel):
    """A finding tagged with the reviewer that reported it and its fingerprint."""

    reviewer_id: str
    fingerprint: str
    finding: Finding

    def to_json(self) -> dict[str, Any]:
        data = self.finding.model_dump(mode="json")
        return {"reviewer_id": self.reviewer_id, "fingerprint": self.fingerprint, **data}


class ReducedFinding(BaseModel):
    merged_from: list[str] = Field(default_factory=list)
    id: str = ""
    finding_type: str = Field(default="", validation_alias=AliasChoices("finding_type", "type"))
    title: str = ""
    priority: str = ""
    file: str = ""
    line: int = 0
    description: str = ""
    remediation: str = Field(default="", validation_alias=AliasChoices("remediation", "recommendation"))
    acceptance_criteria: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=list)

    @classmethod
    def passthrough(cls, sourced: SourcedFinding) -> ReducedFinding:
        f = sourced.finding
        return cls(
            merged_from=[sourced.fingerprint],
            id=f.id,
            finding_type=f.finding_type,
            title=f.title,
            priority=f.priority.value,
            file=f.file,
            line=f.line,
            description=f.description,
            remediation=f.remediation,
            acceptance_criteria=f.acceptance_criteria,
            references=f.references,
        )


class FindingCluster(BaseModel):
    name: str
    fingerprints: list[str] = Field(default_factory=list)
    rationale: str = ""


class _ReducedOutput(BaseModel):
    findings: list[ReducedFinding]
    clusters: list[FindingCluster] = Field(default_factory=list)
    summary: str | None = None


@dataclass
class PostprocessResult:
    original_count: int
    reduced_count: int
    findings: list[ReducedFinding] = field(default_factory=list)
    clusters: list[FindingCluster] = field(default_factory=list)
    summary: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "original_count": self.original_count,
            "reduced_count": self.reduced_count,
            "clusters": [c.model_dump(mode="json") for c in self.clusters],
            "findings": [f.model_dump(mode="json") for f in self.findings],
            "summary": self.summary,
        }


def collect_findings(report_dir: Path) -> list[SourcedFinding]:
    """Read every `*.findings.json` under `report_dir`; unreadable files are skipped."""
    collected: list[SourcedFinding] = []
    if not report_dir.exists():
        return collected

    for path in sorted(report_dir.rglob("*.findings.json")):
        reviewer_id = path.name.removesuffix(".findings.json")
        try:
            raw = json.loads(path.read_text())
            findings = [Finding.model_validate(item) for item in raw]
        except (OSError, ValueError, TypeError, ValidationError) as e:
            logger.warning("Failed to parse %s: %s", path, e)
            continue
        for finding in findings:
            collected.append(
                SourcedFinding(
                    reviewer_id=reviewer_id,
                    fingerprint=finding.fingerprint(reviewer_id),
                    finding=finding,
                )
            )
    logger.debug("Collected %d findings from %s", len(collected), report_dir)
    return collected


def _coerce_findings(items: Any) -> list[ReducedFinding] | None:
    if not isinstance(items, list):
        return None
    try:
        return [ReducedFinding.model_validate(item) for item in items]
    except ValidationError:
        return None


def parse_reduced_output(raw: str) -> _ReducedOutput:
    """Recover reduced findings from provider output.

    Accepts the full `{findings, clusters, summary}` object, a bare findings
    array, or any object with a usable `findings` list.
    """
    data = extract_json_payload(raw, allow_array=True)

    if isinstance(data, dict):
        try:
            return _ReducedOutput.model_validate(data)
        except ValidationError:
            pass

    if isinstance(data, list):
        findings = _coerce_findings(data)
        if findings is not None:
            return _ReducedOutput(findings=findings)

    if isinstance(data, dict):
        findings = _coerce_findings(data.get("findings"))
        if findings is not None:
            clusters: list[FindingCluster] = []
            for item in data.get("clusters") or []:
                try:
                    clusters.append(FindingCluster.model_validate(item))
                except ValidationError:
                    continue
            summary = data.get("summary") if isinstance(data.get("summary"), str) else None
            return _ReducedOutput(findings=findings, clusters=clusters, summary=summary)

    raise ParseError("Could not parse reduced findings from CLI output")


def write_result(report_dir: Path, result: PostprocessResult) -> Path:
    report_dir.mkdir(parents=True, exist_ok=True)
    out_path = report_dir / "reduced.json"
    out_path.write_text(json.dumps(result.to_json(), indent=2))
    logger.info("Wrote reduced findings to %s", out_path)
    return out_path


async def run_postprocess(
    config: Config,
    report_dir: Path,
    runner_factory: Callable[[ProviderKind], ProviderRunner] | None = None,
) -> PostprocessResult:
    """Collect findings under `report_dir` and write `reduced.json`."""
    sourced = collect_findings(report_dir)
    pp = config.postprocess

    if len(sourced) < pp.min_findings:
        logger.info(
            "Only %d findings found, below threshold of %d - skipping reduction",
            len(sourced),
            pp.min_findings,
        )
        result = PostprocessResult(
            original_count=len(sourced),
            reduced_count=len(sourced),
            findings=[ReducedFinding.passthrough(s) for s in sourced],
        )
        write_result(report_dir, result)
        return result

    logger.info("Reducing %d findings using %s", len(sourced), pp.tool)
    prompt = load_prompt(config, pp.prompt_file, embedded="reduce.md")
    findings_json = json.dumps([s.to_json() for s in sourced], indent=2)
    full_prompt = f"{prompt}\n\n## Input Findings\n\n```json\n{findings_json}\n```"

    runner = (runner_factory or partial(create_runner, config))(pp.tool)
    output = await retry_with_backoff(
        config.retry, lambda: runner.execute(full_prompt, [], pp.timeout_sec)
    )
    reduced = parse_reduced_output(output.stdout)

    result = PostprocessResult(
        original_count=len(sourced),
        reduced_count=len(reduced.findings),
        findings=reduced.findings,
        clusters=reduced.clusters,
        summary=reduced.summary,
    )
    logger.info(
        "Reduction complete: %d -> %d findings (%d clusters)",
        result.original_count,
        result.reduced_count,
        len(result.clusters),
    )
    write_result(report_dir, result)
    return result
