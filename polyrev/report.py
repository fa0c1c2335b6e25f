"""Report writers: per-reviewer markdown/JSON and the run summary."""

from __future__ import annotations

import json
from datetime import UTC, datetime, tzinfo
from pathlib import Path
from typing import Any

from .findings import Finding
from .runner import FindingCounts, ReviewerResult, RunReport, StatusKind

_STATUS_LABELS = {
    StatusKind.COMPLETED: "✅ Completed",
    StatusKind.SKIPPED: "⏭️ Skipped",
    StatusKind.TIMED_OUT: "⏱️ Timed Out",
    StatusKind.FAILED: "❌ Failed",
}


def dated_report_dir(base: Path, tz: tzinfo, now: datetime | None = None) -> Path:
    """`base/YYYY-MM-DD` using the local date in `tz`."""
    now = now or datetime.now(UTC)
    return base / now.astimezone(tz).strftime("%Y-%m-%d")


def format_status(result: ReviewerResult) -> str:
    label = _STATUS_LABELS[result.status.kind]
    if result.status.detail:
        return f"{label} ({result.status.detail})"
    return label


def _format_finding(finding: Finding) -> str:
    lines = [f"### [{finding.priority.value}] {finding.title}", ""]
    location = f"{finding.file}:{finding.line}" if finding.line > 0 else finding.file
    lines.append(f"- **File:** `{location}`")
    if finding.finding_type:
        lines.append(f"- **Type:** `{finding.finding_type}`")
    lines.extend(["", finding.description, ""])

    if finding.snippet:
        lines.extend(["**Code:**", "```", finding.snippet, "```", ""])

    lines.extend([f"**Remediation:** {finding.remediation}", ""])

    if finding.acceptance_criteria:
        lines.append("**Acceptance Criteria:**")
        lines.extend(f"- [ ] {c}" for c in finding.acceptance_criteria)
        lines.append("")

    if finding.references:
        lines.append("**References:**")
        lines.extend(f"- {r}" for r in finding.references)
        lines.append("")

    lines.extend(["---", ""])
    return "\n".join(lines)


def findings_to_json(findings: list[Finding]) -> str:
    return json.dumps([f.model_dump(mode="json") for f in findings], indent=2)


def write_reviewer_report(report_dir: Path, result: ReviewerResult) -> Path:
    """Write `{id}.md` and, when there are findings, `{id}.findings.json`."""
    report_dir.mkdir(parents=True, exist_ok=True)
    counts = FindingCounts.of(result.findings)

    parts = [
        f"# {result.reviewer_name}",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Status | {format_status(result)} |",
        f"| Duration | {result.duration_seconds:.1f}s |",
        f"| Files Scanned | {result.files_scanned} |",
        f"| p0 (Critical) | {counts.p0} |",
        f"| p1 (High) | {counts.p1} |",
        f"| p2 (Medium) | {counts.p2} |",
        "",
        "---",
        "",
    ]
    if result.findings:
        parts.extend(["## Findings", ""])
        parts.extend(_format_finding(f) for f in result.findings)
    else:
        parts.append("*No findings*")

    report_path = report_dir / f"{result.reviewer_id}.md"
    report_path.write_text("\n".join(parts) + "\n")

    if result.findings:
        findings_path = report_dir / f"{result.reviewer_id}.findings.json"
        findings_path.write_text(findings_to_json(result.findings))
    return report_path


def build_summary(report: RunReport, target: Path) -> dict[str, Any]:
    reviewers: list[dict[str, Any]] = []
    skipped: list[str] = []
    failed: list[str] = []

    for result in report.results:
        kind = result.status.kind
        if kind == StatusKind.SKIPPED:
            skipped.append(result.reviewer_id)
        elif kind in (StatusKind.FAILED, StatusKind.TIMED_OUT):
            failed.append(result.reviewer_id)

        entry: dict[str, Any] = {
            "id": result.reviewer_id,
            "name": result.reviewer_name,
            "status": kind.value,
            "duration_sec": round(result.duration_seconds, 3),
            "files_scanned": result.files_scanned,
            "findings": FindingCounts.of(result.findings).as_dict(),
        }
        if result.status.detail:
            entry["reason"] = result.status.detail
        reviewers.append(entry)

    totals = report.totals
    return {
        "timestamp": datetime.now(UTC).isoformat(),
        "target": str(target),
        "duration_sec": round(report.duration_seconds, 3),
        "reviewers": reviewers,
        "totals": totals.as_dict(),
        "skipped": skipped,
        "failed": failed,
        "exit_code": 1 if totals.p0 > 0 else 0,
        "report_dir": str(report.report_dir) if report.report_dir else None,
    }


def build_summary_markdown(summary: dict[str, Any]) -> str:
    totals = summary["totals"]
    lines = [
        "# polyrev Summary",
        "",
        f"**Generated:** {summary['timestamp']}",
        f"**Target:** {summary['target']}",
        f"**Report Dir:** {summary['report_dir']}",
        f"**Duration:** {summary['duration_sec']:.1f}s",
        "",
        "## Totals",
        "",
        "| Priority | Count |",
        "|----------|-------|",
        f"| p0 | {totals['p0']} |",
        f"| p1 | {totals['p1']} |",
        f"| p2 | {totals['p2']} |",
        "",
        "## Reviewers",
        "",
        "| Reviewer | Status | Files | p0 | p1 | p2 | Duration |",
        "|----------|--------|-------|----|----|----|----------|",
    ]
    for r in summary["reviewers"]:
        status = r["status"]
        if r.get("reason"):
            status = f"{status} ({r['reason']})"
        f = r["findings"]
        lines.append(
            f"| {r['name']} | {status} | {r['files_scanned']} | {f['p0']} | {f['p1']} | {f['p2']} "
            f"| {r['duration_sec']:.1f}s |"
        )

    if summary["failed"]:
        lines.extend(["", "## Failed", ""])
        lines.extend(f"- {rid}" for rid in summary["failed"])
    if summary["skipped"]:
        lines.extend(["", "## Skipped", ""])
        lines.extend(f"- {rid}" for rid in summary["skipped"])
    return "\n".join(lines) + "\n"


def write_summary(report_dir: Path, report: RunReport, target: Path) -> dict[str, Any]:
    """Write `summary.json` and `summary.md`; returns the summary data."""
    report_dir.mkdir(parents=True, exist_ok=True)
    summary = build_summary(report, target)
    (report_dir / "summary.json").write_text(json.dumps(summary, indent=2))
    (report_dir / "summary.md").write_text(build_summary_markdown(summary))
    return summary
