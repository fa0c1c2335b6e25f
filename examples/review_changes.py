"""
Review Changes Example

Runs every configured reviewer against files changed since a git ref and
prints the findings.

Usage:
    python examples/review_changes.py [polyrev.yaml] [base-ref]
"""

import asyncio
import sys
from datetime import UTC
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from polyrev import RunOptions, load_config, run_review
from polyrev.report import dated_report_dir

console = Console()


async def main() -> None:
    """Main execution function."""
    config_path = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("polyrev.yaml")
    base_ref = sys.argv[2] if len(sys.argv) > 2 else "HEAD~1"

    console.print(
        Panel.fit(
            f"[bold]Review Changes Example[/bold]\nReviewing files changed since {base_ref}",
            border_style="blue",
        )
    )

    config = load_config(config_path)
    config.validate_reviewers()
    report_dir = dated_report_dir(config.resolve_path(config.report_dir), UTC)

    outcome = await run_review(config, RunOptions(diff_base=base_ref, force=True), report_dir)

    table = Table(title="Findings")
    table.add_column("Reviewer", style="cyan")
    table.add_column("Priority", style="magenta")
    table.add_column("Location")
    table.add_column("Title")
    for result in outcome.report.results:
        for finding in result.findings:
            table.add_row(
                result.reviewer_id,
                finding.priority.value,
                f"{finding.file}:{finding.line}",
                finding.title,
            )

    console.print(table)
    console.print(f"\nReports written to [cyan]{report_dir}[/cyan]")


if __name__ == "__main__":
    asyncio.run(main())
