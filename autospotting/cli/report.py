"""Rich rendering of run reports."""

from rich.console import Console
from rich.table import Table

from autospotting.services.models import OutcomeStatus, RunReport


STATUS_STYLES = {
    OutcomeStatus.REPLACED: "green",
    OutcomeStatus.SKIPPED: "yellow",
    OutcomeStatus.FAILED: "red",
}


def render_report(console: Console, report: RunReport) -> None:
    """Print per-group counts, notable outcomes and region errors."""
    title = f"AutoSpotting run {report.run_id}" + (" (dry run)" if report.dry_run else "")
    table = Table(title=title, show_lines=False)
    table.add_column("Region")
    table.add_column("Group")
    table.add_column("Replaced", justify="right", style="green")
    table.add_column("Skipped", justify="right", style="yellow")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Notes")

    for group in report.groups:
        notes = group.skipped_reason or ""
        if group.tags_repaired:
            notes = f"{notes} tags repaired on {group.tags_repaired}".strip()
        table.add_row(
            group.region,
            group.group_name,
            str(group.replaced),
            str(group.skipped),
            str(group.failed),
            notes,
        )

    if report.groups:
        console.print(table)
    else:
        console.print("[dim]No managed autoscaling groups found.[/dim]")

    for group in report.groups:
        for outcome in group.outcomes:
            if outcome.status == OutcomeStatus.REPLACED:
                line = f"{outcome.instance_id} -> {outcome.new_instance_id} ({outcome.instance_type})"
            else:
                line = f"{outcome.instance_id}: {outcome.reason} {outcome.message}".rstrip()
            style = STATUS_STYLES[outcome.status]
            console.print(f"  [{style}]{outcome.status.value:<8}[/{style}] {group.group_name}: {line}", highlight=False)

    for region, error in sorted(report.region_errors.items()):
        console.print(f"❌ [red]{region}: {error}[/red]")

    console.print(
        f"\nTotal: [green]{report.replaced} replaced[/green], "
        f"[yellow]{report.skipped} skipped[/yellow], [red]{report.failed} failed[/red]"
    )
