"""Rich rendering of change sets, run reports, drift reports and outputs."""

import json
from typing import Any, Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..orchestrator.drift import DriftReport, DriftType
from ..orchestrator.executor import ExecutionReport, ExecutionStatus
from ..orchestrator.planner import ChangeAction, ChangeSet
from ..orchestrator.rollback import RollbackResult
from ..state.models import StateRecord
from ..utils.logging import get_logger

logger = get_logger(__name__)

ACTION_STYLES = {
    ChangeAction.CREATE: ("+", "green"),
    ChangeAction.UPDATE: ("~", "yellow"),
    ChangeAction.REPLACE: ("-/+", "magenta"),
    ChangeAction.DELETE: ("-", "red"),
    ChangeAction.NO_OP: ("=", "dim"),
}

STATUS_STYLES = {
    ExecutionStatus.SUCCESS: "green",
    ExecutionStatus.PARTIAL: "yellow",
    ExecutionStatus.FAILED: "red",
    ExecutionStatus.SKIPPED: "dim",
    ExecutionStatus.CANCELLED: "yellow",
}


def _display(value: Any, limit: int = 60) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str, sort_keys=True)
    if len(text) > limit:
        text = text[:limit - 3] + "..."
    return text


def render_change_set(console: Console, change_set: ChangeSet, show_unchanged: bool = False) -> None:
    """Print the entries of a change set in execution order."""
    entries = change_set.entries if show_unchanged else change_set.actionable()
    if not entries:
        console.print(f"[green]No changes.[/green] Stack [bold]{change_set.stack_name}[/bold] is up to date.")
        return

    table = Table(title=f"Plan: {change_set.stack_name}", show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Action")
    table.add_column("Resource", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Reason")
    table.add_column("After", style="dim")

    for index, entry in enumerate(entries, 1):
        symbol, style = ACTION_STYLES[entry.action]
        label = entry.describe().rsplit(" ", 1)[0]
        table.add_row(
            str(index),
            f"[{style}]{symbol} {label}[/{style}]",
            entry.entry_id,
            entry.kind,
            entry.reason or "",
            ", ".join(entry.prerequisites),
        )
    console.print(table)

    summary = change_set.get_summary()
    console.print(
        f"\n[bold]Plan:[/bold] {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete."
    )


def render_report(
    console: Console,
    report: ExecutionReport,
    rollback_result: Optional[RollbackResult] = None
) -> None:
    """Print the outcome of a run and of its rollback."""
    style = STATUS_STYLES.get(report.status, "white")
    summary = report.get_summary()
    console.print(Panel.fit(
        f"[{style}]Run {report.status.value}[/{style}]\n\n"
        f"Succeeded: {summary['success']}\n"
        f"Failed: {summary['failed']}\n"
        f"Skipped: {summary['skipped']}\n"
        f"Cancelled: {summary['cancelled']}\n"
        f"Duration: {report.duration:.2f}s",
        title=f"Apply: {report.stack_name}",
        border_style=style
    ))

    problems = [
        result for result in report.results.values()
        if result.status in (ExecutionStatus.FAILED, ExecutionStatus.SKIPPED, ExecutionStatus.CANCELLED)
    ]
    if problems:
        console.print("\n[bold]Entries that did not succeed:[/bold]")
        for result in problems:
            result_style = STATUS_STYLES.get(result.status, "white")
            console.print(
                f"  [{result_style}]{result.status.value}[/{result_style}] {result.entry_id}: {result.message or ''}"
            )
            if result.error is not None and result.error.suggestions:
                for suggestion in result.error.suggestions:
                    console.print(f"      [dim]- {suggestion}[/dim]")

    if rollback_result is not None:
        rollback_style = STATUS_STYLES.get(rollback_result.status, "white")
        console.print(
            f"\n[bold]Rollback:[/bold] [{rollback_style}]{rollback_result.status.value}[/{rollback_style}]"
        )
        if rollback_result.report is not None:
            rollback_summary = rollback_result.report.get_summary()
            console.print(
                f"  {rollback_summary['success']} restored, {rollback_summary['failed']} failed, "
                f"{rollback_summary['skipped']} skipped"
            )


def render_drift(console: Console, report: DriftReport) -> None:
    """Print a drift report."""
    if not report.events:
        console.print(
            f"[green]No drift.[/green] {report.total_resources_checked} resource(s) in "
            f"[bold]{report.stack_name}[/bold] match the recorded state."
        )
        return

    table = Table(title=f"Drift: {report.stack_name}", show_header=True, header_style="bold cyan")
    table.add_column("Resource", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Drift")
    table.add_column("Field")
    table.add_column("Expected", style="green")
    table.add_column("Actual", style="red")

    for event in report.events:
        drift_style = "red" if event.drift_type == DriftType.MISSING else "yellow"
        label = f"[{drift_style}]{event.drift_type.value}[/{drift_style}]"
        if not event.differences:
            table.add_row(event.resource_id, event.resource_type, label, "", "", event.message or "")
            continue
        for difference in event.differences:
            table.add_row(
                event.resource_id,
                event.resource_type,
                label,
                difference.path,
                _display(difference.expected),
                _display(difference.actual),
            )

    console.print(table)
    console.print(
        f"\n{len(report.drifted_resources())} of {report.total_resources_checked} resource(s) drifted"
    )


def render_outputs(console: Console, outputs: Dict[str, Any], format: str = "table") -> None:
    """Print stack outputs as a table, JSON or shell exports."""
    if format == "json":
        console.print_json(data=outputs)
        return

    if format == "env":
        for name, value in sorted(outputs.items()):
            env_name = name.upper().replace('-', '_').replace('.', '_')
            console.print(f'export {env_name}="{value}"', highlight=False)
        return

    if not outputs:
        console.print("[dim]No outputs recorded[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Output Name", style="cyan")
    table.add_column("Value", style="white")
    for name, value in sorted(outputs.items()):
        table.add_row(name, _display(value, limit=120))
    console.print(table)


def render_records(console: Console, stack_name: str, records: Dict[str, StateRecord]) -> None:
    """Print the records of a stack."""
    if not records:
        console.print(f"[yellow]No resources recorded for stack:[/yellow] {stack_name}")
        return

    table = Table(title=f"Stack: {stack_name}", show_header=True, header_style="bold cyan")
    table.add_column("Resource ID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Physical ID", style="green")
    table.add_column("Updated", style="dim")

    for logical_id in sorted(records):
        record = records[logical_id]
        table.add_row(
            logical_id,
            record.kind,
            _display(record.physical_id, limit=50),
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
    console.print(f"\n[bold]Total resources:[/bold] {len(records)}")
