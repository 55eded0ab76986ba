"""Main CLI entry point."""

import signal
import sys
import threading
from typing import Dict, Optional, Tuple

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from stackweave.cli.output import (
    render_change_set,
    render_drift,
    render_outputs,
    render_records,
    render_report,
)
from stackweave.config.parser import DEFAULT_CONFIG_FILE, Config, ConfigValidationError
from stackweave.orchestrator.executor import ExecutionReport, ExecutionStatus
from stackweave.orchestrator.orchestrator import StackOrchestrator
from stackweave.orchestrator.planner import ChangeAction, ChangeSet
from stackweave.orchestrator.rollback import RollbackStrategy
from stackweave.state.manager import StateStore
from stackweave.template.loader import load_template
from stackweave.utils.errors import ReconcileError
from stackweave.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_ERROR = 2
EXIT_DRIFT = 3


@click.group()
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.option('--profile', help='AWS profile to use')
@click.option('--region', help='AWS region')
@click.option('--log-level', type=click.Choice(['debug', 'info', 'warning', 'error']), help='Log level')
@click.pass_context
def cli(ctx, config_path, profile, region, log_level):
    """stackweave infrastructure reconciliation engine."""
    ctx.ensure_object(dict)
    config = load_config(config_path)

    overrides = {}
    if profile:
        overrides['profile'] = profile
    if region:
        overrides['region'] = region
    if log_level:
        overrides['log_level'] = log_level
    if overrides:
        config.settings = config.settings.model_copy(update=overrides)

    ctx.obj['config'] = config
    setup_logging(config.settings.log_level, config.settings.log_dir)


def load_config(config_path: str) -> Config:
    """Load and validate configuration file."""
    try:
        return Config(config_path).load()
    except ConfigValidationError as e:
        console.print("[red]Configuration validation failed:[/red]\n")
        console.print(str(e))
        sys.exit(EXIT_ERROR)


def parse_parameters(values: Tuple[str, ...]) -> Dict[str, str]:
    """Parse repeated ``Name=Value`` options."""
    parameters = {}
    for item in values:
        if '=' not in item:
            raise click.BadParameter(f"expected Name=Value, got '{item}'", param_hint='--parameter')
        name, value = item.split('=', 1)
        parameters[name.strip()] = value
    return parameters


def create_orchestrator(config: Config, stack: str) -> StackOrchestrator:
    """Create stack orchestrator with all dependencies."""
    return StackOrchestrator.from_settings(config.settings, stack)


def resolve_template_path(config: Config, stack: str, template: Optional[str]) -> str:
    if template:
        return template
    configured = config.get_stack(stack).template
    if not configured:
        raise click.UsageError(f"No --template given and none configured for stack '{stack}'")
    return configured


def stack_parameters(config: Config, stack: str, values: Tuple[str, ...]) -> Dict[str, str]:
    """Configured stack parameters overlaid by command-line values."""
    parameters = dict(config.get_stack(stack).parameters)
    parameters.update(parse_parameters(values))
    return parameters


def report_error(error: ReconcileError) -> None:
    logger.debug(f"Error details: {error.to_dict()}")
    console.print(error.to_user_message(), style="red", markup=False, highlight=False)


def run_exit_code(report: ExecutionReport) -> int:
    """Exit code for a run: 2 when no change succeeded, 1 when some did."""
    if report.status == ExecutionStatus.FAILED:
        return EXIT_ERROR
    return EXIT_PARTIAL


class RichProgressCallback:
    """Progress callback that displays entry updates using Rich."""

    def __init__(self, progress: Progress, task_id, change_set: ChangeSet):
        self.progress = progress
        self.task_id = task_id
        self.change_set = change_set
        self.completed = 0
        self.progress.update(task_id, total=len(change_set.actionable()))

    def __call__(self, entry_id: str, status: ExecutionStatus, message: Optional[str]) -> None:
        entry = self.change_set.get(entry_id)
        if entry is None or entry.action == ChangeAction.NO_OP:
            return

        if status == ExecutionStatus.IN_PROGRESS:
            self.progress.update(self.task_id, description=f"[cyan]{entry.describe()}[/cyan]")
            return

        self.completed += 1
        symbol = "[green]✓[/green]" if status == ExecutionStatus.SUCCESS else "[red]✗[/red]"
        self.progress.update(
            self.task_id,
            completed=self.completed,
            description=f"{symbol} {entry.describe()}"
        )


class CancelOnInterrupt:
    """Turns Ctrl-C into a cancellation of the running change set."""

    def __init__(self):
        self.event = threading.Event()
        self._previous = None

    def _handler(self, sig, frame):
        if self.event.is_set():
            raise KeyboardInterrupt
        console.print("\n[yellow]Cancelling: waiting for in-flight operations (Ctrl-C again to abort)[/yellow]")
        self.event.set()

    def __enter__(self):
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self._handler)
        return self.event

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._previous is not None:
            signal.signal(signal.SIGINT, self._previous)


def run_change_set(orchestrator: StackOrchestrator, change_set: ChangeSet, rollback_strategy: RollbackStrategy):
    """Apply a change set with a progress display; returns (report, rollback_result)."""
    with CancelOnInterrupt() as cancel_event:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        ) as progress:
            task_id = progress.add_task("[cyan]Starting...", total=None)
            progress_callback = RichProgressCallback(progress, task_id, change_set)
            return orchestrator.apply(
                change_set,
                rollback_strategy=rollback_strategy,
                progress_callback=progress_callback,
                cancel_event=cancel_event
            )


@cli.command()
@click.option('--stack', required=True, help='Stack name')
@click.option('--template', help='Path to template file')
@click.option('--parameter', '-p', 'parameters', multiple=True, help='Parameter value (Name=Value)')
@click.option('--show-unchanged', is_flag=True, help='Also list resources without changes')
@click.pass_context
def plan(ctx, stack, template, parameters, show_unchanged):
    """Show the changes an apply would make."""
    config = ctx.obj['config']
    try:
        orchestrator = create_orchestrator(config, stack)
        loaded = load_template(resolve_template_path(config, stack, template))
        change_set = orchestrator.plan(loaded, stack_parameters(config, stack, parameters))
    except ReconcileError as e:
        report_error(e)
        sys.exit(EXIT_ERROR)

    render_change_set(console, change_set, show_unchanged=show_unchanged)


@cli.command()
@click.option('--stack', required=True, help='Stack name')
@click.option('--template', help='Path to template file')
@click.option('--parameter', '-p', 'parameters', multiple=True, help='Parameter value (Name=Value)')
@click.option('--auto-approve', is_flag=True, help='Skip confirmation prompt')
@click.option('--rollback', type=click.Choice(['none', 'automatic']), help='Rollback strategy on failure')
@click.pass_context
def apply(ctx, stack, template, parameters, auto_approve, rollback):
    """Apply a template to a stack.

    Exits 1 when some changes failed and 2 when none succeeded.
    """
    config = ctx.obj['config']
    rollback_strategy = RollbackStrategy(rollback or config.settings.rollback)
    try:
        orchestrator = create_orchestrator(config, stack)
        loaded = load_template(resolve_template_path(config, stack, template))
        change_set = orchestrator.plan(loaded, stack_parameters(config, stack, parameters))
        render_change_set(console, change_set)

        if change_set.has_changes() and not auto_approve:
            if not click.confirm("\nApply these changes?", default=False):
                console.print("[yellow]Apply cancelled[/yellow]")
                return

        report, rollback_result = run_change_set(orchestrator, change_set, rollback_strategy)
    except ReconcileError as e:
        report_error(e)
        sys.exit(EXIT_ERROR)

    console.print()
    render_report(console, report, rollback_result)
    if not report.is_success():
        sys.exit(run_exit_code(report))


@cli.command()
@click.option('--stack', required=True, help='Stack name')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def destroy(ctx, stack, yes):
    """Delete every resource of a stack."""
    config = ctx.obj['config']
    try:
        orchestrator = create_orchestrator(config, stack)
        change_set = orchestrator.plan_destroy()
        if not change_set.has_changes():
            console.print(f"[yellow]No resources recorded for stack:[/yellow] {stack}")
            return

        render_change_set(console, change_set)
        if not yes and not click.confirm("\nDestroy these resources?", default=False):
            console.print("[yellow]Destruction cancelled[/yellow]")
            return

        report, _ = run_change_set(orchestrator, change_set, RollbackStrategy.NONE)
    except ReconcileError as e:
        report_error(e)
        sys.exit(EXIT_ERROR)

    console.print()
    render_report(console, report)
    if not report.is_success():
        console.print("\n[yellow]Some resources may need manual cleanup[/yellow]")
        sys.exit(run_exit_code(report))


@cli.command()
@click.option('--stack', required=True, help='Stack name')
@click.option('--watch', is_flag=True, help='Keep checking at the configured interval')
@click.option('--interval', type=float, help='Seconds between checks in watch mode')
@click.option('--iterations', type=int, help='Stop watching after this many checks')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table')
@click.option('--fail-on-drift', is_flag=True, help='Exit with status 3 when drift is found')
@click.pass_context
def drift(ctx, stack, watch, interval, iterations, output_format, fail_on_drift):
    """Compare live resources with the recorded state."""
    config = ctx.obj['config']

    def show(report):
        if output_format == 'json':
            console.print_json(report.model_dump_json())
        else:
            render_drift(console, report)

    try:
        orchestrator = create_orchestrator(config, stack)
        if watch:
            stop_event = threading.Event()
            try:
                report = orchestrator.watch_drift(
                    interval or config.settings.drift_interval,
                    stop_event=stop_event,
                    on_report=show,
                    iterations=iterations
                )
            except KeyboardInterrupt:
                stop_event.set()
                console.print("\n[yellow]Stopped watching[/yellow]")
                return
        else:
            report = orchestrator.drift()
            show(report)
    except ReconcileError as e:
        report_error(e)
        sys.exit(EXIT_ERROR)

    if fail_on_drift and report is not None and report.has_drift():
        sys.exit(EXIT_DRIFT)


@cli.command()
@click.option('--stack', required=True, help='Stack name')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json', 'env']), default='table')
@click.option('--name', 'output_name', help='Show a single output value')
@click.pass_context
def outputs(ctx, stack, output_format, output_name):
    """Show stack outputs."""
    config = ctx.obj['config']
    try:
        values = StateStore(config.settings.state_dir, stack).load().outputs
    except ReconcileError as e:
        report_error(e)
        sys.exit(EXIT_ERROR)

    if output_name:
        if output_name not in values:
            console.print(f"[red]Output '{output_name}' not found[/red]")
            sys.exit(EXIT_ERROR)
        click.echo(values[output_name])
        return
    render_outputs(console, values, output_format)


@cli.group()
def state():
    """Inspect recorded stack state."""


@state.command('list')
@click.option('--stack', required=True, help='Stack name')
@click.option('--type', 'resource_type', help='Filter by resource type')
@click.pass_context
def state_list(ctx, stack, resource_type):
    """List recorded resources."""
    config = ctx.obj['config']
    try:
        store = StateStore(config.settings.state_dir, stack)
        store.load()
    except ReconcileError as e:
        report_error(e)
        sys.exit(EXIT_ERROR)

    records = {
        logical_id: record
        for logical_id, record in store.snapshot().items()
        if not resource_type or record.kind == resource_type
    }
    render_records(console, stack, records)

    pending = store.pending_operations()
    if pending:
        console.print(f"\n[yellow]{len(pending)} unfinished operation(s):[/yellow]")
        for entry_id, operation in sorted(pending.items()):
            console.print(f"  {entry_id}: {operation.action} {operation.handle}")


@state.command('show')
@click.argument('resource_id')
@click.option('--stack', required=True, help='Stack name')
@click.pass_context
def state_show(ctx, resource_id, stack):
    """Show the recorded state of one resource."""
    config = ctx.obj['config']
    try:
        store = StateStore(config.settings.state_dir, stack)
        store.load()
    except ReconcileError as e:
        report_error(e)
        sys.exit(EXIT_ERROR)

    record = store.get(resource_id)
    if record is None:
        console.print(f"[red]Resource not found:[/red] {resource_id}")
        sys.exit(EXIT_ERROR)
    console.print_json(record.model_dump_json())


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == '__main__':
    main()
