#!/usr/bin/env python3
"""
Reconciliation Control CLI - Command Line Interface for the Reconciliation Engine.

Provides commands for running pull and push tasks, inspecting resources and
their schemas, browsing run reports and running the scheduler.
"""

import logging
import time
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..audit import JsonlReportSink
from ..connectors import ConnectorManager, default_registry
from ..engine import ConfigStore, IdentityStore
from ..exceptions import ReconEngineError
from ..jobs import JobManager, PullJobDelegate, PushJobDelegate
from ..models import ReportStatus, RunReport, TaskType
from ..workflows import ActionsRegistry

logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()

STATUS_STYLES = {
    ReportStatus.SUCCESS: "green",
    ReportStatus.FAILURE: "red",
    ReportStatus.IGNORE: "yellow",
}


class ReconController:
    """Wires configuration, store, connectors, delegates and the job manager."""

    def __init__(self, config_path: str):
        """Initialize the controller from a configuration file."""
        self.config_path = Path(config_path)
        self.config_store = ConfigStore(config_path=self.config_path)
        config = self.config_store.config

        self.store = IdentityStore(config.store_path)
        self.connector_manager = ConnectorManager(default_registry())
        self.report_sink = JsonlReportSink(config.report_dir)
        self.actions_registry = ActionsRegistry()

        delegate_args = (self.config_store, self.store, self.connector_manager, self.report_sink,
                         self.actions_registry)
        self.job_manager = JobManager(
            self.config_store,
            {
                TaskType.PULL: PullJobDelegate(*delegate_args),
                TaskType.PUSH: PushJobDelegate(*delegate_args),
            },
        )

    def run_task(self, task_key: str, dry_run: bool = False) -> RunReport:
        return self.job_manager.run_job(task_key, dry_run=dry_run, executor="reconctl")

    def close(self) -> None:
        self.connector_manager.close()


def display_run(run: RunReport) -> None:
    """Display a run report."""
    style = "green" if run.status.value == "SUCCESS" else "yellow" if run.interrupted else "red"
    console.print(Panel(run.text or "(no details at this trace level)",
                        title=f"{run.task_type.value} {run.task_key} on {run.resource}: {run.status.value}",
                        border_style=style))

    if not run.reports:
        return

    table = Table(title="Provisioning Report")
    table.add_column("Status")
    table.add_column("Operation", style="cyan")
    table.add_column("Type")
    table.add_column("Name", style="magenta")
    table.add_column("Uid")
    table.add_column("Key")
    table.add_column("Message")

    for report in run.reports:
        table.add_row(
            f"[{STATUS_STYLES[report.status]}]{report.status.value}[/{STATUS_STYLES[report.status]}]",
            report.operation.value,
            report.any_type or "",
            report.name or "",
            report.uid_value or "",
            report.key or "",
            report.message or "",
        )
    console.print(table)


@click.group()
@click.option('--config', '-c', 'config_path', default='engine.yaml', show_default=True,
              help='Path to the engine configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, config_path, verbose):
    """Reconciliation Engine Control CLI - identity pull and push reconciliation"""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ctx.ensure_object(dict)
    try:
        ctx.obj['controller'] = ReconController(config_path)
    except ReconEngineError as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        ctx.exit(1)
    ctx.call_on_close(ctx.obj['controller'].close)


def _run(ctx, task_key: str, dry_run: bool) -> None:
    controller = ctx.obj['controller']
    if dry_run:
        console.print("[blue]Dry run: no modifications will be made[/blue]")
    try:
        run = controller.run_task(task_key, dry_run=dry_run)
    except ReconEngineError as e:
        console.print(f"[red]✗ Task {task_key} failed: {e}[/red]")
        ctx.exit(1)
    display_run(run)
    if run.status.value == "FAILURE":
        ctx.exit(2)


@cli.command()
@click.argument('task_key')
@click.option('--dry-run', is_flag=True, help='Preview without modifying the identity store')
@click.pass_context
def pull(ctx, task_key, dry_run):
    """Run a pull task."""
    _run(ctx, task_key, dry_run)


@cli.command()
@click.argument('task_key')
@click.option('--dry-run', is_flag=True, help='Preview without modifying external resources')
@click.pass_context
def push(ctx, task_key, dry_run):
    """Run a push task."""
    _run(ctx, task_key, dry_run)


@cli.command()
@click.pass_context
def resources(ctx):
    """List configured resources."""
    controller = ctx.obj['controller']

    table = Table(title="Resources")
    table.add_column("Key", style="cyan")
    table.add_column("Connector")
    table.add_column("Provisions", style="magenta")
    table.add_column("Conflict Resolution")
    table.add_column("Trace Level")
    table.add_column("Pool (max/idle)")

    for resource in controller.config_store.list_resources():
        provisions = ", ".join(f"{p.any_type}->{p.object_class}" for p in resource.provisions)
        table.add_row(resource.key, resource.connector, provisions,
                      resource.conflict_resolution_action.value, resource.trace_level.value,
                      f"{resource.pool.max_objects}/{resource.pool.max_idle}")
    console.print(table)


@cli.command()
@click.pass_context
def tasks(ctx):
    """List configured pull and push tasks."""
    controller = ctx.obj['controller']

    table = Table(title="Tasks")
    table.add_column("Key", style="cyan")
    table.add_column("Type")
    table.add_column("Resource", style="magenta")
    table.add_column("Schedule")
    table.add_column("Rules (matching/unmatching)")

    for task in controller.config_store.list_tasks():
        schedule = task.cron_expression or (task.start_at.isoformat() if task.start_at else "on demand")
        table.add_row(task.key, task.type, task.resource, schedule,
                      f"{task.matching_rule.value}/{task.unmatching_rule.value}")
    console.print(table)


@cli.command('test-resource')
@click.argument('resource_key')
@click.pass_context
def test_resource(ctx, resource_key):
    """Check connectivity to a resource."""
    controller = ctx.obj['controller']
    try:
        resource = controller.config_store.get_resource(resource_key)
        with controller.connector_manager.checkout(resource) as connector:
            connector.validate()
            connector.test()
    except ReconEngineError as e:
        console.print(f"[red]✗ {resource_key}: {e}[/red]")
        ctx.exit(1)
    console.print(f"[green]✓ {resource_key} is reachable[/green]")


@cli.command()
@click.argument('resource_key')
@click.pass_context
def schema(ctx, resource_key):
    """Show the object classes discovered on a resource."""
    controller = ctx.obj['controller']
    try:
        resource = controller.config_store.get_resource(resource_key)
        with controller.connector_manager.checkout(resource) as connector:
            infos = connector.get_object_class_info()
    except ReconEngineError as e:
        console.print(f"[red]✗ {resource_key}: {e}[/red]")
        ctx.exit(1)

    for info in infos:
        table = Table(title=info.object_class)
        table.add_column("Attribute", style="cyan")
        table.add_column("Type")
        table.add_column("Required")
        table.add_column("Multivalued")
        for attr in info.attributes:
            table.add_row(attr.name, attr.type, "yes" if attr.required else "", "yes" if attr.multivalued else "")
        console.print(table)


@cli.command()
@click.option('--task', 'task_key', help='Only runs of this task')
@click.option('--limit', default=10, show_default=True, help='Maximum number of runs')
@click.pass_context
def reports(ctx, task_key: Optional[str], limit: int):
    """Show recent run reports."""
    controller = ctx.obj['controller']
    runs = controller.report_sink.get_runs(task_key=task_key, limit=limit)
    if not runs:
        console.print("[yellow]No run reports found[/yellow]")
        return

    table = Table(title="Recent Runs")
    table.add_column("Started", style="cyan")
    table.add_column("Task")
    table.add_column("Type")
    table.add_column("Resource", style="magenta")
    table.add_column("Status")
    table.add_column("Dry Run")
    table.add_column("Entries")

    for run in runs:
        table.add_row(run.started_at.strftime("%Y-%m-%d %H:%M:%S"), run.task_key, run.task_type.value,
                      run.resource, run.status.value, "yes" if run.dry_run else "", str(len(run.reports)))
    console.print(table)


@cli.command('validate-config')
@click.pass_context
def validate_config(ctx):
    """Validate the configuration file."""
    controller = ctx.obj['controller']
    config = controller.config_store.config
    console.print(f"[green]✓ {controller.config_path} is valid[/green]")
    console.print(f"Domain: {config.domain}")
    console.print(f"Resources: {len(config.resources)}")
    console.print(f"Pull tasks: {len(config.pull_tasks)}, push tasks: {len(config.push_tasks)}")


@cli.command()
@click.pass_context
def schedule(ctx):
    """Register all tasks and run the scheduler until interrupted."""
    controller = ctx.obj['controller']
    job_keys = controller.job_manager.register_all()
    controller.job_manager.start()
    console.print(f"[green]Scheduler running with {len(job_keys)} job(s)[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")

    try:
        while True:
            time.sleep(60)
            controller.connector_manager.evict_idle()
    except KeyboardInterrupt:
        console.print("[yellow]Scheduler stopped[/yellow]")
    finally:
        controller.job_manager.shutdown(wait=False)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
