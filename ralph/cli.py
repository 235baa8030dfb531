"""CLI for Ralph.

Runs implementation plans with a coding agent, inspects their status, and
manages the plan registry and the HTTP server.
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ralph.config import RalphConfig
from ralph.engine import ExecutionEngine
from ralph.errors import PlanError, RalphError, RegistryError
from ralph.events import Event, EventBus
from ralph.lock import PlanLockedError, RunLock
from ralph.models import ExecutionResult, Plan
from ralph.notifications import notify_run_finished
from ralph.plan_parser import load_plan, plan_to_markdown, validate_plan
from ralph.registry import PlanRegistry, derive_plan_id
from ralph.resolver import next_task, topological_sort
from ralph.state import SessionStore
from ralph.status import plan_runtime_status
from ralph.telemetry import create_metrics, setup_telemetry

console = Console()

STATUS_COLORS = {
    "completed": "green",
    "in-progress": "cyan",
    "pending": "white",
    "blocked": "yellow",
    "failed": "red",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False, markup=False)],
        force=True,
    )


def _resolve_target(plan: str | None, directory: str | None) -> tuple[RalphConfig, str | None]:
    """Run config for a plan argument that is a file path or a registered plan id."""
    config = RalphConfig.from_env()
    if directory:
        config = config.with_overrides(project_root=Path(directory).expanduser().resolve())
    if plan is None:
        return config, None

    candidate = config.resolve_path(plan)
    if not candidate.exists():
        try:
            registered = PlanRegistry().get(plan)
        except RegistryError:
            registered = None
        if registered is not None:
            root = directory or registered.project_root
            return (
                config.with_overrides(project_root=root, plan_path=registered.plan_path),
                registered.plan_id,
            )
    return config.with_overrides(plan_path=candidate), None


def _format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@click.group()
@click.version_option(package_name="ralph")
def cli() -> None:
    """Ralph - run implementation plans task by task with a coding agent."""
    pass


@cli.command()
@click.argument("plan", required=False)
@click.option("-d", "--directory", type=click.Path(file_okay=False), help="Project root")
@click.option("-r", "--resume", is_flag=True, help="Resume the plan's latest session")
@click.option("--no-commit", is_flag=True, help="Do not commit after each task")
@click.option("--auto-test", is_flag=True, help="Run the test command after each task")
@click.option("--test-command", default=None, help="Command run by --auto-test")
@click.option(
    "--require-acceptance-criteria",
    is_flag=True,
    help="Fail a task attempt when acceptance criteria are not met",
)
@click.option("--max-retries", type=click.IntRange(min=1), default=None, help="Attempts per task")
@click.option(
    "--max-parallel", type=click.IntRange(min=1), default=None, help="Tasks run concurrently"
)
@click.option("-m", "--model", default=None, help="Agent model (default: the agent's default)")
@click.option("--timeout", type=float, default=None, help="Per-task timeout in seconds")
@click.option("--dry-run", is_flag=True, help="Validate and show the execution order only")
@click.option("--notify/--no-notify", default=False, help="Send macOS notifications")
@click.option("-v", "--verbose", is_flag=True, help="Show agent tool calls and debug logs")
def run(
    plan: str | None,
    directory: str | None,
    resume: bool,
    no_commit: bool,
    auto_test: bool,
    test_command: str | None,
    require_acceptance_criteria: bool,
    max_retries: int | None,
    max_parallel: int | None,
    model: str | None,
    timeout: float | None,
    dry_run: bool,
    notify: bool,
    verbose: bool,
) -> None:
    """Execute every task in PLAN (default: IMPLEMENTATION_PLAN.md).

    PLAN is a path to a plan file or the id of a registered plan.
    """
    _setup_logging(verbose)
    config, plan_id = _resolve_target(plan, directory)
    config = config.with_overrides(
        resume=resume or None,
        auto_commit=False if no_commit else None,
        auto_test=auto_test or None,
        test_command=test_command,
        require_acceptance_criteria=require_acceptance_criteria or None,
        max_retries=max_retries,
        max_parallel_tasks=max_parallel,
        model=model,
        task_timeout_seconds=timeout,
    )

    if dry_run:
        sys.exit(_dry_run(config))

    try:
        with RunLock(config.resolved_state_dir, config.resolved_plan_path):
            result = asyncio.run(_run_plan(config, plan_id, notify, verbose))
    except PlanError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        for error in e.errors:
            console.print(f"  - {error}")
        sys.exit(1)
    except PlanLockedError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)
    sys.exit(0 if result.success else 1)


async def _run_plan(
    config: RalphConfig, plan_id: str | None, notify: bool, verbose: bool
) -> ExecutionResult:
    """Internal async implementation of a plan run."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    bus = EventBus()
    _attach_console(bus, verbose)
    engine = ExecutionEngine(config, bus=bus, tracer=tracer, plan_id=plan_id)
    session = engine.prepare()
    assert engine.plan is not None

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.cancel)
        loop.add_signal_handler(signal.SIGTERM, engine.cancel)
    except NotImplementedError:
        # Windows event loops have no signal handlers; Ctrl-C aborts instead
        pass

    verb = "Resuming" if config.resume else "Starting"
    console.print(f"[bold]{verb} plan:[/bold] {engine.plan.project_name} ({engine.plan_path})")
    console.print(f"Session {session.session_id}, {engine.plan.total_tasks} task(s)")

    result = await engine.run()
    _print_run_summary(result, session.total_cost)
    if notify:
        notify_run_finished(engine.plan.project_name, result)
    return result


def _attach_console(bus: EventBus, verbose: bool) -> None:
    def on_started(event: Event) -> None:
        attempt = event.data.get("attempt", 1)
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        console.print(f"[bold]{event.data['taskId']}[/bold] {event.data.get('title', '')}{suffix}")

    def on_completed(event: Event) -> None:
        commit = event.data.get("commitHash")
        detail = f" commit {commit[:8]}" if commit else ""
        console.print(
            f"Task {event.data['taskId']}: [bold green]COMPLETED[/bold green]"
            f" ({event.data['progress']}%){detail}"
        )

    def on_retrying(event: Event) -> None:
        console.print(
            f"Task {event.data['taskId']}: [yellow]RETRY[/yellow] "
            f"attempt {event.data['attempt']} failed: {event.data['error']}"
        )

    def on_failed(event: Event) -> None:
        console.print(
            f"Task {event.data['taskId']}: [bold red]FAILED[/bold red] {event.data['error']}"
        )

    bus.on("task.started", on_started)
    bus.on("task.completed", on_completed)
    bus.on("task.retrying", on_retrying)
    bus.on("task.failed", on_failed)
    if verbose:
        bus.on("log", lambda event: console.print(f"           {event.data['message']}"))


def _print_run_summary(result: ExecutionResult, total_cost: float) -> None:
    """Print run completion summary."""
    if result.status == "cancelled":
        color, label = "yellow", "CANCELLED"
    elif result.success:
        color, label = "green", "COMPLETED"
    else:
        color, label = "red", "FINISHED WITH FAILURES"

    console.print(f"\n[bold {color}]Run {label}[/bold {color}]")
    done = len(result.completed_tasks) + len(result.skipped_tasks)
    console.print(f"  Tasks: {done}/{result.total_tasks} completed")
    console.print(f"  Duration: {_format_duration(result.duration_seconds)}")
    console.print(f"  Cost: ${total_cost:.2f}")
    if result.failed_tasks:
        console.print(f"  [red]Failed: {', '.join(result.failed_tasks)}[/red]")
    if result.blocked_tasks:
        console.print(f"  [yellow]Blocked: {', '.join(result.blocked_tasks)}[/yellow]")


def _load_valid_plan(config: RalphConfig) -> Plan | None:
    try:
        plan = load_plan(config.resolved_plan_path, config.project_root)
    except PlanError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        return None
    validation = validate_plan(plan)
    for warning in validation.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if not validation.valid:
        console.print("[red]Plan validation failed:[/red]")
        for error in validation.errors:
            console.print(f"  - {error}")
        return None
    return plan


def _dry_run(config: RalphConfig) -> int:
    plan = _load_valid_plan(config)
    if plan is None:
        return 1

    table = Table(title=f"Execution order: {plan.project_name}")
    table.add_column("#", justify="right")
    table.add_column("Task")
    table.add_column("Title")
    table.add_column("Priority")
    table.add_column("Depends on")
    table.add_column("Status")
    for i, task in enumerate(topological_sort(plan.tasks), start=1):
        table.add_row(
            str(i),
            task.id,
            task.title,
            task.priority,
            ", ".join(task.dependencies) or "-",
            task.status,
        )
    console.print(table)

    done = [task.id for task in plan.tasks if task.is_done]
    upcoming = next_task(plan, done)
    if upcoming is None:
        console.print("[green]Nothing to run: every task is already done.[/green]")
    else:
        console.print(f"Next task: [bold]{upcoming.id}[/bold] {upcoming.title}")
    console.print("[dim]Dry run: no agent started.[/dim]")
    return 0


@cli.command(name="list")
@click.argument("plan", required=False)
@click.option("-d", "--directory", type=click.Path(file_okay=False), help="Project root")
@click.option("--markdown", is_flag=True, help="Print the plan in canonical markdown form")
def list_tasks(plan: str | None, directory: str | None, markdown: bool) -> None:
    """List the tasks in PLAN."""
    config, _ = _resolve_target(plan, directory)
    try:
        parsed = load_plan(config.resolved_plan_path, config.project_root)
    except PlanError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)

    if markdown:
        click.echo(plan_to_markdown(parsed), nl=False)
        return

    table = Table(title=parsed.project_name)
    table.add_column("Task")
    table.add_column("Title")
    table.add_column("Priority")
    table.add_column("Depends on")
    table.add_column("Criteria", justify="right")
    table.add_column("Status")
    for task in parsed.tasks:
        met = sum(1 for c in task.acceptance_criteria if c.completed)
        table.add_row(
            task.id,
            task.title,
            task.priority,
            ", ".join(task.dependencies) or "-",
            f"{met}/{len(task.acceptance_criteria)}",
            task.status,
        )
    console.print(table)


@cli.command()
@click.argument("plan", required=False)
@click.option("-d", "--directory", type=click.Path(file_okay=False), help="Project root")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable JSON")
def status(plan: str | None, directory: str | None, as_json: bool) -> None:
    """Show runtime status of PLAN from its latest session."""
    config, _ = _resolve_target(plan, directory)
    try:
        parsed = load_plan(config.resolved_plan_path, config.project_root)
    except PlanError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)

    session = SessionStore(config.resolved_state_dir).load(config.resolved_plan_path)
    runtime = plan_runtime_status(parsed, session, Path(config.project_root).resolve())

    if as_json:
        data = runtime.to_dict()
        data["sessionId"] = session.session_id if session else None
        click.echo(json.dumps(data, indent=2))
        return

    console.print(f"[bold]{parsed.project_name}[/bold]: {runtime.progress}% complete")
    if session is None:
        console.print("[dim]No session found; status from the plan document and git history[/dim]")
    else:
        console.print(
            f"Session {session.session_id}, last activity "
            f"{session.last_activity.strftime('%Y-%m-%d %H:%M')}, cost ${session.total_cost:.2f}"
        )

    table = Table()
    table.add_column("Task")
    table.add_column("Title")
    table.add_column("Status")
    for task in parsed.tasks:
        state = runtime.tasks[task.id]
        color = STATUS_COLORS[state]
        table.add_row(task.id, task.title, f"[{color}]{state}[/{color}]")
    console.print(table)
    console.print(
        f"{runtime.completed} completed, {runtime.in_progress} in progress, "
        f"{runtime.pending} pending, {runtime.blocked} blocked, {runtime.failed} failed"
    )


@cli.command()
@click.option("-p", "--port", type=int, default=None, help="Port (default: 3001)")
@click.option("-h", "--host", default=None, help="Host (default: 127.0.0.1)")
@click.option("--dev", is_flag=True, help="Development mode (error types in responses)")
def server(port: int | None, host: str | None, dev: bool) -> None:
    """Start the HTTP API server."""
    from ralph.api.config import APIConfig
    from ralph.api.main import run_server

    _setup_logging(verbose=False)
    config = APIConfig()
    updates: dict = {"port": port, "host": host, "environment": "development" if dev else None}
    config = config.model_copy(update={k: v for k, v in updates.items() if v is not None})
    run_config = RalphConfig.from_env()
    tracer, meter = setup_telemetry(run_config)
    create_metrics(meter)
    console.print(f"[bold]Ralph API[/bold] on http://{config.host}:{config.port}")
    run_server(config, run_config=run_config)


@cli.command()
@click.argument("plan")
@click.option("-d", "--directory", default=None, help="Project root on the server")
@click.option("--server", "server_url", default=None, help="Server URL (default: $RALPH_SERVER_URL)")
@click.option("--no-commit", is_flag=True, help="Do not commit after each task")
@click.option("--auto-test", is_flag=True, help="Run the test command after each task")
@click.option("--max-retries", type=click.IntRange(min=1), default=None, help="Attempts per task")
@click.option("--max-parallel", type=click.IntRange(min=1), default=None, help="Parallel tasks")
@click.option("--wait/--no-wait", default=True, help="Wait for the run to finish")
def execute(
    plan: str,
    directory: str | None,
    server_url: str | None,
    no_commit: bool,
    auto_test: bool,
    max_retries: int | None,
    max_parallel: int | None,
    wait: bool,
) -> None:
    """Run PLAN on a Ralph server instead of locally."""
    from ralph.client import RalphClient

    async def submit() -> dict:
        async with RalphClient(server_url) as client:
            started = await client.execute(
                plan,
                directory=directory,
                no_commit=no_commit,
                auto_test=auto_test,
                max_retries=max_retries,
                max_parallel=max_parallel,
            )
            console.print(
                f"[bold]Started[/bold] {started['plan']['title']} "
                f"({started['plan']['totalTasks']} tasks), session {started['sessionId']}"
            )
            if not wait:
                return started
            return await client.wait_for_completion(started["sessionId"])

    try:
        outcome = asyncio.run(submit())
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)

    if not wait:
        return
    if outcome["status"] == "failed":
        console.print(f"[red]Run failed:[/red] {outcome.get('error', 'unknown error')}")
        sys.exit(1)
    summary = outcome.get("result") or {}
    console.print(
        f"[green]Run finished:[/green] {len(summary.get('completedTasks', []))} completed, "
        f"{len(summary.get('failedTasks', []))} failed, "
        f"{len(summary.get('blockedTasks', []))} blocked"
    )
    if summary.get("failedTasks") or summary.get("blockedTasks"):
        sys.exit(1)


@cli.command()
@click.argument("plan_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--id", "plan_id", default=None, help="Plan id (default: derived from the path)")
@click.option("-d", "--directory", type=click.Path(file_okay=False), help="Project root")
@click.option("-f", "--force", is_flag=True, help="Overwrite an existing registration")
def register(plan_path: str, plan_id: str | None, directory: str | None, force: bool) -> None:
    """Register PLAN_PATH so it can be run by id."""
    path = Path(plan_path).resolve()
    root = Path(directory).resolve() if directory else Path.cwd()
    plan_id = plan_id or derive_plan_id(path)
    try:
        entry = PlanRegistry().register(plan_id, root, path, overwrite=force)
    except RegistryError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)
    console.print(
        f"[green]Registered[/green] [bold]{entry.plan_id}[/bold]: "
        f"{entry.title} ({entry.total_tasks} tasks)"
    )


@cli.command()
@click.argument("plan_id")
def unregister(plan_id: str) -> None:
    """Remove PLAN_ID from the registry."""
    try:
        PlanRegistry().unregister(plan_id)
    except RegistryError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)
    console.print(f"Unregistered {plan_id}")


@cli.command(name="registry-list")
def registry_list() -> None:
    """List registered plans."""
    plans = PlanRegistry().list()
    if not plans:
        console.print("[yellow]No registered plans[/yellow]")
        return

    table = Table(title="Registered Plans")
    table.add_column("Id")
    table.add_column("Title")
    table.add_column("Tasks", justify="right")
    table.add_column("Project")
    table.add_column("Last accessed")
    for plan in plans:
        table.add_row(
            plan.plan_id,
            plan.title,
            str(plan.total_tasks),
            plan.project_root,
            plan.last_accessed.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command(name="registry-stats")
def registry_stats() -> None:
    """Show registry statistics."""
    stats = PlanRegistry().stats()
    console.print(f"Registry: {stats['registryPath']}")
    console.print(f"  Plans: {stats['totalPlans']}")
    console.print(f"  Projects: {stats['totalProjects']}")
    if stats["oldest"]:
        console.print(f"  Oldest: {stats['oldest']}")
        console.print(f"  Newest: {stats['newest']}")


@cli.command(name="registry-clear")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation")
def registry_clear(yes: bool) -> None:
    """Remove every registered plan."""
    if not yes and not click.confirm("Remove all registered plans?"):
        console.print("Aborted")
        return
    removed = PlanRegistry().clear()
    console.print(f"Removed {removed} plan(s)")


@cli.command()
def mcp() -> None:
    """Serve the task_complete side channel over stdio (started by the agent)."""
    from ralph.side_channel import main as serve_side_channel

    serve_side_channel()


def main() -> None:
    """Main entry point for the ralph CLI."""
    cli()


if __name__ == "__main__":
    main()
