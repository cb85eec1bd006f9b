"""CLI commands for runboard."""

import asyncio
import json
import signal
import sys
import time

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from runboard import __logo__, __version__

app = typer.Typer(
    name="runboard",
    help=f"{__logo__} runboard - run shell commands now or on a cron schedule",
    no_args_is_help=True,
)

console = Console()


def _configure_logging(enabled: bool, level: str = "INFO") -> None:
    from loguru import logger

    if not enabled:
        logger.disable("runboard")
        return
    logger.remove()
    logger.add(sys.stderr, level=level)
    logger.enable("runboard")


def _build_services(logs: bool = False):
    """Create the command manager and cron service from the current config."""
    from runboard.command.manager import CommandManager
    from runboard.command.store import ResultStore
    from runboard.config.loader import load_config
    from runboard.cron.service import CronService

    config = load_config()
    _configure_logging(logs, config.log_level)
    manager = CommandManager(
        ResultStore(config.logdata_path),
        max_results=config.max_results,
        fallback_encoding=config.fallback_encoding,
    )
    manager.load()
    cron = CronService(config.schedules_path, manager)
    return config, manager, cron


def _format_ms(ms: int | None) -> str:
    if not ms:
        return ""
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ms / 1000))


def _format_duration(ms: int | None) -> str:
    if ms is None:
        return ""
    return f"{ms / 1000:.3f}s"


def _status_markup(result) -> str:
    if result.is_running:
        return "[yellow]Running[/yellow]"
    if result.exit_code == 0:
        return "[green]Success[/green]"
    return f"[red]{result.status_text}[/red]"


def _exit_status(result) -> int:
    code = result.exit_code
    if code is None:
        return 1
    return code if 0 <= code <= 255 else 1


async def _stream_run(manager, start, cmd_id: str):
    """Run *start* and echo its output until the run is terminal.

    SIGINT stops the command the way the manual stop button would.
    """
    done = asyncio.Event()
    state: dict = {"run_id": None, "printed": 0, "final": None}

    def _on_result(result) -> None:
        if result.id != cmd_id:
            return
        if state["run_id"] is None:
            state["run_id"] = result.run_id
        if result.run_id != state["run_id"]:
            return
        chunk = result.output[state["printed"]:]
        if chunk:
            console.print(Text(chunk), end="", soft_wrap=True)
            state["printed"] = len(result.output)
        if not result.is_running:
            state["final"] = result
            done.set()

    unsubscribe = manager.subscribe(_on_result)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, manager.kill_command, cmd_id)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        started = await start()
        if started is None:
            return None
        if not started.is_running and state["final"] is None:
            state["final"] = started
            done.set()
        await done.wait()
        await manager.wait(state["final"].run_id)
        return state["final"]
    finally:
        unsubscribe()
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} runboard v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """runboard - run shell commands now or on a cron schedule."""
    pass


# ============================================================================
# Setup
# ============================================================================


@app.command()
def onboard():
    """Write a default configuration file."""
    from runboard.config.loader import get_config_path, load_config, save_config
    from runboard.config.schema import Config

    config_path = get_config_path()
    if config_path.exists():
        config = load_config()
        save_config(config)
        console.print(f"[green]✓[/green] Config refreshed at {config_path}")
    else:
        config = Config()
        save_config(config)
        console.print(f"[green]✓[/green] Created config at {config_path}")

    config.data_path.mkdir(parents=True, exist_ok=True)
    console.print(f"Run records: [cyan]{config.logdata_path}[/cyan]")
    console.print(f"Schedules:   [cyan]{config.schedules_path}[/cyan]")


# ============================================================================
# Commands
# ============================================================================


@app.command()
def run(
    command: str = typer.Argument(..., help="Shell command to execute"),
    timeout: int = typer.Option(None, "--timeout", "-t", help="Kill after N milliseconds"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show runboard runtime logs"),
):
    """Execute a command now and stream its output."""
    from runboard.command.types import ExecutionOptions, command_id

    config, manager, _cron = _build_services(logs)
    options = ExecutionOptions(timeout=timeout or config.default_timeout_ms)

    async def _run():
        return await _stream_run(
            manager,
            lambda: manager.execute_command(command, options),
            command_id(command),
        )

    result = asyncio.run(_run())
    console.print()
    console.print(
        f"{_status_markup(result)} [dim]({result.run_id}, {_format_duration(result.execution_time)})[/dim]"
    )
    raise typer.Exit(_exit_status(result))


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show"),
    schedule_id: str = typer.Option(None, "--schedule", "-s", help="Only runs of this schedule"),
):
    """List recent command runs."""
    _config, manager, _cron = _build_services()

    results = manager.get_command_results()
    if schedule_id:
        results = [r for r in results if r.schedule_id == schedule_id]
    results = results[:limit]

    if not results:
        console.print("No command runs.")
        return

    table = Table(title="Command Runs")
    table.add_column("Run ID", style="cyan")
    table.add_column("Command")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Schedule", style="dim")

    for result in results:
        table.add_row(
            result.run_id,
            result.command,
            _format_ms(result.timestamp),
            _status_markup(result),
            _format_duration(result.execution_time),
            result.schedule_id or "",
        )

    console.print(table)


@app.command()
def show(
    run_id: str = typer.Argument(..., help="Run ID to display"),
    as_json: bool = typer.Option(False, "--json", help="Print the record as JSON"),
):
    """Show one run record with its full output."""
    _config, manager, _cron = _build_services()

    result = manager.get_result(run_id)
    if result is None:
        result = next((r for r in manager.store.load_all() if r.run_id == run_id), None)
    if result is None:
        console.print(f"[red]Run {run_id} not found[/red]")
        raise typer.Exit(1)

    if as_json:
        typer.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return

    console.print(f"[bold]Command:[/bold] {result.command}")
    console.print(f"[bold]ID:[/bold] {result.id}")
    console.print(f"[bold]Started:[/bold] {_format_ms(result.timestamp)}")
    console.print(f"[bold]Status:[/bold] {_status_markup(result)} ({result.exit_code})")
    if result.execution_time is not None:
        console.print(f"[bold]Execution time:[/bold] {_format_duration(result.execution_time)}")
    if result.schedule_id:
        console.print(f"[bold]Schedule:[/bold] {result.schedule_id}")
    console.print()
    console.print(Text(result.output or "(No output)"))


# ============================================================================
# Schedule Commands
# ============================================================================


schedule_app = typer.Typer(help="Manage scheduled commands")
app.add_typer(schedule_app, name="schedule")


@schedule_app.command("list")
def schedule_list():
    """List schedules."""
    _config, _manager, cron = _build_services()

    schedules = cron.get_schedules()
    if not schedules:
        console.print("No schedules.")
        return

    table = Table(title="Schedules")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Command")
    table.add_column("Cron")
    table.add_column("Status")
    table.add_column("Last Run")
    table.add_column("Next Run")

    for schedule in schedules:
        status = "[green]enabled[/green]" if schedule.enabled else "[dim]disabled[/dim]"
        table.add_row(
            schedule.id,
            schedule.name,
            schedule.command,
            schedule.cron_expression,
            status,
            _format_ms(schedule.last_run),
            _format_ms(schedule.next_run),
        )

    console.print(table)


@schedule_app.command("add")
def schedule_add(
    name: str = typer.Option(..., "--name", "-n", help="Schedule name"),
    command: str = typer.Option(..., "--command", "-c", help="Shell command to run"),
    cron_expr: str = typer.Option(..., "--cron", help="Cron expression (e.g. '0 9 * * *')"),
    timeout: int = typer.Option(None, "--timeout", "-t", help="Kill each run after N milliseconds"),
    disabled: bool = typer.Option(False, "--disabled", help="Create the schedule disabled"),
):
    """Add a schedule."""
    _config, _manager, cron = _build_services()

    try:
        schedule = cron.add_schedule(
            name=name,
            command=command,
            cron_expression=cron_expr,
            enabled=not disabled,
            timeout=timeout,
        )
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(f"[green]✓[/green] Added schedule '{schedule.name}' ({schedule.id})")
    if not disabled and not schedule.enabled:
        console.print(f"[yellow]Invalid cron expression '{cron_expr}'; schedule is disabled[/yellow]")
    elif schedule.next_run:
        console.print(f"Next run: {_format_ms(schedule.next_run)}")


@schedule_app.command("update")
def schedule_update(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    name: str = typer.Option(None, "--name", "-n", help="New name"),
    command: str = typer.Option(None, "--command", "-c", help="New command"),
    cron_expr: str = typer.Option(None, "--cron", help="New cron expression"),
    timeout: int = typer.Option(None, "--timeout", "-t", help="New timeout in milliseconds"),
):
    """Change fields of a schedule."""
    _config, _manager, cron = _build_services()

    changes = {
        key: value
        for key, value in (
            ("name", name),
            ("command", command),
            ("cron_expression", cron_expr),
            ("timeout", timeout),
        )
        if value is not None
    }
    if not changes:
        console.print("[red]Error: nothing to update[/red]")
        raise typer.Exit(1)

    try:
        schedule = cron.update_schedule(schedule_id, **changes)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from e

    if schedule is None:
        console.print(f"[red]Schedule {schedule_id} not found[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Updated schedule '{schedule.name}'")
    if cron_expr is not None and not schedule.enabled:
        console.print("[yellow]Schedule is disabled[/yellow]")


@schedule_app.command("remove")
def schedule_remove(
    schedule_id: str = typer.Argument(..., help="Schedule ID to remove"),
):
    """Remove a schedule."""
    _config, _manager, cron = _build_services()

    if cron.remove_schedule(schedule_id):
        console.print(f"[green]✓[/green] Removed schedule {schedule_id}")
    else:
        console.print(f"[red]Schedule {schedule_id} not found[/red]")
        raise typer.Exit(1)


@schedule_app.command("enable")
def schedule_enable(
    schedule_id: str = typer.Argument(..., help="Schedule ID"),
    disable: bool = typer.Option(False, "--disable", help="Disable instead of enable"),
):
    """Enable or disable a schedule."""
    _config, _manager, cron = _build_services()

    schedule = cron.set_schedule_enabled(schedule_id, not disable)
    if schedule is None:
        console.print(f"[red]Schedule {schedule_id} not found[/red]")
        raise typer.Exit(1)

    if disable:
        console.print(f"[green]✓[/green] Schedule '{schedule.name}' disabled")
    elif schedule.enabled:
        console.print(f"[green]✓[/green] Schedule '{schedule.name}' enabled")
        console.print(f"Next run: {_format_ms(schedule.next_run)}")
    else:
        console.print(
            f"[yellow]Schedule '{schedule.name}' stays disabled: "
            f"invalid cron expression '{schedule.cron_expression}'[/yellow]"
        )


@schedule_app.command("run")
def schedule_run(
    schedule_id: str = typer.Argument(..., help="Schedule ID to run"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show runboard runtime logs"),
):
    """Run a schedule's command now."""
    config, manager, cron = _build_services(logs)

    schedule = cron.get_schedule_by_id(schedule_id)
    if schedule is None:
        console.print(f"[red]Schedule {schedule_id} not found[/red]")
        raise typer.Exit(1)

    async def _run():
        return await _stream_run(
            manager,
            lambda: cron.execute_now(schedule_id),
            schedule.command_id,
        )

    result = asyncio.run(_run())
    console.print()
    console.print(
        f"{_status_markup(result)} [dim]({result.run_id}, {_format_duration(result.execution_time)})[/dim]"
    )
    raise typer.Exit(_exit_status(result))


# ============================================================================
# Service
# ============================================================================


@app.command()
def serve(
    logs: bool = typer.Option(True, "--logs/--no-logs", help="Show runboard runtime logs"),
):
    """Run the scheduler in the foreground until interrupted."""
    config, manager, cron = _build_services(logs)

    def _print_result(result) -> None:
        if result.is_running:
            return
        console.print(
            f"{_format_ms(result.timestamp)} {_status_markup(result)} "
            f"[cyan]{result.command}[/cyan] [dim]{result.run_id}[/dim]"
        )

    def _print_event(event) -> None:
        schedule = event.schedule
        console.print(
            f"[dim]schedule {event.kind.value}: {schedule.name} "
            f"next={_format_ms(schedule.next_run) or '-'}[/dim]"
        )

    async def _serve() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                pass

        manager.subscribe(_print_result)
        cron.subscribe(_print_event)
        await cron.start()
        status = cron.status()
        console.print(
            f"{__logo__} runboard serving {status['active']} active schedule(s). Press Ctrl+C to stop."
        )
        try:
            await stop.wait()
        finally:
            cron.stop()
            running = manager.active_ids()
            if running:
                console.print(f"Stopping {len(running)} running command(s)...")
            await manager.close()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        pass
    console.print("Stopped.")
