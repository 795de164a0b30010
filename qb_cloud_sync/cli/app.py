"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from qb_cloud_sync import __version__
from qb_cloud_sync.api.client import QBittorrentClient
from qb_cloud_sync.core.cleanup import CleanupHandler
from qb_cloud_sync.core.resolver import resolve_remote_path
from qb_cloud_sync.core.task_processor import TaskProcessor
from qb_cloud_sync.exceptions import EXIT_SOURCE, ProcessorBusyError, QbCloudSyncError
from qb_cloud_sync.models.config import AppConfig
from qb_cloud_sync.models.task import TaskStatus, TorrentItem
from qb_cloud_sync.notify.mailer import Mailer
from qb_cloud_sync.storage.config_manager import ConfigManager
from qb_cloud_sync.storage.process_lock import ProcessorLock
from qb_cloud_sync.storage.task_store import TaskStore
from qb_cloud_sync.transfer.file_manager import LocalFileManager
from qb_cloud_sync.transfer.rclone import RcloneUploader
from qb_cloud_sync.utils.rules_validator import export_schema
from qb_cloud_sync.utils.structured_logger import create_event_logger

from .formatters import (
    print_config,
    print_resolve_table,
    print_rules_help,
    print_rules_table,
    print_status_counts,
    print_tasks_table,
    print_tick_summary,
    print_validation_table,
)

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("qb_cloud_sync")

app = typer.Typer(
    name="qb-cloud-sync",
    help=(
        "Uploads completed qBittorrent downloads to cloud storage with rclone,"
        " verifies them and cleans up. Use 'qb-cloud-sync <command> --help' for more"
        " info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "qb-cloud-sync"


DEFAULT_CONFIG_FILE = get_config_dir() / "config.ini"


@dataclass
class CliState:
    config_file: Path
    verbose: int = 0


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj if isinstance(ctx.obj, CliState) else CliState(DEFAULT_CONFIG_FILE)


def _load_config(state: CliState) -> AppConfig:
    config = ConfigManager(state.config_file).load_config()
    if state.verbose == 0:
        log.setLevel(config.log_level)
    return config


@asynccontextmanager
async def _open_store(config: AppConfig) -> AsyncIterator[TaskStore]:
    store = TaskStore(Path(config.database_path))
    try:
        yield store
    finally:
        await store.close()


@asynccontextmanager
async def _processor(config: AppConfig) -> AsyncIterator[TaskProcessor]:
    """
    Wires the collaborators together and releases them in reverse order.

    Holds the database's processing lock throughout, so a second `run` or
    `once` fails fast instead of recovering or dispatching tasks that the
    first one is still working on.
    """
    with ProcessorLock(Path(config.database_path)):
        client = QBittorrentClient(config.qbittorrent)
        events = create_event_logger(Path(config.json_log_dir) if config.json_log_dir else None)
        try:
            async with _open_store(config) as store:
                cleanup = CleanupHandler(
                    config.behavior, client, LocalFileManager(), Mailer(config.mailer)
                )
                yield TaskProcessor(
                    config, client, store, RcloneUploader(config.rclone), cleanup, events
                )
        finally:
            await client.close()
            events.close()


def _run_locked(coro):
    try:
        return asyncio.run(coro)
    except ProcessorBusyError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=e.exit_code) from e


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    config_file: Path = typer.Option(
        DEFAULT_CONFIG_FILE,
        "--config",
        "-c",
        envvar="QB_CLOUD_SYNC_CONFIG",
        help="Path to the INI configuration file.",
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
    rules_help: bool = typer.Option(
        False,
        "--rules-help",
        help="Show detailed help for writing archiving rules and exit.",
        is_eager=True,
    ),
):
    """qBittorrent to cloud storage sync"""
    if rules_help:
        print_rules_help()
        raise typer.Exit()

    if version:
        console.print(f"[bold]qb-cloud-sync[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    ctx.obj = CliState(config_file=config_file.expanduser(), verbose=verbose)
    if verbose:
        log.setLevel("DEBUG" if verbose >= 2 else "INFO")

    if show_config:
        if not ctx.obj.config_file.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]qb-cloud-sync init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        config_manager = ConfigManager(ctx.obj.config_file)
        print_config(ctx.obj.config_file, config_manager.raw_sections())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    ctx: typer.Context,
    url: str = typer.Option("http://localhost:8080", "--url", help="qBittorrent WebUI URL."),
    username: str = typer.Option("admin", "--username", "-u", help="WebUI username."),
    password: str = typer.Option("", "--password", "-p", help="WebUI password."),
    remote: str = typer.Option("gdrive", "--remote", "-r", help="rclone remote name."),
    upload_path: str = typer.Option("/", "--upload-path", help="Base path on the remote."),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration without asking."
    ),
):
    """Write a configuration template with the given connection settings."""
    config_file = _state(ctx).config_file
    if (
        config_file.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    ConfigManager(config_file).save_new_config(
        {
            "qbittorrent": {"url": url, "username": username, "password": password},
            "rclone": {"remote_name": remote, "upload_path": upload_path},
        }
    )
    console.print(f"\n[bold green]✓ Configuration saved to '{config_file}'[/bold green]")
    console.print(
        "Review the archiving rules in it, then try: [cyan]qb-cloud-sync once[/cyan]"
    )


def _install_signal_handlers(processor: TaskProcessor) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, processor.stop)
        except NotImplementedError:
            log.debug(f"Cannot install a handler for {sig.name} on this platform.")
            continue
        installed.append(sig)
    return installed


@app.command()
def run(ctx: typer.Context):
    """Run continuously, processing torrents every poll interval."""
    config = _load_config(_state(ctx))

    async def _run_async():
        async with _processor(config) as processor:
            await processor.recover_interrupted_tasks()
            installed = _install_signal_handlers(processor)
            console.print("[bold cyan]☁ qb-cloud-sync is running. Press Ctrl+C to stop.[/bold cyan]")
            try:
                await processor.run_forever()
            finally:
                loop = asyncio.get_running_loop()
                for sig in installed:
                    loop.remove_signal_handler(sig)
        console.print("[green]✓ Stopped cleanly.[/green]")

    _run_locked(_run_async())


@app.command()
def once(ctx: typer.Context):
    """Run a single processing cycle and show its summary."""
    config = _load_config(_state(ctx))

    async def _once_async():
        async with _processor(config) as processor:
            await processor.recover_interrupted_tasks()
            return await processor.process_tasks()

    stats = _run_locked(_once_async())
    if stats is not None:
        print_tick_summary(stats)
        if stats.aborted:
            raise typer.Exit(code=EXIT_SOURCE)


def _parse_statuses(values: Optional[list[str]]) -> list[TaskStatus]:
    statuses = []
    for value in values or []:
        try:
            statuses.append(TaskStatus(value.upper()))
        except ValueError:
            choices = ", ".join(s.value for s in TaskStatus)
            raise typer.BadParameter(f"Unknown status '{value}'. Choose from: {choices}") from None
    return statuses


@app.command()
def tasks(
    ctx: typer.Context,
    status: Optional[list[str]] = typer.Option(  # noqa: B008
        None, "--status", "-s", help="Only show tasks in this status (repeatable)."
    ),
    limit: int = typer.Option(50, "--limit", "-n", min=1, help="Maximum rows to show."),
):
    """List stored tasks, most recently updated first."""
    statuses = _parse_statuses(status)
    config = _load_config(_state(ctx))

    async def _list():
        async with _open_store(config) as store:
            return await store.list_tasks(statuses or None, limit)

    print_tasks_table(asyncio.run(_list()))


@app.command()
def stats(ctx: typer.Context):
    """Show how many tasks are in each status."""
    config = _load_config(_state(ctx))

    async def _get_stats():
        async with _open_store(config) as store:
            return await store.count_by_status()

    print_status_counts(asyncio.run(_get_stats()))


@app.command()
def retry(
    ctx: typer.Context,
    task_hash: str = typer.Argument(..., metavar="HASH", help="Hash of a failed task."),
):
    """Give a failed task a fresh set of attempts."""
    config = _load_config(_state(ctx))

    async def _retry():
        async with _open_store(config) as store:
            return await store.reset_attempts(task_hash.lower())

    try:
        task = asyncio.run(_retry())
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e
    console.print(
        f"[green]✓ '{task.name}' will be retried on the next cycle"
        f" ({task.status.value}).[/green]"
    )


@app.command()
def skip(
    ctx: typer.Context,
    task_hash: str = typer.Argument(..., metavar="HASH", help="Hash of the task."),
    reason: str = typer.Option("Skipped by operator", "--reason", help="Stored as the task's message."),
):
    """Stop processing a task that has not finished."""
    config = _load_config(_state(ctx))

    async def _skip():
        async with _open_store(config) as store:
            return await store.mark_skipped(task_hash.lower(), reason)

    try:
        task = asyncio.run(_skip())
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from e
    console.print(f"[green]✓ '{task.name}' marked as {task.status.value}.[/green]")


@app.command()
def resolve(
    ctx: typer.Context,
    name: Optional[str] = typer.Option(
        None, "--name", help="Resolve an ad-hoc torrent name instead of querying qBittorrent."
    ),
    category: str = typer.Option("", "--category", help="Category of the ad-hoc torrent."),
    tags: str = typer.Option("", "--tags", help="Comma-separated tags of the ad-hoc torrent."),
):
    """Preview the remote path of each completed torrent."""
    config = _load_config(_state(ctx))
    print_rules_table(config)

    if name is not None:
        item = TorrentItem(hash="-", name=name, category=category, tags=tags)
        print_resolve_table([(item, resolve_remote_path(item, config.archiving_rules))])
        return

    async def _fetch():
        client = QBittorrentClient(config.qbittorrent)
        try:
            return await client.list_completed_items()
        finally:
            await client.close()

    items = asyncio.run(_fetch())
    print_resolve_table(
        (item, resolve_remote_path(item, config.archiving_rules)) for item in items
    )


@app.command()
def validate(ctx: typer.Context):
    """Validate the current configuration."""
    try:
        config = _load_config(_state(ctx))
    except QbCloudSyncError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e
    print_validation_table(config)
    print_rules_table(config)


@app.command(name="rules-schema")
def rules_schema(
    output: Path = typer.Argument(
        Path("archiving-rules.schema.json"), help="Where to write the JSON schema."
    ),
):
    """Export the JSON schema for archiving rules."""
    export_schema(output)
    console.print(f"[green]✓ Schema written to '{output}'[/green]")


@app.command()
def diagnose(ctx: typer.Context):
    """Diagnose common configuration and connectivity issues."""
    state = _state(ctx)
    console.print("\n[bold cyan]Running diagnostics...[/bold cyan]\n")
    issues_found = False
    if state.config_file.is_file():
        console.print(f"[green]✓[/] Config file exists at: [dim]{state.config_file}[/dim]")
    else:
        console.print("[red]✗ Config file not found.[/] Run [cyan]qb-cloud-sync init[/cyan].")
        raise typer.Exit(code=1)
    try:
        config = _load_config(state)
        console.print("[green]✓[/] Configuration file is valid and can be loaded.")
    except QbCloudSyncError as e:
        console.print(f"[red]✗ Configuration validation failed: {e}[/red]")
        raise typer.Exit(code=1) from e

    if config.archiving_rules:
        console.print(f"[green]✓[/] {len(config.archiving_rules)} archiving rule(s) loaded.")
    else:
        console.print("[yellow]⚠ No archiving rules; every torrent uses the fallback path.[/yellow]")

    async def run_checks() -> bool:
        ok = True
        try:
            async with _open_store(config) as store:
                counts = await store.count_by_status()
            console.print(
                f"[green]✓[/] Task database is readable ({sum(counts.values())} tasks)."
            )
        except QbCloudSyncError as e:
            console.print(f"[red]✗ Task database check failed: {e}[/red]")
            ok = False

        console.print("\n[dim]Testing connectivity to qBittorrent...[/dim]")
        client = QBittorrentClient(config.qbittorrent, login_retry_delay=1.0)
        try:
            api_version = await client.get_api_version()
            console.print(f"[green]✓[/] Connected to qBittorrent (Web API {api_version}).")
        except QbCloudSyncError as e:
            console.print(f"[red]✗ qBittorrent check failed: {e}[/red]")
            ok = False
        finally:
            await client.close()

        console.print("\n[dim]Checking rclone...[/dim]")
        rclone_version = await RcloneUploader(config.rclone).version()
        if rclone_version is None:
            console.print(f"[red]✗ Could not run '{config.rclone.binary} version'.[/red]")
            ok = False
        else:
            console.print(f"[green]✓[/] {rclone_version or 'rclone is available'}.")
        return ok

    if not asyncio.run(run_checks()):
        issues_found = True
    console.print()
    if not issues_found:
        console.print("[bold green]✓ All checks passed! Your setup looks good.[/bold green]\n")
    else:
        console.print(
            "[bold red]✗ Some issues were found. "
            "Please review the messages above.[/bold red]\n"
        )
        raise typer.Exit(code=1)
