"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any, Iterable, Sequence

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from qb_cloud_sync.models.config import AppConfig
from qb_cloud_sync.models.rules import ConditionalRule
from qb_cloud_sync.models.stats import TickStats
from qb_cloud_sync.models.task import Task, TaskStatus, TorrentItem
from qb_cloud_sync.utils.formatting import (
    format_duration,
    format_size,
    format_timestamp,
    truncate,
)

SENSITIVE_KEYS = ("password",)

STATUS_STYLES = {
    TaskStatus.PENDING_UPLOAD: "cyan",
    TaskStatus.UPLOADING: "bold cyan",
    TaskStatus.UPLOAD_FAILED: "yellow",
    TaskStatus.PENDING_VERIFICATION: "blue",
    TaskStatus.VERIFYING: "bold blue",
    TaskStatus.VERIFICATION_FAILED: "yellow",
    TaskStatus.UPLOAD_VERIFIED_SUCCESS: "green",
    TaskStatus.COMPLETED: "bold green",
    TaskStatus.SKIPPED: "dim",
    TaskStatus.ERROR: "bold red",
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Run `qb-cloud-sync validate` to see which setting is rejected.",
            "• Create a fresh template with `qb-cloud-sync init --force`.",
        ],
        "RuleValidationError": [
            "• Check the archiving rules against `qb-cloud-sync rules-schema`.",
            "• Every rule needs an `if` (object or \"default\") and `then.remotePath`.",
        ],
        "AuthenticationError": [
            "• Verify the qBittorrent username and password in the configuration file.",
            "• Too many failed logins get the client IP banned; check the WebUI settings.",
        ],
        "SourceUnavailableError": [
            "• Make sure qBittorrent is running and the WebUI is enabled.",
            "• Check the `url` in the [qbittorrent] section.",
            "• Run `qb-cloud-sync diagnose` for a connectivity check.",
        ],
        "StoreError": [
            "• Check that the database directory is writable.",
            "• Another process may hold a lock on the task database.",
        ],
        "ProcessorBusyError": [
            "• Another `run` or `once` is using this task database; stop it first.",
            "• The lock file names the holder's PID.",
        ],
        "TaskNotFoundError": [
            "• List known tasks with `qb-cloud-sync tasks`.",
            "• Hashes must be given in full, as shown by qBittorrent.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, sections: dict[str, dict[str, Any]]):
    """Displays the raw configuration file, hiding sensitive data."""
    console = Console()
    lines = []
    for section, values in sections.items():
        lines.append(f"[bold cyan]\\[{section}][/bold cyan]")
        for key, value in values.items():
            if key in SENSITIVE_KEYS and value:
                value = "[hidden]"
            lines.append(f"{key} = {escape(str(value))}")
        lines.append("")

    console.print(
        Panel(
            "\n".join(lines).strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_validation_table(config: AppConfig):
    """Displays a summary of the validated settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    qb = config.qbittorrent
    rclone = config.rclone
    processor = config.task_processor
    behavior = config.behavior

    def flag(enabled: bool) -> str:
        return "✓ Enabled" if enabled else "✗ Disabled"

    table.add_row("qBittorrent:", f"[green]{qb.url}[/green]")
    table.add_row("Authentication:", "Username/Password" if qb.has_credentials else "None")
    table.add_row("Remote:", f"{rclone.remote_name}:{rclone.upload_path.strip('/')}")
    table.add_row("Poll Interval:", format_duration(processor.poll_interval_s))
    table.add_row("Max Concurrent:", str(processor.max_concurrent_uploads))
    table.add_row(
        "Attempt Ceilings:",
        f"upload {processor.max_upload_attempts}, "
        f"verification {processor.max_verification_attempts}",
    )
    table.add_row("Archiving Rules:", str(len(config.archiving_rules)))
    table.add_row("Delete From qBittorrent:", flag(behavior.delete_qb_task))
    table.add_row("Delete Local Files:", flag(behavior.delete_local_files))
    table.add_row("Prune Empty Folders:", flag(behavior.cleanup_empty_dirs))
    table.add_row("E-mail:", flag(config.mailer.enabled))
    table.add_row("Database:", f"[dim]{config.database_path}[/dim]")

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def print_rules_table(config: AppConfig):
    """Lists the archiving rules in evaluation order."""
    console = Console()
    if not config.archiving_rules:
        console.print(
            "[dim]No archiving rules; paths fall back to {tag}/{category}/{torrentName}.[/dim]"
        )
        return

    table = Table(title="Archiving Rules", box=box.ROUNDED)
    table.add_column("#", style="dim", justify="right")
    table.add_column("Condition")
    table.add_column("Remote Path", style="magenta")
    for index, rule in enumerate(config.archiving_rules, 1):
        if isinstance(rule, ConditionalRule):
            conditions = []
            if rule.category:
                conditions.append(f"category = {escape(rule.category)}")
            if rule.tags:
                conditions.append(f"tags ∩ {{{', '.join(rule.tags)}}}")
            if rule.name_matches:
                conditions.append(f"name ~ /{escape(rule.name_matches)}/")
            condition = " OR ".join(conditions) or "[yellow]never[/yellow]"
        else:
            condition = "[bold]default[/bold]"
        table.add_row(str(index), condition, escape(rule.remote_path))
    console.print(table)


def print_tasks_table(tasks: Sequence[Task]):
    """Displays stored tasks, most recently updated first."""
    console = Console()
    if not tasks:
        console.print("[dim]No tasks found.[/dim]")
        return

    table = Table(box=box.SIMPLE_HEAVY)
    table.add_column("Hash", style="dim", no_wrap=True)
    table.add_column("Name", overflow="fold")
    table.add_column("Status", no_wrap=True)
    table.add_column("Up/Ver", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Remote Path", style="magenta", overflow="fold")
    table.add_column("Updated", no_wrap=True)
    table.add_column("Error", style="red", overflow="fold")

    for task in tasks:
        style = STATUS_STYLES.get(task.status, "")
        table.add_row(
            task.hash[:10],
            escape(task.name),
            f"[{style}]{task.status.value}[/{style}]" if style else task.status.value,
            f"{task.upload_attempts}/{task.verification_attempts}",
            format_size(task.upload_size),
            task.remote_path or "-",
            format_timestamp(task.updated_at),
            escape(truncate(task.error_message, 120)),
        )
    console.print(table)


def print_status_counts(counts: dict[TaskStatus, int]):
    """Displays the number of tasks per status."""
    console = Console()
    total = sum(counts.values())
    console.print(f"\n[bold]Total Tasks:[/] [green]{total}[/green]\n")
    if not total:
        return

    table = Table(title="Tasks by Status")
    table.add_column("Status")
    table.add_column("Tasks", justify="right", style="green")
    for status in TaskStatus:
        if count := counts.get(status, 0):
            style = STATUS_STYLES.get(status, "")
            table.add_row(f"[{style}]{status.value}[/{style}]", str(count))
    console.print(table)


def print_tick_summary(stats: TickStats):
    """Displays the outcome of one processing cycle."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=22)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row("Completed Torrents:", str(stats.items_seen))
    stats_table.add_row("New Tasks:", f"[cyan]{stats.tasks_created}[/cyan]")
    stats_table.add_row("Dispatched:", str(stats.tasks_dispatched))
    stats_table.add_row("", "")

    stats_table.add_row("✓ Uploaded:", f"[green]{stats.uploads_succeeded}[/green]")
    stats_table.add_row("✓ Verified:", f"[green]{stats.verifications_succeeded}[/green]")
    stats_table.add_row("✓ Archived:", f"[bold green]{stats.tasks_completed}[/bold green]")
    if stats.uploads_failed:
        stats_table.add_row("✗ Upload Failures:", f"[yellow]{stats.uploads_failed}[/yellow]")
    if stats.verifications_failed:
        stats_table.add_row(
            "✗ Verify Failures:", f"[yellow]{stats.verifications_failed}[/yellow]"
        )
    if stats.tasks_errored:
        stats_table.add_row("✗ Errors:", f"[bold red]{stats.tasks_errored}[/bold red]")

    stats_table.add_row("", "")
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(stats.duration_s)}[/blue]")

    if stats.aborted:
        title = "⚠ [bold]Cycle Aborted[/bold]"
        border_color = "yellow"
    else:
        title = "☁ [bold]Cycle Complete[/bold]"
        border_color = "green"

    console.print()
    console.print(
        Panel(
            stats_table,
            title=title,
            border_style=border_color,
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()


def print_resolve_table(rows: Iterable[tuple[TorrentItem, str]]):
    """Shows where each torrent would be uploaded."""
    console = Console()
    table = Table(title="Resolved Destinations", box=box.ROUNDED)
    table.add_column("Name", overflow="fold")
    table.add_column("Category", style="cyan")
    table.add_column("Tags", style="dim")
    table.add_column("Remote Path", style="magenta", overflow="fold")
    count = 0
    for item, remote_path in rows:
        table.add_row(escape(item.name), item.category or "-", item.tags or "-", escape(remote_path))
        count += 1
    if count:
        console.print(table)
    else:
        console.print("[dim]No completed torrents to resolve.[/dim]")


def print_rules_help():
    """Displays a help panel for writing archiving rules."""
    console = Console()

    ph_table = Table(
        box=box.ROUNDED,
        title="[bold]Remote Path Placeholders[/bold]",
        title_style="",
    )
    ph_table.add_column("Placeholder", style="bold magenta", no_wrap=True)
    ph_table.add_column("Description")
    ph_table.add_column("Example")
    ph_table.add_row("{torrentName}", "Name of the torrent.", "'Alpha (2020)'")
    ph_table.add_row(
        "{category}", "qBittorrent category, or 'Uncategorized'.", "'Movies'"
    )
    ph_table.add_row("{tag}", "First tag (lowercased), or 'UnTagged'.", "'hdr'")
    ph_table.add_row(
        "{year}", "First (YYYY) group in the name, or 'UnknownYear'.", "'2020'"
    )

    cond_grid = Table.grid(expand=True, padding=(0, 1))
    cond_grid.add_row("[bold cyan]category:[/bold cyan]", "Case-insensitive equality.")
    cond_grid.add_row(
        "[bold cyan]tags:[/bold cyan]",
        "A tag or a list of tags; any overlap with the torrent's tags matches.",
    )
    cond_grid.add_row(
        "[bold cyan]name_matches:[/bold cyan]",
        "Case-insensitive regular expression searched in the torrent name.",
    )
    cond_grid.add_row()
    cond_grid.add_row(
        "[bold]Matching:[/bold]",
        "A rule matches when any of its conditions does. Rules are tried in order and"
        " the first match wins. A rule with `\"if\": \"default\"` applies only when no"
        " other rule matched, wherever it is declared.",
    )

    example = Text.from_markup(
        """[bold]Example:[/bold]
[
  {"if": {"category": "TV"}, "then": {"remotePath": "TV/{torrentName}"}},
  {"if": "default", "then": {"remotePath": "Other/{category}"}}
]

[bold]Result[/bold] for 'Alpha (2020)' in category 'Movies':
`Other/Movies`"""
    )

    console.print(ph_table)
    console.print(
        Panel(
            cond_grid,
            title="[bold]Conditions[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print(
        Panel(
            example,
            title="[bold]Putting It All Together[/bold]",
            border_style="yellow",
            padding=(1, 2),
        )
    )
