"""
Functions for formatting and displaying data in the console using Rich.
"""

from collections import Counter
from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from bundlesync.models.bundle_info import LoadMode
from bundlesync.models.stats import DownloadStats
from bundlesync.utils.formatting import format_duration, format_size


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Run `bundlesync init <package> --host <URL>` to create a config.",
            "• Check the file shown by `bundlesync --show-config`.",
            "• Host and web modes need a host server; simulate needs a manifest path.",
        ],
        "ContractViolationError": [
            "• The package may have no active manifest yet.",
            "• Run `bundlesync update` to fetch and activate the latest manifest.",
        ],
        "ManifestError": [
            "• The manifest file is malformed or belongs to another package.",
            "• Delete the package sandbox and run `bundlesync update` again.",
        ],
        "RemoteServiceError": [
            "• The host server did not answer the version query.",
            "• Check `host_server` and `fallback_host_server` in the config.",
            "• Try again with a longer `--timeout`.",
        ],
        "FileIntegrityError": [
            "• A downloaded file did not match its manifest entry.",
            "• The server may be serving files from a different build.",
        ],
        "ClientResponseError": [
            "• A network connection issue occurred.",
            "• The host server might be temporarily unavailable.",
            "• Please try again in a few minutes.",
        ],
        "TimeoutError": [
            "• A transfer stalled, which may indicate network throttling.",
            "• Try reducing `--concurrency` or raising `--timeout`.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -v for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    suggestion_text = Text("\n".join(suggestions))

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(suggestion_text)

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the current configuration."""
    console = Console()
    content = ""
    for key, value in config_data.items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif value == "":
            value = "[dim]<unset>[/dim]"
        content += f"{key} = {value}\n"

    console.print(
        Panel(
            content.strip(),
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


_LOAD_MODE_STYLES = {
    LoadMode.LOAD_FROM_DELIVERY: ("Delivery", "magenta"),
    LoadMode.LOAD_FROM_CACHE: ("Cache", "green"),
    LoadMode.LOAD_FROM_STREAMING: ("Built-in", "cyan"),
    LoadMode.LOAD_FROM_REMOTE: ("Remote", "yellow"),
}


def print_status_table(
    package_name: str,
    play_mode: str,
    package_version: str | None,
    load_modes: Counter | None = None,
):
    """Displays the active version and where each bundle would be read from."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row("Package:", package_name)
    table.add_row("Play Mode:", play_mode)
    if package_version:
        table.add_row("Active Version:", f"[green]{package_version}[/green]")
    else:
        table.add_row("Active Version:", "[yellow]none[/yellow] (run `bundlesync update`)")

    if load_modes is not None:
        table.add_row("", "")
        table.add_row("Bundles:", str(sum(load_modes.values())))
        for mode, (label, color) in _LOAD_MODE_STYLES.items():
            count = load_modes.get(mode, 0)
            if count:
                table.add_row(f"  {label}:", f"[{color}]{count}[/{color}]")

    console.print(
        Panel(table, title="[bold]📦 Package Status[/bold]", border_style="cyan", expand=False)
    )


def print_summary_panel(stats: DownloadStats, duration_s: float, title: str = "Download"):
    """Displays the final summary of one download or unpack batch."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row(
        "✓ Completed:",
        f"[bold green]{stats.completed_count}[/bold green] / {stats.total_count}",
    )
    if stats.failed_count > 0:
        stats_table.add_row("✗ Failed:", f"[bold red]{stats.failed_count}[/bold red]")
    if stats.remaining_count > 0:
        stats_table.add_row("○ Not Finished:", f"[yellow]{stats.remaining_count}[/yellow]")
    if stats.retry_count > 0:
        stats_table.add_row("↻ Retries:", f"[yellow]{stats.retry_count}[/yellow]")

    stats_table.add_row("", "")  # Spacer

    stats_table.add_row(
        "Total Size:",
        f"[cyan]{format_size(stats.completed_bytes)}[/cyan] / "
        f"{format_size(stats.total_bytes)}",
    )

    avg_speed = stats.completed_bytes / duration_s if duration_s > 0 else 0
    stats_table.add_row(
        "Avg. Speed:", f"[magenta]{format_size(int(avg_speed))}/s[/magenta]"
    )
    if stats.peak_speed_bps > 0:
        stats_table.add_row(
            "Peak Speed:",
            f"[magenta]{format_size(int(stats.peak_speed_bps))}/s[/magenta]",
        )

    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    if stats.failed_count or stats.remaining_count:
        panel_title = f"⚠️  [bold]{title} Incomplete[/bold]"
        border_color = "red"
    else:
        panel_title = f"📦 [bold]{title} Complete![/bold]"
        border_color = "green"

    console.print()
    console.print(
        Panel(
            stats_table,
            title=panel_title,
            border_style=border_color,
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()
