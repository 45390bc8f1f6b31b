"""
Manages a Rich Live display for one download or unpack batch.
Shows overall byte and file progress, the files most recently started, and
real-time statistics fed by the downloader callbacks.
"""

import asyncio
import logging
from datetime import datetime

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table
from rich.text import Text

from bundlesync.operations.download import DownloaderOperation
from bundlesync.utils.formatting import format_size

log = logging.getLogger(__name__)

MAX_RECENT_FILES = 5


class ProgressManager:
    """
    Renders the progress of a `DownloaderOperation`.

    Use as an async context manager and call `attach()` before the batch
    starts so every callback is observed.
    """

    def __init__(self, console: Console, title: str = "Download", quiet: bool = False):
        self.console = console
        self.title = title
        self.quiet = quiet

        self.bytes_progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=40),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            DownloadColumn(),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(),
            console=console,
            transient=False,
        )
        self.files_progress = Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            MofNCompleteColumn(),
            console=console,
        )

        self._live: Live | None = None
        self._layout: Layout | None = None
        self._bytes_task_id: TaskID | None = None
        self._files_task_id: TaskID | None = None
        self._recent_files: list[tuple[str, int]] = []
        self._errors: list[tuple[str, str]] = []
        self._start_time: datetime | None = None
        self._downloader: DownloaderOperation | None = None
        self.succeeded: bool | None = None

    def attach(self, downloader: DownloaderOperation) -> DownloaderOperation:
        """Wires the downloader callbacks to this display."""
        self._downloader = downloader
        downloader.on_download_progress = self.on_download_progress
        downloader.on_download_error = self.on_download_error
        downloader.on_start_download_file = self.on_start_download_file
        downloader.on_download_over = self.on_download_over

        self._start_time = datetime.now()
        if not self.quiet:
            self._bytes_task_id = self.bytes_progress.add_task(
                f"{self.title}ing", total=downloader.total_download_bytes or None
            )
            self._files_task_id = self.files_progress.add_task(
                "Bundles", total=downloader.total_download_count
            )
        self._update_display()
        return downloader

    # Downloader callbacks
    def on_download_progress(
        self, total_count: int, current_count: int, total_bytes: int, current_bytes: int
    ) -> None:
        if self.quiet:
            return
        self.bytes_progress.update(
            self._bytes_task_id, completed=current_bytes, total=total_bytes or None
        )
        self.files_progress.update(
            self._files_task_id, completed=current_count, total=total_count
        )
        self._update_display()

    def on_start_download_file(self, file_name: str, size: int) -> None:
        log.debug(f"{self.title} of '{file_name}' ({format_size(size)}) started.")
        self._recent_files.append((file_name, size))
        if len(self._recent_files) > MAX_RECENT_FILES:
            self._recent_files.pop(0)
        self._update_display()

    def on_download_error(self, file_name: str, error: str) -> None:
        self._errors.append((file_name, error))
        self._update_display()

    def on_download_over(self, succeed: bool) -> None:
        self.succeeded = succeed
        self._update_display()

    # Rendering
    def _create_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="progress", size=6),
            Layout(name="files", ratio=1),
        )
        return layout

    def _generate_header(self) -> Panel:
        if self._start_time:
            elapsed = int((datetime.now() - self._start_time).total_seconds())
            elapsed_str = f"{elapsed // 3600:02d}:{(elapsed % 3600) // 60:02d}:{elapsed % 60:02d}"
        else:
            elapsed_str = "00:00:00"
        header_text = Text()
        header_text.append(f"📦 {self.title} ", style="bold cyan")
        header_text.append("│ ", style="dim")
        header_text.append(f"Elapsed: {elapsed_str}", style="yellow")
        if self._downloader is not None:
            stats = self._downloader.stats
            if stats.current_speed_bps > 0:
                header_text.append(" │ ", style="dim")
                header_text.append(
                    f"⚡ {format_size(int(stats.current_speed_bps))}/s", style="magenta"
                )
            if stats.retry_count:
                header_text.append(" │ ", style="dim")
                header_text.append(f"Retries: {stats.retry_count}", style="yellow")
        return Panel(header_text, border_style="cyan")

    def _generate_progress_panel(self) -> Panel:
        combined = Table.grid()
        combined.add_row(self.bytes_progress)
        combined.add_row(self.files_progress)
        return Panel(combined, title="[bold]📊 Progress[/bold]", border_style="blue")

    def _generate_files_panel(self) -> Panel:
        if not self._recent_files and not self._errors:
            return Panel(
                Text("Waiting for transfers to start...", style="dim italic", justify="center"),
                title="[bold]📥 Recent Files[/bold]",
                border_style="green",
            )
        table = Table.grid(padding=(0, 2))
        table.add_column(style="white")
        table.add_column(style="dim", justify="right")
        for file_name, size in self._recent_files:
            table.add_row(file_name, format_size(size))
        for file_name, error in self._errors:
            table.add_row(f"[red]✗ {file_name}[/red]", f"[red]{error}[/red]")
        return Panel(table, title="[bold]📥 Recent Files[/bold]", border_style="green")

    def _update_display(self) -> None:
        if self.quiet or not self._layout:
            return
        self._layout["header"].update(self._generate_header())
        self._layout["progress"].update(self._generate_progress_panel())
        self._layout["files"].update(self._generate_files_panel())

    async def __aenter__(self):
        if self.quiet:
            return self
        self._layout = self._create_layout()
        self._update_display()
        self._live = Live(
            self._layout,
            console=self.console,
            refresh_per_second=12,
            vertical_overflow="visible",
        )
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._live and not self.quiet:
            await asyncio.sleep(0.2)
            self._update_display()
            self._live.stop()
