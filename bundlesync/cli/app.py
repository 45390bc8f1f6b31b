"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import time
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from bundlesync import __version__
from bundlesync.core.package import ResourcePackage, create_parameters
from bundlesync.models.config import PackageConfig, PlayMode, VerifyLevel
from bundlesync.operations.base import AsyncOperation
from bundlesync.operations.download import DownloaderOperation
from bundlesync.storage.config_manager import ConfigManager, default_config_path
from bundlesync.transfer.downloader import close_connection_pool
from bundlesync.utils.formatting import format_version_list
from bundlesync.utils.path import resolve_local_path

from .formatters import print_config, print_status_table, print_summary_panel
from .progress_manager import ProgressManager

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
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("bundlesync")

app = typer.Typer(
    name="bundlesync",
    help=(
        "Keeps a versioned content package in sync with its host server. Use"
        " 'bundlesync <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def _config_file(ctx: typer.Context) -> Path:
    return (ctx.obj or {}).get("config_file") or default_config_path()


def _load_config(ctx: typer.Context, cli_options: dict | None = None) -> PackageConfig:
    return ConfigManager(_config_file(ctx)).load_config(cli_options)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (debug output).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
    config: Path | None = typer.Option(  # noqa: B008
        None,
        "--config",
        "-c",
        help="Path to the config file (default: $XDG_CONFIG_HOME/bundlesync/config.ini).",
    ),
):
    """BundleSync CLI"""
    if version:
        console.print(f"[bold]bundlesync[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    if verbose >= 1:
        logging.getLogger("bundlesync").setLevel("DEBUG")

    config_file = resolve_local_path(config) if config else default_config_path()
    ctx.obj = {"config_file": config_file}

    if show_config:
        if not config_file.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]bundlesync init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        loaded = ConfigManager(config_file).load_config()
        print_config(config_file, loaded.model_dump(mode="json", exclude={"config_path"}))
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    ctx: typer.Context,
    package_name: str = typer.Argument(..., help="Name of the package to manage."),
    host: str = typer.Option("", "--host", help="Main content server URL."),
    fallback: str = typer.Option(
        "", "--fallback", help="Fallback content server URL (defaults to --host)."
    ),
    mode: PlayMode = typer.Option(  # noqa: B008
        PlayMode.HOST, "--mode", "-m", help="Where manifests and bundles come from."
    ),
    buildin_root: str = typer.Option(
        "buildin", "--buildin-root", help="Directory of the shipped, read-only content."
    ),
    sandbox_root: str = typer.Option(
        "sandbox", "--sandbox-root", help="Writable directory for downloaded content."
    ),
    simulate_manifest: str = typer.Option(
        "", "--simulate-manifest", help="Manifest file to load in simulate mode."
    ),
    verify_level: VerifyLevel = typer.Option(  # noqa: B008
        VerifyLevel.MIDDLE, "--verify", help="How thoroughly to check the cache at startup."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing config without asking."
    ),
):
    """Write the configuration for one package."""
    config_file = _config_file(ctx)
    if (
        config_file.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {
        "package_name": package_name,
        "play_mode": mode,
        "host_server": host,
        "fallback_host_server": fallback,
        "buildin_root": buildin_root,
        "sandbox_root": sandbox_root,
        "simulate_manifest_path": simulate_manifest,
        "verify_level": verify_level,
    }
    ConfigManager(config_file).save_new_config(settings)
    console.print(
        f"\n[bold green]✓ Configuration saved to '{config_file}'[/bold green]"
    )
    console.print("Next: [cyan]bundlesync update[/cyan] to fetch the latest manifest.")


async def _wait(package: ResourcePackage, operation: AsyncOperation) -> AsyncOperation:
    """Drives the scheduler until `operation` finishes; a failure exits the CLI."""
    await package.system.wait(operation, interval=0.01)
    if not operation.succeeded:
        console.print(f"[red]✗ {type(operation).__name__} failed: {operation.error}[/red]")
        raise typer.Exit(code=1)
    return operation


async def _open_package(config: PackageConfig) -> ResourcePackage:
    package = ResourcePackage(config.package_name)
    await _wait(package, package.initialize_async(create_parameters(config)))
    return package


def _require_ready(package: ResourcePackage) -> None:
    if not package.is_ready():
        console.print(
            f"[yellow]⚠️  Package '{package.package_name}' has no manifest yet.[/yellow] "
            "Run [cyan]bundlesync update[/cyan] first."
        )
        raise typer.Exit(code=1)


def _run(coro) -> None:
    """Runs a command body and always releases the shared connection pool."""

    async def _with_cleanup():
        try:
            await coro
        finally:
            await close_connection_pool()

    asyncio.run(_with_cleanup())


@app.command(name="version")
def version_command(
    ctx: typer.Context,
    no_time_ticks: bool = typer.Option(
        False, "--no-time-ticks", help="Do not append a cache-busting timestamp."
    ),
):
    """Query the latest package version on the host server."""
    config = _load_config(ctx)

    async def _version_async():
        package = await _open_package(config)
        append_ticks = config.append_time_ticks and not no_time_ticks
        op = await _wait(
            package, package.update_package_version_async(append_ticks, config.timeout)
        )
        console.print(
            f"[bold]{config.package_name}[/bold] latest version: "
            f"[cyan]{op.package_version}[/cyan]"
        )

    _run(_version_async())


@app.command()
def update(
    ctx: typer.Context,
    package_version: str | None = typer.Argument(
        None, help="Version to activate (default: the latest on the host server)."
    ),
    no_save: bool = typer.Option(
        False, "--no-save", help="Do not record the version for the next start."
    ),
):
    """Fetch and activate a package manifest."""
    config = _load_config(ctx)

    async def _update_async():
        package = await _open_package(config)
        version = package_version
        if not version:
            op = await _wait(
                package,
                package.update_package_version_async(
                    config.append_time_ticks, config.timeout
                ),
            )
            version = op.package_version
        auto_save = config.auto_save_version and not no_save
        await _wait(
            package,
            package.update_package_manifest_async(version, auto_save, config.timeout),
        )
        console.print(
            f"[green]✓ Package '{config.package_name}' is now at version "
            f"[bold]{package.get_package_version()}[/bold].[/green]"
        )

    _run(_update_async())


async def _run_batch(
    package: ResourcePackage, downloader: DownloaderOperation, title: str
) -> bool:
    if downloader.total_download_count == 0:
        console.print(f"[green]✓ Nothing to {title.lower()}, all bundles are local.[/green]")
        return True

    start_time = time.monotonic()
    async with ProgressManager(console=console, title=title) as progress_manager:
        progress_manager.attach(downloader)
        downloader.begin_download()
        await package.system.wait(downloader, interval=0.01)
    print_summary_panel(downloader.stats, time.monotonic() - start_time, title)
    if not downloader.succeeded:
        console.print(f"[red]✗ {title} failed: {downloader.error}[/red]")
    return downloader.succeeded


@app.command(name="download")
def download_command(
    ctx: typer.Context,
    tags: list[str] | None = typer.Option(  # noqa: B008
        None, "--tag", "-t", help="Only bundles carrying this tag (repeatable)."
    ),
    locations: list[str] | None = typer.Option(  # noqa: B008
        None, "--location", "-l", help="Only the bundles of this asset (repeatable)."
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-w", help="Simultaneous transfers (overrides config)."
    ),
    retry: int | None = typer.Option(
        None, "--retry", help="Extra attempts per bundle (overrides config)."
    ),
    timeout: int | None = typer.Option(
        None, "--timeout", help="Seconds without progress before an attempt fails."
    ),
):
    """Download bundles that are not yet available locally."""
    if tags and locations:
        console.print("[red]✗ Use either --tag or --location, not both.[/red]")
        raise typer.Exit(code=1)

    config = _load_config(
        ctx, {"max_concurrency": concurrency, "max_retry": retry, "timeout": timeout}
    )

    async def _download_async():
        package = await _open_package(config)
        _require_ready(package)
        batch_args = (config.max_concurrency, config.max_retry, config.timeout)
        if locations:
            invalid = [loc for loc in locations if not package.check_location_valid(loc)]
            for loc in invalid:
                log.warning(f"[yellow]Unknown location '{loc}', skipped.[/yellow]")
            valid = [loc for loc in locations if loc not in invalid]
            downloader = package.create_bundle_downloader(valid, *batch_args)
        else:
            downloader = package.create_resource_downloader(tags or None, *batch_args)
        if not await _run_batch(package, downloader, "Download"):
            raise typer.Exit(code=1)

    _run(_download_async())


@app.command()
def unpack(
    ctx: typer.Context,
    tags: list[str] | None = typer.Option(  # noqa: B008
        None, "--tag", "-t", help="Only bundles carrying this tag (repeatable)."
    ),
):
    """Copy built-in bundles into the sandbox cache."""
    config = _load_config(ctx)

    async def _unpack_async():
        package = await _open_package(config)
        _require_ready(package)
        unpacker = package.create_resource_unpacker(
            tags or None, config.max_concurrency, config.max_retry, config.timeout
        )
        if not await _run_batch(package, unpacker, "Unpack"):
            raise typer.Exit(code=1)

    _run(_unpack_async())


@app.command()
def status(ctx: typer.Context):
    """Show the active version and where each bundle would be read from."""
    config = _load_config(ctx)

    async def _status_async():
        package = await _open_package(config)
        if package.is_ready():
            print_status_table(
                config.package_name,
                config.play_mode.value,
                package.get_package_version(),
                package.get_load_mode_counts(),
            )
        else:
            print_status_table(config.package_name, config.play_mode.value, None)
        cached = package.persistent.list_sandbox_manifest_versions()
        console.print(f"[dim]Cached manifests: {format_version_list(cached)}[/dim]")

    _run(_status_async())


@app.command(name="clear-cache")
def clear_cache(
    ctx: typer.Context,
    unused: bool = typer.Option(
        False, "--unused", help="Only remove bundles the active manifest does not use."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Bypass the confirmation prompt."
    ),
):
    """Remove cached bundles from the sandbox."""
    if not unused and not force and not typer.confirm(
        "Remove every cached bundle of the package? They will be downloaded again."
    ):
        console.print("[yellow]Operation cancelled.[/yellow]")
        raise typer.Abort()

    config = _load_config(ctx)

    async def _clear_async():
        package = await _open_package(config)
        if unused:
            _require_ready(package)
            op = package.clear_unused_cache_files_async()
        else:
            op = package.clear_all_cache_files_async()
        await _wait(package, op)
        cleared = getattr(op, "cleared_count", 0)
        console.print(f"[green]✓ Removed {cleared} cached bundles.[/green]")

    _run(_clear_async())
