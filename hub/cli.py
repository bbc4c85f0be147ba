"""Command-line front end for the hub.

This module defines the Typer application and its commands. Every
command builds its own HubServices; nothing is shared between commands.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import structlog
import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TextColumn
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .config import ConfigManager
from .errors import HubError, NetworkError
from .extractor import resolve_remote_version
from .interfaces import EventSink, HostPrompter, NoPrompter
from .models import ArtifactKind, OperationRequest, OperationStatus
from .services import HubServices, build_services
from .settings import SettingsStore

if TYPE_CHECKING:
    from .models import PluginDescriptor, StatusReport
    from .streaming import StatusEvent

app = typer.Typer(
    name="vatacars-hub",
    help="Install, update and remove vatSys plugins.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

_STATUS_STYLE = {
    OperationStatus.UP_TO_DATE: "[green]Up to date[/green]",
    OperationStatus.UPDATE_AVAILABLE: "[yellow]Update available[/yellow]",
    OperationStatus.NOT_INSTALLED: "[dim]Not installed[/dim]",
    OperationStatus.NOT_AVAILABLE: "[dim]Not available[/dim]",
    OperationStatus.RUNNING: "[red]Host running[/red]",
    OperationStatus.DONE: "[green]Done[/green]",
    OperationStatus.FAILED: "[red]Failed[/red]",
}


def configure_logging(log_level: str, log_file: Path | None = None) -> None:
    """Configure structlog and standard logging with the specified level.

    Args:
        log_level: Log level string (debug, info, warning, error).
        log_file: Append logs to this file instead of stderr.
    """
    level_map = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }
    level = level_map.get(log_level.lower(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        level=level,
        force=True,
    )

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger_factory = structlog.WriteLoggerFactory(file=log_file.open("a", encoding="utf-8"))
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        logger_factory = structlog.PrintLoggerFactory(file=sys.stderr)
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=logger_factory,
        cache_logger_on_first_use=False,
    )


class ConsolePrompter(HostPrompter):
    """Asks for the host executable on the terminal."""

    def prompt_for_executable(self, executable_name: str, initial_dir: Path | None) -> Path | None:
        """Ask for the path; an empty answer cancels."""
        hint = f" (e.g. {initial_dir / executable_name})" if initial_dir else ""
        answer = Prompt.ask(f"Path to {executable_name}{hint}, empty to cancel", default="", console=console)
        answer = answer.strip().strip('"')
        return Path(answer) if answer else None


class ProgressSink(EventSink):
    """Renders status events as rich progress bars, one per plugin."""

    def __init__(self, progress: Progress) -> None:
        self.progress = progress
        self._tasks: dict[str, TaskID] = {}

    def emit(self, event: StatusEvent) -> None:
        task = self._tasks.get(event.plugin_name)
        if task is None:
            task = self.progress.add_task(event.plugin_name, total=100, status="")
            self._tasks[event.plugin_name] = task

        label = event.status.value.replace("_", " ")
        if event.status == OperationStatus.DOWNLOADING:
            if event.percent is not None:
                self.progress.update(task, completed=event.percent, status=label)
            else:
                self.progress.update(task, status=f"{label} {event.bytes or 0} bytes")
        elif event.is_terminal:
            self.progress.update(task, completed=100, status=label)
        else:
            self.progress.update(task, status=label)


@dataclass
class _CliState:
    config_path: Path | None = None
    settings_path: Path | None = None
    interactive: bool = True


def _state(ctx: typer.Context) -> _CliState:
    if not isinstance(ctx.obj, _CliState):
        ctx.obj = _CliState()
    return ctx.obj


def _get_config_manager(ctx: typer.Context) -> ConfigManager:
    """Get the configuration manager."""
    return ConfigManager(_state(ctx).config_path)


def _get_services(ctx: typer.Context, sink: EventSink | None = None) -> HubServices:
    state = _state(ctx)
    prompter: HostPrompter = ConsolePrompter() if state.interactive else NoPrompter()
    return build_services(
        _get_config_manager(ctx),
        prompter=prompter,
        sink=sink,
        settings=SettingsStore(state.settings_path),
        current_version=__version__,
    )


def _new_progress() -> Progress:
    return Progress(
        TextColumn("[cyan]{task.description}"),
        BarColumn(),
        TextColumn("{task.fields[status]}"),
        console=console,
        transient=False,
    )


def _select_plugins(services: HubServices, names: list[str] | None) -> list[PluginDescriptor]:
    if not names:
        return services.registry.get_all()

    selected = []
    for name in names:
        descriptor = services.registry.get(name)
        if descriptor is None:
            console.print(f"[yellow]Warning: Plugin '{name}' not found[/yellow]")
        else:
            selected.append(descriptor)
    return selected


def _require_plugin(services: HubServices, name: str) -> PluginDescriptor:
    descriptor = services.registry.get(name)
    if descriptor is None:
        console.print(f"[red]Unknown plugin: {name}[/red]")
        raise typer.Exit(code=1)
    return descriptor


def _print_event(event: StatusEvent) -> None:
    style = _STATUS_STYLE.get(event.status, event.status.value)
    details = event.error or event.message or (f"version {event.version}" if event.version else "")
    console.print(f"[cyan]{event.plugin_name}[/cyan]: {style} {details}".rstrip())


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]vatacars-hub[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Configuration file to use."),
    ] = None,
    settings: Annotated[
        Path | None,
        typer.Option("--settings", help="Settings file to use."),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", "-l", help="Log level (debug, info, warning, error)."),
    ] = None,
    no_prompt: Annotated[
        bool,
        typer.Option("--no-prompt", help="Never ask for the vatSys location."),
    ] = False,
) -> None:
    """vatACARS Hub: plugin manager for vatSys.

    Checks GitHub for plugin releases and installs them into the vatSys
    Plugins directory, asking for elevation when that directory is protected.
    """
    state = _CliState(config_path=config, settings_path=settings, interactive=not no_prompt)
    ctx.obj = state

    hub_config = ConfigManager(config).get_config()
    configure_logging(log_level or hub_config.log_level.value, hub_config.log_file)


@app.command("list")
def list_plugins(ctx: typer.Context) -> None:
    """List the plugins the hub knows about."""
    services = _get_services(ctx)

    table = Table(title="Plugins", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Repository")
    table.add_column("Kind")
    table.add_column("Description", style="dim")

    for descriptor in services.registry.get_all():
        kind = descriptor.artifact_kind.value if descriptor.artifact_kind else "auto"
        table.add_row(descriptor.name, descriptor.source_repository, kind, descriptor.description or "")

    console.print(table)


@app.command()
def status(
    ctx: typer.Context,
    plugins: Annotated[
        list[str] | None,
        typer.Argument(help="Plugins to check. Checks all when omitted."),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print reports as JSON lines."),
    ] = False,
) -> None:
    """Show installed versions and available updates."""
    services = _get_services(ctx)
    descriptors = _select_plugins(services, plugins)
    if not descriptors:
        console.print("[yellow]No plugins to check[/yellow]")
        return

    reports = asyncio.run(_check_all(services, descriptors))

    if as_json:
        for report in reports:
            typer.echo(json.dumps(report.to_dict()))
    else:
        _print_status_table(reports)

    if any(r.status == OperationStatus.FAILED for r in reports):
        raise typer.Exit(code=1)


async def _check_all(services: HubServices, descriptors: list[PluginDescriptor]) -> list[StatusReport]:
    return [await services.reconciler.check(d) for d in descriptors]


def _print_status_table(reports: list[StatusReport]) -> None:
    table = Table(title="Plugin Status", show_header=True)
    table.add_column("Plugin", style="cyan")
    table.add_column("Installed")
    table.add_column("Available")
    table.add_column("Status", style="bold")
    table.add_column("Notes", style="dim")

    for report in reports:
        table.add_row(
            report.plugin_name,
            report.record.installed_version or ("[dim]?[/dim]" if report.record.installed else "[dim]-[/dim]"),
            report.remote_version or "[dim]-[/dim]",
            _STATUS_STYLE.get(report.status, report.status.value),
            report.message or (report.reason.value if report.reason else ""),
        )

    console.print(table)


@app.command()
def install(
    ctx: typer.Context,
    plugin: Annotated[str, typer.Argument(help="Plugin to install.")],
    url: Annotated[
        str | None,
        typer.Option("--url", "-u", help="Asset URL. Defaults to the latest release asset."),
    ] = None,
    version: Annotated[
        str | None,
        typer.Option("--version", help="Version being installed, if known."),
    ] = None,
    kind: Annotated[
        ArtifactKind | None,
        typer.Option("--kind", "-k", help="Artifact kind; inferred from the URL when omitted."),
    ] = None,
) -> None:
    """Install or reinstall a plugin."""
    with _new_progress() as progress:
        services = _get_services(ctx, ProgressSink(progress))
        descriptor = _require_plugin(services, plugin)
        event = asyncio.run(_install(services, descriptor, url, version, kind))

    _print_event(event)
    if event.status != OperationStatus.DONE:
        raise typer.Exit(code=1)


async def _install(
    services: HubServices,
    descriptor: PluginDescriptor,
    url: str | None,
    version: str | None,
    kind: ArtifactKind | None,
) -> StatusEvent:
    if url is None:
        try:
            release = await services.release_client.latest_release(descriptor.source_repository)
        except NetworkError as e:
            console.print(f"[red]Could not fetch the latest release: {e}[/red]")
            raise typer.Exit(code=1) from e
        if not release.asset_url:
            console.print(f"[red]The latest release of {descriptor.name} has no installable asset[/red]")
            raise typer.Exit(code=1)
        url = release.asset_url
        version = version or resolve_remote_version(release)
        kind = kind or release.asset_kind

    try:
        request = OperationRequest(plugin_name=descriptor.name, download_url=url, version=version, artifact_kind=kind)
    except ValueError as e:
        console.print(f"[red]Invalid request: {e}[/red]")
        raise typer.Exit(code=1) from e

    return await services.reconciler.install(request, descriptor=descriptor)


@app.command()
def update(
    ctx: typer.Context,
    plugins: Annotated[
        list[str] | None,
        typer.Argument(help="Plugins to update. Updates all when omitted."),
    ] = None,
) -> None:
    """Install or update plugins that are missing or out of date."""
    with _new_progress() as progress:
        services = _get_services(ctx, ProgressSink(progress))
        descriptors = _select_plugins(services, plugins)
        if not descriptors:
            console.print("[yellow]No plugins to update[/yellow]")
            return
        events = asyncio.run(_update_all(services, descriptors))

    for event in events:
        _print_event(event)
    if any(e.status == OperationStatus.FAILED for e in events):
        raise typer.Exit(code=1)


async def _update_all(services: HubServices, descriptors: list[PluginDescriptor]) -> list[StatusEvent]:
    return [await services.reconciler.update(d) for d in descriptors]


@app.command()
def uninstall(
    ctx: typer.Context,
    plugin: Annotated[str, typer.Argument(help="Plugin to remove.")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation."),
    ] = False,
) -> None:
    """Remove an installed plugin."""
    services = _get_services(ctx)
    descriptor = _require_plugin(services, plugin)

    if not yes and not typer.confirm(f"Remove {descriptor.name}?"):
        raise typer.Abort()

    event = asyncio.run(services.reconciler.uninstall(descriptor))
    _print_event(event)
    if event.status != OperationStatus.DONE:
        raise typer.Exit(code=1)


@app.command("self-update")
def self_update(
    ctx: typer.Context,
    download: Annotated[
        bool,
        typer.Option("--download", "-d", help="Download the installer when an update exists."),
    ] = False,
    destination: Annotated[
        Path | None,
        typer.Option("--dest", help="Directory to save the installer in."),
    ] = None,
) -> None:
    """Check whether a newer hub release is available."""
    services = _get_services(ctx)
    try:
        installer = asyncio.run(_self_update(services, download, destination))
    except HubError as e:
        console.print(f"[red]Self-update failed: {e}[/red]")
        raise typer.Exit(code=1) from e

    if installer is not None:
        console.print(f"[green]Installer saved to {installer}[/green]")


async def _self_update(services: HubServices, download: bool, destination: Path | None) -> Path | None:
    info = await services.self_updater.check()
    if not info.update_available:
        console.print(f"[green]vatacars-hub {info.current_version} is up to date[/green]")
        return None

    console.print(
        f"[yellow]Update available: {info.current_version} -> {info.latest_version}[/yellow]"
    )
    if info.release_notes:
        console.print(info.release_notes)
    if not download:
        console.print("Run with --download to fetch the installer.")
        return None
    return await services.self_updater.download(info, destination)


# =============================================================================
# Host Commands
# =============================================================================

host_app = typer.Typer(
    name="host",
    help="Show or change where vatSys is installed.",
    no_args_is_help=True,
)
app.add_typer(host_app, name="host")


@host_app.command("show")
def host_show(ctx: typer.Context) -> None:
    """Show the vatSys location, detecting it if needed."""
    services = _get_services(ctx)
    directory = services.host_locator.resolve()
    if directory is None:
        console.print(f"[yellow]{services.config.host_name} location is not set[/yellow]")
        raise typer.Exit(code=1)
    console.print(str(directory))


@host_app.command("set")
def host_set(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="vatSys.exe or the directory containing it.")],
) -> None:
    """Set the vatSys location."""
    services = _get_services(ctx)
    try:
        directory = services.host_locator.set_location(path)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e
    console.print(f"[green]{services.config.host_name} location set: {directory}[/green]")


@host_app.command("forget")
def host_forget(ctx: typer.Context) -> None:
    """Forget the remembered vatSys location."""
    services = _get_services(ctx)
    if services.host_locator.forget():
        console.print("[green]Location forgotten[/green]")
    else:
        console.print("[yellow]No location was set[/yellow]")


# =============================================================================
# Config Commands
# =============================================================================

config_app = typer.Typer(
    name="config",
    help="Manage configuration.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """Show current configuration."""
    config_manager = _get_config_manager(ctx)
    config = config_manager.get_config()

    table = Table(title="Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    for key, value in config.model_dump(mode="json").items():
        table.add_row(key, str(value))

    console.print(table)


@config_app.command("init")
def config_init(
    ctx: typer.Context,
    force: Annotated[
        bool,
        typer.Option(
            "--force",
            "-f",
            help="Overwrite existing configuration.",
        ),
    ] = False,
) -> None:
    """Initialize configuration file."""
    config_manager = _get_config_manager(ctx)

    if config_manager.init_config(force=force):
        console.print(f"[green]Configuration initialized: {config_manager.config_path}[/green]")
    else:
        console.print(f"[yellow]Configuration already exists: {config_manager.config_path}[/yellow]")
        console.print("Use --force to overwrite.")


@config_app.command("path")
def config_path(ctx: typer.Context) -> None:
    """Show configuration file path."""
    console.print(str(_get_config_manager(ctx).config_path))


def run() -> None:
    """Console script entry point."""
    app()
