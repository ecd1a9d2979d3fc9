"""
Command-line interface for Fleetstat.

Provides commands for continuous and one-shot snapshot collection over SSH.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from fleetstat import __version__
from fleetstat.bootstrap import bootstrap_hosts, bootstrap_targets
from fleetstat.collectors import CollectorRegistry
from fleetstat.config import Config
from fleetstat.engine import CollectionEngine
from fleetstat.errors import FleetstatError
from fleetstat.scheduler import CycleOutcome, Fleet
from fleetstat.session import SessionManager
from fleetstat.store import SnapshotStore
from fleetstat.targets import HostTarget, ResolutionContext, resolve_targets

console = Console()


def setup_logging(level: str, log_file: str | None = None) -> None:
    """Configure logging with rich handler."""
    handlers: list[logging.Handler] = [RichHandler(console=console, rich_tracebacks=True)]
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )
    # paramiko logs every transport event at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error: {escape(message)}[/]")
    sys.exit(1)


def _build_manager(config: Config) -> SessionManager:
    return SessionManager(
        connect_timeout=config.connect_timeout,
        command_timeout=config.effective_command_timeout,
        auto_add_host_keys=config.auto_add_host_keys,
    )


def _prepare_targets(
    config: Config,
    manager: SessionManager,
    hosts: tuple[str, ...],
    identity: Path | None,
    bootstrap: bool,
) -> list[HostTarget]:
    """Resolve host arguments and optionally bootstrap credentials."""
    targets = resolve_targets(
        hosts,
        ResolutionContext.current(),
        identity_file=str(identity) if identity else None,
        ssh_config_path=config.ssh_config_path,
    )
    if bootstrap:
        targets = bootstrap_targets(manager, targets, config.bootstrap_key)
    return targets


def _load_registry(config: Config, collectors_file: Path | None) -> CollectorRegistry:
    return CollectorRegistry.load(collectors_file or config.collectors_file)


hosts_argument = click.argument("hosts", nargs=-1, required=True, metavar="[USER@]HOST[:PORT]...")
identity_option = click.option(
    "-i",
    "--identity",
    type=click.Path(path_type=Path),
    help="Private key file to use (default: from ~/.ssh/config or ~/.ssh/id_rsa)",
)
collectors_option = click.option(
    "-f",
    "--collectors-file",
    type=click.Path(exists=True, path_type=Path),
    help="YAML file listing collectors as {name, command} records",
)
bootstrap_option = click.option(
    "-b",
    "--bootstrap",
    is_flag=True,
    help="Install the bootstrap key on each host before collecting",
)


@click.group()
@click.version_option(version=__version__, prog_name="fleetstat")
@click.option(
    "-c",
    "--config",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "-V",
    "--verbose",
    is_flag=True,
    help="Enable verbose output",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None, verbose: bool) -> None:
    """
    Fleetstat - Remote diagnostic snapshots over SSH.

    Run collectors against one or more hosts and store the results as
    JSON snapshots, continuously or as a single named collection.
    """
    ctx.ensure_object(dict)

    # Load configuration
    if config:
        ctx.obj["config"] = Config.load(config)
    else:
        ctx.obj["config"] = Config.load()

    # Set log level
    log_level = "DEBUG" if verbose else ctx.obj["config"].log_level
    setup_logging(log_level, ctx.obj["config"].log_file)
    ctx.obj["verbose"] = verbose


@main.command()
@hosts_argument
@identity_option
@collectors_option
@bootstrap_option
@click.option(
    "-t",
    "--interval",
    type=click.FloatRange(min=0, min_open=True),
    help="Collection interval in seconds (default: 5)",
)
@click.pass_context
def watch(
    ctx: click.Context,
    hosts: tuple[str, ...],
    identity: Path | None,
    collectors_file: Path | None,
    bootstrap: bool,
    interval: float | None,
) -> None:
    """
    Collect snapshots continuously until interrupted.

    Each host is collected independently; unreachable hosts are retried
    forever without affecting the others.
    """
    config: Config = ctx.obj["config"]
    if interval is not None:
        config.interval = interval

    try:
        config.validate()
        registry = _load_registry(config, collectors_file)
        manager = _build_manager(config)
        targets = _prepare_targets(config, manager, hosts, identity, bootstrap)
    except (FleetstatError, FileNotFoundError) as e:
        _fail(str(e))

    store = SnapshotStore.from_config(config)
    engine = CollectionEngine(manager, registry)
    fleet = Fleet.from_config(config, targets, manager, engine, store)

    console.print()
    console.print(
        Panel.fit(
            f"[bold blue]Fleetstat v{__version__}[/]\n"
            f"Collecting {len(registry)} collectors from {len(targets)} host(s) "
            f"every {config.interval:g}s\n"
            f"[dim]Writing to {store.time_series_root}[/]",
            border_style="blue",
        )
    )
    console.print()

    fleet.run_forever()


@main.command()
@click.argument("name")
@hosts_argument
@identity_option
@collectors_option
@bootstrap_option
@click.option(
    "--format",
    "-F",
    "output_format",
    type=click.Choice(["pretty", "json"]),
    default="pretty",
    help="Output format for the result summary",
)
@click.pass_context
def snapshot(
    ctx: click.Context,
    name: str,
    hosts: tuple[str, ...],
    identity: Path | None,
    collectors_file: Path | None,
    bootstrap: bool,
    output_format: str,
) -> None:
    """
    Take one named snapshot of each host.

    Writes collections/NAME-HOST.json per host. Hosts are collected in
    parallel and are not retried.
    """
    config: Config = ctx.obj["config"]

    try:
        config.validate()
        registry = _load_registry(config, collectors_file)
        manager = _build_manager(config)
        targets = _prepare_targets(config, manager, hosts, identity, bootstrap)
    except (FleetstatError, FileNotFoundError) as e:
        _fail(str(e))

    store = SnapshotStore.from_config(config)
    engine = CollectionEngine(manager, registry)
    fleet = Fleet.from_config(config, targets, manager, engine, store)

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task(f"Collecting '{name}' from {len(targets)} host(s)...", total=None)
        outcomes = fleet.collect_named(name)
        progress.update(task, completed=True)

    if output_format == "json":
        import json

        console.print_json(
            json.dumps(
                {
                    str(o.target): {
                        "success": o.success,
                        "path": str(o.path) if o.path else None,
                        "error": str(o.error) if o.error else None,
                    }
                    for o in outcomes
                }
            )
        )
    else:
        _display_outcomes(outcomes)

    if not all(o.success for o in outcomes):
        sys.exit(1)


def _display_outcomes(outcomes: list[CycleOutcome]) -> None:
    """Display a summary table of named collection results."""
    table = Table(title="Collection Results", show_header=True)
    table.add_column("Host", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Entries", justify="right")
    table.add_column("Output")

    for outcome in outcomes:
        if outcome.success:
            entries = str(len(outcome.snapshot.entries)) if outcome.snapshot else "0"
            table.add_row(str(outcome.target), "[green]✓[/]", entries, str(outcome.path))
        else:
            table.add_row(str(outcome.target), "[red]✗[/]", "-", f"[red]{outcome.error}[/]")

    console.print(table)


@main.command("bootstrap")
@hosts_argument
@identity_option
@click.pass_context
def bootstrap_command(ctx: click.Context, hosts: tuple[str, ...], identity: Path | None) -> None:
    """
    Install the bootstrap key on each host and exit.

    Generates the key pair on first use (see 'bootstrap_key' in the config).
    """
    config: Config = ctx.obj["config"]
    manager = _build_manager(config)

    try:
        targets = resolve_targets(
            hosts,
            ResolutionContext.current(),
            identity_file=str(identity) if identity else None,
            ssh_config_path=config.ssh_config_path,
        )
        results = bootstrap_hosts(manager, targets, config.bootstrap_key)
    except FleetstatError as e:
        _fail(str(e))

    failed = 0
    for result in results:
        if result.success:
            console.print(f"[green]✓[/] {result.target}")
        else:
            failed += 1
            console.print(f"[red]✗[/] {result.target}: {escape(str(result.error))}")

    if failed:
        sys.exit(1)


@main.command("collectors")
@collectors_option
@click.pass_context
def list_collectors(ctx: click.Context, collectors_file: Path | None) -> None:
    """List configured collectors in execution order."""
    config: Config = ctx.obj["config"]

    try:
        registry = _load_registry(config, collectors_file)
    except (FleetstatError, FileNotFoundError) as e:
        _fail(str(e))

    table = Table(title="Configured Collectors", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Command")

    for collector in registry:
        table.add_row(collector.name, collector.kind.value, collector.command)

    console.print()
    console.print(table)
    if not len(registry):
        console.print("[dim]No collectors configured; snapshots will be empty.[/]")


@main.command("version", short_help="Display version information")
def version() -> None:
    """Display version information for Fleetstat."""
    console.print()
    console.print(
        Panel.fit(
            f"[bold blue]Fleetstat[/]\nVersion: [cyan]{__version__}[/]",
            border_style="blue",
            title="Version Information",
        )
    )
    console.print()

    table = Table(show_header=False, box=None)
    table.add_column("Component", style="dim", width=20)
    table.add_column("Version", style="cyan")

    import paramiko

    table.add_row("Fleetstat", __version__)
    table.add_row("Paramiko", paramiko.__version__)
    table.add_row("Python", f"{sys.version.split()[0]}")

    console.print(table)
    console.print()


@main.command()
@click.argument("output_path", type=click.Path(path_type=Path))
def init_config(output_path: Path) -> None:
    """
    Generate a sample configuration file.

    Creates a YAML configuration file with all available options
    and helpful comments.
    """
    sample_config = """# Fleetstat Configuration

# Collection schedule (continuous mode)
schedule:
  # Seconds between snapshots
  interval: 5

# Reconnect behaviour after a failed connection or collector
retry:
  # Seconds to wait before reconnecting
  delay: 15

  # Multiply the delay by this after each consecutive failure (1 = fixed)
  backoff: 1

  # Upper bound for the delay in seconds
  max_delay: 300

  # Failure classes that stop retrying a host:
  # unreachable, handshake, authentication, command (empty = never give up)
  give_up_on: []

# SSH settings
ssh:
  connect_timeout: 30

  # Seconds before a hung collector command fails (0 = no limit)
  command_timeout: 60

  # Accept unknown host keys
  auto_add_host_keys: true

  # OpenSSH client config used to resolve hosts
  config_path: ~/.ssh/config

  # Key pair created by 'fleetstat bootstrap'
  bootstrap_key: bootstrap.key

# Collectors
collection:
  # YAML list of {name, command} records
  collectors_file: null

# Output settings
output:
  dir: .
  time_series_dir: timeSeries
  collections_dir: collections

# Logging
logging:
  # Log level: DEBUG, INFO, WARNING, ERROR
  level: INFO

  # Log file path (null = console only)
  file: null
"""

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(sample_config)
    console.print(f"[green]✓ Configuration file created: {output_path}[/]")
    console.print()
    console.print("Next steps:")
    console.print("  1. Point 'collectors_file' at your collector definitions")
    console.print("  2. Run a one-off capture: [cyan]fleetstat snapshot baseline user@host[/]")
    console.print("  3. Start continuous collection: [cyan]fleetstat watch user@host[/]")


if __name__ == "__main__":
    main()
