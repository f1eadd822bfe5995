"""
CLI interface for envorchestra.

Provides commands to validate, plan, provision and decommission disposable
test environments declared as descriptor sets (YAML/JSON files in the
configured definitions directory, or any path).

Exit codes:
    0  success
    1  usage or configuration error
    2  provisioning aborted (recovery attempted)
    3  decommission left resources behind
    4  descriptor set failed validation (cycle, unknown dependency)
"""

import json
import shutil
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import click

from envorchestra import __version__
from envorchestra.report import (
    EXIT_INVALID_DESCRIPTORS,
    EXIT_USAGE,
    OPERATION_PROVISION,
)

# Descriptor sets shipped with the package
BUNDLED_ENVIRONMENTS_DIR = Path(__file__).parent / "environments"


@click.group()
@click.version_option(version=__version__, prog_name="envorchestra")
@click.option("--log-level", default=None, help="Override logging level (DEBUG, INFO, WARNING, ERROR)")
@click.option(
    "--log-format",
    type=click.Choice(["structured", "pretty"]),
    default=None,
    help="Override console log format",
)
@click.pass_context
def main(ctx, log_level: Optional[str], log_format: Optional[str]):
    """
    envorchestra - Disposable environment lifecycle orchestrator.

    Creates interdependent cloud resources in dependency order, waits for
    each to become ready, retries transient failures, and tears everything
    down in reverse order.
    """
    from envorchestra.config import ConfigError, EnvorchestraConfig, load_config
    from envorchestra.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except FileNotFoundError:
        # No config yet: run with defaults
        config = EnvorchestraConfig()
    except ConfigError as e:
        ctx.obj["config_error"] = str(e)
        config = None
    ctx.obj["config"] = config

    setup_logging(
        log_file=config.get_log_file_path() if config else None,
        log_level=log_level or (config.get_log_level() if config else "INFO"),
        log_format=log_format or (config.get_log_format() if config else "pretty"),
    )


def _require_config(ctx):
    config = ctx.obj.get("config")
    if config is None:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'envorchestra init --force' to recreate the configuration file.", err=True)
        raise SystemExit(EXIT_USAGE)
    return config


def _load_descriptor_set(config, name_or_path: str):
    """Load a descriptor set from a path, the definitions dir, or the bundled sets."""
    from envorchestra.errors import DescriptorValidationError
    from envorchestra.registry import DescriptorNotFoundError, DescriptorRegistry

    for directory in (config.definitions_dir, BUNDLED_ENVIRONMENTS_DIR):
        try:
            return DescriptorRegistry(directory).load(name_or_path)
        except DescriptorNotFoundError:
            continue
        except DescriptorValidationError as e:
            click.echo(f"✗ Invalid descriptor set '{name_or_path}': {e}", err=True)
            raise SystemExit(EXIT_INVALID_DESCRIPTORS)

    click.echo(f"✗ Unknown descriptor set: {name_or_path}", err=True)
    available = DescriptorRegistry(config.definitions_dir).list_sets()
    if available:
        click.echo("\nAvailable descriptor sets:", err=True)
        for name in available:
            click.echo(f"  {name}", err=True)
    raise SystemExit(EXIT_USAGE)


def _check_env(descriptor_set) -> None:
    from envorchestra.errors import DescriptorValidationError
    from envorchestra.registry import check_required_env

    try:
        check_required_env(descriptor_set)
    except DescriptorValidationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_USAGE)


@contextmanager
def _interrupt_handler(cancel_event: threading.Event):
    """
    First Ctrl-C requests cancellation (rollback still runs); a second one exits.
    """
    from envorchestra.utils import print_warning

    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        print_warning(
            "Interrupt received: no new resources will be started and created "
            "resources will be rolled back. Press Ctrl-C again to exit immediately."
        )

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not in the main thread; cancellation only via the event
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _emit(ctx, report, report_path: Optional[str], as_json: bool) -> None:
    """Persist, print and exit with the report's code."""
    from envorchestra.run_store import FileRunStore

    config = ctx.obj["config"]
    data = report.to_dict()

    if not report.dry_run:
        FileRunStore(config.runs_dir).save(report)

    if report_path:
        path = Path(report_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2))

    if as_json:
        click.echo(json.dumps(data, indent=2))
    else:
        report.render()
        if report_path:
            click.echo(f"Report written to {report_path}")

    if report.exit_code != 0:
        raise SystemExit(report.exit_code)


def _build_orchestrator(config, dry_run: bool, max_workers: Optional[int], existing=()):
    from envorchestra.controllers import ControllerRegistry
    from envorchestra.orchestrator import Orchestrator

    if dry_run:
        controllers = ControllerRegistry.create_dry_run(existing=existing)
    else:
        controllers = ControllerRegistry.create_default(timeout=config.command_timeout)

    return Orchestrator(
        controllers,
        config.retry,
        max_workers=max_workers if max_workers is not None else config.max_workers,
        max_probe_errors=config.max_probe_errors,
        dry_run=dry_run,
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize envorchestra configuration."""
    from envorchestra.config import CONFIG_FILENAME, default_config_data, get_envorchestra_home
    import yaml

    home = get_envorchestra_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / CONFIG_FILENAME
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(EXIT_USAGE)

    default_cfg = default_config_data(home)
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text(
            "# AWS_PROFILE=...\n# AWS_REGION=us-east-1\n# CLUSTER_NAME=...\n# DB_PASSWORD=...\n"
        )

    definitions_dir = Path(default_cfg["definitions_dir"])
    definitions_dir.mkdir(parents=True, exist_ok=True)
    for example in BUNDLED_ENVIRONMENTS_DIR.glob("*.yaml"):
        target = definitions_dir / example.name
        if not target.exists():
            shutil.copy(example, target)

    click.echo(f"Initialized envorchestra config at {cfg_path}")
    click.echo(f"Descriptor sets live in {definitions_dir}")


@main.command("validate")
@click.argument("descriptors")
@click.option("--check-env", is_flag=True, help="Also require every variable in required_env")
@click.pass_context
def validate_cmd(ctx, descriptors: str, check_env: bool):
    """
    Validate a descriptor set without touching anything.

    DESCRIPTORS is a descriptor set name or a path to a YAML/JSON file.
    """
    config = _require_config(ctx)
    descriptor_set = _load_descriptor_set(config, descriptors)
    if check_env:
        _check_env(descriptor_set)
    click.echo(f"✓ {descriptor_set.name}: {len(descriptor_set)} resources, no cycles")


@main.command("plan")
@click.argument("descriptors")
@click.pass_context
def plan(ctx, descriptors: str):
    """
    Show creation and deletion order for a descriptor set.

    Example:

        envorchestra plan reports-server-test
    """
    from rich.table import Table

    from envorchestra.registry import reverse_order, topological_order
    from envorchestra.utils import console, format_duration

    config = _require_config(ctx)
    descriptor_set = _load_descriptor_set(config, descriptors)

    table = Table(title=f"Creation order: {descriptor_set.name}")
    table.add_column("#", justify="right")
    table.add_column("Resource", style="cyan")
    table.add_column("Kind")
    table.add_column("Depends on")
    table.add_column("Create timeout", justify="right")
    table.add_column("Delete timeout", justify="right")
    table.add_column("Poll", justify="right")
    for i, d in enumerate(topological_order(descriptor_set.resources), start=1):
        table.add_row(
            str(i),
            d.id,
            d.kind.value,
            ", ".join(sorted(d.depends_on)) or "-",
            format_duration(d.creation_timeout),
            format_duration(d.deletion_timeout),
            format_duration(d.poll_interval),
        )
    console.print(table)

    deletion = " -> ".join(d.id for d in reverse_order(descriptor_set.resources))
    console.print(f"Deletion order: {deletion}")


@main.command("provision")
@click.argument("descriptors")
@click.option("--dry-run", is_flag=True, help="Walk the plan without calling any provider")
@click.option("--max-workers", type=click.IntRange(min=1), default=None, help="Process independent resources concurrently")
@click.option("--report", "report_path", type=click.Path(dir_okay=False), help="Write the JSON run report here")
@click.option("--json", "as_json", is_flag=True, help="Print the JSON run report instead of the summary")
@click.pass_context
def provision(ctx, descriptors: str, dry_run: bool, max_workers: Optional[int], report_path: Optional[str], as_json: bool):
    """
    Provision an environment.

    Resources are created in dependency order. If any resource fails, times
    out or the run is interrupted, everything already created is rolled back.

    Examples:

        envorchestra provision reports-server-test

        envorchestra provision ./environments/staging.yaml --max-workers 2

        envorchestra provision reports-server-test --dry-run
    """
    from envorchestra.errors import DescriptorValidationError
    from envorchestra.utils import print_banner

    config = _require_config(ctx)
    descriptor_set = _load_descriptor_set(config, descriptors)
    if not dry_run:
        _check_env(descriptor_set)

    if dry_run and not as_json:
        print_banner("DRY RUN MODE (no provider calls)")

    orchestrator = _build_orchestrator(config, dry_run, max_workers)
    try:
        with _interrupt_handler(orchestrator.cancel_event):
            report = orchestrator.provision(descriptor_set)
    except DescriptorValidationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_INVALID_DESCRIPTORS)

    _emit(ctx, report, report_path, as_json)


@main.command("decommission")
@click.argument("descriptors")
@click.option(
    "--from-run",
    "from_run",
    default=None,
    help="Only tear down what a stored provisioning run created ('latest' or a run id)",
)
@click.option("--dry-run", is_flag=True, help="Walk the plan without calling any provider")
@click.option("--max-workers", type=click.IntRange(min=1), default=None, help="Process independent resources concurrently")
@click.option("--report", "report_path", type=click.Path(dir_okay=False), help="Write the JSON run report here")
@click.option("--json", "as_json", is_flag=True, help="Print the JSON run report instead of the summary")
@click.pass_context
def decommission(
    ctx,
    descriptors: str,
    from_run: Optional[str],
    dry_run: bool,
    max_workers: Optional[int],
    report_path: Optional[str],
    as_json: bool,
):
    """
    Decommission an environment.

    Every resource is deleted in reverse dependency order. A failed delete
    does not stop the others; resources still present are listed for manual
    cleanup. Running it again is safe.

    Examples:

        envorchestra decommission reports-server-test

        envorchestra decommission reports-server-test --from-run latest
    """
    from envorchestra.errors import DescriptorValidationError
    from envorchestra.run_store import FileRunStore
    from envorchestra.utils import print_banner

    config = _require_config(ctx)
    descriptor_set = _load_descriptor_set(config, descriptors)
    if not dry_run:
        _check_env(descriptor_set)

    prior = None
    if from_run:
        store = FileRunStore(config.runs_dir)
        if from_run == "latest":
            stored = store.latest(environment=descriptor_set.name, operation=OPERATION_PROVISION)
        else:
            stored = store.load(from_run)
        if stored is None or stored.provisioning is None:
            click.echo(f"✗ No provisioning run found for --from-run {from_run}", err=True)
            raise SystemExit(EXIT_USAGE)
        prior = stored.provisioning
        click.echo(f"Using provisioning run {prior.run_id} ({prior.phase.value})")

    if dry_run and not as_json:
        print_banner("DRY RUN MODE (no provider calls)")

    existing = prior.existing_ids() if prior is not None else descriptor_set.ids
    orchestrator = _build_orchestrator(config, dry_run, max_workers, existing=existing)
    try:
        with _interrupt_handler(orchestrator.cancel_event):
            report = orchestrator.decommission(descriptor_set, prior=prior)
    except DescriptorValidationError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(EXIT_INVALID_DESCRIPTORS)

    _emit(ctx, report, report_path, as_json)


@main.group("runs")
def runs_group():
    """Inspect stored run reports."""
    pass


@runs_group.command("list")
@click.option("--environment", default=None, help="Only runs for this descriptor set")
@click.pass_context
def list_runs(ctx, environment: Optional[str]):
    """List stored runs, newest first."""
    from envorchestra.run_store import FileRunStore

    config = _require_config(ctx)
    reports = FileRunStore(config.runs_dir).list_runs()
    if environment:
        reports = [r for r in reports if r.environment == environment]

    if not reports:
        click.echo("No runs found.")
        return

    for report in reports:
        primary = report.primary
        click.echo(
            f"{report.run_id}  {report.operation:<12}  {report.environment:<24}  "
            f"{primary.phase.value:<10}  exit={report.exit_code}"
        )


@runs_group.command("show")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, help="Print the stored JSON report")
@click.pass_context
def show_run(ctx, run_id: str, as_json: bool):
    """Show a stored run report."""
    from envorchestra.run_store import FileRunStore

    config = _require_config(ctx)
    report = FileRunStore(config.runs_dir).load(run_id)
    if report is None:
        click.echo(f"✗ Unknown run: {run_id}", err=True)
        raise SystemExit(EXIT_USAGE)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        report.render()


if __name__ == "__main__":
    main()
