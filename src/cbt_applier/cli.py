"""
Command-line interface for toggling VMware change block tracking.
Changes are committed per VM with a transient create/delete snapshot pair.
"""

import json
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from typing import List, Optional

import structlog
import typer
from pydantic import SecretStr, ValidationError
from rich.console import Console
from rich.table import Table

from .applier import ChangeTrackingApplier
from .config import Settings, get_settings
from .errors import PreflightUnavailableError
from .logging_config import configure_logging
from .models import NotFound, OutcomeReport, OutcomeStatus, retry_candidates
from .vsphere_client import VSphereClient

CONFIG_EXIT_CODE = 1
PREFLIGHT_EXIT_CODE = 2

# Initialize CLI app and console
app = typer.Typer(
    name="cbt-applier",
    help="Enable or disable VMware change block tracking on VMs",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

logger = structlog.get_logger()

STATUS_STYLES = {
    OutcomeStatus.APPLIED: "✅ applied",
    OutcomeStatus.APPLIED_UNVERIFIED: "⚠️  unverified",
    OutcomeStatus.TARGET_NOT_FOUND: "❓ not found",
    OutcomeStatus.FAILED: "❌ failed",
    OutcomeStatus.WOULD_APPLY: "🔍 would apply",
    OutcomeStatus.UNCHANGED: "➖ unchanged",
}


def load_settings(
    server: Optional[str],
    user: Optional[str],
    password: Optional[str],
) -> Settings:
    """Load settings from the environment and apply CLI overrides."""
    try:
        settings = get_settings()
    except ValidationError as e:
        err_console.print(f"❌ Invalid configuration: {e}")
        raise typer.Exit(CONFIG_EXIT_CODE)

    overrides: dict[str, object] = {}
    if server:
        overrides["server"] = server
    if user:
        overrides["user"] = user
    if password:
        overrides["password"] = SecretStr(password)
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(settings.log_level, settings.log_format)

    if not settings.connection_configured:
        err_console.print("❌ vCenter server and user are required (--server/--user or CBT_SERVER/CBT_USER)")
        raise typer.Exit(CONFIG_EXIT_CODE)
    return settings


@contextmanager
def interrupt_cancels(applier: ChangeTrackingApplier) -> Iterator[None]:
    """First Ctrl-C stops the batch after the current VM, a second one aborts."""
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum: int, frame: object) -> None:
        applier.cancel()
        signal.signal(signal.SIGINT, previous)

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def print_outcomes(outcomes: List[OutcomeReport], title: str) -> None:
    """Render outcomes as a summary table."""
    table = Table(title=title)
    table.add_column("Target", style="cyan")
    table.add_column("VM", style="blue")
    table.add_column("Status", style="bold")
    table.add_column("Details", style="yellow")

    for outcome in outcomes:
        table.add_row(
            outcome.target,
            outcome.vm_name or "-",
            STATUS_STYLES[outcome.status],
            outcome.message or "-",
        )

    console.print(table)


@app.command("apply")
def apply_command(
    targets: List[str] = typer.Argument(..., help="VM names or glob patterns"),
    enable: bool = typer.Option(
        True, "--enable/--disable", help="Enable (default) or disable change block tracking"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Resolve targets and show what would be changed"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    server: Optional[str] = typer.Option(None, "--server", "-s", help="vCenter hostname"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="vCenter username"),
    password: Optional[str] = typer.Option(None, "--password", "-p", help="vCenter password"),
    as_json: bool = typer.Option(False, "--json", help="Print outcomes as JSON"),
) -> None:
    """
    Apply a change block tracking setting to VMs.

    Each VM is reconfigured, then a transient snapshot is created and deleted
    to commit the change. Enabling is verified afterwards. Per-VM problems are
    reported as warnings and never stop the batch.
    """
    settings = load_settings(server, user, password)
    action = "enable" if enable else "disable"

    if not dry_run and not yes:
        confirmed = typer.confirm(
            f"{action.capitalize()} change block tracking on {len(targets)} target(s)? "
            "Each VM gets a snapshot create/delete cycle",
            default=False,
            err=True,
        )
        if not confirmed:
            err_console.print("🔍 Not confirmed, running as dry run - no changes will be made")
            dry_run = True

    client = VSphereClient(settings)
    applier = ChangeTrackingApplier(settings, client)
    try:
        client.connect()
        with interrupt_cancels(applier):
            outcomes = applier.apply(targets, enable, dry_run=dry_run)
    except PreflightUnavailableError as e:
        err_console.print(f"❌ vCenter unavailable: {e}")
        raise typer.Exit(PREFLIGHT_EXIT_CODE)
    finally:
        client.disconnect()

    if as_json:
        typer.echo(json.dumps([o.to_dict() for o in outcomes], indent=2))
        return

    title = f"Change block tracking: {action}" + (" (dry run)" if dry_run else "")
    print_outcomes(outcomes, title)

    retry = retry_candidates(outcomes)
    if retry:
        console.print(f"\n⚠️  Re-run to finish committing: {' '.join(retry)}")


@app.command("show")
def show_command(
    targets: List[str] = typer.Argument(..., help="VM names or glob patterns"),
    server: Optional[str] = typer.Option(None, "--server", "-s", help="vCenter hostname"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="vCenter username"),
    password: Optional[str] = typer.Option(None, "--password", "-p", help="vCenter password"),
) -> None:
    """Show the current change block tracking setting of VMs."""
    settings = load_settings(server, user, password)

    table = Table(title="Change block tracking")
    table.add_column("Target", style="cyan")
    table.add_column("VM", style="blue")
    table.add_column("Enabled", style="green")

    client = VSphereClient(settings)
    try:
        client.connect()
        client.ensure_session()
        for target in targets:
            for row in _show_rows(client, target):
                table.add_row(*row)
    except PreflightUnavailableError as e:
        err_console.print(f"❌ vCenter unavailable: {e}")
        raise typer.Exit(PREFLIGHT_EXIT_CODE)
    finally:
        client.disconnect()

    console.print(table)


def _show_rows(client: VSphereClient, target: str) -> List[tuple[str, str, str]]:
    """Table rows for one target. Errors are reported per target and per VM."""
    try:
        resolved = client.resolve_vms(target)
    except Exception as e:
        logger.warning("Failed to resolve target", target=target, error=str(e))
        return [(target, "-", "⚠️  unknown")]

    if isinstance(resolved, NotFound):
        logger.warning("Target not found", target=target, reason=resolved.reason)
        return [(target, "-", f"❓ {resolved.reason}")]

    rows = []
    for vm in resolved:
        vm_name = "-"
        try:
            vm_name = vm.name
            enabled = client.get_current_setting(vm)
        except Exception as e:
            logger.warning("Cannot read change tracking", target=target, vm=vm_name, error=str(e))
            rows.append((target, vm_name, "⚠️  unknown"))
            continue
        rows.append((target, vm_name, "✅ yes" if enabled else "❌ no"))
    return rows


def main() -> None:
    """Console script entrypoint."""
    app()


if __name__ == "__main__":
    main()
