"""
Terminal front-end for the provisioner.

    python -m provisioner.cli check
    python -m provisioner.cli install package
    python -m provisioner.cli remove model
    python -m provisioner.cli guide --open

Ctrl+C during an install cancels it and waits until the session dir is cleaned up.
"""

import argparse
import asyncio
import sys
import webbrowser
from typing import Optional, Sequence

from rich import box
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from provisioner.config import settings
from provisioner.core.exceptions import ProvisioningBaseException
from provisioner.logging_config import setup_logging
from provisioner.models.provisioning import (
    DependencyKind,
    DependencyState,
    EnvironmentSnapshot,
    InstallStatus,
    ProgressEvent,
)
from provisioner.services.provisioning_service import ProvisioningService

console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_REFUSED = 2
EXIT_CANCELLED = 130

STATE_STYLE = {
    DependencyState.INSTALLED: "[green]✓ installed[/green]",
    DependencyState.MISSING: "[red]✗ missing[/red]",
    DependencyState.UNKNOWN: "[dim]? unknown[/dim]",
}


def render_snapshot(snapshot: EnvironmentSnapshot) -> Table:
    t = Table(box=box.SIMPLE, show_header=False, padding=(0, 2), border_style="dim")
    t.add_column(style="cyan", no_wrap=True, width=14)
    t.add_column()

    for kind in DependencyKind:
        state = snapshot.state_of(kind)
        t.add_row(kind.value.capitalize(), STATE_STYLE.get(state, f"[yellow]{state.value}[/yellow]"))
    t.add_row("Ready", "[green]yes[/green]" if snapshot.ready else "[red]no[/red]")
    return t


def print_snapshot(snapshot: EnvironmentSnapshot) -> None:
    console.print(render_snapshot(snapshot))
    console.print(f"[bold]{snapshot.status_message}[/bold]")
    if snapshot.check_bypassed:
        console.print("[yellow]⚠[/yellow] Environment check bypassed by IGNORE_ENVIRONMENT_CHECK")


def print_terminal(event: ProgressEvent, service: ProvisioningService) -> int:
    if event.status == InstallStatus.INSTALLED:
        console.print(f"[green]✓[/green] {event.kind.value} installed")
        return EXIT_OK
    if event.status == InstallStatus.CANCELLED:
        console.print(f"[yellow]⚠[/yellow] {event.kind.value} install cancelled, temporary files removed")
        return EXIT_CANCELLED

    console.print(f"[red]✗[/red] {event.kind.value} install failed [dim]({event.error_code})[/dim]")
    console.print(f"  {event.message}")
    if event.retryable:
        console.print("  [dim]This looks temporary, try again in a moment[/dim]")
    else:
        console.print(f"  Manual installation guide: [cyan]{service.install_guide_url(event.kind)}[/cyan]")
    return EXIT_FAILED


# ═══════════════════════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════════════════════

async def cmd_check(service: ProvisioningService, args) -> int:
    with console.status("Checking OCR environment..."):
        snapshot = await service.check_all()
    print_snapshot(snapshot)
    return EXIT_OK if snapshot.ready else EXIT_FAILED


async def cmd_install(service: ProvisioningService, args) -> int:
    kind = DependencyKind(args.kind)
    with console.status("Checking OCR environment..."):
        await service.check_all()

    if service.state_of(kind) == DependencyState.INSTALLED:
        console.print(f"[green]✓[/green] {kind.value} is already installed")
        return EXIT_OK

    session = await service.start_install(kind)
    terminal: Optional[ProgressEvent] = None

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True
    ) as progress:
        task = progress.add_task(f"Installing {kind.value}...", total=100)
        try:
            async for event in session.events():
                progress.update(task, completed=event.progress, description=event.message or kind.value)
                terminal = event
        except asyncio.CancelledError:
            # First Ctrl+C cancels the main task; turn it into an install cancel
            progress.update(task, description="Cancelling...")
            service.cancel(kind)
            terminal = await session.wait()

    return print_terminal(terminal, service)


async def cmd_remove(service: ProvisioningService, args) -> int:
    kind = DependencyKind(args.kind)
    with console.status("Checking OCR environment..."):
        await service.check_all()
    with console.status(f"Removing {kind.value}..."):
        snapshot = await service.remove(kind)
    console.print(f"[green]✓[/green] {kind.value} removed")
    print_snapshot(snapshot)
    return EXIT_OK


async def cmd_guide(service: ProvisioningService, args) -> int:
    kinds = [DependencyKind(args.kind)] if args.kind else list(DependencyKind)
    for kind in kinds:
        url = service.install_guide_url(kind)
        console.print(f"[cyan]{kind.value:<12}[/cyan] {url}")
        if args.open:
            webbrowser.open(url)
    return EXIT_OK


COMMANDS = {
    "check": cmd_check,
    "install": cmd_install,
    "remove": cmd_remove,
    "guide": cmd_guide,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="provisioner", description="Manage the OCR runtime environment")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL, help="File log level")
    sub = parser.add_subparsers(dest="command", required=True)

    kinds = [k.value for k in DependencyKind]
    sub.add_parser("check", help="Probe python, cnocr and the models")

    install = sub.add_parser("install", help="Install one dependency")
    install.add_argument("kind", choices=kinds)

    remove = sub.add_parser("remove", help="Uninstall the package or delete the models")
    remove.add_argument("kind", choices=[DependencyKind.PACKAGE.value, DependencyKind.MODEL.value])

    guide = sub.add_parser("guide", help="Show manual installation guides")
    guide.add_argument("kind", nargs="?", choices=kinds)
    guide.add_argument("--open", action="store_true", help="Open the guide in a browser")
    return parser


async def run(args, service: Optional[ProvisioningService] = None) -> int:
    service = service or ProvisioningService(settings)
    try:
        return await COMMANDS[args.command](service, args)
    except ProvisioningBaseException as e:
        console.print(f"[red]✗[/red] {e.message} [dim]({e.error_code})[/dim]")
        return EXIT_REFUSED
    finally:
        await service.aclose()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    # Console logging would tear through the progress bar; logs go to files only
    setup_logging(log_level=args.log_level, log_dir=settings.LOG_DIR, console=False)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
