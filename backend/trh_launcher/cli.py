"""
Command-line interface for TRH Launcher
"""

import asyncio
import logging

import click
import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from trh_launcher import __version__
from trh_launcher.core.config import get_settings
from trh_launcher.core.exceptions import LauncherError
from trh_launcher.core.validation import ContainerCredentials
from trh_launcher.ports.models import PortConflict
from trh_launcher.runtime.process import set_log_sink
from trh_launcher.setup.models import STEP_TITLES, SetupError, SetupPhase, SetupRun, StepStatus
from trh_launcher.setup.orchestrator import SetupOrchestrator

console = Console()

STATUS_ICONS = {
    StepStatus.PENDING: "[dim]○[/dim]",
    StepStatus.RUNNING: "[cyan]●[/cyan]",
    StepStatus.SUCCEEDED: "[green]✅[/green]",
    StepStatus.FAILED: "[red]❌[/red]",
}


class ConsolePresenter:
    """Renders setup progress to the terminal and asks for confirmation on stdin"""

    def __init__(self, assume_yes: bool = False):
        self.assume_yes = assume_yes
        self._last: dict = {}

    async def on_state(self, run: SetupRun) -> None:
        # Only status changes are printed; detail churn from pulls would flood the terminal
        for step, state in run.steps.items():
            if self._last.get(step) == state.status:
                continue
            self._last[step] = state.status
            if state.status == StepStatus.PENDING:
                continue
            console.print(f"{STATUS_ICONS[state.status]} {STEP_TITLES[step]}: {state.detail}")

    async def on_error(self, run: SetupRun, error: SetupError) -> None:
        body = f"[bold]{error.message}[/bold]"
        if error.recovery_hint:
            body += f"\n\n💡 {error.recovery_hint}"
        if error.show_install:
            from trh_launcher.runtime.docker import get_install_url

            body += f"\n\nDownload Docker Desktop: [cyan]{get_install_url()}[/cyan]"
        if error.retryable:
            body += "\n\nRun [cyan]trh-launcher setup[/cyan] again to retry."
        console.print(Panel.fit(body, title=f"[red]{error.title}[/red]", border_style="red"))

    async def on_complete(self, run: SetupRun) -> None:
        settings = get_settings()
        console.print(
            Panel.fit(
                "[bold green]✅ Platform is ready[/bold green]\n"
                f"Open [cyan]{settings.platform_ui_url}[/cyan]",
                border_style="green",
            )
        )

    async def confirm_free_ports(self, conflicts: list[PortConflict]) -> bool:
        table = Table(title="Ports in use")
        table.add_column("Port", style="cyan")
        table.add_column("Process")
        table.add_column("PID")
        for conflict in conflicts:
            table.add_row(str(conflict.port), conflict.process_name, str(conflict.pid or "?"))
        console.print(table)

        if self.assume_yes:
            console.print("[yellow]Stopping the listed processes (--yes)[/yellow]")
            return True
        return await asyncio.to_thread(
            click.confirm, "Stop these processes to free the ports?", default=False
        )


def _configure_logging(verbose: bool = False) -> None:
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _run(coro):
    """Run a coroutine, turning launcher errors into a red message and exit code 1"""
    try:
        return asyncio.run(coro)
    except LauncherError as e:
        console.print(f"[red]❌ {e.message}[/red]")
        if e.recovery_hint:
            console.print(f"[yellow]💡 {e.recovery_hint}[/yellow]")
        raise SystemExit(1)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """TRH Launcher - run the TRH platform locally"""
    pass


@main.command()
@click.option("--email", default=None, help="Platform admin email")
@click.option("--password", default=None, help="Platform admin password")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Free conflicting ports without asking")
@click.option("--verbose", "-v", is_flag=True, help="Echo docker output while running")
def setup(email: str | None, password: str | None, assume_yes: bool, verbose: bool) -> None:
    """Check Docker, pull images, start the stack and wait until it is healthy"""
    _configure_logging(verbose)
    console.print(Panel.fit("[bold cyan]TRH Launcher[/bold cyan]\nSetting up the platform", border_style="cyan"))

    if verbose:
        set_log_sink(lambda line: console.print(f"[dim]{line}[/dim]", highlight=False))

    orchestrator = SetupOrchestrator(presenter=ConsolePresenter(assume_yes=assume_yes))
    credentials = ContainerCredentials(admin_email=email, admin_password=password)

    async def run_setup() -> SetupRun:
        try:
            return await orchestrator.start(credentials)
        except asyncio.CancelledError:
            console.print("\n[yellow]Interrupted, cleaning up...[/yellow]")
            await orchestrator.shutdown(stop_stack=True)
            raise

    try:
        run = _run(run_setup())
    except KeyboardInterrupt:
        raise SystemExit(130)
    finally:
        set_log_sink(None)

    if run.phase != SetupPhase.DONE:
        raise SystemExit(1)


@main.command()
def status() -> None:
    """Show Docker and stack status"""
    _configure_logging()
    orchestrator = SetupOrchestrator()

    async def collect():
        return await orchestrator.gateway.docker_version(), await orchestrator.status()

    version, stack = _run(collect())

    table = Table(title="TRH Stack Status")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_row("Docker", version or "not installed")
    for label, value in [
        ("Daemon running", stack.running),
        ("Containers up", stack.containers_up),
        ("Healthy", stack.healthy),
    ]:
        table.add_row(label, "✅" if value else "❌")
    if stack.error:
        table.add_row("Error", f"[red]{stack.error}[/red]")
    console.print(table)


@main.command()
def stop() -> None:
    """Stop the stack"""
    _configure_logging()
    _run(SetupOrchestrator().stop())
    console.print("[green]✅ Containers stopped[/green]")


@main.command()
def restart() -> None:
    """Stop and start the stack"""
    _configure_logging()
    _run(SetupOrchestrator().restart())
    console.print("[green]✅ Containers restarted[/green]")


@main.command()
@click.confirmation_option(prompt="Remove stopped containers, dangling images and unused networks?")
def prune() -> None:
    """Run docker system prune"""
    _configure_logging()
    _run(SetupOrchestrator().prune())
    console.print("[green]✅ Docker resources pruned[/green]")


@main.command("install-url")
def install_url() -> None:
    """Print the Docker Desktop download page for this platform"""
    from trh_launcher.runtime.docker import get_install_url

    click.echo(get_install_url())


@main.command()
@click.option("--host", default=None, help="API server host (default: from settings)")
@click.option("--port", default=None, type=int, help="API server port (default: from settings)")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the API server for the launcher UI"""
    _configure_logging()
    settings = get_settings()

    actual_host = host or settings.api_host
    actual_port = port or settings.api_port

    console.print(
        Panel.fit(
            "[bold cyan]TRH Launcher[/bold cyan]\n"
            f"Server starting on http://{actual_host}:{actual_port}",
            border_style="cyan",
        )
    )

    uvicorn.run(
        "trh_launcher.api.app:app",
        host=actual_host,
        port=actual_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
