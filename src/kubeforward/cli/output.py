"""Rich console helpers shared by CLI commands."""

from rich.console import Console
from rich.table import Table

from kubeforward.models.entries import ServiceInfo

console = Console()
err_console = Console(stderr=True)


def print_error(message: str) -> None:
    err_console.print(f"[bold red]Error:[/bold red] {message}")


def print_warning(message: str) -> None:
    err_console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def format_port_catalogue(namespace: str, services: list[ServiceInfo]) -> Table:
    """Table of every service port in a namespace snapshot."""
    table = Table(title=f"Services in [cyan]{namespace}[/cyan]")
    table.add_column("Service", style="bold")
    table.add_column("Port", justify="right")
    table.add_column("Name")
    table.add_column("Protocol")
    table.add_column("Target", justify="right", style="dim")

    for svc in services:
        for i, port in enumerate(svc.ports):
            table.add_row(
                svc.name if i == 0 else "",
                str(port.remote_port),
                port.label or "-",
                port.protocol,
                str(port.target_port) if port.target_port is not None else "-",
            )
    return table
