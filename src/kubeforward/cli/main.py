"""
kubeforward CLI entry point.

Usage:
    kubeforward [OPTIONS]

Examples:
    # Browse the current context's namespace
    kubeforward

    # Browse another namespace, logging to a file while the UI runs
    kubeforward -n staging --log-file /tmp/kubeforward.log

    # Print the port catalogue and exit
    kubeforward -n staging --list
"""

from typing import Annotated

import typer

from kubeforward.config import config
from kubeforward.discovery.snapshot import SnapshotProvider, current_namespace
from kubeforward.exceptions import DiscoveryError
from kubeforward.cli.output import (
    console,
    format_port_catalogue,
    print_error,
    print_warning,
)
from kubeforward.models.enums import LogLevel, TiePolicy
from kubeforward.utils.logger import (
    configure_logging,
    disable_logging,
    get_logger,
)

logger = get_logger(__name__)

app = typer.Typer(
    name="kubeforward",
    help="Interactive port forwarding for Kubernetes services",
    rich_markup_mode="rich",
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        from kubeforward import __version__

        console.print(f"kubeforward v{__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    namespace: Annotated[
        str | None,
        typer.Option(
            "--namespace",
            "-n",
            help="Namespace to browse (default: the context's namespace)",
            envvar="KUBEFORWARD_NAMESPACE",
        ),
    ] = None,
    context: Annotated[
        str | None,
        typer.Option("--context", help="kubeconfig context to use"),
    ] = None,
    bind_host: Annotated[
        str,
        typer.Option("--bind-host", "-H", help="Local address to listen on"),
    ] = "127.0.0.1",
    retries: Annotated[
        int,
        typer.Option(
            "--retries",
            min=0,
            help="Automatic restarts after a tunnel fails (0: stay failed)",
        ),
    ] = 0,
    tie_policy: Annotated[
        TiePolicy,
        typer.Option(
            "--tie-policy",
            help="Toggle-all target when as many ports are on as off",
        ),
    ] = TiePolicy.ON,
    log_level: Annotated[
        LogLevel,
        typer.Option("--log-level", "-l", help="Logging verbosity"),
    ] = LogLevel.INFO,
    log_file: Annotated[
        str | None,
        typer.Option(
            "--log-file",
            help="Log file used while the UI runs (no logs otherwise)",
            envvar="KUBEFORWARD_LOG_FILE",
        ),
    ] = None,
    list_only: Annotated[
        bool,
        typer.Option("--list", help="Print the services and ports, then exit"),
    ] = False,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version information",
        ),
    ] = None,
):
    """
    Browse the services of a namespace and toggle port forwards to them.
    """
    config.CONTEXT = context
    config.LOCAL_BIND_HOST = bind_host
    config.MAX_AUTO_RETRIES = retries
    config.TOGGLE_ALL_TIE_POLICY = tie_policy
    config.LOG_LEVEL = log_level
    config.LOG_FILE = log_file or ""

    configure_logging(log_level)

    try:
        provider = SnapshotProvider.from_kubeconfig(context)
        config.NAMESPACE = namespace or current_namespace(context)
        services = provider.fetch_namespace_sync(config.NAMESPACE)
    except DiscoveryError as e:
        logger.debug(f"Discovery failed: {e!r}")
        print_error(str(e))
        raise typer.Exit(1)

    if list_only:
        console.print(format_port_catalogue(config.get_namespace(), services))
        return

    if not services:
        print_warning(
            f"No services with ports in namespace '{config.get_namespace()}'"
        )
        return

    # The UI owns the terminal from here on
    if config.LOG_FILE:
        configure_logging(log_level, log_file=config.LOG_FILE, stderr=False)
    else:
        disable_logging()

    from kubeforward.cli.tui.app import run_tui
    from kubeforward.tunnel.driver import TunnelDriver
    from kubeforward.tunnel.transport import KubernetesTransport

    driver = TunnelDriver(KubernetesTransport(provider))
    run_tui(services, config.get_namespace(), driver)


def run():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    run()
