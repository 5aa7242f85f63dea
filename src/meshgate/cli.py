"""meshgate CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from meshgate.core.config import EventFormat, GatewayConfig, ProxyMode, build_config
from meshgate.core.exceptions import ConfigError, MeshgateError, format_error_for_user

console = Console()
# stdout carries lifecycle events while the gateway runs; everything human goes to stderr.
err_console = Console(stderr=True)

_shutdown_requested = False

BANNER = r"""
                     _                     _
 _ __ ___   ___  ___| |__   __ _  __ _| |_ ___
| '_ ` _ \ / _ \/ __| '_ \ / _` |/ _` | __/ _ \
| | | | | |  __/\__ \ | | | (_| | (_| | ||  __/
|_| |_| |_|\___||___/_| |_|\__, |\__,_|\__\___|
                           |___/
        your tailnet, behind a local proxy
"""


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


@click.group(invoke_without_command=True)
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--authkey", help="Auth key for the overlay node (default: $MESHGATE_AUTH_KEY)")
@click.option("--coordserver", help="Coordination server URL")
@click.option("--hostname", help="Hostname of this node in the tailnet (default: ts-proxy)")
@click.option("--port", "-p", type=int, help="Proxy listen port (default: 8080)")
@click.option("--statedir", type=click.Path(file_okay=False), help="State directory (default: cwd)")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ProxyMode], case_sensitive=False),
    help="Proxy mode (default: http)",
)
@click.option("--statusport", type=int, help="Status API port (disabled when unset)")
@click.option("--socket", "socket_path", type=click.Path(dir_okay=False), help="tailscaled LocalAPI socket")
@click.option("--tailscaled", "tailscaled_path", help="Spawn this tailscaled binary in userspace mode")
@click.option("--startup-timeout", type=float, help="Seconds to wait for the overlay node (default: 60)")
@click.option(
    "--tunnel-dial-timeout",
    type=float,
    help="Dial timeout for CONNECT/SOCKS5 tunnels in seconds, 0 for none (default: 30)",
)
@click.option(
    "--events",
    type=click.Choice([f.value for f in EventFormat], case_sensitive=False),
    help="Lifecycle event format on stdout (default: json)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    help="Log level (default: info, use --verbose for debug)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def main(
    ctx: click.Context,
    config_file: str | None,
    authkey: str | None,
    coordserver: str | None,
    hostname: str | None,
    port: int | None,
    statedir: str | None,
    mode: str | None,
    statusport: int | None,
    socket_path: str | None,
    tailscaled_path: str | None,
    startup_timeout: float | None,
    tunnel_dial_timeout: float | None,
    events: str | None,
    log_level: str,
    verbose: bool,
):
    """meshgate - reach your tailnet from any app through a local proxy.

    Examples:

        meshgate --authkey tskey-auth-xxx

        meshgate --mode socks5 --port 1080

        meshgate --statusport 9090 --events sentinel

    Then point clients at it:

        curl -x http://127.0.0.1:8080 http://my-peer:3000/

    Use 'meshgate COMMAND --help' for more info on specific commands.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file

    if ctx.invoked_subcommand is not None:
        return

    overrides = {
        "auth_key": authkey,
        "control_url": coordserver,
        "hostname": hostname,
        "port": port,
        "state_dir": statedir,
        "mode": mode.lower() if mode else None,
        "status_port": statusport,
        "socket_path": socket_path,
        "tailscaled_path": tailscaled_path,
        "startup_timeout": startup_timeout,
        "tunnel_dial_timeout": tunnel_dial_timeout,
        "events": events.lower() if events else None,
    }
    try:
        config = build_config(overrides, config_file)
    except ConfigError as e:
        err_console.print(Panel(f"[red]{e.message}[/red]", title=f"Error: {e.code}", border_style="red"))
        sys.exit(1)

    configure_logging("debug" if verbose else log_level)
    _run_gateway_with_signal_handling(config)


def _run_gateway_with_signal_handling(config: GatewayConfig) -> None:
    """Run the gateway with proper signal handling for clean Ctrl+C shutdown."""
    global _shutdown_requested
    _shutdown_requested = False

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    main_task = loop.create_task(start_gateway(config))

    def signal_handler(sig: int, frame: object) -> None:
        """Handle SIGINT/SIGTERM."""
        global _shutdown_requested
        if _shutdown_requested:
            err_console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        err_console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        loop.call_soon_threadsafe(main_task.cancel)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        loop.run_until_complete(main_task)
    except asyncio.CancelledError:
        pass
    except KeyboardInterrupt:
        pass
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


async def start_gateway(config: GatewayConfig) -> None:
    """Run the gateway until cancelled.

    Args:
        config: Frozen gateway configuration
    """
    from meshgate.server.gateway import Gateway

    err_console.print(BANNER, style="cyan")
    err_console.print(
        f"Bringing up overlay node [bold]{config.hostname}[/bold]...", style="yellow"
    )

    gateway = Gateway(config)
    try:
        await gateway.start()
        panel_content = (
            f"[green]Gateway ready![/green]\n\n"
            f"[bold]Proxy:[/bold] [cyan]{gateway.proxy_url}[/cyan]\n"
            f"[bold]Node:[/bold] {config.hostname}"
        )
        if gateway.status_server is not None:
            host, port = gateway.status_server.address
            panel_content += f"\n[bold]Status:[/bold] http://{host}:{port}/status"
        err_console.print(Panel(panel_content, title="meshgate", border_style="green"))
        err_console.print("\nPress Ctrl+C to stop.\n", style="dim")

        assert gateway.proxy is not None
        await gateway.proxy.serve_forever()
    except asyncio.CancelledError:
        await gateway.stop()
        err_console.print("[green]Gateway stopped.[/green]")
    except Exception as e:
        await gateway.stop()
        if isinstance(e, MeshgateError):
            err_console.print(
                Panel(
                    f"[red]{e.message}[/red]",
                    title=f"Error: {e.code}",
                    border_style="red",
                )
            )
        else:
            err_console.print(
                Panel(
                    f"[red]{format_error_for_user(e)}[/red]",
                    title="Gateway Error",
                    border_style="red",
                )
            )
        sys.exit(1)


@main.command()
@click.option("--host", default="127.0.0.1", help="Status API host")
@click.option("--port", "-p", type=int, envvar="MESHGATE_STATUS_PORT", required=True, help="Status API port")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(host: str, port: int, json_output: bool):
    """Show overlay peers as seen by a running gateway.

    Queries the gateway's status API (started with --statusport).
    """
    import httpx

    from meshgate.status.models import StatusDocument

    url = f"http://{host}:{port}/status"
    try:
        with httpx.Client(timeout=5.0) as client:
            response = client.get(url)
    except httpx.HTTPError as e:
        console.print(f"[red]Error connecting to gateway:[/red] {e}")
        sys.exit(1)

    if response.status_code != 200:
        console.print(f"[red]Gateway returned {response.status_code}:[/red] {response.text.strip()}")
        sys.exit(1)

    if json_output:
        console.print_json(response.text)
        return

    try:
        document = StatusDocument.from_json(response.content)
    except ValueError as e:
        console.print(f"[red]Unexpected status document:[/red] {e}")
        sys.exit(1)

    me = document.self_status
    console.print(f"\n[bold]Node:[/bold] {me.name or me.hostname or 'unknown'}")
    console.print(f"[bold]State:[/bold] {_format_state(document.backend_state)}")
    if me.tailscale_ips:
        console.print(f"[bold]IPs:[/bold] {', '.join(me.tailscale_ips)}")

    if not document.peers:
        console.print("\n[dim]No peers[/dim]")
        return

    table = Table()
    table.add_column("Name", style="cyan")
    table.add_column("Hostname")
    table.add_column("IPs", style="dim")
    table.add_column("Online")
    table.add_column("Link")
    table.add_column("Rx", justify="right")
    table.add_column("Tx", justify="right")
    table.add_column("Last Seen")

    for peer in document.peers:
        table.add_row(
            peer.name,
            peer.hostname,
            "\n".join(peer.tailscale_ips),
            "[green]yes[/green]" if peer.online else "[red]no[/red]",
            _format_link(peer.direct, peer.relayed_via),
            _format_bytes(peer.rx_bytes),
            _format_bytes(peer.tx_bytes),
            peer.last_seen[:19] or "-",
        )

    console.print(table)


@main.command()
def version():
    """Show version information."""
    from meshgate import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group()
def config():
    """Inspect the effective configuration."""
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def config_show(ctx: click.Context, json_output: bool):
    """Show the configuration the gateway would run with.

    Merges the config file (--config), MESHGATE_* environment variables
    and defaults. The auth key is masked.
    """
    try:
        cfg = build_config(config_file=ctx.obj.get("config_file"))
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e.message}")
        sys.exit(1)

    data = cfg.to_display_dict()
    if json_output:
        console.print(json.dumps(data, indent=2))
        return

    table = Table(title="meshgate configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, "[dim]unset[/dim]" if value is None else str(value))
    console.print(table)


def _format_state(state: str) -> str:
    if state == "Running":
        return f"[green]{state}[/green]"
    return f"[yellow]{state or 'unknown'}[/yellow]"


def _format_link(direct: bool, relayed_via: str) -> str:
    if direct:
        return "[green]direct[/green]"
    if relayed_via:
        return f"[yellow]relay:{relayed_via}[/yellow]"
    return "[dim]-[/dim]"


def _format_bytes(num_bytes: int | float) -> str:
    """Format bytes into human readable string."""
    value: float = float(num_bytes)
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(value) < 1024.0:
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


if __name__ == "__main__":
    main()
