"""Command line entry point: ``sandboxfw watch | stop | flush``."""

import logging
import os
import signal
from pathlib import Path
from typing import Annotated, List, Optional

import typer

from .config import (
    CHECK_INTERVAL,
    DEFAULT_CHAIN,
    DEFAULT_COMMENT_PREFIX,
    DEFAULT_DNS_PORT,
    DEFAULT_LABEL,
    DEFAULT_STATE_DIR,
    IDLE_TIMEOUT,
    STARTUP_GRACE,
    NetworkPolicy,
    WatcherConfig,
)
from .iptables import Iptables
from .watcher import Watcher, WatcherError, ensure_privileged

app = typer.Typer(
    name="sandboxfw",
    help="Keep AI sandbox containers off the LAN while they run.",
    add_completion=False,
    no_args_is_help=True,
)


def setup_logging():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                        format="%(asctime)s - %(levelname)s - %(message)s")


@app.command()
def watch(
    stop_flag: Annotated[Path, typer.Option("--stop-flag", help="File whose creation stops the watcher")],
    dns_ip: Annotated[str, typer.Option("--dns-ip", help="DNS resolver the sandbox may reach")],
    net: Annotated[List[str], typer.Option("--net", help="Denied CIDR (repeatable)")],
    dns_port: Annotated[
        Optional[List[int]],
        typer.Option("--dns-port", help="DNS port (repeatable)"),
    ] = None,
    label: Annotated[str, typer.Option("--label", envvar="SANDBOX_LABEL")] = DEFAULT_LABEL,
    check_interval: Annotated[float, typer.Option("--check-interval", envvar="CHECK_INTERVAL")] = CHECK_INTERVAL,
    idle_timeout: Annotated[float, typer.Option("--idle-timeout", envvar="IDLE_TIMEOUT")] = IDLE_TIMEOUT,
    startup_grace: Annotated[float, typer.Option("--startup-grace", envvar="STARTUP_GRACE")] = STARTUP_GRACE,
    state_dir: Annotated[Path, typer.Option("--state-dir", envvar="STATE_DIR")] = Path(DEFAULT_STATE_DIR),
    chain: Annotated[str, typer.Option("--chain", envvar="IPTABLES_CHAIN")] = DEFAULT_CHAIN,
    dry_run: Annotated[bool, typer.Option("--dry-run", envvar="DRY_RUN", help="Log iptables commands only")] = False,
) -> None:
    """Run the watcher until the stop flag, a signal, or the idle/grace timeout."""
    setup_logging()
    try:
        policy = NetworkPolicy(
            denied_networks=tuple(net),
            dns_ip=dns_ip,
            dns_ports=tuple(dns_port or [DEFAULT_DNS_PORT]),
            label=label,
        )
        config = WatcherConfig(
            stop_flag=stop_flag,
            state_dir=state_dir,
            check_interval=check_interval,
            idle_timeout=idle_timeout,
            startup_grace=startup_grace,
            chain=chain,
            dry_run=dry_run,
        )
    except ValueError as e:
        raise typer.BadParameter(str(e))

    watcher = Watcher(policy, config)
    signal.signal(signal.SIGINT, watcher.request_stop)
    signal.signal(signal.SIGTERM, watcher.request_stop)

    try:
        reason = watcher.run()
    except WatcherError as e:
        logging.error(str(e))
        raise typer.Exit(code=1)
    logging.info(f"Watcher stopped ({reason})")


@app.command()
def stop(
    stop_flag: Annotated[Path, typer.Option("--stop-flag", help="Stop flag the watcher was started with")],
) -> None:
    """Ask a running watcher to clean up and exit (no root needed)."""
    try:
        stop_flag.touch()
    except OSError as e:
        typer.echo(f"Cannot create stop flag {stop_flag}: {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Stop requested via {stop_flag}")


@app.command()
def flush(
    chain: Annotated[str, typer.Option("--chain", envvar="IPTABLES_CHAIN")] = DEFAULT_CHAIN,
    prefix: Annotated[str, typer.Option("--prefix")] = DEFAULT_COMMENT_PREFIX,
    dry_run: Annotated[bool, typer.Option("--dry-run", envvar="DRY_RUN")] = False,
) -> None:
    """Delete every rule tagged by this tool, e.g. after a crashed watcher."""
    setup_logging()
    try:
        ensure_privileged(dry_run)
    except WatcherError as e:
        logging.error(str(e))
        raise typer.Exit(code=1)
    removed = Iptables(chain, dry_run=dry_run).flush(f"{prefix}:")
    typer.echo(f"Removed {removed} rule(s) from {chain}")


if __name__ == "__main__":
    app()
