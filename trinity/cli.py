#!/usr/bin/env python3
"""
Trinity CLI

Usage:
    trinity serve [--config FILE] [--host HOST] [--port PORT]
    trinity relay [--config FILE] [--submitter ADDRESS]
    trinity validator <ledger> [--port PORT] [--auto-commit/--no-auto-commit]
    trinity config [--config FILE]
    trinity operation-id <initiator> <source> <destination> <amount> [--nonce N]

Signing keys are read from the environment (TRINITY_VALIDATOR_KEY), never
from the config file or the command line.
"""

import asyncio
import json
import os
import signal
from typing import Optional

import click
from rich.console import Console

from . import __version__
from .config import TrinityConfig, load_config
from .consensus.types import LedgerId, compute_operation_id
from .exceptions import ConfigurationError
from .logger import configure_logging, get_logger

logger = get_logger(__name__)
console = Console()

LEDGER_CHOICE = click.Choice([l.name.lower() for l in LedgerId], case_sensitive=False)


def _load(config_path: Optional[str]) -> TrinityConfig:
    try:
        cfg = load_config(config_path)
    except ConfigurationError as e:
        raise click.ClickException(f"Invalid configuration: {e}")
    configure_logging(log_level=cfg.log.level, file_output=cfg.log.file_output)
    return cfg


@click.group()
@click.version_option(version=__version__)
def cli():
    """Trinity 2-of-3 cross-ledger consensus."""


@cli.command()
@click.option("--config", "-c", "config_path", default=None, help="Path to config.toml")
@click.option("--host", default=None, help="Bind address (overrides [rpc] host)")
@click.option("--port", "-p", type=int, default=None, help="Bind port (overrides [rpc] port)")
def serve(config_path: Optional[str], host: Optional[str], port: Optional[int]):
    """Run the coordinator HTTP API."""
    import uvicorn

    from .consensus.coordinator import ConsensusCoordinator
    from .rpc.server import create_app

    cfg = _load(config_path)
    coordinator = ConsensusCoordinator(cfg)
    app = create_app(coordinator)

    host = host or cfg.rpc.host
    port = port or cfg.rpc.port
    logger.info(f"Coordinator API ({cfg.network}) listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, reload=False, access_log=False, log_config=None)


@cli.command()
@click.option("--config", "-c", "config_path", default=None, help="Path to config.toml")
@click.option("--submitter", default=None, help="Relayer address (overrides [relayer] submitter)")
def relay(config_path: Optional[str], submitter: Optional[str]):
    """Relay proofs from the ledger validators to the coordinator."""
    from .relayer import HttpCoordinatorClient, HttpProofSource, NonceTable, Relayer

    cfg = _load(config_path)
    rc = cfg.relayer
    if not rc.validator_urls:
        raise click.ClickException("No [relayer] validator_urls configured")

    sources = {}
    for name, url in rc.validator_urls.items():
        try:
            ledger = LedgerId.parse(name)
        except (KeyError, ValueError) as e:
            raise click.ClickException(f"Unknown ledger in validator_urls: {name}") from e
        sources[ledger] = HttpProofSource(ledger, url, timeout=rc.fetch_timeout_seconds)

    async def run():
        client = HttpCoordinatorClient(rc.coordinator_url, timeout=rc.fetch_timeout_seconds)
        relayer = Relayer(client, sources, rc, NonceTable(rc.nonce_file or None), submitter=submitter)

        stopped = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stopped.set)
            except NotImplementedError:
                pass

        await relayer.start()
        try:
            await stopped.wait()
        finally:
            await relayer.stop()
            await client.close()
            for source in sources.values():
                await source.close()
            logger.info(f"Relayer status: {relayer.get_status()['stats']}")

    logger.info(f"Relaying to {rc.coordinator_url} from {', '.join(l.name for l in sources)}")
    asyncio.run(run())


@cli.command()
@click.argument("ledger", type=LEDGER_CHOICE)
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", "-p", type=int, default=3018, help="Bind port")
@click.option("--auto-commit/--no-auto-commit", default=True, help="Commit unseen operations on first request")
def validator(ledger: str, host: str, port: int, auto_commit: bool):
    """Serve a stub validator's proofs for LEDGER (local runs only)."""
    import uvicorn

    from .relayer.sources import StubLedgerValidator
    from .rpc.server import create_validator_app

    key = os.environ.get("TRINITY_VALIDATOR_KEY")
    if not key:
        raise click.ClickException("TRINITY_VALIDATOR_KEY is not set")

    stub = StubLedgerValidator(LedgerId.parse(ledger), key, auto_commit=auto_commit)
    click.echo(click.style(f"Stub {stub.ledger.name} validator {stub.address}", fg="yellow"))
    uvicorn.run(create_validator_app(stub), host=host, port=port, access_log=False, log_config=None)


@cli.command("config")
@click.option("--config", "-c", "config_path", default=None, help="Path to config.toml")
def show_config(config_path: Optional[str]):
    """Print the resolved configuration."""
    cfg = _load(config_path)
    console.print_json(json.dumps(cfg.to_dict(), default=str))


@cli.command("operation-id")
@click.argument("initiator")
@click.argument("source", type=LEDGER_CHOICE)
@click.argument("destination", type=LEDGER_CHOICE)
@click.argument("amount", type=int)
@click.option("--nonce", type=int, default=0, help="Initiator's operation sequence number")
@click.option("--target", default="", help="Target contract")
def operation_id(initiator: str, source: str, destination: str, amount: int, nonce: int, target: str):
    """Compute the id an operation will get, offline."""
    click.echo(compute_operation_id(
        initiator, LedgerId.parse(source), LedgerId.parse(destination), target, amount, nonce,
    ))


def main():
    cli()


if __name__ == "__main__":
    main()
