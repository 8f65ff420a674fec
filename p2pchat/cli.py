"""Unified CLI for p2pchat using Click."""

import sys
from pathlib import Path

import click
from loguru import logger

from p2pchat.config import get_config
from p2pchat.ids import generate_peer_id
from p2pchat.relay_server import DEFAULT_HOST, DEFAULT_PORT, run_relay
from p2pchat.rtc_chat import configure_logging, run_chat, run_send


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx, verbose):
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    configure_logging(verbose)


def _resolve_peer_id(nickname, peer_id):
    if peer_id:
        return peer_id
    if not nickname:
        raise click.UsageError("Provide --nickname or --peer-id")
    try:
        return generate_peer_id(nickname)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--nickname")


def _apply_server_overrides(config, servers):
    if servers:
        config.signaling_servers = list(servers)
        logger.info(f"Using signaling servers from CLI: {config.signaling_servers}")
    return config


# =============================================================================
# Relay
# =============================================================================


@cli.command()
@click.option("--host", default=DEFAULT_HOST, help="Host to bind to.")
@click.option("--port", type=int, default=DEFAULT_PORT, help="Port to listen on.")
def relay(host, port):
    """Run the signaling relay server.

    Example:
        p2pchat relay --host 0.0.0.0 --port 8765
    """
    logger.info(f"Starting relay on ws://{host}:{port}")
    run_relay(host, port)


# =============================================================================
# Chat
# =============================================================================


@cli.command(name="new-id")
@click.argument("nickname")
def new_id(nickname):
    """Print a fresh peer id for NICKNAME."""
    try:
        click.echo(generate_peer_id(nickname))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="NICKNAME")


@cli.command()
@click.option("--nickname", "-n", help="Nickname used to mint a peer id.")
@click.option("--peer-id", help="Use this exact peer id instead of minting one.")
@click.option(
    "--server",
    "-s",
    "servers",
    multiple=True,
    help="Signaling server URL (repeatable). Overrides config.",
)
@click.option(
    "--to",
    "to_peer_ids",
    multiple=True,
    required=True,
    help="Recipient peer id (repeatable).",
)
@click.option("--message", "-m", help="Text message to send.")
@click.option(
    "--file",
    "file_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="File to send.",
)
def send(nickname, peer_id, servers, to_peer_ids, message, file_path):
    """Send one message and/or file to one or more peers, then exit.

    Example:
        p2pchat send -n alice --to peer_bob_1700000000000_abcd1234 -m "hi"
        p2pchat send -n alice --to <bob-id> --to <carol-id> --file notes.txt
    """
    if not message and not file_path:
        raise click.UsageError("Nothing to send: give --message and/or --file")

    local_id = _resolve_peer_id(nickname, peer_id)
    config = _apply_server_overrides(get_config(), servers)

    if file_path and file_path.stat().st_size > config.transfer.max_file_size:
        logger.error(
            f"{file_path.name} exceeds the {config.transfer.max_file_size} byte limit"
        )
        sys.exit(1)

    try:
        run_send(
            local_id,
            list(to_peer_ids),
            message=message,
            file_path=str(file_path) if file_path else None,
            config=config,
        )
    except click.ClickException:
        raise
    except Exception as e:
        logger.error(f"Send failed: {e}")
        sys.exit(1)


@cli.command()
@click.option("--nickname", "-n", help="Nickname used to mint a peer id.")
@click.option("--peer-id", help="Use this exact peer id instead of minting one.")
@click.option(
    "--server",
    "-s",
    "servers",
    multiple=True,
    help="Signaling server URL (repeatable). Overrides config.",
)
@click.option(
    "--download-dir",
    type=click.Path(file_okay=False),
    default=".",
    help="Where received files are saved.",
)
def chat(nickname, peer_id, servers, download_dir):
    """Start an interactive chat session.

    Example:
        p2pchat chat -n alice -s ws://localhost:8765
    """
    local_id = _resolve_peer_id(nickname, peer_id)
    config = _apply_server_overrides(get_config(), servers)
    run_chat(local_id, download_dir=download_dir, config=config)


if __name__ == "__main__":
    cli()
