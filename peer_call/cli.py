"""Command line interface for peer-call using Click."""

import asyncio
import logging
import sys

import click
from loguru import logger

from peer_call.exceptions import PeerCallError


def configure_logging(verbose: bool = False) -> None:
    """Send library (stdlib) and CLI (loguru) logs to stderr."""
    level = "DEBUG" if verbose else "INFO"
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.remove()
    logger.add(sys.stderr, level=level)


@click.group()
def cli():
    pass


@cli.command()
@click.argument("room")
@click.option(
    "--server",
    "-s",
    type=str,
    required=False,
    help="Signaling relay websocket URL. Overrides config file and PEER_CALL_SIGNALING_WS.",
)
@click.option(
    "--synthetic",
    is_flag=True,
    default=False,
    help="Send generated audio and video instead of opening the camera and microphone.",
)
@click.option(
    "--audio-only",
    is_flag=True,
    default=False,
    help="Do not open the camera.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def join(room, server, synthetic, audio_only, verbose):
    """Join ROOM and start a call with whoever else joins it.

    Once in the call, type commands at the prompt: mute, video, share,
    status, leave.

    Examples:

        peer-call join standup

        peer-call join standup --server ws://localhost:8080 --synthetic
    """
    from peer_call.rtc_call import run_call

    configure_logging(verbose)
    try:
        run_call(
            room=room,
            server_url=server,
            synthetic=synthetic,
            audio=True,
            video=not audio_only,
        )
    except PeerCallError:
        sys.exit(1)


@cli.command(name="config")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def show_config(verbose):
    """Show the resolved configuration (file, environment, defaults)."""
    from peer_call.config import get_config

    configure_logging(verbose)
    config = get_config()

    click.echo(f"environment:         {config.environment}")
    click.echo(f"signaling_websocket: {config.signaling_websocket}")
    click.echo("ice_servers:")
    for server in config.get_ice_servers():
        auth = " (with credentials)" if server.username else ""
        click.echo(f"  - {', '.join(server.urls)}{auth}")
    click.echo("media:")
    click.echo(f"  camera:     {config.media.camera or 'platform default'}")
    click.echo(f"  microphone: {config.media.microphone or 'platform default'}")
    click.echo(f"  video_size: {config.media.video_size}")
    click.echo(f"  framerate:  {config.media.framerate}")


@cli.command()
@click.option("--host", default="localhost", help="Host to bind to.")
@click.option("--port", "-p", type=int, default=8080, help="Port to listen on.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def relay(host, port, verbose):
    """Run a development signaling relay.

    Example:

        peer-call relay --port 8080
    """
    from peer_call.relay import serve

    configure_logging(verbose)
    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped")
    except OSError as e:
        logger.error(f"Could not start relay on {host}:{port}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
