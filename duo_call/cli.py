"""Unified CLI for duo-call using Click."""

import json
import logging
import sys

import click
from loguru import logger

from duo_call.config import get_config
from duo_call.exceptions import ConfigError
from duo_call.rtc_call import run_call


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level for call and signaling messages.",
)
def cli(log_level):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


@cli.command()
@click.option(
    "--role",
    "-r",
    type=click.Choice(["A", "B"], case_sensitive=False),
    required=True,
    help="Local role. A sends the offer, B answers.",
)
@click.option(
    "--call-id",
    type=str,
    required=False,
    help="Call identifier shared by both parties (default from config).",
)
@click.option(
    "--server",
    "-s",
    type=str,
    required=False,
    help="Signaling relay websocket URL (default from config).",
)
@click.option(
    "--no-camera",
    is_flag=True,
    default=False,
    help="Send a test pattern instead of the camera.",
)
@click.option(
    "--no-mic",
    is_flag=True,
    default=False,
    help="Send silence instead of the microphone.",
)
@click.option(
    "--record",
    type=click.Path(file_okay=False),
    required=False,
    help="Directory to record the remote audio and video into.",
)
def call(role, call_id, server, no_camera, no_mic, record):
    """Join a two-party call.

    Start one party with --role A and the other with --role B against the
    same relay and call id. While the call runs, type m (mute), c (camera),
    s (screen share), i (stats) or q (leave) followed by Enter.
    """
    try:
        get_config()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    exit_code = run_call(
        role=role.upper(),
        call_id=call_id,
        server=server,
        use_camera=not no_camera,
        use_microphone=not no_mic,
        record_dir=record,
    )
    sys.exit(exit_code)


@cli.command(name="config")
def show_config():
    """Print the effective configuration."""
    try:
        config = get_config()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    click.echo(json.dumps(config.as_dict(), indent=2))


if __name__ == "__main__":
    cli()
