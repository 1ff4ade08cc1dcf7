"""Unified CLI for debate-rtc using Click."""

import asyncio
import json
import logging
import sys

import click
from loguru import logger

from debate_rtc.config import VALID_POLICIES
from debate_rtc.errors import DeviceUnavailable, MediaAccessDenied
from debate_rtc.protocol import PRODUCT_ROLES, VALID_ROLES
from debate_rtc.rtc_call import run_voice_call

ROLE_CHOICES = sorted(VALID_ROLES | set(PRODUCT_ROLES))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)
    if verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")


# =============================================================================
# Call Commands
# =============================================================================


@cli.command()
@click.option(
    "--room",
    "-r",
    type=str,
    required=True,
    help="Room ID whose voice call to join (required).",
)
@click.option(
    "--participant",
    "-p",
    type=str,
    required=True,
    help="Local participant id, as listed in the room (required).",
)
@click.option(
    "--role",
    type=click.Choice(ROLE_CHOICES, case_sensitive=False),
    required=False,
    help="Role in the call. Read from the room store when omitted.",
)
@click.option(
    "--signaling-url",
    "-s",
    type=str,
    required=False,
    help="Signaling relay URL. Overrides config file value.",
)
@click.option(
    "--policy",
    type=click.Choice(sorted(VALID_POLICIES)),
    required=False,
    help="Who may originate offers. Overrides config file value.",
)
@click.option(
    "--muted",
    is_flag=True,
    default=False,
    help="Join with the microphone muted (initiators only).",
)
def join(room, participant, role, signaling_url, policy, muted):
    """Join a debate room's voice call.

    Anchors (initiators) capture the local microphone and send audio to
    every peer; audience members and organisers (receivers) only listen.

    Examples:

        # Join as an anchor
        debate-rtc join --room r1 --participant alice --role anchor

        # Let the room store decide the role
        debate-rtc join --room r1 --participant bob
    """
    logger.info(f"Joining voice call for room: {room}")
    try:
        run_voice_call(
            room_id=room,
            participant_id=participant,
            role=role,
            signaling_url=signaling_url,
            policy=policy,
            start_muted=muted,
        )
    except MediaAccessDenied as e:
        logger.error(f"Microphone access denied: {e}")
        sys.exit(1)
    except DeviceUnavailable as e:
        logger.error(f"No microphone available: {e}")
        sys.exit(1)


@cli.command(name="signaling-server")
@click.option("--host", type=str, default="0.0.0.0", help="Interface to bind (default: 0.0.0.0).")
@click.option("--port", type=int, default=8765, help="Port to listen on (default: 8765).")
def signaling_server(host, port):
    """Run the WebSocket signaling relay."""
    from debate_rtc.signaling.server import serve

    logger.info(f"Starting signaling relay on {host}:{port}")
    try:
        asyncio.run(serve(host=host, port=port))
    except KeyboardInterrupt:
        logger.info("Signaling relay stopped by user")


@cli.command()
@click.option("--timeout", type=float, default=5.0, help="Gathering timeout in seconds.")
def probe(timeout):
    """Check ICE connectivity with the configured ICE servers.

    Gathers local candidates once and reports how many were found.
    """
    from debate_rtc.config import get_config
    from debate_rtc.media.transport import probe_ice_connectivity

    voice_config = get_config().get_voice_config()
    result = asyncio.run(probe_ice_connectivity(voice_config.ice_servers, timeout=timeout))

    if not result["success"]:
        logger.error(f"ICE probe failed: {result['error']}")
        sys.exit(1)

    click.echo(f"Gathered {result['candidate_count']} candidate(s)")
    for candidate in result["candidates"]:
        click.echo(f"  {candidate}")


# =============================================================================
# Config Commands (subgroup)
# =============================================================================


@cli.group()
def config():
    """Inspect debate-rtc configuration."""
    pass


@config.command(name="show")
def config_show():
    """Print the effective configuration as JSON."""
    from dataclasses import asdict

    from debate_rtc.config import get_config

    cfg = get_config()
    voice = cfg.get_voice_config()
    data = {
        "environment": cfg.environment,
        "signaling_websocket": cfg.signaling_websocket,
        "room_store_url": cfg.room_store_url,
        "room_store_key": "***" if cfg.room_store_key else None,
        "voice": asdict(voice),
    }
    click.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    cli()
