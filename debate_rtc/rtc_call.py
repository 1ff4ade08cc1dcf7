"""Entry point for the debate-rtc voice call CLI."""

import asyncio
import logging
from typing import Optional

from debate_rtc.config import get_config
from debate_rtc.media.transport import aiortc_transport_factory
from debate_rtc.mesh.coordinator import MeshCoordinator
from debate_rtc.room_store import PostgrestRoomDataStore, RoomDataStore
from debate_rtc.signaling.transport import WebSocketSignalingTransport


def build_room_store(config) -> Optional[RoomDataStore]:
    """Return a PostgREST room store if one is configured."""
    if config.room_store_url and config.room_store_key:
        return PostgrestRoomDataStore(config.room_store_url, config.room_store_key)
    return None


async def _status_loop(coordinator: MeshCoordinator, interval: float):
    while coordinator.in_call:
        await asyncio.sleep(interval)
        peers = sorted(coordinator.connected_peer_ids())
        logging.info(
            f"Connected peers ({len(peers)}): {', '.join(peers) or '-'}"
            f"{' [muted]' if coordinator.is_muted else ''}"
        )


async def voice_call(
    room_id: str,
    participant_id: str,
    role: Optional[str] = None,
    signaling_url: Optional[str] = None,
    policy: Optional[str] = None,
    start_muted: bool = False,
    status_interval: float = 10.0,
):
    """Join a room's voice call and stay in it until cancelled."""
    config = get_config()
    voice_config = config.get_voice_config()
    if policy:
        voice_config.policy = policy

    signaling = WebSocketSignalingTransport(
        signaling_url or config.signaling_websocket, room_id, participant_id
    )
    await signaling.connect()

    coordinator = MeshCoordinator(
        room_id=room_id,
        participant_id=participant_id,
        signaling=signaling,
        transport_factory=aiortc_transport_factory(voice_config.ice_servers),
        room_store=build_room_store(config),
        config=voice_config,
    )
    coordinator.on_error(lambda error: logging.warning(f"Voice call error: {error}"))

    try:
        joined_role = await coordinator.join_call(role)
        logging.info(f"In call as {participant_id} ({joined_role}) in room {room_id}")
        if start_muted and coordinator.local_media.has_stream:
            coordinator.toggle_mute()
        await _status_loop(coordinator, status_interval)
    finally:
        await coordinator.shutdown()


def run_voice_call(
    room_id,
    participant_id,
    role=None,
    signaling_url=None,
    policy=None,
    start_muted=False,
):
    """Run a voice call until interrupted.

    Args:
        room_id: Room to join.
        participant_id: Local participant id.
        role: Optional role; read from the room store when omitted.
        signaling_url: Optional relay URL overriding the config file.
        policy: Optional role policy overriding the config file.
        start_muted: Mute the microphone right after joining.
    """
    try:
        asyncio.run(
            voice_call(
                room_id=room_id,
                participant_id=participant_id,
                role=role,
                signaling_url=signaling_url,
                policy=policy,
                start_muted=start_muted,
            )
        )
    except KeyboardInterrupt:
        logging.info("Call interrupted by user. Leaving...")
    finally:
        logging.info("Voice call exiting...")
