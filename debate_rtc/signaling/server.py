"""WebSocket relay for room-scoped voice signaling.

Every connection registers as a member of one room, after which each frame
it sends is rebroadcast to every other member of that room. Targeted
messages are broadcast too; recipients drop what is not addressed to them.
When a member disconnects, the relay announces a ``leave`` on its behalf.

Usage:
    debate-rtc signaling-server [--host HOST] [--port PORT]
"""

import asyncio
import json
import logging
from typing import Dict, Optional

import websockets

from debate_rtc.protocol import make_leave

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Room membership table and broadcast logic for the relay.

    Attributes:
        rooms: room_id -> {participant_id: websocket}
    """

    def __init__(self):
        self.rooms: Dict[str, Dict[str, object]] = {}

    async def handler(self, websocket):
        """Handle one WebSocket connection.

        A connection belongs to at most one room under one id. Relayed frames
        are stamped with that id and room, so a member cannot speak for
        another participant.
        """
        room_id: Optional[str] = None
        peer_id: Optional[str] = None

        try:
            async for raw in websocket:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON received, ignoring frame")
                    continue

                if not isinstance(data, dict):
                    logger.warning("Non-object frame received, ignoring")
                    continue

                if data.get("type") == "register":
                    requested_room = data.get("room_id")
                    requested_peer = data.get("peer_id")
                    if not requested_room or not requested_peer:
                        await websocket.send(
                            json.dumps({"type": "error", "reason": "register requires room_id and peer_id"})
                        )
                        continue

                    if room_id is not None and (requested_room, requested_peer) != (room_id, peer_id):
                        logger.warning(
                            f"{peer_id} tried to re-register as {requested_peer} in {requested_room}"
                        )
                        await websocket.send(json.dumps({"type": "error", "reason": "already registered"}))
                        continue

                    room_id, peer_id = requested_room, requested_peer
                    self.rooms.setdefault(room_id, {})[peer_id] = websocket
                    logger.info(
                        f"Registered {peer_id} in room {room_id} "
                        f"(members: {len(self.rooms[room_id])})"
                    )
                    await websocket.send(
                        json.dumps({"type": "registered", "room_id": room_id, "peer_id": peer_id})
                    )

                elif room_id is None:
                    await websocket.send(json.dumps({"type": "error", "reason": "not registered"}))

                else:
                    if data.get("from") not in (None, peer_id):
                        logger.warning(f"{peer_id} sent a frame as {data.get('from')}, rewriting sender")
                    data["from"] = peer_id
                    data["room_id"] = room_id
                    await self.broadcast(room_id, peer_id, json.dumps(data))

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {peer_id}")
        finally:
            if room_id and peer_id:
                await self.remove_member(room_id, peer_id, websocket)

    async def broadcast(self, room_id: str, sender: str, raw: str):
        """Send a frame to every member of the room except the sender."""
        members = [
            (pid, ws) for pid, ws in self.rooms.get(room_id, {}).items() if pid != sender
        ]
        for pid, ws in members:
            try:
                await ws.send(raw)
            except websockets.exceptions.ConnectionClosed:
                logger.debug(f"Skipping closed member {pid} in room {room_id}")
        logger.debug(f"Relayed frame from {sender} to {len(members)} member(s) of {room_id}")

    async def remove_member(self, room_id: str, peer_id: str, websocket):
        """Drop a member and announce its departure to the rest of the room."""
        room = self.rooms.get(room_id, {})
        if room.get(peer_id) is not websocket:
            return
        del room[peer_id]
        logger.info(f"Removed {peer_id} from room {room_id} (remaining: {len(room)})")
        if not room:
            self.rooms.pop(room_id, None)
            return
        await self.broadcast(room_id, peer_id, make_leave(peer_id, room_id).to_json())


async def serve(host: str = "0.0.0.0", port: int = 8765):
    """Run the relay until cancelled."""
    relay = SignalingRelay()
    async with websockets.serve(relay.handler, host, port):
        logger.info(f"Signaling relay listening on ws://{host}:{port}")
        await asyncio.Future()
