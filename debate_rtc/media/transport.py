"""Media Transport capability interface and its aiortc implementation.

The mesh coordinator never touches a peer connection directly. It drives
one MediaTransport per remote participant through this interface:

- create offer / answer, set local / remote description
- add remote candidates, add / remove local tracks
- inbound-track, connection-state and local-candidate callbacks
- ICE restart (when supported) and close

Session descriptions and candidates cross this boundary as plain
dictionaries in the same shape as the signaling payloads.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

logger = logging.getLogger(__name__)

TrackHandler = Callable[[Any], None]
StateHandler = Callable[[str], None]
CandidateHandler = Callable[[Dict[str, Any]], None]


class MediaTransport(ABC):
    """One peer media session, as seen by the mesh coordinator."""

    #: Whether restart_ice() can be used to recover a dropped connection.
    supports_ice_restart: bool = False

    def __init__(self):
        self._track_handlers: List[TrackHandler] = []
        self._state_handlers: List[StateHandler] = []
        self._candidate_handlers: List[CandidateHandler] = []

    # -- callbacks --------------------------------------------------------

    def on_track(self, handler: TrackHandler):
        """Call ``handler(track)`` for every inbound media track."""
        self._track_handlers.append(handler)

    def on_connection_state_change(self, handler: StateHandler):
        """Call ``handler(state)`` on every connection state change.

        States: "new", "connecting", "connected", "disconnected", "failed", "closed".
        """
        self._state_handlers.append(handler)

    def on_local_candidate(self, handler: CandidateHandler):
        """Call ``handler(candidate_dict)`` for every locally gathered candidate."""
        self._candidate_handlers.append(handler)

    def _emit_track(self, track):
        for handler in list(self._track_handlers):
            handler(track)

    def _emit_state(self, state: str):
        for handler in list(self._state_handlers):
            handler(state)

    def _emit_candidate(self, candidate: Dict[str, Any]):
        for handler in list(self._candidate_handlers):
            handler(candidate)

    # -- state ------------------------------------------------------------

    @property
    @abstractmethod
    def connection_state(self) -> str: ...

    @property
    @abstractmethod
    def ice_gathering_state(self) -> str: ...

    @property
    @abstractmethod
    def local_description(self) -> Optional[Dict[str, str]]: ...

    @property
    @abstractmethod
    def remote_description(self) -> Optional[Dict[str, str]]: ...

    # -- negotiation ------------------------------------------------------

    @abstractmethod
    async def create_offer(self) -> Dict[str, str]: ...

    @abstractmethod
    async def create_answer(self) -> Dict[str, str]: ...

    @abstractmethod
    async def set_local_description(self, description: Dict[str, str]): ...

    @abstractmethod
    async def set_remote_description(self, description: Dict[str, str]): ...

    @abstractmethod
    async def add_candidate(self, candidate: Dict[str, Any]): ...

    @abstractmethod
    async def wait_for_gathering(self, timeout: float) -> bool:
        """Wait until candidate gathering completes or ``timeout`` expires.

        Returns:
            True if gathering completed, False on timeout.
        """

    # -- tracks / lifecycle -----------------------------------------------

    @abstractmethod
    def add_track(self, track): ...

    @abstractmethod
    async def remove_track(self, track): ...

    async def restart_ice(self):
        raise NotImplementedError("ICE restart is not supported by this transport")

    @abstractmethod
    async def close(self): ...

    def diagnostics(self) -> Dict[str, Any]:
        """Snapshot of transport state for debugging."""
        local = self.local_description
        remote = self.remote_description
        return {
            "connection_state": self.connection_state,
            "ice_gathering_state": self.ice_gathering_state,
            "local_description_type": local["type"] if local else None,
            "remote_description_type": remote["type"] if remote else None,
        }


def build_rtc_configuration(ice_servers: Optional[List[dict]]) -> Optional[RTCConfiguration]:
    """Build an aiortc RTCConfiguration from ICE server dictionaries.

    Args:
        ice_servers: List of {"urls", "username", "credential"} dictionaries.

    Returns:
        RTCConfiguration, or None when no servers are configured.
    """
    if not ice_servers:
        return None
    ice_server_objects = [RTCIceServer(**server) for server in ice_servers]
    return RTCConfiguration(iceServers=ice_server_objects)


def parse_candidate(candidate: Dict[str, Any]):
    """Convert a candidate payload into an aiortc RTCIceCandidate."""
    line = candidate["candidate"]
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    ice_candidate = candidate_from_sdp(line)
    ice_candidate.sdpMid = candidate.get("sdpMid")
    ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return ice_candidate


def _description_dict(description) -> Optional[Dict[str, str]]:
    if description is None:
        return None
    return {"sdp": description.sdp, "type": description.type}


class AiortcMediaTransport(MediaTransport):
    """MediaTransport backed by an aiortc RTCPeerConnection.

    aiortc gathers every candidate while applying the local description
    and embeds them in the SDP, so ``on_local_candidate`` handlers are not
    called for this transport. aiortc has no ICE restart.
    """

    supports_ice_restart = False

    def __init__(self, ice_servers: Optional[List[dict]] = None):
        super().__init__()
        config = build_rtc_configuration(ice_servers)
        if config is not None:
            logger.debug(f"Creating RTCPeerConnection with {len(config.iceServers)} ICE server(s)")
            self.pc = RTCPeerConnection(configuration=config)
        else:
            logger.warning("No ICE servers configured, using default RTCPeerConnection")
            self.pc = RTCPeerConnection()
        self._senders: Dict[int, Any] = {}

        @self.pc.on("track")
        def on_track(track):
            logger.debug(f"Inbound {track.kind} track {track.id}")
            self._emit_track(track)

        @self.pc.on("connectionstatechange")
        def on_connection_state_change():
            self._emit_state(self.pc.connectionState)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def ice_gathering_state(self) -> str:
        return self.pc.iceGatheringState

    @property
    def local_description(self) -> Optional[Dict[str, str]]:
        return _description_dict(self.pc.localDescription)

    @property
    def remote_description(self) -> Optional[Dict[str, str]]:
        return _description_dict(self.pc.remoteDescription)

    async def create_offer(self) -> Dict[str, str]:
        # Receive-only participants still need an audio m-line in their offer
        if not any(t.kind == "audio" for t in self.pc.getTransceivers()):
            self.pc.addTransceiver("audio", direction="recvonly")
        offer = await self.pc.createOffer()
        return _description_dict(offer)

    async def create_answer(self) -> Dict[str, str]:
        answer = await self.pc.createAnswer()
        return _description_dict(answer)

    async def set_local_description(self, description: Dict[str, str]):
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def set_remote_description(self, description: Dict[str, str]):
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_candidate(self, candidate: Dict[str, Any]):
        await self.pc.addIceCandidate(parse_candidate(candidate))

    async def wait_for_gathering(self, timeout: float) -> bool:
        if self.pc.iceGatheringState == "complete":
            return True

        done = asyncio.get_running_loop().create_future()

        def on_gathering_change():
            if self.pc.iceGatheringState == "complete" and not done.done():
                done.set_result(True)

        self.pc.on("icegatheringstatechange", on_gathering_change)
        try:
            await asyncio.wait_for(done, timeout)
            return True
        except asyncio.TimeoutError:
            logger.debug(f"Candidate gathering still {self.pc.iceGatheringState} after {timeout}s")
            return False
        finally:
            self.pc.remove_listener("icegatheringstatechange", on_gathering_change)

    def add_track(self, track):
        sender = self.pc.addTrack(track)
        self._senders[id(track)] = sender
        return sender

    async def remove_track(self, track):
        sender = self._senders.pop(id(track), None)
        if sender is None:
            return
        # aiortc has no removeTrack; detaching the sender track stops sending
        await sender.replaceTrack(None)

    async def close(self):
        await self.pc.close()


def aiortc_transport_factory(ice_servers: Optional[List[dict]] = None):
    """Return a ``peer_id -> MediaTransport`` factory using aiortc."""

    def factory(peer_id: str) -> MediaTransport:
        logger.debug(f"Creating media transport for {peer_id}")
        return AiortcMediaTransport(ice_servers=ice_servers)

    return factory


async def probe_ice_connectivity(
    ice_servers: Optional[List[dict]] = None, timeout: float = 5.0
) -> Dict[str, Any]:
    """Check that candidates can be gathered with the given ICE servers.

    Creates a throwaway peer connection with a data channel, applies an
    offer to trigger gathering, and reports the candidates found in the
    resulting description.

    Returns:
        {"success": True, "candidate_count": N, "candidates": [...]} or
        {"success": False, "error": "..."}.
    """
    config = build_rtc_configuration(ice_servers)
    pc = RTCPeerConnection(configuration=config) if config else RTCPeerConnection()
    try:
        pc.createDataChannel("probe")
        offer = await pc.createOffer()
        await asyncio.wait_for(pc.setLocalDescription(offer), timeout)
        candidates = [
            line[len("a="):]
            for line in pc.localDescription.sdp.splitlines()
            if line.startswith("a=candidate:")
        ]
        logger.info(f"ICE probe gathered {len(candidates)} candidate(s)")
        return {
            "success": True,
            "candidate_count": len(candidates),
            "candidates": candidates,
        }
    except asyncio.TimeoutError:
        logger.error(f"ICE probe timed out after {timeout}s")
        return {"success": False, "error": f"gathering timed out after {timeout}s"}
    except Exception as e:
        logger.error(f"ICE probe failed: {e}")
        return {"success": False, "error": str(e)}
    finally:
        await pc.close()
