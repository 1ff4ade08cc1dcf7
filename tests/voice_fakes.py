"""Shared fakes for voice mesh tests.

FakeMediaTransport stands in for a peer connection: descriptions and
candidates are recorded instead of negotiated, and tests drive connection
state changes with ``set_state``.
"""

import asyncio
from typing import List, Optional

from aiortc.mediastreams import AudioStreamTrack

from debate_rtc.config import VoiceConfig
from debate_rtc.media.local import LocalMediaController
from debate_rtc.media.sinks import RemoteSinkManager
from debate_rtc.media.transport import MediaTransport
from debate_rtc.mesh.coordinator import MeshCoordinator


class FakeMediaTransport(MediaTransport):
    def __init__(self, peer_id: str, fail_offer: bool = False, ice_restart: bool = False):
        super().__init__()
        self.peer_id = peer_id
        self.fail_offer = fail_offer
        self.supports_ice_restart = ice_restart
        self.remote_description_gate: Optional[asyncio.Event] = None
        self.applied_candidates: List[dict] = []
        self.tracks: List = []
        self.removed_tracks: List = []
        self.closed = False
        self.restarts = 0
        self._state = "new"
        self._local = None
        self._remote = None

    @property
    def connection_state(self) -> str:
        return self._state

    @property
    def ice_gathering_state(self) -> str:
        return "complete" if self._local else "new"

    @property
    def local_description(self):
        return self._local

    @property
    def remote_description(self):
        return self._remote

    async def create_offer(self):
        if self.fail_offer:
            raise RuntimeError("offer creation failed")
        return {"type": "offer", "sdp": f"v=0 offer to {self.peer_id}"}

    async def create_answer(self):
        if self._remote is None:
            raise RuntimeError("no remote offer")
        return {"type": "answer", "sdp": f"v=0 answer to {self.peer_id}"}

    async def set_local_description(self, description):
        self._local = dict(description)

    async def set_remote_description(self, description):
        if self.remote_description_gate is not None:
            await self.remote_description_gate.wait()
        self._remote = {"sdp": description["sdp"], "type": description["type"]}

    async def add_candidate(self, candidate):
        if self._remote is None:
            raise RuntimeError("candidate applied before remote description")
        self.applied_candidates.append(candidate)

    async def wait_for_gathering(self, timeout):
        return True

    def add_track(self, track):
        self.tracks.append(track)

    async def remove_track(self, track):
        self.removed_tracks.append(track)

    async def restart_ice(self):
        self.restarts += 1

    async def close(self):
        self.closed = True
        self._state = "closed"

    def set_state(self, state: str):
        self._state = state
        self._emit_state(state)


class FakeTransportFactory:
    """Creates FakeMediaTransports and remembers every one."""

    def __init__(self):
        self.created: List[FakeMediaTransport] = []
        self.fail_offers_for = set()
        self.remote_description_gate: Optional[asyncio.Event] = None
        self.ice_restart = False

    def __call__(self, peer_id: str) -> FakeMediaTransport:
        transport = FakeMediaTransport(
            peer_id,
            fail_offer=peer_id in self.fail_offers_for,
            ice_restart=self.ice_restart,
        )
        transport.remote_description_gate = self.remote_description_gate
        self.created.append(transport)
        return transport

    def for_peer(self, peer_id: str) -> List[FakeMediaTransport]:
        return [t for t in self.created if t.peer_id == peer_id]

    def latest(self, peer_id: str) -> FakeMediaTransport:
        return self.for_peer(peer_id)[-1]


class FakeSink:
    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.track = None
        self.playing = False
        self.blocked = False
        self.stopped = False

    async def start(self, track):
        self.track = track
        self.playing = True

    async def resume(self):
        self.playing = True
        return True

    async def stop(self):
        self.stopped = True
        self.track = None
        self.playing = False


class FakeAudioTrack:
    kind = "audio"


def fast_config(**overrides) -> VoiceConfig:
    values = dict(
        gather_timeout=0.1,
        answer_timeout=1.0,
        reconnect_grace=0.2,
        offer_retries=2,
        offer_retry_delay=0.01,
    )
    values.update(overrides)
    return VoiceConfig(**values)


def make_participant(
    hub,
    participant_id: str,
    room_id: str = "room-1",
    config: Optional[VoiceConfig] = None,
    factory: Optional[FakeTransportFactory] = None,
    room_store=None,
    capture_factory=None,
):
    """Build a MeshCoordinator wired to the in-memory hub and fakes."""
    factory = factory or FakeTransportFactory()
    coordinator = MeshCoordinator(
        room_id=room_id,
        participant_id=participant_id,
        signaling=hub.connect(room_id, participant_id),
        transport_factory=factory,
        room_store=room_store,
        config=config or fast_config(),
        local_media=LocalMediaController(
            capture_factory=capture_factory or (lambda constraints: AudioStreamTrack())
        ),
        sinks=RemoteSinkManager(FakeSink),
    )
    return coordinator, factory


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def settle(hub, rounds: int = 5):
    """Let queued signaling and spawned handlers run."""
    for _ in range(rounds):
        await hub.flush()
        await asyncio.sleep(0.01)


def connect_pair(factory_a, peer_b, factory_b, peer_a):
    """Report "connected" on both sides of a negotiated pair."""
    factory_a.latest(peer_b).set_state("connected")
    factory_b.latest(peer_a).set_state("connected")
