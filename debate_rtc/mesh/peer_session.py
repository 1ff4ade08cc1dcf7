"""Per-peer session state for the voice mesh.

States:
    new -> negotiating -> connected <-> reconnecting -> closed

``closed`` is terminal and reachable from every state. A PeerSession is
owned by exactly one MeshCoordinator; the coordinator serializes every
negotiation step for a peer through ``PeerSession.lock``.
"""

import asyncio
import logging
from typing import Any, Dict, List

from debate_rtc.mesh.candidate_queue import CandidateQueue

logger = logging.getLogger(__name__)

STATE_NEW = "new"
STATE_NEGOTIATING = "negotiating"
STATE_CONNECTED = "connected"
STATE_RECONNECTING = "reconnecting"
STATE_CLOSED = "closed"

ALLOWED_TRANSITIONS = {
    STATE_NEW: {STATE_NEGOTIATING, STATE_CLOSED},
    STATE_NEGOTIATING: {STATE_CONNECTED, STATE_RECONNECTING, STATE_CLOSED},
    STATE_CONNECTED: {STATE_RECONNECTING, STATE_CLOSED},
    STATE_RECONNECTING: {STATE_CONNECTED, STATE_CLOSED},
    STATE_CLOSED: set(),
}

# Timer names
TIMER_ANSWER = "answer"
TIMER_GRACE = "grace"


class PeerSession:
    """Connection to one remote participant.

    Attributes:
        peer_id: Remote participant id.
        transport: MediaTransport for this peer.
        state: One of the STATE_* constants.
        candidate_queue: Remote candidates waiting for the remote description.
        remote_stream: Inbound audio track, once received.
        is_offerer: True if the local side sent the offer.
        local_tracks: Local track subscriptions attached to the transport.
        lock: Serializes negotiation steps for this peer.
    """

    def __init__(self, peer_id: str, transport):
        self.peer_id = peer_id
        self.transport = transport
        self.state = STATE_NEW
        self.candidate_queue = CandidateQueue()
        self.remote_stream = None
        self.is_offerer = False
        self.remote_description_applied = False
        self.local_tracks: List[Any] = []
        self.lock = asyncio.Lock()
        self._timers: Dict[str, asyncio.Task] = {}

    @property
    def closed(self) -> bool:
        return self.state == STATE_CLOSED

    def transition(self, new_state: str):
        """Move to ``new_state``.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if new_state == self.state:
            return
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid transition for {self.peer_id}: {self.state} -> {new_state}"
            )
        logger.debug(f"Peer {self.peer_id}: {self.state} -> {new_state}")
        self.state = new_state

    def mark_remote_description_applied(self) -> List[Dict[str, Any]]:
        """Record that the remote description is in place.

        Returns:
            The queued candidates, in arrival order, to apply now.
        """
        self.remote_description_applied = True
        return self.candidate_queue.drain()

    def attach_local_tracks(self, tracks):
        for track in tracks:
            self.transport.add_track(track)
            self.local_tracks.append(track)

    # -- timers -------------------------------------------------------------

    def start_timer(self, name: str, coro) -> asyncio.Task:
        """Run ``coro`` as this session's ``name`` timer, replacing any running one."""
        self.cancel_timer(name)
        task = asyncio.create_task(coro)
        self._timers[name] = task
        return task

    def cancel_timer(self, name: str):
        task = self._timers.pop(name, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def has_timer(self, name: str) -> bool:
        task = self._timers.get(name)
        return task is not None and not task.done()

    def close(self):
        """Enter the terminal state and drop pending work.

        Does not close the transport; the coordinator does that.
        """
        if self.state != STATE_CLOSED:
            logger.debug(f"Peer {self.peer_id}: {self.state} -> {STATE_CLOSED}")
        self.state = STATE_CLOSED
        for name in list(self._timers):
            self.cancel_timer(name)
        self.candidate_queue.clear()

    def diagnostics(self) -> Dict[str, Any]:
        info = {
            "peer_id": self.peer_id,
            "state": self.state,
            "is_offerer": self.is_offerer,
            "has_remote_stream": self.remote_stream is not None,
            "queued_candidates": len(self.candidate_queue),
        }
        info.update(self.transport.diagnostics())
        return info

    def __repr__(self):
        return f"PeerSession({self.peer_id!r}, state={self.state!r})"

