"""Peer mesh for room voice calls.

This module provides:
- coordinator: MeshCoordinator (join/leave, negotiation, teardown)
- peer_session: PeerSession state machine
- policy: RolePolicy (who originates each pair's offer)
- candidate_queue: CandidateQueue for early remote candidates
"""

from debate_rtc.mesh.candidate_queue import CandidateQueue
from debate_rtc.mesh.coordinator import MeshCoordinator
from debate_rtc.mesh.peer_session import (
    STATE_CLOSED,
    STATE_CONNECTED,
    STATE_NEGOTIATING,
    STATE_NEW,
    STATE_RECONNECTING,
    PeerSession,
)
from debate_rtc.mesh.policy import RolePolicy

__all__ = [
    "CandidateQueue",
    "MeshCoordinator",
    "PeerSession",
    "RolePolicy",
    "STATE_NEW",
    "STATE_NEGOTIATING",
    "STATE_CONNECTED",
    "STATE_RECONNECTING",
    "STATE_CLOSED",
]
