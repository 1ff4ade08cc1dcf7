"""Signaling message protocol for debate-rtc voice calls.

This module defines the message types and record format exchanged between
participants of a room over the signaling transport while they set up the
peer-to-peer audio mesh.

Message Protocol Overview
-------------------------

Every signaling message is a JSON object published to a room-scoped
broadcast topic. All members of the room receive every message; a message
with a ``to`` field is meant for one participant only and every other
recipient must drop it. A participant always drops its own messages.

Record Format
-------------

.. code-block:: json

    {
        "type": "offer",
        "from": "participant-a",
        "to": "participant-b",
        "room_id": "R1",
        "payload": {"sdp": "v=0...", "type": "offer"}
    }

Message Types
-------------

**join**
    Sent by: Any participant entering the call (broadcast), or as a presence
    reply targeted at a newcomer.
    Payload: ``{"role": "initiator" | "receiver"}``

**leave**
    Sent by: Any participant leaving the call (broadcast).
    Payload: ``{}``

**offer**
    Sent by: The originating side of a pair, targeted at the peer.
    Payload: session description ``{"sdp": "...", "type": "offer"}``

**answer**
    Sent by: The responding side, targeted at the offering peer.
    Payload: session description ``{"sdp": "...", "type": "answer"}``

**ice-candidate**
    Sent by: Either side, targeted, as soon as a local candidate is gathered.
    Payload: ``{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}``
    An empty ``candidate`` string marks end-of-candidates.

Message Flow Example
--------------------

1. A (initiator) → room: join {"role": "initiator"}
2. B (receiver) → A: join {"role": "receiver"} (presence reply)
3. A → B: offer
4. B → A: answer
5. A ↔ B: ice-candidate (any time, either direction)
6. A → room: leave
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from debate_rtc.errors import ProtocolError

# Signaling message types (wire names)
MSG_JOIN = "join"
MSG_LEAVE = "leave"
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_ICE_CANDIDATE = "ice-candidate"

MESSAGE_TYPES = {MSG_JOIN, MSG_LEAVE, MSG_OFFER, MSG_ANSWER, MSG_ICE_CANDIDATE}

# Participant roles
ROLE_INITIATOR = "initiator"
ROLE_RECEIVER = "receiver"

VALID_ROLES = {ROLE_INITIATOR, ROLE_RECEIVER}

# Product roles stored by the room backend
PRODUCT_ROLES = {
    "anchor": ROLE_INITIATOR,
    "audience": ROLE_RECEIVER,
    "organiser": ROLE_RECEIVER,
}


def normalize_role(role: str) -> str:
    """Map a product or canonical role name to a call role.

    Args:
        role: "anchor", "audience", "organiser", "initiator" or "receiver"
            (case-insensitive).

    Returns:
        ROLE_INITIATOR or ROLE_RECEIVER.

    Raises:
        ValueError: If the role name is not recognised.

    Examples:
        >>> normalize_role("anchor")
        'initiator'
        >>> normalize_role("Receiver")
        'receiver'
    """
    name = (role or "").strip().lower()
    if name in VALID_ROLES:
        return name
    if name in PRODUCT_ROLES:
        return PRODUCT_ROLES[name]
    raise ValueError(f"Unknown participant role: {role!r}")


@dataclass
class SignalingMessage:
    """A single signaling record.

    Attributes:
        type: One of the MSG_* constants.
        sender: Participant id of the publisher (wire key ``from``).
        target: Participant id of the only intended recipient (wire key
            ``to``); None means broadcast to the room.
        room_id: Room the message was published in.
        payload: Session description, candidate or join data.
    """

    type: str
    sender: str
    target: Optional[str] = None
    room_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in MESSAGE_TYPES:
            raise ProtocolError(f"Unknown signaling message type: {self.type!r}")
        if not self.sender:
            raise ProtocolError("Signaling message has no sender")

    def is_addressed_to(self, participant_id: str) -> bool:
        """Whether this participant should process the message.

        Own messages are never processed, and targeted messages are only
        processed by their target.
        """
        if self.sender == participant_id:
            return False
        return self.target is None or self.target == participant_id

    def to_dict(self) -> dict:
        """Convert to the wire dictionary."""
        data = {
            "type": self.type,
            "from": self.sender,
            "room_id": self.room_id,
            "payload": self.payload,
        }
        if self.target is not None:
            data["to"] = self.target
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SignalingMessage":
        """Create a message from a wire dictionary.

        Raises:
            ProtocolError: If required fields are missing or malformed.
        """
        if not isinstance(data, dict):
            raise ProtocolError(f"Signaling record must be an object, got {type(data).__name__}")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ProtocolError("Signaling payload must be an object")
        return cls(
            type=data.get("type"),
            sender=data.get("from"),
            target=data.get("to"),
            room_id=data.get("room_id"),
            payload=payload,
        )

    def to_json(self) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "SignalingMessage":
        """Deserialize from a JSON string.

        Raises:
            ProtocolError: If the text is not valid JSON or not a valid record.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid signaling JSON: {e}") from e
        return cls.from_dict(data)


def make_join(sender: str, room_id: str, role: str, target: Optional[str] = None) -> SignalingMessage:
    return SignalingMessage(
        type=MSG_JOIN,
        sender=sender,
        target=target,
        room_id=room_id,
        payload={"role": role},
    )


def make_leave(sender: str, room_id: str) -> SignalingMessage:
    return SignalingMessage(type=MSG_LEAVE, sender=sender, room_id=room_id)


def make_description(
    msg_type: str, sender: str, target: str, room_id: str, description: Dict[str, Any]
) -> SignalingMessage:
    """Build an offer or answer message carrying a session description."""
    return SignalingMessage(
        type=msg_type,
        sender=sender,
        target=target,
        room_id=room_id,
        payload={"sdp": description["sdp"], "type": description["type"]},
    )


def make_candidate(
    sender: str, target: str, room_id: str, candidate: Dict[str, Any]
) -> SignalingMessage:
    return SignalingMessage(
        type=MSG_ICE_CANDIDATE,
        sender=sender,
        target=target,
        room_id=room_id,
        payload={
            "candidate": candidate.get("candidate"),
            "sdpMid": candidate.get("sdpMid"),
            "sdpMLineIndex": candidate.get("sdpMLineIndex"),
        },
    )
