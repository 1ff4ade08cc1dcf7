"""Error types raised or reported by the voice-call core.

Only MediaAccessDenied and DeviceUnavailable escape ``join_call``; every
other error is delivered to the handlers registered with
``MeshCoordinator.on_error`` and never interrupts other peers.
"""

from typing import Optional


class VoiceCallError(Exception):
    """Base class for voice-call errors.

    Attributes:
        peer_id: Remote participant the error concerns, if any.
    """

    def __init__(self, message: str = "", peer_id: Optional[str] = None):
        super().__init__(message)
        self.peer_id = peer_id


class MediaAccessDenied(VoiceCallError):
    """Microphone permission was refused."""


class DeviceUnavailable(VoiceCallError):
    """No usable capture device could be opened."""


class NegotiationFailed(VoiceCallError):
    """Offer/answer creation or application failed for a peer."""


class TransportDisconnected(VoiceCallError):
    """A peer connection dropped and did not recover in time."""


class SignalingDeliveryUnknown(VoiceCallError):
    """A signaling publish could not be confirmed. Never retried."""


class UnknownPeer(VoiceCallError):
    """A signaling message referenced a peer with no session."""


class ProtocolError(VoiceCallError):
    """A signaling record could not be parsed."""


class PlaybackBlocked(VoiceCallError):
    """A remote audio sink could not start playback on the output device."""
