"""Media layer for debate-rtc.

This module provides:
- transport: MediaTransport interface, aiortc implementation, ICE probe
- local: LocalMediaController (capture, mute, release)
- sinks: RemoteSinkManager (per-peer audio output)
"""

from debate_rtc.media.transport import (
    AiortcMediaTransport,
    MediaTransport,
    aiortc_transport_factory,
    probe_ice_connectivity,
)
from debate_rtc.media.local import LocalMediaController, MutableAudioTrack
from debate_rtc.media.sinks import RemoteAudioSink, RemoteSinkManager

__all__ = [
    "AiortcMediaTransport",
    "MediaTransport",
    "aiortc_transport_factory",
    "probe_ice_connectivity",
    "LocalMediaController",
    "MutableAudioTrack",
    "RemoteAudioSink",
    "RemoteSinkManager",
]
