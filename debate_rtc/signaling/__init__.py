"""Signaling transports and the WebSocket relay."""

from debate_rtc.signaling.transport import (
    InMemorySignalingHub,
    InMemorySignalingTransport,
    SignalingTransport,
    Subscription,
    WebSocketSignalingTransport,
)

__all__ = [
    "InMemorySignalingHub",
    "InMemorySignalingTransport",
    "SignalingTransport",
    "Subscription",
    "WebSocketSignalingTransport",
]
