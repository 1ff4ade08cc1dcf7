"""Room-scoped signaling transports.

A signaling transport is a best-effort publish/subscribe channel shared by
every member of one room. It gives no ordering guarantee across messages
and is not a durable log: a subscriber only sees messages published after
it subscribed.

Implementations:
- InMemorySignalingTransport: in-process bus created by InMemorySignalingHub
  (single-process demos and tests).
- WebSocketSignalingTransport: client of the relay in
  ``debate_rtc.signaling.server``.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional

import websockets

from debate_rtc.errors import ProtocolError, SignalingDeliveryUnknown
from debate_rtc.protocol import SignalingMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[SignalingMessage], Awaitable[None]]


class Subscription:
    """Handle returned by ``SignalingTransport.subscribe``."""

    def __init__(self, transport: "SignalingTransport", handler: MessageHandler):
        self._transport = transport
        self._handler = handler
        self.active = True

    def cancel(self):
        """Stop delivering messages to the handler. Safe to call twice."""
        if not self.active:
            return
        self.active = False
        self._transport._remove_handler(self._handler)


class SignalingTransport(ABC):
    """Base class for room-scoped signaling transports.

    Attributes:
        room_id: Room whose topic this transport publishes to.
        participant_id: Local participant id.
    """

    def __init__(self, room_id: str, participant_id: str):
        self.room_id = room_id
        self.participant_id = participant_id
        self._handlers: List[MessageHandler] = []
        self._delivery_failure_handler: Optional[Callable[[SignalingDeliveryUnknown], None]] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, message: SignalingMessage) -> bool:
        """Fire-and-forget publish to the room topic.

        Failures are logged and reported through the delivery-failure hook;
        they are never retried.

        Returns:
            True if the message was handed to the underlying transport.
        """
        if message.room_id is None:
            message.room_id = self.room_id

        if self._closed:
            error = SignalingDeliveryUnknown(
                f"Signaling transport closed, dropped {message.type}", peer_id=message.target
            )
            logger.warning(str(error))
            self._report_delivery_failure(error)
            return False

        try:
            await self._send(message)
            logger.debug(f"Published {message.type} from {message.sender} to {message.target or 'room'}")
            return True
        except Exception as e:
            error = SignalingDeliveryUnknown(
                f"Failed to publish {message.type}: {e}", peer_id=message.target
            )
            logger.warning(str(error))
            self._report_delivery_failure(error)
            return False

    def subscribe(self, handler: MessageHandler) -> Subscription:
        """Deliver every message published by other members after this call.

        Args:
            handler: Coroutine function called with each SignalingMessage.

        Returns:
            Subscription that can be cancelled.
        """
        self._handlers.append(handler)
        return Subscription(self, handler)

    def on_delivery_failure(self, handler: Callable[[SignalingDeliveryUnknown], None]):
        """Register the callback invoked when a publish could not be delivered."""
        self._delivery_failure_handler = handler

    async def close(self):
        """Tear down the subscription and the underlying connection once."""
        if self._closed:
            return
        self._closed = True
        self._handlers.clear()
        await self._close()
        logger.info(f"Signaling transport closed for room {self.room_id}")

    def _remove_handler(self, handler: MessageHandler):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def _report_delivery_failure(self, error: SignalingDeliveryUnknown):
        if self._delivery_failure_handler is None:
            return
        try:
            self._delivery_failure_handler(error)
        except Exception as e:
            logger.error(f"Delivery failure handler raised: {e}")

    async def _deliver(self, message: SignalingMessage):
        for handler in list(self._handlers):
            try:
                await handler(message)
            except Exception as e:
                logger.error(f"Signaling handler error for {message.type}: {e}")

    @abstractmethod
    async def _send(self, message: SignalingMessage):
        """Hand one message to the underlying transport."""

    async def _close(self):
        """Release transport-specific resources."""


class InMemorySignalingHub:
    """In-process room broadcast bus.

    Each published message is round-tripped through JSON, recorded in
    ``history`` and queued for every other member of the same room.
    """

    def __init__(self):
        self._rooms: Dict[str, Dict[str, "InMemorySignalingTransport"]] = {}
        self.history: List[SignalingMessage] = []

    def connect(self, room_id: str, participant_id: str) -> "InMemorySignalingTransport":
        """Create a transport for one participant in one room."""
        transport = InMemorySignalingTransport(self, room_id, participant_id)
        self._rooms.setdefault(room_id, {})[participant_id] = transport
        return transport

    def members(self, room_id: str) -> List[str]:
        return list(self._rooms.get(room_id, {}))

    async def flush(self):
        """Wait until every queued message has been handed to its subscribers."""
        for room in list(self._rooms.values()):
            for transport in list(room.values()):
                await transport._queue.join()

    def _broadcast(self, sender: "InMemorySignalingTransport", message: SignalingMessage):
        raw = message.to_json()
        self.history.append(SignalingMessage.from_json(raw))
        for participant_id, member in self._rooms.get(sender.room_id, {}).items():
            if member is sender:
                continue
            member._enqueue(SignalingMessage.from_json(raw))

    def _detach(self, transport: "InMemorySignalingTransport"):
        room = self._rooms.get(transport.room_id, {})
        if room.get(transport.participant_id) is transport:
            del room[transport.participant_id]
        if not room:
            self._rooms.pop(transport.room_id, None)


class InMemorySignalingTransport(SignalingTransport):
    """Transport bound to an InMemorySignalingHub."""

    def __init__(self, hub: InMemorySignalingHub, room_id: str, participant_id: str):
        super().__init__(room_id, participant_id)
        self._hub = hub
        self._queue: "asyncio.Queue[SignalingMessage]" = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None

    async def _send(self, message: SignalingMessage):
        self._hub._broadcast(self, message)

    def _enqueue(self, message: SignalingMessage):
        # Only subscribers present at publish time receive the message
        if self._closed or not self._handlers:
            return
        self._queue.put_nowait(message)
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self):
        while True:
            message = await self._queue.get()
            try:
                await self._deliver(message)
            finally:
                self._queue.task_done()

    async def _close(self):
        self._hub._detach(self)
        if self._pump_task and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()


class WebSocketSignalingTransport(SignalingTransport):
    """Signaling over the debate-rtc WebSocket relay.

    After connecting, the transport registers with the relay as a member of
    its room; the relay rebroadcasts every frame to the other members.
    """

    def __init__(self, url: str, room_id: str, participant_id: str):
        super().__init__(room_id, participant_id)
        self.url = url
        self.websocket = None
        self._reader_task: Optional[asyncio.Task] = None

    async def connect(self):
        """Open the WebSocket and register with the room."""
        logger.info(f"Connecting to signaling relay at {self.url}")
        self.websocket = await websockets.connect(self.url)
        await self.websocket.send(
            json.dumps(
                {
                    "type": "register",
                    "room_id": self.room_id,
                    "peer_id": self.participant_id,
                }
            )
        )
        self._reader_task = asyncio.create_task(self._reader_loop())
        logger.info(f"Registered {self.participant_id} in room {self.room_id}")

    async def _send(self, message: SignalingMessage):
        if self.websocket is None:
            raise ConnectionError("signaling transport is not connected")
        await self.websocket.send(message.to_json())

    async def _reader_loop(self):
        """Background task dispatching relay frames to subscribers."""
        try:
            async for raw in self.websocket:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.error("Invalid JSON received from signaling relay")
                    continue

                msg_type = data.get("type") if isinstance(data, dict) else None

                if msg_type == "registered":
                    logger.debug(f"Relay confirmed registration in room {data.get('room_id')}")
                    continue
                if msg_type == "error":
                    logger.error(f"Signaling relay error: {data.get('reason')}")
                    continue

                try:
                    message = SignalingMessage.from_dict(data)
                except ProtocolError as e:
                    logger.warning(f"Dropping malformed signaling frame: {e}")
                    continue

                await self._deliver(message)

        except asyncio.CancelledError:
            logger.debug("Signaling reader cancelled")
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"Signaling connection to {self.url} closed")

    async def _close(self):
        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
