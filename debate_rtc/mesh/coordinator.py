"""Mesh coordinator for room voice calls.

This module implements the full-mesh audio layer for one participant in a
debate room: one peer session per remote participant, negotiated over the
room's signaling topic.

Key responsibilities:
- Join/leave lifecycle of the local participant
- Deciding which side of each pair originates the offer (RolePolicy)
- Offer/answer handling with per-peer serialization
- Queueing remote candidates until the remote description is applied
- Reconnect grace window and teardown of dead sessions
- Routing remote audio to per-peer sinks
- Surfacing failures on a single error channel

Join flow:
1. Local participant resolves its role and, for initiators, opens the mic
2. Subscribes to the room topic and broadcasts a join
3. Every member that sees the join either offers (if it originates for the
   pair) or answers with a targeted join so the newcomer can offer
4. Targeted joins are never answered with another join
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from debate_rtc.config import VoiceConfig
from debate_rtc.errors import (
    NegotiationFailed,
    TransportDisconnected,
    UnknownPeer,
    VoiceCallError,
)
from debate_rtc.media.local import LocalMediaController
from debate_rtc.media.sinks import RemoteAudioSink, RemoteSinkManager
from debate_rtc.mesh.candidate_queue import CandidateQueue
from debate_rtc.mesh.peer_session import (
    STATE_CONNECTED,
    STATE_NEGOTIATING,
    STATE_RECONNECTING,
    TIMER_ANSWER,
    TIMER_GRACE,
    PeerSession,
)
from debate_rtc.mesh.policy import ORIGINATOR_LOCAL, ORIGINATOR_REMOTE, RolePolicy
from debate_rtc.protocol import (
    MSG_ANSWER,
    MSG_ICE_CANDIDATE,
    MSG_JOIN,
    MSG_LEAVE,
    MSG_OFFER,
    ROLE_INITIATOR,
    ROLE_RECEIVER,
    SignalingMessage,
    make_candidate,
    make_description,
    make_join,
    make_leave,
    normalize_role,
)

if TYPE_CHECKING:
    from debate_rtc.media.transport import MediaTransport
    from debate_rtc.room_store import RoomDataStore
    from debate_rtc.signaling.transport import SignalingTransport, Subscription

logger = logging.getLogger(__name__)

# Candidates kept per unknown peer until its offer arrives
EARLY_CANDIDATE_LIMIT = 32

ACTIVE_STATES = (STATE_CONNECTED, STATE_RECONNECTING)

ErrorHandler = Callable[[VoiceCallError], Any]


class MeshCoordinator:
    """Coordinates the audio mesh for one participant in one room.

    Attributes:
        room_id: Room this coordinator belongs to.
        participant_id: Local participant id.
        role: Local role while in a call, else None.
        signaling: SignalingTransport bound to the room topic.
        transport_factory: Callable returning a new MediaTransport per peer.
        room_store: Optional RoomDataStore used to resolve roles.
        config: VoiceConfig with timeouts, retries and policy.
        policy: RolePolicy derived from the config.
        local_media: LocalMediaController owning the capture stream.
        sinks: RemoteSinkManager owning one sink per remote peer.
        sessions: Active peer sessions keyed by remote participant id.
        peer_roles: Roles of remote participants seen in this call.
    """

    def __init__(
        self,
        room_id: str,
        participant_id: str,
        signaling: "SignalingTransport",
        transport_factory: Callable[[str], "MediaTransport"],
        room_store: Optional["RoomDataStore"] = None,
        config: Optional[VoiceConfig] = None,
        local_media: Optional[LocalMediaController] = None,
        sinks: Optional[RemoteSinkManager] = None,
    ):
        self.room_id = room_id
        self.participant_id = participant_id
        self.role: Optional[str] = None
        self.signaling = signaling
        self.transport_factory = transport_factory
        self.room_store = room_store
        self.config = config or VoiceConfig()
        self.policy = RolePolicy(self.config.policy)
        self.local_media = local_media or LocalMediaController()
        self.sinks = sinks or RemoteSinkManager(self._make_sink)

        self.sessions: Dict[str, PeerSession] = {}
        self.peer_roles: Dict[str, str] = {}

        self._in_call = False
        self._shut_down = False
        self._subscription: Optional["Subscription"] = None
        self._store_roles: Dict[str, str] = {}
        self._early_candidates: Dict[str, CandidateQueue] = {}
        self._initiating: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._error_handlers: List[ErrorHandler] = []

        self.signaling.on_delivery_failure(self._emit_error)

    def _make_sink(self, peer_id: str) -> RemoteAudioSink:
        return RemoteAudioSink(
            peer_id,
            output_device=self.config.output_device,
            output_format=self.config.output_format,
        )

    @property
    def in_call(self) -> bool:
        return self._in_call

    @property
    def is_muted(self) -> bool:
        return self.local_media.muted

    # -- public operations --------------------------------------------------

    async def join_call(self, role: Optional[str] = None) -> str:
        """Join the room's voice call.

        Args:
            role: Local role. When None the role is read from the room store.

        Returns:
            The role the participant joined with.

        Raises:
            MediaAccessDenied: Initiator could not get microphone permission.
            DeviceUnavailable: Initiator has no usable capture device.
            RuntimeError: The coordinator was shut down.
        """
        if self._shut_down:
            raise RuntimeError("MeshCoordinator has been shut down")
        if self._in_call:
            logger.info(f"Already in voice call for room {self.room_id}, ignoring join")
            return self.role

        role = await self._resolve_role(role)
        await self._load_peer_roles()

        if role == ROLE_INITIATOR:
            try:
                # Opening the capture device blocks
                await asyncio.to_thread(self.local_media.acquire_local_audio, self.config.audio)
            except VoiceCallError as e:
                logger.error(f"Cannot join call in room {self.room_id}: {e}")
                raise

        self.role = role
        self._in_call = True
        self._subscription = self.signaling.subscribe(self._on_signaling_message)
        logger.info(
            f"Joining voice call in room {self.room_id} as {role} "
            f"({self.policy.name} policy)"
        )
        await self.signaling.publish(make_join(self.participant_id, self.room_id, role))
        return role

    async def leave_call(self):
        """Leave the call and release every session, sink and track.

        Safe to call when not in a call.
        """
        if not self._in_call:
            logger.debug("leave_call ignored: not in a call")
            return

        logger.info(f"Leaving voice call in room {self.room_id}")
        self._in_call = False
        await self.signaling.publish(make_leave(self.participant_id, self.room_id))

        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

        await self._cancel_tasks()

        sessions = list(self.sessions.values())
        for session in sessions:
            session.close()
        results = await asyncio.gather(
            *(self._teardown(session) for session in sessions), return_exceptions=True
        )
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning(f"Error tearing down session with {session.peer_id}: {result}")
        self.sessions.clear()

        await self.sinks.release_all()
        self.local_media.release()

        self.peer_roles.clear()
        self._store_roles.clear()
        self._early_candidates.clear()
        self._initiating.clear()
        self.role = None
        logger.info(f"Left voice call in room {self.room_id}")

    async def shutdown(self):
        """Leave the call and close the signaling transport."""
        await self.leave_call()
        if self._shut_down:
            return
        self._shut_down = True
        await self.signaling.close()

    def toggle_mute(self) -> bool:
        """Mute or unmute local capture. Peer connections are untouched.

        Returns:
            True if now muted.
        """
        return self.local_media.toggle_mute()

    def connected_peer_ids(self) -> Set[str]:
        """Ids of peers whose session is connected or inside its grace window."""
        return {
            peer_id
            for peer_id, session in self.sessions.items()
            if session.state in ACTIVE_STATES
        }

    def on_error(self, handler: ErrorHandler) -> ErrorHandler:
        """Register a handler for VoiceCallError events.

        Handlers may be plain functions or coroutine functions.
        """
        self._error_handlers.append(handler)
        return handler

    async def resume_blocked_playback(self) -> int:
        """Retry playback on every remote sink that was blocked."""
        return await self.sinks.resume_blocked_playback()

    def connection_diagnostics(self) -> List[Dict[str, Any]]:
        """Snapshot of every peer session for debugging."""
        return [session.diagnostics() for session in self.sessions.values()]

    # -- roles --------------------------------------------------------------

    async def _resolve_role(self, role: Optional[str]) -> str:
        if role is not None:
            return normalize_role(role)

        if self.room_store is None:
            logger.warning("No role given and no room store configured, joining as receiver")
            return ROLE_RECEIVER

        stored = await self.room_store.get_role(self.room_id, self.participant_id)
        if stored is None:
            logger.warning(
                f"Participant {self.participant_id} not listed in room {self.room_id}, "
                f"joining as receiver"
            )
            return ROLE_RECEIVER
        return stored

    async def _load_peer_roles(self):
        self._store_roles = {}
        if self.room_store is None:
            return
        try:
            participants = await self.room_store.list_participants(self.room_id)
        except Exception as e:
            logger.warning(f"Could not list participants for room {self.room_id}: {e}")
            return
        for participant in participants:
            if participant.participant_id != self.participant_id:
                self._store_roles[participant.participant_id] = participant.role
        logger.info(f"Room {self.room_id} lists {len(self._store_roles)} other participant(s)")

    def _remember_peer(self, peer_id: str, announced: Optional[str], default: str = ROLE_RECEIVER) -> str:
        role = self._store_roles.get(peer_id)
        if role is None and announced:
            try:
                role = normalize_role(announced)
            except ValueError:
                logger.warning(f"Peer {peer_id} announced unknown role {announced!r}")
        if role is None:
            role = self.peer_roles.get(peer_id, default)
        self.peer_roles[peer_id] = role
        return role

    # -- signaling ----------------------------------------------------------

    async def _on_signaling_message(self, message: SignalingMessage):
        if not self._in_call:
            return
        if message.sender == self.participant_id:
            return
        if not message.is_addressed_to(self.participant_id):
            return
        if message.room_id is not None and message.room_id != self.room_id:
            logger.debug(f"Dropping {message.type} for room {message.room_id}")
            return
        self._spawn(self._dispatch(message))

    async def _dispatch(self, message: SignalingMessage):
        try:
            if message.type == MSG_JOIN:
                await self._handle_join(message)
            elif message.type == MSG_OFFER:
                await self._handle_offer(message)
            elif message.type == MSG_ANSWER:
                await self._handle_answer(message)
            elif message.type == MSG_ICE_CANDIDATE:
                await self._handle_candidate(message)
            elif message.type == MSG_LEAVE:
                await self._handle_leave(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error handling {message.type} from {message.sender}: {e}")

    async def _handle_join(self, message: SignalingMessage):
        peer_id = message.sender
        peer_role = self._remember_peer(peer_id, message.payload.get("role"))

        session = self.sessions.get(peer_id)
        if session is not None and not session.closed:
            logger.debug(f"Ignoring join from {peer_id}: session is {session.state}")
            return

        originator = self.policy.originator(self.participant_id, self.role, peer_id, peer_role)
        if originator == ORIGINATOR_LOCAL:
            await self._initiate(peer_id)
        elif originator == ORIGINATOR_REMOTE:
            if message.target is None:
                logger.info(f"Announcing presence to {peer_id} ({peer_role})")
                await self.signaling.publish(
                    make_join(self.participant_id, self.room_id, self.role, target=peer_id)
                )
        else:
            logger.debug(f"No connection with {peer_id}: neither side may offer")

    async def _initiate(self, peer_id: str):
        """Offer to a peer, retrying with a fresh session on failure."""
        if peer_id in self._initiating:
            logger.debug(f"Offer to {peer_id} already in progress")
            return

        self._initiating.add(peer_id)
        try:
            attempts = self.config.offer_retries + 1
            error: Optional[Exception] = None
            for attempt in range(1, attempts + 1):
                if not self._in_call or peer_id not in self.peer_roles:
                    return
                existing = self.sessions.get(peer_id)
                if existing is not None and not existing.closed:
                    logger.debug(f"Session with {peer_id} already exists, stopping offer")
                    return

                error = await self._send_offer(peer_id, attempt)
                if error is None:
                    return
                if attempt < attempts:
                    logger.info(f"Retrying offer to {peer_id} in {self.config.offer_retry_delay}s")
                    await asyncio.sleep(self.config.offer_retry_delay)

            logger.error(f"Failed to negotiate with {peer_id} after {attempts} attempts")
            self._emit_error(
                NegotiationFailed(f"Offer to {peer_id} failed: {error}", peer_id=peer_id)
            )
        finally:
            self._initiating.discard(peer_id)

    async def _send_offer(self, peer_id: str, attempt: int) -> Optional[Exception]:
        """Run one offer attempt.

        Returns:
            None on success or when the session was abandoned, else the error.
        """
        try:
            session = self._create_session(peer_id)
        except Exception as e:
            logger.error(f"Failed to create transport for {peer_id}: {e}")
            return e

        session.is_offerer = True
        async with session.lock:
            try:
                session.attach_local_tracks(self.local_media.tracks_for_peer())
                offer = await session.transport.create_offer()
                await session.transport.set_local_description(offer)
                await session.transport.wait_for_gathering(self.config.gather_timeout)
                if session.closed:
                    return None

                description = session.transport.local_description or offer
                logger.info(f"Sending offer to {peer_id} (attempt {attempt})")
                await self.signaling.publish(
                    make_description(MSG_OFFER, self.participant_id, peer_id, self.room_id, description)
                )
                session.start_timer(TIMER_ANSWER, self._answer_timeout(session))
                return None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if session.closed:
                    return None
                logger.warning(f"Offer to {peer_id} failed (attempt {attempt}): {e}")
                await self._teardown(session)
                return e

    async def _answer_timeout(self, session: PeerSession):
        await asyncio.sleep(self.config.answer_timeout)
        if session.closed or session.remote_description_applied:
            return
        logger.warning(
            f"No answer from {session.peer_id} within {self.config.answer_timeout}s"
        )
        await self._teardown(session)
        self._emit_error(
            NegotiationFailed(f"No answer from {session.peer_id}", peer_id=session.peer_id)
        )

    async def _handle_offer(self, message: SignalingMessage):
        peer_id = message.sender
        self._remember_peer(peer_id, None, default=ROLE_INITIATOR)

        existing = self.sessions.get(peer_id)
        if existing is not None and not existing.closed:
            logger.warning(f"Ignoring offer from {peer_id}: session is {existing.state}")
            return

        try:
            session = self._create_session(peer_id)
        except Exception as e:
            logger.error(f"Failed to create transport for {peer_id}: {e}")
            self._emit_error(NegotiationFailed(f"Cannot answer {peer_id}: {e}", peer_id=peer_id))
            return

        early = self._early_candidates.pop(peer_id, None)
        if early is not None:
            session.candidate_queue.extend(early)

        async with session.lock:
            try:
                await session.transport.set_remote_description(message.payload)
                await self._apply_candidates(session, session.mark_remote_description_applied())

                session.attach_local_tracks(self.local_media.tracks_for_peer())
                answer = await session.transport.create_answer()
                await session.transport.set_local_description(answer)
                await session.transport.wait_for_gathering(self.config.gather_timeout)
                if session.closed:
                    return

                description = session.transport.local_description or answer
                logger.info(f"Sending answer to {peer_id}")
                await self.signaling.publish(
                    make_description(MSG_ANSWER, self.participant_id, peer_id, self.room_id, description)
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if session.closed:
                    return
                logger.error(f"Error answering offer from {peer_id}: {e}")
                await self._teardown(session)
                self._emit_error(NegotiationFailed(f"Cannot answer {peer_id}: {e}", peer_id=peer_id))

    async def _handle_answer(self, message: SignalingMessage):
        peer_id = message.sender
        session = self.sessions.get(peer_id)
        if session is None or session.closed:
            logger.warning(str(UnknownPeer(f"Answer from unknown peer {peer_id}", peer_id=peer_id)))
            return

        async with session.lock:
            if session.closed:
                return
            if not session.is_offerer or session.remote_description_applied:
                logger.warning(f"Unexpected answer from {peer_id} in state {session.state}")
                return
            try:
                await session.transport.set_remote_description(message.payload)
                session.cancel_timer(TIMER_ANSWER)
                await self._apply_candidates(session, session.mark_remote_description_applied())
                logger.info(f"Applied answer from {peer_id}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if session.closed:
                    return
                logger.error(f"Error applying answer from {peer_id}: {e}")
                await self._teardown(session)
                self._emit_error(NegotiationFailed(f"Bad answer from {peer_id}: {e}", peer_id=peer_id))

    async def _handle_candidate(self, message: SignalingMessage):
        peer_id = message.sender
        candidate = message.payload
        if not candidate.get("candidate"):
            logger.debug(f"End of candidates from {peer_id}")
            return

        session = self.sessions.get(peer_id)
        if session is None or session.closed:
            queue = self._early_candidates.get(peer_id)
            if queue is None:
                queue = CandidateQueue(maxlen=EARLY_CANDIDATE_LIMIT)
                self._early_candidates[peer_id] = queue
            queue.push(candidate)
            logger.debug(f"Buffered candidate from {peer_id} without a session ({len(queue)} pending)")
            return

        if not session.remote_description_applied:
            session.candidate_queue.push(candidate)
            logger.debug(f"Queued candidate from {peer_id} until remote description is set")
            return

        async with session.lock:
            if session.closed:
                return
            try:
                await session.transport.add_candidate(candidate)
            except Exception as e:
                logger.warning(f"Error adding candidate from {peer_id}: {e}")

    async def _apply_candidates(self, session: PeerSession, candidates: List[Dict[str, Any]]):
        for candidate in candidates:
            try:
                await session.transport.add_candidate(candidate)
            except Exception as e:
                logger.warning(f"Error adding queued candidate from {session.peer_id}: {e}")
        if candidates:
            logger.debug(f"Applied {len(candidates)} queued candidate(s) from {session.peer_id}")

    async def _handle_leave(self, message: SignalingMessage):
        peer_id = message.sender
        logger.info(f"Peer {peer_id} left the call")
        self.peer_roles.pop(peer_id, None)
        self._early_candidates.pop(peer_id, None)
        session = self.sessions.get(peer_id)
        if session is not None:
            await self._teardown(session)

    async def _publish_candidate(self, session: PeerSession, candidate: Dict[str, Any]):
        if session.closed or not self._in_call:
            return
        await self.signaling.publish(
            make_candidate(self.participant_id, session.peer_id, self.room_id, candidate)
        )

    # -- sessions -----------------------------------------------------------

    def _create_session(self, peer_id: str) -> PeerSession:
        existing = self.sessions.get(peer_id)
        if existing is not None and not existing.closed:
            raise RuntimeError(f"Session with {peer_id} is still {existing.state}")

        transport = self.transport_factory(peer_id)
        session = PeerSession(peer_id, transport)
        transport.on_connection_state_change(
            lambda state: self._spawn(self._handle_transport_state(session, state))
        )
        transport.on_track(lambda track: self._spawn(self._handle_remote_track(session, track)))
        transport.on_local_candidate(
            lambda candidate: self._spawn(self._publish_candidate(session, candidate))
        )
        self.sessions[peer_id] = session
        session.transition(STATE_NEGOTIATING)
        return session

    async def _handle_transport_state(self, session: PeerSession, state: str):
        if session.closed or self.sessions.get(session.peer_id) is not session:
            return

        peer_id = session.peer_id
        logger.debug(f"Transport state for {peer_id}: {state}")

        if state == "connected":
            session.cancel_timer(TIMER_GRACE)
            if session.state != STATE_CONNECTED:
                recovered = session.state == STATE_RECONNECTING
                session.transition(STATE_CONNECTED)
                logger.info(f"{'Reconnected' if recovered else 'Connected'} to {peer_id}")
        elif state == "disconnected":
            await self._begin_reconnect(session, state)
        elif state == "failed":
            if session.transport.supports_ice_restart:
                await self._begin_reconnect(session, state)
            else:
                logger.error(f"Connection with {peer_id} failed")
                await self._teardown(session)
                self._emit_error(
                    TransportDisconnected(f"Connection with {peer_id} failed", peer_id=peer_id)
                )
        elif state == "closed":
            await self._teardown(session)

    async def _begin_reconnect(self, session: PeerSession, reason: str):
        peer_id = session.peer_id
        if session.state != STATE_RECONNECTING:
            session.transition(STATE_RECONNECTING)
            logger.warning(
                f"Connection with {peer_id} {reason}, waiting "
                f"{self.config.reconnect_grace}s for recovery"
            )
        if not session.has_timer(TIMER_GRACE):
            session.start_timer(TIMER_GRACE, self._grace_window(session))

        if not session.transport.supports_ice_restart:
            return
        async with session.lock:
            if session.closed:
                return
            try:
                await session.transport.restart_ice()
                logger.info(f"Restarted ICE with {peer_id}")
            except Exception as e:
                logger.warning(f"ICE restart with {peer_id} failed: {e}")

    async def _grace_window(self, session: PeerSession):
        await asyncio.sleep(self.config.reconnect_grace)
        if session.state != STATE_RECONNECTING:
            return
        logger.warning(
            f"{session.peer_id} did not recover within {self.config.reconnect_grace}s"
        )
        await self._teardown(session)
        self._emit_error(
            TransportDisconnected(f"Lost connection with {session.peer_id}", peer_id=session.peer_id)
        )

    async def _handle_remote_track(self, session: PeerSession, track):
        if session.closed:
            return
        if getattr(track, "kind", None) != "audio":
            logger.debug(f"Ignoring {getattr(track, 'kind', 'unknown')} track from {session.peer_id}")
            return
        session.remote_stream = track
        logger.info(f"Receiving audio from {session.peer_id}")
        await self.sinks.bind(session.peer_id, track)
        if session.closed and self.sessions.get(session.peer_id) is None:
            await self.sinks.release(session.peer_id)

    async def _teardown(self, session: PeerSession):
        """Close a session and release everything it holds.

        Order: session state, sink, local tracks, transport, then the map
        entry. The map entry is only removed if it still points at this
        session.
        """
        peer_id = session.peer_id
        current = self.sessions.get(peer_id) is session
        if session.closed and not current:
            return

        session.close()
        if current:
            await self.sinks.release(peer_id)
        session.remote_stream = None

        for track in list(session.local_tracks):
            try:
                await session.transport.remove_track(track)
            except Exception as e:
                logger.debug(f"Error removing local track for {peer_id}: {e}")
        session.local_tracks.clear()

        try:
            await session.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport for {peer_id}: {e}")

        if self.sessions.get(peer_id) is session:
            del self.sessions[peer_id]
            logger.info(f"Closed session with {peer_id}")

    # -- tasks and errors ---------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _cancel_tasks(self):
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current and not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _emit_error(self, error: VoiceCallError):
        logger.warning(f"{type(error).__name__}: {error}")
        for handler in list(self._error_handlers):
            try:
                result = handler(error)
                if inspect.isawaitable(result):
                    self._spawn(self._await_handler(result))
            except Exception as e:
                logger.error(f"Error handler raised: {e}")

    async def _await_handler(self, awaitable):
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error handler raised: {e}")
