"""Remote audio sinks.

One sink per remote peer renders that peer's inbound audio on the local
output device. If the output cannot be opened, the sink keeps draining the
track into a MediaBlackhole and reports itself as blocked; the caller can
later retry every blocked sink at once with ``resume_blocked_playback``.
"""

import logging
from typing import Callable, Dict, Optional

from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from debate_rtc.errors import PlaybackBlocked

logger = logging.getLogger(__name__)


class RemoteAudioSink:
    """Plays one remote audio track.

    Attributes:
        peer_id: Remote participant whose audio this sink renders.
        track: Track currently bound, if any.
        playing: True while audio is going to the output device.
        blocked: True when playback was attempted and refused.
    """

    def __init__(self, peer_id: str, output_device: Optional[str] = None, output_format: Optional[str] = None):
        self.peer_id = peer_id
        self.output_device = output_device
        self.output_format = output_format
        self.track = None
        self.playing = False
        self.blocked = False
        self._recorder = None

    def _open_output(self):
        if self.output_device and self.output_format:
            return MediaRecorder(self.output_device, format=self.output_format)
        try:
            return MediaRecorder("default", format="pulse")
        except Exception:
            return MediaRecorder("default", format="alsa")

    async def start(self, track):
        """Bind ``track`` and try to start playback.

        Raises:
            PlaybackBlocked: If the output device refused playback. The track
                is still drained so the connection does not back up.
        """
        await self._stop_recorder()
        self.track = track
        try:
            recorder = self._open_output()
            recorder.addTrack(track)
            await recorder.start()
        except Exception as e:
            self.blocked = True
            self.playing = False
            self._recorder = MediaBlackhole()
            self._recorder.addTrack(track)
            await self._recorder.start()
            raise PlaybackBlocked(f"Playback blocked for {self.peer_id}: {e}", peer_id=self.peer_id) from e

        self._recorder = recorder
        self.playing = True
        self.blocked = False
        logger.info(f"Playing remote audio from {self.peer_id}")

    async def resume(self) -> bool:
        """Retry playback on the bound track.

        Returns:
            True if the sink is playing afterwards.
        """
        if self.playing:
            return True
        if self.track is None:
            return False
        try:
            await self.start(self.track)
        except PlaybackBlocked as e:
            logger.warning(str(e))
            return False
        return True

    async def stop(self):
        """Stop playback and unbind the track."""
        await self._stop_recorder()
        self.track = None
        self.playing = False
        self.blocked = False

    async def _stop_recorder(self):
        if self._recorder is None:
            return
        recorder, self._recorder = self._recorder, None
        try:
            await recorder.stop()
        except Exception as e:
            logger.debug(f"Error stopping sink for {self.peer_id}: {e}")


SinkFactory = Callable[[str], RemoteAudioSink]


class RemoteSinkManager:
    """Keeps exactly one RemoteAudioSink per remote peer."""

    def __init__(self, sink_factory: Optional[SinkFactory] = None):
        self.sink_factory = sink_factory or RemoteAudioSink
        self.sinks: Dict[str, RemoteAudioSink] = {}

    async def bind(self, peer_id: str, track):
        """Route a peer's inbound audio to its sink.

        The first call creates the sink; later calls rebind the same sink.
        Blocked playback is logged and is not an error.
        """
        sink = self.sinks.get(peer_id)
        if sink is None:
            sink = self.sink_factory(peer_id)
            self.sinks[peer_id] = sink
            logger.debug(f"Created audio sink for {peer_id}")
        else:
            logger.debug(f"Rebinding audio sink for {peer_id}")

        try:
            await sink.start(track)
        except PlaybackBlocked as e:
            logger.warning(f"{e}; waiting for resume_blocked_playback()")
        finally:
            # Released while starting
            if self.sinks.get(peer_id) is not sink:
                logger.debug(f"Sink for {peer_id} released during start, stopping it")
                await sink.stop()

    async def release(self, peer_id: str):
        """Detach and release a peer's sink, if any."""
        sink = self.sinks.pop(peer_id, None)
        if sink is None:
            return
        await sink.stop()
        logger.debug(f"Released audio sink for {peer_id}")

    async def release_all(self):
        for peer_id in list(self.sinks):
            await self.release(peer_id)

    async def resume_blocked_playback(self) -> int:
        """Retry playback on every sink that is not playing.

        Returns:
            Number of sinks that started playing.
        """
        started = 0
        for peer_id, sink in list(self.sinks.items()):
            if sink.playing:
                continue
            if await sink.resume():
                started += 1
                logger.info(f"Resumed playback for {peer_id}")
        return started

    def blocked_peer_ids(self):
        return {peer_id for peer_id, sink in self.sinks.items() if sink.blocked}
