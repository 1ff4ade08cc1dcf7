"""Local microphone capture for voice calls.

The LocalMediaController owns the single capture stream of a call session.
Peer sessions only ever receive read-only relay subscriptions of the
capture track; muting and stopping happen here.
"""

import logging
import platform
from typing import Callable, List, Optional

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

from debate_rtc.config import AudioConstraints
from debate_rtc.errors import DeviceUnavailable, MediaAccessDenied

logger = logging.getLogger(__name__)

CaptureFactory = Callable[[AudioConstraints], MediaStreamTrack]


class MutableAudioTrack(MediaStreamTrack):
    """Audio track proxy that emits silence while disabled.

    Muting only changes the samples sent; the connection and its
    negotiated media stay untouched.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return _silence_like(frame)

    def stop(self):
        super().stop()
        self.source.stop()


def _silence_like(frame: av.AudioFrame) -> av.AudioFrame:
    silent = av.AudioFrame(
        format=frame.format.name, layout=frame.layout.name, samples=frame.samples
    )
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


def open_microphone(constraints: AudioConstraints) -> MediaStreamTrack:
    """Open the platform microphone through ffmpeg.

    Tries the configured device/format first, then PulseAudio and ALSA on
    Linux, or avfoundation on macOS.

    Raises:
        PermissionError: If the OS refused access to the device.
        DeviceUnavailable: If no capture backend could be opened.
    """
    options = {
        "sample_rate": str(constraints.sample_rate),
        "channels": str(constraints.channels),
    }
    if not (
        constraints.echo_cancellation
        and constraints.noise_suppression
        and constraints.auto_gain_control
    ):
        logger.debug("Audio processing flags are advisory for ffmpeg capture")

    if constraints.device and constraints.format:
        candidates = [(constraints.device, constraints.format)]
    elif platform.system() == "Darwin":
        candidates = [(constraints.device or "none:0", "avfoundation")]
    else:
        device = constraints.device or "default"
        candidates = [(device, "pulse"), (device, "alsa")]

    last_error: Optional[Exception] = None
    for device, fmt in candidates:
        try:
            player = MediaPlayer(device, format=fmt, options=options)
        except PermissionError:
            raise
        except Exception as e:
            logger.debug(f"Capture backend {fmt}:{device} unavailable: {e}")
            last_error = e
            continue
        if player.audio is None:
            last_error = DeviceUnavailable(f"{fmt}:{device} has no audio stream")
            continue
        logger.info(f"Local audio backend={fmt} device={device}")
        return player.audio

    raise DeviceUnavailable(f"No capture device available: {last_error}")


class LocalMediaController:
    """Acquire, share, mute and release the local capture stream.

    Attributes:
        track: The mutable capture track, or None when nothing is held.
    """

    def __init__(self, capture_factory: Optional[CaptureFactory] = None):
        self.capture_factory = capture_factory or open_microphone
        self.track: Optional[MutableAudioTrack] = None
        self._relay: Optional[MediaRelay] = None
        self._subscriptions: List[MediaStreamTrack] = []

    @property
    def has_stream(self) -> bool:
        return self.track is not None

    @property
    def muted(self) -> bool:
        return self.track is not None and not self.track.enabled

    def acquire_local_audio(self, constraints: Optional[AudioConstraints] = None) -> MutableAudioTrack:
        """Open the capture stream, or return the one already held.

        Raises:
            MediaAccessDenied: Capture permission was refused.
            DeviceUnavailable: No capture device could be opened.
        """
        if self.track is not None:
            logger.debug("Local audio already acquired")
            return self.track

        constraints = constraints or AudioConstraints()
        try:
            source = self.capture_factory(constraints)
        except PermissionError as e:
            raise MediaAccessDenied(f"Microphone access denied: {e}") from e
        except DeviceUnavailable:
            raise
        except Exception as e:
            if "permission denied" in str(e).lower():
                raise MediaAccessDenied(f"Microphone access denied: {e}") from e
            raise DeviceUnavailable(f"Failed to open microphone: {e}") from e

        if source is None or source.kind != "audio":
            raise DeviceUnavailable("Capture device produced no audio track")

        self.track = MutableAudioTrack(source)
        self._relay = MediaRelay()
        logger.info("Acquired local audio stream")
        return self.track

    def tracks_for_peer(self) -> List[MediaStreamTrack]:
        """Read-only subscriptions of the capture stream for one peer session."""
        if self.track is None:
            return []
        subscription = self._relay.subscribe(self.track)
        self._subscriptions.append(subscription)
        return [subscription]

    def toggle_mute(self) -> bool:
        """Flip the enabled flag on the capture track.

        Returns:
            True if the stream is now muted. False when no stream is held.
        """
        if self.track is None:
            logger.debug("toggle_mute ignored: no local stream")
            return False
        self.track.enabled = not self.track.enabled
        logger.info(f"Local audio {'muted' if not self.track.enabled else 'unmuted'}")
        return not self.track.enabled

    def release(self):
        """Stop every track and drop the stream. Safe to call twice."""
        if self.track is None:
            return
        for subscription in self._subscriptions:
            subscription.stop()
        self._subscriptions.clear()
        self.track.stop()
        self.track = None
        self._relay = None
        logger.info("Released local audio stream")
