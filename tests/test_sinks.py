"""Tests for remote audio sinks."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from debate_rtc.errors import PlaybackBlocked
from debate_rtc.media.sinks import RemoteAudioSink, RemoteSinkManager

from voice_fakes import FakeAudioTrack


def make_recorder():
    recorder = MagicMock()
    recorder.start = AsyncMock()
    recorder.stop = AsyncMock()
    return recorder


class TestRemoteAudioSink:
    @pytest.mark.asyncio
    async def test_start_plays_track(self):
        recorder = make_recorder()
        track = FakeAudioTrack()
        with patch("debate_rtc.media.sinks.MediaRecorder", return_value=recorder):
            sink = RemoteAudioSink("bob")
            await sink.start(track)

        recorder.addTrack.assert_called_once_with(track)
        recorder.start.assert_awaited_once()
        assert sink.playing
        assert not sink.blocked
        assert sink.track is track

    @pytest.mark.asyncio
    async def test_configured_output_device(self):
        recorder = make_recorder()
        with patch("debate_rtc.media.sinks.MediaRecorder", return_value=recorder) as mock_recorder:
            sink = RemoteAudioSink("bob", output_device="hw:0", output_format="alsa")
            await sink.start(FakeAudioTrack())
        mock_recorder.assert_called_once_with("hw:0", format="alsa")

    @pytest.mark.asyncio
    async def test_blocked_output_drains_to_blackhole(self):
        blackhole = make_recorder()
        with patch("debate_rtc.media.sinks.MediaRecorder", side_effect=OSError("no output")), \
             patch("debate_rtc.media.sinks.MediaBlackhole", return_value=blackhole):
            sink = RemoteAudioSink("bob")
            with pytest.raises(PlaybackBlocked) as exc_info:
                await sink.start(FakeAudioTrack())

        assert exc_info.value.peer_id == "bob"
        assert sink.blocked
        assert not sink.playing
        blackhole.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resume_after_block(self):
        blackhole = make_recorder()
        recorder = make_recorder()
        sink = RemoteAudioSink("bob")
        with patch("debate_rtc.media.sinks.MediaRecorder", side_effect=OSError("no output")), \
             patch("debate_rtc.media.sinks.MediaBlackhole", return_value=blackhole):
            with pytest.raises(PlaybackBlocked):
                await sink.start(FakeAudioTrack())

        with patch("debate_rtc.media.sinks.MediaRecorder", return_value=recorder):
            assert await sink.resume() is True

        blackhole.stop.assert_awaited_once()
        assert sink.playing
        assert not sink.blocked

    @pytest.mark.asyncio
    async def test_resume_without_track(self):
        assert await RemoteAudioSink("bob").resume() is False

    @pytest.mark.asyncio
    async def test_stop_releases_recorder(self):
        recorder = make_recorder()
        with patch("debate_rtc.media.sinks.MediaRecorder", return_value=recorder):
            sink = RemoteAudioSink("bob")
            await sink.start(FakeAudioTrack())
        await sink.stop()

        recorder.stop.assert_awaited_once()
        assert sink.track is None
        assert not sink.playing


class StubSink:
    def __init__(self, peer_id, block=False):
        self.peer_id = peer_id
        self.block = block
        self.playing = False
        self.blocked = False
        self.starts = 0
        self.stopped = False

    async def start(self, track):
        self.starts += 1
        if self.block:
            self.blocked = True
            raise PlaybackBlocked("blocked", peer_id=self.peer_id)
        self.playing = True

    async def resume(self):
        self.block = False
        self.blocked = False
        self.playing = True
        return True

    async def stop(self):
        self.stopped = True
        self.playing = False


class GatedSink(StubSink):
    """Holds start() open until the gate is set."""

    def __init__(self, peer_id, gate):
        super().__init__(peer_id)
        self.gate = gate

    async def start(self, track):
        await self.gate.wait()
        await super().start(track)


class TestRemoteSinkManager:
    @pytest.mark.asyncio
    async def test_one_sink_per_peer(self):
        manager = RemoteSinkManager(StubSink)
        await manager.bind("bob", FakeAudioTrack())
        await manager.bind("bob", FakeAudioTrack())

        assert list(manager.sinks) == ["bob"]
        assert manager.sinks["bob"].starts == 2

    @pytest.mark.asyncio
    async def test_blocked_playback_is_not_an_error(self):
        manager = RemoteSinkManager(lambda peer_id: StubSink(peer_id, block=True))
        await manager.bind("bob", FakeAudioTrack())
        assert manager.blocked_peer_ids() == {"bob"}

    @pytest.mark.asyncio
    async def test_resume_blocked_playback_counts_started(self):
        manager = RemoteSinkManager(lambda peer_id: StubSink(peer_id, block=peer_id == "bob"))
        await manager.bind("bob", FakeAudioTrack())
        await manager.bind("dan", FakeAudioTrack())

        assert await manager.resume_blocked_playback() == 1
        assert manager.blocked_peer_ids() == set()

    @pytest.mark.asyncio
    async def test_release(self):
        manager = RemoteSinkManager(StubSink)
        await manager.bind("bob", FakeAudioTrack())
        sink = manager.sinks["bob"]

        await manager.release("bob")
        await manager.release("bob")

        assert sink.stopped
        assert manager.sinks == {}

    @pytest.mark.asyncio
    async def test_release_all(self):
        manager = RemoteSinkManager(StubSink)
        await manager.bind("bob", FakeAudioTrack())
        await manager.bind("dan", FakeAudioTrack())
        await manager.release_all()
        assert manager.sinks == {}

    @pytest.mark.asyncio
    async def test_release_during_start_stops_sink(self):
        gate = asyncio.Event()
        manager = RemoteSinkManager(lambda peer_id: GatedSink(peer_id, gate))
        binding = asyncio.create_task(manager.bind("bob", FakeAudioTrack()))
        await asyncio.sleep(0)
        sink = manager.sinks["bob"]

        await manager.release("bob")
        gate.set()
        await binding

        assert sink.stopped
        assert not sink.playing
        assert manager.sinks == {}

    @pytest.mark.asyncio
    async def test_rebind_keeps_sink_playing(self):
        manager = RemoteSinkManager(StubSink)
        await manager.bind("bob", FakeAudioTrack())
        await manager.bind("bob", FakeAudioTrack())
        assert not manager.sinks["bob"].stopped
        assert manager.sinks["bob"].playing
