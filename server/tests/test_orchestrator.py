"""Tests for PlaybackOrchestrator: transitions and the position monitor."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ktvcast.services.duration_cache import DurationCache
from ktvcast.services.exceptions import LinkResolutionError, TimeParseError, TransportError
from ktvcast.services.models import ProgressSnapshot
from ktvcast.services.orchestrator import PlaybackOrchestrator, PlaybackState
from ktvcast.services.retry import RetryPolicy

NO_DELAY = RetryPolicy(delay=0)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def calls() -> list[str]:
    return []


@pytest.fixture
def renderer(calls):
    mock = MagicMock()
    mock.stop = AsyncMock(side_effect=lambda device: calls.append("stop"))
    mock.set_uri = AsyncMock(side_effect=lambda device, uri, **kw: calls.append(f"set_uri {uri}"))
    mock.play = AsyncMock(side_effect=lambda device: calls.append("play"))
    mock.get_progress_seconds = AsyncMock(return_value=ProgressSnapshot(0, 0))
    mock.get_playback_state = AsyncMock(return_value="PLAYING")
    mock.get_volume = AsyncMock(return_value=20)
    mock.set_volume = AsyncMock()
    return mock


@pytest.fixture
def playlist():
    mock = MagicMock()
    mock.request_next = AsyncMock()
    return mock


@pytest.fixture
def resolver():
    mock = MagicMock()
    mock.resolve = AsyncMock(side_effect=lambda item_id: f"http://10.0.0.5:8080/{item_id}")
    return mock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def orchestrator(device, renderer, playlist, resolver, clock):
    return PlaybackOrchestrator(device, renderer, playlist, resolver, policy=NO_DELAY, clock=clock)


class TestTransitions:
    def test_registers_song_change_callback(self, orchestrator, playlist):
        playlist.set_on_song_change.assert_called_once_with(orchestrator.on_song_changed)

    @pytest.mark.asyncio
    async def test_stop_set_uri_play_in_order(self, orchestrator, calls):
        await orchestrator.transition("BV1AP411x7YW")

        assert calls == ["stop", "set_uri http://10.0.0.5:8080/BV1AP411x7YW", "play"]
        assert orchestrator.state == PlaybackState.PLAYING
        assert orchestrator.current_item == "BV1AP411x7YW"
        assert orchestrator.current_url == "http://10.0.0.5:8080/BV1AP411x7YW"

    @pytest.mark.asyncio
    async def test_failed_step_is_retried_not_skipped(self, orchestrator, renderer, calls):
        def flaky_set_uri(device, uri, **kw):
            calls.append("set_uri")
            if calls.count("set_uri") < 3:
                raise TransportError("SetAVTransportURI returned HTTP 500")

        renderer.set_uri.side_effect = flaky_set_uri

        await orchestrator.transition("BV1AP411x7YW")

        assert calls == ["stop", "set_uri", "set_uri", "set_uri", "play"]

    @pytest.mark.asyncio
    async def test_embedded_success_counts_as_done(self, orchestrator, renderer, calls):
        renderer.stop.side_effect = TransportError("Stop request failed: 204 No Content")

        await orchestrator.transition("BV1AP411x7YW")

        assert renderer.stop.await_count == 1
        assert calls == ["set_uri http://10.0.0.5:8080/BV1AP411x7YW", "play"]

    @pytest.mark.asyncio
    async def test_resolver_errors_are_retried(self, orchestrator, resolver, calls):
        resolver.resolve.side_effect = [
            LinkResolutionError("upstream returned 200 items but no stream"),
            "http://10.0.0.5:8080/BV1AP411x7YW",
        ]

        await orchestrator.transition("BV1AP411x7YW")

        assert resolver.resolve.await_count == 2
        assert calls[1] == "set_uri http://10.0.0.5:8080/BV1AP411x7YW"

    @pytest.mark.asyncio
    async def test_worker_serializes_queued_changes(self, orchestrator, calls):
        orchestrator.on_song_changed("A")
        orchestrator.on_song_changed("B")
        assert orchestrator.pending_transitions == 2

        orchestrator.start()
        await asyncio.wait_for(orchestrator._queue.join(), timeout=2)
        await orchestrator.close()

        assert calls == [
            "stop", "set_uri http://10.0.0.5:8080/A", "play",
            "stop", "set_uri http://10.0.0.5:8080/B", "play",
        ]
        assert orchestrator.current_item == "B"


class TestPositionMonitor:
    @pytest.mark.asyncio
    async def test_near_end_requests_next_once(self, orchestrator, renderer, playlist, clock):
        renderer.get_progress_seconds.return_value = ProgressSnapshot(59, 60)

        assert await orchestrator.check_progress() is True
        playlist.request_next.assert_awaited_once()

        # Still near the end a second later: cooling down
        clock.now += 1
        assert await orchestrator.check_progress() is False
        clock.now += 3.9
        assert await orchestrator.check_progress() is False
        assert playlist.request_next.await_count == 1

        clock.now += 0.2
        assert await orchestrator.check_progress() is True
        assert playlist.request_next.await_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "progress",
        [ProgressSnapshot(57, 60), ProgressSnapshot(0, 0), ProgressSnapshot(5, 0)],
    )
    async def test_no_request(self, orchestrator, renderer, playlist, progress):
        renderer.get_progress_seconds.return_value = progress

        assert await orchestrator.check_progress() is False
        playlist.request_next.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_overshoot_counts_as_near_end(self, orchestrator, renderer, playlist):
        renderer.get_progress_seconds.return_value = ProgressSnapshot(75, 60)

        assert await orchestrator.check_progress() is True
        assert orchestrator.last_progress.remaining == 0

    @pytest.mark.asyncio
    async def test_duration_cache_overrides_renderer_total(self, device, renderer, playlist, resolver, clock):
        cache = DurationCache()
        cache.set("BV1AP411x7YW", 240)
        orchestrator = PlaybackOrchestrator(
            device, renderer, playlist, resolver, duration_cache=cache, policy=NO_DELAY, clock=clock
        )
        orchestrator.current_item = "BV1AP411x7YW"
        # Renderer thinks the track is a minute long
        renderer.get_progress_seconds.return_value = ProgressSnapshot(59, 60)

        assert await orchestrator.check_progress() is False
        assert orchestrator.last_progress == ProgressSnapshot(59, 240)

        renderer.get_progress_seconds.return_value = ProgressSnapshot(239, 60)
        assert await orchestrator.check_progress() is True

    @pytest.mark.asyncio
    async def test_progress_read_is_retried(self, orchestrator, renderer, playlist):
        renderer.get_progress_seconds.side_effect = [
            TransportError("GetPositionInfo returned HTTP 500"),
            ProgressSnapshot(59, 60),
        ]

        assert await orchestrator.check_progress() is True
        assert renderer.get_progress_seconds.await_count == 2

    @pytest.mark.asyncio
    async def test_malformed_time_is_unknown(self, orchestrator, renderer, playlist):
        renderer.get_progress_seconds.side_effect = TimeParseError("soon")

        assert await orchestrator.check_progress() is False
        assert orchestrator.last_progress == ProgressSnapshot(0, 0)

    @pytest.mark.asyncio
    async def test_request_next_is_retried(self, orchestrator, renderer, playlist):
        from ktvcast.services.exceptions import RemoteSourceError

        renderer.get_progress_seconds.return_value = ProgressSnapshot(60, 60)
        playlist.request_next.side_effect = [RemoteSourceError("nextSong rejected"), None]

        assert await orchestrator.check_progress() is True
        assert playlist.request_next.await_count == 2

    @pytest.mark.asyncio
    async def test_no_request_while_transitioning(self, orchestrator, renderer, playlist):
        orchestrator.state = PlaybackState.TRANSITIONING
        renderer.get_progress_seconds.return_value = ProgressSnapshot(59, 60)

        assert await orchestrator.check_progress() is False
        playlist.request_next.assert_not_awaited()


class TestPassThroughs:
    @pytest.mark.asyncio
    async def test_ui_queries(self, orchestrator, renderer, device):
        assert await orchestrator.get_playback_state() == "PLAYING"
        assert await orchestrator.get_volume() == 20
        await orchestrator.set_volume(30)
        renderer.set_volume.assert_awaited_once_with(device, 30)

    def test_status(self, orchestrator):
        status = orchestrator.status()
        assert status["state"] == "IDLE"
        assert status["device"] == "Living Room TV"
        assert status["current_item"] is None
        assert status["cooling_down"] is False
