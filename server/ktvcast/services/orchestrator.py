"""Ties the room playlist to the renderer.

Two loops run side by side:
- the transition worker: every song change becomes Stop -> SetURI -> Play on
  the renderer, one transition at a time, each step retried until it goes through
- the position monitor: polls the renderer once per interval and asks the room
  for the next song when the current one is about to end
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable

from .duration_cache import DurationCache
from .exceptions import TimeParseError
from .links import LinkResolver
from .models import ProgressSnapshot, RendererDevice, SongChanged
from .playlist import PlaylistSynchronizer
from .renderer import RendererController
from .retry import DEFAULT_POLICY, RetryPolicy, retry_forever

logger = logging.getLogger(__name__)


class PlaybackState(str, Enum):
    IDLE = "IDLE"
    TRANSITIONING = "TRANSITIONING"
    PLAYING = "PLAYING"


def _never_success(error: BaseException) -> bool:
    return False


class PlaybackOrchestrator:
    def __init__(
        self,
        device: RendererDevice,
        renderer: RendererController,
        playlist: PlaylistSynchronizer,
        resolver: LinkResolver,
        *,
        duration_cache: DurationCache | None = None,
        policy: RetryPolicy = DEFAULT_POLICY,
        monitor_interval: float = 1.0,
        near_end_seconds: int = 2,
        cooldown_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.device = device
        self.renderer = renderer
        self.playlist = playlist
        self.resolver = resolver
        self.duration_cache = duration_cache or DurationCache()
        self.policy = policy
        self.monitor_interval = monitor_interval
        self.near_end_seconds = near_end_seconds
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

        self.state = PlaybackState.IDLE
        self.current_item: str | None = None
        self.current_url: str | None = None
        self.last_progress = ProgressSnapshot()
        self._cooldown_until = 0.0

        self._queue: asyncio.Queue[SongChanged] = asyncio.Queue()
        self._worker_task: asyncio.Task | None = None
        self._monitor_task: asyncio.Task | None = None

        playlist.set_on_song_change(self.on_song_changed)

    # ── Song change ──

    def on_song_changed(self, item_id: str) -> None:
        """Queue a transition. Called from inside the playlist refresh."""
        logger.info(f"Queueing transition to {item_id}")
        self._queue.put_nowait(SongChanged(item_id))

    @property
    def pending_transitions(self) -> int:
        return self._queue.qsize()

    async def transition(self, item_id: str) -> None:
        """Switch the renderer to ``item_id``: Stop, SetURI, Play, in order."""
        self.state = PlaybackState.TRANSITIONING
        self.current_item = item_id
        device = self.device
        logger.info(f"Switching {device.friendly_name} to {item_id}")

        # Resolver failures carry no renderer status, never treat them as success
        resolve_policy = RetryPolicy(
            delay=self.policy.delay,
            classifier=_never_success,
            max_attempts=self.policy.max_attempts,
        )
        url = await retry_forever(
            lambda: self.resolver.resolve(item_id), resolve_policy, f"Resolve {item_id}"
        )

        await retry_forever(lambda: self.renderer.stop(device), self.policy, "Stop")
        await retry_forever(
            lambda: self.renderer.set_uri(device, url, title=item_id), self.policy, "SetAVTransportURI"
        )
        await retry_forever(lambda: self.renderer.play(device), self.policy, "Play")

        self.current_url = url
        self.last_progress = ProgressSnapshot()
        self.state = PlaybackState.PLAYING
        logger.info(f"Now playing {item_id} on {device.friendly_name}")

    async def _transition_worker(self):
        while True:
            event = await self._queue.get()
            item_id = event.item_id
            try:
                await self.transition(item_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Transition to {item_id} failed: {e}")
                self.state = PlaybackState.IDLE
            finally:
                self._queue.task_done()

    # ── Position monitor ──

    async def _read_progress(self) -> ProgressSnapshot:
        try:
            return await self.renderer.get_progress_seconds(self.device)
        except TimeParseError:
            return ProgressSnapshot()

    def in_cooldown(self) -> bool:
        return self._clock() < self._cooldown_until

    async def check_progress(self) -> bool:
        """One monitor tick.

        Returns:
            True if the next song was requested
        """
        progress = await retry_forever(self._read_progress, self.policy, "GetPositionInfo")
        if progress is None:
            progress = ProgressSnapshot()

        cached = self.duration_cache.get(self.current_item) if self.current_item else None
        if cached:
            progress = ProgressSnapshot(current_seconds=progress.current_seconds, total_seconds=cached)
        self.last_progress = progress

        if not progress.is_known or progress.remaining > self.near_end_seconds:
            return False
        if self.state == PlaybackState.TRANSITIONING or self.in_cooldown():
            return False

        logger.info(
            f"{progress.remaining}s left of {progress.total_seconds}s, requesting next song"
        )
        await retry_forever(self.playlist.request_next, self.policy, "nextSong")
        self._cooldown_until = self._clock() + self.cooldown_seconds
        return True

    async def _position_monitor(self):
        while True:
            try:
                await self.check_progress()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Position monitor error: {e}")
            await asyncio.sleep(self.monitor_interval)

    # ── Lifecycle ──

    def start(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.create_task(self._transition_worker())
        if self._monitor_task is None:
            self._monitor_task = asyncio.create_task(self._position_monitor())
        logger.info(f"Playback orchestrator started for {self.device.friendly_name}")

    async def run(self) -> None:
        """Run worker and monitor until cancelled."""
        self.start()
        await asyncio.gather(self._worker_task, self._monitor_task)

    async def close(self) -> None:
        for task in (self._worker_task, self._monitor_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._worker_task = None
        self._monitor_task = None

    # ── UI pass-throughs ──

    def status(self) -> dict[str, Any]:
        return {
            "device": self.device.friendly_name,
            "state": self.state.value,
            "current_item": self.current_item,
            "current_url": self.current_url,
            "current_seconds": self.last_progress.current_seconds,
            "total_seconds": self.last_progress.total_seconds,
            "remaining_seconds": self.last_progress.remaining,
            "cooling_down": self.in_cooldown(),
            "pending_transitions": self.pending_transitions,
        }

    async def get_progress_seconds(self) -> ProgressSnapshot:
        return await self.renderer.get_progress_seconds(self.device)

    async def get_playback_state(self) -> str:
        return await self.renderer.get_playback_state(self.device)

    async def get_volume(self) -> int:
        return await self.renderer.get_volume(self.device)

    async def set_volume(self, volume: int) -> None:
        await self.renderer.set_volume(self.device, volume)
