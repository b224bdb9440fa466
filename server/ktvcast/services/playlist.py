"""KTV room playlist synchronizer.

Keeps a local PlaylistSnapshot in step with the room server and reports when
the currently playing song changes.

Room server API:
    GET  /api/songListInfo?roomId=R&lastHash=H  -> {"changed", "hash", "list"}
    POST /api/nextSong?roomId=R  {"idArrayHash": H} -> {"success"}
    WS   /api/ws?roomId=R&nickname=N  -> {"type": "UPDATE", "hash": H} / {"type": "pong"}
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import replace
from typing import Any, Callable
from urllib.parse import quote

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from .exceptions import RemoteSourceError
from .links import normalize_item_id
from .models import EMPTY_LIST_HASH, PlaylistSnapshot

logger = logging.getLogger(__name__)

SongChangeCallback = Callable[[str], Any]


def _item_id(item: Any) -> str | None:
    if isinstance(item, str):
        return normalize_item_id(item) or None
    if isinstance(item, dict):
        for key in ("url", "bvid", "id"):
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return normalize_item_id(value)
    return None


def current_item(song_list: Any) -> str | None:
    """The song being played: the explicit "singing" entry, else the last sung one."""
    if isinstance(song_list, dict):
        singing = song_list.get("singing")
        if isinstance(singing, dict) and _item_id(singing):
            return _item_id(singing)
        sung = song_list.get("sung")
        if isinstance(sung, list) and sung:
            return _item_id(sung[-1])
        return None

    if isinstance(song_list, list):
        for item in song_list:
            if isinstance(item, dict) and item.get("state") == "singing":
                return _item_id(item)
        sung = [i for i in song_list if isinstance(i, dict) and i.get("state") == "sung"]
        if sung:
            return _item_id(sung[-1])
    return None


def pending_items(song_list: Any) -> tuple[str, ...]:
    """Queued songs that have been neither sung nor started."""
    if isinstance(song_list, dict):
        items = song_list.get("unsung") or []
    elif isinstance(song_list, list):
        items = [i for i in song_list if isinstance(i, dict) and i.get("state") not in ("sung", "singing")]
    else:
        items = []
    ids = (_item_id(i) for i in items)
    return tuple(i for i in ids if i)


class PlaylistSynchronizer:
    """Follows a room playlist via websocket push, or polling as a fallback."""

    def __init__(
        self,
        base_url: str,
        room_id: int | str,
        nickname: str = "ktv-casting",
        *,
        timeout: float = 10,
        poll_interval: float = 0.3,
        ping_interval: float = 30,
        pong_timeout: float = 60,
        backoff_initial: float = 1,
        backoff_max: float = 60,
        push_connect_attempts: int = 3,
        client: httpx.AsyncClient | None = None,
        connect: Callable[..., Any] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.room_id = str(room_id)
        self.nickname = nickname
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.push_connect_attempts = push_connect_attempts
        self._client = client
        self._connect = connect or websockets.connect

        self._lock = asyncio.Lock()
        self._snapshot = PlaylistSnapshot()
        self._on_song_change: SongChangeCallback | None = None

        # Connection state
        self.mode = "idle"  # idle | push | poll
        self._backoff = backoff_initial
        self._ever_connected = False
        self._last_pong = 0.0

    # ── HTTP client ──

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, endpoint: str) -> str:
        return f"{self.base_url}/api/{endpoint.lstrip('/')}"

    @property
    def ws_url(self) -> str:
        if self.base_url.startswith("https://"):
            scheme, host = "wss", self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            scheme, host = "ws", self.base_url[len("http://"):]
        else:
            scheme, host = "ws", self.base_url
        return f"{scheme}://{host}/api/ws?roomId={self.room_id}&nickname={quote(self.nickname)}"

    # ── State ──

    def set_on_song_change(self, callback: SongChangeCallback | None) -> None:
        """Register the song-changed callback. Replaces any previous one.

        The callback runs inside the refresh that detected the change, while the
        snapshot lock is held: it must not call back into this synchronizer. An
        awaitable result is awaited before the refresh returns.
        """
        if self._on_song_change is not None and callback is not None:
            logger.info("Replacing existing song change callback")
        self._on_song_change = callback

    def snapshot(self) -> PlaylistSnapshot:
        return replace(self._snapshot)

    def get_hash(self) -> str:
        return self._snapshot.content_hash

    def get_song_playing(self) -> str | None:
        return self._snapshot.current_item_id

    # ── Pull ──

    async def fetch_song_list(self, last_hash: str) -> dict[str, Any]:
        """GET songListInfo for the room.

        Raises:
            RemoteSourceError: request failed or the reply isn't a JSON object
        """
        client = await self._get_client()
        url = self._build_url("songListInfo")
        params = {"roomId": self.room_id, "lastHash": last_hash}
        logger.debug(f"Fetching song list: {url} {params}")
        try:
            response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            raise RemoteSourceError(f"Song list request failed: {e}") from e
        if not response.is_success:
            raise RemoteSourceError(f"Song list request failed, status {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteSourceError(f"Song list reply is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise RemoteSourceError(f"Unexpected song list reply: {data!r}")
        return data

    async def refresh(self) -> str | None:
        """Pull the room playlist and apply it.

        Returns:
            The new current item id if it changed, otherwise None
        """
        async with self._lock:
            last_hash = self._snapshot.content_hash
            data = await self.fetch_song_list(last_hash)
            latest_hash = data.get("hash") or last_hash

            if not data.get("changed", False):
                return None

            song_list = data.get("list")
            old_item = self._snapshot.current_item_id
            new_item = current_item(song_list)
            # A pointer that just disappears is not a song change
            if new_item is None:
                new_item = old_item

            self._snapshot = PlaylistSnapshot(
                content_hash=latest_hash,
                current_item_id=new_item,
                pending_item_ids=pending_items(song_list),
            )
            logger.debug(f"Playlist updated, hash: {latest_hash}")

            if new_item is None or new_item == old_item:
                return None

            logger.info(f"Song changed to: {new_item}")
            await self._notify(new_item)
            return new_item

    async def _notify(self, item_id: str) -> None:
        callback = self._on_song_change
        if callback is None:
            return
        result = callback(item_id)
        if inspect.isawaitable(result):
            await result

    async def request_next(self) -> None:
        """Ask the room to advance to the next song, then refresh once.

        Raises:
            RemoteSourceError: the room rejected the request
        """
        client = await self._get_client()
        url = self._build_url("nextSong")
        current_hash = self._snapshot.content_hash or EMPTY_LIST_HASH
        try:
            response = await client.post(
                url, params={"roomId": self.room_id}, json={"idArrayHash": current_hash}
            )
        except httpx.HTTPError as e:
            raise RemoteSourceError(f"nextSong request failed: {e}") from e
        if not response.is_success:
            raise RemoteSourceError(f"nextSong request failed, status {response.status_code}")
        # No status code in this message: the reply was 2xx and must still be retried
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteSourceError("nextSong reply is not JSON") from e

        if not isinstance(data, dict) or not data.get("success", False):
            raise RemoteSourceError(f"nextSong rejected: {data}")

        logger.info("Requested next song")
        try:
            await self.refresh()
        except RemoteSourceError as e:
            logger.warning(f"Refresh after nextSong failed: {e}")

    async def _refresh_logged(self, reason: str) -> None:
        try:
            await self.refresh()
        except RemoteSourceError as e:
            logger.warning(f"Playlist refresh ({reason}) failed: {e}")

    async def poll_forever(self) -> None:
        """Legacy polling mode, used when the websocket can't be reached."""
        self.mode = "poll"
        logger.info(f"Polling room {self.room_id} every {self.poll_interval}s")
        while True:
            await self._refresh_logged("poll")
            await asyncio.sleep(self.poll_interval)

    # ── Push ──

    async def start_listening(self) -> None:
        """Follow the room via websocket, reconnecting with exponential backoff.

        Falls back to polling for the rest of the session when the websocket
        has never connected after ``push_connect_attempts`` tries.
        """
        failures = 0
        while True:
            try:
                await self._run_push_session()
                logger.info("WebSocket session ended")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._ever_connected:
                    failures += 1
                    if failures >= self.push_connect_attempts:
                        logger.warning(
                            f"WebSocket unavailable after {failures} attempts ({e}), falling back to polling"
                        )
                        await self.poll_forever()
                        return
                logger.warning(f"WebSocket connection failed: {e}, retrying in {self._backoff}s")

            self.mode = "idle"
            await asyncio.sleep(self._backoff)
            self._backoff = min(self._backoff * 2, self.backoff_max)

    async def _run_push_session(self) -> None:
        logger.info(f"Connecting to WebSocket: {self.ws_url}")
        async with self._connect(self.ws_url, open_timeout=self.timeout, ping_interval=None) as ws:
            self._ever_connected = True
            self._backoff = self.backoff_initial
            self.mode = "push"
            self._mark_alive()
            logger.info("WebSocket connected, running initial sync")

            await self._refresh_logged("initial sync")

            recv_task = asyncio.create_task(self._recv_loop(ws))
            keepalive_task = asyncio.create_task(self._keepalive_loop(ws))
            done, pending = await asyncio.wait(
                {recv_task, keepalive_task}, return_when=asyncio.FIRST_COMPLETED
            )
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            for t in done:
                exc = t.exception()
                if exc and not isinstance(exc, ConnectionClosed):
                    raise exc

    async def _recv_loop(self, ws) -> None:
        async for message in ws:
            if isinstance(message, bytes):
                continue
            await self.handle_message(message)

    async def handle_message(self, text: str) -> None:
        """Handle one text frame from the room websocket."""
        logger.debug(f"WebSocket message: {text}")
        try:
            data = json.loads(text)
        except ValueError:
            logger.debug("Ignoring non-JSON websocket message")
            return
        if not isinstance(data, dict):
            return

        msg_type = data.get("type")
        if msg_type == "pong":
            self._mark_alive()
        elif msg_type == "UPDATE":
            new_hash = data.get("hash")
            if isinstance(new_hash, str) and new_hash != self._snapshot.content_hash:
                logger.info(f"Playlist update announced, hash: {new_hash}")
                await self._refresh_logged("update")

    def _mark_alive(self) -> None:
        self._last_pong = asyncio.get_running_loop().time()

    def _on_pong(self, waiter: asyncio.Future) -> None:
        if not waiter.cancelled() and waiter.exception() is None:
            self._mark_alive()

    async def _keepalive_loop(self, ws) -> None:
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(self.ping_interval)
            if loop.time() - self._last_pong > self.pong_timeout:
                logger.warning(f"No pong for over {self.pong_timeout}s, connection presumed dead")
                return
            waiter = await ws.ping()
            waiter.add_done_callback(self._on_pong)
            logger.debug("Sent ping")
