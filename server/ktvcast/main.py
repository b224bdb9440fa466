"""Command line entry point: cast a KTV room playlist to a DLNA renderer."""

from __future__ import annotations

import argparse
import asyncio
import logging
from urllib.parse import urlsplit

from .config import get_settings, update_settings
from .services.description import describe_renderer
from .services.duration_cache import DurationCache
from .services.exceptions import CastError, InvalidLocation
from .services.links import ProxyLinkResolver
from .services.orchestrator import PlaybackOrchestrator
from .services.playlist import PlaylistSynchronizer
from .services.renderer import RendererController
from .services.retry import RetryPolicy
from .services.soap import ActionTransport

logger = logging.getLogger(__name__)


def parse_room_url(room_url: str) -> tuple[str, int]:
    """Split a room URL into server base URL and numeric room id.

        https://ktv.example.com/102 -> ("https://ktv.example.com", 102)
    """
    parts = urlsplit(room_url.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise InvalidLocation(room_url, "room URL must be http(s)://host/<room id>")
    segments = [s for s in parts.path.split("/") if s]
    if not segments or not segments[-1].isdigit():
        raise InvalidLocation(room_url, "room URL must end with a numeric room id")
    return f"{parts.scheme}://{parts.netloc}", int(segments[-1])


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Chatty libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


async def run_session(room_url: str, device_location: str) -> None:
    """Describe the renderer, then follow the room until cancelled."""
    settings = get_settings()
    base_url, room_id = parse_room_url(room_url)
    playlist_cfg = settings.playlist
    playback_cfg = settings.playback

    device = await describe_renderer(device_location, timeout=playback_cfg.timeout)
    logger.info(f"Casting room {room_id} at {base_url} to {device.friendly_name}")

    renderer = RendererController(ActionTransport(timeout=playback_cfg.timeout))
    playlist = PlaylistSynchronizer(
        base_url,
        room_id,
        playlist_cfg.nickname,
        timeout=playlist_cfg.timeout,
        poll_interval=playlist_cfg.poll_interval,
        ping_interval=playlist_cfg.ping_interval,
        pong_timeout=playlist_cfg.pong_timeout,
        backoff_initial=playlist_cfg.backoff_initial,
        backoff_max=playlist_cfg.backoff_max,
        push_connect_attempts=playlist_cfg.push_connect_attempts,
    )
    orchestrator = PlaybackOrchestrator(
        device,
        renderer,
        playlist,
        ProxyLinkResolver(playback_cfg.media_base_url),
        duration_cache=DurationCache(),
        policy=RetryPolicy(delay=playback_cfg.retry_delay),
        monitor_interval=playback_cfg.monitor_interval,
        near_end_seconds=playback_cfg.near_end_seconds,
        cooldown_seconds=playback_cfg.cooldown_seconds,
    )
    logger.info(f"Media proxy: {playback_cfg.media_base_url}")

    orchestrator.start()
    listener = asyncio.create_task(playlist.start_listening())
    try:
        await listener
    finally:
        listener.cancel()
        try:
            await listener
        except asyncio.CancelledError:
            pass
        await orchestrator.close()
        await playlist.close()
        await renderer.close()
        logger.info("Session closed")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ktvcast", description="Cast a KTV room playlist to a DLNA renderer"
    )
    parser.add_argument("--room-url", help="Room URL, e.g. https://ktv.example.com/102")
    parser.add_argument("--device-location", required=True, help="Renderer description URL")
    parser.add_argument("--nickname", help="Nickname shown in the room")
    parser.add_argument("--media-base-url", help="Media proxy URL reachable by the renderer")
    parser.add_argument("--save", action="store_true", help="Persist the given options to settings.json")
    args = parser.parse_args(argv)

    updates = {
        key: value
        for key, value in (
            ("room_url", args.room_url),
            ("nickname", args.nickname),
            ("media_base_url", args.media_base_url),
        )
        if value
    }
    settings = get_settings()
    if args.save:
        settings = update_settings(updates)
    else:
        for key, value in updates.items():
            setattr(settings, key, value)

    setup_logging(settings.log_level)

    if not settings.room_url:
        parser.error("--room-url is required (or set ROOM_URL)")

    try:
        asyncio.run(run_session(settings.room_url, args.device_location))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except CastError as e:
        logger.error(f"{e}")
        return 1
    return 0
