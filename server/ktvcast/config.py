"""Application configuration with JSON file persistence."""

from __future__ import annotations

import json
import logging
import os
import socket
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def get_local_ip() -> str:
    """Auto-detect the local IP address the renderer can reach us on."""
    try:
        # Connecting a UDP socket sends nothing, it only picks the outgoing interface
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError as e:
        logger.warning(f"Could not detect local IP ({e}), using localhost")
        return "localhost"


# Config file location (can be overridden by CONFIG_DIR env var)
CONFIG_DIR = Path(os.getenv("CONFIG_DIR", Path.home() / ".config" / "ktvcast"))
SETTINGS_FILE = CONFIG_DIR / "settings.json"


class PlaylistConfig(BaseModel):
    room_url: str = ""
    nickname: str = "ktv-casting"
    timeout: float = 10
    poll_interval: float = 0.3
    ping_interval: float = 30
    pong_timeout: float = 60
    backoff_initial: float = 1
    backoff_max: float = 60
    push_connect_attempts: int = 3


class PlaybackConfig(BaseModel):
    media_base_url: str = ""
    retry_delay: float = 0.5
    monitor_interval: float = 1.0
    near_end_seconds: int = 2
    cooldown_seconds: float = 5.0
    timeout: float = 10


class Settings(BaseSettings):
    # Room settings
    room_url: str = ""  # e.g. https://ktv.example.com/102
    nickname: str = "ktv-casting"

    # Media proxy the renderer fetches from - empty = http://<local ip>:<media_port>
    media_base_url: str = ""
    media_port: int = 8080

    # Playback
    retry_delay: float = 0.5  # seconds between attempts of a failed action
    monitor_interval: float = 1.0
    near_end_seconds: int = 2
    cooldown_seconds: float = 5.0

    # Playlist sync
    poll_interval: float = 0.3
    ping_interval: float = 30
    pong_timeout: float = 60
    backoff_initial: float = 1
    backoff_max: float = 60
    push_connect_attempts: int = 3

    http_timeout: float = 10
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def resolved_media_base_url(self) -> str:
        """Base URL of the media proxy, as the renderer should see it."""
        if self.media_base_url:
            return self.media_base_url.rstrip("/")
        return f"http://{get_local_ip()}:{self.media_port}"

    @property
    def playlist(self) -> PlaylistConfig:
        return PlaylistConfig(
            room_url=self.room_url,
            nickname=self.nickname,
            timeout=self.http_timeout,
            poll_interval=self.poll_interval,
            ping_interval=self.ping_interval,
            pong_timeout=self.pong_timeout,
            backoff_initial=self.backoff_initial,
            backoff_max=self.backoff_max,
            push_connect_attempts=self.push_connect_attempts,
        )

    @property
    def playback(self) -> PlaybackConfig:
        return PlaybackConfig(
            media_base_url=self.resolved_media_base_url(),
            retry_delay=self.retry_delay,
            monitor_interval=self.monitor_interval,
            near_end_seconds=self.near_end_seconds,
            cooldown_seconds=self.cooldown_seconds,
            timeout=self.http_timeout,
        )


_settings: Settings | None = None


def _read_overrides() -> dict[str, Any]:
    """Known settings from settings.json. A missing or unreadable file gives none."""
    try:
        data = json.loads(SETTINGS_FILE.read_text())
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable {SETTINGS_FILE}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {SETTINGS_FILE}: not a JSON object")
        return {}
    return {key: value for key, value in data.items() if key in Settings.model_fields}


def get_settings() -> Settings:
    """Settings from env and .env, overridden by settings.json. Cached."""
    global _settings
    if _settings is None:
        # Init values beat env values and are validated the same way
        _settings = Settings(**_read_overrides())
    return _settings


def update_settings(updates: dict[str, Any]) -> Settings:
    """Persist the known keys of ``updates`` to settings.json and reload."""
    global _settings
    overrides = _read_overrides()
    overrides.update({key: value for key, value in updates.items() if key in Settings.model_fields})
    try:
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        SETTINGS_FILE.write_text(json.dumps(overrides, indent=2))
    except OSError as e:
        logger.warning(f"Could not save {SETTINGS_FILE}: {e}")
    _settings = Settings(**overrides)
    return _settings
