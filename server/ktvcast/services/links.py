"""Playlist item ids and the URLs handed to the renderer."""

from __future__ import annotations

import re
from typing import Protocol
from urllib.parse import parse_qs, quote, urlsplit

from .exceptions import LinkResolutionError

_BV_ID = re.compile(r"BV[0-9A-Za-z]{10}")


def normalize_item_id(value: str) -> str:
    """Reduce a playlist entry to the id the media proxy understands.

    Bilibili video URLs become their BV id, with ``?page=N`` for parts after
    the first. Anything else is returned trimmed.

        https://www.bilibili.com/video/BV1AP411x7YW?p=2 -> BV1AP411x7YW?page=2
    """
    raw = (value or "").strip()
    match = _BV_ID.search(raw)
    if not match:
        return raw

    query = parse_qs(urlsplit(raw).query)
    page_values = query.get("p") or query.get("page") or []
    page = 1
    if page_values and page_values[0].isdigit():
        page = int(page_values[0])
    if page > 1:
        return f"{match.group(0)}?page={page}"
    return match.group(0)


def is_ready_url(item_id: str) -> bool:
    return item_id.startswith("http://") or item_id.startswith("https://")


class LinkResolver(Protocol):
    async def resolve(self, item_id: str) -> str:
        """Return a URL the renderer can fetch directly."""
        ...


class ProxyLinkResolver:
    """Points the renderer at the media proxy, which resolves the real stream.

    Items that are already plain http(s) URLs are passed through untouched.
    """

    def __init__(self, media_base_url: str):
        self.media_base_url = media_base_url.rstrip("/")

    async def resolve(self, item_id: str) -> str:
        item_id = item_id.strip()
        if not item_id:
            raise LinkResolutionError("Empty playlist item id")
        if is_ready_url(item_id):
            return item_id
        return f"{self.media_base_url}/{quote(item_id, safe='?=&')}"
