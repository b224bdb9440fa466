from __future__ import annotations

import pytest

from ktvcast.services.duration_cache import DurationCache
from ktvcast.services.exceptions import LinkResolutionError
from ktvcast.services.links import ProxyLinkResolver, is_ready_url, normalize_item_id


class TestNormalizeItemId:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("https://www.bilibili.com/video/BV1AP411x7YW", "BV1AP411x7YW"),
            ("https://www.bilibili.com/video/BV1AP411x7YW?p=1", "BV1AP411x7YW"),
            ("https://www.bilibili.com/video/BV1AP411x7YW/?p=3&spm=abc", "BV1AP411x7YW?page=3"),
            ("BV1AP411x7YW", "BV1AP411x7YW"),
            ("  http://cdn.example.com/song.mp4 ", "http://cdn.example.com/song.mp4"),
        ],
    )
    def test_normalize(self, value, expected):
        assert normalize_item_id(value) == expected

    def test_ready_url(self):
        assert is_ready_url("https://cdn.example.com/a.mp4")
        assert not is_ready_url("BV1AP411x7YW")


class TestProxyLinkResolver:
    @pytest.mark.asyncio
    async def test_resolves_through_proxy(self):
        resolver = ProxyLinkResolver("http://192.168.1.5:8080/")
        assert await resolver.resolve("BV1AP411x7YW?page=2") == "http://192.168.1.5:8080/BV1AP411x7YW?page=2"

    @pytest.mark.asyncio
    async def test_ready_urls_pass_through(self):
        resolver = ProxyLinkResolver("http://192.168.1.5:8080")
        assert await resolver.resolve("https://cdn.example.com/a.mp4") == "https://cdn.example.com/a.mp4"

    @pytest.mark.asyncio
    async def test_empty_id(self):
        with pytest.raises(LinkResolutionError):
            await ProxyLinkResolver("http://h").resolve("  ")


class TestDurationCache:
    def test_set_and_get(self):
        cache = DurationCache()
        cache.set("BV1AP411x7YW", 215.7)
        assert cache.get("BV1AP411x7YW") == 215
        assert "BV1AP411x7YW" in cache
        assert len(cache) == 1

    def test_non_positive_durations_ignored(self):
        cache = DurationCache()
        cache.set("a", 0)
        cache.set("b", -3)
        assert len(cache) == 0
        assert cache.get("a") is None

    def test_discard(self):
        cache = DurationCache()
        cache.set("a", 10)
        cache.discard("a")
        cache.discard("missing")
        assert "a" not in cache
