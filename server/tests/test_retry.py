"""Unit tests for the retry harness and its success classification."""

from __future__ import annotations

import pytest

from ktvcast.services.exceptions import ProtocolExhausted, ServiceNotSupported, TransportError
from ktvcast.services.retry import RetryPolicy, embedded_status, is_embedded_success, retry_forever

NO_DELAY = RetryPolicy(delay=0)


class Flaky:
    """Fails with the given errors in order, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestClassifier:
    def test_no_content_is_success(self):
        assert is_embedded_success("request failed: 204 No Content") is True

    def test_server_error_is_not_success(self):
        assert is_embedded_success("request failed: 500") is False

    def test_no_status_at_all(self):
        assert embedded_status("connection refused") is None
        assert is_embedded_success("connection refused") is False

    def test_ip_addresses_and_ports_are_ignored(self):
        assert embedded_status("POST http://10.0.0.250:8080/ctrl failed") is None
        assert embedded_status("connect to 192.168.1.201 timed out") is None

    def test_longer_numbers_are_ignored(self):
        assert embedded_status("error code 12000") is None

    def test_exhausted_fallback_carries_last_status(self):
        error = ProtocolExhausted("Play", 5, "HTTP 204")
        assert embedded_status(error) == 204
        assert is_embedded_success(error) is True

    def test_known_fragility(self):
        # Unrelated 2xx numbers are taken as success
        assert is_embedded_success("parsed 200 items before failing") is True


class TestRetryForever:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        op = Flaky([])
        assert await retry_forever(op, NO_DELAY) == "ok"
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_embedded_success_returns_none_without_retry(self):
        op = Flaky([TransportError("request failed: 204 No Content")])
        assert await retry_forever(op, NO_DELAY) is None
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_failures_are_retried_until_success(self):
        op = Flaky([TransportError("request failed: 500"), TransportError("request failed: 500")])
        assert await retry_forever(op, NO_DELAY, "Play") == "ok"
        assert op.calls == 3

    @pytest.mark.asyncio
    async def test_retry_logs_warning(self, caplog):
        op = Flaky([TransportError("request failed: 500")])
        with caplog.at_level("WARNING"):
            await retry_forever(op, NO_DELAY, "Stop")
        assert any("Stop failed" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_configuration_errors_are_not_retried(self):
        op = Flaky([ServiceNotSupported("TV", "urn:x")])
        with pytest.raises(ServiceNotSupported):
            await retry_forever(op, NO_DELAY)
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_max_attempts_raises_last_error(self):
        op = Flaky([TransportError("first 500"), TransportError("second 503")])
        with pytest.raises(TransportError, match="second"):
            await retry_forever(op, RetryPolicy(delay=0, max_attempts=2))
        assert op.calls == 2

    @pytest.mark.asyncio
    async def test_custom_classifier(self):
        op = Flaky([TransportError("204 No Content")])
        policy = RetryPolicy(delay=0, classifier=lambda e: False)
        assert await retry_forever(op, policy) == "ok"
        assert op.calls == 2
