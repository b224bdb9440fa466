"""Fixed-delay retry for operations that must eventually go through.

Some renderers signal success through a channel the HTTP client reports as a
failure (e.g. an empty "204 No Content" reply to an action that should return
a SOAP body). The error text then carries a 2xx status code, and we count the
call as done instead of retrying it forever.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_DELAY = 0.5

# A standalone three-digit status-like token: not part of a longer number,
# an IP address, a port or a path segment.
_STATUS_TOKEN = re.compile(r"(?<![\d.:/])([1-5]\d\d)(?![\d:/]|\.\d)")


def embedded_status(error: BaseException | str) -> int | None:
    """First status-like three-digit token in an error message, if any."""
    match = _STATUS_TOKEN.search(str(error))
    return int(match.group(1)) if match else None


def is_embedded_success(error: BaseException | str) -> bool:
    """True when the error text carries a 2xx status code.

    Known fragility: any unrelated standalone 2xx number in the message
    ("200 items") is also taken as success.
    """
    status = embedded_status(error)
    return status is not None and status // 100 == 2


@dataclass(frozen=True)
class RetryPolicy:
    delay: float = DEFAULT_RETRY_DELAY
    classifier: Callable[[BaseException], bool] = is_embedded_success
    # None retries forever
    max_attempts: int | None = None


DEFAULT_POLICY = RetryPolicy()


async def retry_forever(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_POLICY,
    description: str = "operation",
) -> T | None:
    """Await ``operation()`` until it succeeds.

    Returns the operation's result, or None when a failure was classified as
    success by ``policy.classifier``.

    Configuration errors are raised immediately. With ``max_attempts`` set the
    last error is raised once the attempts are used up.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except ConfigurationError as e:
            logger.error(f"{description} failed: {e} (not retrying)")
            raise
        except Exception as e:
            if policy.classifier(e):
                logger.info(f"{description}: treating '{e}' as success")
                return None
            if policy.max_attempts is not None and attempt >= policy.max_attempts:
                logger.error(f"{description} failed after {attempt} attempts: {e}")
                raise
            logger.warning(f"{description} failed: {e}, retrying in {policy.delay * 1000:.0f}ms")
            await asyncio.sleep(policy.delay)
