"""Change notification sinks.

The cache emits a single fire-and-forget "something changed" signal when a
write-back happens (e.g. a smart status pass changed lead statuses). The
dashboard re-renders on receipt. There is no payload contract beyond the
reason string and a timestamp.

- CallbackNotifier: in-process listeners (sync or async callables)
- RedisStreamNotifier: XADD to a Redis stream for out-of-process consumers

Notifier failures are logged and never raised to the caller.
"""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)

Listener = Callable[[str], Awaitable[None] | None]


class ChangeNotifier(ABC):
    """Sink for "cached data changed" signals."""

    @abstractmethod
    async def notify(self, reason: str) -> None:
        """Emit one change notification. Must not raise."""
        ...


class NullNotifier(ChangeNotifier):
    """Discards notifications."""

    async def notify(self, reason: str) -> None:
        return None


class CallbackNotifier(ChangeNotifier):
    """Dispatches notifications to registered in-process listeners."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def notify(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(reason)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("notify.listener_failed", reason=reason, error=str(exc))


class RedisStreamNotifier(ChangeNotifier):
    """Appends notifications to a Redis stream with approximate trimming.

    Args:
        redis: Async Redis client.
        stream: Stream key, e.g. ``leadsync:changes``.
        maxlen: Approximate stream length cap.
    """

    def __init__(self, redis: aioredis.Redis, stream: str, maxlen: int = 1000) -> None:
        self._redis = redis
        self._stream = stream
        self._maxlen = maxlen

    async def notify(self, reason: str) -> None:
        data = {
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            message_id = await self._redis.xadd(
                self._stream,
                data,
                maxlen=self._maxlen,
                approximate=True,
            )
        except RedisError as exc:
            logger.error("notify.publish_failed", stream=self._stream, error=str(exc))
            return

        logger.debug(
            "notify.published",
            stream=self._stream,
            reason=reason,
            message_id=message_id,
        )
