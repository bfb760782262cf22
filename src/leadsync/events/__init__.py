"""Change notification sinks consumed by the dashboard layer."""

from src.leadsync.events.notifier import (
    CallbackNotifier,
    ChangeNotifier,
    NullNotifier,
    RedisStreamNotifier,
)

__all__ = [
    "CallbackNotifier",
    "ChangeNotifier",
    "NullNotifier",
    "RedisStreamNotifier",
]
