"""
In-process publish/subscribe bus for auth and sync events
"""
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional
from ..state.record import UserIdentity
from ..utils.logging import warn

Handler = Callable[[Any], None]

AUTH_TOPIC = "auth"
SYNC_TOPIC = "sync"


class AuthEventKind(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass
class AuthEvent:
    kind: AuthEventKind
    user: Optional[UserIdentity] = None


@dataclass
class SyncEvent:
    status: str
    message: str = ""
    last_sync_time: Optional[float] = None


class EventBus:
    """Topic-routed bus; "*" subscribers see every event."""

    def __init__(self):
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *topic*; returns a function that removes it."""
        self._subscribers[topic].append(handler)

        def unsubscribe():
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, topic: str, event: Any):
        handlers = list(self._subscribers.get(topic, []))
        handlers.extend(self._subscribers.get("*", []))
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                warn(f"[events] handler for '{topic}' failed: {exc}")
