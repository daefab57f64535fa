from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Set

from chat_sync.constants import EVENT_USER_OFFLINE, EVENT_USER_ONLINE, PROTOCOL_VERSION

Callback = Callable[[Dict[str, Any]], None]


@dataclass
class PresenceConfig:
    messages_per_min: int = 120
    typing_events_per_min: int = 120


class FixedWindowRateLimiter:
    def __init__(self, limit: int, window_ms: int = 60_000) -> None:
        self.limit = limit
        self.window_ms = window_ms
        self._windows: Dict[str, tuple[int, int]] = {}

    def allow(self, key: str, now_ms: int) -> bool:
        window_start, count = self._windows.get(key, (now_ms, 0))
        if now_ms - window_start >= self.window_ms:
            window_start, count = now_ms, 0
        count += 1
        self._windows[key] = (window_start, count)
        return count <= self.limit


class OnlineRegistry:
    """Counts live connections per user and announces first-online / last-offline.

    A user with two open sockets stays online until both are gone.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Set[str]] = {}
        self._names: Dict[str, str] = {}
        self._callbacks: Dict[str, Callback] = {}

    def register_callback(self, connection_id: str, callback: Callback) -> None:
        self._callbacks[connection_id] = callback

    def unregister_callback(self, connection_id: str) -> None:
        self._callbacks.pop(connection_id, None)

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def online_users(self) -> List[str]:
        return sorted(user_id for user_id, conns in self._connections.items() if conns)

    def name_of(self, user_id: str) -> str:
        return self._names.get(user_id, user_id)

    def connections_of(self, user_id: str) -> List[str]:
        return sorted(self._connections.get(user_id, ()))

    def connect(self, user_id: str, username: str, connection_id: str) -> bool:
        """Register a connection; returns True when the user just came online."""

        self._names[user_id] = username
        connections = self._connections.setdefault(user_id, set())
        first = not connections
        connections.add(connection_id)
        if first:
            self._announce(EVENT_USER_ONLINE, user_id, exclude=connection_id)
        return first

    def disconnect(self, user_id: str, connection_id: str) -> bool:
        connections = self._connections.get(user_id)
        if not connections or connection_id not in connections:
            return False
        connections.discard(connection_id)
        if connections:
            return False
        self._connections.pop(user_id, None)
        self._announce(EVENT_USER_OFFLINE, user_id, exclude=connection_id)
        return True

    def _announce(self, event: str, user_id: str, *, exclude: str) -> None:
        body = {"user_id": user_id, "username": self.name_of(user_id)}
        for connection_id, callback in list(self._callbacks.items()):
            if connection_id == exclude:
                continue
            callback({"v": PROTOCOL_VERSION, "t": event, "body": body})
