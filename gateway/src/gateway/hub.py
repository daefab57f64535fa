from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Set

Callback = Callable[[Dict[str, Any]], None]


@dataclass
class Subscription:
    connection_id: str
    conversation_id: str
    callback: Callback

    def deliver(self, frame: Dict[str, Any]) -> None:
        self.callback(frame)


class RoomHub:
    """Tracks which connections joined which conversation rooms and fans frames out."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Dict[str, Subscription]] = {}
        self._joined: Dict[str, Set[str]] = {}

    def join(self, connection_id: str, conversation_id: str, callback: Callback) -> bool:
        """Join a room; joining twice is a no-op and returns False."""

        room = self._rooms.setdefault(conversation_id, {})
        if connection_id in room:
            return False
        room[connection_id] = Subscription(connection_id=connection_id, conversation_id=conversation_id, callback=callback)
        self._joined.setdefault(connection_id, set()).add(conversation_id)
        return True

    def leave(self, connection_id: str, conversation_id: str) -> bool:
        room = self._rooms.get(conversation_id)
        if not room or connection_id not in room:
            return False
        del room[connection_id]
        if not room:
            self._rooms.pop(conversation_id, None)
        joined = self._joined.get(connection_id)
        if joined is not None:
            joined.discard(conversation_id)
            if not joined:
                self._joined.pop(connection_id, None)
        return True

    def leave_all(self, connection_id: str) -> List[str]:
        rooms = sorted(self._joined.get(connection_id, set()))
        for conversation_id in rooms:
            self.leave(connection_id, conversation_id)
        return rooms

    def rooms_of(self, connection_id: str) -> Set[str]:
        return set(self._joined.get(connection_id, set()))

    def members(self, conversation_id: str) -> List[str]:
        return list(self._rooms.get(conversation_id, {}))

    def broadcast(self, conversation_id: str, frame: Dict[str, Any], *, exclude: str | None = None) -> int:
        delivered = 0
        for subscription in list(self._rooms.get(conversation_id, {}).values()):
            if subscription.connection_id == exclude:
                continue
            subscription.deliver(frame)
            delivered += 1
        return delivered
