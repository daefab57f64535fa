from __future__ import annotations

import secrets
from typing import Callable, Dict, List, Optional, Tuple

from chat_sync.models import Message, now_ms


def _new_message_id() -> str:
    return f"m_{secrets.token_hex(12)}"


class MessageLog:
    """In-memory, append-only message log with idempotency enforcement."""

    def __init__(self, *, now_func: Callable[[], int] = now_ms, id_factory: Callable[[], str] = _new_message_id) -> None:
        self._now = now_func
        self._new_id = id_factory
        self._messages: Dict[str, List[Message]] = {}
        self._by_id: Dict[str, Message] = {}
        self._idempotency: Dict[Tuple[str, str, str], Message] = {}

    def append(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        nonce: str | None = None,
    ) -> tuple[Message, bool]:
        """Append a message or return the existing one for the idempotency key.

        The key is ``(conversation_id, sender_id, nonce)``; messages without a
        nonce are always appended. Timestamps never go backwards within a
        conversation.
        """

        if nonce:
            key = (conversation_id, sender_id, nonce)
            existing = self._idempotency.get(key)
            if existing is not None:
                return existing.copy(), False

        messages = self._messages.setdefault(conversation_id, [])
        ts_ms = self._now()
        if messages and messages[-1].ts_ms > ts_ms:
            ts_ms = messages[-1].ts_ms
        message = Message(
            message_id=self._new_id(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            ts_ms=ts_ms,
            nonce=nonce,
        )
        messages.append(message)
        self._by_id[message.message_id] = message
        if nonce:
            self._idempotency[(conversation_id, sender_id, nonce)] = message
        return message.copy(), True

    def get(self, message_id: str) -> Optional[Message]:
        message = self._by_id.get(message_id)
        return message.copy() if message is not None else None

    def latest(self, conversation_id: str) -> Optional[Message]:
        messages = self._messages.get(conversation_id)
        return messages[-1].copy() if messages else None

    def count(self, conversation_id: str) -> int:
        return len(self._messages.get(conversation_id, []))

    def page(self, conversation_id: str, page: int = 1, limit: int = 50) -> List[Message]:
        """Return page ``page`` counted from the newest message, oldest first."""

        if page < 1 or limit < 1:
            raise ValueError("page and limit must be positive")
        messages = self._messages.get(conversation_id, [])
        end = len(messages) - (page - 1) * limit
        if end <= 0:
            return []
        start = max(0, end - limit)
        return [message.copy() for message in messages[start:end]]

    def mark_read(self, conversation_id: str, message_id: str, user_id: str) -> tuple[Optional[Message], bool]:
        message = self._by_id.get(message_id)
        if message is None or message.conversation_id != conversation_id:
            return None, False
        changed = message.add_receipt(user_id, self._now())
        return message.copy(), changed
