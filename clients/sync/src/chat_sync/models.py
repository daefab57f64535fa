from __future__ import annotations

import enum
import secrets
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .constants import MAX_MESSAGE_LENGTH
from .errors import InvalidMessage


def now_ms() -> int:
    return int(time.time() * 1000)


def new_temp_id() -> str:
    return f"tmp_{secrets.token_hex(8)}"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    display_name: str


@dataclass(frozen=True)
class ReadReceipt:
    user_id: str
    read_at_ms: int


@dataclass
class Message:
    """A chat message as held by the client.

    Confirmed messages come from the store and only ever change by gaining
    read receipts. Optimistic messages carry ``temp_id`` (also used as the
    append nonce) and stay ``PENDING`` until a confirmed copy replaces them.
    """

    message_id: str
    conversation_id: str
    sender_id: str
    content: str
    ts_ms: int
    read_by: List[ReadReceipt] = field(default_factory=list)
    nonce: Optional[str] = None
    temp_id: Optional[str] = None
    status: MessageStatus = MessageStatus.CONFIRMED
    attempts: int = 0
    last_attempt_ms: int = 0

    @property
    def confirmed(self) -> bool:
        return self.status is MessageStatus.CONFIRMED

    @property
    def failed(self) -> bool:
        return self.status is MessageStatus.FAILED

    def is_read_by(self, user_id: str) -> bool:
        return any(receipt.user_id == user_id for receipt in self.read_by)

    def add_receipt(self, user_id: str, read_at_ms: int) -> bool:
        if self.is_read_by(user_id):
            return False
        self.read_by.append(ReadReceipt(user_id=user_id, read_at_ms=read_at_ms))
        return True

    def copy(self) -> "Message":
        return replace(self, read_by=list(self.read_by))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.message_id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "timestamp": self.ts_ms,
            "read_by": [{"user_id": r.user_id, "read_at": r.read_at_ms} for r in self.read_by],
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], conversation_id: str | None = None) -> "Message":
        message_id = payload.get("id")
        conv_id = conversation_id or payload.get("conversation_id")
        sender_id = payload.get("sender_id")
        content = payload.get("content")
        ts = payload.get("timestamp")
        if not isinstance(message_id, str) or not message_id:
            raise InvalidMessage("message id required")
        if not isinstance(conv_id, str) or not conv_id:
            raise InvalidMessage("conversation_id required")
        if not isinstance(sender_id, str) or not isinstance(content, str):
            raise InvalidMessage("sender_id and content required")
        if not isinstance(ts, int):
            raise InvalidMessage("timestamp must be an integer (ms)")
        read_by = []
        for entry in payload.get("read_by") or []:
            if isinstance(entry, dict) and isinstance(entry.get("user_id"), str):
                read_by.append(ReadReceipt(user_id=entry["user_id"], read_at_ms=int(entry.get("read_at") or 0)))
        nonce = payload.get("nonce")
        return cls(
            message_id=message_id,
            conversation_id=conv_id,
            sender_id=sender_id,
            content=content,
            ts_ms=ts,
            read_by=read_by,
            nonce=nonce if isinstance(nonce, str) else None,
        )


def normalize_content(content: str) -> str:
    """Trim and validate outgoing message text."""

    if not isinstance(content, str):
        raise InvalidMessage("content must be text")
    text = content.strip()
    if not text:
        raise InvalidMessage("message content is required")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise InvalidMessage(f"message content cannot exceed {MAX_MESSAGE_LENGTH} characters")
    return text
