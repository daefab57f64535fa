"""Client-side conversation list: recency order, previews and unread counters."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional

from .conversations import Conversation, display_name
from .errors import InvalidConversationReference
from .models import Message

logger = logging.getLogger(__name__)


class ConversationList:
    def __init__(self, local_user_id: str) -> None:
        self.local_user_id = local_user_id
        self._conversations: Dict[str, Conversation] = {}
        self._unread: Dict[str, int] = {}
        self._previews: Dict[str, Message] = {}
        self._names: Dict[str, str] = {}
        self.current: Optional[str] = None

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    def load(self, conversations: Iterable[Conversation], unread: Mapping[str, int] | None = None) -> None:
        """Replace the list with a fresh copy from the store.

        Unread counters survive for conversations that are still listed unless
        ``unread`` overrides them.
        """

        fresh = {conversation.conversation_id: conversation for conversation in conversations}
        self._conversations = fresh
        self._unread = {cid: count for cid, count in self._unread.items() if cid in fresh}
        self._previews = {cid: message for cid, message in self._previews.items() if cid in fresh}
        for conversation_id, count in (unread or {}).items():
            if conversation_id in fresh:
                self._unread[conversation_id] = max(0, int(count))
        if self.current is not None and self.current not in fresh:
            self.current = None

    def upsert(self, conversation: Conversation) -> None:
        self._conversations[conversation.conversation_id] = conversation

    def remove(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        self._unread.pop(conversation_id, None)
        self._previews.pop(conversation_id, None)
        if self.current == conversation_id:
            self.current = None

    def get(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise InvalidConversationReference(conversation_id)
        return conversation

    def find(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def participants_of(self, conversation_id: str) -> Optional[List[str]]:
        conversation = self._conversations.get(conversation_id)
        return list(conversation.participants) if conversation is not None else None

    def items(self) -> List[Conversation]:
        # sorted() is stable, so equal timestamps keep load order
        return sorted(self._conversations.values(), key=lambda c: c.last_activity_ms, reverse=True)

    def preview(self, conversation_id: str) -> Optional[Message]:
        return self._previews.get(conversation_id)

    def apply_message(self, message: Message) -> bool:
        """Fold a confirmed message into the list; False for unknown conversations."""

        conversation = self._conversations.get(message.conversation_id)
        if conversation is None:
            return False
        previous = self._previews.get(message.conversation_id)
        if previous is not None and previous.message_id == message.message_id:
            return True
        if previous is None or message.ts_ms >= previous.ts_ms:
            self._previews[message.conversation_id] = message
            conversation.last_message_id = message.message_id
            conversation.last_activity_ms = max(conversation.last_activity_ms, message.ts_ms)
        if message.sender_id != self.local_user_id and self.current != message.conversation_id:
            self._unread[message.conversation_id] = self._unread.get(message.conversation_id, 0) + 1
        return True

    def open(self, conversation_id: str) -> Conversation:
        conversation = self.get(conversation_id)
        self.current = conversation_id
        self._unread[conversation_id] = 0
        return conversation

    def close(self) -> Optional[str]:
        closed, self.current = self.current, None
        return closed

    def unread(self, conversation_id: str) -> int:
        return self._unread.get(conversation_id, 0)

    def total_unread(self) -> int:
        return sum(self._unread.values())

    def remember_name(self, user_id: str, name: str) -> None:
        if name:
            self._names[user_id] = name

    def display_name(self, conversation: Conversation | str) -> str:
        if isinstance(conversation, str):
            conversation = self.get(conversation)
        return display_name(conversation, self.local_user_id, self._names)

    def search(self, query: str) -> List[Conversation]:
        needle = query.strip().lower()
        if not needle:
            return self.items()
        results = []
        for conversation in self.items():
            preview = self._previews.get(conversation.conversation_id)
            haystacks = [self.display_name(conversation)]
            if preview is not None:
                haystacks.append(preview.content)
            if any(needle in text.lower() for text in haystacks):
                results.append(conversation)
        return results
