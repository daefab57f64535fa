"""Merge optimistic sends with store-confirmed messages into one ordered sequence per conversation.

Each outgoing message is inserted locally right away with a temporary id that
doubles as the append nonce. When the confirmed copy comes back it replaces
the optimistic entry in place, so the message keeps its on-screen position.

Matching, in order:

1. nonce equality with an unconfirmed local entry;
2. same sender and content within ``match_window_ms``, earliest entry first,
   only when the two sides cannot disagree on the nonce;
3. otherwise the message is new unless its id is already present or an entry
   with the same sender and content sits within ``duplicate_window_ms``.

The windows only smooth the UI. Exactly-once append is the store's job, keyed
on the nonce.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import SyncConfig
from .constants import EVENT_MARK_MESSAGE_READ, EVENT_SEND_MESSAGE
from .errors import InvalidMessage
from .models import Message, MessageStatus, new_temp_id, normalize_content, now_ms

logger = logging.getLogger(__name__)

Emit = Callable[[str, Dict[str, Any]], bool]

MAX_AUTOMATIC_ATTEMPTS = 2


class MergeOutcome(str, enum.Enum):
    REPLACED = "replaced"
    APPENDED = "appended"
    DUPLICATE = "duplicate"


class MessageReconciler:
    def __init__(
        self,
        local_user_id: str,
        emit: Emit,
        config: SyncConfig | None = None,
        *,
        now_func: Callable[[], int] = now_ms,
        temp_id_factory: Callable[[], str] = new_temp_id,
    ) -> None:
        self.local_user_id = local_user_id
        self.config = config or SyncConfig()
        self._emit = emit
        self._now = now_func
        self._new_temp_id = temp_id_factory
        self._sequences: Dict[str, List[Message]] = {}
        self._pending_reads: Dict[str, List[str]] = {}
        self.drafts: Dict[str, str] = {}

    def messages(self, conversation_id: str) -> List[Message]:
        return [message.copy() for message in self._sequences.get(conversation_id, [])]

    def pending(self, conversation_id: str) -> List[Message]:
        return [m.copy() for m in self._sequences.get(conversation_id, []) if m.status is MessageStatus.PENDING]

    def failed(self, conversation_id: str) -> List[Message]:
        return [m.copy() for m in self._sequences.get(conversation_id, []) if m.status is MessageStatus.FAILED]

    def conversations(self) -> List[str]:
        return list(self._sequences)

    def forget(self, conversation_id: str) -> None:
        self._sequences.pop(conversation_id, None)
        self._pending_reads.pop(conversation_id, None)

    def send_message(self, conversation_id: str, content: str) -> Message:
        """Insert an optimistic message and hand it to the transport.

        Never blocks. If the transport refuses the frame the entry stays in
        place marked failed and the text goes back to the draft buffer.
        """

        text = normalize_content(content)
        temp_id = self._new_temp_id()
        message = Message(
            message_id=temp_id,
            conversation_id=conversation_id,
            sender_id=self.local_user_id,
            content=text,
            ts_ms=self._now(),
            nonce=temp_id,
            temp_id=temp_id,
            status=MessageStatus.PENDING,
        )
        self._sequence(conversation_id).append(message)
        if not self._forward(message):
            if not self.drafts.get(conversation_id):
                self.drafts[conversation_id] = text
        return message.copy()

    def retry(self, conversation_id: str, temp_id: str) -> Message:
        message = self._find_unconfirmed(conversation_id, temp_id)
        if message is None:
            raise InvalidMessage(f"no unconfirmed message {temp_id!r} in {conversation_id!r}")
        message.attempts = 0
        if self._forward(message) and self.drafts.get(conversation_id) == message.content:
            self.drafts.pop(conversation_id, None)
        return message.copy()

    def apply_confirmed(self, conversation_id: str, message: Message) -> MergeOutcome:
        incoming = message.copy()
        incoming.conversation_id = conversation_id
        incoming.status = MessageStatus.CONFIRMED
        incoming.temp_id = None
        sequence = self._sequence(conversation_id)

        index = self._match_optimistic(sequence, incoming)
        if index is not None:
            previous = sequence[index]
            incoming.temp_id = previous.temp_id
            for receipt in previous.read_by:
                incoming.add_receipt(receipt.user_id, receipt.read_at_ms)
            sequence[index] = incoming
            logger.debug("confirmed %s replaced optimistic %s", incoming.message_id, previous.temp_id)
            return MergeOutcome.REPLACED

        existing = self._find(conversation_id, incoming.message_id)
        if existing is not None:
            for receipt in incoming.read_by:
                existing.add_receipt(receipt.user_id, receipt.read_at_ms)
            return MergeOutcome.DUPLICATE
        if self._is_duplicate(sequence, incoming):
            logger.debug("dropping duplicate delivery of %s", incoming.message_id)
            return MergeOutcome.DUPLICATE

        sequence.append(incoming)
        return MergeOutcome.APPENDED

    def apply_send_error(self, conversation_id: str, nonce: str) -> bool:
        """Mark the optimistic entry for ``nonce`` failed after the gateway rejected it."""

        for message in self._sequences.get(conversation_id, []):
            if not message.confirmed and message.nonce == nonce:
                message.status = MessageStatus.FAILED
                message.attempts = MAX_AUTOMATIC_ATTEMPTS
                return True
        return False

    def mark_read(self, conversation_id: str, message_id: str) -> bool:
        message = self._find(conversation_id, message_id)
        if message is None or not message.confirmed:
            raise InvalidMessage(f"no confirmed message {message_id!r} in {conversation_id!r}")
        if not message.add_receipt(self.local_user_id, self._now()):
            return False
        payload = {"message_id": message_id, "conversation_id": conversation_id}
        if not self._emit(EVENT_MARK_MESSAGE_READ, payload):
            queue = self._pending_reads.setdefault(conversation_id, [])
            if message_id not in queue:
                queue.append(message_id)
        return True

    def apply_read_receipt(self, conversation_id: str, message_id: str, user_id: str, read_at_ms: int | None = None) -> bool:
        message = self._find(conversation_id, message_id)
        if message is None:
            return False
        return message.add_receipt(user_id, read_at_ms if read_at_ms is not None else self._now())

    def pending_reads(self, conversation_id: str) -> List[str]:
        return list(self._pending_reads.get(conversation_id, []))

    def cancel_pending_reads(self, conversation_id: str) -> int:
        return len(self._pending_reads.pop(conversation_id, []))

    def flush_pending_reads(self) -> int:
        sent = 0
        for conversation_id in list(self._pending_reads):
            remaining = []
            for message_id in self._pending_reads[conversation_id]:
                payload = {"message_id": message_id, "conversation_id": conversation_id}
                if self._emit(EVENT_MARK_MESSAGE_READ, payload):
                    sent += 1
                else:
                    remaining.append(message_id)
            if remaining:
                self._pending_reads[conversation_id] = remaining
            else:
                self._pending_reads.pop(conversation_id, None)
        return sent

    def on_reconnect(self) -> List[Message]:
        """Resend-or-reconcile after the channel comes back.

        Unconfirmed entries older than the grace period get one automatic
        resend with their original nonce; entries that already had it are
        marked failed.
        """

        now = self._now()
        resent = []
        for message in self._unconfirmed():
            if now - message.last_attempt_ms < self.config.resend_grace_ms:
                continue
            if message.attempts < MAX_AUTOMATIC_ATTEMPTS:
                self._forward(message)
                resent.append(message.copy())
            elif message.status is MessageStatus.PENDING:
                message.status = MessageStatus.FAILED
        self.flush_pending_reads()
        return resent

    def sweep(self) -> List[Message]:
        """Expire pending entries that were never confirmed; returns entries that changed."""

        now = self._now()
        changed = []
        for message in self._unconfirmed():
            if message.status is not MessageStatus.PENDING:
                continue
            if now - message.last_attempt_ms < self.config.confirm_timeout_ms:
                continue
            if message.attempts < MAX_AUTOMATIC_ATTEMPTS:
                self._forward(message)
            else:
                message.status = MessageStatus.FAILED
            changed.append(message.copy())
        return changed

    def load_history(self, conversation_id: str, messages: Iterable[Message], *, keep: Iterable[str] = ()) -> List[Message]:
        """Replace the confirmed part of the sequence with the store's copy.

        Confirmed entries whose ids are in ``keep`` survive even when the page
        lacks them; they arrived after the page was read. Local unconfirmed
        entries the store does not know yet stay at the tail.
        """

        confirmed: List[Message] = []
        seen = set()
        for message in sorted(messages, key=lambda m: m.ts_ms):
            if message.message_id in seen:
                continue
            seen.add(message.message_id)
            entry = message.copy()
            entry.conversation_id = conversation_id
            entry.status = MessageStatus.CONFIRMED
            confirmed.append(entry)

        keep_ids = set(keep)
        kept = []
        leftovers = []
        for local in self._sequences.get(conversation_id, []):
            if local.confirmed:
                if local.message_id in keep_ids and local.message_id not in seen:
                    seen.add(local.message_id)
                    kept.append(local)
                continue
            match = self._match_stored(confirmed, local)
            if match is None:
                leftovers.append(local)
            else:
                match.temp_id = local.temp_id
        if kept:
            confirmed = sorted(confirmed + kept, key=lambda m: m.ts_ms)
        self._sequences[conversation_id] = confirmed + leftovers
        return self.messages(conversation_id)

    def _forward(self, message: Message) -> bool:
        message.attempts += 1
        message.last_attempt_ms = self._now()
        payload = {
            "conversation_id": message.conversation_id,
            "content": message.content,
            "nonce": message.nonce,
        }
        if self._emit(EVENT_SEND_MESSAGE, payload):
            message.status = MessageStatus.PENDING
            return True
        message.status = MessageStatus.FAILED
        logger.info("send of %s deferred: transport not ready", message.temp_id)
        return False

    def _sequence(self, conversation_id: str) -> List[Message]:
        return self._sequences.setdefault(conversation_id, [])

    def _unconfirmed(self) -> Iterable[Message]:
        for sequence in self._sequences.values():
            for message in sequence:
                if not message.confirmed:
                    yield message

    def _find(self, conversation_id: str, message_id: str) -> Optional[Message]:
        for message in self._sequences.get(conversation_id, []):
            if message.message_id == message_id:
                return message
        return None

    def _find_unconfirmed(self, conversation_id: str, temp_id: str) -> Optional[Message]:
        for message in self._sequences.get(conversation_id, []):
            if not message.confirmed and message.temp_id == temp_id:
                return message
        return None

    def _match_optimistic(self, sequence: List[Message], incoming: Message) -> Optional[int]:
        if incoming.nonce:
            for index, message in enumerate(sequence):
                if not message.confirmed and message.nonce == incoming.nonce:
                    return index
        for index, message in enumerate(sequence):
            if message.confirmed:
                continue
            if incoming.nonce and message.nonce and incoming.nonce != message.nonce:
                continue
            if (
                message.sender_id == incoming.sender_id
                and message.content == incoming.content
                and abs(message.ts_ms - incoming.ts_ms) <= self.config.match_window_ms
            ):
                return index
        return None

    def _match_stored(self, confirmed: List[Message], local: Message) -> Optional[Message]:
        for message in confirmed:
            if local.nonce and message.nonce == local.nonce:
                return message
        for message in confirmed:
            if message.nonce and local.nonce and message.nonce != local.nonce:
                continue
            if (
                message.sender_id == local.sender_id
                and message.content == local.content
                and abs(message.ts_ms - local.ts_ms) <= self.config.match_window_ms
            ):
                return message
        return None

    def _is_duplicate(self, sequence: List[Message], incoming: Message) -> bool:
        for message in sequence:
            if incoming.nonce and message.nonce and incoming.nonce != message.nonce:
                continue
            if (
                message.sender_id == incoming.sender_id
                and message.content == incoming.content
                and abs(message.ts_ms - incoming.ts_ms) <= self.config.duplicate_window_ms
            ):
                return True
        return False
