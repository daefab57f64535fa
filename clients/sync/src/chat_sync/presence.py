"""Online users and per-conversation typing indicators.

All keys are user ids. Display names learned from events are kept in
``names`` for the UI and never used for lookups.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Set, Tuple

from .config import SyncConfig
from .constants import EVENT_TYPING_START, EVENT_TYPING_STOP

logger = logging.getLogger(__name__)

Emit = Callable[[str, Dict[str, Any]], bool]
ParticipantsOf = Callable[[str], Optional[Iterable[str]]]
ChangeHandler = Callable[[str], None]
Post = Callable[..., None]
Timer = Tuple[int, asyncio.TimerHandle]


def _call_now(fn: Callable[..., Any], *args: Any) -> None:
    fn(*args)


class PresenceTracker:
    def __init__(
        self,
        local_user_id: str,
        emit: Emit,
        config: SyncConfig | None = None,
        *,
        participants_of: ParticipantsOf | None = None,
        on_change: ChangeHandler | None = None,
        post: Post | None = None,
    ) -> None:
        self.local_user_id = local_user_id
        self.config = config or SyncConfig()
        self._emit = emit
        self._participants_of = participants_of
        self._on_change = on_change
        # timer callbacks run through post(fn, *args)
        self._post = post or _call_now
        self._timer_ids = itertools.count(1)
        self._online: Set[str] = set()
        self.names: Dict[str, str] = {}
        self._typing: Dict[str, Set[str]] = {}
        self._expiry: Dict[Tuple[str, str], Timer] = {}
        self._local_typing: Dict[str, Timer] = {}
        self._typing_sent_at: Dict[str, float] = {}

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def online_users(self) -> FrozenSet[str]:
        return frozenset(self._online)

    def typing_users(self, conversation_id: str) -> FrozenSet[str]:
        return frozenset(self._typing.get(conversation_id, ()))

    def typing_conversations(self) -> FrozenSet[str]:
        return frozenset(self._typing)

    def is_local_typing(self, conversation_id: str) -> bool:
        return conversation_id in self._local_typing

    def handle_user_online(self, user_id: str, username: str | None = None) -> None:
        self._remember(user_id, username)
        if user_id in self._online:
            return
        self._online.add(user_id)
        self._changed("presence")

    def handle_user_offline(self, user_id: str, username: str | None = None) -> None:
        self._remember(user_id, username)
        if user_id not in self._online:
            return
        self._online.discard(user_id)
        for conversation_id in list(self._typing):
            self._drop_typing(conversation_id, user_id)
        self._changed("presence")

    def handle_user_typing(self, conversation_id: str, user_id: str, username: str | None = None) -> bool:
        """Record an inbound typing indicator; returns False when it was ignored."""

        if user_id == self.local_user_id:
            return False
        if not self._is_participant(conversation_id, user_id):
            logger.debug("ignoring typing from non-participant %s in %s", user_id, conversation_id)
            return False
        self._remember(user_id, username)
        if user_id not in self._online:
            # typing implies the peer is connected even if we missed user_online
            self._online.add(user_id)
        members = self._typing.setdefault(conversation_id, set())
        added = user_id not in members
        members.add(user_id)
        self._arm_expiry(conversation_id, user_id)
        if added:
            self._changed(conversation_id)
        return added

    def handle_user_stopped_typing(self, conversation_id: str, user_id: str, username: str | None = None) -> bool:
        self._remember(user_id, username)
        return self._drop_typing(conversation_id, user_id)

    def start_typing(self, conversation_id: str) -> bool:
        """Local keystroke; emits ``typing_start`` once per typing window.

        A burst longer than ``typing_window_s`` re-emits so peers keep the
        indicator. Every call re-arms the automatic ``typing_stop``, so the
        indicator is cleared on our side even if the peer never times it out.
        """

        now = asyncio.get_running_loop().time()
        current = self._local_typing.pop(conversation_id, None)
        if current is not None:
            current[1].cancel()
        sent_at = self._typing_sent_at.get(conversation_id)
        emitted = False
        if current is None or sent_at is None or now - sent_at >= self.config.typing_window_s:
            emitted = self._emit(EVENT_TYPING_START, {"conversation_id": conversation_id})
            if not emitted:
                self._typing_sent_at.pop(conversation_id, None)
                return False
            self._typing_sent_at[conversation_id] = now
        self._local_typing[conversation_id] = self._schedule(
            self.config.typing_window_s, self._auto_stop, conversation_id
        )
        return emitted

    def stop_typing(self, conversation_id: str) -> bool:
        current = self._local_typing.pop(conversation_id, None)
        self._typing_sent_at.pop(conversation_id, None)
        if current is None:
            return False
        current[1].cancel()
        self._emit(EVENT_TYPING_STOP, {"conversation_id": conversation_id})
        return True

    def clear_typing(self) -> None:
        """Forget all inbound indicators and stop local bursts without emitting."""

        for _, handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()
        for _, handle in self._local_typing.values():
            handle.cancel()
        self._local_typing.clear()
        self._typing_sent_at.clear()
        changed = list(self._typing)
        self._typing.clear()
        for conversation_id in changed:
            self._changed(conversation_id)

    def reset(self) -> None:
        self.clear_typing()
        if self._online:
            self._online.clear()
            self._changed("presence")

    def _remember(self, user_id: str, username: str | None) -> None:
        if username:
            self.names[user_id] = username

    def _is_participant(self, conversation_id: str, user_id: str) -> bool:
        if self._participants_of is None:
            return True
        participants = self._participants_of(conversation_id)
        if participants is None:
            return False
        return user_id in set(participants)

    def _schedule(self, delay: float, fn: Callable[..., None], *args: Any) -> Timer:
        timer_id = next(self._timer_ids)
        handle = asyncio.get_running_loop().call_later(delay, self._post, fn, timer_id, *args)
        return timer_id, handle

    def _auto_stop(self, timer_id: int, conversation_id: str) -> None:
        current = self._local_typing.get(conversation_id)
        # a keystroke may have re-armed the burst after this timer fired
        if current is None or current[0] != timer_id:
            return
        self.stop_typing(conversation_id)

    def _arm_expiry(self, conversation_id: str, user_id: str) -> None:
        key = (conversation_id, user_id)
        previous = self._expiry.pop(key, None)
        if previous is not None:
            previous[1].cancel()
        delay = self.config.typing_window_s + self.config.typing_grace_s
        self._expiry[key] = self._schedule(delay, self._expire, conversation_id, user_id)

    def _expire(self, timer_id: int, conversation_id: str, user_id: str) -> None:
        current = self._expiry.get((conversation_id, user_id))
        if current is None or current[0] != timer_id:
            return
        if self._drop_typing(conversation_id, user_id):
            logger.debug("typing indicator for %s in %s expired", user_id, conversation_id)

    def _drop_typing(self, conversation_id: str, user_id: str) -> bool:
        current = self._expiry.pop((conversation_id, user_id), None)
        if current is not None:
            current[1].cancel()
        members = self._typing.get(conversation_id)
        if not members or user_id not in members:
            return False
        members.discard(user_id)
        if not members:
            del self._typing[conversation_id]
        self._changed(conversation_id)
        return True

    def _changed(self, topic: str) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(topic)
        except Exception:
            logger.exception("presence change handler failed")
