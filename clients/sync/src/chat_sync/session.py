"""Client session: one connection, one event path, and the state the UI reads.

UI code calls the ``async`` intent methods and registers ``on_change``
listeners; it never touches the reconciler, tracker or list directly. Every
mutation, inbound or local, runs on the session's :class:`Dispatcher`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

import aiohttp

from .config import SyncConfig
from .connection import ConnectionManager, ConnectionState, ConnectionStatus
from .constants import (
    EVENT_AUTHENTICATED,
    EVENT_ERROR,
    EVENT_MESSAGE_READ,
    EVENT_NEW_MESSAGE,
    EVENT_USER_OFFLINE,
    EVENT_USER_ONLINE,
    EVENT_USER_STOPPED_TYPING,
    EVENT_USER_TYPING,
)
from .conversation_list import ConversationList
from .conversations import Conversation, ConversationFilters, GroupSettings, can_post_messages
from .dispatcher import Dispatcher
from .errors import AuthenticationFailure, InvalidConversationReference, InvalidMessage, PermissionDenied
from .models import Message, UserIdentity, now_ms
from .presence import PresenceTracker
from .reconciler import MergeOutcome, MessageReconciler
from .store_client import StoreClient
from .transport import TransportFactory

logger = logging.getLogger(__name__)

TOPIC_MESSAGES = "messages"
TOPIC_CONVERSATIONS = "conversations"
TOPIC_TYPING = "typing"
TOPIC_PRESENCE = "presence"
TOPIC_STATUS = "status"

ChangeHandler = Callable[[str, Optional[str]], None]


class ChatSession:
    def __init__(
        self,
        identity: UserIdentity,
        credential: str,
        config: SyncConfig | None = None,
        *,
        store_client: StoreClient | None = None,
        transport_factory: TransportFactory | None = None,
        http_session: aiohttp.ClientSession | None = None,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.identity = identity
        self.config = config or SyncConfig()
        self.dispatcher = Dispatcher()
        self.connection = ConnectionManager(
            credential,
            self.config,
            transport_factory=transport_factory,
            http_session=http_session,
        )
        self.store = store_client or StoreClient(self.config.base_url, credential, session=http_session)
        self.conversation_list = ConversationList(identity.user_id)
        self.conversation_list.remember_name(identity.user_id, identity.display_name)
        self.reconciler = MessageReconciler(identity.user_id, self.connection.send, self.config, now_func=now_func)
        self.presence = PresenceTracker(
            identity.user_id,
            self.connection.send,
            self.config,
            participants_of=self.conversation_list.participants_of,
            on_change=self._presence_changed,
            post=self.dispatcher.submit,
        )
        self._listeners: List[ChangeHandler] = []
        self._sweeper: asyncio.Task | None = None
        self._background: Set[asyncio.Task] = set()
        # conversation id -> (reloads in flight, ids delivered live meanwhile)
        self._reloading: Dict[str, Tuple[int, Set[str]]] = {}
        self._register_handlers()

    # -- lifecycle -------------------------------------------------------

    async def start(self, *, refresh: bool = True) -> None:
        self.dispatcher.start()
        self.connection.start()
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())
        if refresh:
            await self.refresh_conversations()

    async def logout(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await self.connection.logout()
        await self.dispatcher.call(self.presence.reset)
        await self.dispatcher.stop()
        await self.store.close()

    def reconnect(self) -> None:
        self.connection.reconnect()

    def on_change(self, handler: ChangeHandler) -> None:
        self._listeners.append(handler)

    # -- intents ---------------------------------------------------------

    async def send_message(self, conversation_id: str, content: str) -> Message:
        conversation = self.conversation_list.get(conversation_id)
        if not can_post_messages(conversation, self.identity.user_id):
            raise PermissionDenied("you cannot post in this conversation")
        return await self.dispatcher.call(self._send, conversation_id, content)

    async def retry_message(self, conversation_id: str, temp_id: str) -> Message:
        return await self.dispatcher.call(self._retry, conversation_id, temp_id)

    async def mark_read(self, conversation_id: str, message_id: str) -> bool:
        return await self.dispatcher.call(self._mark_read, conversation_id, message_id)

    async def open_conversation(self, conversation_id: str) -> List[Message]:
        """Make ``conversation_id`` current and reload its history from the store.

        Cached messages are never trusted on open: the store's copy replaces
        the confirmed part of the sequence.
        """

        await self.dispatcher.call(self._open, conversation_id)
        return await self.reload_history(conversation_id)

    async def close_conversation(self, conversation_id: str | None = None) -> None:
        await self.dispatcher.call(self._close, conversation_id)

    async def reload_history(self, conversation_id: str) -> List[Message]:
        """Replace the conversation's confirmed messages with the store's latest page.

        Messages delivered live while the page is in flight may be missing from
        it; those are kept alongside the page.
        """

        await self.dispatcher.call(self._begin_reload, conversation_id)
        try:
            history = await self.store.list_messages(conversation_id, page=1, limit=self.config.history_page_size)
        except BaseException:
            self.dispatcher.submit(self._end_reload, conversation_id)
            raise
        messages = await self.dispatcher.call(self._finish_reload, conversation_id, history)
        if messages:
            await self.dispatcher.call(self._fold_latest, conversation_id, messages)
        self._notify(TOPIC_MESSAGES, conversation_id)
        return messages

    async def start_typing(self, conversation_id: str) -> bool:
        return await self.dispatcher.call(self.presence.start_typing, conversation_id)

    async def stop_typing(self, conversation_id: str) -> bool:
        return await self.dispatcher.call(self.presence.stop_typing, conversation_id)

    async def refresh_conversations(self, filters: ConversationFilters | None = None) -> List[Conversation]:
        conversations = await self.store.list_conversations(filters)
        await self.dispatcher.call(self.conversation_list.load, conversations)
        self._notify(TOPIC_CONVERSATIONS, None)
        return self.conversations()

    async def find_or_create_direct(self, peer_id: str) -> Conversation:
        conversation = await self.store.find_or_create_direct(peer_id)
        await self.dispatcher.call(self.conversation_list.upsert, conversation)
        self._notify(TOPIC_CONVERSATIONS, conversation.conversation_id)
        return conversation

    async def create_group(
        self,
        participants: Iterable[str],
        *,
        name: str = "",
        description: str = "",
        settings: GroupSettings | None = None,
    ) -> Conversation:
        conversation = await self.store.create_group(participants, name=name, description=description, settings=settings)
        await self.dispatcher.call(self.conversation_list.upsert, conversation)
        self._notify(TOPIC_CONVERSATIONS, conversation.conversation_id)
        return conversation

    async def leave_conversation(self, conversation_id: str) -> Conversation:
        """Leave a group or close a direct chat, then drop it from the list."""

        conversation = await self.store.leave_conversation(conversation_id)
        await self.dispatcher.call(self._forget_conversation, conversation_id)
        return conversation

    async def search_conversations(self, query: str, *, limit: int = 10) -> List[Conversation]:
        return await self.store.search_conversations(query, limit=limit)

    # -- read-only views -------------------------------------------------

    @property
    def status(self) -> ConnectionStatus:
        return self.connection.get_status()

    @property
    def current(self) -> Optional[str]:
        return self.conversation_list.current

    def messages(self, conversation_id: str) -> List[Message]:
        return self.reconciler.messages(conversation_id)

    def conversations(self) -> List[Conversation]:
        return self.conversation_list.items()

    def search(self, query: str) -> List[Conversation]:
        return self.conversation_list.search(query)

    def unread(self, conversation_id: str) -> int:
        return self.conversation_list.unread(conversation_id)

    def total_unread(self) -> int:
        return self.conversation_list.total_unread()

    def draft(self, conversation_id: str) -> str:
        return self.reconciler.drafts.get(conversation_id, "")

    def typing_users(self, conversation_id: str) -> FrozenSet[str]:
        return self.presence.typing_users(conversation_id)

    def typing_names(self, conversation_id: str) -> List[str]:
        return sorted(self.name_of(user_id) for user_id in self.presence.typing_users(conversation_id))

    def is_online(self, user_id: str) -> bool:
        return self.presence.is_online(user_id)

    def name_of(self, user_id: str) -> str:
        return self.presence.names.get(user_id, user_id)

    def banner(self) -> Optional[str]:
        """Persistent status text for the UI, or ``None`` while the channel is ready."""

        status = self.connection.get_status()
        if status.state is ConnectionState.READY:
            return None
        if status.state in (ConnectionState.CONNECTING, ConnectionState.AUTHENTICATING):
            return "Connecting..."
        if status.state is ConnectionState.DEGRADED:
            if status.gave_up:
                return "Connection lost. Retry to reconnect."
            return f"Reconnecting (attempt {status.attempts} of {self.config.max_reconnect_attempts})..."
        if isinstance(status.last_error, AuthenticationFailure):
            return f"Authentication failed: {status.last_error}"
        return "Disconnected"

    # -- event path ------------------------------------------------------

    def _register_handlers(self) -> None:
        routes = {
            EVENT_NEW_MESSAGE: self._on_new_message,
            EVENT_MESSAGE_READ: self._on_message_read,
            EVENT_USER_TYPING: self._on_user_typing,
            EVENT_USER_STOPPED_TYPING: self._on_user_stopped_typing,
            EVENT_USER_ONLINE: self._on_user_online,
            EVENT_USER_OFFLINE: self._on_user_offline,
            EVENT_AUTHENTICATED: self._on_authenticated,
            EVENT_ERROR: self._on_error,
        }
        for event, handler in routes.items():
            self.connection.on_event(event, self._submitter(handler))
        self.connection.on_status(lambda status: self.dispatcher.submit(self._on_status, status))
        self.connection.on_ready(lambda: self.dispatcher.submit(self._on_ready))

    def _submitter(self, handler: Callable[[Dict[str, Any]], None]) -> Callable[[Dict[str, Any]], None]:
        def submit(body: Dict[str, Any]) -> None:
            self.dispatcher.submit(handler, body)

        return submit

    def _on_new_message(self, body: Dict[str, Any]) -> None:
        conversation_id = body.get("conversation_id")
        payload = body.get("message")
        if not isinstance(conversation_id, str) or not isinstance(payload, dict):
            logger.warning("dropping malformed new_message frame")
            return
        try:
            message = Message.from_dict(payload, conversation_id)
        except InvalidMessage as exc:
            logger.warning("dropping invalid message in %s: %s", conversation_id, exc)
            return
        outcome = self.reconciler.apply_confirmed(conversation_id, message)
        if outcome is MergeOutcome.DUPLICATE:
            return
        if conversation_id in self._reloading:
            self._reloading[conversation_id][1].add(message.message_id)
        self.presence.handle_user_stopped_typing(conversation_id, message.sender_id)
        if not self.conversation_list.apply_message(message):
            self._spawn(self.refresh_conversations())
        self._notify(TOPIC_MESSAGES, conversation_id)
        self._notify(TOPIC_CONVERSATIONS, conversation_id)

    def _on_message_read(self, body: Dict[str, Any]) -> None:
        conversation_id = body.get("conversation_id")
        message_id = body.get("message_id")
        user_id = body.get("user_id")
        if not all(isinstance(value, str) for value in (conversation_id, message_id, user_id)):
            return
        read_at = body.get("read_at")
        if self.reconciler.apply_read_receipt(
            conversation_id, message_id, user_id, read_at if isinstance(read_at, int) else None
        ):
            self._notify(TOPIC_MESSAGES, conversation_id)

    def _on_user_typing(self, body: Dict[str, Any]) -> None:
        conversation_id = body.get("conversation_id")
        user_id = body.get("user_id")
        if isinstance(conversation_id, str) and isinstance(user_id, str):
            self.presence.handle_user_typing(conversation_id, user_id, body.get("username"))

    def _on_user_stopped_typing(self, body: Dict[str, Any]) -> None:
        conversation_id = body.get("conversation_id")
        user_id = body.get("user_id")
        if isinstance(conversation_id, str) and isinstance(user_id, str):
            self.presence.handle_user_stopped_typing(conversation_id, user_id, body.get("username"))

    def _on_user_online(self, body: Dict[str, Any]) -> None:
        user_id = body.get("user_id")
        if isinstance(user_id, str):
            self.presence.handle_user_online(user_id, body.get("username"))
            self.conversation_list.remember_name(user_id, self.presence.names.get(user_id, ""))

    def _on_user_offline(self, body: Dict[str, Any]) -> None:
        user_id = body.get("user_id")
        if isinstance(user_id, str):
            self.presence.handle_user_offline(user_id, body.get("username"))

    def _on_authenticated(self, body: Dict[str, Any]) -> None:
        username = body.get("username")
        if isinstance(username, str):
            self.presence.names[self.identity.user_id] = username

    def _on_error(self, body: Dict[str, Any]) -> None:
        conversation_id = body.get("conversation_id")
        nonce = body.get("nonce")
        if isinstance(conversation_id, str) and isinstance(nonce, str):
            if self.reconciler.apply_send_error(conversation_id, nonce):
                self._notify(TOPIC_MESSAGES, conversation_id)

    def _on_status(self, status: ConnectionStatus) -> None:
        if status.state in (ConnectionState.DEGRADED, ConnectionState.DISCONNECTED):
            self.presence.clear_typing()
        self._notify(TOPIC_STATUS, None)

    def _on_ready(self) -> None:
        resent = self.reconciler.on_reconnect()
        for conversation_id in {message.conversation_id for message in resent}:
            self._notify(TOPIC_MESSAGES, conversation_id)
        current = self.conversation_list.current
        if current is not None:
            self._spawn(self.reload_history(current))

    def _send(self, conversation_id: str, content: str) -> Message:
        self.presence.stop_typing(conversation_id)
        message = self.reconciler.send_message(conversation_id, content)
        self._notify(TOPIC_MESSAGES, conversation_id)
        return message

    def _retry(self, conversation_id: str, temp_id: str) -> Message:
        message = self.reconciler.retry(conversation_id, temp_id)
        self._notify(TOPIC_MESSAGES, conversation_id)
        return message

    def _mark_read(self, conversation_id: str, message_id: str) -> bool:
        changed = self.reconciler.mark_read(conversation_id, message_id)
        if changed:
            self._notify(TOPIC_MESSAGES, conversation_id)
        return changed

    def _open(self, conversation_id: str) -> None:
        self.conversation_list.open(conversation_id)
        self.connection.subscribe(conversation_id)
        self._notify(TOPIC_CONVERSATIONS, conversation_id)

    def _close(self, conversation_id: str | None) -> None:
        target = conversation_id or self.conversation_list.current
        if target is None:
            return
        if self.conversation_list.current == target:
            self.conversation_list.close()
        self.connection.unsubscribe(target)
        self.presence.stop_typing(target)
        dropped = self.reconciler.cancel_pending_reads(target)
        if dropped:
            logger.debug("dropped %d queued read receipts for %s", dropped, target)
        self._notify(TOPIC_CONVERSATIONS, target)

    def _forget_conversation(self, conversation_id: str) -> None:
        self._close(conversation_id)
        self.conversation_list.remove(conversation_id)
        self.reconciler.forget(conversation_id)
        self._notify(TOPIC_CONVERSATIONS, conversation_id)

    def _begin_reload(self, conversation_id: str) -> None:
        depth, live = self._reloading.get(conversation_id, (0, set()))
        self._reloading[conversation_id] = (depth + 1, live)

    def _end_reload(self, conversation_id: str) -> Set[str]:
        depth, live = self._reloading.pop(conversation_id, (1, set()))
        if depth > 1:
            self._reloading[conversation_id] = (depth - 1, live)
        return live

    def _finish_reload(self, conversation_id: str, history: List[Message]) -> List[Message]:
        live = self._end_reload(conversation_id)
        if live:
            logger.debug("keeping %d live messages over reloaded %s", len(live), conversation_id)
        return self.reconciler.load_history(conversation_id, history, keep=live)

    def _fold_latest(self, conversation_id: str, messages: List[Message]) -> None:
        confirmed = [message for message in messages if message.confirmed]
        if not confirmed:
            return
        latest = confirmed[-1]
        conversation = self.conversation_list.find(conversation_id)
        if conversation is not None and conversation.last_activity_ms < latest.ts_ms:
            conversation.last_activity_ms = latest.ts_ms
            conversation.last_message_id = latest.message_id

    def _sweep(self) -> None:
        for conversation_id in {message.conversation_id for message in self.reconciler.sweep()}:
            self._notify(TOPIC_MESSAGES, conversation_id)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_s)
            self.dispatcher.submit(self._sweep)

    def _presence_changed(self, topic: str) -> None:
        if topic == TOPIC_PRESENCE:
            self._notify(TOPIC_PRESENCE, None)
        else:
            self._notify(TOPIC_TYPING, topic)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(self._guard(coro))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    async def _guard(coro: Any) -> None:
        try:
            await coro
        except InvalidConversationReference as exc:
            logger.warning("background refresh skipped: %s", exc)
        except Exception:
            logger.exception("background refresh failed")

    def _notify(self, topic: str, conversation_id: Optional[str]) -> None:
        for handler in list(self._listeners):
            try:
                handler(topic, conversation_id)
            except Exception:
                logger.exception("change listener failed")
