from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any, Dict, Mapping, Optional, Union

from aiohttp import WSMsgType, web

from chat_sync.constants import (
    EVENT_AUTHENTICATE,
    EVENT_AUTHENTICATED,
    EVENT_AUTHENTICATION_ERROR,
    EVENT_ERROR,
    EVENT_JOIN_CHAT,
    EVENT_LEAVE_CHAT,
    EVENT_MARK_MESSAGE_READ,
    EVENT_MESSAGE_READ,
    EVENT_NEW_MESSAGE,
    EVENT_PING,
    EVENT_PONG,
    EVENT_SEND_MESSAGE,
    EVENT_TYPING_START,
    EVENT_TYPING_STOP,
    EVENT_USER_ONLINE,
    EVENT_USER_STOPPED_TYPING,
    EVENT_USER_TYPING,
    PROTOCOL_VERSION,
)
from chat_sync.conversations import (
    Conversation,
    ConversationFilters,
    ConversationStore,
    GroupSettings,
    KIND_DIRECT,
    KIND_GROUP,
    can_post_messages,
)
from chat_sync.errors import (
    AlreadyMember,
    GroupFull,
    InvalidConversationReference,
    InvalidMessage,
    MembershipViolation,
    NotMember,
    PermissionDenied,
)
from chat_sync.models import UserIdentity, normalize_content, now_ms

from .hub import RoomHub
from .presence import FixedWindowRateLimiter, OnlineRegistry, PresenceConfig
from .store import MessageLog

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
_SETTINGS_FIELDS = set(GroupSettings.__dataclass_fields__)


class Runtime:
    def __init__(
        self,
        *,
        conversations: ConversationStore,
        messages: MessageLog,
        hub: RoomHub,
        online: OnlineRegistry,
        tokens: Mapping[str, UserIdentity],
        presence_config: PresenceConfig,
        now_func=now_ms,
    ) -> None:
        self.conversations = conversations
        self.messages = messages
        self.hub = hub
        self.online = online
        self.tokens = dict(tokens)
        self.now = now_func
        self.message_rate = FixedWindowRateLimiter(presence_config.messages_per_min)
        self.typing_rate = FixedWindowRateLimiter(presence_config.typing_events_per_min)

    def identify(self, credential: Any) -> UserIdentity | None:
        if not isinstance(credential, str):
            return None
        return self.tokens.get(credential)

    def member_conversation(self, conversation_id: Any, user_id: str) -> Conversation:
        """Load a conversation the user currently participates in."""

        if not isinstance(conversation_id, str) or not conversation_id:
            raise InvalidConversationReference(str(conversation_id))
        conversation = self.conversations.get(conversation_id)
        if not conversation.is_member(user_id):
            raise PermissionDenied("not a participant of this conversation")
        return conversation

    def evict(self, conversation_id: str, user_id: str) -> None:
        """Drop every connection of ``user_id`` from the conversation's room."""

        for connection_id in self.online.connections_of(user_id):
            self.hub.leave(connection_id, conversation_id)


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


def _frame(event: str, body: Dict[str, Any] | None = None, *, request_id: Any = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"v": PROTOCOL_VERSION, "t": event, "body": body or {}}
    if request_id is not None:
        frame["id"] = request_id
    return frame


def _error_frame(code: str, message: str, *, request_id: Any = None, **extra: Any) -> Dict[str, Any]:
    body = {"code": code, "message": message}
    body.update(extra)
    return _frame(EVENT_ERROR, body, request_id=request_id)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _json_error(status: int, code: str, message: str) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _json_error(401, "unauthorized", "invalid credential")


def _invalid_request(message: str) -> web.Response:
    return _json_error(400, "invalid_request", message)


def _not_found(exc: InvalidConversationReference) -> web.Response:
    return _json_error(404, "not_found", str(exc))


def _membership_error(exc: MembershipViolation) -> web.Response:
    if isinstance(exc, PermissionDenied):
        status = 403
    elif isinstance(exc, (AlreadyMember, NotMember, GroupFull)):
        status = 409
    else:
        status = 400
    return _json_error(status, exc.code, str(exc))


def _authenticate_request(request: web.Request) -> UserIdentity | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return runtime.identify(auth_header[len("Bearer ") :].strip())


def _parse_flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    lowered = value.lower()
    if lowered in {"true", "1"}:
        return True
    if lowered in {"false", "0"}:
        return False
    raise ValueError(f"invalid boolean {value!r}")


def _parse_settings(payload: Any) -> GroupSettings | None:
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise ValueError("settings must be an object")
    return GroupSettings(**{k: v for k, v in payload.items() if k in _SETTINGS_FIELDS})


async def _read_json(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


async def handle_list_chats(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    kind = request.query.get("kind")
    if kind is not None and kind not in {KIND_DIRECT, KIND_GROUP}:
        return _invalid_request("kind must be direct or group")
    try:
        filters = ConversationFilters(
            kind=kind,
            archived=_parse_flag(request.query.get("archived")),
            muted=_parse_flag(request.query.get("muted")),
            pinned=_parse_flag(request.query.get("pinned")),
        )
    except ValueError as exc:
        return _invalid_request(str(exc))
    chats = runtime.conversations.list_for_user(user.user_id, filters)
    return web.json_response({"chats": [chat.to_dict() for chat in chats]})


async def handle_search_chats(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    query = request.query.get("q", "")
    try:
        limit = int(request.query.get("limit", "10"))
    except ValueError:
        return _invalid_request("limit must be an integer")
    if limit < 1:
        return _invalid_request("limit must be positive")
    chats = runtime.conversations.search(user.user_id, query, limit=min(limit, MAX_PAGE_SIZE))
    return web.json_response({"chats": [chat.to_dict() for chat in chats]})


async def handle_get_chat(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    try:
        conversation = runtime.member_conversation(request.match_info["conversation_id"], user.user_id)
    except InvalidConversationReference as exc:
        return _not_found(exc)
    except MembershipViolation as exc:
        return _membership_error(exc)
    return web.json_response({"chat": conversation.to_dict()})


async def handle_leave_chat(request: web.Request) -> web.Response:
    """Leave a group, or close a direct chat for both sides; history is kept."""

    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    conversation_id = request.match_info["conversation_id"]
    try:
        conversation = runtime.member_conversation(conversation_id, user.user_id)
        if conversation.kind == KIND_GROUP:
            conversation = runtime.conversations.remove_participant(conversation_id, user.user_id, user.user_id)
        else:
            conversation = runtime.conversations.deactivate(conversation_id)
    except InvalidConversationReference as exc:
        return _not_found(exc)
    except MembershipViolation as exc:
        return _membership_error(exc)
    runtime.evict(conversation_id, user.user_id)
    logger.info("%s left conversation %s", user.user_id, conversation_id)
    return web.json_response({"chat": conversation.to_dict()})


async def handle_list_messages(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    conversation_id = request.match_info["conversation_id"]
    try:
        page = int(request.query.get("page", "1"))
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        return _invalid_request("page and limit must be integers")
    if page < 1 or limit < 1:
        return _invalid_request("page and limit must be positive")
    limit = min(limit, MAX_PAGE_SIZE)
    try:
        runtime.member_conversation(conversation_id, user.user_id)
    except InvalidConversationReference as exc:
        return _not_found(exc)
    except MembershipViolation as exc:
        return _membership_error(exc)
    messages = runtime.messages.page(conversation_id, page, limit)
    has_more = runtime.messages.count(conversation_id) > page * limit
    return web.json_response(
        {"messages": [message.to_dict() for message in messages], "page": page, "has_more": has_more}
    )


async def handle_create_direct(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    peer_id = body.get("participant_id")
    if not isinstance(peer_id, str) or not peer_id:
        return _invalid_request("participant_id required")
    try:
        conversation = runtime.conversations.find_or_create_direct(user.user_id, peer_id)
    except MembershipViolation as exc:
        return _membership_error(exc)
    return web.json_response({"chat": conversation.to_dict()})


async def handle_create_group(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    participants = body.get("participants")
    if not isinstance(participants, list) or any(not isinstance(p, str) or not p for p in participants):
        return _invalid_request("participants must be a list of user ids")
    name = body.get("name") or ""
    description = body.get("description") or ""
    if not isinstance(name, str) or not isinstance(description, str):
        return _invalid_request("name and description must be strings")
    try:
        settings = _parse_settings(body.get("settings"))
        conversation = runtime.conversations.create_group(
            user.user_id, participants, name=name, description=description, settings=settings
        )
    except (TypeError, ValueError) as exc:
        return _invalid_request(str(exc))
    except MembershipViolation as exc:
        return _membership_error(exc)
    return web.json_response({"chat": conversation.to_dict()}, status=201)


async def handle_update_group(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    name = body.get("name")
    description = body.get("description")
    if (name is not None and not isinstance(name, str)) or (description is not None and not isinstance(description, str)):
        return _invalid_request("name and description must be strings")
    try:
        settings = _parse_settings(body.get("settings"))
        conversation = runtime.conversations.update_group_info(
            request.match_info["conversation_id"], user.user_id, name=name, description=description, settings=settings
        )
    except (TypeError, ValueError) as exc:
        return _invalid_request(str(exc))
    except InvalidConversationReference as exc:
        return _not_found(exc)
    except MembershipViolation as exc:
        return _membership_error(exc)
    return web.json_response({"chat": conversation.to_dict()})


async def handle_add_participant(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    body = await _read_json(request)
    if body is None or not isinstance(body.get("user_id"), str):
        return _invalid_request("user_id required")
    try:
        conversation = runtime.conversations.add_participant(
            request.match_info["conversation_id"], body["user_id"], user.user_id
        )
    except InvalidConversationReference as exc:
        return _not_found(exc)
    except MembershipViolation as exc:
        return _membership_error(exc)
    return web.json_response({"chat": conversation.to_dict()})


async def handle_remove_participant(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    try:
        conversation = runtime.conversations.remove_participant(
            request.match_info["conversation_id"], request.match_info["user_id"], user.user_id
        )
    except InvalidConversationReference as exc:
        return _not_found(exc)
    except MembershipViolation as exc:
        return _membership_error(exc)
    runtime.evict(conversation.conversation_id, request.match_info["user_id"])
    return web.json_response({"chat": conversation.to_dict()})


async def handle_set_admin(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    user = _authenticate_request(request)
    if user is None:
        return _unauthorized()
    conversation_id = request.match_info["conversation_id"]
    try:
        if request.method == "DELETE":
            conversation = runtime.conversations.revoke_admin(conversation_id, request.match_info["user_id"], user.user_id)
        else:
            body = await _read_json(request)
            if body is None or not isinstance(body.get("user_id"), str):
                return _invalid_request("user_id required")
            conversation = runtime.conversations.set_admin(conversation_id, body["user_id"], user.user_id)
    except InvalidConversationReference as exc:
        return _not_found(exc)
    except MembershipViolation as exc:
        return _membership_error(exc)
    return web.json_response({"chat": conversation.to_dict()})


def create_app(
    *,
    tokens: Mapping[str, UserIdentity] | None = None,
    conversations: ConversationStore | None = None,
    messages: MessageLog | None = None,
    presence_config: PresenceConfig | None = None,
    ping_interval_s: float = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
) -> web.Application:
    runtime = Runtime(
        conversations=conversations if conversations is not None else ConversationStore(),
        messages=messages if messages is not None else MessageLog(),
        hub=RoomHub(),
        online=OnlineRegistry(),
        tokens=tokens or {},
        presence_config=presence_config or PresenceConfig(),
    )
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/api/chats", handle_list_chats)
    app.router.add_post("/api/chats", handle_create_direct)
    app.router.add_get("/api/chats/search", handle_search_chats)
    app.router.add_get("/api/chats/{conversation_id}", handle_get_chat)
    app.router.add_delete("/api/chats/{conversation_id}", handle_leave_chat)
    app.router.add_get("/api/chats/{conversation_id}/messages", handle_list_messages)
    app.router.add_post("/api/groups", handle_create_group)
    app.router.add_patch("/api/groups/{conversation_id}", handle_update_group)
    app.router.add_post("/api/groups/{conversation_id}/participants", handle_add_participant)
    app.router.add_delete("/api/groups/{conversation_id}/participants/{user_id}", handle_remove_participant)
    app.router.add_post("/api/groups/{conversation_id}/admins", handle_set_admin)
    app.router.add_delete("/api/groups/{conversation_id}/admins/{user_id}", handle_set_admin)
    app.router.add_get("/ws", websocket_handler)
    return app


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    connection_id = f"conn_{secrets.token_hex(8)}"
    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=1000)
    user: UserIdentity | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    enqueue(_frame(EVENT_PING))
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    def require_member(frame_id: Any, conversation_id: Any, **extra: Any) -> Conversation | None:
        try:
            return runtime.member_conversation(conversation_id, user.user_id)
        except InvalidConversationReference as exc:
            enqueue(_error_frame("not_found", str(exc), request_id=frame_id, conversation_id=conversation_id, **extra))
        except PermissionDenied as exc:
            enqueue(_error_frame(exc.code, str(exc), request_id=frame_id, conversation_id=conversation_id, **extra))
        return None

    def handle_send(frame_id: Any, body: Dict[str, Any]) -> None:
        conversation_id = body.get("conversation_id")
        nonce = body.get("nonce") if isinstance(body.get("nonce"), str) else None
        conversation = require_member(frame_id, conversation_id, nonce=nonce)
        if conversation is None:
            return
        if not can_post_messages(conversation, user.user_id):
            enqueue(
                _error_frame(
                    "forbidden", "posting is restricted in this conversation",
                    request_id=frame_id, conversation_id=conversation_id, nonce=nonce,
                )
            )
            return
        try:
            content = normalize_content(body.get("content"))
        except InvalidMessage as exc:
            enqueue(_error_frame("invalid_request", str(exc), request_id=frame_id, conversation_id=conversation_id, nonce=nonce))
            return
        if not runtime.message_rate.allow(user.user_id, runtime.now()):
            enqueue(_error_frame("rate_limited", "too many messages", request_id=frame_id, conversation_id=conversation_id, nonce=nonce))
            return
        message, created = runtime.messages.append(conversation_id, user.user_id, content, nonce)
        event = _frame(EVENT_NEW_MESSAGE, {"conversation_id": conversation_id, "message": message.to_dict()})
        if not created:
            # retransmission of an already stored nonce: confirm to the sender only
            enqueue(event)
            return
        runtime.conversations.touch(conversation_id, message.message_id, message.ts_ms)
        runtime.hub.broadcast(conversation_id, event)
        if connection_id not in runtime.hub.members(conversation_id):
            enqueue(event)

    def handle_mark_read(frame_id: Any, body: Dict[str, Any]) -> None:
        conversation_id = body.get("conversation_id")
        message_id = body.get("message_id")
        if require_member(frame_id, conversation_id) is None:
            return
        if not isinstance(message_id, str):
            enqueue(_error_frame("invalid_request", "message_id required", request_id=frame_id))
            return
        message, changed = runtime.messages.mark_read(conversation_id, message_id, user.user_id)
        if message is None:
            enqueue(_error_frame("not_found", "unknown message", request_id=frame_id, conversation_id=conversation_id))
            return
        if not changed:
            return
        runtime.conversations.mark_last_read(conversation_id, user.user_id, message_id)
        receipt = next(r for r in message.read_by if r.user_id == user.user_id)
        runtime.hub.broadcast(
            conversation_id,
            _frame(
                EVENT_MESSAGE_READ,
                {
                    "message_id": message_id,
                    "user_id": user.user_id,
                    "conversation_id": conversation_id,
                    "read_at": receipt.read_at_ms,
                },
            ),
        )

    def handle_typing(frame_id: Any, event: str, body: Dict[str, Any]) -> None:
        conversation_id = body.get("conversation_id")
        if require_member(frame_id, conversation_id) is None:
            return
        if event == EVENT_TYPING_START and not runtime.typing_rate.allow(user.user_id, runtime.now()):
            return
        outgoing = EVENT_USER_TYPING if event == EVENT_TYPING_START else EVENT_USER_STOPPED_TYPING
        runtime.hub.broadcast(
            conversation_id,
            _frame(outgoing, {"user_id": user.user_id, "username": user.display_name, "conversation_id": conversation_id}),
            exclude=connection_id,
        )

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws
        if not isinstance(payload, dict) or payload.get("v") != PROTOCOL_VERSION:
            await ws.send_json(_error_frame("invalid_request", "unsupported version"))
            await ws.close()
            return ws

        body = payload.get("body") or {}
        if payload.get("t") != EVENT_AUTHENTICATE:
            await ws.send_json(_error_frame("invalid_request", "first frame must authenticate", request_id=payload.get("id")))
            await ws.close()
            return ws
        user = runtime.identify(body.get("credential"))
        if user is None:
            await ws.send_json(_frame(EVENT_AUTHENTICATION_ERROR, {"message": "invalid credential"}, request_id=payload.get("id")))
            await ws.close()
            return ws

        mark_activity()
        enqueue(
            _frame(
                EVENT_AUTHENTICATED,
                {"user_id": user.user_id, "username": user.display_name},
                request_id=payload.get("id"),
            )
        )
        for other in runtime.online.online_users():
            if other != user.user_id:
                enqueue(_frame(EVENT_USER_ONLINE, {"user_id": other, "username": runtime.online.name_of(other)}))
        runtime.online.register_callback(connection_id, enqueue)
        runtime.online.connect(user.user_id, user.display_name, connection_id)
        logger.info("connection %s authenticated as %s", connection_id, user.user_id)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                frame_id = frame.get("id")
                if frame.get("v") != PROTOCOL_VERSION:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=frame_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}
                if not isinstance(body, dict):
                    enqueue(_error_frame("invalid_request", "body must be an object", request_id=frame_id))
                    continue

                if frame_type == EVENT_PING:
                    enqueue(_frame(EVENT_PONG, request_id=frame_id))
                elif frame_type == EVENT_PONG:
                    continue
                elif frame_type == EVENT_JOIN_CHAT:
                    conversation_id = body.get("conversation_id")
                    if require_member(frame_id, conversation_id) is not None:
                        runtime.hub.join(connection_id, conversation_id, enqueue)
                elif frame_type == EVENT_LEAVE_CHAT:
                    conversation_id = body.get("conversation_id")
                    if isinstance(conversation_id, str):
                        runtime.hub.leave(connection_id, conversation_id)
                elif frame_type == EVENT_SEND_MESSAGE:
                    handle_send(frame_id, body)
                elif frame_type == EVENT_MARK_MESSAGE_READ:
                    handle_mark_read(frame_id, body)
                elif frame_type in (EVENT_TYPING_START, EVENT_TYPING_STOP):
                    handle_typing(frame_id, frame_type, body)
                else:
                    enqueue(_error_frame("invalid_request", "unknown frame type", request_id=frame_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        writer_task.cancel()
        rooms = runtime.hub.leave_all(connection_id)
        if user is not None:
            for conversation_id in rooms:
                runtime.hub.broadcast(
                    conversation_id,
                    _frame(
                        EVENT_USER_STOPPED_TYPING,
                        {"user_id": user.user_id, "username": user.display_name, "conversation_id": conversation_id},
                    ),
                )
            runtime.online.unregister_callback(connection_id)
            runtime.online.disconnect(user.user_id, connection_id)
            logger.info("connection %s for %s closed", connection_id, user.user_id)
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
