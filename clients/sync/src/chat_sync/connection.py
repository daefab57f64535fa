"""Connection lifecycle: authenticate-on-connect, heartbeat, backoff reconnect, room bookkeeping."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import aiohttp

from .backoff import backoff_delays
from .config import SyncConfig
from .constants import (
    EVENT_AUTHENTICATE,
    EVENT_AUTHENTICATED,
    EVENT_AUTHENTICATION_ERROR,
    EVENT_ERROR,
    EVENT_JOIN_CHAT,
    EVENT_LEAVE_CHAT,
    EVENT_PING,
    EVENT_PONG,
)
from .errors import AuthenticationFailure, ChatSyncError, TransportDropped
from .transport import TRANSPORT_ERRORS, TransportFactory, WebSocketTransport, make_frame

logger = logging.getLogger(__name__)

EventHandler = Callable[[Dict[str, Any]], None]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState
    attempts: int
    subscriptions: Tuple[str, ...]
    last_error: Optional[ChatSyncError] = None
    gave_up: bool = False

    @property
    def ready(self) -> bool:
        return self.state is ConnectionState.READY


StatusHandler = Callable[[ConnectionStatus], None]


class ConnectionManager:
    """Owns the single persistent channel of a client session.

    The gateway forgets room membership when a socket goes away, so every
    transition into ``READY`` re-emits ``join_chat`` for all known rooms.
    """

    def __init__(
        self,
        credential: str,
        config: SyncConfig | None = None,
        *,
        transport_factory: TransportFactory | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self._credential = credential
        self._transport_factory = transport_factory
        self._http_session = http_session
        self._owns_http_session = False
        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: Dict[str, None] = {}
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._status_handlers: List[StatusHandler] = []
        self._ready_handlers: List[Callable[[], None]] = []
        self._transport: WebSocketTransport | None = None
        self._outbound: asyncio.Queue[Dict[str, Any] | None] | None = None
        self._supervisor: asyncio.Task | None = None
        self._attempts = 0
        self._delays: Iterator[float] = self._fresh_delays()
        self._last_error: ChatSyncError | None = None
        self._gave_up = False
        self._last_activity = 0.0
        self._state_changed = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def subscriptions(self) -> Tuple[str, ...]:
        return tuple(self._subscriptions)

    def get_status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            attempts=self._attempts,
            subscriptions=self.subscriptions,
            last_error=self._last_error,
            gave_up=self._gave_up,
        )

    status = property(get_status)

    def on_event(self, event_type: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def off_event(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(event_type, None)

    def on_status(self, handler: StatusHandler) -> None:
        self._status_handlers.append(handler)

    def on_ready(self, handler: Callable[[], None]) -> None:
        self._ready_handlers.append(handler)

    def start(self) -> None:
        """Begin connecting; a no-op while a connection attempt is already running."""

        if self._supervisor is not None and not self._supervisor.done():
            return
        self._attempts = 0
        self._delays = self._fresh_delays()
        self._gave_up = False
        self._last_error = None
        self._supervisor = asyncio.create_task(self._supervise())

    def reconnect(self) -> None:
        """Retry immediately, resetting the attempt budget."""

        if self._supervisor is not None and not self._supervisor.done():
            if self._state is not ConnectionState.DEGRADED:
                return
            self._supervisor.cancel()
            self._supervisor = None
        self.start()

    async def logout(self) -> None:
        """Tear down the channel for good; dependents must call :meth:`start` again."""

        await self._shutdown()
        self._subscriptions.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
            self._owns_http_session = False

    stop = logout

    def subscribe(self, conversation_id: str) -> bool:
        if not conversation_id:
            raise ValueError("conversation_id required")
        if conversation_id in self._subscriptions:
            return False
        self._subscriptions[conversation_id] = None
        if self._state is ConnectionState.READY:
            self._enqueue(make_frame(EVENT_JOIN_CHAT, {"conversation_id": conversation_id}))
        return True

    def unsubscribe(self, conversation_id: str) -> bool:
        if conversation_id not in self._subscriptions:
            return False
        self._subscriptions.pop(conversation_id, None)
        if self._state is ConnectionState.READY:
            self._enqueue(make_frame(EVENT_LEAVE_CHAT, {"conversation_id": conversation_id}))
        return True

    def send(self, event: str, payload: Dict[str, Any]) -> bool:
        """Queue ``event`` for the gateway. Returns False unless the channel is ready."""

        if self._state is not ConnectionState.READY:
            logger.debug("cannot emit %s: connection is %s", event, self._state.value)
            return False
        self._enqueue(make_frame(event, payload))
        return True

    async def wait_for(self, *states: ConnectionState, timeout: float | None = None) -> ConnectionState:
        async def _wait() -> ConnectionState:
            while self._state not in states:
                event = self._state_changed
                await event.wait()
            return self._state

        return await asyncio.wait_for(_wait(), timeout=timeout)

    def _fresh_delays(self) -> Iterator[float]:
        return backoff_delays(self.config.reconnect_base_delay_s, self.config.reconnect_max_delay_s)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        logger.info("connection %s -> %s", previous.value, state.value)
        changed = self._state_changed
        self._state_changed = asyncio.Event()
        changed.set()
        self._notify_status()

    def _enqueue(self, frame: Dict[str, Any]) -> None:
        if self._outbound is not None:
            self._outbound.put_nowait(frame)

    async def _open_transport(self) -> WebSocketTransport:
        if self._transport_factory is not None:
            return await self._transport_factory()
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
            self._owns_http_session = True
        return await WebSocketTransport.connect(self._http_session, self.config.ws_url)

    async def _supervise(self) -> None:
        try:
            while True:
                reason = await self._run_once()
                if self._state is ConnectionState.DISCONNECTED:
                    return
                self._last_error = TransportDropped(reason)
                self._set_state(ConnectionState.DEGRADED)
                if self._attempts >= self.config.max_reconnect_attempts:
                    self._gave_up = True
                    logger.warning("giving up after %d reconnect attempts", self._attempts)
                    self._notify_status()
                    return
                self._attempts += 1
                delay = next(self._delays)
                logger.info("reconnect attempt %d in %.2fs (%s)", self._attempts, delay, reason)
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

    async def _run_once(self) -> str:
        """Run one physical connection until it drops; returns the drop reason."""

        self._set_state(ConnectionState.CONNECTING)
        try:
            transport = await asyncio.wait_for(self._open_transport(), timeout=self.config.connect_timeout_s)
        except asyncio.TimeoutError:
            return "connect timeout"
        except TRANSPORT_ERRORS as exc:
            return f"connect failed: {exc}"

        self._transport = transport
        self._outbound = asyncio.Queue()
        loop = asyncio.get_running_loop()
        self._last_activity = loop.time()
        writer_task = asyncio.create_task(self._writer(transport, self._outbound))
        heartbeat_task = asyncio.create_task(self._heartbeat(transport))
        self._set_state(ConnectionState.AUTHENTICATING)
        self._outbound.put_nowait(make_frame(EVENT_AUTHENTICATE, {"credential": self._credential}))
        reason = "remote closed"
        try:
            while True:
                try:
                    frame = await transport.receive()
                except TRANSPORT_ERRORS as exc:
                    reason = f"receive failed: {exc}"
                    break
                if frame is None:
                    if heartbeat_task.done() and not heartbeat_task.cancelled():
                        reason = "heartbeat timeout"
                    elif writer_task.done() and not writer_task.cancelled():
                        reason = "send failed"
                    break
                self._last_activity = loop.time()
                self._handle_frame(frame)
                if self._state is ConnectionState.DISCONNECTED:
                    reason = "authentication rejected"
                    break
        finally:
            writer_task.cancel()
            heartbeat_task.cancel()
            await asyncio.gather(writer_task, heartbeat_task, return_exceptions=True)
            self._outbound = None
            self._transport = None
            try:
                await transport.close()
            except TRANSPORT_ERRORS:
                pass
        return reason

    async def _writer(self, transport: WebSocketTransport, outbound: asyncio.Queue) -> None:
        while True:
            frame = await outbound.get()
            if frame is None:
                return
            try:
                await transport.send_json(frame)
            except TRANSPORT_ERRORS as exc:
                logger.warning("send of %s failed: %s", frame.get("t"), exc)
                try:
                    await transport.close()
                except TRANSPORT_ERRORS:
                    pass
                return

    async def _heartbeat(self, transport: WebSocketTransport) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.heartbeat_interval_s
        timeout = self.config.heartbeat_timeout_s
        while True:
            await asyncio.sleep(min(interval, timeout))
            if loop.time() - self._last_activity > timeout:
                logger.warning("no frames for %.1fs, dropping connection", timeout)
                await transport.close()
                return
            if self._outbound is not None:
                self._outbound.put_nowait(make_frame(EVENT_PING))

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        event = frame.get("t")
        body = frame.get("body")
        if not isinstance(body, dict):
            body = {}
        if event == EVENT_PONG:
            return
        if event == EVENT_PING:
            self._enqueue(make_frame(EVENT_PONG, request_id=frame.get("id")))
            return
        if event == EVENT_AUTHENTICATED:
            self._on_authenticated()
        elif event == EVENT_AUTHENTICATION_ERROR:
            self._last_error = AuthenticationFailure(str(body.get("message") or "authentication rejected"))
            self._set_state(ConnectionState.DISCONNECTED)
        elif event == EVENT_ERROR:
            logger.warning("gateway error %s: %s", body.get("code"), body.get("message"))
        self._dispatch(str(event), body)

    def _on_authenticated(self) -> None:
        self._attempts = 0
        self._delays = self._fresh_delays()
        self._gave_up = False
        self._last_error = None
        for conversation_id in self._subscriptions:
            self._enqueue(make_frame(EVENT_JOIN_CHAT, {"conversation_id": conversation_id}))
        self._set_state(ConnectionState.READY)
        for handler in list(self._ready_handlers):
            try:
                handler()
            except Exception:
                logger.exception("ready handler failed")

    def _dispatch(self, event: str, body: Dict[str, Any]) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(body)
            except Exception:
                logger.exception("handler for %s failed", event)

    def _notify_status(self) -> None:
        status = self.get_status()
        for handler in list(self._status_handlers):
            try:
                handler(status)
            except Exception:
                logger.exception("status handler failed")

    async def _shutdown(self) -> None:
        supervisor = self._supervisor
        self._supervisor = None
        # Mark terminal first so the supervisor does not schedule a retry.
        self._set_state(ConnectionState.DISCONNECTED)
        if supervisor is not None and not supervisor.done():
            supervisor.cancel()
            await asyncio.gather(supervisor, return_exceptions=True)
