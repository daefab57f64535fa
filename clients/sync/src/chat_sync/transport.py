"""JSON frame transport over an aiohttp websocket."""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from aiohttp import WSMsgType

from .constants import PROTOCOL_VERSION

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (aiohttp.ClientError, ConnectionError, OSError)


def make_frame(event: str, body: Dict[str, Any] | None = None, *, request_id: str | None = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"v": PROTOCOL_VERSION, "t": event, "body": body or {}}
    if request_id is not None:
        frame["id"] = request_id
    return frame


class WebSocketTransport:
    """One physical websocket connection carrying versioned JSON frames."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws

    @classmethod
    async def connect(cls, session: aiohttp.ClientSession, url: str, *, heartbeat: float | None = None) -> "WebSocketTransport":
        ws = await session.ws_connect(url, heartbeat=heartbeat)
        return cls(ws)

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send_json(self, frame: Dict[str, Any]) -> None:
        await self._ws.send_json(frame)

    async def receive(self) -> Optional[Dict[str, Any]]:
        """Return the next application frame, or ``None`` once the socket is gone."""

        while True:
            msg = await self._ws.receive()
            if msg.type == WSMsgType.TEXT:
                try:
                    payload = json.loads(msg.data)
                except ValueError:
                    logger.warning("dropping malformed frame")
                    continue
                if not isinstance(payload, dict):
                    continue
                if payload.get("v") != PROTOCOL_VERSION:
                    logger.warning("dropping frame with unsupported version %r", payload.get("v"))
                    continue
                return payload
            if msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR}:
                return None
            # binary and control frames carry nothing for us

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()


TransportFactory = Callable[[], Awaitable[WebSocketTransport]]
