"""Request/response client for the durable conversation store."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from .conversations import Conversation, ConversationFilters, GroupSettings
from .errors import InvalidConversationReference, StoreError
from .models import Message

logger = logging.getLogger(__name__)


def _filter_params(filters: ConversationFilters | None) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if filters is None:
        return params
    if filters.kind is not None:
        params["kind"] = filters.kind
    for name in ("archived", "muted", "pinned"):
        value = getattr(filters, name)
        if value is not None:
            params[name] = "true" if value else "false"
    return params


class StoreClient:
    def __init__(self, base_url: str, credential: str, *, session: aiohttp.ClientSession | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._credential = credential
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def list_conversations(self, filters: ConversationFilters | None = None) -> List[Conversation]:
        data = await self._request("GET", "/api/chats", params=_filter_params(filters))
        return [Conversation.from_dict(item) for item in data.get("chats", [])]

    async def list_messages(self, conversation_id: str, *, page: int = 1, limit: int = 50) -> List[Message]:
        """One page of history, oldest first. Page 1 is the most recent."""

        data = await self._request(
            "GET",
            f"/api/chats/{conversation_id}/messages",
            params={"page": str(page), "limit": str(limit)},
            conversation_id=conversation_id,
        )
        return [Message.from_dict(item, conversation_id) for item in data.get("messages", [])]

    async def find_or_create_direct(self, peer_id: str) -> Conversation:
        data = await self._request("POST", "/api/chats", json={"participant_id": peer_id})
        return Conversation.from_dict(data["chat"])

    async def create_group(
        self,
        participants: Iterable[str],
        *,
        name: str = "",
        description: str = "",
        settings: GroupSettings | None = None,
    ) -> Conversation:
        payload: Dict[str, Any] = {
            "participants": list(participants),
            "name": name,
            "description": description,
        }
        if settings is not None:
            payload["settings"] = asdict(settings)
        data = await self._request("POST", "/api/groups", json=payload)
        return Conversation.from_dict(data["chat"])

    async def search_conversations(self, query: str, *, limit: int = 10) -> List[Conversation]:
        data = await self._request("GET", "/api/chats/search", params={"q": query, "limit": str(limit)})
        return [Conversation.from_dict(item) for item in data.get("chats", [])]

    async def leave_conversation(self, conversation_id: str) -> Conversation:
        """Leave a group, or close a direct chat for both participants."""

        data = await self._request("DELETE", f"/api/chats/{conversation_id}", conversation_id=conversation_id)
        return Conversation.from_dict(data["chat"])

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        conversation_id: str | None = None,
    ) -> Dict[str, Any]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        headers = {"Authorization": f"Bearer {self._credential}"}
        async with self._session.request(method, f"{self.base_url}{path}", params=params, json=json, headers=headers) as response:
            try:
                payload = await response.json(content_type=None)
            except ValueError:
                payload = None
            if response.status >= 400:
                body = payload if isinstance(payload, dict) else {}
                code = str(body.get("code") or "http_error")
                message = str(body.get("message") or response.reason or "")
                logger.warning("%s %s failed: %s %s", method, path, response.status, code)
                if response.status == 404 and conversation_id is not None:
                    raise InvalidConversationReference(conversation_id)
                raise StoreError(response.status, code, message)
            if not isinstance(payload, dict):
                raise StoreError(response.status, "invalid_response", "expected a JSON object")
            return payload
