"""Chat server collaborator for the reflection scheduler.

Rooms and messages live in the chat backend. Reflection only needs to find
the Lobby, read its recent messages and post as Eko.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from brain.vector_store import UpstreamError
from config import CHAT_API_TOKEN, CHAT_API_URL, HTTP_TIMEOUT

logger = logging.getLogger("eko.chat")


@dataclass
class Room:
    id: str
    name: str
    is_lobby: bool = False


@dataclass
class ChatMessage:
    id: str
    room_id: str
    author_username: str
    author_name: str
    content: str
    type: str = "text"
    created_at: Optional[str] = None
    is_bot: bool = False


class ChatBackend(ABC):
    @abstractmethod
    def get_lobby(self) -> Optional[Room]: ...

    @abstractmethod
    def get_room(self, room_id: str) -> Optional[Room]: ...

    @abstractmethod
    def recent_messages(self, room_id: str, limit: int) -> list[ChatMessage]:
        """Last `limit` messages of the room, oldest first."""

    @abstractmethod
    def post_message(self, room_id: str, content: str) -> None: ...


def _room(data: dict) -> Room:
    return Room(id=str(data.get("id") or data.get("_id")), name=data.get("name", "Unknown"), is_lobby=bool(data.get("isLobby")))


def _message(data: dict, room_id: str) -> ChatMessage:
    sender = data.get("sender") or {}
    return ChatMessage(
        id=str(data.get("id") or data.get("_id") or ""),
        room_id=room_id,
        author_username=sender.get("username", ""),
        author_name=sender.get("displayName") or sender.get("username") or "Unknown",
        content=data.get("content") or "",
        type=data.get("type", "text"),
        created_at=data.get("createdAt"),
        is_bot=bool(sender.get("isBot")),
    )


class HttpChatBackend(ChatBackend):
    """Talks to the chat server's bot API with a bearer token."""

    def __init__(self, base_url: str = CHAT_API_URL, token: str = CHAT_API_TOKEN, client: Optional[httpx.Client] = None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.Client(timeout=HTTP_TIMEOUT)
        self._base_url = base_url.rstrip("/")
        self._headers = headers

    def _request(self, method: str, path: str, **kwargs) -> Optional[httpx.Response]:
        try:
            response = self._client.request(method, f"{self._base_url}{path}", headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Chat backend {method} {path} failed: {e}") from e
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise UpstreamError(
                f"Chat backend {method} {path} failed: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def get_lobby(self) -> Optional[Room]:
        response = self._request("GET", "/rooms/lobby")
        return _room(response.json()) if response is not None else None

    def get_room(self, room_id: str) -> Optional[Room]:
        response = self._request("GET", f"/rooms/{room_id}")
        return _room(response.json()) if response is not None else None

    def recent_messages(self, room_id: str, limit: int) -> list[ChatMessage]:
        response = self._request("GET", f"/rooms/{room_id}/messages", params={"limit": limit})
        if response is None:
            return []
        body = response.json()
        items = body.get("messages", []) if isinstance(body, dict) else body
        messages = [_message(m, room_id) for m in items]
        messages.sort(key=lambda m: m.created_at or "")
        return messages[-limit:]

    def post_message(self, room_id: str, content: str) -> None:
        response = self._request("POST", f"/rooms/{room_id}/messages", json={"type": "text", "content": content})
        if response is None:
            raise UpstreamError(f"Room {room_id} not found", status_code=404)
        logger.info("Posted message in room %s: %.100s", room_id, content)
