"""Per-user chat history for the CityScout assistant.

Toggle via CHAT_HISTORY_BACKEND env var:
  CHAT_HISTORY_BACKEND=sqlite      (default, shares DB_PATH with the record store)
  CHAT_HISTORY_BACKEND=acontext    (requires ACONTEXT_API_KEY)
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Protocol, runtime_checkable

from acontext import AcontextAsyncClient
from acontext.errors import APIError as AcontextAPIError
from agents.extensions.memory import SQLAlchemySession
from agents.models.chatcmpl_converter import Converter
from sqlalchemy.ext.asyncio import AsyncEngine

_log = logging.getLogger(__name__)


@runtime_checkable
class ChatHistory(Protocol):
    async def get_history(self) -> list:
        """Stored turns, usable as Runner input."""
        ...

    async def save_messages(self, new_items: list) -> None:
        """Append the items produced by the current turn."""
        ...

    async def clear(self) -> None: ...


class SQLiteChatHistory:
    def __init__(self, user_id: str, *, engine: AsyncEngine) -> None:
        self._sa = SQLAlchemySession(f"chat:{user_id}", engine=engine, create_tables=True)

    async def get_history(self) -> list:
        return list(await self._sa.get_items())

    async def save_messages(self, new_items: list) -> None:
        if new_items:
            await self._sa.add_items(new_items)

    async def clear(self) -> None:
        await self._sa.clear_session()


_ac_client: AcontextAsyncClient | None = None


def _get_ac_client() -> AcontextAsyncClient:
    global _ac_client
    if _ac_client is None:
        kwargs: dict = {"api_key": os.getenv("ACONTEXT_API_KEY")}
        base_url = os.getenv("ACONTEXT_BASE_URL")
        if base_url:
            kwargs["base_url"] = base_url
        _ac_client = AcontextAsyncClient(**kwargs)
    return _ac_client


class AcontextChatHistory:
    """History kept in an acontext session derived from the user id."""

    def __init__(self, user_id: str) -> None:
        self._user_id = user_id
        self._session_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"city-scout:{user_id}"))
        self._session_created = False

    async def get_history(self) -> list:
        client = _get_ac_client()
        try:
            response = await client.sessions.get_messages(self._session_id, format="openai")
        except AcontextAPIError as exc:
            if exc.status_code == 404:
                return []
            raise
        messages = list(response.items) if response.items else []
        # the Responses API rejects content=None on tool-call-only assistant turns
        for msg in messages:
            if isinstance(msg, dict) and msg.get("content") is None:
                msg["content"] = ""
        return messages

    async def _ensure_session(self) -> None:
        if self._session_created:
            return
        client = _get_ac_client()
        try:
            await client.sessions.create(use_uuid=self._session_id, user=self._user_id)
        except AcontextAPIError as exc:
            if exc.status_code != 409:
                _log.error("acontext session create failed (user=%s): %s", self._user_id, exc)
                raise
        self._session_created = True

    async def save_messages(self, new_items: list) -> None:
        if not new_items:
            return
        await self._ensure_session()
        client = _get_ac_client()
        for msg in Converter.items_to_messages(new_items):
            await client.sessions.store_message(session_id=self._session_id, blob=msg, format="openai")

    async def clear(self) -> None:
        client = _get_ac_client()
        try:
            await client.sessions.delete(self._session_id)
        except AcontextAPIError as exc:
            if exc.status_code != 404:
                raise
        self._session_created = False


_histories: dict[str, ChatHistory] = {}


def open_chat_history(user_id: str, *, engine: AsyncEngine | None = None) -> ChatHistory:
    """Return the cached history for `user_id` on the configured backend."""
    backend = os.getenv("CHAT_HISTORY_BACKEND", "sqlite").lower()
    if user_id in _histories:
        return _histories[user_id]

    if backend == "sqlite":
        if engine is None:
            raise ValueError("open_chat_history requires engine= when backend=sqlite")
        history: ChatHistory = SQLiteChatHistory(user_id, engine=engine)
    elif backend == "acontext":
        if not os.getenv("ACONTEXT_API_KEY"):
            raise ValueError("CHAT_HISTORY_BACKEND=acontext requires ACONTEXT_API_KEY to be set")
        history = AcontextChatHistory(user_id)
    else:
        raise ValueError(f"Unknown CHAT_HISTORY_BACKEND={backend!r}. Use 'sqlite' or 'acontext'.")

    _histories[user_id] = history
    return history
