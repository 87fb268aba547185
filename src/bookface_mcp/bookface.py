"""Thin wrappers over the Bookface messages and content endpoints.

Every method goes through ``BookfaceSession.authenticated_request`` and turns a
non-2xx response into ``UpstreamError``. Payloads are returned as decoded JSON.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

import httpx

from .errors import UpstreamError
from .session import BookfaceSession

PROMPT_KINDS = ("fast", "slow")


def _decode(response: httpx.Response, action: str) -> Any:
    if not response.is_success:
        raise UpstreamError(action, response.status_code, response.text)
    return response.json()


def _chat_message(content: str) -> dict[str, Any]:
    return {
        "content": content,
        "media_uploads": [],
        "client_message_id": str(uuid.uuid4()),
        "version_number": 2,
    }


def extract_messages(data: Any) -> list[Any]:
    """History comes back either as a bare list or wrapped in ``chat_messages``."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        messages = data.get("chat_messages")
        if isinstance(messages, list):
            return messages
    raise ValueError("Unexpected chat history payload")


class BookfaceClient:
    """Endpoint-level API for the Bookface messages app and content pages."""

    def __init__(self, session: BookfaceSession):
        self.session = session
        self.messages_base = session.settings.bookface.messages_base_url
        self.bookface_base = session.settings.bookface.bookface_base_url

    async def create_chat(self, message: Optional[str] = None) -> dict[str, Any]:
        chat: dict[str, Any] = {
            "user_ids": [self.session.settings.bookface.agent_user_id],
            "name": "",
            "visibility": "private",
        }
        if message:
            chat["message"] = _chat_message(message)
        response = await self.session.authenticated_request("POST", f"{self.messages_base}/messages", json={"chat": chat})
        return _decode(response, "Create thread")

    async def send_message(self, thread_id: int, message: str) -> None:
        payload = _chat_message(message)
        payload.update(
            {
                "chat_id": thread_id,
                "thread_id": None,
                "referrer": f"{self.messages_base}/messages/{thread_id}",
            }
        )
        response = await self.session.authenticated_request(
            "POST",
            f"{self.messages_base}/messages/{thread_id}/chat_messages",
            json={"chat_message": payload},
        )
        if not response.is_success:
            raise UpstreamError("Send", response.status_code, response.text)

    async def chat_history(self, thread_id: int) -> list[Any]:
        response = await self.session.authenticated_request(
            "GET", f"{self.messages_base}/messages/{thread_id}/chat_messages"
        )
        return extract_messages(_decode(response, "Fetch history"))

    async def thread(self, thread_id: int) -> Any:
        response = await self.session.authenticated_request("GET", f"{self.messages_base}/messages/{thread_id}.json")
        return _decode(response, "Fetch thread")

    async def new_messages(self, user_id: str) -> Any:
        response = await self.session.authenticated_request("GET", f"{self.messages_base}/user/{user_id}/new_messages")
        return _decode(response, "Poll")

    async def suggested_prompts(self, kind: str, count: int) -> Any:
        """Return one prompt category, or None when the endpoint fails."""
        response = await self.session.authenticated_request(
            "GET",
            f"{self.messages_base}/messages/agent_prompts_{kind}.json",
            params={"count": count},
        )
        if not response.is_success:
            return None
        return response.json()

    async def mark_read(self, thread_id: int, message_id: int) -> None:
        response = await self.session.authenticated_request(
            "POST",
            f"{self.messages_base}/messages/{thread_id}/set_last_read_message_id",
            json={"message_id": message_id},
        )
        if not response.is_success:
            raise UpstreamError("Mark read", response.status_code, response.text)

    async def current_user(self) -> Any:
        response = await self.session.authenticated_request("GET", f"{self.messages_base}/user/current_user.json")
        return _decode(response, "Fetch user")

    async def post(self, post_id: int) -> Any:
        response = await self.session.authenticated_request(
            "GET",
            f"{self.bookface_base}/posts/{post_id}.json",
            headers={"Referer": f"{self.bookface_base}/posts/{post_id}"},
        )
        return _decode(response, "Fetch post")

    async def knowledge(self, slug: str) -> Any:
        response = await self.session.authenticated_request(
            "GET",
            f"{self.bookface_base}/knowledge/{slug}.json",
            headers={"Referer": f"{self.bookface_base}/knowledge/{slug}"},
        )
        return _decode(response, "Fetch knowledge")

    async def deal(self, deal_id: int) -> Any:
        response = await self.session.authenticated_request(
            "GET",
            f"{self.bookface_base}/deals/{deal_id}.json",
            headers={"Referer": f"{self.bookface_base}/deals/{deal_id}"},
        )
        return _decode(response, "Fetch deal")

    async def deals_page(self) -> str:
        """Raw deals page; the secured search key is embedded somewhere in it."""
        path = self.session.settings.search.deals_page_path
        response = await self.session.authenticated_request(
            "GET",
            f"{self.bookface_base}{path}",
            headers={
                "Accept": "text/html,application/json;q=0.9,*/*;q=0.8",
                "Referer": f"{self.bookface_base}{path}",
            },
        )
        if not response.is_success:
            raise UpstreamError("Fetch deals page", response.status_code, response.text)
        return response.text
