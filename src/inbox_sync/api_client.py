"""Async REST client for the inbox API.

All calls use httpx.AsyncClient and send the session's bearer token.
Non-2xx responses raise InboxAPIError; 401 additionally runs the
session's unauthorized hook before raising UnauthorizedError.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from inbox_sync.config import config
from inbox_sync.models import (
    Conversation,
    FacebookConnectionStatus,
    FacebookPage,
    Message,
    OAuthUrl,
    PageSyncResult,
    Tag,
    UserProfile,
)
from inbox_sync.utils.exceptions import InboxAPIError, MissingConfigError, UnauthorizedError

logger = logging.getLogger(__name__)

UnauthorizedHook = Callable[[], Union[None, Awaitable[None]]]


def _unwrap(payload: Any, key: str = "data") -> Any:
    """Return ``payload[key]`` for enveloped responses, else the payload itself."""
    if isinstance(payload, dict) and key in payload:
        return payload[key]
    return payload


class InboxApiClient:
    """Bearer-authenticated client for the inbox REST endpoints.

    One instance is created per session and shared by every component.
    The underlying httpx client is created lazily and recreated if closed.
    """

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        on_unauthorized: Optional[UnauthorizedHook] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.api_url).rstrip("/")
        if not self.base_url:
            raise MissingConfigError("API_URL")
        self.token = token
        self.timeout = float(timeout if timeout is not None else config.http_timeout)
        self.on_unauthorized = on_unauthorized
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.token}"},
                transport=self._transport,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                    keepalive_expiry=30,
                ),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            resp = await self._get_client().request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise InboxAPIError(f"Connection error: {e}") from e

        if resp.status_code == 401:
            logger.warning(f"{method} {path} returned 401, logging session out")
            if self.on_unauthorized is not None:
                result = self.on_unauthorized()
                if result is not None:
                    await result
            raise UnauthorizedError(resp.text)

        if resp.status_code >= 400:
            message = f"HTTP {resp.status_code}"
            try:
                data = resp.json()
                if isinstance(data, dict):
                    message = data.get("message") or data.get("error") or message
            except ValueError:
                pass
            if isinstance(message, list):
                message = "; ".join(str(m) for m in message)
            raise InboxAPIError(str(message), resp.status_code, resp.text)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    # =========================================================================
    # TAGS
    # =========================================================================

    async def get_tags(self, facebook_page_id: str) -> List[Tag]:
        data = await self._request("GET", "/tags", params={"facebook_page_id": facebook_page_id})
        return [Tag.model_validate(item) for item in _unwrap(data) or []]

    async def create_tag(
        self,
        tag_name: str,
        tag_color: str,
        facebook_page_ids: List[str],
        description: Optional[str] = None,
    ) -> Tag:
        payload: Dict[str, Any] = {
            "tag_name": tag_name,
            "tag_color": tag_color,
            "facebook_page_ids": facebook_page_ids,
        }
        if description:
            payload["description"] = description
        data = await self._request("POST", "/tags", json=payload)
        return Tag.model_validate(_unwrap(data))

    async def update_tag(self, tag_id: str, **changes: Any) -> Tag:
        data = await self._request("PUT", f"/tags/{tag_id}", json=changes)
        return Tag.model_validate(_unwrap(data))

    async def delete_tag(self, tag_id: str) -> None:
        await self._request("DELETE", f"/tags/{tag_id}")

    async def assign_tags_to_conversation(self, conversation_id: str, tag_ids: List[str]) -> None:
        """Assign tags to a conversation; ``tag_ids`` is the full desired list."""
        await self._request(
            "POST",
            f"/tags/conversations/{conversation_id}/tags",
            json={"tag_ids": tag_ids},
        )

    async def remove_tag_from_conversation(self, conversation_id: str, tag_id: str) -> None:
        await self._request("DELETE", f"/tags/conversations/{conversation_id}/tags/{tag_id}")

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================

    async def get_conversations(
        self,
        facebook_page_ids: Optional[List[str]] = None,
        limit: int = 50,
    ) -> List[Conversation]:
        params: Dict[str, Any] = {"limit": limit}
        if facebook_page_ids:
            params["facebook_page_ids"] = ",".join(facebook_page_ids)
        data = await self._request("GET", "/facebook-messaging/conversations", params=params)
        return [Conversation.model_validate(item) for item in _unwrap(data) or []]

    async def get_conversation(self, conversation_id: str) -> Conversation:
        data = await self._request("GET", f"/facebook-messaging/conversations/{conversation_id}")
        return Conversation.model_validate(_unwrap(data))

    async def get_messages(self, conversation_id: str, limit: int = 50) -> List[Message]:
        data = await self._request(
            "GET",
            f"/facebook-messaging/conversations/{conversation_id}/messages",
            params={"limit": limit},
        )
        return [Message.model_validate(item) for item in _unwrap(data) or []]

    async def mark_conversation_read(self, conversation_id: str) -> None:
        await self._request("POST", f"/facebook-messaging/conversations/{conversation_id}/mark-read")

    # =========================================================================
    # FACEBOOK CONNECTION
    # =========================================================================

    async def get_oauth_url(self) -> OAuthUrl:
        data = await self._request("GET", "/facebook/oauth-url")
        return OAuthUrl.model_validate(_unwrap(data))

    async def connect_facebook(self, code: str, state: Optional[str] = None) -> FacebookConnectionStatus:
        payload: Dict[str, Any] = {"code": code}
        if state:
            payload["state"] = state
        data = await self._request("POST", "/facebook/connect", json=payload)
        return FacebookConnectionStatus.model_validate(_unwrap(data))

    async def get_facebook_status(self) -> FacebookConnectionStatus:
        data = await self._request("GET", "/facebook/status")
        return FacebookConnectionStatus.model_validate(_unwrap(data))

    async def get_facebook_pages(self) -> List[FacebookPage]:
        data = await self._request("GET", "/facebook/pages")
        return [FacebookPage.model_validate(item) for item in _unwrap(data) or []]

    async def sync_facebook_pages(self) -> PageSyncResult:
        data = await self._request("POST", "/facebook/sync")
        return PageSyncResult.from_response(_unwrap(data) or {})

    async def disconnect_facebook(self) -> None:
        await self._request("DELETE", "/facebook/disconnect")

    # =========================================================================
    # USERS
    # =========================================================================

    async def get_profile(self) -> UserProfile:
        data = await self._request("GET", "/auth/profile")
        return UserProfile.model_validate(_unwrap(data, "user"))

    async def update_merged_pages_filter(self, page_ids: List[str]) -> List[str]:
        """Replace the stored merged-pages filter; returns the list the server kept."""
        data = await self._request("PUT", "/users/merged-pages-filter", json={"page_ids": page_ids})
        if isinstance(data, dict) and "merged_pages_filter" in data:
            return list(data["merged_pages_filter"] or [])
        return list(page_ids)
