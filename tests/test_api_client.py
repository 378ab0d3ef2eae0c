"""Tests for the REST client's request/response handling."""

import httpx
import pytest

from inbox_sync.api_client import InboxApiClient
from inbox_sync.models import SyncStatus
from inbox_sync.utils.exceptions import InboxAPIError, UnauthorizedError

from conftest import BASE_URL, Router


def make_client(router, **kwargs):
    return InboxApiClient("secret", base_url=BASE_URL, transport=httpx.MockTransport(router), **kwargs)


class TestRequests:
    async def test_bearer_token_sent(self, api, router):
        router.add("GET", "/facebook/status", {"data": {"is_connected": False}})

        await api.get_facebook_status()

        assert router.requests[0].headers["Authorization"] == "Bearer test-token"

    async def test_unwraps_data_envelope(self, api, router):
        router.add("GET", "/facebook/pages", {"data": [{"facebook_page_id": "p1", "name": "Shop"}]})

        pages = await api.get_facebook_pages()

        assert pages[0].name == "Shop"

    async def test_accepts_bare_payload(self, api, router):
        router.add("GET", "/facebook/pages", [{"facebook_page_id": "p1"}])

        assert [p.facebook_page_id for p in await api.get_facebook_pages()] == ["p1"]

    async def test_empty_body(self, api, router):
        router.add("POST", "/facebook-messaging/conversations/c1/mark-read", httpx.Response(204))

        assert await api.mark_conversation_read("c1") is None

    async def test_sync_reclassified_from_counts(self, api, router):
        router.add("POST", "/facebook/sync", {"data": {"pages_synced": 2, "pages_total": 3, "sync_status": "success"}})

        result = await api.sync_facebook_pages()

        assert result.sync_status == SyncStatus.PARTIAL


class TestErrors:
    async def test_server_message_used(self, api, router):
        router.add("GET", "/tags", httpx.Response(422, json={"message": ["tag_name must be a string"]}))

        with pytest.raises(InboxAPIError) as exc:
            await api.get_tags("p1")

        assert exc.value.status_code == 422
        assert exc.value.user_message == "tag_name must be a string"

    async def test_connection_error(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(refuse)
        with pytest.raises(InboxAPIError) as exc:
            await client.get_tags("p1")
        assert "Connection error" in exc.value.message
        await client.aclose()

    async def test_unauthorized_runs_hook(self):
        router = Router().add("GET", "/auth/profile", httpx.Response(401, json={"message": "jwt expired"}))
        calls = []

        async def hook():
            calls.append("logout")

        client = make_client(router, on_unauthorized=hook)
        with pytest.raises(UnauthorizedError) as exc:
            await client.get_profile()

        assert calls == ["logout"]
        assert exc.value.status_code == 401
        await client.aclose()

    async def test_sync_hook_supported(self):
        router = Router().add("GET", "/auth/profile", httpx.Response(401))
        calls = []
        client = make_client(router, on_unauthorized=lambda: calls.append(1))

        with pytest.raises(UnauthorizedError):
            await client.get_profile()

        assert calls == [1]
        await client.aclose()
