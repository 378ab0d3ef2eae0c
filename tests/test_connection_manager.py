"""Tests for the Facebook connection state machine."""

import json

import httpx
import pytest

from inbox_sync.facebook.connection import (
    ERROR_DISPLAY_SECONDS,
    FAILURE_REDIRECT_DELAY,
    OAUTH_STATE_KEY_PREFIX,
    SUCCESS_REDIRECT_DELAY,
    Connected,
    ConnectionFailed,
    Connecting,
    Disconnected,
    FacebookConnectionManager,
)
from inbox_sync.models import PageSyncResult, SyncStatus, UserProfile
from inbox_sync.utils.exceptions import InvalidTransitionError, PermissionDeniedError


ADMIN = UserProfile(user_id="u-admin", roles=["admin"])
AGENT = UserProfile(user_id="u-agent", roles=["agent"])


@pytest.fixture
def manager(api, store, clock):
    return FacebookConnectionManager(api, ADMIN, store=store, clock=clock)


def serve_oauth(router, state="st-1"):
    router.add("GET", "/facebook/oauth-url", {"data": {"oauth_url": "https://facebook.test/dialog", "state": state}})


async def connected(manager, router):
    router.add("GET", "/facebook/status", {"data": {"is_connected": True, "pages_count": 2}})
    await manager.refresh_status()
    assert isinstance(manager.state, Connected)
    return manager


class TestRefreshStatus:
    async def test_connected(self, manager, router):
        await connected(manager, router)
        assert manager.status.pages_count == 2

    async def test_not_connected(self, manager, router):
        router.add("GET", "/facebook/status", {"data": {"is_connected": False}})

        await manager.refresh_status()

        assert isinstance(manager.state, Disconnected)

    async def test_unreadable_status_is_error_state(self, manager, router):
        router.add("GET", "/facebook/status", httpx.Response(500, json={"message": "status unavailable"}))

        await manager.refresh_status()

        assert isinstance(manager.state, ConnectionFailed)
        assert manager.state.name == "error"
        assert manager.can_connect


class TestOAuthFlow:
    async def test_start_connect_stores_state(self, manager, router, store):
        serve_oauth(router)

        url = await manager.start_connect()

        assert url == "https://facebook.test/dialog"
        assert isinstance(manager.state, Connecting)
        assert json.loads(store.data[f"{OAUTH_STATE_KEY_PREFIX}u-admin"]) == {"state": "st-1"}

    async def test_oauth_url_failure_returns_to_disconnected(self, manager, router):
        router.add("GET", "/facebook/oauth-url", httpx.Response(500, json={"message": "no app id"}))

        assert await manager.start_connect() is None
        assert isinstance(manager.state, Disconnected)
        assert manager.error_message == "no app id"

    async def test_successful_callback(self, manager, router, store):
        serve_oauth(router)
        router.add("POST", "/facebook/connect", {"data": {"is_connected": True, "facebook_user_name": "Dana"}})
        router.add("GET", "/facebook/pages", {"data": [{"facebook_page_id": "p1", "name": "Shop"}]})
        await manager.start_connect()

        result = await manager.handle_oauth_callback({"code": "abc", "state": "st-1"})

        assert result.success is True
        assert result.redirect_to == "/dashboard"
        assert result.delay_seconds == SUCCESS_REDIRECT_DELAY
        assert isinstance(manager.state, Connected)
        assert [p.facebook_page_id for p in manager.pages] == ["p1"]
        assert f"{OAUTH_STATE_KEY_PREFIX}u-admin" not in store.data

    async def test_oauth_error_ends_disconnected_with_message(self, manager, router):
        serve_oauth(router)
        await manager.start_connect()

        result = await manager.handle_oauth_callback(
            {"error": "access_denied", "error_description": "User denied access"}
        )

        assert isinstance(manager.state, Disconnected)
        assert not isinstance(manager.state, Connecting)
        assert manager.error_message
        assert "User denied access" in result.message
        assert result.success is False
        assert result.delay_seconds == FAILURE_REDIRECT_DELAY
        assert result.redirect_to == "/dashboard"

    async def test_missing_code(self, manager, router):
        serve_oauth(router)
        await manager.start_connect()

        result = await manager.handle_oauth_callback({"state": "st-1"})

        assert result.success is False
        assert "No authorization code" in result.message
        assert isinstance(manager.state, Disconnected)

    async def test_state_mismatch_skips_exchange(self, manager, router):
        serve_oauth(router)
        await manager.start_connect()

        result = await manager.handle_oauth_callback({"code": "abc", "state": "forged"})

        assert result.success is False
        assert result.message == "Invalid OAuth state"
        assert router.calls("POST", "/facebook/connect") == []

    async def test_exchange_failure(self, manager, router):
        serve_oauth(router)
        router.add("POST", "/facebook/connect", httpx.Response(400, json={"message": "code expired"}))
        await manager.start_connect()

        result = await manager.handle_oauth_callback({"code": "abc", "state": "st-1"})

        assert result.message == "code expired"
        assert isinstance(manager.state, Disconnected)

    async def test_callback_on_fresh_manager(self, api, router, store, clock):
        """The redirect lands in a new page load that shares the stored state."""
        serve_oauth(router)
        router.add("POST", "/facebook/connect", {"data": {"is_connected": True}})
        router.add("GET", "/facebook/pages", {"data": []})
        await FacebookConnectionManager(api, ADMIN, store=store, clock=clock).start_connect()

        fresh = FacebookConnectionManager(api, ADMIN, store=store, clock=clock)
        result = await fresh.handle_oauth_callback({"code": "abc", "state": "st-1"})

        assert result.success is True
        assert isinstance(fresh.state, Connected)

    async def test_callback_without_state_param_is_accepted(self, manager, router):
        serve_oauth(router)
        router.add("POST", "/facebook/connect", {"data": {"is_connected": True}})
        router.add("GET", "/facebook/pages", {"data": []})
        await manager.start_connect()

        result = await manager.handle_oauth_callback({"code": "abc"})

        assert result.success is True
        assert isinstance(manager.state, Connected)

    async def test_callback_without_stored_state_is_accepted(self, manager, router):
        router.add("POST", "/facebook/connect", {"data": {"is_connected": True}})
        router.add("GET", "/facebook/pages", {"data": []})

        result = await manager.handle_oauth_callback({"code": "abc", "state": "st-1"})

        assert result.success is True
        assert len(router.calls("POST", "/facebook/connect")) == 1

    async def test_error_callback_while_connected_keeps_connection(self, manager, router):
        await connected(manager, router)

        result = await manager.handle_oauth_callback({"error": "access_denied"})

        assert result.success is False
        assert result.delay_seconds == FAILURE_REDIRECT_DELAY
        assert isinstance(manager.state, Connected)
        assert manager.error_message

    async def test_error_message_expires(self, manager, router, clock):
        serve_oauth(router)
        await manager.start_connect()
        await manager.handle_oauth_callback({"error": "access_denied"})
        assert manager.error_message

        clock.advance(ERROR_DISPLAY_SECONDS)

        assert manager.error_message is None


class TestSync:
    @pytest.mark.parametrize("synced,total,expected", [
        (3, 5, SyncStatus.PARTIAL),
        (0, 5, SyncStatus.ERROR),
        (5, 5, SyncStatus.SUCCESS),
    ])
    async def test_classification_from_counts(self, manager, router, synced, total, expected):
        await connected(manager, router)
        router.add("POST", "/facebook/sync", {"data": {
            "pages_synced": synced, "pages_total": total, "sync_status": "success",
        }})
        router.add("GET", "/facebook/pages", {"data": []})

        result = await manager.sync_pages()

        assert result.sync_status == expected
        assert isinstance(manager.state, Connected)

    async def test_request_failure_is_error_result(self, manager, router):
        await connected(manager, router)
        router.add("POST", "/facebook/sync", httpx.Response(500, json={"message": "graph api down"}))

        result = await manager.sync_pages()

        assert result.sync_status == SyncStatus.ERROR
        assert result.error_message == "graph api down"
        assert isinstance(manager.state, Connected)

    async def test_sync_requires_connection(self, manager):
        with pytest.raises(InvalidTransitionError):
            await manager.sync_pages()


class TestDisconnect:
    async def test_declined_is_noop(self, manager, router):
        await connected(manager, router)

        assert await manager.disconnect(lambda: False) is False

        assert isinstance(manager.state, Connected)
        assert router.calls("DELETE", "/facebook/disconnect") == []

    async def test_confirmed(self, manager, router):
        await connected(manager, router)
        router.add("DELETE", "/facebook/disconnect", {})
        states = []
        manager.add_listener(lambda state: states.append(state.name))

        async def confirm():
            return True

        assert await manager.disconnect(confirm) is True

        assert states == ["disconnecting", "disconnected"]
        assert manager.pages == []

    async def test_failure_returns_to_connected(self, manager, router):
        await connected(manager, router)
        router.add("DELETE", "/facebook/disconnect", httpx.Response(500, json={"message": "nope"}))

        assert await manager.disconnect(lambda: True) is False

        assert isinstance(manager.state, Connected)
        assert manager.error_message == "nope"

    async def test_state_change_during_confirm_is_invalid(self, manager, router):
        await connected(manager, router)
        router.add("DELETE", "/facebook/disconnect", {})

        async def confirm():
            manager.state = Disconnected()
            return True

        with pytest.raises(InvalidTransitionError):
            await manager.disconnect(confirm)
        assert router.calls("DELETE", "/facebook/disconnect") == []

    async def test_disconnect_when_disconnected_is_invalid(self, manager):
        assert not manager.can_disconnect
        with pytest.raises(InvalidTransitionError):
            await manager.disconnect(lambda: True)


class TestPermissions:
    async def test_non_admin_cannot_connect(self, api, store):
        manager = FacebookConnectionManager(api, AGENT, store=store)
        with pytest.raises(PermissionDeniedError):
            await manager.start_connect()

    async def test_non_admin_cannot_sync(self, api, router, store):
        manager = FacebookConnectionManager(api, AGENT, store=store)
        await connected(manager, router)
        with pytest.raises(PermissionDeniedError):
            await manager.sync_pages()


class TestPageSyncResult:
    def test_classify(self):
        assert PageSyncResult.classify(3, 5) == SyncStatus.PARTIAL
        assert PageSyncResult.classify(0, 5) == SyncStatus.ERROR
        assert PageSyncResult.classify(5, 5) == SyncStatus.SUCCESS

    def test_status_ignores_missing_error_message(self):
        result = PageSyncResult.from_response({"pages_synced": 1, "pages_total": 4, "failed_pages": ["b", "c", "d"]})
        assert result.sync_status == SyncStatus.PARTIAL
        assert result.summary == "Partially synced: 1/4 pages. Failed: b, c, d"
