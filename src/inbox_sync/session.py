"""Per-login wiring of the inbox sync components.

One ``InboxSession`` exists per authenticated user. It owns the REST client,
the tag cache, the realtime channel and the Facebook connection manager, and
hands out conversation reconcilers bound to them.

Usage:
    session = InboxSession(token, on_logout=show_login)
    await session.start()
    inbox = session.new_reconciler()
    await inbox.load_conversations(session.pages_filter.page_ids or None)
    ...
    await session.stop()
"""

import inspect
from typing import Any, Awaitable, Callable, List, Optional, Union

import httpx

from inbox_sync.api_client import InboxApiClient
from inbox_sync.cache.tag_cache import TagCache
from inbox_sync.conversations.reconciler import ConversationReconciler
from inbox_sync.facebook.connection import FacebookConnectionManager
from inbox_sync.models import UserProfile
from inbox_sync.pages.merged_filter import MergedPagesFilterService
from inbox_sync.realtime.channel import RealtimeChannel
from inbox_sync.tags.synchronizer import TagSynchronizer
from inbox_sync.utils.exceptions import InboxAPIError
from inbox_sync.utils.logger import logger
from inbox_sync.utils.redis_conn import get_redis_client


LogoutCallback = Callable[[], Union[None, Awaitable[None]]]


class InboxSession:
    def __init__(
        self,
        token: str,
        user: Optional[UserProfile] = None,
        store: Any = None,
        channel: Optional[RealtimeChannel] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_logout: Optional[LogoutCallback] = None,
        base_url: Optional[str] = None,
    ):
        self.token = token
        self.user = user
        self.on_logout = on_logout
        self.logged_out = False

        store = store if store is not None else get_redis_client()
        self.api = InboxApiClient(
            token, base_url=base_url, on_unauthorized=self._handle_unauthorized, transport=transport
        )
        self.tag_cache = TagCache(store=store, namespace=user.user_id if user else "")
        self.tags = TagSynchronizer(self.api, self.tag_cache)
        self.channel = channel if channel is not None else RealtimeChannel()
        self.connection = FacebookConnectionManager(self.api, user, store=store)
        self.pages_filter = MergedPagesFilterService(
            self.api, user.merged_pages_filter if user else None
        )
        self._reconcilers: List[ConversationReconciler] = []

    async def start(self) -> None:
        """Load the profile if needed, read the Facebook status and open the channel."""
        if self.user is None:
            try:
                self.user = await self.api.get_profile()
            except InboxAPIError as e:
                logger.error(f"Failed to load user profile: {e}")
                raise
            self.tag_cache.namespace = self.user.user_id
            self.connection.user = self.user
            self.pages_filter.page_ids = list(self.user.merged_pages_filter)

        await self.connection.refresh_status()
        await self.channel.connect(self.token)

    def new_reconciler(self) -> ConversationReconciler:
        reconciler = ConversationReconciler(self.api, self.tags, self.channel)
        reconciler.attach()
        self._reconcilers.append(reconciler)
        return reconciler

    async def stop(self) -> None:
        for reconciler in self._reconcilers:
            reconciler.close()
        self._reconcilers.clear()
        await self.channel.disconnect()
        await self.api.aclose()

    async def _handle_unauthorized(self) -> None:
        if self.logged_out:
            return
        self.logged_out = True
        logger.warning("Session token rejected, logging out")
        await self.channel.disconnect()
        if self.on_logout is not None:
            result = self.on_logout()
            if inspect.isawaitable(result):
                await result
