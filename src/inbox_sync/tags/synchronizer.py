"""Tag catalogue loading and optimistic tag toggling for conversations.

The page catalogue and a conversation's assigned tag ids are kept apart;
``tag_view`` joins them on demand.
"""

from typing import Callable, List, Optional

from inbox_sync.api_client import InboxApiClient
from inbox_sync.cache.tag_cache import TagCache
from inbox_sync.models import ConversationTagState, Tag, TagView
from inbox_sync.utils.exceptions import InboxAPIError
from inbox_sync.utils.logger import logger


TagStateListener = Callable[[ConversationTagState], None]


def tag_view(catalogue: List[Tag], state: Optional[ConversationTagState]) -> List[TagView]:
    """Join a page catalogue with a conversation's assigned tag ids."""
    assigned = state.tag_ids if state is not None else set()
    return [TagView(tag=tag, active=tag.tag_id in assigned) for tag in catalogue]


class TagSynchronizer:
    """Reads tag catalogues through the cache and pushes tag toggles to the API."""

    def __init__(self, api: InboxApiClient, cache: TagCache):
        self.api = api
        self.cache = cache

    async def load_tags_for_page(self, page_id: str) -> List[Tag]:
        """Return the page's tag catalogue, fetching and caching it on a miss.

        Raises:
            InboxAPIError: If the catalogue is not cached and the fetch fails
        """
        cached = self.cache.get(page_id)
        if cached is not None:
            logger.debug(f"Loaded {len(cached)} tags from cache for page {page_id}")
            return cached

        logger.debug(f"Fetching tags for page {page_id}")
        tags = await self.api.get_tags(page_id)
        self.cache.put(page_id, tags)
        logger.info(f"Fetched {len(tags)} tags for page {page_id}")
        return tags

    def apply_remote_tags(self, state: ConversationTagState, tag_ids: List[str]) -> None:
        """Replace the local assignment with the server's list."""
        state.tag_ids = set(tag_ids)

    async def toggle_tag(
        self,
        state: ConversationTagState,
        tag: Tag,
        on_change: Optional[TagStateListener] = None,
        current_order: Optional[List[str]] = None,
    ) -> bool:
        """Flip a tag on a conversation, updating local state before the API call.

        ``on_change`` runs right after the local flip, before any I/O. A failed
        API call is logged and the local flip is kept; the next
        ``conversation_updated`` event for the conversation corrects it.

        Returns:
            True if the API call succeeded
        """
        removing = state.has(tag.tag_id)
        if removing:
            state.tag_ids.discard(tag.tag_id)
        else:
            state.tag_ids.add(tag.tag_id)
        if on_change is not None:
            on_change(state)

        try:
            if removing:
                await self.api.remove_tag_from_conversation(state.conversation_id, tag.tag_id)
            else:
                await self.api.assign_tags_to_conversation(
                    state.conversation_id, state.ordered(current_order)
                )
        except InboxAPIError as e:
            action = "remove" if removing else "assign"
            logger.error(
                f"Failed to {action} tag {tag.tag_id} on conversation {state.conversation_id}: {e}"
            )
            return False
        return True

    # -------------------------------------------------------------------------
    # Catalogue management
    # -------------------------------------------------------------------------

    def _invalidate_pages(self, page_ids: List[str]) -> None:
        for page_id in page_ids:
            self.cache.invalidate(page_id)

    async def create_tag(
        self,
        tag_name: str,
        tag_color: str,
        facebook_page_ids: List[str],
        description: Optional[str] = None,
    ) -> Tag:
        tag = await self.api.create_tag(tag_name, tag_color, facebook_page_ids, description)
        self._invalidate_pages(list(set(facebook_page_ids) | set(tag.facebook_page_ids)))
        return tag

    async def update_tag(self, tag: Tag, **changes) -> Tag:
        """Update a tag; both its old and new pages lose their cached catalogue."""
        updated = await self.api.update_tag(tag.tag_id, **changes)
        self._invalidate_pages(list(set(tag.facebook_page_ids) | set(updated.facebook_page_ids)))
        return updated

    async def delete_tag(self, tag: Tag) -> None:
        await self.api.delete_tag(tag.tag_id)
        self._invalidate_pages(tag.facebook_page_ids)
