"""Merged-pages filter: which Facebook pages a user's merged inbox shows.

An empty filter means every page.
"""

from typing import Iterable, List, Optional

from inbox_sync.api_client import InboxApiClient
from inbox_sync.models import FacebookPage
from inbox_sync.utils.exceptions import InboxAPIError
from inbox_sync.utils.logger import logger


def effective_pages(all_pages: List[FacebookPage], page_filter: Iterable[str]) -> List[FacebookPage]:
    """Pages the merged view shows, in ``all_pages`` order."""
    selected = set(page_filter)
    if not selected:
        return list(all_pages)
    return [page for page in all_pages if page.facebook_page_id in selected]


def search_pages(pages: List[FacebookPage], query: str) -> List[FacebookPage]:
    """Case-insensitive match on page name, id or category."""
    needle = (query or "").strip().lower()
    if not needle:
        return list(pages)
    return [
        page for page in pages
        if needle in (page.name or "").lower()
        or needle in page.facebook_page_id.lower()
        or needle in (page.category or "").lower()
    ]


class MergedPagesFilterService:
    """Loads and saves the current user's merged-pages filter."""

    def __init__(self, api: InboxApiClient, initial: Optional[List[str]] = None):
        self.api = api
        self.page_ids: List[str] = list(initial or [])

    async def load(self) -> List[str]:
        """Read the filter from the user profile.

        Raises:
            InboxAPIError: If the profile cannot be fetched
        """
        profile = await self.api.get_profile()
        self.page_ids = list(profile.merged_pages_filter)
        return self.page_ids

    async def save(self, page_ids: List[str]) -> List[str]:
        """Replace the stored filter with ``page_ids`` in one request.

        Raises:
            InboxAPIError: If the update fails; the local filter is unchanged
        """
        try:
            saved = await self.api.update_merged_pages_filter(list(page_ids))
        except InboxAPIError as e:
            logger.error(f"Failed to save merged pages filter: {e}")
            raise
        self.page_ids = saved
        logger.info(f"Merged pages filter saved ({len(saved)} pages)")
        return saved

    def apply(self, all_pages: List[FacebookPage]) -> List[FacebookPage]:
        return effective_pages(all_pages, self.page_ids)
