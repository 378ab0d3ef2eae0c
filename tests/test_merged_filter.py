"""Tests for the merged-pages filter."""

import httpx
import pytest

from inbox_sync.models import FacebookPage
from inbox_sync.pages.merged_filter import MergedPagesFilterService, effective_pages, search_pages
from inbox_sync.utils.exceptions import InboxAPIError

from conftest import request_json


PAGES = [
    FacebookPage(facebook_page_id="p1", name="Coffee Shop", category="Restaurant"),
    FacebookPage(facebook_page_id="p2", name="Bike Repairs", category="Local Business"),
    FacebookPage(facebook_page_id="p3", name="Bookstore", category="Retail"),
]


class TestEffectivePages:
    def test_empty_filter_is_identity(self):
        assert effective_pages(PAGES, []) == PAGES

    @pytest.mark.parametrize("page_filter", [["p2"], ["p3", "p1"], ["p1", "p2", "p3"], ["p2", "gone"]])
    def test_subset_law(self, page_filter):
        result = effective_pages(PAGES, page_filter)

        assert all(page in PAGES for page in result)
        assert all(page.facebook_page_id in page_filter for page in result)
        assert [p.facebook_page_id for p in result] == [
            p.facebook_page_id for p in PAGES if p.facebook_page_id in page_filter
        ]

    def test_filter_of_unknown_pages_is_empty(self):
        assert effective_pages(PAGES, ["nope"]) == []


class TestSearchPages:
    def test_matches_name_case_insensitive(self):
        assert [p.facebook_page_id for p in search_pages(PAGES, "BOOK")] == ["p3"]

    def test_matches_id_and_category(self):
        assert [p.facebook_page_id for p in search_pages(PAGES, "p2")] == ["p2"]
        assert [p.facebook_page_id for p in search_pages(PAGES, "retail")] == ["p3"]

    def test_blank_query_returns_all(self):
        assert search_pages(PAGES, "  ") == PAGES


class TestMergedPagesFilterService:
    async def test_save_replaces_in_one_put(self, api, router):
        router.add("PUT", "/users/merged-pages-filter", {
            "message": "Merged pages filter updated", "merged_pages_filter": ["p3", "p1"],
        })
        service = MergedPagesFilterService(api, ["p2"])

        saved = await service.save(["p3", "p1"])

        calls = router.calls("PUT", "/users/merged-pages-filter")
        assert len(calls) == 1
        assert request_json(calls[0]) == {"page_ids": ["p3", "p1"]}
        assert saved == service.page_ids == ["p3", "p1"]
        assert [p.facebook_page_id for p in service.apply(PAGES)] == ["p1", "p3"]

    async def test_save_failure_keeps_previous(self, api, router):
        router.add("PUT", "/users/merged-pages-filter", httpx.Response(400, json={"message": "bad ids"}))
        service = MergedPagesFilterService(api, ["p2"])

        with pytest.raises(InboxAPIError):
            await service.save(["zz"])
        assert service.page_ids == ["p2"]

    async def test_load_from_profile(self, api, router):
        router.add("GET", "/auth/profile", {"user": {"user_id": "u1", "merged_pages_filter": ["p1"]}})
        service = MergedPagesFilterService(api)

        assert await service.load() == ["p1"]
