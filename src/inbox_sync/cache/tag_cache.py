"""Per-page tag catalogue cache with an absolute TTL.

Entries live in a key-value store (Redis by default) as a JSON envelope::

    {"data": [<tag>, ...], "timestamp": <epoch ms>, "generation": <int>}

Freshness is all-or-nothing per page: ``put`` overwrites, there is no merge.
Anything that cannot be read back as a valid envelope is a miss.
"""

import json
import time
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from inbox_sync.models import Tag
from inbox_sync.utils.exceptions import CacheError
from inbox_sync.utils.logger import logger
from inbox_sync.utils.redis_conn import get_redis_client, redis_delete, redis_get_raw, redis_set


CACHE_KEY_PREFIX = "conversation_tags_cache:"

# Entries older than this are misses
TAG_CACHE_TTL_SECONDS = 5 * 60


class TagCache:
    """Keyed store of tag catalogues, one entry per Facebook page.

    Usage:
        cache = TagCache()

        tags = cache.get(page_id)
        if tags is None:
            tags = await api.get_tags(page_id)
            cache.put(page_id, tags)
    """

    def __init__(
        self,
        store: Any = None,
        ttl_seconds: int = TAG_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        namespace: str = "",
    ):
        """Initialize the cache.

        Args:
            store: Object with redis-style ``get``/``set``/``delete``
                   (defaults to the shared Redis client)
            ttl_seconds: Entry lifetime
            clock: Returns the current time in epoch seconds
            namespace: Optional key prefix, e.g. the user id, to scope entries
        """
        self._store = store if store is not None else get_redis_client()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.namespace = namespace

    def _key(self, page_id: str) -> str:
        prefix = f"{self.namespace}:" if self.namespace else ""
        return f"{prefix}{CACHE_KEY_PREFIX}{page_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _read_envelope(self, page_id: str) -> Optional[dict]:
        try:
            raw = redis_get_raw(self._key(page_id), client=self._store)
        except CacheError as e:
            logger.warning(f"Tag cache read failed for page {page_id}: {e}")
            return None
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"Discarding unparsable tag cache entry for page {page_id}")
            return None
        if not isinstance(envelope, dict):
            return None
        if not isinstance(envelope.get("data"), list) or not isinstance(envelope.get("timestamp"), (int, float)):
            return None
        return envelope

    def get(self, page_id: str) -> Optional[List[Tag]]:
        """Return the cached tags for a page, or None on a miss.

        A stale entry is evicted as a side effect of the read.
        """
        envelope = self._read_envelope(page_id)
        if envelope is None:
            return None

        age_ms = self._now_ms() - envelope["timestamp"]
        if age_ms >= self.ttl_seconds * 1000:
            logger.debug(f"Tag cache entry for page {page_id} expired ({age_ms}ms old)")
            self.invalidate(page_id)
            return None

        try:
            return [Tag.model_validate(item) for item in envelope["data"]]
        except ValidationError:
            logger.debug(f"Discarding malformed tags in cache entry for page {page_id}")
            return None

    def generation(self, page_id: str) -> int:
        """Generation stamp of the stored entry (0 when there is none)."""
        envelope = self._read_envelope(page_id)
        if envelope is None:
            return 0
        generation = envelope.get("generation")
        return generation if isinstance(generation, int) else 0

    def put(self, page_id: str, tags: List[Tag]) -> None:
        """Overwrite the entry for a page with a freshly fetched catalogue."""
        envelope = {
            "data": [tag.model_dump(mode="json") for tag in tags],
            "timestamp": self._now_ms(),
            "generation": self.generation(page_id) + 1,
        }
        try:
            # Redis drops the key a little after it goes stale on read
            redis_set(self._key(page_id), envelope, expire=self.ttl_seconds * 2, client=self._store)
        except CacheError as e:
            logger.warning(f"Tag cache write failed for page {page_id}: {e}")

    def invalidate(self, page_id: str) -> None:
        try:
            redis_delete(self._key(page_id), client=self._store)
        except CacheError as e:
            logger.warning(f"Tag cache invalidate failed for page {page_id}: {e}")
