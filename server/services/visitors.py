"""Visitor tag store.

Tags are per (site_id, visitor_id). Mutations drop any cached tag lookups
for the visitor so Tag conditions see the new state on the next check.
"""

from typing import Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from core.logging import get_logger

if TYPE_CHECKING:
    from core.cache import CacheService
    from core.database import Database

logger = get_logger(__name__)


class VisitorService:
    """Get, add and remove visitor tags (database or memory backend)."""

    def __init__(self, database: Optional["Database"] = None, cache: Optional["CacheService"] = None):
        self.database = database
        self.cache = cache
        self._tags: Dict[Tuple[str, str], Set[str]] = {}

    async def get_tags(self, site_id: str, visitor_id: str) -> List[str]:
        if self.database is not None:
            return await self.database.get_visitor_tags(site_id, visitor_id)
        return sorted(self._tags.get((site_id, visitor_id), set()))

    async def has_tag(self, site_id: str, visitor_id: str, tag: str) -> bool:
        return tag in await self.get_tags(site_id, visitor_id)

    async def add_tag(self, site_id: str, visitor_id: str, tag: str) -> bool:
        if self.database is not None:
            await self.database.add_visitor_tag(site_id, visitor_id, tag)
        else:
            self._tags.setdefault((site_id, visitor_id), set()).add(tag)
        await self._invalidate(site_id, visitor_id)
        logger.debug("Tag added to visitor", site_id=site_id, visitor_id=visitor_id, tag=tag)
        return True

    async def remove_tag(self, site_id: str, visitor_id: str, tag: str) -> bool:
        if self.database is not None:
            removed = await self.database.remove_visitor_tag(site_id, visitor_id, tag)
        else:
            tags = self._tags.get((site_id, visitor_id), set())
            removed = tag in tags
            tags.discard(tag)
        await self._invalidate(site_id, visitor_id)
        logger.debug("Tag removed from visitor", site_id=site_id, visitor_id=visitor_id, tag=tag, removed=removed)
        return removed

    async def _invalidate(self, site_id: str, visitor_id: str) -> None:
        if self.cache is not None:
            await self.cache.clear_pattern(f"tagcache:{site_id}:{visitor_id}:*")
