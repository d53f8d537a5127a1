# cloudrun/services/knowledge_base.py

import logging
from dataclasses import dataclass
from typing import List

from cachetools import TTLCache
from cachetools.keys import hashkey
from google.cloud import firestore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KnowledgeItem:
    """One candidate improvement the model may select by identifier."""
    item_id: str
    category: str
    title: str
    description: str
    site_type: str = ""


class ImprovementKnowledgeBase:
    """
    Improvement knowledge loaded from Firestore.

    The knowledge is curated per tenant and changes rarely, so lookups are
    cached per site type for an hour.
    """

    COLLECTION_KNOWLEDGE = "improvementKnowledge"
    COLLECTION_SITES = "sites"

    def __init__(self, db: firestore.AsyncClient, ttl_seconds: int = 3600):
        self.db = db
        self._cache = TTLCache(maxsize=64, ttl=ttl_seconds)

    async def items_for_site(self, site_id: str) -> List[KnowledgeItem]:
        """Knowledge items matching the site's type (all items if untyped)."""
        try:
            site_type = await self._get_site_type(site_id)
            key = hashkey('knowledge', site_type)
            if key in self._cache:
                return self._cache[key]

            items = await self._load_items(site_type)
            self._cache[key] = items
            logger.info(f"Loaded {len(items)} knowledge items (siteType={site_type or 'any'})")
            return items

        except Exception as e:
            # The prompt still renders without knowledge; generation can proceed.
            logger.warning(f"Failed to load improvement knowledge for site {site_id}: {e}")
            return []

    async def _get_site_type(self, site_id: str) -> str:
        doc = await self.db.collection(self.COLLECTION_SITES).document(site_id).get()
        if not doc.exists:
            return ""
        return (doc.to_dict() or {}).get("siteType") or ""

    async def _load_items(self, site_type: str) -> List[KnowledgeItem]:
        rows = []
        async for doc in self.db.collection(self.COLLECTION_KNOWLEDGE).stream():
            data = doc.to_dict() or {}
            if not data.get("title") or not data.get("description"):
                continue
            if site_type and data.get("siteType", "").lower() not in ("", site_type.lower()):
                continue
            rows.append((doc.id, data))

        # Stable numbering across requests
        rows.sort(key=lambda row: (row[1].get("order", 0), row[0]))

        return [
            KnowledgeItem(
                item_id=f"K{index:03d}",
                category=data.get("category", ""),
                title=data["title"],
                description=data["description"],
                site_type=data.get("siteType", ""),
            )
            for index, (_, data) in enumerate(rows, start=1)
        ]
