# cloudrun/services/analysis_cache.py

"""
Cache tiers for generated analyses.

- Primary: one document per composite key, point lookup, expires after a TTL.
- Legacy: the older query-by-fields collection, kept readable and written to
  until existing clients stop depending on it. Pruned after 30 days.

TieredAnalysisCache composes the two (read-through-both, write-to-both).
Dropping the legacy tier means using the primary backend on its own.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from services.models import AnalysisKey, CachedAnalysis, RecommendationRecord

logger = logging.getLogger(__name__)

FIRESTORE_BATCH_LIMIT = 500


def _recommendations_from(data: Dict[str, Any]) -> list:
    return [RecommendationRecord.model_validate(item) for item in data.get("recommendations") or []]


class AnalysisCacheBackend:
    """Interface for one cache tier."""

    name = "base"

    async def get(self, key: AnalysisKey) -> Optional[CachedAnalysis]:
        raise NotImplementedError

    async def put(self, analysis: CachedAnalysis) -> None:
        raise NotImplementedError


class FirestorePrimaryCache(AnalysisCacheBackend):
    name = "primary"
    COLLECTION = "aiAnalysisCachePrimary"

    def __init__(self, db: firestore.AsyncClient, ttl_days: int = 7):
        self.db = db
        self.ttl = timedelta(days=ttl_days)

    async def get(self, key: AnalysisKey) -> Optional[CachedAnalysis]:
        doc = await self.db.collection(self.COLLECTION).document(key.document_id).get()
        if not doc.exists:
            return None

        data = doc.to_dict() or {}
        analysis = CachedAnalysis(
            key=key,
            summary=data.get("summary", ""),
            recommendations=_recommendations_from(data),
            generated_at=data["generatedAt"],
            expires_at=data.get("expiresAt"),
        )
        if analysis.is_expired():
            logger.info(f"Primary cache entry expired: {key.document_id}")
            return None
        return analysis

    async def put(self, analysis: CachedAnalysis) -> None:
        key = analysis.key
        expires_at = analysis.expires_at or analysis.generated_at + self.ttl
        await self.db.collection(self.COLLECTION).document(key.document_id).set({
            "userId": key.user_id,
            "siteId": key.site_id,
            "pageType": key.page_type,
            "startDate": key.start_date,
            "endDate": key.end_date,
            "summary": analysis.summary,
            "recommendations": [record.to_dict() for record in analysis.recommendations],
            "generatedAt": analysis.generated_at,
            "expiresAt": expires_at,
        })


class FirestoreLegacyCache(AnalysisCacheBackend):
    name = "legacy"
    COLLECTION = "aiAnalysisCache"

    def __init__(self, db: firestore.AsyncClient, ttl_days: int = 7):
        self.db = db
        self.ttl = timedelta(days=ttl_days)

    async def get(self, key: AnalysisKey) -> Optional[CachedAnalysis]:
        query = (
            self.db.collection(self.COLLECTION)
            .where(filter=FieldFilter("userId", "==", key.user_id))
            .where(filter=FieldFilter("siteId", "==", key.site_id))
            .where(filter=FieldFilter("pageType", "==", key.page_type))
            .where(filter=FieldFilter("period.startDate", "==", key.start_date))
            .where(filter=FieldFilter("period.endDate", "==", key.end_date))
            .order_by("generatedAt", direction=firestore.Query.DESCENDING)
            .limit(1)
        )

        async for doc in query.stream():
            data = doc.to_dict() or {}
            analysis = CachedAnalysis(
                key=key,
                summary=data.get("summary", ""),
                recommendations=_recommendations_from(data),
                generated_at=data["generatedAt"],
                expires_at=data.get("expiresAt"),
            )
            if analysis.is_expired():
                logger.info(f"Legacy cache entry expired: {doc.id}")
                return None
            return analysis
        return None

    async def put(self, analysis: CachedAnalysis) -> None:
        key = analysis.key
        await self.db.collection(self.COLLECTION).add({
            "userId": key.user_id,
            "siteId": key.site_id,
            "pageType": key.page_type,
            "period": {"startDate": key.start_date, "endDate": key.end_date},
            "summary": analysis.summary,
            "recommendations": [record.to_dict() for record in analysis.recommendations],
            "generatedAt": analysis.generated_at,
            "expiresAt": analysis.expires_at or analysis.generated_at + self.ttl,
            "createdAt": datetime.now(timezone.utc),
        })

    async def prune(self, user_id: Optional[str], older_than: timedelta) -> int:
        """Delete legacy entries created before now - older_than (one user, or all when user_id is None)."""
        cutoff = datetime.now(timezone.utc) - older_than
        query = self.db.collection(self.COLLECTION)
        if user_id is not None:
            query = query.where(filter=FieldFilter("userId", "==", user_id))
        query = query.where(filter=FieldFilter("createdAt", "<", cutoff))

        deleted = 0
        batch = self.db.batch()
        pending = 0
        async for doc in query.stream():
            batch.delete(doc.reference)
            pending += 1
            if pending >= FIRESTORE_BATCH_LIMIT:
                await batch.commit()
                deleted += pending
                batch = self.db.batch()
                pending = 0

        if pending:
            await batch.commit()
            deleted += pending

        if deleted:
            logger.info(f"Pruned {deleted} legacy cache entries (user={user_id or 'all'})")
        return deleted


class TieredAnalysisCache(AnalysisCacheBackend):
    """
    Read primary then legacy; write both.

    Read failures in either tier count as a miss. On write, only a primary
    failure propagates.
    """

    name = "tiered"

    def __init__(self, primary: AnalysisCacheBackend, legacy: FirestoreLegacyCache):
        self.primary = primary
        self.legacy = legacy

    async def get(self, key: AnalysisKey) -> Optional[CachedAnalysis]:
        try:
            analysis = await self.primary.get(key)
        except Exception as e:
            logger.warning(f"Primary cache read failed for {key.document_id}: {e}")
            analysis = None
        if analysis is not None:
            return analysis

        try:
            analysis = await self.legacy.get(key)
        except Exception as e:
            logger.warning(f"Legacy cache read failed for {key.document_id}: {e}")
            return None

        if analysis is not None:
            logger.info(f"Legacy cache hit: {key.document_id}")
        return analysis

    async def put(self, analysis: CachedAnalysis) -> None:
        """Write both tiers; a primary failure is re-raised after the legacy attempt."""
        primary_error = None
        try:
            await self.primary.put(analysis)
        except Exception as e:
            primary_error = e

        try:
            await self.legacy.put(analysis)
        except Exception as e:
            logger.warning(f"Legacy cache write failed for {analysis.key.document_id}: {e}")

        if primary_error is not None:
            raise primary_error

    async def prune(self, user_id: Optional[str], older_than: timedelta) -> int:
        return await self.legacy.prune(user_id, older_than)
