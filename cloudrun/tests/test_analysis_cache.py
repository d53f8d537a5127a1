import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
import pytest
import sys
import os

# Add parent directory to path so we can import services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.analysis_cache import (
    FIRESTORE_BATCH_LIMIT,
    FirestoreLegacyCache,
    FirestorePrimaryCache,
    TieredAnalysisCache,
)
from services.models import AnalysisKey, CachedAnalysis, RecommendationRecord


class FakeDocument:
    def __init__(self, store, doc_id):
        self.store = store
        self.id = doc_id

    async def get(self):
        data = self.store.get(self.id)
        snapshot = MagicMock()
        snapshot.exists = data is not None
        snapshot.to_dict.return_value = data
        return snapshot

    async def set(self, data, merge=False):
        self.store[self.id] = dict(data)


class FakeQuery:
    """Chainable query that records its filters and streams canned snapshots."""

    def __init__(self, results):
        self.results = results
        self.calls = []

    def where(self, filter=None):
        self.calls.append(("where", filter.field_path, filter.op_string, filter.value))
        return self

    def order_by(self, field, direction=None):
        self.calls.append(("order_by", field, direction))
        return self

    def limit(self, count):
        self.calls.append(("limit", count))
        return self

    async def stream(self):
        for doc in self.results:
            yield doc


class FakeFirestore:
    """Just enough of firestore.AsyncClient for both cache tiers."""

    def __init__(self, query_results=None):
        self.stores = {}
        self.added = []
        self.query = FakeQuery(query_results or [])
        self.batches = []

    def collection(self, name):
        store = self.stores.setdefault(name, {})
        collection = MagicMock()
        collection.document.side_effect = lambda doc_id: FakeDocument(store, doc_id)
        collection.add = AsyncMock(side_effect=lambda data: self.added.append((name, data)))
        collection.where.side_effect = self.query.where
        return collection

    def batch(self):
        batch = MagicMock()
        batch.commit = AsyncMock()
        self.batches.append(batch)
        return batch


KEY = AnalysisKey("user-1", "site-1", "summary", "2026-09-01", "2026-09-30")
NOW = datetime(2026, 10, 1, tzinfo=timezone.utc)


def make_analysis(**overrides):
    fields = dict(
        key=KEY,
        summary="## 概要\n好調です。",
        recommendations=[RecommendationRecord(title="CTA改善", category="design", expected_impact="CVR +0.3pt")],
        generated_at=NOW,
        expires_at=datetime.now(timezone.utc) + timedelta(days=7),
    )
    fields.update(overrides)
    return CachedAnalysis(**fields)


def legacy_snapshot(doc_id, data):
    snapshot = MagicMock()
    snapshot.id = doc_id
    snapshot.to_dict.return_value = data
    return snapshot


# ============================================================================
# PRIMARY
# ============================================================================

def test_primary_put_then_get():
    db = FakeFirestore()
    cache = FirestorePrimaryCache(db)

    asyncio.run(cache.put(make_analysis()))
    stored = db.stores["aiAnalysisCachePrimary"][KEY.document_id]
    assert stored["recommendations"][0]["expectedImpact"] == "CVR +0.3pt"
    assert stored["startDate"] == "2026-09-01"

    cached = asyncio.run(cache.get(KEY))
    assert cached.summary == "## 概要\n好調です。"
    assert cached.recommendations[0].expected_impact == "CVR +0.3pt"
    assert cached.generated_at == NOW


def test_primary_put_defaults_expiry_to_ttl():
    db = FakeFirestore()
    cache = FirestorePrimaryCache(db, ttl_days=3)

    asyncio.run(cache.put(make_analysis(expires_at=None)))

    stored = db.stores["aiAnalysisCachePrimary"][KEY.document_id]
    assert stored["expiresAt"] == NOW + timedelta(days=3)


def test_primary_miss_and_expired_entry():
    db = FakeFirestore()
    cache = FirestorePrimaryCache(db)
    assert asyncio.run(cache.get(KEY)) is None

    asyncio.run(cache.put(make_analysis(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))))
    assert asyncio.run(cache.get(KEY)) is None


# ============================================================================
# LEGACY
# ============================================================================

def test_legacy_get_queries_by_fields():
    data = {
        "summary": "旧キャッシュ",
        "recommendations": [],
        "generatedAt": NOW,
        "expiresAt": datetime.now(timezone.utc) + timedelta(days=1),
    }
    db = FakeFirestore([legacy_snapshot("doc-1", data)])

    cached = asyncio.run(FirestoreLegacyCache(db).get(KEY))

    assert cached.summary == "旧キャッシュ"
    filters = [call[1:] for call in db.query.calls if call[0] == "where"]
    assert ("period.startDate", "==", "2026-09-01") in filters
    assert ("period.endDate", "==", "2026-09-30") in filters
    assert ("limit", 1) in db.query.calls


def test_legacy_expired_entry_is_a_miss():
    data = {"summary": "古い", "generatedAt": NOW, "expiresAt": NOW}
    db = FakeFirestore([legacy_snapshot("doc-1", data)])

    assert asyncio.run(FirestoreLegacyCache(db).get(KEY)) is None


def test_legacy_put_nests_period():
    db = FakeFirestore()

    asyncio.run(FirestoreLegacyCache(db).put(make_analysis()))

    name, data = db.added[0]
    assert name == "aiAnalysisCache"
    assert data["period"] == {"startDate": "2026-09-01", "endDate": "2026-09-30"}
    assert "createdAt" in data


def test_prune_commits_in_batches():
    count = FIRESTORE_BATCH_LIMIT + 1
    db = FakeFirestore([legacy_snapshot(f"doc-{i}", {}) for i in range(count)])

    deleted = asyncio.run(FirestoreLegacyCache(db).prune("user-1", timedelta(days=30)))

    assert deleted == count
    assert len(db.batches) == 2
    assert db.batches[0].delete.call_count == FIRESTORE_BATCH_LIMIT
    assert db.batches[1].delete.call_count == 1
    for batch in db.batches:
        batch.commit.assert_awaited_once()

    filters = [call[1] for call in db.query.calls if call[0] == "where"]
    assert filters == ["userId", "createdAt"]


def test_prune_all_users_with_nothing_to_delete():
    db = FakeFirestore()

    deleted = asyncio.run(FirestoreLegacyCache(db).prune(None, timedelta(days=30)))

    assert deleted == 0
    db.batches[0].commit.assert_not_called()
    assert [call[1] for call in db.query.calls] == ["createdAt"]


# ============================================================================
# TIERED
# ============================================================================

def make_tiered(primary_get=None, legacy_get=None):
    primary = MagicMock()
    primary.get = primary_get or AsyncMock(return_value=None)
    primary.put = AsyncMock()
    legacy = MagicMock()
    legacy.get = legacy_get or AsyncMock(return_value=None)
    legacy.put = AsyncMock()
    legacy.prune = AsyncMock(return_value=3)
    return TieredAnalysisCache(primary, legacy), primary, legacy


def test_tiered_prefers_primary():
    hit = make_analysis()
    cache, _, legacy = make_tiered(primary_get=AsyncMock(return_value=hit))

    assert asyncio.run(cache.get(KEY)) is hit
    legacy.get.assert_not_called()


def test_tiered_falls_back_to_legacy():
    hit = make_analysis(summary="旧キャッシュ")
    cache, _, _ = make_tiered(legacy_get=AsyncMock(return_value=hit))

    assert asyncio.run(cache.get(KEY)) is hit


def test_tiered_primary_read_failure_still_checks_legacy():
    hit = make_analysis(summary="旧キャッシュ")
    cache, _, legacy = make_tiered(
        primary_get=AsyncMock(side_effect=KeyError("generatedAt")),
        legacy_get=AsyncMock(return_value=hit),
    )

    assert asyncio.run(cache.get(KEY)) is hit
    legacy.get.assert_awaited_once_with(KEY)


def test_tiered_legacy_read_failure_is_a_miss():
    cache, _, _ = make_tiered(legacy_get=AsyncMock(side_effect=RuntimeError("index missing")))

    assert asyncio.run(cache.get(KEY)) is None


def test_tiered_put_swallows_legacy_failure():
    cache, primary, legacy = make_tiered()
    legacy.put.side_effect = RuntimeError("legacy down")
    analysis = make_analysis()

    asyncio.run(cache.put(analysis))

    primary.put.assert_awaited_once_with(analysis)


def test_tiered_put_reraises_primary_failure_after_legacy_write():
    cache, primary, legacy = make_tiered()
    primary.put.side_effect = RuntimeError("primary down")
    analysis = make_analysis()

    with pytest.raises(RuntimeError, match="primary down"):
        asyncio.run(cache.put(analysis))

    legacy.put.assert_awaited_once_with(analysis)


def test_tiered_prune_delegates_to_legacy():
    cache, _, legacy = make_tiered()

    assert asyncio.run(cache.prune(None, timedelta(days=30))) == 3
    legacy.prune.assert_awaited_once_with(None, timedelta(days=30))
