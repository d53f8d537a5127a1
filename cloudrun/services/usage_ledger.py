# cloudrun/services/usage_ledger.py

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from cachetools import TTLCache
from cachetools.keys import hashkey
from google.cloud import firestore

from services.models import USAGE_CATEGORIES, USAGE_CATEGORY_SUMMARY, UsageCounter

logger = logging.getLogger(__name__)

UNLIMITED = -1

# Fallback plan limits when planConfig/default is missing
DEFAULT_PLANS = {
    "free": {"aiSummaryLimit": 10, "aiImprovementLimit": 2},
    "standard": {"aiSummaryLimit": 50, "aiImprovementLimit": 10},
    "premium": {"aiSummaryLimit": UNLIMITED, "aiImprovementLimit": UNLIMITED},
    "paid": {"aiSummaryLimit": UNLIMITED, "aiImprovementLimit": UNLIMITED},
}


class UsageLedger:
    """
    Per-user monthly AI generation counters stored in Firestore.

    One document per (user, category, month); a new month is a new document,
    so there is no rollover job. Limits come from, in order: an active
    per-user override, the user's plan, the built-in plan defaults.

    Reads and increments are separate calls. Two concurrent requests can both
    pass can_generate() before either increments.
    """

    COLLECTION_USAGE = "ai_usage"
    COLLECTION_USERS = "users"
    COLLECTION_CUSTOM_LIMITS = "customLimits"
    COLLECTION_PLAN_CONFIG = "planConfig"

    LIMIT_FIELDS = {
        "summary": ("aiSummaryLimit", "aiSummaryMonthly"),
        "improvement": ("aiImprovementLimit", "aiImprovementMonthly"),
    }

    def __init__(self, db: firestore.AsyncClient, tz_name: str = "Asia/Tokyo"):
        self.db = db
        self.tz = ZoneInfo(tz_name)
        self._plan_cache = TTLCache(maxsize=1, ttl=3600)

    def period_key(self, now: Optional[datetime] = None) -> str:
        """Calendar month of `now` in the ledger's timezone, e.g. '2026-10'."""
        now = now or datetime.now(timezone.utc)
        return now.astimezone(self.tz).strftime("%Y-%m")

    def _usage_doc_id(self, user_id: str, category: str, period_key: str) -> str:
        return f"{user_id}_{category}_{period_key}"

    # ------------------------------------------------------------------
    # Limits
    # ------------------------------------------------------------------

    async def _get_plan_config(self) -> Dict[str, Dict[str, Any]]:
        key = hashkey('plan_config')
        if key in self._plan_cache:
            return self._plan_cache[key]

        plans = DEFAULT_PLANS
        try:
            doc = await self.db.collection(self.COLLECTION_PLAN_CONFIG).document("default").get()
            if doc.exists:
                config = doc.to_dict() or {}
                plans = {
                    name: {
                        field: (config.get(name) or {}).get(field, defaults[field])
                        for field in defaults
                    }
                    for name, defaults in DEFAULT_PLANS.items()
                    if name != "paid"
                }
                plans["paid"] = DEFAULT_PLANS["paid"]
                logger.info("Loaded plan config from Firestore")
        except Exception as e:
            logger.error(f"Firestore read error loading plan config, using defaults: {e}")

        self._plan_cache[key] = plans
        return plans

    async def _get_custom_limit(self, user_id: str, category: str) -> Optional[int]:
        doc = await self.db.collection(self.COLLECTION_CUSTOM_LIMITS).document(user_id).get()
        if not doc.exists:
            return None

        data = doc.to_dict() or {}
        if not data.get("isActive"):
            return None

        valid_until = data.get("validUntil")
        if valid_until is not None and valid_until < datetime.now(timezone.utc):
            return None

        _, custom_field = self.LIMIT_FIELDS[category]
        return (data.get("limits") or {}).get(custom_field)

    async def get_effective_limit(self, user_id: str, category: str = USAGE_CATEGORY_SUMMARY) -> int:
        """Monthly limit for a user and category (-1 = unlimited, 0 = none)."""
        custom_limit = await self._get_custom_limit(user_id, category)
        if custom_limit is not None:
            logger.info(f"Custom limit applied: {user_id}, category={category}, limit={custom_limit}")
            return int(custom_limit)

        user_doc = await self.db.collection(self.COLLECTION_USERS).document(user_id).get()
        if not user_doc.exists:
            return 0

        plan = (user_doc.to_dict() or {}).get("plan") or "free"
        plans = await self._get_plan_config()
        plan_limits = plans.get(plan) or plans["free"]

        plan_field, _ = self.LIMIT_FIELDS[category]
        return int(plan_limits[plan_field])

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    async def get_counter(self, user_id: str, category: str) -> UsageCounter:
        period = self.period_key()
        limit = await self.get_effective_limit(user_id, category)

        doc = await self.db.collection(self.COLLECTION_USAGE).document(
            self._usage_doc_id(user_id, category, period)
        ).get()
        count = (doc.to_dict() or {}).get("count", 0) if doc.exists else 0

        return UsageCounter(user_id=user_id, category=category, period_key=period, count=count, limit=limit)

    async def can_generate(self, user_id: str, category: str = USAGE_CATEGORY_SUMMARY) -> bool:
        """Check the monthly quota. Storage errors fail closed."""
        try:
            counter = await self.get_counter(user_id, category)
        except Exception as e:
            logger.error(f"Firestore read error in can_generate: {e}")
            return False

        allowed = counter.is_unlimited or counter.count < counter.limit
        logger.info(
            f"Quota check: {user_id}, category={category}, "
            f"used={counter.count}/{counter.limit}, allowed={allowed}"
        )
        return allowed

    async def increment(self, user_id: str, category: str = USAGE_CATEGORY_SUMMARY) -> None:
        """Atomically add one generation to this month's counter."""
        period = self.period_key()
        limit = await self.get_effective_limit(user_id, category)

        doc_ref = self.db.collection(self.COLLECTION_USAGE).document(
            self._usage_doc_id(user_id, category, period)
        )
        await doc_ref.set({
            "userId": user_id,
            "category": category,
            "periodKey": period,
            "count": firestore.Increment(1),
            "limit": limit,
            "last_updated": firestore.SERVER_TIMESTAMP,
        }, merge=True)

        logger.info(f"Usage incremented: {user_id}, category={category}, period={period}")

    async def get_usage(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        """Current month's usage for every category."""
        stats = {}
        for category in USAGE_CATEGORIES:
            counter = await self.get_counter(user_id, category)
            stats[category] = {
                "used": counter.count,
                "limit": counter.limit,
                "remaining": counter.remaining,
                "period": counter.period_key,
            }
        return stats
