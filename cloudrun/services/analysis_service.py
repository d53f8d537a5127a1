# cloudrun/services/analysis_service.py

"""
AI analysis pipeline:

    Gate (ledger + cache) -> prompt -> model -> extractor -> deduplicator -> persistence

Each call is independent; nothing here is shared between requests except
clients and the set of detached cleanup tasks.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from google.cloud import firestore

from config import Config
from services import recommendation_extractor, section_deduplicator
from services.analysis_cache import (
    AnalysisCacheBackend,
    FirestoreLegacyCache,
    FirestorePrimaryCache,
    TieredAnalysisCache,
)
from services.analysis_errors import AnalysisError, InternalError, QuotaExceeded
from services.generation_client import GenerationClient
from services.knowledge_base import ImprovementKnowledgeBase, KnowledgeItem
from services.models import (
    COMPREHENSIVE_IMPROVEMENT,
    AnalysisKey,
    AnalysisRequest,
    AnalysisResult,
    CachedAnalysis,
    GateDecision,
    GateOutcome,
    RecommendationRecord,
    usage_category,
)
from services.output_validator import OutputValidator
from services.prompt_builder import SYSTEM_INSTRUCTION, build_prompt, is_known_page_type
from services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class AnalysisService:
    def __init__(
        self,
        ledger: UsageLedger,
        cache: AnalysisCacheBackend,
        generation_client: GenerationClient,
        knowledge_base: Optional[ImprovementKnowledgeBase] = None,
        cache_ttl_days: int = 7,
        legacy_retention_days: int = 30,
    ):
        self.ledger = ledger
        self.cache = cache
        self.generation_client = generation_client
        self.knowledge_base = knowledge_base
        self.cache_ttl = timedelta(days=cache_ttl_days)
        self.legacy_retention = timedelta(days=legacy_retention_days)
        self._background_tasks = set()

    @classmethod
    def from_config(cls) -> "AnalysisService":
        """Wire the production Firestore/Gemini collaborators from Config."""
        db = firestore.AsyncClient(project=Config.PROJECT_ID)

        cache: AnalysisCacheBackend = FirestorePrimaryCache(db, ttl_days=Config.CACHE_TTL_DAYS)
        if Config.LEGACY_CACHE_ENABLED:
            cache = TieredAnalysisCache(cache, FirestoreLegacyCache(db, ttl_days=Config.CACHE_TTL_DAYS))

        return cls(
            ledger=UsageLedger(db, tz_name=Config.USAGE_TIMEZONE),
            cache=cache,
            generation_client=GenerationClient(system_instruction=SYSTEM_INSTRUCTION),
            knowledge_base=ImprovementKnowledgeBase(db),
            cache_ttl_days=Config.CACHE_TTL_DAYS,
            legacy_retention_days=Config.LEGACY_RETENTION_DAYS,
        )

    # ------------------------------------------------------------------
    # 1. Gate
    # ------------------------------------------------------------------

    async def evaluate(self, key: AnalysisKey, force_regenerate: bool = False) -> GateDecision:
        """
        Decide whether to serve from cache, generate, or reject.

        A cache hit is still subject to the quota check: plans can be
        downgraded between generations.
        """
        category = usage_category(key.page_type)

        cached = None
        if not force_regenerate:
            try:
                cached = await self.cache.get(key)
            except Exception as e:
                logger.error(f"Cache read failed for {key.document_id}, treating as miss: {e}")

        if not await self.ledger.can_generate(key.user_id, category):
            logger.info(f"Quota exceeded: {key.user_id}, category={category}, cached={cached is not None}")
            return GateDecision.reject()

        if cached is not None:
            logger.info(f"Cache hit: {key.document_id}")
            return GateDecision.return_cached(cached)

        logger.info(f"Cache miss: {key.document_id} (force={force_regenerate})")
        return GateDecision.proceed()

    # ------------------------------------------------------------------
    # 2. Pipeline
    # ------------------------------------------------------------------

    async def generate(self, user_id: str, request: AnalysisRequest) -> AnalysisResult:
        """Run the full pipeline for one validated request."""
        key = AnalysisKey(
            user_id=user_id,
            site_id=request.siteId,
            page_type=request.pageType,
            start_date=request.startDate,
            end_date=request.endDate,
        )
        logger.info(f"Analysis start: {user_id}, site={key.site_id}, page={key.page_type}, "
                    f"{key.start_date}..{key.end_date}")

        try:
            decision = await self.evaluate(key, force_regenerate=request.forceRegenerate)
            if decision.outcome == GateOutcome.REJECT:
                raise QuotaExceeded()
            if decision.outcome == GateOutcome.RETURN_CACHED:
                return AnalysisResult.from_cached(decision.cached, from_cache=True)

            prompt = await self._render_prompt(key, request.metrics or {})
            raw_text = await self.generation_client.generate(
                prompt,
                max_output_tokens=Config.max_output_tokens(usage_category(key.page_type)),
            )
            raw_text = OutputValidator.sanitize_model_output(raw_text)

            recommendations = self._extract_safely(raw_text, key.page_type)
            summary = self._strip_safely(raw_text, key.page_type)

            now = datetime.now(timezone.utc)
            analysis = CachedAnalysis(
                key=key,
                summary=summary,
                recommendations=recommendations,
                generated_at=now,
                expires_at=now + self.cache_ttl,
            )
            await self._persist(analysis)

            logger.info(f"Analysis generated: {key.document_id}, "
                        f"recommendations={len(recommendations)}, summary={len(summary)} chars")
            return AnalysisResult.from_cached(analysis, from_cache=False)

        except AnalysisError:
            raise
        except Exception as e:
            logger.exception(f"Analysis pipeline failed for {key.document_id}: {e}")
            raise InternalError()

    async def _render_prompt(self, key: AnalysisKey, metrics: Dict[str, Any]) -> str:
        knowledge: List[KnowledgeItem] = []
        if key.page_type == COMPREHENSIVE_IMPROVEMENT and self.knowledge_base is not None:
            knowledge = await self.knowledge_base.items_for_site(key.site_id)
        elif not is_known_page_type(key.page_type):
            logger.info(f"Unknown pageType '{key.page_type}', using generic template")

        return build_prompt(key.page_type, key.start_date, key.end_date, metrics, knowledge)

    @staticmethod
    def _extract_safely(raw_text: str, page_type: str) -> List[RecommendationRecord]:
        try:
            return recommendation_extractor.extract(raw_text, page_type)
        except Exception as e:
            logger.exception(f"Recommendation extraction failed ({page_type}): {e}")
            return []

    @staticmethod
    def _strip_safely(raw_text: str, page_type: str) -> str:
        try:
            return section_deduplicator.strip(raw_text, page_type)
        except Exception as e:
            logger.exception(f"Section deduplication failed ({page_type}): {e}")
            return raw_text

    # ------------------------------------------------------------------
    # 3. Persistence & accounting
    # ------------------------------------------------------------------

    async def _persist(self, analysis: CachedAnalysis) -> None:
        """Write cache tiers and bump usage. Failures are logged, never raised."""
        key = analysis.key
        try:
            await self.cache.put(analysis)
        except Exception as e:
            logger.error(f"Cache write failed for {key.document_id}: {e}")

        try:
            await self.ledger.increment(key.user_id, usage_category(key.page_type))
        except Exception as e:
            logger.error(f"Usage increment failed for {key.user_id}: {e}")

        self._schedule_legacy_prune(key.user_id)

    def _schedule_legacy_prune(self, user_id: str) -> Optional[asyncio.Task]:
        """Start legacy-cache pruning without waiting for it."""
        prune = getattr(self.cache, "prune", None)
        if prune is None:
            return None

        task = asyncio.create_task(prune(user_id, self.legacy_retention))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_prune_done)
        return task

    def _on_prune_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            logger.warning("Legacy cache prune was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Legacy cache prune failed: {error}")

    # ------------------------------------------------------------------
    # 4. Maintenance & reporting
    # ------------------------------------------------------------------

    async def get_usage(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        return await self.ledger.get_usage(user_id)

    async def cleanup_legacy_cache(self) -> int:
        """Delete legacy entries past retention for every user."""
        prune = getattr(self.cache, "prune", None)
        if prune is None:
            return 0
        return await prune(None, self.legacy_retention)
