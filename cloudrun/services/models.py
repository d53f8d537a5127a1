# cloudrun/services/models.py

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# PAGE TYPES & USAGE CATEGORIES
# ============================================================================

COMPREHENSIVE_IMPROVEMENT = "comprehensive_improvement"

USAGE_CATEGORY_SUMMARY = "summary"
USAGE_CATEGORY_IMPROVEMENT = "improvement"
USAGE_CATEGORIES = (USAGE_CATEGORY_SUMMARY, USAGE_CATEGORY_IMPROVEMENT)


def usage_category(page_type: str) -> str:
    """Map a page type onto the metered usage category."""
    if page_type == COMPREHENSIVE_IMPROVEMENT:
        return USAGE_CATEGORY_IMPROVEMENT
    return USAGE_CATEGORY_SUMMARY


# ============================================================================
# RECOMMENDATIONS
# ============================================================================

class RecommendationRecord(BaseModel):
    """
    One structured recommendation recovered from model output.

    category/priority are plain strings: the labeled-block strategy copies
    whatever the model wrote (lower-cased) without re-validating it.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str
    description: str = ""
    category: str = "other"
    priority: str = "medium"
    expected_impact: Optional[str] = Field(default=None, alias="expectedImpact")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ============================================================================
# CACHE
# ============================================================================

@dataclass(frozen=True)
class AnalysisKey:
    """Composite cache key for a generated analysis."""
    user_id: str
    site_id: str
    page_type: str
    start_date: str
    end_date: str

    @property
    def document_id(self) -> str:
        """Firestore-safe document id (no slashes allowed in ids)."""
        parts = [self.user_id, self.site_id, self.page_type, self.start_date, self.end_date]
        return "__".join(part.replace('/', '_') for part in parts)


class CachedAnalysis(BaseModel):
    """A generated (summary, recommendations) pair as stored in either cache tier."""
    key: AnalysisKey
    summary: str
    recommendations: List[RecommendationRecord] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) > self.expires_at


# ============================================================================
# USAGE
# ============================================================================

class UsageCounter(BaseModel):
    """Monthly generation counter for one user and usage category."""
    user_id: str
    category: str
    period_key: str
    count: int = 0
    limit: int = 0  # -1 = unlimited

    @property
    def is_unlimited(self) -> bool:
        return self.limit == -1 or self.limit >= 999999

    @property
    def remaining(self) -> Optional[int]:
        if self.is_unlimited:
            return None
        return max(0, self.limit - self.count)


# ============================================================================
# API
# ============================================================================

class AnalysisRequest(BaseModel):
    """
    Inbound request body.

    Everything is optional at the schema level; InputValidator reports
    missing fields as InvalidArgument.
    """
    siteId: Optional[str] = None
    pageType: Optional[str] = None
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    forceRegenerate: bool = False


class AnalysisResult(BaseModel):
    summary: str
    recommendations: List[RecommendationRecord] = Field(default_factory=list)
    fromCache: bool = False
    generatedAt: str

    @classmethod
    def from_cached(cls, analysis: CachedAnalysis, from_cache: bool) -> "AnalysisResult":
        return cls(
            summary=analysis.summary,
            recommendations=list(analysis.recommendations),
            fromCache=from_cache,
            generatedAt=analysis.generated_at.isoformat(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ============================================================================
# GATE
# ============================================================================

class GateOutcome(str, Enum):
    PROCEED = "proceed"
    RETURN_CACHED = "return_cached"
    REJECT = "reject"


@dataclass
class GateDecision:
    outcome: GateOutcome
    cached: Optional[CachedAnalysis] = None

    @classmethod
    def proceed(cls) -> "GateDecision":
        return cls(GateOutcome.PROCEED)

    @classmethod
    def return_cached(cls, analysis: CachedAnalysis) -> "GateDecision":
        return cls(GateOutcome.RETURN_CACHED, analysis)

    @classmethod
    def reject(cls) -> "GateDecision":
        return cls(GateOutcome.REJECT)
