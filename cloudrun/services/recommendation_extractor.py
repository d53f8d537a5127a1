# cloudrun/services/recommendation_extractor.py

"""
Recommendation Extractor

Recovers structured recommendation records from free-form model output.
The model is asked to follow a text convention, but nothing enforces it, so
extraction is a best-effort heuristic over two conventions:

- Labeled blocks: fixed field labels, blocks separated by a `---` line
  (requested by the comprehensive improvement prompt).
- Numbered lists: `1. Title: description` style items (everything else).

Strategies are tried in order and the first non-empty result wins. No
strategy ever raises on unrecognised input; "nothing found" is an empty list.
"""

import logging
import re
from typing import Dict, List, Optional

from services.models import COMPREHENSIVE_IMPROVEMENT, RecommendationRecord

logger = logging.getLogger(__name__)


# ============================================================================
# 1. LABELED-BLOCK STRATEGY
# ============================================================================

class LabeledBlockStrategy:
    """Parse `タイトル: ...` style blocks separated by `---` lines."""

    name = "labeled_block"

    SEPARATOR = "---"

    # Label text -> record field
    LABELS = {
        "タイトル": "title",
        "説明": "description",
        "カテゴリ": "category",
        "優先度": "priority",
        "期待効果": "expected_impact",
    }

    LABEL_PATTERN = re.compile(
        r'^\s*(?:[-*]\s+)?\**(' + '|'.join(LABELS) + r')\**\s*[:：]\s*\**\s*(.*?)\s*$'
    )
    SEPARATOR_PATTERN = re.compile(r'^\s*-{3}\s*$', re.MULTILINE)

    REQUIRED_FIELDS = ("title", "description", "category", "priority")

    @classmethod
    def extract(cls, raw_text: str) -> Optional[List[RecommendationRecord]]:
        records = []
        for block in cls.SEPARATOR_PATTERN.split(raw_text):
            record = cls._parse_block(block)
            if record is not None:
                records.append(record)
        return records or None

    @classmethod
    def _parse_block(cls, block: str) -> Optional[RecommendationRecord]:
        fields: Dict[str, str] = {}
        current_field = None

        for line in block.splitlines():
            match = cls.LABEL_PATTERN.match(line)
            if match:
                current_field = cls.LABELS[match.group(1)]
                fields[current_field] = match.group(2).replace('**', '').strip()
                continue

            text = line.strip()
            if text and current_field == "description":
                fields["description"] = f"{fields['description']} {text}".strip()

        if not all(fields.get(name) for name in cls.REQUIRED_FIELDS):
            return None

        return RecommendationRecord(
            title=fields["title"],
            description=fields["description"],
            category=fields["category"].lower(),
            priority=fields["priority"].lower(),
            expected_impact=fields.get("expected_impact") or None,
        )


# ============================================================================
# 2. NUMBERED-LIST STRATEGY
# ============================================================================

class NumberedListStrategy:
    """Parse `1. Title: description` items, estimating category and priority."""

    name = "numbered_list"

    ITEM_PATTERN = re.compile(r'^(\d+)\.\s+(.+)$')
    # A colon between two digits is a time (20:00) or ratio, not a separator
    COLON_PATTERN = re.compile(r'(?<!\d)[:：]|[:：](?!\d)')
    SENTENCE_END_PATTERN = re.compile(r'[。！？!?]|\.(?=\s|$)')
    SENTENCE_SPLIT_WINDOW = 50

    # Checked in order; the first bucket with a hit wins.
    CATEGORY_KEYWORDS = [
        ("content", ["コンテンツ", "記事", "ブログ", "文章", "事例", "content", "article", "blog", "copywriting"]),
        ("design", ["デザイン", "レイアウト", "ボタン", "ファーストビュー", "cta", "導線", "design", "layout", "ux"]),
        ("acquisition", ["seo", "広告", "集客", "流入", "キーワード", "sns", "検索", "被リンク", "ads", "traffic", "campaign"]),
        ("feature", ["機能", "実装", "フォーム", "速度", "ツール", "チャット", "feature", "form", "speed", "performance"]),
    ]

    URGENT_KEYWORDS = ["緊急", "至急", "早急", "直ちに", "urgent", "immediately", "critical"]
    HIGH_KEYWORDS = ["重要", "優先", "必須", "最優先", "important", "high priority", "essential"]

    @classmethod
    def extract(cls, raw_text: str) -> Optional[List[RecommendationRecord]]:
        items = []
        current = None

        for line in raw_text.splitlines():
            text = line.strip()
            if text.startswith('#'):
                continue

            match = cls.ITEM_PATTERN.match(text)
            if match:
                if current is not None:
                    items.append(current)
                current = cls._split_title(match.group(2).replace('**', '').strip())
                continue

            if current is not None and text and not text.startswith('-'):
                current["description"] = f"{current['description']} {text}".strip()

        if current is not None:
            items.append(current)

        records = [
            RecommendationRecord(
                title=item["title"],
                description=item["description"],
                category=cls.estimate_category(f"{item['title']} {item['description']}"),
                priority=cls.estimate_priority(f"{item['title']} {item['description']}", position),
            )
            for position, item in enumerate(item for item in items if item["title"])
        ]
        return records or None

    @classmethod
    def _split_title(cls, text: str) -> Dict[str, str]:
        colon = cls.COLON_PATTERN.search(text)
        if colon:
            return {
                "title": text[:colon.start()].strip(),
                "description": text[colon.end():].strip(),
            }

        sentence_end = cls.SENTENCE_END_PATTERN.search(text)
        if sentence_end and sentence_end.start() < cls.SENTENCE_SPLIT_WINDOW:
            return {
                "title": text[:sentence_end.start()].strip(),
                "description": text[sentence_end.end():].strip(),
            }

        return {"title": text, "description": ""}

    @classmethod
    def estimate_category(cls, text: str) -> str:
        lowered = text.lower()
        for category, keywords in cls.CATEGORY_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return category
        return "other"

    @classmethod
    def estimate_priority(cls, text: str, position: int) -> str:
        lowered = text.lower()
        if any(keyword in lowered for keyword in cls.URGENT_KEYWORDS):
            return "urgent"
        if any(keyword in lowered for keyword in cls.HIGH_KEYWORDS) or position == 0:
            return "high"
        if position == 1:
            return "medium"
        return "low"


# ============================================================================
# 3. ORCHESTRATION
# ============================================================================

def strategies_for(page_type: str) -> list:
    """Ordered strategy chain for a page type."""
    if page_type == COMPREHENSIVE_IMPROVEMENT:
        return [LabeledBlockStrategy, NumberedListStrategy]
    return [NumberedListStrategy]


def extract(raw_text: str, page_type: str) -> List[RecommendationRecord]:
    """
    Convert raw model output into recommendation records.

    Returns the first non-empty result of the page type's strategy chain,
    preserving extraction order. Returns [] when no convention is found.
    """
    if not raw_text:
        return []

    chain = strategies_for(page_type)
    for index, strategy in enumerate(chain):
        records = strategy.extract(raw_text)
        if records:
            if index > 0:
                logger.warning(
                    f"Extractor fell back to {strategy.name} for {page_type} "
                    f"({chain[0].name} found nothing)"
                )
            logger.info(f"Extracted {len(records)} recommendations via {strategy.name}")
            return records

    logger.info(f"No recommendations found in model output for {page_type}")
    return []
