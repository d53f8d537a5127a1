import sys
import os

# Add parent directory to path so we can import services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services import prompt_builder
from services.knowledge_base import KnowledgeItem
from services.recommendation_extractor import LabeledBlockStrategy
from services.section_deduplicator import SELECTION_MARKERS


def test_all_report_page_types_are_known():
    assert len(prompt_builder.PAGE_TYPE_META) == 16
    for page_type in ("dashboard", "summary", "channels", "reverseFlow", "fileDownloads"):
        assert prompt_builder.is_known_page_type(page_type)
    assert prompt_builder.is_known_page_type("comprehensive_improvement")
    assert not prompt_builder.is_known_page_type("made_up_page")


def test_page_prompt_quotes_metrics_and_period():
    prompt = prompt_builder.build_prompt(
        "summary", "2026-09-01", "2026-09-30", {"sessions": 1000, "conversions": 10}
    )

    assert "2026-09-01から2026-09-30までの期間" in prompt
    assert "全体サマリー" in prompt
    assert "- 総セッション数: 1,000回" in prompt
    assert "- 総CV数: 10件" in prompt


def test_metrics_section_prefers_aggregates_and_dedupes_labels():
    section = prompt_builder.format_metrics_section({
        "aggregates": {"users": 500, "totalUsers": 999, "engagementRate": 0.6543, "conversionRate": 0.0123},
        "topPages": "/index 100\n/about 50",
    })

    assert "- 総ユーザー数: 999人" in section  # totalUsers is listed first
    assert "500人" not in section
    assert "- エンゲージメント率: 65.4%" in section
    assert "- CVR: 1.23%" in section
    assert "【トップページ10】\n/index 100" in section


def test_metrics_section_skips_non_numeric_values():
    section = prompt_builder.format_metrics_section({"sessions": "many", "pageViews": True})
    assert section == "（集計データなし）"


def test_improvement_prompt_embeds_knowledge_and_block_format():
    knowledge = [
        KnowledgeItem(item_id="K001", category="design", title="CTA改善", description="CTAを目立たせる"),
        KnowledgeItem(item_id="K002", category="content", title="事例追加", description="導入事例を掲載する"),
    ]
    prompt = prompt_builder.build_prompt(
        "comprehensive_improvement", "2026-09-01", "2026-09-30", {"sessions": 1000}, knowledge
    )

    assert "[K001] (design) CTA改善: CTAを目立たせる" in prompt
    assert "[K002] (content) 事例追加: 導入事例を掲載する" in prompt
    assert prompt_builder.RECOMMENDATION_HEADING in prompt
    assert '"sessions": 1000' in prompt
    assert "3〜5件" in prompt


def test_improvement_prompt_without_knowledge():
    prompt = prompt_builder.build_prompt("comprehensive_improvement", "2026-09-01", "2026-09-30", {})
    assert "ナレッジなし" in prompt


def test_improvement_prompt_matches_parser_conventions():
    """The format the prompt asks for is the format the parser and deduplicator read."""
    prompt = prompt_builder.build_prompt("comprehensive_improvement", "2026-09-01", "2026-09-30", {})

    for label in LabeledBlockStrategy.LABELS:
        assert f"{label}:" in prompt
    assert prompt_builder.BLOCK_SEPARATOR == LabeledBlockStrategy.SEPARATOR
    assert any(marker in prompt_builder.RECOMMENDATION_HEADING for marker in SELECTION_MARKERS)


def test_unknown_page_type_uses_generic_template():
    prompt = prompt_builder.build_prompt("made_up_page", "2026-09-01", "2026-09-30", {"foo": "バー"})

    assert "400文字以内" in prompt
    assert '"foo": "バー"' in prompt
