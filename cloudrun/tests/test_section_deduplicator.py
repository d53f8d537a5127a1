import sys
import os

# Add parent directory to path so we can import services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services import section_deduplicator


def test_text_without_list_is_returned_unchanged():
    text = "## 概要\nセッション数は1,000回でした。\n\n## 傾向\n週末に増加しています。"
    assert section_deduplicator.strip(text, "dashboard") == text


def test_list_is_cut_at_preceding_heading():
    text = """## 概要
セッション数は1,000回でした。

## 改善提案
1. 導線改善: CTAを上部に移動します。
2. 記事追加: 事例記事を追加します。
"""
    assert section_deduplicator.strip(text, "dashboard") == "## 概要\nセッション数は1,000回でした。"


def test_list_without_heading_is_cut_at_first_item():
    text = """セッション数は1,000回でした。

1. 導線改善: CTAを上部に移動します。
2. 記事追加: 事例記事を追加します。"""
    assert section_deduplicator.strip(text, "channels") == "セッション数は1,000回でした。"


def test_unconfirmed_single_item_is_not_a_list():
    text = "## 概要\n1. だけの行があります。\n以上です。"
    assert section_deduplicator.strip(text, "dashboard") == text


def test_scanning_continues_past_unconfirmed_item():
    filler = "\n".join(f"説明文{i}" for i in range(11))
    text = f"""## 概要
1. 単独の番号付き行
{filler}
## 施策
1. 導線改善: CTAを上部に移動します。
2. 記事追加: 事例記事を追加します。"""

    result = section_deduplicator.strip(text, "dashboard")

    assert result.endswith("説明文10")
    assert "## 施策" not in result
    assert "1. 単独の番号付き行" in result


def test_comprehensive_cut_at_selection_marker():
    text = """## 全体分析
CV数は10件でした。

## 推奨施策
タイトル: 導線改善
説明: CTAを上部に移動します。
カテゴリ: design
優先度: high"""
    assert section_deduplicator.strip(text, "comprehensive_improvement") == "## 全体分析\nCV数は10件でした。"


def test_comprehensive_ignores_numbered_lists():
    """Numbered lists inside the narrative stay when no selection marker exists."""
    text = """## 全体分析
1. モバイル比率が高い
2. 直帰率が高い"""
    assert section_deduplicator.strip(text, "comprehensive_improvement") == text


def test_empty_input():
    assert section_deduplicator.strip("", "dashboard") == ""
