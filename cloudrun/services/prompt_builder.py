# cloudrun/services/prompt_builder.py

"""
Prompt Context Builder

Renders the generation request for a page type:
- 16 report page types share one template driven by PAGE_TYPE_META.
- comprehensive_improvement has its own template that embeds the improvement
  knowledge base and asks for labeled recommendation blocks.
- Anything else gets a generic, low-detail template.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from services.models import COMPREHENSIVE_IMPROVEMENT
from services.knowledge_base import KnowledgeItem

# Must match what LabeledBlockStrategy and the deduplicator look for.
RECOMMENDATION_HEADING = "## 推奨施策"
BLOCK_SEPARATOR = "---"
MIN_SELECTED_ITEMS = 3
MAX_SELECTED_ITEMS = 5

SYSTEM_INSTRUCTION = (
    "あなたはGoogle Analytics 4のデータ分析の専門家です。"
    "データを分析し、ビジネスインサイトを提供する日本語の要約を生成してください。"
)

PAGE_TYPE_META: Dict[str, Dict[str, Any]] = {
    "dashboard": {
        "display_name": "ダッシュボード",
        "expert_role": "Webサイト全体のパフォーマンス分析の専門家",
        "analysis_goal": "全体的なサイトパフォーマンスの把握と主要な改善ポイントの特定",
        "key_metrics": ["ユーザー数", "セッション数", "PV数", "エンゲージメント率", "CV数", "CVR"],
        "perspectives": ["全体的なサイトパフォーマンスの健全性評価", "主要KPIの達成状況（具体的な数値を明記）", "最も改善が必要な領域の特定"],
        "actions": ["最も改善効果の高いKPIの特定と施策提案（具体的な数値目標を明示）", "クイックウィン（短期改善）とロングターム施策の提示", "定期的にモニタリングすべき指標の提示"],
    },
    "summary": {
        "display_name": "全体サマリー",
        "expert_role": "Webサイト分析の専門家",
        "analysis_goal": "期間全体のトレンド把握と重要な変化の特定",
        "key_metrics": ["ユーザー数", "セッション数", "PV数", "エンゲージメント率", "CV数", "月次推移"],
        "perspectives": ["期間全体のトレンドと変化点の分析（具体的な増減率を明記）", "月次推移から見る成長性", "季節性やイベントによる影響"],
        "actions": ["トレンドに基づく今後の施策方針（具体的な増減率に基づく）", "成長を加速させるための重点領域", "季節性を考慮した計画立案"],
    },
    "users": {
        "display_name": "ユーザー属性",
        "expert_role": "ユーザー行動分析とペルソナ設計の専門家",
        "analysis_goal": "ターゲット顧客層の把握とマーケティング戦略の最適化",
        "key_metrics": ["デバイス分布", "地域分布", "年齢層", "性別"],
        "perspectives": ["主要なターゲット顧客層の特定", "デバイス・地域・年齢・性別の傾向分析", "ペルソナに基づくコンテンツ最適化"],
        "actions": ["ターゲット顧客層に最適化したコンテンツ改善", "デバイス・地域別の最適化施策", "新規顧客層の開拓機会"],
    },
    "day": {
        "display_name": "日別分析",
        "expert_role": "Webサイトの時系列パフォーマンス分析の専門家",
        "analysis_goal": "日次トレンドの把握と異常値・ピークの特定",
        "key_metrics": ["日別セッション数", "日別CV数", "CVR推移"],
        "perspectives": ["日次のトレンドとピーク日の特定（具体的な日付と数値）", "異常値や急激な変化の要因分析", "定期的なパターンの発見"],
        "actions": ["ピーク日を活用したキャンペーン施策（具体的な日付を明示）", "低パフォーマンス日の改善策", "定期的なコンテンツ更新タイミング"],
    },
    "week": {
        "display_name": "曜日別分析",
        "expert_role": "Webサイトの時系列パフォーマンス分析の専門家",
        "analysis_goal": "曜日別パターンの把握とコンテンツ公開タイミングの最適化",
        "key_metrics": ["曜日別セッション数", "曜日別CV数", "曜日パターン"],
        "perspectives": ["曜日別のユーザー行動パターン（具体的な曜日と数値）", "平日と週末のパフォーマンス差", "コンテンツ公開の最適タイミング"],
        "actions": ["曜日別のコンテンツ公開戦略（具体的な曜日を明示）", "週末向け・平日向けコンテンツの最適化", "メールマガジンやSNS投稿の最適タイミング"],
    },
    "hour": {
        "display_name": "時間帯別分析",
        "expert_role": "Webサイトの時系列パフォーマンス分析の専門家",
        "analysis_goal": "時間帯別パターンの把握と広告配信タイミングの最適化",
        "key_metrics": ["時間帯別セッション数", "時間帯別CV数", "ピーク時間帯"],
        "perspectives": ["時間帯別のアクセスパターン（具体的な時間帯と数値）", "ピーク時間帯とオフピーク時間帯の特定", "広告配信やメール送信の最適タイミング"],
        "actions": ["ピーク時間帯に合わせた広告配信最適化（具体的な時間帯を明示）", "リアルタイムサポートの人員配置調整", "プッシュ通知やメール配信のタイミング最適化"],
    },
    "channels": {
        "display_name": "集客チャネル",
        "expert_role": "デジタルマーケティングとチャネル最適化の専門家",
        "analysis_goal": "集客チャネルの効果測定とマーケティング予算配分の最適化",
        "key_metrics": ["チャネル別セッション数", "チャネル別CV数", "チャネル別CVR"],
        "perspectives": ["高ROIチャネルの特定（データに記載されているチャネル名と実際のCVRを明記）", "チャネル別のユーザー品質評価", "マーケティング予算配分の最適化"],
        "actions": ["高ROIチャネルへの予算シフト（データに記載されている実際のチャネル名とCVRを明示）", "低パフォーマンスチャネルの改善または撤退", "新規チャネルの開拓機会"],
    },
    "keywords": {
        "display_name": "流入キーワード",
        "expert_role": "検索エンジン最適化（SEO）の専門家",
        "analysis_goal": "検索流入の拡大とSEO戦略の最適化",
        "key_metrics": ["クリック数", "インプレッション数", "CTR", "掲載順位"],
        "perspectives": ["高パフォーマンスキーワードの特徴（データに記載されている実際のキーワードとCTR・順位を明記）", "CTRや順位から見る改善機会", "新規コンテンツのキーワード選定"],
        "actions": ["タイトル・メタディスクリプションの改善（データに記載されている実際のキーワードを明示）", "コンテンツの追加・強化（具体的なキーワードに基づく）", "新規コンテンツのキーワード選定"],
    },
    "referrals": {
        "display_name": "被リンク元",
        "expert_role": "リファラルマーケティングとパートナーシップ戦略の専門家",
        "analysis_goal": "外部流入の拡大とパートナーシップの強化",
        "key_metrics": ["参照元別セッション数", "参照元別CV数", "参照元別CVR"],
        "perspectives": ["主要な参照元とトラフィック品質（データに記載されている実際の参照元URLと数値を明記）", "パートナーシップの効果測定", "新規参照元の開拓機会"],
        "actions": ["主要参照元との関係強化（データに記載されている実際の参照元URLを明示）", "新規パートナーシップの開拓", "被リンク獲得施策の強化"],
    },
    "pages": {
        "display_name": "ページ別",
        "expert_role": "Webサイトコンテンツ最適化の専門家",
        "analysis_goal": "コンテンツパフォーマンスの把握とページ改善の優先順位付け",
        "key_metrics": ["ページ別PV数", "ページ別ENG率", "ページ別CV数"],
        "perspectives": ["高エンゲージメントページの特徴（データに記載されている実際のページパスとPV数・ENG率を明記）", "低パフォーマンスページの課題", "コンテンツの優先改善順位"],
        "actions": ["高パフォーマンスページの横展開（データに記載されている実際のページパスを明示）", "低パフォーマンスページの改善（具体的なページパスとPV数・ENG率を明示）", "内部リンク構造の最適化"],
    },
    "pageCategories": {
        "display_name": "ページ分類別",
        "expert_role": "サイト構造最適化の専門家",
        "analysis_goal": "サイト構造とナビゲーションの改善",
        "key_metrics": ["カテゴリ別PV数", "カテゴリ別ページ数", "カテゴリ別ENG率"],
        "perspectives": ["カテゴリ別のユーザー関心度（データに記載されている実際のカテゴリ名とPV数を明記）", "サイト構造とナビゲーションの課題", "カテゴリ再編の必要性"],
        "actions": ["人気カテゴリへのアクセス導線強化（データに記載されている実際のカテゴリ名を明示）", "カテゴリ再編とナビゲーション改善", "低PVカテゴリのコンテンツ強化（具体的なカテゴリ名を明示）"],
    },
    "landingPages": {
        "display_name": "ランディングページ",
        "expert_role": "ランディングページ最適化（LPO）の専門家",
        "analysis_goal": "新規ユーザー獲得とランディングページの改善",
        "key_metrics": ["LP別セッション数", "LP別CV数", "LP別CVR", "直帰率"],
        "perspectives": ["高CVRランディングページの特徴（データに記載されている実際のページパスとCVRを明記）", "流入は多いが離脱が多いページ", "新規ユーザー獲得の改善ポイント"],
        "actions": ["高CVRページへの流入増加施策（データに記載されている実際のページパスとCVRを明示）", "低CVRページの改善（具体的なページパスを明示）", "新規ランディングページの作成"],
    },
    "fileDownloads": {
        "display_name": "ファイルダウンロード",
        "expert_role": "コンテンツマーケティングとリード獲得の専門家",
        "analysis_goal": "資料ダウンロードの最適化とリード獲得の向上",
        "key_metrics": ["ファイル別DL数", "ユーザー数", "平均DL数/人"],
        "perspectives": ["人気資料とユーザーニーズ（データに記載されている実際のファイル名とDL数を明記）", "ダウンロード導線の最適化", "リード獲得の改善機会"],
        "actions": ["人気資料への導線強化（データに記載されている実際のファイル名を明示）", "新規資料の企画・制作", "ダウンロード後のフォローアップ改善"],
    },
    "externalLinks": {
        "display_name": "外部リンククリック",
        "expert_role": "ユーザー行動分析とアフィリエイト最適化の専門家",
        "analysis_goal": "外部リンククリックの把握とパートナーシップ戦略の最適化",
        "key_metrics": ["リンク別クリック数", "ユーザー数", "平均クリック数/人"],
        "perspectives": ["ユーザーの関心がある外部コンテンツ（データに記載されている実際のリンクURLとクリック数を明記）", "アフィリエイトやパートナーシップの効果", "内部コンテンツ強化の機会"],
        "actions": ["人気外部リンクに関連する内部コンテンツ強化（データに記載されている実際のリンクURLを明示）", "アフィリエイトリンクの最適配置", "パートナーコンテンツの拡充"],
    },
    "conversions": {
        "display_name": "コンバージョン一覧",
        "expert_role": "コンバージョン最適化（CRO）の専門家",
        "analysis_goal": "コンバージョン傾向の把握と改善施策の提案",
        "key_metrics": ["イベント別CV数", "CV推移", "CV合計"],
        "perspectives": ["CVイベント別のパフォーマンス（データに記載されている実際のイベント名とCV数を明記）", "CV数の推移とトレンド", "CV最適化の優先順位"],
        "actions": ["高パフォーマンスCVイベントの強化（データに記載されている実際のイベント名とCV数を明示）", "低パフォーマンスCVの改善施策", "マイクロコンバージョンの設定"],
    },
    "reverseFlow": {
        "display_name": "逆算フロー",
        "expert_role": "ユーザー行動フローとファネル最適化の専門家",
        "analysis_goal": "CVに至るユーザー行動の把握とファネル改善",
        "key_metrics": ["CVからの逆算フロー", "主要な到達経路", "離脱ポイント"],
        "perspectives": ["CVに至る主要な行動パターン（データに記載されている実際のページパスを明記）", "ファネルのボトルネック", "離脱ポイントと改善機会"],
        "actions": ["CVに至る主要経路の強化（データに記載されている実際のページパスを明示）", "ファネルのボトルネック解消", "離脱ポイントの改善"],
    },
}

# (metrics key, label, unit, format)
AGGREGATE_FIELDS = [
    ("totalUsers", "総ユーザー数", "人", "int"),
    ("users", "総ユーザー数", "人", "int"),
    ("sessions", "総セッション数", "回", "int"),
    ("totalSessions", "総セッション数", "回", "int"),
    ("pageViews", "総PV数", "回", "int"),
    ("totalPageViews", "総PV数", "回", "int"),
    ("engagementRate", "エンゲージメント率", "%", "ratio1"),
    ("conversions", "総CV数", "件", "int"),
    ("totalConversions", "総CV数", "件", "int"),
    ("conversionRate", "CVR", "%", "ratio2"),
    ("totalClicks", "総クリック数", "回", "int"),
    ("totalImpressions", "総インプレッション数", "回", "int"),
    ("avgCTR", "平均CTR", "%", "float2"),
    ("avgPosition", "平均掲載順位", "位", "float1"),
    ("channelCount", "チャネル数", "件", "int"),
    ("keywordCount", "キーワード数", "件", "int"),
    ("referralCount", "参照元数", "件", "int"),
    ("pageCount", "ページ数", "件", "int"),
    ("categoryCount", "カテゴリ数", "件", "int"),
    ("landingPageCount", "ランディングページ数", "件", "int"),
    ("totalDownloads", "総ダウンロード数", "回", "int"),
    ("downloadCount", "ファイル数", "件", "int"),
    ("clickCount", "リンク数", "件", "int"),
    ("conversionEventCount", "CVイベント数", "件", "int"),
]

# Pre-formatted top-N sections supplied by the dashboard
DETAIL_SECTIONS = [
    ("topPages", "トップページ10"),
    ("topCategories", "トップカテゴリ5"),
    ("topChannels", "トップチャネル10"),
    ("topKeywords", "トップキーワード10"),
    ("topReferrals", "トップ参照元10"),
    ("topLandingPages", "トップランディングページ10"),
    ("topDownloads", "トップダウンロードファイル10"),
    ("topLinks", "トップ外部リンク10"),
    ("topDays", "トップ日別10"),
    ("weekPattern", "曜日別パターン"),
    ("topHours", "トップ時間帯10"),
    ("eventSummary", "CVイベント合計"),
]


def is_known_page_type(page_type: str) -> bool:
    return page_type in PAGE_TYPE_META or page_type == COMPREHENSIVE_IMPROVEMENT


def build_prompt(
    page_type: str,
    start_date: str,
    end_date: str,
    metrics: Dict[str, Any],
    knowledge: Optional[Sequence[KnowledgeItem]] = None,
) -> str:
    """Render the prompt text for one generation request."""
    period = f"{start_date}から{end_date}までの期間"

    if page_type == COMPREHENSIVE_IMPROVEMENT:
        return _build_improvement_prompt(period, metrics, knowledge or [])
    if page_type in PAGE_TYPE_META:
        return _build_page_prompt(page_type, period, metrics)
    return _build_generic_prompt(period, metrics)


# ============================================================================
# SHARED PAGE TEMPLATE
# ============================================================================

def _build_page_prompt(page_type: str, period: str, metrics: Dict[str, Any]) -> str:
    meta = PAGE_TYPE_META[page_type]
    perspectives = "\n".join(f"- {item}" for item in meta["perspectives"])
    actions = "\n".join(f"  - {item}" for item in meta["actions"])

    return f"""あなたは{meta['expert_role']}です。{period}のWebサイトの{meta['display_name']}データを分析し、**{meta['analysis_goal']}に役立つビジネスインサイト**を含む日本語の要約を**必ず800文字以内**で生成してください。

【分析データ】
{format_metrics_section(metrics)}

【分析の視点】
{perspectives}

【要求事項】
- **800文字以内で簡潔にまとめる**（これは厳守してください）
- Markdownの見出し記法（##, ###）を使用して構造化
- **全体傾向の分析**：{'、'.join(meta['key_metrics'])}から主要なパフォーマンスを評価
- **成功要因の特定**：高パフォーマンスの要素を分析
- **改善機会の抽出**：課題や改善の余地がある領域を特定
- **具体的なアクションを1-3点提案**（「1. タイトル: 説明」の番号付きリスト形式）：
{actions}
  - 各提案の実装難易度と効果を明示
- 数値の羅列ではなく、「どの要素を、どう改善すべきか」を具体的に記述

【データ使用の厳守事項】
- **提供されたデータに記載されている具体的な数値を必ず引用すること**
- **提供されたデータに記載されている実際の名称（ページパス、チャネル名、キーワードなど）を必ず使用すること**
- **架空の名称（「ページA」「チャネルX」など）は絶対に使用禁止**
- 分析は必ず「【分析データ】」セクションに記載された実際の数値と名称のみに基づいて行うこと
"""


def format_metrics_section(metrics: Dict[str, Any]) -> str:
    """Render aggregates and top-N sections; flat metrics count as aggregates."""
    aggregates = metrics.get("aggregates")
    if not isinstance(aggregates, dict):
        aggregates = metrics

    sections = []
    lines = []
    seen_labels = set()
    for key, label, unit, fmt in AGGREGATE_FIELDS:
        value = aggregates.get(key)
        if value is None or label in seen_labels:
            continue
        formatted = _format_value(value, fmt)
        if formatted is None:
            continue
        seen_labels.add(label)
        lines.append(f"- {label}: {formatted}{unit}")
    if lines:
        sections.append("\n".join(lines))

    for key, title in DETAIL_SECTIONS:
        if metrics.get(key):
            sections.append(f"\n【{title}】\n{metrics[key]}")

    if metrics.get("summary"):
        sections.append(f"\n【概要】{metrics['summary']}")

    return "\n".join(sections) if sections else "（集計データなし）"


def _format_value(value: Any, fmt: str) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if fmt == "int":
        return f"{int(value):,}"
    if fmt == "ratio1":
        return f"{value * 100:.1f}"
    if fmt == "ratio2":
        return f"{value * 100:.2f}"
    if fmt == "float1":
        return f"{value:.1f}"
    return f"{value:.2f}"


# ============================================================================
# COMPREHENSIVE IMPROVEMENT TEMPLATE
# ============================================================================

def format_knowledge_base(knowledge: Sequence[KnowledgeItem]) -> str:
    if not knowledge:
        return "（ナレッジなし：データから妥当な施策を提案してください）"
    return "\n".join(
        f"[{item.item_id}] ({item.category}) {item.title}: {item.description}"
        for item in knowledge
    )


def _build_improvement_prompt(period: str, metrics: Dict[str, Any], knowledge: List[KnowledgeItem]) -> str:
    data = json.dumps(metrics, ensure_ascii=False, indent=2, default=str)

    return f"""あなたはWebサイト改善コンサルタントです。{period}を中心とした包括的なアクセス解析データを分析し、サイト全体の改善案を作成してください。

【分析データ】
{data}

【改善施策ナレッジ】
{format_knowledge_base(knowledge)}

【出力手順】
1. まず「## 全体分析」という見出しで、データから読み取れる現状・強み・課題を600文字程度で記述してください。
   - この全体分析には**改善提案や推奨施策を一切含めないでください**。
   - 番号付きリストは使用しないでください。
2. 次に「{RECOMMENDATION_HEADING}」という見出しを書き、【改善施策ナレッジ】の中からデータに照らして効果が高い施策を**{MIN_SELECTED_ITEMS}〜{MAX_SELECTED_ITEMS}件**、ナレッジID（例: K001）で選定してください。
3. 選定した各施策を、以下の5つのラベルを使った形式で記述してください。各施策の間には「{BLOCK_SEPARATOR}」だけの行を入れてください。

タイトル: （ナレッジのタイトルをサイトに合わせて具体化したもの）
説明: （なぜこのサイトで有効なのか、データの数値を引用して2〜3文で）
カテゴリ: content / design / acquisition / feature / other のいずれか
優先度: urgent / high / medium / low のいずれか
期待効果: （期待される効果を具体的な指標で）
{BLOCK_SEPARATOR}

【厳守事項】
- ラベル名（タイトル、説明、カテゴリ、優先度、期待効果）は変更しないこと
- カテゴリと優先度は指定の英単語のみを使用すること
- 提供されたデータにない数値や名称を作らないこと
"""


# ============================================================================
# GENERIC FALLBACK
# ============================================================================

def _build_generic_prompt(period: str, metrics: Dict[str, Any]) -> str:
    data = json.dumps(metrics, ensure_ascii=False, indent=2, default=str)

    return f"""{period}のデータを分析し、**必ず400文字以内**で日本語の要約を生成してください。

【データ】
{data}

【要求事項】
- **400文字以内で簡潔にまとめる**（これは厳守してください）
- Markdownの見出し記法（##, ###）を使用して構造化
- 主要なポイントを3-5点にまとめる
- 改善提案を含める
"""
