from dataclasses import dataclass, field
from typing import List, Optional

from doya_banner.extractors import InferredBannerInfo, safe_trim

NOT_SPECIFIED = "未指定"
NOT_INFERRED = "未推定"


@dataclass
class BannerPromptInput:
    target_url: str
    size: str
    language: str = "ja"
    logo_image: Optional[str] = None
    person_images: int = 0
    main_color: Optional[str] = None
    sub_color: Optional[str] = None
    tone_keywords: Optional[str] = None
    avoid: Optional[str] = None
    must_include: Optional[str] = None
    page_title: str = ""
    page_description: str = ""
    page_text: str = ""
    color_hints: str = ""
    visual_hints: str = ""
    inferred: InferredBannerInfo = field(default_factory=InferredBannerInfo)


def _or(value: Optional[str], default: str) -> str:
    return value if value else default


def _evidence(keywords: Optional[List[str]]) -> str:
    items = [safe_trim(str(x or ""), 24) for x in (keywords or [])]
    return "、".join([x for x in items if x][:12]) or "なし"


def build_website_banner_prompt(inp: BannerPromptInput) -> str:
    inf = inp.inferred or InferredBannerInfo()
    industry = safe_trim(inf.industry, 64) or NOT_INFERRED
    objective = safe_trim(inf.objective, 64) or NOT_INFERRED
    target = safe_trim(inf.target, 120) or NOT_INFERRED
    logo = "あり（提供済み）" if inp.logo_image else "なし"
    persons = f"{inp.person_images}枚（提供済み）" if inp.person_images else "なし"

    return f"""あなたは「広告・マーケティング成果を最大化するバナー」を専門に制作する、トップレベルの広告デザイナー兼マーケターです。

これから渡されるのは、あるWebサイト（target_url）を解析して得られた情報です。

【あなたの目的】
そのサイト内容・業種・ユーザー心理に最適化された「思わずクリック・申込み・ダウンロードしたくなる広告バナー」を生成してください。

単なる見た目の良さではなく、
・広告として強い（クリック/申込につながる）
・情報が一瞬で伝わる（視認性/優先順位）
・実際に使われていそう（人が作ったようなクオリティ）
を最優先してください。

---

【最重要：あなたが内部で必ず行うステップ】

STEP1: サイト理解（推定してよいが、根拠は page_text/metadata から）
- サービス内容（何を提供しているか）
- 業種/業界（該当しやすいものを1つ選ぶ）
- 想定ターゲット（年齢/性別/立場/状況）
- 提供価値（ベネフィット：ユーザーが得る結果）
- 強い訴求軸（価格/実績/簡単/限定/専門性/権威性/緊急性 など）
- 最適CTA（問い合わせ/資料DL/無料相談/申込/購入/採用応募など）

STEP2: 勝ちパターン（構成）を自動選択（必須）
以下のいずれかを選び、業種に最適化して使うこと（混ぜすぎない）：
1) 課題提起 → 解決策 → ベネフィット → 信頼要素 → CTA（BtoB/SaaSに強い）
2) ベネフィット先出し → 実績/根拠 → 具体内容 → CTA（教育/スクールに強い）
3) オファー（割引/特典） → 期限/限定 → 商品/内容 → CTA（EC/キャンペーンに強い）
4) 効果/変化 → 成分/理由 → 安心要素（監修/実績） → CTA（美容/健康に強い）
5) 仕事内容/魅力 → 条件/メリット → 信頼/文化 → CTA（採用/転職に強い）

STEP3: コピー設計（日本の広告バナーらしい短さ/強さ）
- メイン見出し：短く強い（目安 8〜16文字）。一瞬で価値が伝わる言い回し。
- サブコピー：0〜2行。補足は削り、主張を強める。
- CTA：短く自然（例：無料で試す/資料DL/無料相談/今すぐチェック）
- 重要：根拠のない数字や誇張（「必ず」「100%」等）は禁止。サイトに明示がある場合のみ数値利用可。

STEP4: デザイン（人間のデザイナーの思考）
- 文字が「確実に読める」ことを最優先（コントラスト、余白、文字量）
- 情報の優先順位：メインコピー ＞ サブコピー ＞ CTA ＞ 補足（ロゴ等）
- 写真/人物/商品は “意味のある配置” と “視線誘導” を行う（ただ置かない）
- 安っぽい/AI感が強い装飾は禁止（過度なグロー、雑な3D、過密、ランダムフォント）
- BtoB/教育は「信頼・整理・プロ感」、ECは「お得感・緊急性」、美容は「清潔感・余白」を優先

STEP5: 最終プロンプト（image_generation_prompt）を作る
- 1本のプロンプトとして完結（見出し/箇条書き不要）
- 生成するバナーは日本語。文字が崩れない/読めるよう強く指示
- サイズ（size）に合わせたレイアウトの指示を含める

---

【システムから渡す解析情報（この情報のみで設計する）】
- target_url: {inp.target_url}
- size: {inp.size}
- language: {inp.language}
- optional_assets:
  - logo_image: {logo}
  - person_images: {persons}
- brand_constraints:
  - main_color: {_or(inp.main_color, NOT_SPECIFIED)}
  - sub_color: {_or(inp.sub_color, NOT_SPECIFIED)}
  - tone_keywords: {_or(inp.tone_keywords, NOT_SPECIFIED)}
- compliance:
  - avoid: {_or(inp.avoid, NOT_SPECIFIED)}
  - must_include: {_or(inp.must_include, NOT_SPECIFIED)}
- page_title: {safe_trim(inp.page_title, 200)}
- page_description: {safe_trim(inp.page_description, 320)}
- color_hints: {safe_trim(inp.color_hints, 800)}
- visual_hints: {safe_trim(inp.visual_hints, 1400)}

【バックエンド推定ヒント（あくまでヒント。矛盾する場合は page_text を優先）】
- inferred_industry: {industry}
- inferred_objective: {objective}
- inferred_target: {target}
- inferred_evidence_keywords: {_evidence(inf.evidence_keywords)}

### page_text（重要：ページ本文の抜粋）
{safe_trim(inp.page_text, 18000)}

---

【出力形式（厳守）】
次の2つだけを出力する（JSONのみ。余計な文章やキーは禁止）：
{{
  "banner_analysis": "",
  "image_generation_prompt": ""
}}

【banner_analysis に必ず含める（見出し付き）】
1) サイトの要約（サービス/業種/ターゲット/ベネフィット）
2) 採用した勝ちパターン（上の1〜5のどれか）と理由
3) 訴求軸（信頼/お得/権威/緊急など）とCTA方針
4) メインカラー/サブカラー（color_hints/visual_hintsを根拠に）
5) 採用するコピー案（メイン/サブ/CTA）※日本語で
（長すぎると失敗しやすいので banner_analysis は全体で 900〜1400文字以内に要約する）

【image_generation_prompt の厳格ルール】
- そのまま画像生成AIに渡せる “完成形の1本のプロンプト” のみ
- 具体的に「レイアウト」「背景」「配色」「文字の階層」「CTAボタン」「余白」「写真/人物/商品配置」を指示
- 日本語テキストは “読みやすく正確に” を強制（文字崩れ禁止、過密禁止）
- 広告として実在しそうなクオリティ（安っぽさ/AI感の強いデザインは禁止）
- 虚偽・過剰表現は禁止。"""


BASE_DESIGN_MODE = (
    "=== BASE DESIGN MODE (SIMILAR REGENERATION) ===\n"
    "Use the FIRST provided reference image as the base design template.\n"
    "- Keep a similar overall layout / composition / spacing as the reference.\n"
    "- Do NOT copy it 1:1. Generate new originals that feel like variations made by the same designer.\n"
    "- Across multiple outputs, vary details (photo scene, accent shapes, CTA style, color accent) while staying in the same template."
)


def build_base_design_prompt(image_prompt: str) -> str:
    """Image prompt for regenerating banners that resemble a chosen base banner."""
    return f"{image_prompt}\n\n{BASE_DESIGN_MODE}"
