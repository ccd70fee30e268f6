"""
instructions.py - Instruction text for the three execution phases.

- Phase 1: the movement's instruction_template with placeholders filled in,
  preceded by execution metadata and followed by the status-rule table
- Phase 2: a report request naming one target file
- Phase 3: a status judgment request listing the rule table

Supported Phase 1 placeholders:
    {task}, {iteration}, {max_iterations}, {movement_iteration},
    {previous_response}, {user_inputs}, {report_dir}

Text is rendered in English ('en') or Japanese ('ja').
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from takt.runtime.types import AgentResponse, Movement, OutputContract, PieceRule

from .evaluation.tags import build_tag, visible_rule_indices

SUPPORTED_LANGUAGES = ("en", "ja")


def _lang(language: Optional[str]) -> str:
    return language if language in SUPPORTED_LANGUAGES else "en"


# =============================================================================
# Localized strings
# =============================================================================

_METADATA_STRINGS: Dict[str, Dict[str, str]] = {
    "en": {
        "heading": "## Execution Context",
        "working_directory": "Working Directory",
        "piece_heading": "## Piece Context",
        "iteration": "Iteration",
        "movement": "Movement",
        "rules_heading": "## Execution Rules",
        "no_commit": "**Do NOT run git commit.** Commits are handled automatically after the piece completes.",
        "no_cd": "**Do NOT use `cd` in Bash commands.** Your working directory is already set correctly.",
        "note": "Note: This section is metadata. Follow the language used in the rest of the prompt.",
    },
    "ja": {
        "heading": "## 実行コンテキスト",
        "working_directory": "作業ディレクトリ",
        "piece_heading": "## ピースコンテキスト",
        "iteration": "イテレーション",
        "movement": "ムーブメント",
        "rules_heading": "## 実行ルール",
        "no_commit": "**git commit を実行しないでください。** コミットはピース完了後にシステムが自動で行います。",
        "no_cd": "**Bashコマンドで `cd` を使用しないでください。** 作業ディレクトリは既に正しく設定されています。",
        "note": "",
    },
}

_STATUS_RULE_STRINGS: Dict[str, Dict[str, str]] = {
    "en": {
        "heading": "# Required: Status Output Rules",
        "warning": "**The piece will stop without this tag.**",
        "instruction": "Your final output MUST include a status tag following the rules below.",
        "criteria_heading": "## Decision Criteria",
        "header_condition": "Condition",
        "header_tag": "Tag",
        "output_heading": "## Output Format",
        "output_instruction": "Output the tag corresponding to your decision:",
        "appendix_heading": "### Appendix Template",
        "appendix_instruction": "When outputting `[{tag}]`, append the following:",
    },
    "ja": {
        "heading": "# 必須: ステータス出力ルール",
        "warning": "**このタグがないとピースが停止します。**",
        "instruction": "最終出力には必ず以下のルールに従ったステータスタグを含めてください。",
        "criteria_heading": "## 判定基準",
        "header_condition": "状況",
        "header_tag": "タグ",
        "output_heading": "## 出力フォーマット",
        "output_instruction": "判定に対応するタグを出力してください:",
        "appendix_heading": "### 追加出力テンプレート",
        "appendix_instruction": "`[{tag}]` を出力する場合、以下を追記してください:",
    },
}

_REPORT_STRINGS: Dict[str, Dict[str, str]] = {
    "en": {
        "heading": "## Report Output",
        "target": "Target file",
        "report_dir": "Report directory",
        "movement_iteration": "Movement iteration",
        "rules_heading": "## Report Rules",
        "no_modify": "**Do NOT modify project source files.** Only produce the report content.",
        "plain_text": "Respond with the report body only. It is written to the target file as-is.",
        "instructions_heading": "## Instructions",
        "instructions": "Summarize the work you just did in this session as the report `{file}`.",
        "format_heading": "## Report Format",
    },
    "ja": {
        "heading": "## レポート出力",
        "target": "対象ファイル",
        "report_dir": "レポートディレクトリ",
        "movement_iteration": "ムーブメントイテレーション",
        "rules_heading": "## レポートルール",
        "no_modify": "**プロジェクトのソースファイルを変更しないでください。** レポート本文のみを出力してください。",
        "plain_text": "レポート本文のみを回答してください。そのまま対象ファイルに書き込まれます。",
        "instructions_heading": "## 指示",
        "instructions": "このセッションで行った作業をレポート `{file}` としてまとめてください。",
        "format_heading": "## レポートフォーマット",
    },
}

_JUDGMENT_STRINGS: Dict[str, Dict[str, str]] = {
    "en": {
        "heading": "# Status Judgment",
        "intro": "Review the work you did in this session and decide which condition applies.",
        "no_tools": "Do not use any tools. Answer with the status tag only.",
    },
    "ja": {
        "heading": "# ステータス判定",
        "intro": "このセッションで行った作業を振り返り、該当する状況を判定してください。",
        "no_tools": "ツールは使用せず、ステータスタグのみを回答してください。",
    },
}


# =============================================================================
# Status rules
# =============================================================================


@dataclass
class StatusRulesComponents:
    criteria_table: str
    output_list: str
    has_appendix: bool
    appendix_content: str


def generate_status_rules_components(
    movement_name: str,
    rules: List[PieceRule],
    language: Optional[str] = "en",
    interactive: bool = False,
) -> StatusRulesComponents:
    """Render the rule table, tag list and appendix blocks for a movement.

    Interactive-only rules are omitted unless interactive is enabled; visible
    rules keep their original 1-based numbers.
    """
    strings = _STATUS_RULE_STRINGS[_lang(language)]
    visible = visible_rule_indices(rules, interactive)

    table_lines = [
        f"| # | {strings['header_condition']} | {strings['header_tag']} |",
        "|---|------|------|",
    ]
    table_lines.extend(
        f"| {i + 1} | {rules[i].condition} | `{build_tag(movement_name, i + 1)}` |"
        for i in visible
    )

    output_lines = [strings["output_instruction"], ""]
    output_lines.extend(
        f"- `{build_tag(movement_name, i + 1)}` — {rules[i].condition}" for i in visible
    )

    appendix_blocks: List[str] = []
    for i in visible:
        appendix = rules[i].appendix
        if not appendix:
            continue
        tag = build_tag(movement_name, i + 1)
        appendix_blocks.append("")
        appendix_blocks.append(strings["appendix_instruction"].replace("[{tag}]", tag))
        appendix_blocks.append("```")
        appendix_blocks.append(appendix.rstrip())
        appendix_blocks.append("```")

    return StatusRulesComponents(
        criteria_table="\n".join(table_lines),
        output_list="\n".join(output_lines),
        has_appendix=bool(appendix_blocks),
        appendix_content="\n".join(appendix_blocks),
    )


def render_status_rules(
    movement_name: str,
    rules: List[PieceRule],
    language: Optional[str] = "en",
    interactive: bool = False,
) -> str:
    """Render the full status-rule section appended to Phase 1 instructions."""
    strings = _STATUS_RULE_STRINGS[_lang(language)]
    components = generate_status_rules_components(movement_name, rules, language, interactive)
    lines = [
        strings["heading"],
        "",
        strings["warning"],
        strings["instruction"],
        "",
        strings["criteria_heading"],
        "",
        components.criteria_table,
        "",
        strings["output_heading"],
        "",
        components.output_list,
    ]
    if components.has_appendix:
        lines.extend(["", strings["appendix_heading"], components.appendix_content])
    return "\n".join(lines)


# =============================================================================
# Phase 1
# =============================================================================


@dataclass
class InstructionContext:
    """Values available to Phase 1 template expansion."""

    task: str
    iteration: int
    max_iterations: int
    movement_iteration: int
    cwd: str
    user_inputs: List[str] = field(default_factory=list)
    previous_output: Optional[AgentResponse] = None
    report_dir: Optional[str] = None
    language: Optional[str] = "en"
    interactive: bool = False


def escape_template_chars(text: str) -> str:
    """Replace braces in dynamic content so it cannot inject placeholders."""
    return text.replace("{", "｛").replace("}", "｝")


def render_execution_metadata(
    cwd: str,
    language: Optional[str] = "en",
    iteration: Optional[str] = None,
    movement: Optional[str] = None,
) -> str:
    strings = _METADATA_STRINGS[_lang(language)]
    lines = [
        strings["heading"],
        f"- {strings['working_directory']}: {cwd}",
    ]
    if iteration is not None and movement is not None:
        lines.extend(
            [
                "",
                strings["piece_heading"],
                f"- {strings['iteration']}: {iteration}",
                f"- {strings['movement']}: {movement}",
            ]
        )
    lines.extend(
        [
            "",
            strings["rules_heading"],
            f"- {strings['no_commit']}",
            f"- {strings['no_cd']}",
        ]
    )
    if strings["note"]:
        lines.extend(["", strings["note"]])
    lines.append("")
    return "\n".join(lines)


def expand_instruction_template(movement: Movement, context: InstructionContext) -> str:
    """Fill the movement's instruction_template placeholders."""
    instruction = movement.instruction_template
    instruction = instruction.replace("{task}", escape_template_chars(context.task))
    instruction = instruction.replace("{iteration}", str(context.iteration))
    instruction = instruction.replace("{max_iterations}", str(context.max_iterations))
    instruction = instruction.replace("{movement_iteration}", str(context.movement_iteration))

    if movement.pass_previous_response:
        previous = context.previous_output.content if context.previous_output else ""
        instruction = instruction.replace("{previous_response}", escape_template_chars(previous))

    instruction = instruction.replace(
        "{user_inputs}", escape_template_chars("\n".join(context.user_inputs))
    )
    if context.report_dir:
        instruction = instruction.replace("{report_dir}", context.report_dir)
    return instruction


def build_phase1_instruction(
    movement: Movement,
    context: InstructionContext,
    include_status_rules: bool = True,
) -> str:
    """Build the Phase 1 instruction for a movement."""
    body = expand_instruction_template(movement, context)
    if include_status_rules and movement.rules:
        body = (
            f"{body}\n\n"
            f"{render_status_rules(movement.name, movement.rules, context.language, context.interactive)}"
        )
    metadata = render_execution_metadata(
        context.cwd,
        context.language,
        iteration=f"{context.iteration}/{context.max_iterations}",
        movement=movement.name,
    )
    return f"{metadata}\n{body}"


# =============================================================================
# Phase 2
# =============================================================================


def build_report_instruction(
    movement: Movement,
    target_file: str,
    cwd: str,
    report_dir: str,
    movement_iteration: int,
    language: Optional[str] = "en",
) -> str:
    """Build the Phase 2 instruction asking for one report file's content."""
    strings = _REPORT_STRINGS[_lang(language)]
    contract: Optional[OutputContract] = next(
        (c for c in movement.output_contracts if c.name == target_file), None
    )
    lines = [
        render_execution_metadata(cwd, language),
        strings["heading"],
        f"- {strings['target']}: {target_file}",
        f"- {strings['report_dir']}: {report_dir}",
        f"- {strings['movement_iteration']}: {movement_iteration}",
        "",
        strings["rules_heading"],
        f"- {strings['no_modify']}",
        f"- {strings['plain_text']}",
        "",
        strings["instructions_heading"],
        strings["instructions"].replace("{file}", target_file),
    ]
    if contract is not None and contract.order:
        lines.extend(["", contract.order.rstrip()])
    if contract is not None and contract.format:
        lines.extend(["", strings["format_heading"], contract.format.rstrip()])
    return "\n".join(lines)


# =============================================================================
# Phase 3
# =============================================================================


def build_status_judgment_instruction(
    movement: Movement,
    language: Optional[str] = "en",
    interactive: bool = False,
) -> str:
    """Build the Phase 3 instruction.

    Args:
        movement: Movement being judged; must have rules.
        language: 'en' or 'ja'.
        interactive: Whether interactive-only rules are visible.

    Raises:
        ValueError: If the movement has no rules.
    """
    if not movement.rules:
        raise ValueError(f"Status judgment requested for movement '{movement.name}' with no rules")

    lang = _lang(language)
    strings = _JUDGMENT_STRINGS[lang]
    rule_strings = _STATUS_RULE_STRINGS[lang]
    components = generate_status_rules_components(
        movement.name, movement.rules, lang, interactive
    )

    lines = [strings["heading"], "", strings["intro"], strings["no_tools"], ""]
    lines.extend(
        [
            rule_strings["criteria_heading"],
            "",
            components.criteria_table,
            "",
            rule_strings["output_heading"],
            "",
            components.output_list,
        ]
    )
    if components.has_appendix:
        lines.append(components.appendix_content)
    return "\n".join(lines)
