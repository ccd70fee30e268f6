"""
Tests for instruction builders.

These tests verify the Phase 1 template expansion and status rules, the
Phase 2 report instruction, and the Phase 3 judgment instruction.
"""

from __future__ import annotations

import pytest

from conftest import movement, rule
from takt.runtime.piece.instructions import (
    InstructionContext,
    build_phase1_instruction,
    build_report_instruction,
    build_status_judgment_instruction,
    escape_template_chars,
    expand_instruction_template,
    generate_status_rules_components,
    render_execution_metadata,
)
from takt.runtime.types import AgentResponse, AgentStatus, OutputContract


def _context(**kwargs) -> InstructionContext:
    values = dict(
        task="Fix the login bug",
        iteration=2,
        max_iterations=10,
        movement_iteration=1,
        cwd="/repo",
    )
    values.update(kwargs)
    return InstructionContext(**values)


class TestTemplateExpansion:
    """Tests for expand_instruction_template."""

    def test_basic_placeholders(self):
        m = movement(
            "impl",
            instruction_template="Task: {task} ({iteration}/{max_iterations}, visit {movement_iteration})",
        )
        assert expand_instruction_template(m, _context()) == "Task: Fix the login bug (2/10, visit 1)"

    def test_previous_response_and_user_inputs(self):
        m = movement("impl", instruction_template="Prev: {previous_response}\nInputs: {user_inputs}")
        previous = AgentResponse(persona="plan", status=AgentStatus.DONE, content="the plan")
        text = expand_instruction_template(
            m, _context(previous_output=previous, user_inputs=["a", "b"])
        )
        assert "Prev: the plan" in text
        assert "Inputs: a\nb" in text

    def test_previous_response_left_alone_when_disabled(self):
        m = movement(
            "impl", instruction_template="Prev: {previous_response}", pass_previous_response=False
        )
        previous = AgentResponse(persona="plan", status=AgentStatus.DONE, content="the plan")
        assert expand_instruction_template(m, _context(previous_output=previous)) == (
            "Prev: {previous_response}"
        )

    def test_dynamic_content_cannot_inject_placeholders(self):
        m = movement("impl", instruction_template="{task} at {iteration}")
        text = expand_instruction_template(m, _context(task="use {iteration}"))
        assert text == "use ｛iteration｝ at 2"
        assert escape_template_chars("{x}") == "｛x｝"

    def test_report_dir_placeholder(self):
        m = movement("impl", instruction_template="Write to {report_dir}")
        assert (
            expand_instruction_template(m, _context(report_dir="/repo/.takt/runs/x/reports"))
            == "Write to /repo/.takt/runs/x/reports"
        )


class TestStatusRules:
    """Tests for status rule rendering."""

    def test_components(self):
        rules = [
            rule("ready", "impl"),
            rule("needs input", "ABORT", appendix="Question: ..."),
        ]
        components = generate_status_rules_components("plan", rules)

        assert "| # | Condition | Tag |" in components.criteria_table
        assert "| 1 | ready | `[PLAN:1]` |" in components.criteria_table
        assert "- `[PLAN:2]` — needs input" in components.output_list
        assert components.has_appendix
        assert "`[PLAN:2]`" in components.appendix_content
        assert "Question: ..." in components.appendix_content

    def test_interactive_only_rules_hidden_but_numbers_kept(self):
        rules = [
            rule("ask user", "ABORT", interactive_only=True),
            rule("ready", "impl"),
        ]
        components = generate_status_rules_components("plan", rules)

        assert "ask user" not in components.criteria_table
        assert "| 2 | ready | `[PLAN:2]` |" in components.criteria_table

    def test_japanese(self):
        components = generate_status_rules_components("plan", [rule("ok", "COMPLETE")], "ja")
        assert "状況" in components.criteria_table


class TestPhase1Instruction:
    """Tests for build_phase1_instruction."""

    def test_includes_metadata_and_rules(self):
        m = movement("plan", [rule("ready", "impl"), rule("unclear", "ABORT")])
        text = build_phase1_instruction(m, _context())

        assert text.startswith("## Execution Context")
        assert "- Working Directory: /repo" in text
        assert "- Iteration: 2/10" in text
        assert "- Movement: plan" in text
        assert "Do NOT run git commit" in text
        assert "Fix the login bug" in text
        assert "[PLAN:1]" in text

    def test_rules_omitted_when_requested(self):
        m = movement("plan", [rule('ai("ready")', "impl")])
        text = build_phase1_instruction(m, _context(), include_status_rules=False)
        assert "[PLAN:1]" not in text

    def test_metadata_without_piece_context(self):
        text = render_execution_metadata("/repo")
        assert "## Piece Context" not in text
        assert "Do NOT use `cd`" in text


class TestReportInstruction:
    """Tests for build_report_instruction."""

    def test_contents(self):
        m = movement(
            "review",
            output_contracts=[OutputContract(name="review.md", format="# Review\n- findings")],
        )
        text = build_report_instruction(
            m,
            target_file="review.md",
            cwd="/repo",
            report_dir="/repo/.takt/runs/x/reports",
            movement_iteration=3,
        )
        assert "- Target file: review.md" in text
        assert "- Movement iteration: 3" in text
        assert "Do NOT modify project source files" in text
        assert "## Instructions" in text
        assert "## Report Format" in text
        assert "# Review\n- findings" in text


class TestStatusJudgmentInstruction:
    """Tests for build_status_judgment_instruction."""

    def test_lists_conditions(self):
        m = movement("review", [rule("approved", "COMPLETE"), rule("needs_fix", "fix")])
        text = build_status_judgment_instruction(m)

        assert text.startswith("# Status Judgment")
        assert "[REVIEW:1]" in text
        assert "[REVIEW:2]" in text

    def test_japanese_heading(self):
        m = movement("review", [rule("approved", "COMPLETE"), rule("needs_fix", "fix")])
        text = build_status_judgment_instruction(m, language="ja")
        assert text.startswith("# ステータス判定")
        assert "[REVIEW:2]" in text

    def test_requires_rules(self):
        with pytest.raises(ValueError):
            build_status_judgment_instruction(movement("review"))
