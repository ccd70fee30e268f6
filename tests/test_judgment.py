"""
Tests for the status judgment strategy chain.

These tests verify:
- Strategy applicability (can_apply) and ordering
- Fall-through when an applicable strategy cannot produce a tag
- JudgmentError when nothing succeeds
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Tuple

import pytest

from conftest import movement, rule
from takt.runtime.errors import JudgmentError
from takt.runtime.piece.judgment import (
    AgentConsultStrategy,
    AutoSelectStrategy,
    JudgmentContext,
    JudgmentStrategyChain,
    ReportBasedStrategy,
    ResponseBasedStrategy,
    default_strategies,
)
from takt.runtime.providers.mock import MockAiJudge
from takt.runtime.types import AgentResponse, AgentStatus, OutputContract


class MockConsult:
    """Records consult calls and answers with scripted content."""

    def __init__(self, content: str = "", status: AgentStatus = AgentStatus.DONE):
        self.content = content
        self.status = status
        self.calls: List[Tuple[str, str]] = []

    async def __call__(self, instruction: str, session_id: str) -> AgentResponse:
        self.calls.append((instruction, session_id))
        return AgentResponse(persona="review", status=self.status, content=self.content)


def _review(**kwargs):
    return movement(
        "review",
        [rule("approved", "COMPLETE"), rule("needs_fix", "fix")],
        **kwargs,
    )


def _ctx(m, judge=None, **kwargs) -> JudgmentContext:
    return JudgmentContext(movement=m, judge=judge or MockAiJudge(), cwd="/repo", **kwargs)


class TestStrategies:
    """Tests for individual strategies."""

    def test_default_order(self):
        assert [s.name for s in default_strategies()] == [
            "auto_select",
            "report_based",
            "response_based",
            "agent_consult",
        ]

    def test_auto_select(self):
        single = movement("impl", [rule("done", "COMPLETE")])
        strategy = AutoSelectStrategy()

        assert strategy.can_apply(_ctx(single))
        assert not strategy.can_apply(_ctx(_review()))
        result = asyncio.run(strategy.execute(_ctx(single)))
        assert result.success
        assert result.tag == "[IMPL:1]"

    def test_report_based_requires_existing_reports(self, tmp_path: Path):
        m = _review(output_contracts=[OutputContract(name="review.md")])
        strategy = ReportBasedStrategy()

        assert not strategy.can_apply(_ctx(m, report_dir=str(tmp_path)))
        (tmp_path / "review.md").write_text("Two blocking issues")
        assert strategy.can_apply(_ctx(m, report_dir=str(tmp_path)))

    def test_report_based_judges_report_content(self, tmp_path: Path):
        m = _review(output_contracts=[OutputContract(name="review.md")])
        (tmp_path / "review.md").write_text("Two blocking issues")
        judge = MockAiJudge([1])

        result = asyncio.run(ReportBasedStrategy().execute(_ctx(m, judge, report_dir=str(tmp_path))))

        assert result.tag == "[REVIEW:2]"
        assert judge.outputs == ["# review.md\n\nTwo blocking issues"]

    def test_response_based(self):
        judge = MockAiJudge([0])
        ctx = _ctx(_review(), judge, last_response="All good")

        assert ResponseBasedStrategy().can_apply(ctx)
        assert not ResponseBasedStrategy().can_apply(_ctx(_review(), last_response="  "))
        result = asyncio.run(ResponseBasedStrategy().execute(ctx))
        assert result.tag == "[REVIEW:1]"

    def test_judge_position_mapped_past_interactive_only_rules(self):
        m = movement(
            "review",
            [
                rule("ask user", "ABORT", interactive_only=True),
                rule("approved", "COMPLETE"),
                rule("needs_fix", "fix"),
            ],
        )
        judge = MockAiJudge([1])
        result = asyncio.run(
            ResponseBasedStrategy().execute(_ctx(m, judge, last_response="fix it"))
        )
        assert result.tag == "[REVIEW:3]"
        assert [c.text for c in judge.calls[0]] == ["approved", "needs_fix"]

    def test_agent_consult(self):
        consult = MockConsult("[REVIEW:2]")
        ctx = _ctx(_review(), session_id="sess-1", consult=consult)

        assert AgentConsultStrategy().can_apply(ctx)
        assert not AgentConsultStrategy().can_apply(_ctx(_review(), consult=consult))
        result = asyncio.run(AgentConsultStrategy().execute(ctx))

        assert result.tag == "[REVIEW:2]"
        assert consult.calls[0][1] == "sess-1"
        assert consult.calls[0][0].startswith("# Status Judgment")

    def test_agent_consult_without_tag_fails(self):
        ctx = _ctx(_review(), session_id="sess-1", consult=MockConsult("not sure"))
        result = asyncio.run(AgentConsultStrategy().execute(ctx))
        assert not result.success


class TestJudgmentStrategyChain:
    """Tests for JudgmentStrategyChain.judge."""

    def test_first_applicable_strategy_wins(self):
        consult = MockConsult("[REVIEW:2]")
        ctx = _ctx(
            _review(),
            MockAiJudge([0]),
            last_response="All good",
            session_id="sess-1",
            consult=consult,
        )
        result = asyncio.run(JudgmentStrategyChain().judge(ctx))

        assert result.strategy == "response_based"
        assert result.tag == "[REVIEW:1]"
        assert consult.calls == []

    def test_falls_through_to_next_applicable(self):
        consult = MockConsult("[REVIEW:2]")
        ctx = _ctx(
            _review(),
            MockAiJudge([-1]),
            last_response="Unclear",
            session_id="sess-1",
            consult=consult,
        )
        result = asyncio.run(JudgmentStrategyChain().judge(ctx))

        assert result.strategy == "agent_consult"
        assert result.tag == "[REVIEW:2]"

    def test_raises_when_nothing_succeeds(self):
        ctx = _ctx(_review(), MockAiJudge([-1]), last_response="Unclear")
        with pytest.raises(JudgmentError, match="response_based"):
            asyncio.run(JudgmentStrategyChain().judge(ctx))

    def test_raises_when_nothing_applies(self):
        with pytest.raises(JudgmentError, match="no applicable judgment strategy"):
            asyncio.run(JudgmentStrategyChain().judge(_ctx(_review())))

    def test_custom_strategy_list(self):
        chain = JudgmentStrategyChain([AgentConsultStrategy()])
        assert [s.name for s in chain.strategies] == ["agent_consult"]
