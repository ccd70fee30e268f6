"""
judgment.py - Capability-gated fallback chain for status judgment.

Strategies, in order:
1. AutoSelectStrategy    exactly one rule; returns [NAME:1] with no call
2. ReportBasedStrategy   configured report files exist; judges their latest content
3. ResponseBasedStrategy a non-empty last response exists; judges it
4. AgentConsultStrategy  a session exists; resumes it and asks for the tag

The chain walks the list and executes the first strategy whose can_apply()
is true. A strategy that runs but cannot produce a tag hands over to the
next applicable one; JudgmentError is raised only when none succeeds.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from takt.runtime.agents import AiJudge, JudgeCondition
from takt.runtime.errors import JudgmentError
from takt.runtime.types import AgentResponse, AgentStatus, Movement

from .evaluation.tags import auto_select_tag, build_tag, detect_rule_index, has_only_one_branch
from .instructions import build_status_judgment_instruction
from .reports import collect_existing_reports

logger = logging.getLogger(__name__)

# (instruction, session_id) -> response from the resumed session
ConsultCallable = Callable[[str, str], Awaitable[AgentResponse]]


@dataclass
class JudgmentContext:
    movement: Movement
    judge: AiJudge
    cwd: str
    report_dir: Optional[str] = None
    last_response: Optional[str] = None
    session_id: Optional[str] = None
    consult: Optional[ConsultCallable] = None
    language: str = "en"
    interactive: bool = False


@dataclass
class JudgmentResult:
    success: bool
    tag: Optional[str] = None
    strategy: Optional[str] = None
    error: Optional[str] = None


class JudgmentStrategy(ABC):
    """One way of producing a status tag."""

    name: str = "strategy"

    @abstractmethod
    def can_apply(self, ctx: JudgmentContext) -> bool:
        ...

    @abstractmethod
    async def execute(self, ctx: JudgmentContext) -> JudgmentResult:
        ...

    def _failed(self, error: str) -> JudgmentResult:
        return JudgmentResult(success=False, strategy=self.name, error=error)


class AutoSelectStrategy(JudgmentStrategy):
    name = "auto_select"

    def can_apply(self, ctx: JudgmentContext) -> bool:
        return has_only_one_branch(ctx.movement)

    async def execute(self, ctx: JudgmentContext) -> JudgmentResult:
        return JudgmentResult(success=True, tag=auto_select_tag(ctx.movement), strategy=self.name)


class _JudgeBasedStrategy(JudgmentStrategy):
    """Shared AI-judge step for strategies that judge a text basis."""

    async def _judge_basis(self, ctx: JudgmentContext, basis: str) -> JudgmentResult:
        rules = ctx.movement.rules
        candidates = [
            (i, rule.condition)
            for i, rule in enumerate(rules)
            if ctx.interactive or not rule.interactive_only
        ]
        conditions = [JudgeCondition(index=pos, text=text) for pos, (_, text) in enumerate(candidates)]
        position = await ctx.judge.judge(basis, conditions, ctx.cwd)
        if 0 <= position < len(candidates):
            rule_index = candidates[position][0]
            return JudgmentResult(
                success=True,
                tag=build_tag(ctx.movement.name, rule_index + 1),
                strategy=self.name,
            )
        return self._failed("judge did not match any condition")


class ReportBasedStrategy(_JudgeBasedStrategy):
    name = "report_based"

    def can_apply(self, ctx: JudgmentContext) -> bool:
        if not ctx.report_dir or not ctx.movement.report_files:
            return False
        return bool(collect_existing_reports(ctx.report_dir, ctx.movement.report_files))

    async def execute(self, ctx: JudgmentContext) -> JudgmentResult:
        reports = collect_existing_reports(ctx.report_dir, ctx.movement.report_files)
        if not reports:
            return self._failed("no report files found")
        basis = "\n\n---\n\n".join(f"# {name}\n\n{content}" for name, content in reports)
        return await self._judge_basis(ctx, basis)


class ResponseBasedStrategy(_JudgeBasedStrategy):
    name = "response_based"

    def can_apply(self, ctx: JudgmentContext) -> bool:
        return bool(ctx.last_response and ctx.last_response.strip())

    async def execute(self, ctx: JudgmentContext) -> JudgmentResult:
        return await self._judge_basis(ctx, ctx.last_response or "")


class AgentConsultStrategy(JudgmentStrategy):
    name = "agent_consult"

    def can_apply(self, ctx: JudgmentContext) -> bool:
        return bool(ctx.session_id) and ctx.consult is not None

    async def execute(self, ctx: JudgmentContext) -> JudgmentResult:
        instruction = build_status_judgment_instruction(
            ctx.movement, language=ctx.language, interactive=ctx.interactive
        )
        response = await ctx.consult(instruction, ctx.session_id)
        if response.status != AgentStatus.DONE:
            return self._failed(response.error or f"agent returned {response.status.value}")
        index = detect_rule_index(response.content, ctx.movement.name)
        if index < 0 or index >= len(ctx.movement.rules):
            return self._failed("agent response contained no valid status tag")
        return JudgmentResult(
            success=True, tag=build_tag(ctx.movement.name, index + 1), strategy=self.name
        )


def default_strategies() -> List[JudgmentStrategy]:
    return [
        AutoSelectStrategy(),
        ReportBasedStrategy(),
        ResponseBasedStrategy(),
        AgentConsultStrategy(),
    ]


class JudgmentStrategyChain:
    """Runs strategies in order until one produces a tag."""

    def __init__(self, strategies: Optional[List[JudgmentStrategy]] = None):
        self._strategies = strategies if strategies is not None else default_strategies()

    @property
    def strategies(self) -> List[JudgmentStrategy]:
        return list(self._strategies)

    async def judge(self, ctx: JudgmentContext) -> JudgmentResult:
        """Produce a status tag for ctx.movement.

        Raises:
            JudgmentError: If no applicable strategy produced a tag.
        """
        errors: List[str] = []
        for strategy in self._strategies:
            if not strategy.can_apply(ctx):
                continue
            logger.debug("Judging %s with strategy %s", ctx.movement.name, strategy.name)
            result = await strategy.execute(ctx)
            if result.success:
                return result
            logger.debug(
                "Strategy %s failed for %s: %s", strategy.name, ctx.movement.name, result.error
            )
            errors.append(f"{strategy.name}: {result.error}")

        reason = "; ".join(errors) if errors else "no applicable judgment strategy"
        raise JudgmentError(ctx.movement.name, reason)
