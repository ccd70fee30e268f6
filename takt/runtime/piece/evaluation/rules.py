"""
rules.py - Routing decision for a movement.

Evaluation order (first strategy producing a match wins):
1. Aggregate all()/any() conditions (parallel parents only)
2. Status tag in Phase 3 output
3. Status tag in Phase 1 output
4. AI judge over ai() conditions
5. AI judge over every condition (final fallback)

Movements with rules that match nothing raise RuleNotMatchedError; routing
is never defaulted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from takt.runtime.agents import AiJudge, JudgeCondition
from takt.runtime.errors import RuleNotMatchedError
from takt.runtime.types import Movement, PieceState, RuleMatch, RuleMatchMethod

from .aggregate import AggregateEvaluator
from .tags import detect_rule_index, rule_is_selectable

logger = logging.getLogger(__name__)


@dataclass
class RuleEvaluatorContext:
    """Collaborators needed by the Rule Evaluator."""

    state: PieceState
    cwd: str
    judge: AiJudge
    interactive: bool = False
    strict_aggregate: bool = False


class RuleEvaluator:
    """Evaluates one movement's rules against its phase outputs."""

    def __init__(self, movement: Movement, ctx: RuleEvaluatorContext):
        self._movement = movement
        self._ctx = ctx

    async def evaluate(self, agent_content: str, tag_content: str) -> Optional[RuleMatch]:
        """Pick the rule that routes this movement.

        Args:
            agent_content: Phase 1 output text.
            tag_content: Phase 3 output text, empty when Phase 3 was skipped.

        Returns:
            RuleMatch, or None when the movement declares no rules.

        Raises:
            RuleNotMatchedError: If rules exist but no strategy matched.
        """
        rules = self._movement.rules
        if not rules:
            return None
        interactive = self._ctx.interactive

        aggregate_index = AggregateEvaluator(
            self._movement, self._ctx.state, strict=self._ctx.strict_aggregate
        ).evaluate()
        if aggregate_index >= 0:
            return RuleMatch(aggregate_index, RuleMatchMethod.AGGREGATE)

        if tag_content:
            index = detect_rule_index(tag_content, self._movement.name)
            if rule_is_selectable(rules, index, interactive):
                return RuleMatch(index, RuleMatchMethod.PHASE3_TAG)

        if agent_content:
            index = detect_rule_index(agent_content, self._movement.name)
            if rule_is_selectable(rules, index, interactive):
                return RuleMatch(index, RuleMatchMethod.PHASE1_TAG)

        index = await self._evaluate_ai_conditions(agent_content)
        if index >= 0:
            return RuleMatch(index, RuleMatchMethod.AI_JUDGE)

        index = await self._evaluate_all_conditions(agent_content)
        if index >= 0:
            return RuleMatch(index, RuleMatchMethod.AI_JUDGE_FALLBACK)

        raise RuleNotMatchedError(self._movement.name)

    async def _ask_judge(self, agent_content: str, candidates: List[JudgeCondition]) -> int:
        """Ask the judge and map its answer back to a rule index."""
        if not candidates:
            return -1
        # The judge sees positions 0..n-1; candidates[i].index is the rule index.
        numbered = [JudgeCondition(index=i, text=c.text) for i, c in enumerate(candidates)]
        result = await self._ctx.judge.judge(agent_content, numbered, self._ctx.cwd)
        if 0 <= result < len(candidates):
            return candidates[result].index
        return -1

    async def _evaluate_ai_conditions(self, agent_content: str) -> int:
        candidates = [
            JudgeCondition(index=i, text=rule.ai_condition_text)
            for i, rule in enumerate(self._movement.rules)
            if rule.is_ai_condition
            and rule.ai_condition_text
            and (self._ctx.interactive or not rule.interactive_only)
        ]
        if not candidates:
            return -1
        logger.debug(
            "Evaluating %d ai() conditions via judge for movement %s",
            len(candidates),
            self._movement.name,
        )
        index = await self._ask_judge(agent_content, candidates)
        if index >= 0:
            logger.debug("AI judge matched rule %d in movement %s", index, self._movement.name)
        return index

    async def _evaluate_all_conditions(self, agent_content: str) -> int:
        candidates = [
            JudgeCondition(index=i, text=rule.condition)
            for i, rule in enumerate(self._movement.rules)
            if self._ctx.interactive or not rule.interactive_only
        ]
        logger.debug(
            "Evaluating all %d conditions via judge (fallback) for movement %s",
            len(candidates),
            self._movement.name,
        )
        return await self._ask_judge(agent_content, candidates)
