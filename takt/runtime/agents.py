"""
agents.py - Capability boundaries for agent calls and AI judging.

The engine never talks to a provider directly. It depends on two narrow
interfaces:
- AgentCaller: given a persona, an instruction and call options, return an
  AgentResponse (status, content, optional session handle)
- AiJudge: given agent output and numbered conditions, return the position
  of the best matching condition, or -1

AgentBackedJudge adapts any AgentCaller into an AiJudge by asking it to
answer with a `[JUDGE:N]` tag.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .types import AgentResponse, AgentStatus, PermissionMode

logger = logging.getLogger(__name__)


@dataclass
class StreamEvent:
    """One streamed event from an agent call.

    type is one of: init, text, thinking, tool_use, tool_result,
    tool_output, result, error. data carries the event payload
    (e.g. {"text": ...} or {"tool": ...}).
    """

    type: str
    data: Dict[str, Any] = field(default_factory=dict)


StreamCallback = Callable[[StreamEvent], None]


@dataclass
class AgentCallOptions:
    """Options passed to AgentCaller.call for one phase."""

    cwd: str
    session_id: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    permission_mode: Optional[PermissionMode] = None
    allowed_tools: Optional[List[str]] = None
    max_turns: Optional[int] = None
    on_stream: Optional[StreamCallback] = None


@dataclass
class JudgeCondition:
    """A numbered condition submitted to the AI judge."""

    index: int
    text: str


class AgentCaller(ABC):
    """Abstract agent-call capability.

    Implementations own provider specifics (CLI, SDK, retries). The engine
    only relies on the AgentResponse contract.
    """

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Identifier of the provider (e.g. 'claude', 'codex', 'mock')."""
        ...

    @abstractmethod
    async def call(
        self,
        persona: Optional[str],
        instruction: str,
        options: AgentCallOptions,
    ) -> AgentResponse:
        """Run one agent call.

        Args:
            persona: Persona reference of the movement, if any.
            instruction: Fully built instruction text.
            options: Per-phase call options.

        Returns:
            AgentResponse with status done, blocked or error.
        """
        ...


class AiJudge(ABC):
    """Abstract AI-judge capability."""

    @abstractmethod
    async def judge(
        self,
        output: str,
        conditions: List[JudgeCondition],
        cwd: str,
    ) -> int:
        """Pick the condition that best matches output.

        Returns:
            0-based position in `conditions`, or -1 if nothing matched.
        """
        ...


def build_judge_prompt(output: str, conditions: List[JudgeCondition]) -> str:
    """Build the instruction asking a model to pick one condition."""
    condition_rows = "\n".join(
        f"| {i + 1} | {condition.text} |" for i, condition in enumerate(conditions)
    )
    return "\n".join(
        [
            "# Judge Task",
            "",
            "You are a judge evaluating an agent's output against a set of conditions.",
            "Read the agent output below, then determine which condition best matches.",
            "",
            "## Agent Output",
            "```",
            output,
            "```",
            "",
            "## Conditions",
            "| # | Condition |",
            "|---|-----------|",
            condition_rows,
            "",
            "## Instructions",
            "Output ONLY the tag `[JUDGE:N]` where N is the number of the best matching condition.",
            "Do not output anything else.",
        ]
    )


class AgentBackedJudge(AiJudge):
    """AiJudge that delegates to an AgentCaller and parses a [JUDGE:N] tag.

    A failed judge call is reported as "no match" so the Rule Evaluator can
    move on to its next strategy.
    """

    def __init__(self, caller: AgentCaller, model: Optional[str] = None):
        self._caller = caller
        self._model = model

    async def judge(
        self,
        output: str,
        conditions: List[JudgeCondition],
        cwd: str,
    ) -> int:
        # Deferred: takt.runtime.piece imports this module.
        from takt.runtime.piece.evaluation.tags import detect_judge_index

        if not conditions:
            return -1
        prompt = build_judge_prompt(output, conditions)
        response = await self._caller.call(
            None,
            prompt,
            AgentCallOptions(cwd=cwd, model=self._model, allowed_tools=[], max_turns=1),
        )
        if response.status != AgentStatus.DONE:
            logger.error("AI judge call failed: %s", response.error or response.content)
            return -1
        return detect_judge_index(response.content)


__all__ = [
    "StreamEvent",
    "StreamCallback",
    "AgentCallOptions",
    "JudgeCondition",
    "AgentCaller",
    "AiJudge",
    "AgentBackedJudge",
    "build_judge_prompt",
]
