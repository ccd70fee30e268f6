"""
mock.py - Scripted in-process provider.

MockAgentCaller answers agent calls from per-persona queues and records
every call, so pieces can run end to end without a real model:

    caller = MockAgentCaller({
        "planner": ["Plan ready [PLAN:1]"],
        "reviewer": [AgentResponse(persona="reviewer", status=AgentStatus.BLOCKED, content="Which module?")],
    })

Queued items may be strings (done responses), AgentResponse values, or
callables taking (instruction, options) and returning either. An exhausted
queue falls back to default_content.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, List, Optional, Union

from takt.runtime.agents import (
    AgentCallOptions,
    AgentCaller,
    AiJudge,
    JudgeCondition,
    StreamEvent,
)
from takt.runtime.errors import AgentCallError
from takt.runtime.types import AgentResponse, AgentStatus

ScriptItem = Union[str, AgentResponse, Exception, Callable[[str, AgentCallOptions], Union[str, AgentResponse]]]

# Calls with no persona (e.g. judge prompts) use this queue key.
ANONYMOUS = "__anonymous__"


@dataclass
class MockCall:
    persona: Optional[str]
    instruction: str
    options: AgentCallOptions


class MockAgentCaller(AgentCaller):
    """Scripted AgentCaller.

    Args:
        responses: persona -> queued script items.
        default_content: Content returned once a queue runs dry.
        delay: Seconds to sleep per call, to exercise concurrency.
        rotate_sessions: Issue a new session id on every call instead of
            echoing the resumed one.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Iterable[ScriptItem]]] = None,
        default_content: str = "done",
        delay: float = 0.0,
        rotate_sessions: bool = False,
    ):
        self._queues: Dict[str, Deque[ScriptItem]] = defaultdict(deque)
        for persona, items in (responses or {}).items():
            self._queues[persona].extend(items)
        self._default_content = default_content
        self._delay = delay
        self._rotate_sessions = rotate_sessions
        self._session_counter = itertools.count(1)
        self.calls: List[MockCall] = []

    @property
    def provider_id(self) -> str:
        return "mock"

    def queue(self, persona: Optional[str], *items: ScriptItem) -> None:
        self._queues[persona or ANONYMOUS].extend(items)

    def calls_for(self, persona: Optional[str]) -> List[MockCall]:
        return [c for c in self.calls if c.persona == persona]

    def _session_for(self, options: AgentCallOptions) -> str:
        if options.session_id and not self._rotate_sessions:
            return options.session_id
        return f"mock-session-{next(self._session_counter)}"

    async def call(
        self,
        persona: Optional[str],
        instruction: str,
        options: AgentCallOptions,
    ) -> AgentResponse:
        self.calls.append(MockCall(persona, instruction, options))
        if self._delay:
            await asyncio.sleep(self._delay)

        queue = self._queues.get(persona or ANONYMOUS)
        item: ScriptItem = queue.popleft() if queue else self._default_content
        if callable(item) and not isinstance(item, (str, AgentResponse)):
            item = item(instruction, options)
        if isinstance(item, Exception):
            raise item

        session_id = self._session_for(options)
        if isinstance(item, AgentResponse):
            response = item
            if response.session_id is None and response.status != AgentStatus.ERROR:
                response.session_id = session_id
        else:
            response = AgentResponse(
                persona=persona or ANONYMOUS,
                status=AgentStatus.DONE,
                content=str(item),
                session_id=session_id,
            )

        if options.on_stream:
            options.on_stream(StreamEvent("init", {"session_id": response.session_id}))
            if response.content:
                options.on_stream(StreamEvent("text", {"text": response.content}))
            options.on_stream(StreamEvent("result", {"status": response.status.value}))
        return response


class MockAiJudge(AiJudge):
    """AiJudge returning scripted positions (-1 once the script runs dry)."""

    def __init__(self, results: Optional[Iterable[int]] = None, fail_with: Optional[str] = None):
        self._results: Deque[int] = deque(results or [])
        self._fail_with = fail_with
        self.calls: List[List[JudgeCondition]] = []
        self.outputs: List[str] = []

    async def judge(self, output: str, conditions: List[JudgeCondition], cwd: str) -> int:
        self.calls.append(list(conditions))
        self.outputs.append(output)
        if self._fail_with:
            raise AgentCallError(self._fail_with)
        return self._results.popleft() if self._results else -1
