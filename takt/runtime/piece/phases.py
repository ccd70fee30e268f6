"""
phases.py - Phase 2 (report) and Phase 3 (status judgment) execution.

Both phases resume the session Phase 1 left behind for the movement's agent.
Neither phase retries: a non-done status, an empty report, or a missing
session raises and the engine aborts the run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from takt.runtime.agents import AgentCallOptions, AgentCaller, StreamCallback
from takt.runtime.errors import AgentCallError, MissingSessionError, ReportWriteError
from takt.runtime.types import AgentStatus, Movement

from .evaluation.tags import has_tag_based_rules
from .events import PhaseCompleteCallback, PhaseStartCallback
from .instructions import build_report_instruction, build_status_judgment_instruction
from .reports import write_report_file

logger = logging.getLogger(__name__)

DEFAULT_PHASE_MAX_TURNS = 3

# (movement, session_id, allowed_tools, max_turns, on_stream) -> options
ResumeOptionsBuilder = Callable[
    [Movement, str, List[str], int, Optional[StreamCallback]], AgentCallOptions
]


@dataclass
class PhaseRunnerContext:
    """Everything the resume phases need from the engine."""

    cwd: str
    report_dir: str
    caller: AgentCaller
    get_session_id: Callable[[str], Optional[str]]
    build_resume_options: ResumeOptionsBuilder
    update_agent_session: Callable[[str, Optional[str]], None]
    language: str = "en"
    interactive: bool = False
    max_turns: int = DEFAULT_PHASE_MAX_TURNS
    on_phase_start: Optional[PhaseStartCallback] = None
    on_phase_complete: Optional[PhaseCompleteCallback] = None
    # Stream of the movement being run; a sub-movement gets its prefixed handler.
    on_stream: Optional[StreamCallback] = None

    def phase_started(self, movement: Movement, phase: int, name: str, instruction: str) -> None:
        if self.on_phase_start:
            self.on_phase_start(movement, phase, name, instruction)

    def phase_completed(
        self,
        movement: Movement,
        phase: int,
        name: str,
        content: str,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        if self.on_phase_complete:
            self.on_phase_complete(movement, phase, name, content, status, error)


def needs_status_judgment_phase(movement: Movement) -> bool:
    """Phase 3 runs only when some rule needs tag-based detection."""
    return has_tag_based_rules(movement)


def _require_session(movement: Movement, ctx: PhaseRunnerContext, phase: str) -> str:
    session_id = ctx.get_session_id(movement.session_key)
    if not session_id:
        raise MissingSessionError(movement.name, phase)
    return session_id


async def _call(
    movement: Movement,
    instruction: str,
    options: AgentCallOptions,
    ctx: PhaseRunnerContext,
    phase: int,
    phase_name: str,
):
    try:
        return await ctx.caller.call(movement.persona, instruction, options)
    except Exception as exc:
        ctx.phase_completed(movement, phase, phase_name, "", AgentStatus.ERROR.value, str(exc))
        raise


async def run_report_phase(
    movement: Movement,
    movement_iteration: int,
    ctx: PhaseRunnerContext,
) -> List[str]:
    """Generate every configured report file, one resumed call per file.

    Args:
        movement: Movement whose output_contracts name the files.
        movement_iteration: How many times this movement has run.
        ctx: Phase runner context.

    Returns:
        Paths of the files written, in declaration order.

    Raises:
        MissingSessionError: If the movement's agent has no session.
        AgentCallError: If a call returns a non-done status.
        ReportWriteError: If content is empty or the path escapes report_dir.
    """
    session_key = movement.session_key
    session_id = _require_session(movement, ctx, "Report phase")
    report_files = movement.report_files
    if not report_files:
        logger.debug("No report files configured for %s, skipping report phase", movement.name)
        return []

    logger.debug("Running report phase for %s (session %s)", movement.name, session_id)
    written: List[str] = []
    for file_name in report_files:
        instruction = build_report_instruction(
            movement,
            target_file=file_name,
            cwd=ctx.cwd,
            report_dir=ctx.report_dir,
            movement_iteration=movement_iteration,
            language=ctx.language,
        )
        ctx.phase_started(movement, 2, "report", instruction)
        options = ctx.build_resume_options(movement, session_id, [], ctx.max_turns, ctx.on_stream)
        response = await _call(movement, instruction, options, ctx, 2, "report")

        if response.status != AgentStatus.DONE:
            error = response.error or response.content or "Unknown error"
            ctx.phase_completed(movement, 2, "report", response.content, response.status.value, error)
            raise AgentCallError(f"Report phase failed for {file_name}: {error}", movement.name)

        content = response.content.strip()
        if not content:
            raise ReportWriteError(f"Report output is empty for file: {file_name}", file_name)

        written.append(str(write_report_file(ctx.report_dir, file_name, content)))

        if response.session_id:
            session_id = response.session_id
            ctx.update_agent_session(session_key, session_id)

        ctx.phase_completed(movement, 2, "report", response.content, response.status.value)
        logger.debug("Report file %s generated for %s", file_name, movement.name)

    return written


async def run_status_judgment_phase(movement: Movement, ctx: PhaseRunnerContext) -> str:
    """Ask the movement's agent, in its own session, for a status tag.

    Returns:
        Raw Phase 3 content, expected to contain `[MOVEMENT:N]`.

    Raises:
        MissingSessionError: If the movement's agent has no session.
        AgentCallError: If the call returns a non-done status.
    """
    session_key = movement.session_key
    session_id = _require_session(movement, ctx, "Status judgment phase")
    logger.debug("Running status judgment phase for %s (session %s)", movement.name, session_id)

    instruction = build_status_judgment_instruction(
        movement, language=ctx.language, interactive=ctx.interactive
    )
    ctx.phase_started(movement, 3, "judge", instruction)
    options = ctx.build_resume_options(movement, session_id, [], ctx.max_turns, ctx.on_stream)
    response = await _call(movement, instruction, options, ctx, 3, "judge")

    if response.status != AgentStatus.DONE:
        error = response.error or response.content or "Unknown error"
        ctx.phase_completed(movement, 3, "judge", response.content, response.status.value, error)
        raise AgentCallError(f"Status judgment phase failed: {error}", movement.name)

    ctx.update_agent_session(session_key, response.session_id)
    ctx.phase_completed(movement, 3, "judge", response.content, response.status.value)
    return response.content
