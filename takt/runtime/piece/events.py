"""
events.py - Lifecycle callbacks for a piece run.

Callers pass an EngineCallbacks value to the engine at construction instead
of registering listeners. Every callback is optional.

Lifecycle order for one movement:
    on_movement_start -> on_phase_start/on_phase_complete (1, 2, 3)
    -> on_movement_report (per report file, after Phase 2)
    -> on_movement_complete
Run end: on_run_complete or on_run_abort.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from takt.runtime.types import AgentResponse, Movement, PieceState

PHASE_NAMES = {1: "execute", 2: "report", 3: "judge"}


@dataclass
class UserInputRequest:
    """Passed to on_user_input when an agent reports blocked."""

    movement: Movement
    response: AgentResponse
    prompt: str


@dataclass
class IterationLimitRequest:
    """Passed to on_iteration_limit when max_iterations is reached."""

    current_iteration: int
    max_iterations: int
    current_movement: str


# (movement, iteration)
MovementStartCallback = Callable[[Movement, int], None]
# (movement, response)
MovementCompleteCallback = Callable[[Movement, AgentResponse], None]
# (movement, file_path, file_name)
MovementReportCallback = Callable[[Movement, str, str], None]
# (movement, phase, phase_name, instruction)
PhaseStartCallback = Callable[[Movement, int, str, str], None]
# (movement, phase, phase_name, content, status, error)
PhaseCompleteCallback = Callable[[Movement, int, str, str, str, Optional[str]], None]
# (state)
RunCompleteCallback = Callable[[PieceState], None]
# (state, reason)
RunAbortCallback = Callable[[PieceState, str], None]
# (movement_name, count)
LoopWarningCallback = Callable[[str, int], None]
# (agent_key, session_id)
SessionUpdateCallback = Callable[[str, str], None]
UserInputCallback = Callable[[UserInputRequest], Awaitable[Optional[str]]]
IterationLimitCallback = Callable[[IterationLimitRequest], Awaitable[Optional[int]]]


@dataclass
class EngineCallbacks:
    on_movement_start: Optional[MovementStartCallback] = None
    on_movement_complete: Optional[MovementCompleteCallback] = None
    on_movement_report: Optional[MovementReportCallback] = None
    on_phase_start: Optional[PhaseStartCallback] = None
    on_phase_complete: Optional[PhaseCompleteCallback] = None
    on_run_complete: Optional[RunCompleteCallback] = None
    on_run_abort: Optional[RunAbortCallback] = None
    on_loop_warning: Optional[LoopWarningCallback] = None
    on_session_update: Optional[SessionUpdateCallback] = None
    on_user_input: Optional[UserInputCallback] = None
    on_iteration_limit: Optional[IterationLimitCallback] = None
