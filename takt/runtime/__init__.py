# takt/runtime package
# Core data model, capability boundaries and the piece execution engine.
#
# Core components:
#   - types: PieceConfig, Movement, PieceRule, PieceState, AgentResponse
#   - errors: exception hierarchy raised by the engine's phases
#   - agents: AgentCaller / AiJudge capability interfaces
#   - providers: bundled providers (scripted mock)
#   - piece: the movement engine and its evaluators
#
# Usage:
#     from takt.runtime.piece import PieceEngine, PieceEngineOptions
#     engine = PieceEngine(config, caller, options=PieceEngineOptions(task="..."))
#     state = asyncio.run(engine.run())

from .errors import (
    AgentCallError,
    AggregateConditionError,
    JudgmentError,
    LoopDetectedError,
    MissingSessionError,
    PermissionResolutionError,
    PieceConfigError,
    PieceInterrupted,
    ReportWriteError,
    RuleNotMatchedError,
    TaktError,
)
from .types import (
    ABORT,
    COMPLETE,
    AgentResponse,
    AgentStatus,
    Movement,
    PermissionMode,
    PieceConfig,
    PieceRule,
    PieceState,
    PieceStatus,
    RuleMatch,
    RuleMatchMethod,
)

__all__ = [
    "ABORT",
    "COMPLETE",
    "AgentCallError",
    "AgentResponse",
    "AgentStatus",
    "AggregateConditionError",
    "JudgmentError",
    "LoopDetectedError",
    "MissingSessionError",
    "Movement",
    "PermissionMode",
    "PermissionResolutionError",
    "PieceConfig",
    "PieceConfigError",
    "PieceInterrupted",
    "PieceRule",
    "PieceState",
    "PieceStatus",
    "ReportWriteError",
    "RuleMatch",
    "RuleMatchMethod",
    "RuleNotMatchedError",
    "TaktError",
]
