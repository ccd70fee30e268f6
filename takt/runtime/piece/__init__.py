"""
takt.runtime.piece - Movement engine and its collaborators.

Package Structure:
    engine.py        - PieceEngine run loop and movement sequencing
    evaluation/      - Rule Evaluator, Aggregate Evaluator, tag scanning
    phases.py        - Phase 2 (report) and Phase 3 (status judgment)
    judgment.py      - Judgment strategy chain
    parallel.py      - Parallel sub-movement execution + ParallelLogger
    permission.py    - Provider-profile permission resolution
    loop_detector.py - Consecutive same-movement detection
    instructions.py  - Phase 1/2/3 instruction builders
    options.py       - Per-phase agent call options
    reports.py       - Report directory helpers and run paths
    blocked.py       - Blocked-status user input handling
    events.py        - Lifecycle callback types
    arpeggio/        - Batch movements

Usage:
    from takt.runtime.piece import PieceEngine, PieceEngineOptions, EngineCallbacks

    engine = PieceEngine(config, caller, options=PieceEngineOptions(task="Add tests"))
    state = await engine.run()
"""

from .engine import PieceEngine, PieceEngineOptions
from .evaluation import AggregateEvaluator, RuleEvaluator, RuleEvaluatorContext
from .events import EngineCallbacks, IterationLimitRequest, UserInputRequest
from .judgment import JudgmentContext, JudgmentResult, JudgmentStrategyChain
from .loop_detector import LoopCheckResult, LoopDetector
from .parallel import ParallelLogger, ParallelRunner
from .permission import (
    DEFAULT_PROVIDER_PERMISSION_PROFILES,
    ProviderPermissionProfile,
    resolve_movement_permission_mode,
)
from .phases import PhaseRunnerContext, run_report_phase, run_status_judgment_phase

__all__ = [
    "PieceEngine",
    "PieceEngineOptions",
    "AggregateEvaluator",
    "RuleEvaluator",
    "RuleEvaluatorContext",
    "EngineCallbacks",
    "IterationLimitRequest",
    "UserInputRequest",
    "JudgmentContext",
    "JudgmentResult",
    "JudgmentStrategyChain",
    "LoopCheckResult",
    "LoopDetector",
    "ParallelLogger",
    "ParallelRunner",
    "DEFAULT_PROVIDER_PERMISSION_PROFILES",
    "ProviderPermissionProfile",
    "resolve_movement_permission_mode",
    "PhaseRunnerContext",
    "run_report_phase",
    "run_status_judgment_phase",
]
