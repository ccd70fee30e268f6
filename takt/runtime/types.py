"""
types.py - Core data model for piece execution.

This module defines the passive data consumed and produced by the engine:
- PieceConfig / Movement / PieceRule: the declarative movement graph
- AgentResponse: the result of one agent call, plus its matched rule
- PieceState: the mutable per-run state owned by one engine run
- RuleMatch: the routing decision produced by the Rule Evaluator

Rule conditions are classified when a PieceRule is built from raw text:
    ai("the fix is complete")        -> AI-judged condition
    all("approved")                  -> aggregate over sub-movements
    any("needs_fix", "rejected")     -> aggregate over sub-movements
    anything else                    -> tag-based condition
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .errors import PieceConfigError

# Terminal sentinels for PieceRule.next
COMPLETE = "COMPLETE"
ABORT = "ABORT"
TERMINAL_MOVEMENTS = (COMPLETE, ABORT)

# Limits applied to PieceState.user_inputs
MAX_USER_INPUTS = 100
MAX_INPUT_LENGTH = 10_000


class PermissionMode(str, Enum):
    """Tool-access ceiling for one agent call, ordered readonly < edit < full."""

    READONLY = "readonly"
    EDIT = "edit"
    FULL = "full"


class AgentStatus(str, Enum):
    """Status reported by an agent call."""

    DONE = "done"
    BLOCKED = "blocked"
    ERROR = "error"


class PieceStatus(str, Enum):
    """Lifecycle status of a piece run."""

    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    ABORTED = "aborted"


class RuleMatchMethod(str, Enum):
    """Which evaluation strategy produced a rule match."""

    AGGREGATE = "aggregate"
    PHASE1_TAG = "phase1_tag"
    PHASE3_TAG = "phase3_tag"
    AI_JUDGE = "ai_judge"
    AI_JUDGE_FALLBACK = "ai_judge_fallback"


class AggregateType(str, Enum):
    ALL = "all"
    ANY = "any"


class LoopAction(str, Enum):
    """What to do when the loop detector fires."""

    WARN = "warn"
    ABORT = "abort"
    IGNORE = "ignore"


# =============================================================================
# Rule model
# =============================================================================

_AI_CONDITION_RE = re.compile(r'^ai\("(.+)"\)$', re.DOTALL)
_AGGREGATE_CONDITION_RE = re.compile(r"^(all|any)\((.+)\)$", re.DOTALL)
_QUOTED_ARG_RE = re.compile(r'"([^"]+)"')


@dataclass
class PieceRule:
    """A transition out of a movement.

    Exactly one classification applies: tag-based (the default), AI-judged
    (is_ai_condition), or aggregate (is_aggregate_condition).
    """

    condition: str
    next: Optional[str] = None
    appendix: Optional[str] = None
    interactive_only: bool = False
    requires_user_input: bool = False
    is_ai_condition: bool = False
    ai_condition_text: Optional[str] = None
    is_aggregate_condition: bool = False
    aggregate_type: Optional[AggregateType] = None
    aggregate_condition_text: Optional[Union[str, List[str]]] = None

    @classmethod
    def from_condition(
        cls,
        condition: str,
        next: Optional[str] = None,
        appendix: Optional[str] = None,
        interactive_only: bool = False,
        requires_user_input: bool = False,
    ) -> "PieceRule":
        """Build a rule, classifying the condition text.

        Raises:
            PieceConfigError: If an all()/any() condition has no quoted arguments.
        """
        text = condition.strip()
        rule = cls(
            condition=text,
            next=next,
            appendix=appendix,
            interactive_only=interactive_only,
            requires_user_input=requires_user_input,
        )

        ai_match = _AI_CONDITION_RE.match(text)
        if ai_match:
            rule.is_ai_condition = True
            rule.ai_condition_text = ai_match.group(1)
            return rule

        agg_match = _AGGREGATE_CONDITION_RE.match(text)
        if agg_match:
            args = _QUOTED_ARG_RE.findall(agg_match.group(2))
            if not args:
                raise PieceConfigError(
                    f"Invalid aggregate condition format: {text}. "
                    f'Expected: {agg_match.group(1)}("condition1", ...)'
                )
            rule.is_aggregate_condition = True
            rule.aggregate_type = AggregateType(agg_match.group(1))
            rule.aggregate_condition_text = args[0] if len(args) == 1 else args
        return rule

    def aggregate_conditions(self) -> List[str]:
        """Aggregate arguments as a list, regardless of arity."""
        if self.aggregate_condition_text is None:
            return []
        if isinstance(self.aggregate_condition_text, str):
            return [self.aggregate_condition_text]
        return list(self.aggregate_condition_text)


@dataclass
class OutputContract:
    """A report file a movement is expected to produce in Phase 2."""

    name: str
    format: Optional[str] = None
    order: Optional[str] = None


# =============================================================================
# Batch ("arpeggio") movement configuration
# =============================================================================


@dataclass
class MergeConfig:
    """How batch results are combined.

    strategy 'concat' joins successful results with separator; strategy
    'custom' calls a merge function named by `function` (registry name or
    'module:attr') or loaded from the Python file at `file`.
    """

    strategy: str = "concat"
    separator: str = "\n"
    function: Optional[str] = None
    file: Optional[str] = None


@dataclass
class ArpeggioConfig:
    """Batch processing configuration for a movement."""

    source: str
    source_path: str
    template: str
    batch_size: int = 1
    concurrency: int = 1
    max_retries: int = 2
    retry_delay_ms: int = 1000
    merge: MergeConfig = field(default_factory=MergeConfig)
    output_path: Optional[str] = None


# =============================================================================
# Movement graph
# =============================================================================


@dataclass
class Movement:
    """One node in the piece graph: a leaf agent call or a parallel parent."""

    name: str
    persona: Optional[str] = None
    persona_name: Optional[str] = None
    instruction_template: str = "{task}"
    rules: List[PieceRule] = field(default_factory=list)
    parallel: List["Movement"] = field(default_factory=list)
    output_contracts: List[OutputContract] = field(default_factory=list)
    required_permission_mode: Optional[PermissionMode] = None
    session: Optional[str] = None  # "continue" | "refresh"
    provider: Optional[str] = None
    model: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    edit: Optional[bool] = None
    pass_previous_response: bool = True
    arpeggio: Optional[ArpeggioConfig] = None

    @property
    def session_key(self) -> str:
        """Key into the per-agent session table."""
        return self.persona or self.name

    @property
    def is_parallel(self) -> bool:
        return len(self.parallel) > 0

    @property
    def report_files(self) -> List[str]:
        return [contract.name for contract in self.output_contracts]

    @property
    def display_name(self) -> str:
        return self.persona_name or self.persona or self.name


@dataclass
class LoopDetectionConfig:
    max_consecutive_same_step: int = 10
    action: LoopAction = LoopAction.WARN


@dataclass
class PieceConfig:
    """A named movement graph.

    `movements` preserves declaration order. The engine borrows a PieceConfig
    for the duration of a run and never mutates it.
    """

    name: str
    movements: Dict[str, Movement]
    initial_movement: str
    max_iterations: int = 10
    description: Optional[str] = None
    loop_detection: LoopDetectionConfig = field(default_factory=LoopDetectionConfig)

    @classmethod
    def from_movements(
        cls,
        name: str,
        movements: List[Movement],
        initial_movement: Optional[str] = None,
        **kwargs: Any,
    ) -> "PieceConfig":
        """Build a config from an ordered movement list.

        The initial movement defaults to the first declared movement.
        """
        if not movements:
            raise PieceConfigError(f"Piece '{name}' has no movements")
        by_name: Dict[str, Movement] = {}
        for movement in movements:
            if movement.name in by_name:
                raise PieceConfigError(
                    f"Duplicate movement name '{movement.name}' in piece '{name}'"
                )
            by_name[movement.name] = movement
        return cls(
            name=name,
            movements=by_name,
            initial_movement=initial_movement or movements[0].name,
            **kwargs,
        )

    def get_movement(self, name: str) -> Movement:
        movement = self.movements.get(name)
        if movement is None:
            raise PieceConfigError(f"Unknown movement: {name}")
        return movement

    def validate(self) -> None:
        """Check the graph invariants.

        Raises:
            PieceConfigError: On the first violated invariant.
        """
        if self.initial_movement not in self.movements:
            raise PieceConfigError(
                f"Initial movement '{self.initial_movement}' not found in piece '{self.name}'"
            )
        if self.max_iterations < 1:
            raise PieceConfigError(f"max_iterations must be >= 1 in piece '{self.name}'")

        for movement in self.movements.values():
            self._validate_rules(movement, is_sub_movement=False)
            if movement.is_parallel:
                if movement.arpeggio is not None:
                    raise PieceConfigError(
                        f"Movement '{movement.name}' cannot be both parallel and arpeggio"
                    )
                for rule in movement.rules:
                    if not rule.is_aggregate_condition:
                        raise PieceConfigError(
                            f"Parallel movement '{movement.name}' may only declare "
                            f"all()/any() rules, got: {rule.condition}"
                        )
                seen_keys: Dict[str, str] = {}
                for sub in movement.parallel:
                    if sub.is_parallel:
                        raise PieceConfigError(
                            f"Sub-movement '{sub.name}' of '{movement.name}' cannot be parallel"
                        )
                    for rule in sub.rules:
                        if rule.is_aggregate_condition:
                            raise PieceConfigError(
                                f"Sub-movement '{sub.name}' cannot use aggregate "
                                f"condition: {rule.condition}"
                            )
                    self._validate_rules(sub, is_sub_movement=True)
                    other = seen_keys.get(sub.session_key)
                    if other is not None:
                        raise PieceConfigError(
                            f"Sub-movements '{other}' and '{sub.name}' of '{movement.name}' "
                            f"share session key '{sub.session_key}'"
                        )
                    seen_keys[sub.session_key] = sub.name
            else:
                for rule in movement.rules:
                    if rule.is_aggregate_condition:
                        raise PieceConfigError(
                            f"Movement '{movement.name}' is not parallel but uses "
                            f"aggregate condition: {rule.condition}"
                        )

    def _validate_rules(self, movement: Movement, is_sub_movement: bool) -> None:
        for rule in movement.rules:
            if rule.next is None:
                # Sub-movement rules only label a verdict for the parent's aggregate.
                if is_sub_movement:
                    continue
                raise PieceConfigError(
                    f"Rule '{rule.condition}' in movement '{movement.name}' has no next"
                )
            if rule.next in TERMINAL_MOVEMENTS:
                continue
            if rule.next not in self.movements:
                raise PieceConfigError(
                    f"Rule '{rule.condition}' in movement '{movement.name}' "
                    f"targets unknown movement '{rule.next}'"
                )


# =============================================================================
# Run state
# =============================================================================


@dataclass
class AgentResponse:
    """Result of one agent call, annotated with its matched rule once judged."""

    persona: str
    status: AgentStatus
    content: str
    session_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    matched_rule_index: Optional[int] = None
    matched_rule_method: Optional[RuleMatchMethod] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "persona": self.persona,
            "status": self.status.value,
            "content": self.content,
            "session_id": self.session_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "matched_rule_index": self.matched_rule_index,
            "matched_rule_method": (
                self.matched_rule_method.value if self.matched_rule_method else None
            ),
        }


@dataclass
class RuleMatch:
    index: int
    method: RuleMatchMethod

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "method": self.method.value}


@dataclass
class PieceState:
    """Mutable state of one piece run.

    Owned by exactly one engine run. Sub-movements of a parallel parent write
    their outputs into this state only at the join barrier.
    """

    piece_name: str
    current_movement: str
    iteration: int = 0
    movement_outputs: Dict[str, AgentResponse] = field(default_factory=dict)
    last_output: Optional[AgentResponse] = None
    agent_sessions: Dict[str, str] = field(default_factory=dict)
    movement_iterations: Dict[str, int] = field(default_factory=dict)
    user_inputs: List[str] = field(default_factory=list)
    status: PieceStatus = PieceStatus.RUNNING
    abort_reason: Optional[str] = None

    def record_output(self, movement_name: str, response: AgentResponse) -> None:
        """Record a movement's judged output.

        A revisited movement moves to the end of the mapping so iteration
        order reflects completion order.
        """
        self.movement_outputs.pop(movement_name, None)
        self.movement_outputs[movement_name] = response
        self.last_output = response

    def increment_movement_iteration(self, movement_name: str) -> int:
        count = self.movement_iterations.get(movement_name, 0) + 1
        self.movement_iterations[movement_name] = count
        return count

    def add_user_input(self, text: str) -> None:
        """Append user input, truncating it and dropping the oldest entries."""
        self.user_inputs.append(text[:MAX_INPUT_LENGTH])
        if len(self.user_inputs) > MAX_USER_INPUTS:
            del self.user_inputs[: len(self.user_inputs) - MAX_USER_INPUTS]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "piece_name": self.piece_name,
            "current_movement": self.current_movement,
            "iteration": self.iteration,
            "status": self.status.value,
            "abort_reason": self.abort_reason,
            "movement_outputs": {
                name: output.to_dict() for name, output in self.movement_outputs.items()
            },
            "agent_sessions": dict(self.agent_sessions),
            "movement_iterations": dict(self.movement_iterations),
            "user_inputs": list(self.user_inputs),
        }


__all__ = [
    "ABORT",
    "COMPLETE",
    "TERMINAL_MOVEMENTS",
    "MAX_USER_INPUTS",
    "MAX_INPUT_LENGTH",
    "PermissionMode",
    "AgentStatus",
    "PieceStatus",
    "RuleMatchMethod",
    "AggregateType",
    "LoopAction",
    "PieceRule",
    "OutputContract",
    "MergeConfig",
    "ArpeggioConfig",
    "Movement",
    "LoopDetectionConfig",
    "PieceConfig",
    "AgentResponse",
    "RuleMatch",
    "PieceState",
]
