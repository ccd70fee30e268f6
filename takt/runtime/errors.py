"""
errors.py - Exception hierarchy for the piece execution engine.

Phase-level and evaluator-level functions raise these; the engine's run loop
is the only place that turns them into an aborted PieceState.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class TaktError(Exception):
    """Base exception for piece execution errors."""

    pass


# =============================================================================
# Configuration errors
# =============================================================================


class PieceConfigError(TaktError):
    """Raised when a piece document or movement graph is malformed."""

    def __init__(self, message: str, source: Optional[Union[str, Path]] = None):
        self.source = source
        if source:
            message = f"{message} (in {source})"
        super().__init__(message)


class AggregateConditionError(PieceConfigError):
    """Raised in strict mode when an all() condition list does not fit the sub-movements."""

    def __init__(self, movement: str, expected: int, actual: int):
        self.movement = movement
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Aggregate condition count mismatch in movement '{movement}': "
            f"{expected} conditions for {actual} sub-movements"
        )


class PermissionResolutionError(TaktError):
    """Raised when no permission mode can be determined for a movement."""

    def __init__(self, movement: str, provider: Optional[str] = None):
        self.movement = movement
        self.provider = provider
        if provider:
            msg = (
                f"Unable to resolve permission mode for movement '{movement}' "
                f"and provider '{provider}': no override or default found"
            )
        else:
            msg = (
                f"Unable to resolve permission mode for movement '{movement}': "
                "provider is not set and required_permission_mode is not declared"
            )
        super().__init__(msg)


# =============================================================================
# Runtime errors
# =============================================================================


class AgentCallError(TaktError):
    """Raised when an agent call returns an error or a non-done status."""

    def __init__(self, message: str, movement: Optional[str] = None):
        self.movement = movement
        super().__init__(message)


class RuleNotMatchedError(TaktError):
    """Raised when no routing strategy produced a rule match."""

    def __init__(self, movement: str):
        self.movement = movement
        super().__init__(
            f"Status not found for movement \"{movement}\": "
            "no rule matched after all detection phases"
        )


class MissingSessionError(TaktError):
    """Raised when a resume phase has no session to resume."""

    def __init__(self, movement: str, phase: str):
        self.movement = movement
        self.phase = phase
        super().__init__(
            f"{phase} requires a session to resume, but no sessionId found "
            f"for movement \"{movement}\""
        )


class ReportWriteError(TaktError):
    """Raised when a report file cannot be produced or would escape its directory."""

    def __init__(self, message: str, file_name: Optional[str] = None):
        self.file_name = file_name
        super().__init__(message)


class JudgmentError(TaktError):
    """Raised when no judgment strategy produced a status tag."""

    def __init__(self, movement: str, reason: str = "no judgment strategy succeeded"):
        self.movement = movement
        super().__init__(f"Status judgment failed for movement \"{movement}\": {reason}")


class LoopDetectedError(TaktError):
    """Raised when the same movement repeats beyond the configured limit."""

    def __init__(self, movement: str, count: int):
        self.movement = movement
        self.count = count
        super().__init__(
            f"Loop detected: movement \"{movement}\" ran {count} times consecutively"
        )


class PieceInterrupted(TaktError):
    """Raised at a phase boundary after a stop was requested."""

    def __init__(self, reason: str = "interrupted by user"):
        self.reason = reason
        super().__init__(reason)
