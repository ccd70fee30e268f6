"""Consecutive same-movement detection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from takt.runtime.types import LoopAction, LoopDetectionConfig


@dataclass
class LoopCheckResult:
    is_loop: bool
    count: int
    should_abort: bool
    should_warn: bool


class LoopDetector:
    """Counts consecutive entries into the same movement.

    A loop is reported once the count exceeds max_consecutive_same_step, so
    with a limit of 3 the fourth consecutive visit is the first loop.
    """

    def __init__(self, config: Optional[LoopDetectionConfig] = None):
        self._config = config or LoopDetectionConfig()
        self._last_movement: Optional[str] = None
        self._consecutive_count = 0

    @property
    def consecutive_count(self) -> int:
        return self._consecutive_count

    def check(self, movement_name: str) -> LoopCheckResult:
        """Record an entry into movement_name and report loop status."""
        if self._last_movement == movement_name:
            self._consecutive_count += 1
        else:
            self._consecutive_count = 1
            self._last_movement = movement_name

        is_loop = self._consecutive_count > self._config.max_consecutive_same_step
        return LoopCheckResult(
            is_loop=is_loop,
            count=self._consecutive_count,
            should_abort=is_loop and self._config.action == LoopAction.ABORT,
            should_warn=is_loop and self._config.action != LoopAction.IGNORE,
        )

    def reset(self) -> None:
        self._last_movement = None
        self._consecutive_count = 0
