"""
parallel.py - Concurrent execution of a parallel parent's sub-movements.

This module provides:
- ParallelLogger: prefixes and colors each sub-movement's streamed output,
  line-buffering text until a newline arrives
- ParallelRunner: launches every sub-movement pipeline concurrently and
  waits for all of them (join barrier) before returning

Usage:
    runner = ParallelRunner(parent, run_sub_movement, parent_on_stream=on_stream)
    result = await runner.run()
    for name, output in result.outputs.items():
        state.record_output(name, output)
    result.raise_for_failures()

Sub-movement pipelines never touch PieceState directly; their outputs are
returned here and merged by the caller at the barrier.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from takt.runtime.agents import StreamCallback, StreamEvent
from takt.runtime.types import AgentResponse, Movement

from .evaluation.tags import matched_condition

logger = logging.getLogger(__name__)

# cyan, yellow, magenta, green
COLORS = ("\x1b[36m", "\x1b[33m", "\x1b[35m", "\x1b[32m")
RESET = "\x1b[0m"

SECTION_SEPARATOR = "\n\n---\n\n"
NO_RESULT = "(no result)"

WriteFn = Callable[[str], None]
# (sub_movement, stream_callback) -> judged response
SubMovementRunner = Callable[[Movement, Optional[StreamCallback]], Awaitable[AgentResponse]]


class ParallelLogger:
    """Interleaves sub-movement stream output with `[name]` prefixes.

    Args:
        sub_movement_names: Names used to align prefixes.
        parent_on_stream: Receives init/result/error events unprefixed.
        write_fn: Output sink; defaults to sys.stdout.write.
    """

    def __init__(
        self,
        sub_movement_names: List[str],
        parent_on_stream: Optional[StreamCallback] = None,
        write_fn: Optional[WriteFn] = None,
    ):
        self._names = list(sub_movement_names)
        self._max_name_length = max((len(n) for n in self._names), default=0)
        self._parent_on_stream = parent_on_stream
        self._write = write_fn or sys.stdout.write
        self._line_buffers: Dict[str, str] = {name: "" for name in self._names}

    def build_prefix(self, name: str, index: int) -> str:
        color = COLORS[index % len(COLORS)]
        padding = " " * (self._max_name_length - len(name))
        return f"{color}[{name}]{RESET}{padding} "

    def create_stream_handler(self, sub_movement_name: str, index: int) -> StreamCallback:
        prefix = self.build_prefix(sub_movement_name, index)

        def handler(event: StreamEvent) -> None:
            if event.type == "text":
                self._handle_text(sub_movement_name, prefix, str(event.data.get("text", "")))
            elif event.type in ("tool_use", "tool_result", "tool_output", "thinking"):
                self._handle_block(prefix, event)
            elif event.type in ("init", "result", "error"):
                if self._parent_on_stream:
                    self._parent_on_stream(event)

        return handler

    def _write_lines(self, prefix: str, lines: List[str]) -> None:
        for line in lines:
            if line == "":
                self._write("\n")
            else:
                self._write(f"{prefix}{line}\n")

    def _handle_text(self, name: str, prefix: str, text: str) -> None:
        parts = (self._line_buffers.get(name, "") + text).split("\n")
        # Last part has no trailing newline yet.
        self._line_buffers[name] = parts.pop()
        self._write_lines(prefix, parts)

    def _handle_block(self, prefix: str, event: StreamEvent) -> None:
        if event.type == "tool_use":
            text = f"[tool] {event.data.get('tool', '')}"
        elif event.type == "tool_result":
            text = str(event.data.get("content", ""))
        elif event.type == "tool_output":
            text = str(event.data.get("output", ""))
        else:
            text = str(event.data.get("thinking", ""))
        self._write_lines(prefix, text.split("\n"))

    def flush(self) -> None:
        """Write out any partial lines still buffered."""
        for index, name in enumerate(self._names):
            buffer = self._line_buffers.get(name, "")
            if buffer:
                self._write(f"{self.build_prefix(name, index)}{buffer}\n")
                self._line_buffers[name] = ""

    def print_summary(
        self,
        parent_movement_name: str,
        results: List[Tuple[str, Optional[str]]],
    ) -> None:
        """Flush buffers and print a framed summary of (name, condition) pairs.

        Example:
            ── reviewers results ──
              arch-review:     approved
              security-review: needs_fix
            ───────────────────────
        """
        self.flush()

        name_width = max((len(name) for name, _ in results), default=0)
        result_lines = [
            f"  {name}:{' ' * (name_width - len(name))} {condition or NO_RESULT}"
            for name, condition in results
        ]

        header_text = f" {parent_movement_name} results "
        max_line_length = max([len(header_text) + 4] + [len(line) for line in result_lines])
        side_width = max(1, (max_line_length - len(header_text)) // 2)
        header_line = f"{'─' * side_width}{header_text}{'─' * side_width}"
        footer_line = "─" * len(header_line)

        self._write(f"{header_line}\n")
        for line in result_lines:
            self._write(f"{line}\n")
        self._write(f"{footer_line}\n")


def build_aggregated_content(sections: List[Tuple[str, str]]) -> str:
    """Join sub-movement outputs as `## <name>` sections separated by `---`."""
    return SECTION_SEPARATOR.join(f"## {name}\n{content}" for name, content in sections)


@dataclass
class ParallelResult:
    """Outcome of one join barrier."""

    parent: str
    outputs: Dict[str, AgentResponse] = field(default_factory=dict)
    failures: Dict[str, BaseException] = field(default_factory=dict)
    aggregated_content: str = ""

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        """Re-raise the first sub-movement failure in declaration order."""
        for exc in self.failures.values():
            raise exc


class ParallelRunner:
    """Runs every sub-movement of a parallel parent concurrently.

    Args:
        parent: The parallel parent movement.
        run_sub_movement: Coroutine factory running one sub-movement's full
            phase pipeline and returning its judged response.
        parent_on_stream: Stream callback of the parent movement.
        write_fn: Output sink for the ParallelLogger.
        use_prefixes: Route sub-movement streams through the ParallelLogger
            and print the result summary. When false nothing is written.
    """

    def __init__(
        self,
        parent: Movement,
        run_sub_movement: SubMovementRunner,
        parent_on_stream: Optional[StreamCallback] = None,
        write_fn: Optional[WriteFn] = None,
        use_prefixes: bool = True,
    ):
        self._parent = parent
        self._run_sub_movement = run_sub_movement
        self._parent_on_stream = parent_on_stream
        self._use_prefixes = use_prefixes
        self._logger = ParallelLogger(
            [sub.name for sub in parent.parallel],
            parent_on_stream=parent_on_stream,
            write_fn=write_fn,
        )

    @property
    def parallel_logger(self) -> ParallelLogger:
        return self._logger

    async def run(self) -> ParallelResult:
        subs = self._parent.parallel
        logger.debug(
            "Running %d sub-movements of %s concurrently", len(subs), self._parent.name
        )

        tasks = []
        for index, sub in enumerate(subs):
            on_stream = (
                self._logger.create_stream_handler(sub.name, index)
                if self._use_prefixes
                else self._parent_on_stream
            )
            tasks.append(self._run_sub_movement(sub, on_stream))

        # Join barrier: wait for every pipeline to settle.
        settled = await asyncio.gather(*tasks, return_exceptions=True)

        result = ParallelResult(parent=self._parent.name)
        summary: List[Tuple[str, Optional[str]]] = []
        sections: List[Tuple[str, str]] = []
        for sub, outcome in zip(subs, settled):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Sub-movement %s of %s failed: %s", sub.name, self._parent.name, outcome
                )
                result.failures[sub.name] = outcome
                summary.append((sub.name, None))
                continue
            result.outputs[sub.name] = outcome
            summary.append((sub.name, matched_condition(sub, outcome.matched_rule_index)))
            sections.append((sub.name, outcome.content))

        if self._use_prefixes:
            self._logger.print_summary(self._parent.name, summary)
        result.aggregated_content = build_aggregated_content(sections)
        return result
