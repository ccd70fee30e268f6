"""
runner.py - Execution of batch ("arpeggio") movements.

A batch movement replaces its single Phase 1 call with one agent call per
data batch. Batches run with at most `concurrency` calls in flight; a failed
batch is retried up to `max_retries` times, `retry_delay_ms` apart. The
merged text becomes the movement's Phase 1 content and is routed by the
normal Rule Evaluator.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from takt.runtime.agents import AgentCallOptions, AgentCaller
from takt.runtime.errors import AgentCallError, PieceConfigError
from takt.runtime.types import AgentResponse, AgentStatus, ArpeggioConfig, Movement

from .data_source import resolve_data_source, resolve_source_path
from .merge import build_merge_fn, write_merged_output
from .template import expand_template, load_template
from .types import BatchResult, DataBatch

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class ArpeggioRunner:
    """Runs one batch movement.

    Args:
        movement: Movement with an arpeggio configuration.
        caller: Agent-call capability.
        build_options: Returns fresh call options for one batch call.
        base_dir: Directory relative paths in the configuration resolve against.
        sleep: Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        movement: Movement,
        caller: AgentCaller,
        build_options: Callable[[], AgentCallOptions],
        base_dir: str,
        sleep: Optional[SleepFn] = None,
    ):
        if movement.arpeggio is None:
            raise PieceConfigError(f"Movement '{movement.name}' has no arpeggio configuration")
        self._movement = movement
        self._config: ArpeggioConfig = movement.arpeggio
        self._caller = caller
        self._build_options = build_options
        self._base_dir = base_dir
        self._sleep = sleep or asyncio.sleep

    def _resolve(self, path: str) -> str:
        return resolve_source_path(path, self._base_dir)

    async def run(self) -> AgentResponse:
        config = self._config
        data_source = resolve_data_source(config.source, self._resolve(config.source_path))
        batches = data_source.read_batches(config.batch_size)
        template = load_template(self._resolve(config.template))
        merge_fn = build_merge_fn(config.merge, self._base_dir)

        logger.info(
            "Running %d batches for movement %s (concurrency %d)",
            len(batches),
            self._movement.name,
            config.concurrency,
        )
        semaphore = asyncio.Semaphore(max(1, config.concurrency))

        async def bounded(batch: DataBatch) -> BatchResult:
            async with semaphore:
                return await self._run_batch(batch, template)

        # Every batch settles before any failure is reported.
        settled = await asyncio.gather(*(bounded(b) for b in batches), return_exceptions=True)

        results: List[BatchResult] = []
        for batch, outcome in zip(batches, settled):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Batch %d of %s raised: %s", batch.batch_index, self._movement.name, outcome
                )
                raise outcome
            results.append(outcome)

        failed = [r for r in results if not r.success]
        if failed:
            first = failed[0]
            raise AgentCallError(
                f"Arpeggio batch {first.batch_index} failed after "
                f"{config.max_retries + 1} attempts: {first.error}",
                self._movement.name,
            )

        merged = merge_fn(results)
        if config.output_path:
            write_merged_output(self._resolve(config.output_path), merged)

        return AgentResponse(
            persona=self._movement.display_name,
            status=AgentStatus.DONE,
            content=merged,
        )

    async def _run_batch(self, batch: DataBatch, template: str) -> BatchResult:
        prompt = expand_template(template, batch)
        attempts = self._config.max_retries + 1
        error: Optional[str] = None
        for attempt in range(1, attempts + 1):
            try:
                response = await self._caller.call(
                    self._movement.persona, prompt, self._build_options()
                )
            except Exception as exc:
                error = str(exc) or type(exc).__name__
            else:
                if response.status == AgentStatus.DONE:
                    return BatchResult(batch.batch_index, response.content, success=True)
                error = response.error or response.content or f"status {response.status.value}"

            logger.warning(
                "Batch %d of %s failed (attempt %d/%d): %s",
                batch.batch_index,
                self._movement.name,
                attempt,
                attempts,
                error,
            )
            if attempt < attempts:
                await self._sleep(self._config.retry_delay_ms / 1000.0)

        return BatchResult(batch.batch_index, "", success=False, error=error)
