"""
engine.py - Movement engine: drives one piece run to a terminal state.

Each loop iteration enters one movement:

1. Iteration budget check (on_iteration_limit may extend it)
2. Loop detection (warn, abort, or ignore)
3. Movement execution
   - leaf:     Phase 1 agent call -> Phase 2 reports -> Phase 3 judgment
   - parallel: every sub-movement pipeline concurrently, joined at a barrier
   - batch:    one agent call per data batch, merged
4. Rule evaluation picks the next movement, COMPLETE, or ABORT

Top-level movements run strictly one at a time. Phase functions raise;
run() is the only place an exception becomes an aborted PieceState plus an
on_run_abort callback. A stop requested via request_stop() is honored at
the next phase boundary.

Usage:
    engine = PieceEngine(config, caller, options=PieceEngineOptions(task="Fix the bug", cwd=repo))
    state = asyncio.run(engine.run())
    if state.status == PieceStatus.ABORTED:
        print(state.abort_reason)
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Tuple

from takt.runtime.agents import AgentBackedJudge, AgentCaller, AiJudge, StreamCallback
from takt.runtime.errors import (
    AgentCallError,
    LoopDetectedError,
    PieceConfigError,
    PieceInterrupted,
    RuleNotMatchedError,
)
from takt.runtime.types import (
    ABORT,
    COMPLETE,
    AgentResponse,
    AgentStatus,
    Movement,
    PermissionMode,
    PieceConfig,
    PieceState,
    PieceStatus,
    RuleMatch,
)

from .arpeggio import ArpeggioRunner
from .blocked import handle_blocked
from .evaluation import RuleEvaluator, RuleEvaluatorContext
from .evaluation.tags import auto_select_tag, has_only_one_branch, has_tag_based_rules
from .events import EngineCallbacks, IterationLimitRequest
from .instructions import InstructionContext, build_phase1_instruction
from .judgment import JudgmentContext, JudgmentStrategyChain
from .loop_detector import LoopDetector
from .options import OptionsBuilder
from .parallel import ParallelRunner, WriteFn
from .permission import (
    DEFAULT_PROVIDER_PERMISSION_PROFILES,
    ProviderPermissionProfiles,
    resolve_movement_permission_mode,
)
from .phases import (
    DEFAULT_PHASE_MAX_TURNS,
    PhaseRunnerContext,
    needs_status_judgment_phase,
    run_report_phase,
    run_status_judgment_phase,
)
from .reports import build_run_paths

logger = logging.getLogger(__name__)

STATUS_JUDGMENT_MODES = ("session", "strategies")

MAX_ITERATIONS_REACHED = "Max iterations reached"
BLOCKED_WITHOUT_INPUT = "Piece blocked and no user input provided"
ABORTED_BY_RULE = "Piece aborted by movement transition"


def movement_execution_failed(message: str) -> str:
    return f"Movement execution failed: {message}"


@dataclass
class PieceEngineOptions:
    """Per-run engine settings.

    Attributes:
        task: The user task substituted for {task}.
        cwd: Agent working directory; may be a clone of the project.
        project_cwd: Project root holding `.takt/`; defaults to cwd.
        report_dir: Absolute report directory; defaults to
            `<project_cwd>/.takt/runs/<run_slug>/reports`.
        run_slug: Run directory name; defaults to a timestamp plus piece name.
        language: 'en' or 'ja' for generated instructions.
        provider: Provider used when a movement sets none.
        model: Model used when a movement sets none.
        judge_model: Model for the default agent-backed AI judge.
        interactive: Enables interactive-only rules.
        start_movement: Overrides the piece's initial movement.
        initial_sessions: Session ids restored from a previous run.
        project_provider_profiles: Project-layer permission profiles.
        global_provider_profiles: Global-layer permission profiles.
        status_judgment: 'session' resumes the agent for Phase 3;
            'strategies' uses the judgment strategy chain.
        strict_aggregate: Raise on all() condition count mismatches.
        phase_max_turns: Turn budget for Phase 2 and Phase 3 calls.
        on_stream: Stream callback for agent output.
        parallel_write_fn: Output sink for parallel sub-movement logs.
    """

    task: str = ""
    cwd: str = "."
    project_cwd: Optional[str] = None
    report_dir: Optional[str] = None
    run_slug: Optional[str] = None
    language: str = "en"
    provider: Optional[str] = None
    model: Optional[str] = None
    judge_model: Optional[str] = None
    interactive: bool = False
    start_movement: Optional[str] = None
    initial_sessions: Dict[str, str] = field(default_factory=dict)
    project_provider_profiles: Optional[ProviderPermissionProfiles] = None
    global_provider_profiles: Optional[ProviderPermissionProfiles] = None
    status_judgment: str = "session"
    strict_aggregate: bool = False
    phase_max_turns: int = DEFAULT_PHASE_MAX_TURNS
    on_stream: Optional[StreamCallback] = None
    parallel_write_fn: Optional[WriteFn] = None


def default_run_slug(piece_name: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{piece_name}"


class PieceEngine:
    """Runs one piece.

    Args:
        config: Validated piece configuration (borrowed, never mutated).
        caller: Agent-call capability.
        judge: AI-judge capability; defaults to an AgentBackedJudge over caller.
        options: Per-run settings.
        callbacks: Lifecycle callbacks.
    """

    def __init__(
        self,
        config: PieceConfig,
        caller: AgentCaller,
        judge: Optional[AiJudge] = None,
        options: Optional[PieceEngineOptions] = None,
        callbacks: Optional[EngineCallbacks] = None,
    ):
        self._config = config
        self._caller = caller
        self._options = options or PieceEngineOptions()
        self._judge = judge or AgentBackedJudge(caller, model=self._options.judge_model)
        self._callbacks = callbacks or EngineCallbacks()

        if self._options.status_judgment not in STATUS_JUDGMENT_MODES:
            raise PieceConfigError(
                f"Unknown status judgment mode: {self._options.status_judgment}"
            )
        config.validate()

        start = self._options.start_movement or config.initial_movement
        if start not in config.movements:
            raise PieceConfigError(f"Unknown start movement: {start}")

        self._cwd = self._options.cwd
        self._project_cwd = self._options.project_cwd or self._options.cwd
        if self._options.report_dir:
            self._report_dir = str(Path(self._options.report_dir))
        else:
            slug = self._options.run_slug or default_run_slug(config.name)
            self._report_dir = str(build_run_paths(self._project_cwd, slug).reports_abs)

        self._max_iterations = config.max_iterations
        self._loop_detector = LoopDetector(config.loop_detection)
        self._judgment_chain = JudgmentStrategyChain()
        self._stop_requested = threading.Event()
        self._state = PieceState(
            piece_name=config.name,
            current_movement=start,
            agent_sessions=dict(self._options.initial_sessions),
        )
        self._options_builder = OptionsBuilder(
            cwd=self._cwd,
            project_cwd=self._project_cwd,
            get_session_id=self._state.agent_sessions.get,
            provider=self._options.provider,
            model=self._options.model,
            on_stream=self._options.on_stream,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def state(self) -> PieceState:
        return self._state

    @property
    def report_dir(self) -> str:
        return self._report_dir

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    def request_stop(self) -> None:
        """Ask the run to stop at the next phase boundary. Thread-safe."""
        logger.info("Stop requested for piece %s", self._config.name)
        self._stop_requested.set()

    def is_stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    async def run(self) -> PieceState:
        """Run until the piece completes or aborts.

        Returns:
            The final PieceState. Cancellation of the surrounding task marks
            the state aborted and re-raises.
        """
        state = self._state
        logger.info("Starting piece %s at movement %s", self._config.name, state.current_movement)

        while state.status == PieceStatus.RUNNING:
            try:
                if not await self._ensure_iteration_budget():
                    self._abort(MAX_ITERATIONS_REACHED)
                    break

                movement = self._config.get_movement(state.current_movement)
                self._check_loop(movement)
                self._check_stop()

                state.iteration += 1
                if self._callbacks.on_movement_start:
                    self._callbacks.on_movement_start(movement, state.iteration)

                response = await self._run_movement(movement)
                if self._callbacks.on_movement_complete:
                    self._callbacks.on_movement_complete(movement, response)

                if response.status == AgentStatus.BLOCKED:
                    if not await self._resume_blocked(movement, response):
                        self._abort(BLOCKED_WITHOUT_INPUT)
                    continue

                self._advance(movement, response)
            except PieceInterrupted as exc:
                self._abort(exc.reason)
            except LoopDetectedError as exc:
                self._abort(str(exc))
            except asyncio.CancelledError:
                self._abort("Piece cancelled")
                raise
            except Exception as exc:
                logger.debug("Movement %s raised", state.current_movement, exc_info=True)
                self._abort(movement_execution_failed(str(exc)))

        return state

    async def run_single_iteration(self) -> Tuple[AgentResponse, str, bool]:
        """Run exactly one movement without the budget and blocked handling.

        Returns:
            (response, next movement name or sentinel, is_complete).

        Raises:
            LoopDetectedError: If the loop detector requests an abort.
        """
        movement = self._config.get_movement(self._state.current_movement)
        self._check_loop(movement)
        self._state.iteration += 1
        response = await self._run_movement(movement)
        next_movement = self._next_movement(movement, response)
        is_complete = next_movement in (COMPLETE, ABORT)
        if next_movement == COMPLETE:
            self._state.status = PieceStatus.COMPLETED
        elif next_movement == ABORT:
            self._state.status = PieceStatus.ABORTED
            self._state.abort_reason = ABORTED_BY_RULE
        else:
            self._state.current_movement = next_movement
        return response, next_movement, is_complete

    # =========================================================================
    # Run loop helpers
    # =========================================================================

    async def _ensure_iteration_budget(self) -> bool:
        state = self._state
        if state.iteration < self._max_iterations:
            return True
        logger.warning(
            "Piece %s reached max iterations (%d)", self._config.name, self._max_iterations
        )
        if self._callbacks.on_iteration_limit is None:
            return False
        extra = await self._callbacks.on_iteration_limit(
            IterationLimitRequest(
                current_iteration=state.iteration,
                max_iterations=self._max_iterations,
                current_movement=state.current_movement,
            )
        )
        if extra is None or extra <= 0:
            return False
        self._max_iterations += extra
        logger.info("Extended max iterations of %s to %d", self._config.name, self._max_iterations)
        return True

    def _check_loop(self, movement: Movement) -> None:
        result = self._loop_detector.check(movement.name)
        if result.should_warn:
            logger.warning(
                "Loop detected: movement %s ran %d times consecutively", movement.name, result.count
            )
            if self._callbacks.on_loop_warning:
                self._callbacks.on_loop_warning(movement.name, result.count)
        if result.should_abort:
            raise LoopDetectedError(movement.name, result.count)

    def _check_stop(self) -> None:
        if self._stop_requested.is_set():
            raise PieceInterrupted("Piece interrupted")

    async def _resume_blocked(self, movement: Movement, response: AgentResponse) -> bool:
        self._state.status = PieceStatus.BLOCKED
        user_input = await handle_blocked(movement, response, self._callbacks.on_user_input)
        if user_input is None:
            return False
        self._state.add_user_input(user_input)
        self._state.status = PieceStatus.RUNNING
        return True

    def _next_movement(self, movement: Movement, response: AgentResponse) -> str:
        index = response.matched_rule_index
        if index is None or index >= len(movement.rules):
            raise RuleNotMatchedError(movement.name)
        target = movement.rules[index].next
        if target is None:
            raise PieceConfigError(
                f"Rule {index + 1} of movement '{movement.name}' has no next movement"
            )
        return target

    def _advance(self, movement: Movement, response: AgentResponse) -> None:
        next_movement = self._next_movement(movement, response)
        logger.debug(
            "Transition %s -> %s (rule %s, %s)",
            movement.name,
            next_movement,
            response.matched_rule_index,
            response.matched_rule_method.value if response.matched_rule_method else None,
        )
        if next_movement == COMPLETE:
            self._state.status = PieceStatus.COMPLETED
            logger.info(
                "Piece %s completed after %d iterations", self._config.name, self._state.iteration
            )
            if self._callbacks.on_run_complete:
                self._callbacks.on_run_complete(self._state)
        elif next_movement == ABORT:
            self._abort(ABORTED_BY_RULE)
        else:
            self._state.current_movement = next_movement

    def _abort(self, reason: str) -> None:
        state = self._state
        state.status = PieceStatus.ABORTED
        state.abort_reason = reason
        logger.error(
            "Piece %s aborted at iteration %d: %s", self._config.name, state.iteration, reason
        )
        if self._callbacks.on_run_abort:
            self._callbacks.on_run_abort(state, reason)

    def _update_session(self, key: str, session_id: Optional[str]) -> None:
        if not session_id:
            return
        if self._state.agent_sessions.get(key) == session_id:
            return
        self._state.agent_sessions[key] = session_id
        logger.debug("Session for %s is now %s", key, session_id)
        if self._callbacks.on_session_update:
            self._callbacks.on_session_update(key, session_id)

    # =========================================================================
    # Movement execution
    # =========================================================================

    def _resolve_permission(self, movement: Movement) -> PermissionMode:
        provider = self._options_builder.resolve_provider(movement) or self._caller.provider_id
        global_profiles = self._options.global_provider_profiles
        if global_profiles is None:
            global_profiles = DEFAULT_PROVIDER_PERMISSION_PROFILES
        return resolve_movement_permission_mode(
            movement.name,
            required_permission_mode=movement.required_permission_mode,
            provider=provider,
            project_profiles=self._options.project_provider_profiles,
            global_profiles=global_profiles,
        )

    async def _run_movement(self, movement: Movement) -> AgentResponse:
        if movement.is_parallel:
            response = await self._run_parallel_movement(movement)
        else:
            movement_iteration = self._state.increment_movement_iteration(movement.name)
            response = await self._run_leaf_movement(movement, movement_iteration)
        self._state.record_output(movement.name, response)
        return response

    def _phase_context(self, on_stream: Optional[StreamCallback] = None) -> PhaseRunnerContext:
        return PhaseRunnerContext(
            cwd=self._cwd,
            report_dir=self._report_dir,
            caller=self._caller,
            get_session_id=self._state.agent_sessions.get,
            build_resume_options=self._options_builder.build_resume_options,
            update_agent_session=self._update_session,
            language=self._options.language,
            interactive=self._options.interactive,
            max_turns=self._options.phase_max_turns,
            on_phase_start=self._callbacks.on_phase_start,
            on_phase_complete=self._callbacks.on_phase_complete,
            on_stream=on_stream,
        )

    async def _run_leaf_movement(
        self,
        movement: Movement,
        movement_iteration: int,
        on_stream: Optional[StreamCallback] = None,
    ) -> AgentResponse:
        """Run Phase 1-3 and rule evaluation for a non-parallel movement.

        The returned response carries its matched rule; the caller records it.
        """
        permission_mode = self._resolve_permission(movement)
        phase_ctx = self._phase_context(on_stream)

        if movement.arpeggio is not None:
            response = await self._run_arpeggio(movement, permission_mode, on_stream)
            self._check_stop()
            tag_content = auto_select_tag(movement) if has_only_one_branch(movement) else ""
            return await self._apply_rules(movement, response, tag_content)

        state = self._state
        instruction = build_phase1_instruction(
            movement,
            InstructionContext(
                task=self._options.task,
                iteration=state.iteration,
                max_iterations=self._max_iterations,
                movement_iteration=movement_iteration,
                cwd=self._cwd,
                user_inputs=list(state.user_inputs),
                previous_output=state.last_output,
                report_dir=self._report_dir,
                language=self._options.language,
                interactive=self._options.interactive,
            ),
            include_status_rules=has_tag_based_rules(movement),
        )
        phase_ctx.phase_started(movement, 1, "execute", instruction)
        options = self._options_builder.build_agent_options(movement, permission_mode, on_stream)
        try:
            response = await self._caller.call(movement.persona, instruction, options)
        except Exception as exc:
            phase_ctx.phase_completed(movement, 1, "execute", "", AgentStatus.ERROR.value, str(exc))
            raise
        self._update_session(movement.session_key, response.session_id)
        phase_ctx.phase_completed(
            movement, 1, "execute", response.content, response.status.value, response.error
        )

        if response.status == AgentStatus.ERROR:
            raise AgentCallError(
                f"Agent error in movement \"{movement.name}\": "
                f"{response.error or response.content or 'Unknown error'}",
                movement.name,
            )
        if response.status == AgentStatus.BLOCKED:
            return response

        if movement.output_contracts:
            self._check_stop()
            await run_report_phase(movement, movement_iteration, phase_ctx)
            self._emit_reports(movement)

        self._check_stop()
        tag_content = await self._judge_status(movement, response, phase_ctx)
        return await self._apply_rules(movement, response, tag_content)

    def _emit_reports(self, movement: Movement) -> None:
        if not self._callbacks.on_movement_report:
            return
        for file_name in movement.report_files:
            path = Path(self._report_dir) / file_name
            if path.exists():
                self._callbacks.on_movement_report(movement, str(path), file_name)

    async def _judge_status(
        self,
        movement: Movement,
        response: AgentResponse,
        phase_ctx: PhaseRunnerContext,
    ) -> str:
        """Phase 3: return text containing a status tag, or '' when not needed."""
        if not needs_status_judgment_phase(movement):
            return ""
        if has_only_one_branch(movement):
            return auto_select_tag(movement)
        if self._options.status_judgment == "session":
            return await run_status_judgment_phase(movement, phase_ctx)

        async def consult(instruction: str, session_id: str) -> AgentResponse:
            options = self._options_builder.build_resume_options(
                movement, session_id, [], self._options.phase_max_turns, phase_ctx.on_stream
            )
            phase_ctx.phase_started(movement, 3, "judge", instruction)
            consulted = await self._caller.call(movement.persona, instruction, options)
            self._update_session(movement.session_key, consulted.session_id)
            phase_ctx.phase_completed(
                movement, 3, "judge", consulted.content, consulted.status.value, consulted.error
            )
            return consulted

        result = await self._judgment_chain.judge(
            JudgmentContext(
                movement=movement,
                judge=self._judge,
                cwd=self._cwd,
                report_dir=self._report_dir,
                last_response=response.content,
                session_id=self._state.agent_sessions.get(movement.session_key),
                consult=consult,
                language=self._options.language,
                interactive=self._options.interactive,
            )
        )
        logger.debug("Judgment for %s via %s: %s", movement.name, result.strategy, result.tag)
        return result.tag or ""

    async def _evaluate_rules(
        self, movement: Movement, agent_content: str, tag_content: str
    ) -> Optional[RuleMatch]:
        evaluator = RuleEvaluator(
            movement,
            RuleEvaluatorContext(
                state=self._state,
                cwd=self._cwd,
                judge=self._judge,
                interactive=self._options.interactive,
                strict_aggregate=self._options.strict_aggregate,
            ),
        )
        return await evaluator.evaluate(agent_content, tag_content)

    async def _apply_rules(
        self, movement: Movement, response: AgentResponse, tag_content: str
    ) -> AgentResponse:
        match = await self._evaluate_rules(movement, response.content, tag_content)
        if match is not None:
            response.matched_rule_index = match.index
            response.matched_rule_method = match.method
            logger.debug(
                "Movement %s matched rule %d via %s", movement.name, match.index, match.method.value
            )
        return response

    async def _run_parallel_movement(self, movement: Movement) -> AgentResponse:
        # Iteration counters are bumped before launch so sub-movement
        # pipelines only write to the session table.
        iterations = {
            sub.name: self._state.increment_movement_iteration(sub.name)
            for sub in movement.parallel
        }
        self._state.increment_movement_iteration(movement.name)

        async def run_sub(sub: Movement, on_stream: Optional[StreamCallback]) -> AgentResponse:
            self._check_stop()
            return await self._run_leaf_movement(sub, iterations[sub.name], on_stream)

        # Prefixed display only when someone consumes the output.
        display = self._options.on_stream is not None or self._options.parallel_write_fn is not None
        runner = ParallelRunner(
            movement,
            run_sub,
            parent_on_stream=self._options.on_stream,
            write_fn=self._options.parallel_write_fn,
            use_prefixes=display,
        )
        result = await runner.run()

        # Join barrier: sub-movement outputs become visible to the aggregate
        # evaluator only here.
        for name, output in result.outputs.items():
            self._state.record_output(name, output)
        result.raise_for_failures()
        self._check_stop()

        response = AgentResponse(
            persona=movement.name,
            status=AgentStatus.DONE,
            content=result.aggregated_content,
        )
        return await self._apply_rules(movement, response, "")

    async def _run_arpeggio(
        self,
        movement: Movement,
        permission_mode: PermissionMode,
        on_stream: Optional[StreamCallback],
    ) -> AgentResponse:
        runner = ArpeggioRunner(
            movement,
            self._caller,
            build_options=lambda: self._options_builder.build_base_options(
                movement, permission_mode, on_stream
            ),
            base_dir=self._project_cwd,
        )
        return await runner.run()
