"""
options.py - Agent call options for each execution phase.

Phase 1 may resume the movement's stored session; Phase 2 and Phase 3 always
resume the session Phase 1 produced, with no tools and no permission mode.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Callable, List, Optional

from takt.runtime.agents import AgentCallOptions, StreamCallback
from takt.runtime.types import Movement, PermissionMode


class OptionsBuilder:
    """Builds AgentCallOptions for a movement's phases.

    Args:
        cwd: Agent working directory (may be a clone of the project).
        project_cwd: Project root holding `.takt/`.
        get_session_id: Looks up a stored session id by session key.
        provider: Engine-level provider, used when a movement sets none.
        model: Engine-level model, used when a movement sets none.
        on_stream: Engine-level stream callback.
    """

    def __init__(
        self,
        cwd: str,
        project_cwd: str,
        get_session_id: Callable[[str], Optional[str]],
        provider: Optional[str] = None,
        model: Optional[str] = None,
        on_stream: Optional[StreamCallback] = None,
    ):
        self._cwd = cwd
        self._project_cwd = project_cwd
        self._get_session_id = get_session_id
        self._provider = provider
        self._model = model
        self._on_stream = on_stream

    def resolve_provider(self, movement: Movement) -> Optional[str]:
        return movement.provider or self._provider

    def build_base_options(
        self,
        movement: Movement,
        permission_mode: Optional[PermissionMode] = None,
        on_stream: Optional[StreamCallback] = None,
    ) -> AgentCallOptions:
        return AgentCallOptions(
            cwd=self._cwd,
            provider=self.resolve_provider(movement),
            model=movement.model or self._model,
            permission_mode=permission_mode,
            allowed_tools=movement.allowed_tools,
            on_stream=on_stream or self._on_stream,
        )

    def build_agent_options(
        self,
        movement: Movement,
        permission_mode: Optional[PermissionMode] = None,
        on_stream: Optional[StreamCallback] = None,
    ) -> AgentCallOptions:
        """Options for Phase 1.

        Write is removed from allowed tools when the movement produces reports
        and edit is not explicitly enabled. The stored session is resumed
        unless the movement asks for a fresh one or the agent runs outside
        the project directory.
        """
        allowed_tools = movement.allowed_tools
        if movement.output_contracts and movement.edit is not True and allowed_tools is not None:
            allowed_tools = [tool for tool in allowed_tools if tool != "Write"]

        should_resume = movement.session != "refresh" and self._cwd == self._project_cwd
        options = self.build_base_options(movement, permission_mode, on_stream)
        return replace(
            options,
            session_id=self._get_session_id(movement.session_key) if should_resume else None,
            allowed_tools=allowed_tools,
        )

    def build_resume_options(
        self,
        movement: Movement,
        session_id: str,
        allowed_tools: Optional[List[str]] = None,
        max_turns: Optional[int] = None,
        on_stream: Optional[StreamCallback] = None,
    ) -> AgentCallOptions:
        """Options for Phase 2 / Phase 3 session-resume calls."""
        options = self.build_base_options(movement, None, on_stream)
        return replace(
            options,
            permission_mode=None,
            session_id=session_id,
            allowed_tools=allowed_tools,
            max_turns=max_turns,
        )
