"""Handling for movements whose agent reports blocked."""

from __future__ import annotations

import logging
import re
from typing import Optional

from takt.runtime.types import AgentResponse, Movement

from .events import UserInputCallback, UserInputRequest

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_PROMPT = "The agent needs additional input to continue."

_STATUS_TAG_RE = re.compile(r"\[[A-Z0-9_\-]+:\d+\]", re.IGNORECASE)


def extract_blocked_prompt(content: str) -> str:
    """Turn a blocked response into the question shown to the user.

    Status tags are stripped; an empty remainder yields a generic prompt.
    """
    prompt = _STATUS_TAG_RE.sub("", content or "").strip()
    return prompt or DEFAULT_BLOCKED_PROMPT


async def handle_blocked(
    movement: Movement,
    response: AgentResponse,
    on_user_input: Optional[UserInputCallback],
) -> Optional[str]:
    """Ask the caller for input on behalf of a blocked movement.

    Returns:
        The supplied text, or None when no input channel exists or the
        caller declined (which aborts the run).
    """
    if on_user_input is None:
        logger.debug("Movement %s blocked and no user input channel is configured", movement.name)
        return None
    request = UserInputRequest(
        movement=movement,
        response=response,
        prompt=extract_blocked_prompt(response.content),
    )
    user_input = await on_user_input(request)
    if user_input is None:
        logger.debug("User declined to provide input for movement %s", movement.name)
    return user_input
