"""Agent providers bundled with takt."""

from .mock import MockAgentCaller, MockAiJudge, MockCall

__all__ = ["MockAgentCaller", "MockAiJudge", "MockCall"]
