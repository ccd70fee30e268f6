"""
Test fixtures and utilities for piece engine tests.

This module provides reusable fixtures for building pieces, scripted agent
callers and engines bound to a temporary project directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

import pytest

from takt.config import runtime_config
from takt.runtime.piece import EngineCallbacks, PieceEngine, PieceEngineOptions
from takt.runtime.providers.mock import MockAgentCaller, MockAiJudge
from takt.runtime.types import Movement, PieceConfig, PieceRule


# ============================================================================
# Helpers
# ============================================================================


def rule(condition: str, next: Optional[str] = None, **kwargs) -> PieceRule:
    """Build a classified PieceRule."""
    return PieceRule.from_condition(condition, next=next, **kwargs)


def movement(name: str, rules: Iterable[PieceRule] = (), **kwargs) -> Movement:
    """Build a leaf movement whose persona defaults to its name."""
    kwargs.setdefault("persona", name)
    return Movement(name=name, rules=list(rules), **kwargs)


def piece(movements: List[Movement], name: str = "test-piece", **kwargs) -> PieceConfig:
    return PieceConfig.from_movements(name, movements, **kwargs)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def _reset_runtime_config(monkeypatch):
    """Isolate tests from cached runtime config and TAKT_* variables."""
    for var in (
        "TAKT_LANGUAGE",
        "TAKT_PROVIDER",
        "TAKT_MODEL",
        "TAKT_LOG_LEVEL",
        "TAKT_STATUS_JUDGMENT",
        "TAKT_CONFIG_DIR",
    ):
        monkeypatch.delenv(var, raising=False)
    runtime_config.reset_config()
    yield
    runtime_config.reset_config()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Empty project directory for a run."""
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def judge() -> MockAiJudge:
    return MockAiJudge()


@pytest.fixture
def make_engine(project_dir: Path, judge: MockAiJudge):
    """Factory building a PieceEngine against project_dir.

    Usage:
        engine = make_engine(config, caller, task="Fix it")
    """

    def _make(
        config: PieceConfig,
        caller: MockAgentCaller,
        callbacks: Optional[EngineCallbacks] = None,
        ai_judge: Optional[MockAiJudge] = None,
        **option_overrides,
    ) -> PieceEngine:
        option_overrides.setdefault("task", "Implement the feature")
        option_overrides.setdefault("cwd", str(project_dir))
        option_overrides.setdefault("run_slug", "test-run")
        option_overrides.setdefault("parallel_write_fn", lambda text: None)
        options = PieceEngineOptions(**option_overrides)
        return PieceEngine(
            config,
            caller,
            judge=ai_judge or judge,
            options=options,
            callbacks=callbacks,
        )

    return _make
