"""Runtime configuration registry for the piece engine.

Provides engine defaults (language, provider, turn budgets, loop detection)
and logging setup. Environment variables take precedence over YAML config.

Usage:
    from takt.config.runtime_config import configure_logging, get_language, build_engine_options

    configure_logging()
    options = build_engine_options(task="Fix the login bug", cwd="/path/to/repo")
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from takt.runtime.piece.engine import PieceEngineOptions
from takt.runtime.types import LoopAction, LoopDetectionConfig

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH) as f:
            _cached_config = yaml.safe_load(f) or {}
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "defaults": {
            "language": "en",
            "provider": "mock",
            "model": None,
            "log_level": "INFO",
            "phase_max_turns": 3,
            "judge_model": "haiku",
            "status_judgment": "session",
            "strict_aggregate": False,
        },
        "loop_detection": {
            "max_consecutive_same_step": 10,
            "action": "warn",
        },
        "providers": {
            "claude": {},
            "codex": {},
            "opencode": {},
            "mock": {},
        },
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def get_default(key: str, fallback: Any = None) -> Any:
    """Get a default setting value.

    Args:
        key: Setting key (e.g., "language", "phase_max_turns").
        fallback: Value to return if key not found.

    Returns:
        Setting value or fallback.
    """
    config = _load_config()
    defaults = config.get("defaults", {})
    value = defaults.get(key)
    return fallback if value is None else value


def _env_or_default(env_var: str, key: str, fallback: Any = None) -> Any:
    value = os.environ.get(env_var)
    if value:
        return value
    return get_default(key, fallback)


def get_language() -> str:
    """Instruction language ("en" or "ja"). TAKT_LANGUAGE overrides config."""
    language = str(_env_or_default("TAKT_LANGUAGE", "language", "en")).lower()
    if language not in ("en", "ja"):
        logger.warning("Unsupported language '%s', falling back to 'en'", language)
        return "en"
    return language


def get_provider() -> str:
    """Default provider. TAKT_PROVIDER overrides config."""
    return str(_env_or_default("TAKT_PROVIDER", "provider", "mock"))


def get_model() -> Optional[str]:
    return _env_or_default("TAKT_MODEL", "model")


def get_log_level() -> str:
    return str(_env_or_default("TAKT_LOG_LEVEL", "log_level", "INFO")).upper()


def get_phase_max_turns() -> int:
    """Turn budget for report and status judgment phases (default: 3)."""
    return int(get_default("phase_max_turns", 3))


def get_judge_model() -> Optional[str]:
    return get_default("judge_model")


def get_status_judgment_mode() -> str:
    """'session' or 'strategies'. TAKT_STATUS_JUDGMENT overrides config."""
    return str(_env_or_default("TAKT_STATUS_JUDGMENT", "status_judgment", "session"))


def is_strict_aggregate() -> bool:
    return bool(get_default("strict_aggregate", False))


def get_loop_detection_defaults() -> LoopDetectionConfig:
    """Loop detection settings used when a piece declares none."""
    config = _load_config()
    section = config.get("loop_detection", {}) or {}
    return LoopDetectionConfig(
        max_consecutive_same_step=int(section.get("max_consecutive_same_step", 10)),
        action=LoopAction(section.get("action", "warn")),
    )


def get_available_providers() -> List[str]:
    config = _load_config()
    return list((config.get("providers") or {}).keys())


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for entry points.

    Level precedence: argument, TAKT_LOG_LEVEL, runtime.yaml, INFO.
    """
    resolved = (level or get_log_level()).upper()
    numeric = getattr(logging, resolved, None)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format=LOG_FORMAT)


def build_engine_options(**overrides: Any) -> PieceEngineOptions:
    """PieceEngineOptions populated from runtime defaults.

    Keyword arguments override individual fields.
    """
    values: Dict[str, Any] = {
        "language": get_language(),
        "provider": get_provider(),
        "model": get_model(),
        "judge_model": get_judge_model(),
        "phase_max_turns": get_phase_max_turns(),
        "status_judgment": get_status_judgment_mode(),
        "strict_aggregate": is_strict_aggregate(),
    }
    values.update(overrides)
    return PieceEngineOptions(**values)
