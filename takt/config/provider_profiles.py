"""Provider permission profiles loaded from YAML config files.

Two layers feed the permission resolver:
- project: <project>/.takt/config.yaml
- global:  ~/.takt/config.yaml (directory overridable with TAKT_CONFIG_DIR)

Both files use the same shape:

    provider_profiles:
      claude:
        default_permission_mode: edit
        movement_permission_overrides:
          implement: full
          review: readonly

The global layer falls back to DEFAULT_PROVIDER_PERMISSION_PROFILES when the
file is absent or declares no profiles.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from takt.runtime.errors import PieceConfigError
from takt.runtime.piece.permission import (
    DEFAULT_PROVIDER_PERMISSION_PROFILES,
    ProviderPermissionProfile,
    ProviderPermissionProfiles,
)
from takt.runtime.types import PermissionMode

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.yaml"


class ProviderProfileModel(BaseModel):
    """Raw provider profile as written in YAML."""

    default_permission_mode: Optional[PermissionMode] = None
    movement_permission_overrides: Dict[str, PermissionMode] = Field(default_factory=dict)


class ProviderProfilesDocument(BaseModel):
    """The part of a takt config file this module reads."""

    provider_profiles: Dict[str, ProviderProfileModel] = Field(default_factory=dict)


def get_global_config_dir() -> Path:
    override = os.environ.get("TAKT_CONFIG_DIR")
    if override:
        return Path(override)
    return Path.home() / ".takt"


def get_project_config_path(project_dir: Union[str, Path]) -> Path:
    return Path(project_dir) / ".takt" / CONFIG_FILE_NAME


def parse_provider_profiles(data: Optional[Dict[str, Any]], source: Optional[str] = None) -> ProviderPermissionProfiles:
    """Validate a config mapping and convert its provider_profiles section.

    Raises:
        PieceConfigError: If the section does not match the expected schema.
    """
    try:
        document = ProviderProfilesDocument.model_validate(data or {})
    except ValidationError as exc:
        raise PieceConfigError(f"Invalid provider_profiles: {exc}", source) from exc
    return {
        provider: ProviderPermissionProfile(
            default_permission_mode=profile.default_permission_mode,
            movement_permission_overrides=dict(profile.movement_permission_overrides),
        )
        for provider, profile in document.provider_profiles.items()
    }


def load_provider_profiles(path: Union[str, Path]) -> ProviderPermissionProfiles:
    """Load provider profiles from a YAML file; a missing file yields {}."""
    path = Path(path)
    if not path.exists():
        return {}
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise PieceConfigError(f"Invalid YAML: {exc}", path) from exc
    if data is not None and not isinstance(data, dict):
        raise PieceConfigError("Config file must contain a mapping", path)
    profiles = parse_provider_profiles(data, str(path))
    logger.debug("Loaded %d provider profiles from %s", len(profiles), path)
    return profiles


def load_project_provider_profiles(project_dir: Union[str, Path]) -> ProviderPermissionProfiles:
    return load_provider_profiles(get_project_config_path(project_dir))


def load_global_provider_profiles(config_dir: Optional[Union[str, Path]] = None) -> ProviderPermissionProfiles:
    """Global profiles, defaulting to the built-in provider defaults."""
    directory = Path(config_dir) if config_dir else get_global_config_dir()
    profiles = load_provider_profiles(directory / CONFIG_FILE_NAME)
    if not profiles:
        return dict(DEFAULT_PROVIDER_PERMISSION_PROFILES)
    return profiles
