"""
permission.py - Movement permission mode resolution.

Resolution order for a movement running under a provider:
1. project  provider_profiles.<provider>.movement_permission_overrides.<movement>
2. global   provider_profiles.<provider>.movement_permission_overrides.<movement>
3. project  provider_profiles.<provider>.default_permission_mode
4. global   provider_profiles.<provider>.default_permission_mode
5. movement.required_permission_mode (only when nothing above resolved)

Whenever a mode resolves and the movement declares required_permission_mode,
the stricter-is-higher floor applies: the required mode can raise the result
but never lower it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional

from takt.runtime.errors import PermissionResolutionError
from takt.runtime.types import PermissionMode


@dataclass
class ProviderPermissionProfile:
    """Permission settings for one provider."""

    default_permission_mode: Optional[PermissionMode] = None
    movement_permission_overrides: Dict[str, PermissionMode] = field(default_factory=dict)


# provider name -> profile
ProviderPermissionProfiles = Dict[str, ProviderPermissionProfile]

DEFAULT_PROVIDER_PERMISSION_PROFILES: ProviderPermissionProfiles = {
    "claude": ProviderPermissionProfile(default_permission_mode=PermissionMode.EDIT),
    "codex": ProviderPermissionProfile(default_permission_mode=PermissionMode.EDIT),
    "opencode": ProviderPermissionProfile(default_permission_mode=PermissionMode.EDIT),
    "mock": ProviderPermissionProfile(default_permission_mode=PermissionMode.EDIT),
}

PERMISSION_MODE_RANK: Dict[PermissionMode, int] = {
    PermissionMode.READONLY: 0,
    PermissionMode.EDIT: 1,
    PermissionMode.FULL: 2,
}


def apply_required_permission_floor(
    resolved: PermissionMode,
    required: Optional[PermissionMode] = None,
) -> PermissionMode:
    """Return the stricter-is-higher of resolved and required."""
    if required is None:
        return resolved
    if PERMISSION_MODE_RANK[required] > PERMISSION_MODE_RANK[resolved]:
        return required
    return resolved


def resolve_movement_permission_mode(
    movement_name: str,
    required_permission_mode: Optional[PermissionMode] = None,
    provider: Optional[str] = None,
    project_profiles: Optional[ProviderPermissionProfiles] = None,
    global_profiles: Optional[ProviderPermissionProfiles] = None,
) -> PermissionMode:
    """Resolve the permission mode for one movement.

    Args:
        movement_name: Name of the movement being resolved.
        required_permission_mode: Movement-level floor, if declared.
        provider: Provider the movement runs under.
        project_profiles: Project-layer provider profiles.
        global_profiles: Global-layer provider profiles.

    Returns:
        The effective PermissionMode.

    Raises:
        PermissionResolutionError: If nothing in the chain yields a mode.
    """
    if not provider:
        if required_permission_mode is not None:
            return required_permission_mode
        raise PermissionResolutionError(movement_name)

    project_profile = (project_profiles or {}).get(provider)
    global_profile = (global_profiles or {}).get(provider)

    candidates = [
        project_profile.movement_permission_overrides.get(movement_name) if project_profile else None,
        global_profile.movement_permission_overrides.get(movement_name) if global_profile else None,
        project_profile.default_permission_mode if project_profile else None,
        global_profile.default_permission_mode if global_profile else None,
    ]
    for mode in candidates:
        if mode is not None:
            return apply_required_permission_floor(mode, required_permission_mode)

    if required_permission_mode is not None:
        return required_permission_mode

    raise PermissionResolutionError(movement_name, provider)


__all__ = [
    "ProviderPermissionProfile",
    "ProviderPermissionProfiles",
    "DEFAULT_PROVIDER_PERMISSION_PROFILES",
    "PERMISSION_MODE_RANK",
    "apply_required_permission_floor",
    "resolve_movement_permission_mode",
]
