"""
tags.py - Status tag scanning and rule classification helpers.

Agents select a rule by emitting `[<MOVEMENT_NAME_UPPERCASED>:<n>]` with a
1-based rule index. These helpers are pure functions over strings and rule
lists; they never hold scanner state.
"""

from __future__ import annotations

import re
from typing import List, Optional

from takt.runtime.types import Movement, PieceRule


def build_tag(movement_name: str, rule_number: int) -> str:
    """Format the status tag for a 1-based rule number."""
    return f"[{movement_name.upper()}:{rule_number}]"


def detect_rule_index(content: str, movement_name: str) -> int:
    """Find the first `[MOVEMENT:N]` tag in content.

    Matching is case-insensitive and takes the first occurrence, including
    tags inside code blocks.

    Returns:
        0-based rule index, or -1 if no tag is present.
    """
    if not content:
        return -1
    pattern = re.compile(rf"\[{re.escape(movement_name.upper())}:(\d+)\]", re.IGNORECASE)
    match = pattern.search(content)
    if match is None:
        return -1
    number = int(match.group(1))
    return number - 1 if number > 0 else -1


def detect_judge_index(content: str) -> int:
    """Find the first `[JUDGE:N]` tag. Returns 0-based index or -1."""
    return detect_rule_index(content, "JUDGE")


def has_tag_based_rules(movement: Movement) -> bool:
    """True when at least one rule needs a status tag (not ai() or aggregate)."""
    if not movement.rules:
        return False
    return not all(
        rule.is_ai_condition or rule.is_aggregate_condition for rule in movement.rules
    )


def has_only_one_branch(movement: Movement) -> bool:
    return len(movement.rules) == 1


def auto_select_tag(movement: Movement) -> str:
    """Tag for a movement with exactly one rule.

    Raises:
        ValueError: If the movement does not have exactly one rule.
    """
    if not has_only_one_branch(movement):
        raise ValueError(f"Cannot auto-select tag for movement '{movement.name}'")
    return build_tag(movement.name, 1)


def visible_rule_indices(rules: List[PieceRule], interactive: bool) -> List[int]:
    """Indices of rules shown to agents; interactive-only rules need interactive mode."""
    return [i for i, rule in enumerate(rules) if interactive or not rule.interactive_only]


def rule_is_selectable(rules: List[PieceRule], index: int, interactive: bool) -> bool:
    if index < 0 or index >= len(rules):
        return False
    return interactive or not rules[index].interactive_only


def matched_condition(movement: Movement, index: Optional[int]) -> Optional[str]:
    """Condition text of a recorded match, or None."""
    if index is None or index < 0 or index >= len(movement.rules):
        return None
    return movement.rules[index].condition


__all__ = [
    "build_tag",
    "detect_rule_index",
    "detect_judge_index",
    "has_tag_based_rules",
    "has_only_one_branch",
    "auto_select_tag",
    "visible_rule_indices",
    "rule_is_selectable",
    "matched_condition",
]
