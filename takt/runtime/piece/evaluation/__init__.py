"""Rule and aggregate evaluation for piece movements."""

from .aggregate import AggregateEvaluator
from .rules import RuleEvaluator, RuleEvaluatorContext
from .tags import (
    auto_select_tag,
    build_tag,
    detect_judge_index,
    detect_rule_index,
    has_only_one_branch,
    has_tag_based_rules,
)

__all__ = [
    "AggregateEvaluator",
    "RuleEvaluator",
    "RuleEvaluatorContext",
    "auto_select_tag",
    "build_tag",
    "detect_judge_index",
    "detect_rule_index",
    "has_only_one_branch",
    "has_tag_based_rules",
]
