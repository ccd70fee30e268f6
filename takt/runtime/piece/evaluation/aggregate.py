"""
aggregate.py - all()/any() evaluation for parallel parent movements.

Each sub-movement contributes the condition text of the rule it matched
(looked up from PieceState.movement_outputs). Aggregate rules compare
those texts:

    all("X")        every sub-movement matched "X"
    any("X")        at least one sub-movement matched "X"
    all("A", "B")   i-th sub-movement matched the i-th condition (order-based)
    any("A", "B")   at least one sub-movement matched one of the conditions

A sub-movement without a recorded match never satisfies a condition.
"""

from __future__ import annotations

import logging
from typing import Optional

from takt.runtime.errors import AggregateConditionError
from takt.runtime.types import AggregateType, Movement, PieceRule, PieceState

from .tags import matched_condition

logger = logging.getLogger(__name__)


class AggregateEvaluator:
    """Evaluates a parallel parent's aggregate rules against its sub-movements.

    Args:
        movement: The parallel parent movement.
        state: Run state holding the sub-movements' recorded outputs.
        strict: Raise AggregateConditionError on an all() condition count
            mismatch instead of logging and skipping the rule.
    """

    def __init__(self, movement: Movement, state: PieceState, strict: bool = False):
        self._movement = movement
        self._state = state
        self._strict = strict

    def evaluate(self) -> int:
        """Return the first matching aggregate rule index, or -1."""
        if not self._movement.rules or not self._movement.parallel:
            return -1

        for index, rule in enumerate(self._movement.rules):
            if not rule.is_aggregate_condition or rule.aggregate_type is None:
                continue
            if self._rule_matches(rule):
                logger.debug(
                    "Aggregate %s() matched in movement %s (rule %d: %s)",
                    rule.aggregate_type.value,
                    self._movement.name,
                    index,
                    rule.aggregate_condition_text,
                )
                return index
        return -1

    def _sub_condition(self, sub: Movement) -> Optional[str]:
        output = self._state.movement_outputs.get(sub.name)
        if output is None:
            return None
        return matched_condition(sub, output.matched_rule_index)

    def _rule_matches(self, rule: PieceRule) -> bool:
        subs = self._movement.parallel
        conditions = rule.aggregate_conditions()
        if not conditions:
            return False

        if rule.aggregate_type == AggregateType.ANY:
            for sub in subs:
                matched = self._sub_condition(sub)
                if matched is not None and matched in conditions:
                    return True
            return False

        if len(conditions) == 1:
            return all(self._sub_condition(sub) == conditions[0] for sub in subs)
        if len(conditions) != len(subs):
            if self._strict:
                raise AggregateConditionError(self._movement.name, len(conditions), len(subs))
            logger.error(
                "all() condition count mismatch in movement %s: %d conditions, %d sub-movements",
                self._movement.name,
                len(conditions),
                len(subs),
            )
            return False
        # Order-based: the i-th sub-movement must match the i-th condition.
        return all(self._sub_condition(sub) == expected for sub, expected in zip(subs, conditions))
