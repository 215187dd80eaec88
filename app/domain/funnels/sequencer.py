"""
Step sequencer - pure index math over an authored step list.

A session is either Active(index) on a visible step or Terminal at
len(steps). Nothing here touches storage.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from .schemas import FunnelStepDefinition, StepType
from .visibility import is_step_visible


@dataclass(frozen=True)
class FunnelPosition:
    index: int
    terminal: bool

    @classmethod
    def at(cls, index: int, steps: Sequence[FunnelStepDefinition]) -> "FunnelPosition":
        return cls(index=index, terminal=is_terminal(index, steps))


def is_terminal(index: int, steps: Sequence[FunnelStepDefinition]) -> bool:
    return index >= len(steps)


def should_skip(
    step: FunnelStepDefinition, data: Mapping[str, Any], skip_payment: bool
) -> bool:
    if step.type == StepType.PAYMENT.value and skip_payment:
        return True
    return not is_step_visible(data, step.showIf)


def advance(
    current_index: int,
    steps: Sequence[FunnelStepDefinition],
    data: Mapping[str, Any],
    skip_payment: bool = False,
) -> int:
    """Index of the next visible step after current_index, or len(steps) when none is left"""
    next_index = current_index + 1
    while next_index < len(steps):
        if not should_skip(steps[next_index], data, skip_payment):
            return next_index
        next_index += 1
    return len(steps)


def first_index(
    steps: Sequence[FunnelStepDefinition],
    data: Mapping[str, Any],
    skip_payment: bool = False,
) -> int:
    """Entry step for a new session; 0 (terminal) for an empty funnel"""
    return advance(-1, steps, data, skip_payment)


def retreat(current_index: int) -> int:
    """Back is one step, regardless of what advance skipped"""
    return max(current_index - 1, 0)
