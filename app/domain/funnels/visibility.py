"""Step visibility - decides whether a conditional step is shown"""

import logging
from typing import Any, Mapping, Optional, Union

from .schemas import ConditionalRule

logger = logging.getLogger(__name__)

Rule = Union[ConditionalRule, Mapping[str, Any]]

# A field absent from the data bag; never equal to anything, not even None
_MISSING = object()


def _rule_parts(rule: Rule) -> tuple:
    if isinstance(rule, ConditionalRule):
        return rule.field, rule.operator, rule.value
    return rule.get("field"), rule.get("operator"), rule.get("value")


def strict_equals(a: Any, b: Any) -> bool:
    """Equality that never crosses JSON types: True is not 1, "3" is not 3"""
    if a is _MISSING or b is _MISSING:
        return False
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return type(a) is type(b) and a == b


def is_step_visible(data: Mapping[str, Any], rule: Optional[Rule]) -> bool:
    """
    Evaluate a showIf rule against the session data bag.

    A step without a rule is always shown. `in`/`nin` need a list value;
    anything else makes both of them false. Unknown operators fail open.
    """
    if not rule:
        return True

    field, operator, value = _rule_parts(rule)
    field_value = data.get(field, _MISSING) if isinstance(field, str) else _MISSING

    if operator == "eq":
        return strict_equals(field_value, value)
    if operator == "neq":
        return not strict_equals(field_value, value)
    if operator == "in":
        return isinstance(value, list) and any(strict_equals(field_value, v) for v in value)
    if operator == "nin":
        return isinstance(value, list) and not any(strict_equals(field_value, v) for v in value)

    logger.warning(f"⚠️ Unknown showIf operator '{operator}' on field '{field}', showing step")
    return True
