from __future__ import annotations
"""Condition comparator.

Conditions form a total order from best to worst. Whether a return is
degraded decides between automatic settlement and the damage-claim path.
"""
from typing import Optional

from rental_engine.errors import ValidationError

LIKE_NEW = 'like_new'
GOOD = 'good'
FAIR = 'fair'
WORN = 'worn'

CONDITION_SCALE = (LIKE_NEW, GOOD, FAIR, WORN)

# Pickup condition assumed when the lender did not record one
DEFAULT_CONDITION = GOOD


def validate_condition(value: Optional[str], field_name: str = 'condition') -> str:
    if value not in CONDITION_SCALE:
        raise ValidationError(f"{field_name} must be one of {', '.join(CONDITION_SCALE)}")
    return value


def severity(condition: str) -> int:
    return CONDITION_SCALE.index(validate_condition(condition))


def degraded(at_pickup: Optional[str], at_return: str) -> bool:
    """True when the item came back in a worse condition than it left in."""
    return severity(at_return) > severity(at_pickup or DEFAULT_CONDITION)

__all__ = ['CONDITION_SCALE', 'DEFAULT_CONDITION', 'LIKE_NEW', 'GOOD', 'FAIR', 'WORN', 'validate_condition', 'severity', 'degraded']
