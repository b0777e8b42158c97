from __future__ import annotations
"""Reusable validation helpers for request input.

All helpers raise ``ValidationError`` (400) so bad input is rejected before
any processor call or database write.
"""
from datetime import datetime
from typing import Any, Iterable, List, Optional

from rental_engine.errors import ValidationError
from rental_engine.utils.clock import to_naive_utc


def validate_status(new_status: str, allowed: Iterable[str], field_name: str = 'status') -> str:
    """Validate that new_status is inside allowed.

    Returns the status (to enable inline usage) or raises ValidationError.
    """
    if new_status not in allowed:
        raise ValidationError(f"{field_name} invalid")
    return new_status


def optional_text(value: Any, field_name: str, max_length: int, min_length: int = 0) -> Optional[str]:
    if value is None:
        if min_length:
            raise ValidationError(f'{field_name} required')
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field_name} must be a string')
    if len(value) > max_length:
        raise ValidationError(f'{field_name} must be at most {max_length} characters')
    if len(value) < min_length:
        raise ValidationError(f'{field_name} must be at least {min_length} characters')
    return value


def required_text(value: Any, field_name: str, min_length: int, max_length: int) -> str:
    return optional_text(value, field_name, max_length, min_length=max(1, min_length))


def require_int(value: Any, field_name: str, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or value is None:
        raise ValidationError(f'{field_name} must be an integer')
    try:
        out = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field_name} must be an integer')
    if isinstance(value, float) and value != out:
        raise ValidationError(f'{field_name} must be an integer')
    if minimum is not None and out < minimum:
        raise ValidationError(f'{field_name} must be >= {minimum}')
    if maximum is not None and out > maximum:
        raise ValidationError(f'{field_name} must be <= {maximum}')
    return out


def parse_datetime(value: Any, field_name: str) -> datetime:
    """Parse an ISO 8601 date or datetime ('Z' suffix accepted) to naive UTC."""
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if not isinstance(value, str) or not value:
        raise ValidationError(f'{field_name} must be an ISO 8601 date')
    try:
        dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f'{field_name} must be an ISO 8601 date')
    return to_naive_utc(dt)


def string_list(value: Any, field_name: str, max_items: int = 20) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) and v for v in value):
        raise ValidationError(f'{field_name} must be a list of strings')
    if len(value) > max_items:
        raise ValidationError(f'{field_name} accepts at most {max_items} entries')
    return list(value)

__all__ = ['validate_status', 'optional_text', 'required_text', 'require_int', 'parse_datetime', 'string_list']
