from __future__ import annotations
"""Naive-UTC time helpers.

Dates are persisted as naive UTC datetimes so comparisons behave the same on
SQLite and server databases. ``utcnow`` is looked up at call time by the
lifecycle code, which lets tests freeze the clock with monkeypatch.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def isoformat_z(dt):
    if dt is None:
        return None
    return to_naive_utc(dt).isoformat() + 'Z'

__all__ = ['utcnow', 'to_naive_utc', 'isoformat_z']
