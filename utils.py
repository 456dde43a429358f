"""Shared utility functions for downcity-vault."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from typing import Any


def log(message: str) -> None:
    """Write a diagnostic line to stderr."""
    print(f"[downcity] {message}", file=sys.stderr)


def utc_now() -> datetime:
    """Get current timestamp as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def next_stamp(previous: datetime | None) -> datetime:
    """Get a timestamp strictly later than ``previous``.

    Two calls inside the same clock tick would otherwise produce equal
    timestamps and make ordering by time ambiguous.
    """
    now = utc_now()
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def flatten(obj: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested metadata into dot-qualified keys.

    Nested dicts are recursed into; lists and scalars are leaves.

    Examples:
        {"a": {"b": 1}, "tags": ["x"]} -> {"a.b": 1, "tags": ["x"]}
    """
    flat: dict[str, Any] = {}
    for key, value in obj.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(flatten(value, path))
        else:
            flat[path] = value
    return flat


def unflatten(flat: dict[str, Any]) -> dict[str, Any]:
    """Rebuild nested metadata from dot-qualified keys.

    Keys that themselves contain a literal dot cannot be told apart from
    nesting and come back nested.
    """
    nested: dict[str, Any] = {}
    for key, value in flat.items():
        *parents, leaf = key.split(".")
        node = nested
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[leaf] = value
    return nested
