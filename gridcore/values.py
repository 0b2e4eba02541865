"""The record value model shared by every engine stage.

A Record is a plain ``dict`` mapping field names to Values, where a Value is
``None``, a bool, a number, a string, a date/datetime, a nested Record or a
list of Values. The helpers below are the only place that decides what
"empty", "numeric" and "same key" mean, so every stage agrees on them.
"""

from __future__ import annotations

import json
import math
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Mapping, Union

Scalar = Union[None, bool, int, float, str, date, datetime]
Value = Union[Scalar, "Record", List["Value"]]
Record = Dict[str, Value]


def is_record(value: object) -> bool:
    return isinstance(value, Mapping)


def is_sequence(value: object) -> bool:
    return isinstance(value, (list, tuple))


def is_non_empty(value: object) -> bool:
    return value is not None and value != ""


def is_empty(value: object) -> bool:
    if not is_non_empty(value):
        return True
    return isinstance(value, float) and math.isnan(value)


def prefer_non_empty(current: object, incoming: object) -> object:
    """Keep ``current`` unless it is empty and ``incoming`` is not."""
    if is_empty(current) and is_non_empty(incoming):
        return incoming
    return current


def is_finite_number(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def number_to_key(value: float) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def epoch_millis(value: date) -> int:
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    else:
        dt = datetime.combine(value, time(), tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))


def normalize_for_key(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip().lower()
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return number_to_key(value)
    if isinstance(value, date):
        return str(epoch_millis(value))
    return canonical_json(value)


def composite_key(record: Mapping[str, object], fields) -> str:
    if not is_record(record):
        return ""
    return "||".join(normalize_for_key(record.get(f)) for f in fields)


def display_key(value: object) -> str:
    """String form used for labels and lexicographic ordering."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return number_to_key(value)
    if isinstance(value, (list, tuple, dict)):
        return canonical_json(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)
