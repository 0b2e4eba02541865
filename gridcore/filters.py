from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

from gridcore.values import Record, display_key, is_record, is_sequence

MATCH_MODES = (
    "startsWith",
    "contains",
    "notContains",
    "endsWith",
    "equals",
    "notEquals",
    "lt",
    "lte",
    "gt",
    "gte",
    "between",
    "dateIs",
    "dateIsNot",
    "dateBefore",
    "dateAfter",
)


@dataclass(frozen=True)
class ColumnConstraint:
    value: Any = None
    match_mode: str = "contains"


@dataclass(frozen=True)
class ColumnFilter:
    constraints: Tuple[ColumnConstraint, ...] = ()
    operator: str = "and"


@dataclass(frozen=True)
class GridFilters:
    global_search: str = ""
    columns: Dict[str, ColumnFilter] = field(default_factory=dict)
    search_fields: Tuple[str, ...] = ()

    @property
    def is_active(self) -> bool:
        return bool(self.global_search) or any(c.constraints for c in self.columns.values())


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, float) and math.isnan(value))


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _as_timestamp(value: Any) -> Optional[pd.Timestamp]:
    ts = pd.to_datetime(value, errors="coerce")
    if ts is None or pd.isna(ts):
        return None
    return ts


def _normalize_constraint(raw: Any) -> Optional[ColumnConstraint]:
    if isinstance(raw, ColumnConstraint):
        return raw
    if not isinstance(raw, Mapping):
        return None
    mode = str(raw.get("matchMode") or raw.get("match_mode") or "contains")
    if mode not in MATCH_MODES:
        mode = "contains"
    value = raw.get("value")
    if is_sequence(value):
        value = tuple(value)
    return ColumnConstraint(value=value, match_mode=mode)


def _normalize_column_filter(raw: Any) -> Optional[ColumnFilter]:
    if isinstance(raw, ColumnFilter):
        return raw
    if not isinstance(raw, Mapping):
        return None
    items = raw.get("constraints")
    if items is None and ("value" in raw or "matchMode" in raw):
        items = [raw]
    constraints = tuple(c for c in (_normalize_constraint(x) for x in (items or [])) if c is not None)
    operator = str(raw.get("operator") or "and").lower()
    return ColumnFilter(constraints=constraints, operator="or" if operator == "or" else "and")


def normalize_filters(raw: Any) -> GridFilters:
    """Build GridFilters from a persisted/raw dict (camelCase or snake_case keys)."""
    if isinstance(raw, GridFilters):
        return raw
    if not isinstance(raw, Mapping):
        return GridFilters()

    global_search = str(raw.get("globalSearch") or raw.get("global_search") or raw.get("global") or "").strip()
    search_fields = tuple(str(x) for x in (raw.get("searchFields") or raw.get("search_fields") or []) if x is not None)

    columns: Dict[str, ColumnFilter] = {}
    for name, spec in (raw.get("columns") or {}).items():
        parsed = _normalize_column_filter(spec)
        if parsed is not None:
            columns[str(name)] = parsed
    return GridFilters(global_search=global_search, columns=columns, search_fields=search_fields)


def match_value(cell: Any, target: Any, match_mode: str) -> bool:
    """True when ``cell`` satisfies one constraint.

    An empty constraint value matches everything; an empty cell only
    matches an empty constraint value.
    """
    if _is_blank(target) or (is_sequence(target) and not target):
        return True
    if _is_blank(cell):
        return False

    cell_str = display_key(cell).lower()
    target_str = display_key(target).lower()

    if match_mode == "startsWith":
        return cell_str.startswith(target_str)
    if match_mode == "notContains":
        return target_str not in cell_str
    if match_mode == "endsWith":
        return cell_str.endswith(target_str)
    if match_mode == "equals":
        return cell_str == target_str
    if match_mode == "notEquals":
        return cell_str != target_str
    if match_mode in ("lt", "lte", "gt", "gte"):
        a, b = _as_float(cell), _as_float(target)
        if math.isnan(a) or math.isnan(b):
            return False
        return {"lt": a < b, "lte": a <= b, "gt": a > b, "gte": a >= b}[match_mode]
    if match_mode == "between":
        if not is_sequence(target) or len(target) != 2:
            return True
        low = _as_float(target[0]) if not _is_blank(target[0]) else -math.inf
        high = _as_float(target[1]) if not _is_blank(target[1]) else math.inf
        value = _as_float(cell)
        return not math.isnan(value) and low <= value <= high
    if match_mode in ("dateIs", "dateIsNot", "dateBefore", "dateAfter"):
        a, b = _as_timestamp(cell), _as_timestamp(target)
        if a is None or b is None:
            return match_mode == "dateIsNot"
        if match_mode == "dateIs":
            return a.date() == b.date()
        if match_mode == "dateIsNot":
            return a.date() != b.date()
        if match_mode == "dateBefore":
            return a < b
        return a > b
    return target_str in cell_str


def _matches_column(record: Record, name: str, column: ColumnFilter) -> bool:
    if not column.constraints:
        return True
    cell = record.get(name)
    results = (match_value(cell, c.value, c.match_mode) for c in column.constraints)
    return any(results) if column.operator == "or" else all(results)


def _searchable(record: Record, fields: Iterable[str]) -> List[str]:
    names = list(fields) or list(record.keys())
    out = []
    for name in names:
        value = record.get(name)
        if _is_blank(value) or is_record(value) or is_sequence(value):
            continue
        out.append(display_key(value).lower())
    return out


def apply_filters(records: Iterable[Record], filters: Any) -> List[Record]:
    """Rows matching the global search and every column filter."""
    rows = [r for r in records if is_record(r)]
    spec = normalize_filters(filters)
    if not spec.is_active:
        return rows

    query = spec.global_search.lower()
    out = []
    for row in rows:
        if query and not any(query in text for text in _searchable(row, spec.search_fields)):
            continue
        if all(_matches_column(row, name, col) for name, col in spec.columns.items()):
            out.append(row)
    return out
