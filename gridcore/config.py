from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Tuple

AUTO = "auto"


@dataclass(frozen=True)
class EngineSettings:
    sample_size: int = 500
    single_key_threshold: float = 0.5
    pair_key_threshold: float = 0.75
    single_key_candidates: int = 10
    pair_key_candidates: int = 8
    pair_key_anchors: int = 6
    preserve_limit: int = 6
    calc_batch_size: int = 1000
    large_input_warning: int = 10000
    default_precision: int = 2


DEFAULT_SETTINGS = EngineSettings()


@dataclass(frozen=True)
class MergeSpec:
    merge_by: Tuple[str, ...] = ()
    preserve: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {"mergeBy": list(self.merge_by), "preserve": list(self.preserve)}


@dataclass(frozen=True)
class ValueSpec:
    field: str
    aggregation: str = "sum"


@dataclass(frozen=True)
class CalculatedField:
    id: str
    name: str
    formula: str
    format: str = "number"
    description: str = ""
    precision: int = 2
    enabled: bool = True
    dependencies: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        base = self.id or re.sub(r"\s+", "_", self.name.strip())
        return base if base.startswith("calc_") else f"calc_{base}"


@dataclass(frozen=True)
class PivotSpec:
    enabled: bool = True
    rows: Tuple[str, ...] = ()
    columns: Tuple[str, ...] = ()
    values: Tuple[ValueSpec, ...] = ()
    filters: Tuple[str, ...] = ()
    calculated_fields: Tuple[CalculatedField, ...] = ()
    show_grand_totals: bool = True
    show_row_totals: bool = True
    show_column_totals: bool = True
    show_sub_totals: bool = True
    number_format: str = "en-US"
    currency: str = "USD"
    precision: int = 2
    sort_rows: bool = True
    sort_columns: bool = True
    sort_direction: str = "asc"

    @property
    def is_configured(self) -> bool:
        return bool(self.rows or self.columns or self.values)


def _pick(raw: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in raw and raw[name] is not None:
            return raw[name]
    return default


def _as_str_tuple(values: Optional[Iterable[object]]) -> Tuple[str, ...]:
    if not values:
        return ()
    if isinstance(values, str):
        values = [values]
    out: List[str] = []
    for v in values:
        if v is None:
            continue
        s = str(v).strip()
        if s and s not in out:
            out.append(s)
    return tuple(out)


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except Exception:
        return default


def normalize_merge_spec(raw: Any) -> Optional[MergeSpec]:
    """Build a MergeSpec from persisted config; ``None`` means infer it."""
    if raw is None:
        return None
    if isinstance(raw, MergeSpec):
        return raw
    if isinstance(raw, str):
        if raw.strip().lower() == AUTO:
            return None
        return MergeSpec(merge_by=_as_str_tuple([raw]))
    if isinstance(raw, Mapping):
        merge_by = _as_str_tuple(_pick(raw, "mergeBy", "merge_by", "by", default=[]))
        preserve = _as_str_tuple(_pick(raw, "preserve", default=[]))
        return MergeSpec(merge_by=merge_by, preserve=preserve)
    return MergeSpec(merge_by=_as_str_tuple(raw))


def normalize_value_specs(raw_values: Optional[Iterable[Any]]) -> Tuple[ValueSpec, ...]:
    if not raw_values or isinstance(raw_values, (str, bytes)):
        return ()
    out: List[ValueSpec] = []
    for item in raw_values:
        if isinstance(item, ValueSpec):
            out.append(item)
        elif isinstance(item, str) and item.strip():
            out.append(ValueSpec(field=item.strip()))
        elif isinstance(item, Mapping):
            name = item.get("field") or item.get("key") or item.get("name")
            if not name:
                continue
            aggregation = str(item.get("aggregation") or "sum").strip().lower()
            out.append(ValueSpec(field=str(name), aggregation=aggregation))
    return tuple(out)


def normalize_calculated_fields(raw_fields: Optional[Iterable[Any]]) -> Tuple[CalculatedField, ...]:
    if not raw_fields or isinstance(raw_fields, (str, bytes, Mapping)):
        return ()
    out: List[CalculatedField] = []
    for idx, item in enumerate(raw_fields, start=1):
        if isinstance(item, CalculatedField):
            out.append(item)
            continue
        if not isinstance(item, Mapping):
            continue
        name = str(item.get("name") or item.get("id") or f"Calculated {idx}")
        formula = item.get("formula")
        out.append(
            CalculatedField(
                id=str(item.get("id") or ""),
                name=name,
                formula=formula if isinstance(formula, str) else "",
                format=str(item.get("format") or "number"),
                description=str(item.get("description") or ""),
                precision=_as_int(item.get("precision"), 2),
                enabled=_as_bool(item.get("enabled"), True),
                dependencies=_as_str_tuple(item.get("dependencies")),
            )
        )
    return tuple(out)


def normalize_pivot_spec(raw: Any) -> PivotSpec:
    if isinstance(raw, PivotSpec):
        return raw
    if not isinstance(raw, Mapping):
        return PivotSpec(enabled=False)

    sort_direction = str(_pick(raw, "sortDirection", "sort_direction", default="asc")).lower()
    if sort_direction not in {"asc", "desc"}:
        sort_direction = "asc"

    return PivotSpec(
        enabled=_as_bool(_pick(raw, "enabled"), True),
        rows=_as_str_tuple(_pick(raw, "rows", default=[])),
        columns=_as_str_tuple(_pick(raw, "columns", default=[])),
        values=normalize_value_specs(_pick(raw, "values", default=[])),
        filters=_as_str_tuple(_pick(raw, "filters", default=[])),
        calculated_fields=normalize_calculated_fields(_pick(raw, "calculatedFields", "calculated_fields", default=[])),
        show_grand_totals=_as_bool(_pick(raw, "showGrandTotals", "show_grand_totals"), True),
        show_row_totals=_as_bool(_pick(raw, "showRowTotals", "show_row_totals"), True),
        show_column_totals=_as_bool(_pick(raw, "showColumnTotals", "show_column_totals"), True),
        show_sub_totals=_as_bool(_pick(raw, "showSubTotals", "show_sub_totals"), True),
        number_format=str(_pick(raw, "numberFormat", "number_format", default="en-US")),
        currency=str(_pick(raw, "currency", default="USD")),
        precision=max(0, _as_int(_pick(raw, "precision"), 2)),
        sort_rows=_as_bool(_pick(raw, "sortRows", "sort_rows"), True),
        sort_columns=_as_bool(_pick(raw, "sortColumns", "sort_columns"), True),
        sort_direction=sort_direction,
    )
