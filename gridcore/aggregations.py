from __future__ import annotations

import math
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from gridcore.errors import PivotConfigurationError
from gridcore.values import is_finite_number


class AggregationFunction(str, Enum):
    SUM = "sum"
    COUNT = "count"
    AVERAGE = "average"
    MIN = "min"
    MAX = "max"
    FIRST = "first"
    LAST = "last"


ALIASES = {"avg": "average", "mean": "average"}

# pandas reduction per aggregation; count runs on the defined-value indicator column
PANDAS_FUNCS = {
    AggregationFunction.SUM: "sum",
    AggregationFunction.COUNT: "sum",
    AggregationFunction.AVERAGE: "mean",
    AggregationFunction.MIN: "min",
    AggregationFunction.MAX: "max",
    AggregationFunction.FIRST: "first",
    AggregationFunction.LAST: "last",
}

ZERO_WHEN_EMPTY = {
    AggregationFunction.SUM,
    AggregationFunction.COUNT,
    AggregationFunction.AVERAGE,
    AggregationFunction.MIN,
    AggregationFunction.MAX,
}


def parse_aggregation(name: Any) -> AggregationFunction:
    if isinstance(name, AggregationFunction):
        return name
    key = str(name or "sum").strip().lower()
    key = ALIASES.get(key, key)
    try:
        return AggregationFunction(key)
    except ValueError:
        raise PivotConfigurationError(f"Unknown aggregation: {name!r}") from None


def numeric_or_nan(value: object) -> float:
    return float(value) if is_finite_number(value) else np.nan


def is_defined(value: object) -> bool:
    return value is not None and not (isinstance(value, float) and math.isnan(value))


def finalize(value: Any, aggregation: AggregationFunction) -> Any:
    """Convert a pandas reduction result to a plain Python value."""
    if value is None or (isinstance(value, (float, np.floating)) and np.isnan(value)):
        return 0 if aggregation in ZERO_WHEN_EMPTY else None
    if aggregation is AggregationFunction.COUNT:
        return int(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        out = float(value)
        return int(out) if out.is_integer() and aggregation is not AggregationFunction.AVERAGE else out
    return value


def aggregate(values: Iterable[object], aggregation: Any) -> Any:
    """Reduce a plain sequence of values with one aggregation function."""
    agg = parse_aggregation(aggregation)
    items = list(values)
    if agg is AggregationFunction.COUNT:
        return sum(1 for v in items if is_defined(v))
    series = pd.Series([numeric_or_nan(v) for v in items], dtype="float64")
    func = PANDAS_FUNCS[agg]
    if agg is AggregationFunction.FIRST:
        clean = series.dropna()
        return finalize(clean.iloc[0] if not clean.empty else None, agg)
    if agg is AggregationFunction.LAST:
        clean = series.dropna()
        return finalize(clean.iloc[-1] if not clean.empty else None, agg)
    if agg is AggregationFunction.SUM:
        return finalize(series.sum(min_count=0), agg)
    return finalize(getattr(series, func)(), agg)


def numeric_column(field: str) -> str:
    return f"__num__{field}"


def defined_column(field: str) -> str:
    return f"__def__{field}"


def value_frame(records: Sequence[dict], fields: Iterable[str], extra: Optional[Dict[str, List[Any]]] = None) -> pd.DataFrame:
    """Build the numeric working frame for the given value fields.

    Non-finite or non-numeric values become NaN in the numeric column; the
    defined column flags values that ``count`` should include.
    """
    data: Dict[str, List[Any]] = dict(extra or {})
    for f in dict.fromkeys(fields):
        data[numeric_column(f)] = [numeric_or_nan(r.get(f)) for r in records]
        data[defined_column(f)] = [1 if is_defined(r.get(f)) else 0 for r in records]
    return pd.DataFrame(data, index=range(len(records)))


def aggregate_frame(
    frame: pd.DataFrame,
    keys: List[str],
    specs: Sequence[Tuple[str, str, AggregationFunction]],
) -> Dict[Tuple[Any, ...], Dict[str, Any]]:
    """Group ``frame`` by ``keys`` and apply each (out_key, field, agg) spec.

    Returns ``{group tuple: {out_key: value}}`` in first-seen group order.
    With no keys the whole frame is one group keyed by ``()``.
    """
    named = {}
    for out_key, fld, agg in specs:
        column = defined_column(fld) if agg is AggregationFunction.COUNT else numeric_column(fld)
        named[out_key] = pd.NamedAgg(column=column, aggfunc=PANDAS_FUNCS[agg])
    aggs = {out_key: agg for out_key, _, agg in specs}

    if frame.empty:
        return {}
    if not keys:
        row = {}
        for out_key, spec in named.items():
            series = frame[spec.column]
            if aggs[out_key] in (AggregationFunction.FIRST, AggregationFunction.LAST):
                clean = series.dropna()
                raw = None if clean.empty else clean.iloc[0 if aggs[out_key] is AggregationFunction.FIRST else -1]
            elif spec.aggfunc == "sum":
                raw = series.sum(min_count=0)
            else:
                raw = getattr(series, spec.aggfunc)()
            row[out_key] = finalize(raw, aggs[out_key])
        return {(): row}

    grouped = frame.groupby(keys, sort=False, dropna=False).agg(**named)
    out: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
    for idx, values in grouped.iterrows():
        group = idx if isinstance(idx, tuple) else (idx,)
        out[group] = {k: finalize(values[k], aggs[k]) for k in named}
    return out
