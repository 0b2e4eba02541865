"""Pivot aggregation: bucket records by row/column dimensions and reduce values.

All reductions run as pandas group-bys over one working frame per call:
dimension key columns (string form of each row/column field) plus a numeric
and a defined-indicator column per value field. First-seen raw dimension
values are kept alongside so output rows carry the original values.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from gridcore.aggregations import AggregationFunction, aggregate_frame, parse_aggregation, value_frame
from gridcore.calculated import calculated_grand_totals, evaluate_calculated_fields
from gridcore.config import DEFAULT_SETTINGS, EngineSettings, PivotSpec, ValueSpec, normalize_pivot_spec
from gridcore.errors import PivotConfigurationError
from gridcore.values import Record, display_key, is_record

logger = logging.getLogger(__name__)

GRAND_TOTAL_LABEL = "Grand Total"
COLUMN_LABEL_SEPARATOR = "|"

Group = Tuple[str, ...]


@dataclass
class PivotResult:
    pivot_data: List[Record]
    pivot_columns: List[Dict[str, Any]] = field(default_factory=list)
    grand_total: Optional[Record] = None
    column_totals: Dict[str, Any] = field(default_factory=dict)
    column_values: List[str] = field(default_factory=list)
    is_pivot: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pivotData": self.pivot_data,
            "pivotColumns": self.pivot_columns,
            "grandTotal": self.grand_total,
            "columnTotals": self.column_totals,
            "columnValues": self.column_values,
            "isPivot": self.is_pivot,
        }


def humanize(name: str) -> str:
    """``salesTeam`` -> ``Sales Team``."""
    if not name:
        return name
    return name[0].upper() + re.sub(r"([A-Z])", r" \1", name[1:])


def _repeats(values: Sequence[ValueSpec], name: str) -> bool:
    return sum(1 for v in values if v.field == name) > 1


def value_key(values: Sequence[ValueSpec], spec: ValueSpec) -> str:
    return f"{spec.field}_{spec.aggregation}" if _repeats(values, spec.field) else spec.field


def total_key(values: Sequence[ValueSpec], spec: ValueSpec) -> str:
    return f"{spec.field}_{spec.aggregation}_total" if _repeats(values, spec.field) else f"{spec.field}_total"


def cell_key(column_label: str, spec: ValueSpec) -> str:
    return f"{column_label}_{spec.field}_{spec.aggregation}"


def column_label(group: Group) -> str:
    return COLUMN_LABEL_SEPARATOR.join(group)


def _row_dim(i: int) -> str:
    return f"__row{i}"


def _col_dim(i: int) -> str:
    return f"__col{i}"


def _check_spec(spec: PivotSpec) -> List[Tuple[ValueSpec, AggregationFunction]]:
    if not spec.values:
        raise PivotConfigurationError("Pivot requires at least one value field")
    return [(v, parse_aggregation(v.aggregation)) for v in spec.values]


class _Frame:
    """Working frame plus first-seen raw values per dimension group."""

    def __init__(self, records: Sequence[Record], spec: PivotSpec) -> None:
        self.spec = spec
        self.rows = list(spec.rows)
        self.columns = list(spec.columns)
        dims: Dict[str, List[str]] = {}
        for i, name in enumerate(self.rows):
            dims[_row_dim(i)] = [display_key(r.get(name)) for r in records]
        for i, name in enumerate(self.columns):
            dims[_col_dim(i)] = [display_key(r.get(name)) for r in records]
        self.frame: pd.DataFrame = value_frame(records, [v.field for v in spec.values], dims)

        self.row_raw: Dict[Group, Tuple[Any, ...]] = {}
        self.row_order: List[Group] = []
        self.col_order: List[Group] = []
        seen_cols = set()
        for pos, record in enumerate(records):
            rg = tuple(dims[_row_dim(i)][pos] for i in range(len(self.rows)))
            if rg not in self.row_raw:
                self.row_raw[rg] = tuple(record.get(name) for name in self.rows)
                self.row_order.append(rg)
            if self.columns:
                cg = tuple(dims[_col_dim(i)][pos] for i in range(len(self.columns)))
                if cg not in seen_cols:
                    seen_cols.add(cg)
                    self.col_order.append(cg)

    def row_keys(self, depth: Optional[int] = None) -> List[str]:
        n = len(self.rows) if depth is None else depth
        return [_row_dim(i) for i in range(n)]

    def col_keys(self) -> List[str]:
        return [_col_dim(i) for i in range(len(self.columns))]


def _sorted_groups(groups: List[Group], enabled: bool, direction: str) -> List[Group]:
    if not enabled:
        return list(groups)
    return sorted(groups, key=lambda g: tuple(s.lower() for s in g), reverse=direction == "desc")


def _specs(parsed, prefix: str = "") -> List[Tuple[str, str, AggregationFunction]]:
    return [(f"{prefix}v{i}", vs.field, agg) for i, (vs, agg) in enumerate(parsed)]


def _aggregate_level(
    wf: _Frame,
    parsed: List[Tuple[ValueSpec, AggregationFunction]],
    row_depth: int,
    labels: List[str],
) -> Dict[Group, Record]:
    """Aggregate every value cell for row groups fixed to ``row_depth`` fields."""
    spec = wf.spec
    values = spec.values
    row_keys = wf.row_keys(row_depth)
    specs = _specs(parsed)
    out: Dict[Group, Record] = {}

    totals = aggregate_frame(wf.frame, row_keys, specs)
    for group, agg_row in totals.items():
        cells = out.setdefault(tuple(group), {})
        for i, (vs, _) in enumerate(parsed):
            if not wf.columns:
                cells[value_key(values, vs)] = agg_row[f"v{i}"]
            if spec.show_row_totals:
                cells[total_key(values, vs)] = agg_row[f"v{i}"]

    if wf.columns:
        spread = aggregate_frame(wf.frame, row_keys + wf.col_keys(), specs)
        for cells in out.values():
            for label in labels:
                for vs, _ in parsed:
                    cells.setdefault(cell_key(label, vs), 0)
        for group, agg_row in spread.items():
            rg = tuple(group[:row_depth])
            label = column_label(tuple(group[row_depth:]))
            cells = out.setdefault(rg, {})
            for i, (vs, _) in enumerate(parsed):
                cells[cell_key(label, vs)] = agg_row[f"v{i}"]
    return out


def _column_totals(wf: _Frame, parsed, labels: List[str]) -> Dict[str, Any]:
    if not wf.columns or not wf.spec.show_column_totals:
        return {}
    totals: Dict[str, Any] = {cell_key(label, vs): 0 for label in labels for vs, _ in parsed}
    for group, agg_row in aggregate_frame(wf.frame, wf.col_keys(), _specs(parsed)).items():
        label = column_label(tuple(group))
        for i, (vs, _) in enumerate(parsed):
            totals[cell_key(label, vs)] = agg_row[f"v{i}"]
    return totals


def compute_grand_total(
    visible_records: Sequence[Record],
    spec: Any,
    column_values: Optional[Sequence[str]] = None,
) -> Optional[Record]:
    """Grand-total row over the currently visible records.

    Returns ``None`` when grand totals are disabled. ``column_values`` pins
    the spread column labels so cells absent from the visible set read 0.
    """
    spec = normalize_pivot_spec(spec)
    if not spec.show_grand_totals or not spec.values:
        return None
    parsed = _check_spec(spec)
    records = [r for r in visible_records if is_record(r)]
    row: Record = {"isGrandTotal": True}
    for name in spec.rows:
        row[name] = GRAND_TOTAL_LABEL

    grand_spec = PivotSpec(
        rows=(),
        columns=spec.columns,
        values=spec.values,
        show_row_totals=spec.show_row_totals,
        sort_columns=spec.sort_columns,
        sort_direction=spec.sort_direction,
    )
    wf = _Frame(records, grand_spec)
    labels = list(column_values) if column_values is not None else [
        column_label(g) for g in _sorted_groups(wf.col_order, spec.sort_columns, spec.sort_direction)
    ]
    if records:
        row.update(_aggregate_level(wf, parsed, 0, labels).get((), {}))
    else:
        for vs, agg in parsed:
            empty = None if agg in (AggregationFunction.FIRST, AggregationFunction.LAST) else 0
            if not spec.columns:
                row[value_key(spec.values, vs)] = empty
            if spec.show_row_totals:
                row[total_key(spec.values, vs)] = empty
    if spec.columns:
        for label in labels:
            for vs, _ in parsed:
                row.setdefault(cell_key(label, vs), 0)
    return row


def _arrange(groups: List[Group], depth: int, n_rows: int, data: Dict[Group, Record], subtotals: Dict[Group, Record]) -> List[Record]:
    if depth >= n_rows - 1:
        return [data[g] for g in groups]
    partitions: Dict[Group, List[Group]] = {}
    for g in groups:
        partitions.setdefault(g[: depth + 1], []).append(g)
    out: List[Record] = []
    for prefix, members in partitions.items():
        out.extend(_arrange(members, depth + 1, n_rows, data, subtotals))
        if prefix in subtotals:
            out.append(subtotals[prefix])
    return out


def generate_pivot_columns(spec: PivotSpec, column_values: Sequence[str]) -> List[Dict[str, Any]]:
    values = spec.values
    cols: List[Dict[str, Any]] = []
    for name in spec.rows:
        cols.append({"key": name, "title": humanize(name), "type": "text", "sortable": True, "filterable": True, "isPivotRow": True})

    if not spec.columns:
        for vs in values:
            cols.append(
                {
                    "key": value_key(values, vs),
                    "title": f"{vs.field} ({vs.aggregation})",
                    "type": "number",
                    "sortable": True,
                    "filterable": True,
                    "isPivotValue": True,
                    "pivotField": vs.field,
                    "pivotAggregation": vs.aggregation,
                }
            )
    else:
        for label in column_values:
            for vs in values:
                cols.append(
                    {
                        "key": cell_key(label, vs),
                        "title": f"{label} - {vs.field} ({vs.aggregation})",
                        "type": "number",
                        "sortable": True,
                        "filterable": True,
                        "isPivotValue": True,
                        "pivotColumn": label,
                        "pivotField": vs.field,
                        "pivotAggregation": vs.aggregation,
                    }
                )

    if spec.show_row_totals:
        for vs in values:
            cols.append(
                {
                    "key": total_key(values, vs),
                    "title": f"{vs.field} Total ({vs.aggregation})",
                    "type": "number",
                    "sortable": True,
                    "filterable": True,
                    "isPivotTotal": True,
                }
            )

    for cf in spec.calculated_fields:
        if not cf.enabled:
            continue
        cols.append(
            {
                "key": cf.key,
                "title": cf.name,
                "type": "number",
                "sortable": True,
                "filterable": True,
                "isPivotCalculatedField": True,
                "formula": cf.formula,
                "format": cf.format,
                "description": cf.description,
                "dependencies": list(cf.dependencies),
            }
        )
    return cols


def pivot_available_fields(spec: PivotSpec, column_values: Sequence[str]) -> List[Dict[str, Any]]:
    """Numeric keys a pivot row exposes to calculated-field formulas."""
    values = spec.values
    fields: List[Dict[str, Any]] = []
    for vs in values:
        if spec.show_row_totals:
            fields.append({"key": total_key(values, vs), "field": vs.field, "aggregation": vs.aggregation, "type": "number"})
        if spec.columns:
            for label in column_values:
                fields.append({"key": cell_key(label, vs), "field": vs.field, "aggregation": vs.aggregation, "type": "number", "pivotColumn": label})
        else:
            fields.append({"key": value_key(values, vs), "field": vs.field, "aggregation": vs.aggregation, "type": "number"})
    return fields


def _passthrough(records: List[Record], error: Optional[str] = None) -> PivotResult:
    return PivotResult(pivot_data=records, is_pivot=False, error=error)


def pivot(
    records: Sequence[Record],
    spec: Any,
    *,
    visible_records: Optional[Sequence[Record]] = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> PivotResult:
    """Reshape flat records into a pivot report.

    Never raises: a disabled or empty spec returns the records unchanged,
    a malformed one does the same with ``error`` set.
    """
    rows = [dict(r) for r in (records or []) if is_record(r)]
    try:
        spec = normalize_pivot_spec(spec)
        if not spec.enabled or not spec.is_configured or not rows:
            return _passthrough(rows)
        parsed = _check_spec(spec)
        return _build(rows, spec, parsed, visible_records, settings)
    except PivotConfigurationError as exc:
        logger.warning("pivot configuration rejected, returning flat records: %s", exc)
        return _passthrough(rows, str(exc))
    except Exception as exc:
        logger.exception("pivot failed, returning flat records")
        return _passthrough(rows, str(PivotConfigurationError(str(exc))))


def _data_rows(wf: _Frame, parsed, labels: List[str]) -> Tuple[List[Group], Dict[Group, Record]]:
    """Leaf pivot rows keyed by row group, in display order."""
    spec = wf.spec
    cells = _aggregate_level(wf, parsed, len(wf.rows), labels)
    row_groups = _sorted_groups(wf.row_order, spec.sort_rows, spec.sort_direction)
    data: Dict[Group, Record] = {}
    for g in row_groups:
        record: Record = dict(zip(wf.rows, wf.row_raw[g]))
        record.update(cells.get(g, {}))
        data[g] = record
    return row_groups, data


def _build(rows: List[Record], spec: PivotSpec, parsed, visible_records, settings: EngineSettings) -> PivotResult:
    if len(rows) > settings.large_input_warning:
        logger.warning("pivoting %d records", len(rows))
    wf = _Frame(rows, spec)
    col_groups = _sorted_groups(wf.col_order, spec.sort_columns, spec.sort_direction)
    labels = [column_label(g) for g in col_groups]
    row_groups, data = _data_rows(wf, parsed, labels)

    subtotals: Dict[Group, Record] = {}
    n_rows = len(wf.rows)
    if spec.show_sub_totals and n_rows > 1:
        for depth in range(1, n_rows):
            first_member: Dict[Group, Group] = {}
            for g in row_groups:
                first_member.setdefault(g[:depth], g)
            for prefix, agg_cells in _aggregate_level(wf, parsed, depth, labels).items():
                raw = wf.row_raw[first_member[prefix]]
                record = {name: (raw[i] if i < depth else None) for i, name in enumerate(wf.rows)}
                record.update(agg_cells)
                record["isSubTotal"] = True
                record["subTotalDepth"] = depth
                subtotals[prefix] = record
        pivot_rows = _arrange(row_groups, 0, n_rows, data, subtotals)
    else:
        pivot_rows = [data[g] for g in row_groups]

    calc_fields = [cf for cf in spec.calculated_fields if cf.enabled]
    available = pivot_available_fields(spec, labels)
    if calc_fields:
        pivot_rows = evaluate_calculated_fields(pivot_rows, calc_fields, available, settings=settings)

    grand_total = None
    if spec.show_grand_totals:
        visible = rows if visible_records is None else [r for r in visible_records if is_record(r)]
        grand_total = compute_grand_total(visible, spec, labels)
        if calc_fields and grand_total is not None:
            if visible_records is None:
                visible_rows = [r for r in pivot_rows if not r.get("isSubTotal")]
            else:
                # calculated totals follow the visible set, like the value totals
                _, visible_data = _data_rows(_Frame(visible, spec), parsed, labels)
                visible_rows = evaluate_calculated_fields(list(visible_data.values()), calc_fields, available, settings=settings)
            grand_total.update(calculated_grand_totals(visible_rows, calc_fields))

    return PivotResult(
        pivot_data=pivot_rows,
        pivot_columns=generate_pivot_columns(spec, labels),
        grand_total=grand_total,
        column_totals=_column_totals(wf, parsed, labels),
        column_values=labels,
        is_pivot=True,
    )
