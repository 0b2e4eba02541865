from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from gridcore.aggregations import aggregate
from gridcore.calculated import calculated_grand_totals, evaluate_calculated_fields
from gridcore.collector import FieldDescriptor, collect, data_size, describe_fields
from gridcore.collector import available_fields as fields_from_descriptors
from gridcore.config import AUTO, DEFAULT_SETTINGS, EngineSettings, normalize_calculated_fields, normalize_pivot_spec
from gridcore.filters import apply_filters, normalize_filters
from gridcore.pivot import pivot
from gridcore.reconcile import reconcile, resolve_merge_spec
from gridcore.values import Record

logger = logging.getLogger(__name__)


def footer_totals(rows: Sequence[Record], descriptors: Sequence[FieldDescriptor]) -> Record:
    """Sum of every numeric field over ``rows``, tagged as the grand-total row."""
    total: Record = {"isGrandTotal": True}
    for d in descriptors:
        if d.inferred_type == "number":
            total[d.key] = aggregate((r.get(d.key) for r in rows), "sum")
    return total


def build_view(
    raw: Any,
    *,
    merge_spec: Any = AUTO,
    pivot_spec: Any = None,
    calculated_fields: Iterable[Any] = (),
    available_fields: Optional[Sequence[Any]] = None,
    filters: Any = None,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> Dict[str, Any]:
    """Run every engine stage and return a JSON-ready view payload.

    collect -> reconcile -> filter -> pivot (when enabled) -> calculated
    fields -> totals over the filtered rows.
    """
    size = data_size(raw)
    if size > settings.large_input_warning:
        logger.warning("building view over %d source records", size)

    collected = collect(raw)
    spec, ambiguous = resolve_merge_spec(collected, merge_spec, settings=settings)
    merged = reconcile(collected, spec, settings=settings)
    descriptors = describe_fields(merged, settings=settings)

    visible = apply_filters(merged, normalize_filters(filters))

    p_spec = normalize_pivot_spec(pivot_spec)
    calc_fields = [cf for cf in normalize_calculated_fields(list(calculated_fields or [])) if cf.enabled]

    payload: Dict[str, Any] = {
        "records": [],
        "fieldDescriptors": [d.to_dict() for d in descriptors],
        "mergeSpec": spec.to_dict(),
        "mergeAmbiguous": ambiguous,
        "pivot": None,
        "grandTotal": None,
        "calculatedTotals": {},
        "filteredCount": len(visible),
        "totalCount": len(merged),
    }

    if p_spec.enabled and p_spec.is_configured:
        if calc_fields and not p_spec.calculated_fields:
            p_spec = replace(p_spec, calculated_fields=tuple(calc_fields))
        result = pivot(visible, p_spec, settings=settings)
        payload["pivot"] = result.to_dict()
        payload["records"] = result.pivot_data
        payload["grandTotal"] = result.grand_total
        if result.grand_total is not None:
            payload["calculatedTotals"] = {
                cf.key: result.grand_total.get(cf.key) for cf in p_spec.calculated_fields if cf.enabled
            }
        if result.error:
            payload["pivotError"] = result.error
        if result.is_pivot:
            return payload

    fields = available_fields if available_fields is not None else fields_from_descriptors(descriptors)
    rows: List[Record] = evaluate_calculated_fields(visible, calc_fields, fields, settings=settings)
    totals = calculated_grand_totals(rows, calc_fields)
    payload["records"] = rows
    payload["calculatedTotals"] = totals
    payload["grandTotal"] = {**footer_totals(rows, descriptors), **totals}
    return payload
