from __future__ import annotations

import logging
import math
from typing import Any

import numpy as np
import pandas as pd
from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.schemas import (
    CircularCheckRequest,
    CollectRequest,
    EvaluateRequest,
    FormatRequest,
    PivotRequest,
    ReconcileRequest,
    ValidateFormulaRequest,
    ViewRequest,
)
from gridcore.calculated import (
    calculated_grand_totals,
    check_circular_dependencies,
    evaluate_calculated_fields,
    get_formula_templates,
)
from gridcore.collector import available_fields, collect, describe_fields
from gridcore.config import normalize_calculated_fields
from gridcore.formatting import format_calculated_value
from gridcore.formulas import validate_formula
from gridcore.merge_keys import infer_merge_spec
from gridcore.pipeline import build_view
from gridcore.pivot import pivot as run_pivot
from gridcore.reconcile import reconcile as run_reconcile
from gridcore.reconcile import resolve_merge_spec


app = FastAPI(title="Grid Engine API", version="0.1.0")
logger = logging.getLogger(__name__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _dump(value: Any) -> Any:
    """Pydantic models -> camelCase dicts understood by the normalize_* helpers."""
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True)
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _json(data: object) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except Exception:
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        )
    )


def _error(exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})


@app.post("/collect")
def collect_records(req: CollectRequest):
    try:
        records = collect(req.data, group_marker=req.group_marker)
        descriptors = describe_fields(records)
        return _json(
            {
                "records": records,
                "fieldDescriptors": [d.to_dict() for d in descriptors],
                "availableFields": available_fields(descriptors),
            }
        )
    except Exception as exc:
        logger.exception("collect failed")
        return _error(exc)


@app.post("/merge-spec")
def merge_spec(req: CollectRequest):
    try:
        records = collect(req.data, group_marker=req.group_marker)
        return _json(infer_merge_spec(records).to_dict())
    except Exception as exc:
        logger.exception("merge_spec failed")
        return _error(exc)


@app.post("/reconcile")
def reconcile(req: ReconcileRequest):
    try:
        records = collect(req.data)
        spec, ambiguous = resolve_merge_spec(records, _dump(req.merge_spec))
        merged = run_reconcile(records, spec)
        return _json({"records": merged, "mergeSpec": spec.to_dict(), "mergeAmbiguous": ambiguous})
    except Exception as exc:
        logger.exception("reconcile failed")
        return _error(exc)


@app.post("/pivot")
def pivot(req: PivotRequest):
    try:
        result = run_pivot(req.records, _dump(req.spec), visible_records=req.visible_records)
        return _json({**result.to_dict(), "error": result.error})
    except Exception as exc:
        logger.exception("pivot failed")
        return _error(exc)


@app.post("/calculated-fields/validate")
def validate_calculated_field(req: ValidateFormulaRequest):
    try:
        validation = validate_formula(req.formula, _dump(req.available_fields))
        circular = check_circular_dependencies(_dump(req.calculated_fields))
        return _json({**validation.to_dict(), "circular": circular.to_dict()})
    except Exception as exc:
        logger.exception("validate_calculated_field failed")
        return _error(exc)


@app.post("/calculated-fields/evaluate")
def evaluate_calculated(req: EvaluateRequest):
    try:
        fields = normalize_calculated_fields(_dump(req.calculated_fields))
        available = req.available_fields
        if available is None:
            available = available_fields(describe_fields(req.records))
        rows = evaluate_calculated_fields(req.records, fields, _dump(available))
        return _json({"records": rows, "calculatedTotals": calculated_grand_totals(rows, fields)})
    except Exception as exc:
        logger.exception("evaluate_calculated failed")
        return _error(exc)


@app.post("/calculated-fields/check")
def check_calculated(req: CircularCheckRequest):
    try:
        return _json(check_circular_dependencies(_dump(req.calculated_fields)).to_dict())
    except Exception as exc:
        logger.exception("check_calculated failed")
        return _error(exc)


@app.get("/calculated-fields/templates")
def formula_templates():
    try:
        return _json({"templates": get_formula_templates()})
    except Exception as exc:
        logger.exception("formula_templates failed")
        return _error(exc)


@app.post("/format")
def format_values(req: FormatRequest):
    try:
        formatted = [
            format_calculated_value(v, req.format, currency=req.currency, locale=req.locale, precision=req.precision)
            for v in req.values
        ]
        return _json({"formatted": formatted})
    except Exception as exc:
        logger.exception("format_values failed")
        return _error(exc)


@app.post("/view")
def view(req: ViewRequest):
    try:
        payload = build_view(
            req.data,
            merge_spec=_dump(req.merge_spec),
            pivot_spec=_dump(req.pivot_spec),
            calculated_fields=_dump(req.calculated_fields),
            available_fields=_dump(req.available_fields),
            filters=_dump(req.filters),
        )
        return _json(payload)
    except Exception as exc:
        logger.exception("view failed")
        return _error(exc)
