from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from gridcore.config import DEFAULT_SETTINGS, CalculatedField, EngineSettings, normalize_calculated_fields
from gridcore.errors import ERROR_VALUE, FormulaDependencyError, FormulaEvaluationError, FormulaSyntaxError
from gridcore.formulas import default_field_mapping, execute_calculated_field, field_keys, parse_formula, validate_formula
from gridcore.values import Record, is_finite_number, is_record

logger = logging.getLogger(__name__)

FORMULA_TEMPLATES = (
    {
        "name": "ROI (Return on Investment)",
        "formula": "([Revenue_sum] - [Cost_sum]) / [Cost_sum] * 100",
        "description": "Calculate return on investment as a percentage",
        "category": "Financial",
    },
    {
        "name": "Profit Margin",
        "formula": "([Revenue_sum] - [Cost_sum]) / [Revenue_sum] * 100",
        "description": "Calculate profit margin as a percentage",
        "category": "Financial",
    },
    {
        "name": "Growth Rate",
        "formula": "([Current_sum] - [Previous_sum]) / [Previous_sum] * 100",
        "description": "Calculate growth rate between two periods",
        "category": "Financial",
    },
    {
        "name": "Average Per Unit",
        "formula": "[Total_sum] / [Quantity_sum]",
        "description": "Calculate average value per unit",
        "category": "Operations",
    },
    {
        "name": "Variance",
        "formula": "[Actual_sum] - [Budget_sum]",
        "description": "Calculate variance between actual and budget",
        "category": "Financial",
    },
    {
        "name": "Variance Percentage",
        "formula": "([Actual_sum] - [Budget_sum]) / [Budget_sum] * 100",
        "description": "Calculate variance as a percentage of budget",
        "category": "Financial",
    },
    {
        "name": "Conditional Value",
        "formula": "IF([Sales_sum] > 1000, [Sales_sum] * 0.1, 0)",
        "description": "Apply conditional logic to calculations",
        "category": "Logic",
    },
    {
        "name": "Risk Ratio",
        "formula": "[Risk_sum] / ([Risk_sum] + [Safe_sum]) * 100",
        "description": "Calculate risk as percentage of total",
        "category": "Analysis",
    },
)


@dataclass(frozen=True)
class CircularDependencyResult:
    has_circular_dependency: bool = False
    circular_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"hasCircularDependency": self.has_circular_dependency, "circularFields": list(self.circular_fields)}


def _fields(calculated_fields: Iterable[Any]) -> List[CalculatedField]:
    return list(normalize_calculated_fields(list(calculated_fields or [])))


def calculated_field_key(calc_field: Any) -> str:
    if isinstance(calc_field, CalculatedField):
        return calc_field.key
    normalized = _fields([calc_field])
    if not normalized:
        raise ValueError("calculated field must be a mapping or CalculatedField")
    return normalized[0].key


def build_field_mapping(available_fields: Optional[Sequence[Any]], calculated_fields: Iterable[Any] = ()) -> Dict[str, str]:
    """Reference name -> row key, covering source fields and calculated fields."""
    mapping = default_field_mapping(available_fields)
    for cf in _fields(calculated_fields):
        mapping.setdefault(cf.key, cf.key)
        mapping.setdefault(cf.name, cf.key)
        if cf.id:
            mapping.setdefault(cf.id, cf.key)
    return mapping


def _formula_refs(cf: CalculatedField) -> List[str]:
    try:
        return list(parse_formula(cf.formula).dependencies)
    except FormulaSyntaxError:
        return []


def _dependency_map(fields: Sequence[CalculatedField]) -> Dict[str, List[str]]:
    """Calculated-field key -> keys of the calculated fields its formula references."""
    alias: Dict[str, str] = {}
    for cf in fields:
        for name in (cf.key, cf.name, cf.id):
            if name:
                alias.setdefault(name, cf.key)
    graph: Dict[str, List[str]] = {}
    for cf in fields:
        graph[cf.key] = list(dict.fromkeys(alias[r] for r in _formula_refs(cf) if r in alias))
    return graph


def _cyclic_keys(graph: Dict[str, List[str]]) -> List[str]:
    visited: Set[str] = set()
    stack: List[str] = []
    on_stack: Set[str] = set()
    cyclic: List[str] = []

    def visit(node: str) -> None:
        visited.add(node)
        stack.append(node)
        on_stack.add(node)
        for dep in graph.get(node, []):
            if dep in on_stack:
                for member in stack[stack.index(dep):]:
                    if member not in cyclic:
                        cyclic.append(member)
            elif dep not in visited:
                visit(dep)
        stack.pop()
        on_stack.discard(node)

    for node in graph:
        if node not in visited:
            visit(node)
    return cyclic


def check_circular_dependencies(calculated_fields: Iterable[Any]) -> CircularDependencyResult:
    fields = _fields(calculated_fields)
    names = {cf.key: cf.name for cf in fields}
    cyclic = _cyclic_keys(_dependency_map(fields))
    return CircularDependencyResult(
        has_circular_dependency=bool(cyclic),
        circular_fields=[names[k] for k in cyclic],
    )


def evaluation_order(calculated_fields: Iterable[Any]) -> List[CalculatedField]:
    """Dependencies first; fields on or behind a cycle are left out."""
    fields = _fields(calculated_fields)
    by_key = {cf.key: cf for cf in fields}
    graph = _dependency_map(fields)
    blocked = set(_cyclic_keys(graph))

    order: List[CalculatedField] = []
    done: Set[str] = set()

    def place(key: str) -> bool:
        if key in done:
            return True
        if key in blocked:
            return False
        for dep in graph[key]:
            if not place(dep):
                blocked.add(key)
                return False
        done.add(key)
        order.append(by_key[key])
        return True

    for cf in fields:
        place(cf.key)
    return order


def get_all_dependencies(calculated_fields: Iterable[Any], available_fields: Optional[Sequence[Any]] = None) -> List[str]:
    deps: List[str] = []
    for cf in _fields(calculated_fields):
        for dep in validate_formula(cf.formula, available_fields).dependencies:
            if dep not in deps:
                deps.append(dep)
    return deps


def get_formula_templates() -> List[Dict[str, str]]:
    return [dict(t) for t in FORMULA_TEMPLATES]


def _calc_value(cf: CalculatedField, row: Record, mapping: Dict[str, str], deps: List[str]) -> Any:
    for dep in deps:
        if row.get(mapping.get(dep, dep)) == ERROR_VALUE:
            return ERROR_VALUE
    try:
        return execute_calculated_field(cf.formula, row, field_mapping=mapping)
    except FormulaEvaluationError as exc:
        logger.debug("calculated field %r failed on a row: %s", cf.name, exc)
        return ERROR_VALUE


def evaluate_calculated_fields(
    records: Sequence[Record],
    calculated_fields: Iterable[Any],
    available_fields: Optional[Sequence[Any]] = None,
    *,
    settings: EngineSettings = DEFAULT_SETTINGS,
) -> List[Record]:
    """Add one key per enabled calculated field to a copy of every record.

    Formulas failing validation, and fields caught in a dependency cycle,
    produce ``ERROR_VALUE`` on every row. A row whose evaluation fails gets
    ``ERROR_VALUE`` for that field only.
    """
    rows = [dict(r) for r in records if is_record(r)]
    fields = [cf for cf in _fields(calculated_fields) if cf.enabled]
    if not fields or not rows:
        return rows
    if len(rows) > settings.large_input_warning:
        logger.warning("evaluating %d calculated fields over %d records", len(fields), len(rows))

    ordered = evaluation_order(fields)
    mapping = build_field_mapping(available_fields, fields)
    known = field_keys(available_fields)

    runnable: List[CalculatedField] = []
    deps: Dict[str, List[str]] = {}
    for cf in ordered:
        check = validate_formula(cf.formula, known + [cf.key, cf.name] + [o.key for o in ordered] + [o.name for o in ordered])
        if check.is_valid:
            runnable.append(cf)
            deps[cf.key] = check.dependencies
        else:
            logger.warning("calculated field %r rejected: %s", cf.name, "; ".join(check.errors))
    rejected = [cf for cf in fields if cf not in runnable]
    for cf in rejected:
        if cf not in ordered:
            logger.warning("%s", FormulaDependencyError(f"calculated field {cf.name!r} is part of, or depends on, a circular dependency"))

    failures = 0
    for start in range(0, len(rows), max(1, settings.calc_batch_size)):
        for row in rows[start : start + settings.calc_batch_size]:
            for cf in rejected:
                row[cf.key] = ERROR_VALUE
            for cf in runnable:
                value = _calc_value(cf, row, mapping, deps[cf.key])
                if value == ERROR_VALUE:
                    failures += 1
                row[cf.key] = value
    if failures:
        logger.warning("%d calculated values could not be evaluated", failures)
    return rows


def calculated_grand_totals(records: Sequence[Record], calculated_fields: Iterable[Any]) -> Dict[str, float]:
    """Sum each calculated field over ``records`` (numeric values only), rounded to its precision."""
    totals: Dict[str, float] = {}
    for cf in _fields(calculated_fields):
        if not cf.enabled:
            continue
        values = [r.get(cf.key) for r in records if is_record(r)]
        total = sum(v for v in values if is_finite_number(v))
        totals[cf.key] = _round_total(total, cf.precision)
    return totals


def _round_total(total: float, precision: int) -> float:
    if isinstance(total, int):
        return total
    quantum = Decimal(1).scaleb(-max(0, precision))
    return float(Decimal(str(total)).quantize(quantum, rounding=ROUND_HALF_UP))
