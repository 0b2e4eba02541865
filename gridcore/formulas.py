"""Spreadsheet-style formulas for calculated fields.

A formula references fields as ``[name]`` and may use arithmetic,
comparison and logical operators plus a fixed set of functions. Formulas
are never handed to ``eval``: the text is tokenized, rewritten into a
Python expression with placeholder names, parsed with ``ast`` and walked
by a whitelist evaluator. ``IF(c, a, b)`` becomes a conditional
expression, so only the selected branch is evaluated.
"""

from __future__ import annotations

import ast
import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from gridcore.errors import FormulaEvaluationError, FormulaSyntaxError

FIELD_PATTERN = re.compile(r"\[([^\]]+)\]")
FUNCTION_PATTERN = re.compile(r"\b(ABS|ROUND|FLOOR|CEIL|MAX|MIN|SQRT|POW|AVG|IF|SUM|COUNT)\s*\(", re.IGNORECASE)
OPERATOR_PATTERN = re.compile(r"[+\-*/()><=!&|%]")
NUMBER_PATTERN = re.compile(r"\b\d+(?:\.\d+)?\b")
IF_PATTERN = re.compile(r"\bIF\s*\(", re.IGNORECASE)

TOKEN_PATTERN = re.compile(
    r"""
    (?P<space>\s+)
    |(?P<field>\[[^\]]*\])
    |(?P<number>\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+)
    |(?P<string>"[^"]*"|'[^']*')
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>===|!==|==|!=|>=|<=|&&|\|\||[-+*/%<>!(),])
    """,
    re.VERBOSE,
)

OPERATOR_REWRITES = {"&&": " and ", "||": " or ", "!": " not ", "===": "==", "!==": "!="}
LITERALS = {"true": "True", "false": "False", "null": "None", "undefined": "None"}


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)


def _round_half_up(value: float, digits: float = 0) -> float:
    # non-finite values pass through so the result coerces to 0
    if not math.isfinite(value) or not math.isfinite(digits):
        return value
    scale = 10 ** int(digits)
    return math.floor(value * scale + 0.5) / scale


def _floor(value: float) -> float:
    return math.floor(value) if math.isfinite(value) else value


def _ceil(value: float) -> float:
    return math.ceil(value) if math.isfinite(value) else value


def _avg(*values: Any) -> float:
    nums = [v for v in values if _is_number(v)]
    return sum(nums) / len(nums) if nums else 0


def _sqrt(value: float) -> float:
    return math.sqrt(value) if value >= 0 else math.nan


def _pow(base: float, exponent: float) -> float:
    try:
        return math.pow(base, exponent)
    except OverflowError:
        return math.inf
    except ValueError:
        return math.nan


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "ABS": abs,
    "ROUND": _round_half_up,
    "FLOOR": _floor,
    "CEIL": _ceil,
    "MAX": lambda *v: max(v) if v else -math.inf,
    "MIN": lambda *v: min(v) if v else math.inf,
    "SQRT": _sqrt,
    "POW": _pow,
    "AVG": _avg,
    "SUM": lambda *v: sum(x for x in v if _is_number(x)),
    "COUNT": lambda *v: sum(1 for x in v if x is not None),
}


@dataclass(frozen=True)
class ParsedFormula:
    original: str
    dependencies: Tuple[str, ...] = ()
    field_references: Tuple[Dict[str, Any], ...] = ()
    functions: Tuple[str, ...] = ()
    operators: Tuple[str, ...] = ()
    constants: Tuple[float, ...] = ()


@dataclass(frozen=True)
class FormulaValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "dependencies": list(self.dependencies),
        }


def _unique(items: Sequence[Any]) -> Tuple[Any, ...]:
    return tuple(dict.fromkeys(items))


def parse_formula(formula: Any) -> ParsedFormula:
    """Extract field references, functions, operators and numeric constants."""
    if formula is None or not isinstance(formula, str):
        raise FormulaSyntaxError("Formula is required and must be a string")

    refs = [
        {"name": m.group(1), "reference": m.group(0), "position": m.start()}
        for m in FIELD_PATTERN.finditer(formula)
    ]
    return ParsedFormula(
        original=formula,
        dependencies=_unique([r["name"] for r in refs]),
        field_references=tuple(refs),
        functions=_unique([m.group(1).upper() for m in FUNCTION_PATTERN.finditer(formula)]),
        operators=_unique(OPERATOR_PATTERN.findall(formula)),
        constants=tuple(float(n) for n in NUMBER_PATTERN.findall(formula)),
    )


def field_keys(available_fields: Optional[Sequence[Any]]) -> List[str]:
    """Names a formula may reference: each entry's key, field and name."""
    keys: List[str] = []
    for item in available_fields or []:
        if isinstance(item, str):
            names = [item]
        elif isinstance(item, Mapping):
            names = [item.get("key"), item.get("field"), item.get("name")]
        else:
            continue
        for name in names:
            if name and name not in keys:
                keys.append(str(name))
    return keys


def default_field_mapping(available_fields: Optional[Sequence[Any]]) -> Dict[str, str]:
    """Map reference names to row keys: exact keys first, then base field names."""
    mapping: Dict[str, str] = {}
    entries = [item for item in available_fields or [] if isinstance(item, Mapping) and item.get("key")]
    for item in entries:
        mapping[str(item["key"])] = str(item["key"])
    for item in entries:
        key = str(item["key"])
        base = item.get("field") or item.get("name")
        if base:
            mapping.setdefault(str(base), key)
        if key.endswith("_total"):
            mapping.setdefault(key[: -len("_total")], key)
    return mapping


def _if_argument_counts(formula: str) -> List[int]:
    """Top-level argument count of every ``IF(`` call in the text."""
    counts = []
    for m in IF_PATTERN.finditer(formula):
        depth = 0
        commas = 0
        for ch in formula[m.end() - 1 :]:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    break
            elif ch == "," and depth == 1:
                commas += 1
        counts.append(commas + 1)
    return counts


def _parens_balanced(formula: str) -> bool:
    depth = 0
    for ch in FIELD_PATTERN.sub("", formula):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def validate_formula(formula: Any, available_fields: Optional[Sequence[Any]] = None) -> FormulaValidation:
    if not formula or not isinstance(formula, str):
        return FormulaValidation(is_valid=False, errors=["Formula is required"])

    parsed = parse_formula(formula)
    errors: List[str] = []
    warnings: List[str] = []

    known = set(field_keys(available_fields))
    for dep in parsed.dependencies:
        if dep not in known:
            errors.append(f"Field '{dep}' is not available")

    if not _parens_balanced(formula):
        errors.append("Unbalanced parentheses in formula")
    if "//" in formula or "**" in formula:
        errors.append("Invalid operator sequence detected")
    if "[]" in formula:
        errors.append("Empty field reference found")
    if any(n != 3 for n in _if_argument_counts(formula)):
        errors.append("IF function requires exactly 3 parameters: IF(condition, trueValue, falseValue)")

    if not errors:
        try:
            _compile(formula)
        except FormulaSyntaxError as exc:
            errors.append(str(exc))

    if "/" in formula and "IF(" not in formula.upper():
        warnings.append("Consider using IF() to prevent division by zero")

    return FormulaValidation(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        dependencies=list(parsed.dependencies),
    )


class _IfRewriter(ast.NodeTransformer):
    def visit_Call(self, node: ast.Call) -> ast.AST:
        self.generic_visit(node)
        if isinstance(node.func, ast.Name) and node.func.id == "IF":
            if len(node.args) != 3 or node.keywords:
                raise FormulaSyntaxError("IF function requires exactly 3 parameters: IF(condition, trueValue, falseValue)")
            return ast.IfExp(test=node.args[0], body=node.args[1], orelse=node.args[2])
        return node


@dataclass(frozen=True)
class _Compiled:
    tree: ast.expr
    fields: Dict[str, str]
    names: Dict[str, str]


def _tokenize(formula: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(formula):
        m = TOKEN_PATTERN.match(formula, pos)
        if m is None:
            raise FormulaSyntaxError(f"Unexpected character {formula[pos]!r} at position {pos}")
        if m.lastgroup != "space":
            tokens.append((m.lastgroup, m.group()))
        pos = m.end()
    return tokens


@lru_cache(maxsize=512)
def _compile(formula: str) -> _Compiled:
    tokens = _tokenize(formula)
    fields: Dict[str, str] = {}
    names: Dict[str, str] = {}
    by_field: Dict[str, str] = {}
    by_name: Dict[str, str] = {}
    parts: List[str] = []

    for i, (kind, text) in enumerate(tokens):
        if kind == "field":
            ref = text[1:-1]
            if not ref:
                raise FormulaSyntaxError("Empty field reference found")
            if ref not in by_field:
                by_field[ref] = f"__f{len(by_field)}"
                fields[by_field[ref]] = ref
            parts.append(by_field[ref])
        elif kind == "name":
            is_call = i + 1 < len(tokens) and tokens[i + 1][1] == "("
            if is_call:
                if text.upper() not in FUNCTIONS and text.upper() != "IF":
                    raise FormulaSyntaxError(f"Unknown function: {text}")
                parts.append(text.upper())
            elif text.lower() in LITERALS:
                parts.append(LITERALS[text.lower()])
            else:
                if text not in by_name:
                    by_name[text] = f"__n{len(by_name)}"
                    names[by_name[text]] = text
                parts.append(by_name[text])
        elif kind == "string":
            parts.append(repr(text[1:-1]))
        elif kind == "op":
            parts.append(OPERATOR_REWRITES.get(text, text))
        else:
            parts.append(text)

    source = " ".join(parts)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as exc:
        raise FormulaSyntaxError(f"Invalid formula syntax: {exc.msg}") from None
    body = _IfRewriter().visit(tree).body
    return _Compiled(tree=body, fields=fields, names=names)


def _to_number(value: Any) -> float:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return float(value) if value.strip() else 0
        except ValueError:
            return math.nan
    raise TypeError(f"unsupported operand type {type(value).__name__}")


def _divide(a: float, b: float) -> float:
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * (math.copysign(1, b))
    return a / b


def _modulo(a: float, b: float) -> float:
    if b == 0:
        return math.nan
    return math.fmod(a, b)


BINARY_OPS: Dict[type, Callable[[float, float], float]] = {
    ast.Sub: lambda a, b: a - b,
    ast.Mult: lambda a, b: a * b,
    ast.Div: _divide,
    ast.Mod: _modulo,
}

COMPARE_OPS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: lambda a, b: a == b,
    ast.NotEq: lambda a, b: a != b,
    ast.Lt: lambda a, b: a < b,
    ast.LtE: lambda a, b: a <= b,
    ast.Gt: lambda a, b: a > b,
    ast.GtE: lambda a, b: a >= b,
}


def _comparable(a: Any, b: Any) -> Tuple[Any, Any]:
    if isinstance(a, str) and isinstance(b, str):
        return a, b
    return _to_number(a), _to_number(b)


def _evaluate(node: ast.AST, env: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id in env:
            return env[node.id]
        raise FormulaEvaluationError(f"Unknown identifier {node.id}")
    if isinstance(node, ast.BinOp):
        left = _evaluate(node.left, env)
        right = _evaluate(node.right, env)
        if isinstance(node.op, ast.Add):
            if isinstance(left, str) or isinstance(right, str):
                return f"{'' if left is None else left}{'' if right is None else right}"
            return _to_number(left) + _to_number(right)
        op = BINARY_OPS.get(type(node.op))
        if op is None:
            raise FormulaEvaluationError(f"Unsupported operator: {type(node.op).__name__}")
        return op(_to_number(left), _to_number(right))
    if isinstance(node, ast.UnaryOp):
        operand = _evaluate(node.operand, env)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -_to_number(operand)
        if isinstance(node.op, ast.UAdd):
            return _to_number(operand)
        raise FormulaEvaluationError(f"Unsupported operator: {type(node.op).__name__}")
    if isinstance(node, ast.BoolOp):
        result = None
        for value in node.values:
            result = _evaluate(value, env)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result
    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, env)
        for op, comparator in zip(node.ops, node.comparators):
            fn = COMPARE_OPS.get(type(op))
            if fn is None:
                raise FormulaEvaluationError(f"Unsupported operator: {type(op).__name__}")
            right = _evaluate(comparator, env)
            if not fn(*_comparable(left, right)):
                return False
            left = right
        return True
    if isinstance(node, ast.IfExp):
        branch = node.body if _evaluate(node.test, env) else node.orelse
        return _evaluate(branch, env)
    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            raise FormulaEvaluationError("Function calls are limited to the formula functions")
        args = [_evaluate(a, env) for a in node.args]
        if node.func.id not in ("COUNT", "SUM", "AVG"):
            args = [_to_number(a) for a in args]
        return FUNCTIONS[node.func.id](*args)
    raise FormulaEvaluationError(f"Unsupported expression type: {type(node).__name__}")


def _resolve_field(name: str, row: Mapping[str, Any], mapping: Mapping[str, str]) -> Any:
    mapped = mapping.get(name)
    if mapped is not None and row.get(mapped) is not None:
        return row[mapped]
    value = row.get(name)
    return 0 if value is None else value


def _finalize(result: Any) -> float:
    if isinstance(result, bool):
        return 1 if result else 0
    if not isinstance(result, (int, float)):
        return 0
    if math.isnan(result) or math.isinf(result):
        return 0
    return result


def execute_calculated_field(
    formula: str,
    row: Mapping[str, Any],
    available_fields: Optional[Sequence[Any]] = None,
    field_mapping: Optional[Mapping[str, str]] = None,
) -> Optional[float]:
    """Evaluate ``formula`` against one row.

    Missing or null field references read as 0; a non-finite result is 0.
    Raises FormulaEvaluationError for anything that cannot be evaluated.
    """
    if not formula or row is None:
        return None
    mapping = field_mapping if field_mapping is not None else default_field_mapping(available_fields)
    try:
        compiled = _compile(formula)
        env: Dict[str, Any] = {}
        for placeholder, ref in compiled.fields.items():
            env[placeholder] = _resolve_field(ref, row, mapping)
        for placeholder, name in compiled.names.items():
            if name not in row:
                raise FormulaEvaluationError(f"{name} is not defined")
            env[placeholder] = row[name]
        return _finalize(_evaluate(compiled.tree, env))
    except FormulaEvaluationError:
        raise
    except Exception as exc:
        raise FormulaEvaluationError(str(exc)) from exc
