"""Record reconciliation: merge partial records describing the same entity.

Two strategies share one deep-merge rule set:

- exact merge groups records by the full composite ``mergeBy`` key;
- soft merge buckets by the best-populated key field and folds "broad"
  rows (missing a secondary key) into every "narrow" row of the bucket.

``reconcile`` never raises; an internal fault degrades to the collected
input, logged for diagnostics.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from gridcore.collector import collect
from gridcore.config import AUTO, DEFAULT_SETTINGS, EngineSettings, MergeSpec, normalize_merge_spec
from gridcore.errors import ReconciliationFailure
from gridcore.merge_keys import infer_merge_spec
from gridcore.values import (
    Record,
    canonical_json,
    composite_key,
    is_empty,
    is_non_empty,
    is_record,
    is_sequence,
    normalize_for_key,
)

logger = logging.getLogger(__name__)

ROW_ID_FIELD = "__rowId"
IDENTIFIER_CANDIDATES = ("id", "uuid", "code", "key", "pk", "ekey")


def find_identifier_field(record: object) -> Optional[str]:
    if not is_record(record):
        return None
    keys = list(record.keys())
    lower = [str(k).lower() for k in keys]
    for cand in IDENTIFIER_CANDIDATES:
        if cand in lower:
            return keys[lower.index(cand)]
    for k, kl in zip(keys, lower):
        if kl.endswith("id") or kl.endswith("code"):
            return k
    return None


def _merge_scalar(current: object, incoming: object) -> object:
    if is_non_empty(incoming) and not is_empty(incoming):
        return incoming
    if is_empty(current) and incoming is not None:
        return incoming
    return current


def deep_merge_sequences(a: object, b: object) -> List[Any]:
    left = list(a) if is_sequence(a) else []
    right = list(b) if is_sequence(b) else []
    if not left:
        return right
    if not right:
        return left

    items = left + right
    if not any(is_record(v) for v in items):
        seen = set()
        out = []
        for v in items:
            k = normalize_for_key(v)
            if k not in seen:
                seen.add(k)
                out.append(v)
        return out

    sample = next(v for v in items if is_record(v))
    id_field = find_identifier_field(sample)
    if id_field is None:
        seen = set()
        out = []
        for v in items:
            k = canonical_json(v)
            if k not in seen:
                seen.add(k)
                out.append(v)
        return out

    by_id: Dict[str, Any] = {}
    extras: List[Any] = []
    for item in items:
        if not is_record(item):
            if item not in extras:
                extras.append(item)
            continue
        k = normalize_for_key(item.get(id_field))
        by_id[k] = deep_merge_records(by_id[k], item) if k in by_id else item
    return list(by_id.values()) + extras


def deep_merge_records(a: object, b: object) -> Record:
    """Merge ``b`` into a copy of ``a``.

    Sequences are merged element-wise, nested records recurse, and for
    scalars a non-empty incoming value replaces the current one.
    """
    result: Record = dict(a) if is_record(a) else {}
    if not is_record(b):
        return result
    for key, incoming in b.items():
        current = result.get(key)
        if is_sequence(current) or is_sequence(incoming):
            result[key] = deep_merge_sequences(current, incoming)
        elif is_record(current) and is_record(incoming):
            result[key] = deep_merge_records(current, incoming)
        elif key in result:
            result[key] = _merge_scalar(current, incoming)
        else:
            result[key] = incoming
    return result


def _fold(rows: Iterable[Record]) -> Record:
    merged: Record = {}
    for row in rows:
        merged = deep_merge_records(merged, row)
    return merged


def _has_any(row: Record, fields: Sequence[str]) -> bool:
    return any(is_non_empty(row.get(f)) for f in fields)


def _row_id(row: Record, index: int) -> str:
    existing = row.get(ROW_ID_FIELD)
    if is_non_empty(existing):
        return str(existing)
    row[ROW_ID_FIELD] = f"row-{index}"
    return row[ROW_ID_FIELD]


class _PreserveCache:
    def __init__(self, preserve: Sequence[str]) -> None:
        self.fields = list(preserve)
        self._cache: Dict[str, Dict[str, Any]] = {}

    def seed(self, bucket: str, row: Record) -> None:
        if not self.fields:
            return
        slot = self._cache.setdefault(bucket, {})
        for f in self.fields:
            v = row.get(f)
            if is_non_empty(v) and f not in slot:
                slot[f] = v

    def backfill(self, bucket: str, row: Record) -> Record:
        slot = self._cache.get(bucket, {})
        for f in self.fields:
            if f in slot and is_empty(row.get(f)):
                row[f] = slot[f]
        return row


def merge_records_by_keys(records: Sequence[Record], merge_by: Sequence[str], preserve: Sequence[str] = ()) -> List[Record]:
    rows = [r for r in records if is_record(r)]
    if not merge_by:
        return rows

    primary = merge_by[0]
    cache = _PreserveCache(preserve)
    groups: Dict[str, List[Record]] = {}
    bucket_of: Dict[str, str] = {}

    for index, row in enumerate(rows):
        if _has_any(row, merge_by):
            key = composite_key(row, merge_by)
            bucket = normalize_for_key(row.get(primary)) or key
        else:
            key = bucket = f"{ROW_ID_FIELD}:{_row_id(row, index)}"
        cache.seed(bucket, row)
        groups.setdefault(key, []).append(row)
        bucket_of.setdefault(key, bucket)

    return [cache.backfill(bucket_of[key], _fold(group)) for key, group in groups.items()]


def _primary_key(rows: Sequence[Record], merge_by: Sequence[str]) -> str:
    counts = [sum(1 for r in rows if is_non_empty(r.get(k))) for k in merge_by]
    best = 0
    for i in range(1, len(counts)):
        if counts[i] > counts[best]:
            best = i
    return merge_by[best]


def soft_merge_records_by_keys(records: Sequence[Record], merge_by: Sequence[str], preserve: Sequence[str] = ()) -> List[Record]:
    rows = [r for r in records if is_record(r)]
    if not merge_by:
        return rows
    if len(merge_by) == 1:
        return merge_records_by_keys(rows, merge_by, preserve)

    primary = _primary_key(rows, merge_by)
    secondary = [k for k in merge_by if k != primary]
    cache = _PreserveCache(preserve)

    # bucket -> {"narrow": {secondary composite: [(index, row)]}, "broad": [(index, row)]}
    buckets: Dict[str, Dict[str, Any]] = {}
    unkeyed: Dict[str, List[Tuple[int, Record]]] = {}

    for index, row in enumerate(rows):
        has_secondary = all(is_non_empty(row.get(k)) for k in secondary)
        if not is_non_empty(row.get(primary)):
            if has_secondary:
                key = composite_key(row, secondary)
            else:
                key = f"{ROW_ID_FIELD}:{_row_id(row, index)}"
            unkeyed.setdefault(key, []).append((index, row))
            continue

        pk = normalize_for_key(row.get(primary))
        bucket = buckets.setdefault(pk, {"narrow": {}, "broad": []})
        cache.seed(pk, row)
        if has_secondary:
            bucket["narrow"].setdefault(composite_key(row, secondary), []).append((index, row))
        else:
            bucket["broad"].append((index, row))

    results: List[Record] = []
    for pk, bucket in buckets.items():
        broad = bucket["broad"]
        if not bucket["narrow"]:
            results.append(cache.backfill(pk, _fold(r for _, r in broad)))
            continue
        for contributors in bucket["narrow"].values():
            ordered = sorted(contributors + broad, key=lambda pair: pair[0])
            results.append(cache.backfill(pk, _fold(r for _, r in ordered)))

    for contributors in unkeyed.values():
        results.append(_fold(r for _, r in contributors))
    return results


def _needs_soft_merge(rows: Sequence[Record], merge_by: Sequence[str]) -> bool:
    if len(merge_by) < 2:
        return False
    return any(not all(is_non_empty(r.get(k)) for k in merge_by) for r in rows)


def _identity_dedupe(raw: Any) -> List[Record]:
    if is_sequence(raw):
        candidates = list(raw)
    elif is_record(raw):
        candidates = []
        for v in raw.values():
            if is_sequence(v):
                candidates.extend(v)
            else:
                candidates.append(v)
    else:
        return []
    seen = set()
    out: List[Record] = []
    for row in candidates:
        if not is_record(row) or id(row) in seen:
            continue
        seen.add(id(row))
        out.append(dict(row))
    return out


def resolve_merge_spec(records: Sequence[Record], merge_spec: Any = AUTO, *, settings: EngineSettings = DEFAULT_SETTINGS) -> Tuple[MergeSpec, bool]:
    """Return the spec to use and whether it was inferred ambiguously."""
    spec = normalize_merge_spec(merge_spec)
    if spec is not None:
        return spec, False
    inference = infer_merge_spec(records, settings=settings)
    return inference.spec, inference.ambiguous


def reconcile(raw: Any, merge_spec: Any = AUTO, *, settings: EngineSettings = DEFAULT_SETTINGS) -> List[Record]:
    """Merge records sharing a (possibly partial) key into single entities.

    ``raw`` may be a list of records or any shape accepted by ``collect``;
    ``merge_spec`` may be a MergeSpec, a persisted dict, or ``"auto"``.
    """
    try:
        records = copy.deepcopy(collect(raw))
        if not records:
            return []
        spec, _ = resolve_merge_spec(records, merge_spec, settings=settings)
        if not spec.merge_by:
            return records
        if _needs_soft_merge(records, spec.merge_by):
            return soft_merge_records_by_keys(records, spec.merge_by, spec.preserve)
        return merge_records_by_keys(records, spec.merge_by, spec.preserve)
    except Exception as exc:
        failure = ReconciliationFailure(str(exc))
        logger.exception("reconcile failed, returning unmerged records: %s", failure)
        try:
            return _identity_dedupe(raw)
        except Exception:
            logger.exception("reconcile fallback failed")
            return []
