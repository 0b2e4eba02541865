from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from gridcore.config import DEFAULT_SETTINGS, EngineSettings
from gridcore.errors import ShapeError
from gridcore.values import Record, is_empty, is_finite_number, is_record, is_sequence, normalize_for_key

logger = logging.getLogger(__name__)

DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%m/%d/%Y", "%d/%m/%Y")
DATETIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M")


@dataclass(frozen=True)
class FieldDescriptor:
    key: str
    inferred_type: str
    sample_unique_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "type": self.inferred_type, "sampleUniqueCount": self.sample_unique_count}


def _flatten_object_of_arrays(tables: Dict[str, Any], group_marker: Optional[str]) -> List[Record]:
    rows: List[Record] = []
    for group_key, arr in tables.items():
        if not is_sequence(arr):
            continue
        for row in arr:
            if not is_record(row):
                continue
            row = dict(row)
            if group_marker:
                row[group_marker] = group_key
            rows.append(row)
    return rows


def collect(raw: Any, *, group_marker: Optional[str] = None) -> List[Record]:
    """Normalise any supported input shape into a flat list of records.

    - list/tuple: keep the mapping entries, drop scalars and nested lists
    - mapping whose values include lists ("object of arrays"): concatenate
      every inner list in key order, optionally stamping ``group_marker``
    - mapping of records: its values
    - anything else: empty list
    """
    if raw is None:
        return []
    try:
        return _records_from(raw, group_marker)
    except ShapeError as exc:
        logger.warning("collect: %s, returning no records", exc)
    except Exception:
        logger.exception("collect failed for input of type %s", type(raw).__name__)
    return []


def _records_from(raw: Any, group_marker: Optional[str]) -> List[Record]:
    if is_sequence(raw):
        return [dict(row) for row in raw if is_record(row)]
    if is_record(raw):
        if any(is_sequence(v) for v in raw.values()):
            return _flatten_object_of_arrays(raw, group_marker)
        return [dict(v) for v in raw.values() if is_record(v)]
    raise ShapeError(f"unsupported input shape {type(raw).__name__}")


def data_size(raw: Any) -> int:
    if is_sequence(raw):
        return len(raw)
    if is_record(raw):
        return sum(len(v) for v in raw.values() if is_sequence(v))
    return 0


def _matches_format(value: str, formats) -> bool:
    for fmt in formats:
        try:
            datetime.strptime(value, fmt)
            return True
        except ValueError:
            continue
    return False


def _is_iso_datetime(value: str) -> bool:
    if "T" not in value and " " not in value:
        return False
    if _matches_format(value, DATETIME_FORMATS):
        return True
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
        return True
    except ValueError:
        return False


def infer_field_type(values: List[Any]) -> str:
    """Infer a semantic type from sampled non-empty values.

    Order: boolean -> number -> datetime -> date -> text.
    """
    if not values:
        return "text"
    if all(isinstance(v, bool) for v in values):
        return "boolean"
    if all(is_finite_number(v) for v in values):
        return "number"
    if all(isinstance(v, datetime) or (isinstance(v, str) and _is_iso_datetime(v.strip())) for v in values):
        return "datetime"
    if all(
        (isinstance(v, date) and not isinstance(v, datetime))
        or (isinstance(v, str) and _matches_format(v.strip(), DATE_FORMATS))
        for v in values
    ):
        return "date"
    return "text"


def describe_fields(records: List[Record], *, settings: EngineSettings = DEFAULT_SETTINGS) -> List[FieldDescriptor]:
    samples: Dict[str, List[Any]] = {}
    for record in records[: settings.sample_size]:
        if not is_record(record):
            continue
        for key, value in record.items():
            bucket = samples.setdefault(key, [])
            if not is_empty(value):
                bucket.append(value)

    descriptors: List[FieldDescriptor] = []
    for key, values in samples.items():
        descriptors.append(
            FieldDescriptor(
                key=key,
                inferred_type=infer_field_type(values),
                sample_unique_count=len({normalize_for_key(v) for v in values}),
            )
        )
    return descriptors


def available_fields(descriptors: List[FieldDescriptor]) -> List[Dict[str, str]]:
    return [{"key": d.key, "type": d.inferred_type} for d in descriptors]
