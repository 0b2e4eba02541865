from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ValueSpecModel(_CamelModel):
    field: str
    aggregation: str = "sum"


class CalculatedFieldModel(_CamelModel):
    id: str = ""
    name: str = ""
    formula: Optional[str] = None
    format: str = "number"
    description: str = ""
    precision: int = 2
    enabled: bool = True
    dependencies: List[str] = Field(default_factory=list)


class MergeSpecModel(_CamelModel):
    merge_by: List[str] = Field(default_factory=list, alias="mergeBy")
    preserve: List[str] = Field(default_factory=list)


class PivotSpecModel(_CamelModel):
    enabled: bool = True
    rows: List[str] = Field(default_factory=list)
    columns: List[str] = Field(default_factory=list)
    values: List[ValueSpecModel] = Field(default_factory=list)
    filters: List[str] = Field(default_factory=list)
    calculated_fields: List[CalculatedFieldModel] = Field(default_factory=list, alias="calculatedFields")
    show_grand_totals: bool = Field(default=True, alias="showGrandTotals")
    show_row_totals: bool = Field(default=True, alias="showRowTotals")
    show_column_totals: bool = Field(default=True, alias="showColumnTotals")
    show_sub_totals: bool = Field(default=True, alias="showSubTotals")
    number_format: str = Field(default="en-US", alias="numberFormat")
    currency: str = "USD"
    precision: int = 2
    sort_rows: bool = Field(default=True, alias="sortRows")
    sort_columns: bool = Field(default=True, alias="sortColumns")
    sort_direction: str = Field(default="asc", alias="sortDirection")


class ColumnConstraintModel(_CamelModel):
    value: Any = None
    match_mode: str = Field(default="contains", alias="matchMode")


class ColumnFilterModel(_CamelModel):
    constraints: List[ColumnConstraintModel] = Field(default_factory=list)
    operator: str = "and"


class GridFiltersModel(_CamelModel):
    global_search: str = Field(default="", alias="globalSearch")
    columns: Dict[str, ColumnFilterModel] = Field(default_factory=dict)
    search_fields: List[str] = Field(default_factory=list, alias="searchFields")


class CollectRequest(_CamelModel):
    data: Any = None
    group_marker: Optional[str] = Field(default=None, alias="groupMarker")


class ReconcileRequest(_CamelModel):
    data: Any = None
    merge_spec: Union[MergeSpecModel, str, None] = Field(default="auto", alias="mergeSpec")


class PivotRequest(_CamelModel):
    records: List[Dict[str, Any]] = Field(default_factory=list)
    spec: PivotSpecModel = Field(default_factory=PivotSpecModel)
    visible_records: Optional[List[Dict[str, Any]]] = Field(default=None, alias="visibleRecords")


class ValidateFormulaRequest(_CamelModel):
    formula: Optional[str] = None
    available_fields: List[Any] = Field(default_factory=list, alias="availableFields")
    calculated_fields: List[CalculatedFieldModel] = Field(default_factory=list, alias="calculatedFields")


class EvaluateRequest(_CamelModel):
    records: List[Dict[str, Any]] = Field(default_factory=list)
    calculated_fields: List[CalculatedFieldModel] = Field(default_factory=list, alias="calculatedFields")
    available_fields: Optional[List[Any]] = Field(default=None, alias="availableFields")


class CircularCheckRequest(_CamelModel):
    calculated_fields: List[CalculatedFieldModel] = Field(default_factory=list, alias="calculatedFields")


class FormatRequest(_CamelModel):
    values: List[Any] = Field(default_factory=list)
    format: str = "number"
    currency: str = "USD"
    locale: str = "en-US"
    precision: int = 2


class ViewRequest(_CamelModel):
    data: Any = None
    merge_spec: Union[MergeSpecModel, str, None] = Field(default="auto", alias="mergeSpec")
    pivot_spec: Optional[PivotSpecModel] = Field(default=None, alias="pivotSpec")
    calculated_fields: List[CalculatedFieldModel] = Field(default_factory=list, alias="calculatedFields")
    available_fields: Optional[List[Any]] = Field(default=None, alias="availableFields")
    filters: Optional[GridFiltersModel] = None
