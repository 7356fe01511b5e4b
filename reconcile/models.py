from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

Row = dict[str, Any]


class Column(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = ""
    is_primary_key: bool = False
    is_foreign_key: bool = False
    references: str | None = None  # "schema.table.column"


class Table(BaseModel):
    schema_name: str = Field(alias="schema")
    name: str
    columns: tuple[Column, ...] = ()

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.name}"

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> Column | None:
        lowered = name.lower()
        return next((c for c in self.columns if c.name.lower() == lowered), None)


class DiffStatus(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


class DiffRow(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64")

    key: str
    status: DiffStatus
    data_a: Row | None = None
    data_b: Row | None = None
    diff_columns: list[str] = []


class DiffSummary(BaseModel):
    added: int = 0
    removed: int = 0
    modified: int = 0
    unchanged: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.added + self.removed + self.modified + self.unchanged


class TableDiffResult(BaseModel):
    table_a: str
    table_b: str
    key_column: str
    common_columns: list[str]
    rows: list[DiffRow]
    summary: DiffSummary
    skipped_null_keys: dict[str, int] = {"a": 0, "b": 0}
    trace: dict[str, Any] = {}


class RecordDiffItem(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64")

    column: str
    val_a: Any = None
    val_b: Any = None


class ManualLink(BaseModel):
    id: str
    table: str
    key_col: str
    preview_col: str | None = None


class AmbiguousMatch(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64")

    row: Row
    matched_column: str


class AmbiguousOption(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64")

    column: str
    rows: list[Row]


# Request payloads


class CompareRequest(BaseModel):
    table_a: str
    table_b: str
    key_column: str | None = None
    limit: int | None = None
    status: DiffStatus | None = None
    god_mode: bool = False


class RecordCompareRequest(BaseModel):
    table: str
    key_column: str | None = None
    id_a: str
    id_b: str


class ResolveRequest(BaseModel):
    target_table: str
    value: Any
    column_hint: str | None = None


class LinksPayload(BaseModel):
    links: list[ManualLink]


class LinkNavigateRequest(BaseModel):
    column: str
    value: Any
    link_id: str | None = None


class PreferredColumnRequest(BaseModel):
    target_table: str
    column: str
