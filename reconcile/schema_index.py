from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from reconcile.db import RowFetcher
from reconcile.models import Column, Table

log = logging.getLogger(__name__)

IDENTIFIER_NAME = re.compile(r"id|cod|grid", re.IGNORECASE)

CATALOG_COLUMNS_SQL = """
    SELECT table_schema, table_name, column_name, data_type
    FROM v_catalog.columns
    ORDER BY table_schema, table_name, ordinal_position
"""

CATALOG_PRIMARY_KEYS_SQL = """
    SELECT table_schema, table_name, column_name
    FROM v_catalog.primary_keys
"""

CATALOG_FOREIGN_KEYS_SQL = """
    SELECT table_schema, table_name, column_name,
           reference_table_schema, reference_table_name, reference_column_name
    FROM v_catalog.foreign_keys
"""


def _split_name(name: str) -> tuple[str | None, str]:
    if "." in name:
        schema, table = name.rsplit(".", 1)
        return schema, table
    return None, name


class SchemaIndex:
    """Read-only, case-insensitive view of tables and their columns."""

    def __init__(self, tables: Iterable[Table] = ()):
        self._tables: dict[tuple[str, str], Table] = {}
        for t in tables:
            self._tables[(t.schema_name.lower(), t.name.lower())] = t

    def __len__(self) -> int:
        return len(self._tables)

    def tables(self) -> list[Table]:
        return list(self._tables.values())

    def table_names(self) -> list[str]:
        return sorted(t.qualified_name for t in self._tables.values())

    def find_table(self, schema: str | None, name: str | None = None) -> Table | None:
        # find_table("sales", "orders"), find_table(None, "orders") or find_table("sales.orders")
        if name is None:
            schema, name = _split_name(schema or "")
        lname = name.lower()
        if schema:
            return self._tables.get((schema.lower(), lname))
        return next((t for (_, tn), t in self._tables.items() if tn == lname), None)

    def has_table_named(self, name: str) -> bool:
        lname = name.lower()
        return any(tn == lname for (_, tn) in self._tables)

    def identifier_candidates(self, table: Table) -> list[str]:
        return [
            c.name
            for c in table.columns
            if c.is_primary_key or c.is_foreign_key or IDENTIFIER_NAME.search(c.name)
        ]

    def common_columns(self, a: Table, b: Table) -> list[str]:
        b_names = set(b.column_names)
        return [c for c in a.column_names if c in b_names]

    @staticmethod
    def suggest_diff_key(common: list[str]) -> str | None:
        if "grid" in common:
            return "grid"
        if "id" in common:
            return "id"
        return common[0] if common else None

    @staticmethod
    def suggest_record_key(table: Table) -> str | None:
        pk = next((c.name for c in table.columns if c.is_primary_key), None)
        if pk:
            return pk
        names = table.column_names
        for preferred in ("grid", "id"):
            if preferred in names:
                return preferred
        return names[0] if names else None


async def load_schema_index(fetcher: RowFetcher, conn_info: dict[str, Any]) -> SchemaIndex:
    col_rows = await fetcher.execute(conn_info, CATALOG_COLUMNS_SQL)
    pk_rows = await fetcher.execute(conn_info, CATALOG_PRIMARY_KEYS_SQL)
    fk_rows = await fetcher.execute(conn_info, CATALOG_FOREIGN_KEYS_SQL)

    pks = {(r["table_schema"], r["table_name"], r["column_name"]) for r in pk_rows}
    fks = {
        (r["table_schema"], r["table_name"], r["column_name"]): (
            f"{r['reference_table_schema']}.{r['reference_table_name']}.{r['reference_column_name']}"
        )
        for r in fk_rows
    }

    columns: dict[tuple[str, str], list[Column]] = {}
    for r in col_rows:
        ident = (r["table_schema"], r["table_name"], r["column_name"])
        columns.setdefault((r["table_schema"], r["table_name"]), []).append(
            Column(
                name=r["column_name"],
                type=str(r.get("data_type") or ""),
                is_primary_key=ident in pks,
                is_foreign_key=ident in fks,
                references=fks.get(ident),
            )
        )

    tables = [Table(schema=s, name=n, columns=tuple(cols)) for (s, n), cols in columns.items()]
    log.info("schema index loaded: %d tables", len(tables))
    return SchemaIndex(tables)
