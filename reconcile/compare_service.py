from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from openpyxl import Workbook

from reconcile.db import RowFetcher
from reconcile.errors import RecordNotFoundError
from reconcile.models import DiffRow, DiffStatus, DiffSummary, RecordDiffItem, Row, TableDiffResult
from reconcile.schema_index import SchemaIndex
from reconcile.sql import render_sql, select_all, select_where_text_equals
from reconcile.values import display_string, values_equal

log = logging.getLogger(__name__)


def _unique_keep_order(values: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def _to_index(rows: list[Row], key_column: str) -> tuple[dict[str, Row], int]:
    out: dict[str, Row] = {}
    skipped = 0
    for r in rows:
        k = r.get(key_column)
        if k is None:
            skipped += 1
            continue
        # If duplicate keys exist, keep the last seen record.
        out[display_string(k)] = r
    return out, skipped


def diff_rows(
    rows_a: list[Row],
    rows_b: list[Row],
    key_column: str,
    common_columns: list[str],
) -> tuple[list[DiffRow], dict[str, int]]:
    """Join two row-sets on ``key_column`` and classify every key.

    Returns the diff rows (A's keys in A's order, then B-only keys in B's
    order) and the number of rows skipped on each side for having no key.
    """
    a_ix, a_skipped = _to_index(rows_a, key_column)
    b_ix, b_skipped = _to_index(rows_b, key_column)
    compare_cols = [c for c in common_columns if c != key_column]

    out: list[DiffRow] = []
    for key in _unique_keep_order([*a_ix, *b_ix]):
        row_a = a_ix.get(key)
        row_b = b_ix.get(key)
        if row_b is None:
            out.append(DiffRow(key=key, status=DiffStatus.REMOVED, data_a=row_a))
        elif row_a is None:
            out.append(DiffRow(key=key, status=DiffStatus.ADDED, data_b=row_b))
        else:
            diffs = [c for c in compare_cols if not values_equal(row_a.get(c), row_b.get(c))]
            status = DiffStatus.MODIFIED if diffs else DiffStatus.UNCHANGED
            out.append(DiffRow(key=key, status=status, data_a=row_a, data_b=row_b, diff_columns=diffs))

    return out, {"a": a_skipped, "b": b_skipped}


def summarize(rows: list[DiffRow]) -> DiffSummary:
    counts = {s.value: 0 for s in DiffStatus}
    for r in rows:
        counts[r.status.value] += 1
    return DiffSummary(**counts)


def filter_by_status(rows: list[DiffRow], status: DiffStatus | None) -> list[DiffRow]:
    if status is None:
        return rows
    return [r for r in rows if r.status == status]


def _columns_of(rows: list[Row]) -> list[str]:
    return _unique_keep_order(c for r in rows for c in r)


async def compare_tables(
    fetcher: RowFetcher,
    conn: dict,
    schema: SchemaIndex,
    table_a: str,
    table_b: str,
    key_column: str | None = None,
    limit: int = 500,
    god_mode: bool = False,
) -> TableDiffResult:
    tobj_a = schema.find_table(table_a)
    tobj_b = schema.find_table(table_b)

    sql_a, params_a = select_all(table_a, limit)
    sql_b, params_b = select_all(table_b, limit)

    # Either failure propagates as a single FetchError; no partial result.
    # The sibling query is not cancelled: its worker thread runs to completion
    # and the rows are dropped.
    data_a, data_b = await asyncio.gather(
        fetcher.execute(conn, sql_a, params_a),
        fetcher.execute(conn, sql_b, params_b),
    )

    if tobj_a and tobj_b:
        common = schema.common_columns(tobj_a, tobj_b)
    else:
        b_cols = set(_columns_of(data_b))
        common = [c for c in _columns_of(data_a) if c in b_cols]

    if not key_column:
        key_column = SchemaIndex.suggest_diff_key(common)
        if not key_column:
            raise ValueError(f"{table_a} and {table_b} share no column to use as key")
    elif key_column not in common:
        raise ValueError(f"{key_column} is not a column shared by {table_a} and {table_b}")

    rows, skipped = diff_rows(data_a, data_b, key_column, common)
    summary = summarize(rows)
    log.info(
        "compared %s vs %s on %s: +%d -%d ~%d =%d",
        table_a, table_b, key_column,
        summary.added, summary.removed, summary.modified, summary.unchanged,
    )

    trace = {
        "sql_a": render_sql(sql_a, params_a) if god_mode else "hidden",
        "sql_b": render_sql(sql_b, params_b) if god_mode else "hidden",
        "rows_a": len(data_a),
        "rows_b": len(data_b),
        "limit": int(limit),
    }

    return TableDiffResult(
        table_a=table_a,
        table_b=table_b,
        key_column=key_column,
        common_columns=common,
        rows=rows,
        summary=summary,
        skipped_null_keys=skipped,
        trace=trace,
    )


def record_diff(row_a: Row, row_b: Row) -> list[RecordDiffItem]:
    out: list[RecordDiffItem] = []
    for col in _unique_keep_order([*row_a, *row_b]):
        va = row_a.get(col)
        vb = row_b.get(col)
        if not values_equal(va, vb):
            out.append(RecordDiffItem(column=col, val_a=va, val_b=vb))
    return out


async def compare_records(
    fetcher: RowFetcher,
    conn: dict,
    table: str,
    key_column: str,
    id_a: Any,
    id_b: Any,
) -> list[RecordDiffItem]:
    sql_a, params_a = select_where_text_equals(table, [key_column], id_a, 1)
    sql_b, params_b = select_where_text_equals(table, [key_column], id_b, 1)
    # a failed lookup aborts the comparison; the other one is left to finish
    found_a, found_b = await asyncio.gather(
        fetcher.execute(conn, sql_a, params_a),
        fetcher.execute(conn, sql_b, params_b),
    )

    missing = [display_string(i) for i, found in ((id_a, found_a), (id_b, found_b)) if not found]
    if missing:
        raise RecordNotFoundError(
            f"Record(s) not found in {table} where {key_column} = " + ", ".join(f"'{m}'" for m in missing)
        )

    return record_diff(found_a[0], found_b[0])


# Workbook export


def _sheet_name(name: str) -> str:
    safe = name.replace("/", "_").replace("\\", "_").replace(".", "_")
    return safe[:31] if len(safe) > 31 else safe


def _safe_table_label(table_name: str) -> str:
    # keep only table part (after schema), remove periods/slashes/backslashes
    base = table_name.split(".")[-1]
    return base.replace("/", "_").replace("\\", "_").replace(".", "_")


def _excel_safe(v: Any):
    if isinstance(v, datetime) and v.tzinfo is not None:
        # openpyxl rejects tz-aware datetimes
        return v.isoformat()
    if isinstance(v, (int, float, str, datetime)) or v is None:
        return v
    return display_string(v)


def _write_table(ws, rows: list[dict[str, Any]], headers: list[str]):
    ws.append(headers)
    for row in rows:
        ws.append([_excel_safe(row.get(h)) for h in headers])


def export_diff_workbook(result: TableDiffResult, output_dir: str | Path = "output") -> Path:
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    out_path = out_dir / f"diff_{_safe_table_label(result.table_a)}_vs_{_safe_table_label(result.table_b)}_{ts}.xlsx"
    write_diff_workbook(result).save(out_path)
    return out_path


def write_diff_workbook(result: TableDiffResult) -> Workbook:
    s = result.summary
    cols = result.common_columns or [result.key_column]
    by_status = {status: filter_by_status(result.rows, status) for status in DiffStatus}

    wb = Workbook()
    ws_summary = wb.active
    ws_summary.title = _sheet_name("summary")
    ws_summary.append(["metric", "value"])
    for metric, value in (
        ("table a", result.table_a),
        ("table b", result.table_b),
        ("key column", result.key_column),
        ("added", s.added),
        ("removed", s.removed),
        ("modified", s.modified),
        ("unchanged", s.unchanged),
        ("skipped null keys (a)", result.skipped_null_keys.get("a", 0)),
        ("skipped null keys (b)", result.skipped_null_keys.get("b", 0)),
    ):
        ws_summary.append([metric, value])

    ws_removed = wb.create_sheet(_sheet_name(f"only in {result.table_a}"))
    _write_table(ws_removed, [r.data_a or {} for r in by_status[DiffStatus.REMOVED]], cols)

    ws_added = wb.create_sheet(_sheet_name(f"only in {result.table_b}"))
    _write_table(ws_added, [r.data_b or {} for r in by_status[DiffStatus.ADDED]], cols)

    ws_modified = wb.create_sheet(_sheet_name("field differences"))
    diff_out = [
        {
            "key": r.key,
            "column": c,
            "value_a": (r.data_a or {}).get(c),
            "value_b": (r.data_b or {}).get(c),
        }
        for r in by_status[DiffStatus.MODIFIED]
        for c in r.diff_columns
    ]
    _write_table(ws_modified, diff_out, ["key", "column", "value_a", "value_b"])

    ws_unchanged = wb.create_sheet(_sheet_name("unchanged keys"))
    _write_table(ws_unchanged, [{"key": r.key} for r in by_status[DiffStatus.UNCHANGED]], ["key"])

    return wb
