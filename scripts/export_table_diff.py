"""Diff two tables and write the result to an XLSX workbook.

Edit the tables below, run the script, get the workbook in /output.

Usage:
  python3 scripts/export_table_diff.py
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from reconcile.compare_service import compare_tables, export_diff_workbook
from reconcile.db import VerticaRowFetcher
from reconcile.schema_index import load_schema_index
from reconcile.settings import settings

# --------------------
# EDIT THESE
# --------------------
TABLE_A = "public.orders"
TABLE_B = "staging.orders"

# None picks grid, then id, then the first shared column.
KEY_COLUMN = None

LIMIT = settings.default_diff_limit
# --------------------


def _project_root_from_script() -> Path:
    """Find repo root by walking up to the folder containing pyproject.toml."""
    here = Path(__file__).resolve()
    for p in [here.parent, *here.parents]:
        if (p / "pyproject.toml").exists():
            return p
    # Fallback: expected layout scripts/<this_file>
    return here.parent.parent


async def main() -> None:
    conn = settings.db.model_dump()
    fetcher = VerticaRowFetcher()
    schema = await load_schema_index(fetcher, conn)

    result = await compare_tables(fetcher, conn, schema, TABLE_A, TABLE_B, key_column=KEY_COLUMN, limit=LIMIT)
    out_path = export_diff_workbook(result, _project_root_from_script() / "output")

    s = result.summary
    print(f"Key column: {result.key_column}")
    print(f"Added: {s.added}  Removed: {s.removed}  Modified: {s.modified}  Unchanged: {s.unchanged}")
    print(f"Output: {out_path}")


if __name__ == "__main__":
    asyncio.run(main())
