from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

import vertica_python

from reconcile.errors import FetchError
from reconcile.models import Row

log = logging.getLogger(__name__)


def run_query(conn_info: dict[str, Any], sql: str, params: tuple | None = None) -> tuple[list[str], list[tuple], float]:
    t0 = time.time()
    with vertica_python.connect(**conn_info) as conn:
        cur = conn.cursor()
        cur.execute(sql, params or ())
        rows = cur.fetchall()
        cols = [d[0] for d in cur.description]
    elapsed = time.time() - t0
    return cols, rows, elapsed


def rows_to_dicts(cols: list[str], rows: list[tuple]) -> list[Row]:
    return [dict(zip(cols, r)) for r in rows]


class RowFetcher(Protocol):
    async def execute(self, conn_info: dict[str, Any], sql: str, params: tuple | None = None) -> list[Row]:
        ...


class VerticaRowFetcher:
    """Runs queries with vertica_python in a worker thread."""

    async def execute(self, conn_info: dict[str, Any], sql: str, params: tuple | None = None) -> list[Row]:
        try:
            cols, rows, sec = await asyncio.to_thread(run_query, conn_info, sql, params)
        except vertica_python.Error as exc:
            log.warning("query failed: %s", exc)
            raise FetchError(str(exc)) from exc
        except OSError as exc:
            log.warning("connection failed: %s", exc)
            raise FetchError(f"Could not reach database: {exc}") from exc
        log.debug("query returned %d rows in %.3fs", len(rows), sec)
        return rows_to_dicts(cols, rows)
