from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from reconcile.models import ManualLink

log = logging.getLogger(__name__)

PREFERRED_COLUMNS_KEY = "drilldown-preferred-columns"
MANUAL_LINKS_KEY = "drilldown-manual-links"


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...


class MemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value


class SqliteKeyValueStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _conn(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        c = sqlite3.connect(self.path)
        c.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        return c

    def get(self, key: str) -> str | None:
        c = self._conn()
        try:
            r = c.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        finally:
            c.close()
        return r[0] if r else None

    def set(self, key: str, value: str) -> None:
        c = self._conn()
        try:
            with c:
                c.execute(
                    "INSERT INTO kv(key, value) VALUES(?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=CURRENT_TIMESTAMP",
                    (key, value),
                )
        finally:
            c.close()


def _table_key(target_table: str) -> str:
    return target_table.strip().lower()


class MappingStore:
    """Persisted drill-down decisions.

    Two independent namespaces, each stored as one JSON blob:

    * target table -> preferred resolution column
    * source column path ("schema.table.column") -> list of manual links

    Every write replaces the whole blob.
    """

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def _load(self, key: str) -> dict:
        raw = self.kv.get(key)
        if not raw:
            return {}
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("ignoring unreadable mapping blob %s", key)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _save(self, key: str, payload: dict) -> None:
        self.kv.set(key, json.dumps(payload, sort_keys=True))

    # preferred columns

    def get(self, target_table: str) -> str | None:
        col = self._load(PREFERRED_COLUMNS_KEY).get(_table_key(target_table))
        return col if isinstance(col, str) and col else None

    def preferred_columns(self) -> dict[str, str]:
        return {k: v for k, v in self._load(PREFERRED_COLUMNS_KEY).items() if isinstance(v, str)}

    def set_preferred_column(self, target_table: str, column: str) -> None:
        payload = self._load(PREFERRED_COLUMNS_KEY)
        payload[_table_key(target_table)] = column
        self._save(PREFERRED_COLUMNS_KEY, payload)
        log.info("preferred column for %s set to %s", target_table, column)

    # manual links

    def get_links(self, source_column_path: str) -> list[ManualLink]:
        raw_links = self._load(MANUAL_LINKS_KEY).get(source_column_path, [])
        out: list[ManualLink] = []
        for item in raw_links if isinstance(raw_links, list) else []:
            if isinstance(item, dict):
                try:
                    out.append(ManualLink(**item))
                except ValidationError:
                    continue
        return out

    def all_links(self) -> dict[str, list[ManualLink]]:
        return {path: self.get_links(path) for path in self._load(MANUAL_LINKS_KEY)}

    def set_links(self, source_column_path: str, links: list[ManualLink]) -> None:
        payload = self._load(MANUAL_LINKS_KEY)
        payload[source_column_path] = [l.model_dump() for l in links]
        self._save(MANUAL_LINKS_KEY, payload)
        log.info("%d manual link(s) saved for %s", len(links), source_column_path)
