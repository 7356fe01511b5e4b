import os
import sqlite3
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from reconcile.errors import FetchError
from reconcile.mapping_store import MappingStore, MemoryKeyValueStore
from reconcile.models import Column, Table
from reconcile.schema_index import SchemaIndex


class SqliteRowFetcher:
    """Runs generated SQL against in-memory sqlite; each schema is an attached database."""

    def __init__(self, schemas=("sales", "archive")):
        self.db = sqlite3.connect(":memory:", check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        for s in schemas:
            self.db.execute(f"ATTACH DATABASE ':memory:' AS {s}")
        self.calls = []

    def run(self, script):
        self.db.executescript(script)

    async def execute(self, conn_info, sql, params=None):
        self.calls.append((sql, params))
        try:
            cur = self.db.execute(sql.replace("%s", "?"), params or ())
        except sqlite3.Error as exc:
            raise FetchError(str(exc)) from exc
        return [dict(r) for r in cur.fetchall()]


class FailingFetcher:
    def __init__(self, message="connection refused"):
        self.message = message
        self.calls = []

    async def execute(self, conn_info, sql, params=None):
        self.calls.append((sql, params))
        raise FetchError(self.message)


ORDERS = Table(
    schema="sales",
    name="orders",
    columns=(
        Column(name="grid", type="int", is_primary_key=True),
        Column(name="codigo", type="varchar"),
        Column(name="external_ref", type="varchar"),
        Column(name="customer", type="varchar"),
    ),
)

CUSTOMERS = Table(
    schema="sales",
    name="customers",
    columns=(
        Column(name="grid", type="int", is_primary_key=True),
        Column(name="name", type="varchar"),
        Column(name="mlid", type="varchar"),
    ),
)

ARCHIVED_CUSTOMERS = Table(
    schema="archive",
    name="customers",
    columns=(
        Column(name="grid", type="int", is_primary_key=True),
        Column(name="name", type="varchar"),
        Column(name="mlid", type="varchar"),
    ),
)


@pytest.fixture
def fetcher():
    f = SqliteRowFetcher()
    f.run(
        """
        CREATE TABLE sales.orders (grid INTEGER PRIMARY KEY, codigo TEXT, external_ref TEXT, customer TEXT);
        CREATE TABLE sales.customers (grid INTEGER PRIMARY KEY, name TEXT, mlid TEXT);
        CREATE TABLE archive.customers (grid INTEGER PRIMARY KEY, name TEXT, mlid TEXT);
        """
    )
    yield f
    f.db.close()


@pytest.fixture
def schema():
    return SchemaIndex([ORDERS, CUSTOMERS, ARCHIVED_CUSTOMERS])


@pytest.fixture
def store():
    return MappingStore(MemoryKeyValueStore())


@pytest.fixture
def conn():
    return {"host": "test"}
