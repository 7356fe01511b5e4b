import asyncio

import pytest

from reconcile.errors import FetchError
from reconcile.links import (
    HoverPreviewController,
    click_action,
    collect_previews,
    infer_link,
    links_for_column,
    previewable,
)
from reconcile.models import ManualLink

NAME_LINK = ManualLink(id="l1", table="sales.customers", key_col="grid", preview_col="name")
MLID_LINK = ManualLink(id="l2", table="sales.customers", key_col="grid", preview_col="mlid")
ARCHIVE_LINK = ManualLink(id="l3", table="archive.customers", key_col="grid", preview_col="name")
NO_PREVIEW_LINK = ManualLink(id="l4", table="sales.orders", key_col="customer")


class GatedFetcher:
    """Holds every query until ``release`` is called."""

    def __init__(self, rows=None, fail_tables=()):
        self.rows = rows if rows is not None else [{"name": "Ana", "mlid": "m1"}]
        self.fail_tables = fail_tables
        self.gate = asyncio.Event()
        self.calls = []

    def release(self):
        self.gate.set()

    async def execute(self, conn_info, sql, params=None):
        self.calls.append((sql, params))
        await self.gate.wait()
        if any(t in sql for t in self.fail_tables):
            raise FetchError("relation does not exist")
        return self.rows


def test_infer_link_for_grid_and_mlid(schema):
    link = infer_link("orders.customers.grid", schema)
    assert link == ManualLink(id="auto:sales.customers.grid", table="sales.customers", key_col="grid")
    assert infer_link("customers.mlid", schema).key_col == "mlid"


def test_infer_link_requires_exact_name_and_known_table(schema):
    assert infer_link("customers.customer_grid", schema) is None
    assert infer_link("customers.GRID", schema) is None
    assert infer_link("invoices.grid", schema) is None
    assert infer_link("grid", schema) is None


def test_infer_link_honors_schema_segment(schema):
    assert infer_link("archive.customers.grid", schema).table == "archive.customers"
    assert infer_link("sales.customers.mlid", schema).table == "sales.customers"
    # unknown schema segment falls back to a name-only lookup
    assert infer_link("report.customers.grid", schema).table == "sales.customers"


def test_manual_links_take_precedence(store, schema):
    assert links_for_column(store, schema, "report.customers.grid")[0].id.startswith("auto:")
    store.set_links("report.customers.grid", [ARCHIVE_LINK])
    assert links_for_column(store, schema, "report.customers.grid") == [ARCHIVE_LINK]
    assert links_for_column(store, schema, "report.orders.total") == []


def test_click_action():
    assert click_action([]).kind == "resolve"
    single = click_action([NAME_LINK])
    assert single.kind == "navigate"
    assert single.link == NAME_LINK
    many = click_action([NAME_LINK, ARCHIVE_LINK])
    assert many.kind == "select"
    assert many.links == [NAME_LINK, ARCHIVE_LINK]


def test_previewable_bounds_and_overflow():
    links = [NAME_LINK, NO_PREVIEW_LINK, MLID_LINK, ARCHIVE_LINK]
    shown, overflow = previewable(links, 2)
    assert shown == [NAME_LINK, MLID_LINK]
    assert overflow == 1
    assert previewable([NO_PREVIEW_LINK], 3) == ([], 0)


@pytest.mark.asyncio
async def test_collect_previews_isolates_failures(fetcher, conn):
    fetcher.run("INSERT INTO sales.customers VALUES (1, 'Ana', 'm1');")
    broken = ManualLink(id="bad", table="sales.nowhere", key_col="grid", preview_col="name")

    entries, overflow = await collect_previews(fetcher, conn, [NAME_LINK, broken, MLID_LINK], "1", max_previews=3)
    assert overflow == 0
    by_id = {e.link_id: e for e in entries}
    assert by_id["l1"].value == "Ana" and by_id["l1"].found
    assert by_id["l2"].value == "m1"
    assert by_id["bad"].error and not by_id["bad"].found

    sql, params = fetcher.calls[0]
    assert sql == 'SELECT "name" FROM "sales"."customers" WHERE CAST("grid" AS VARCHAR) = %s LIMIT 1'
    assert params == ("1",)


@pytest.mark.asyncio
async def test_missing_preview_row(fetcher, conn):
    entries, _ = await collect_previews(fetcher, conn, [NAME_LINK], "99")
    assert entries[0].found is False
    assert entries[0].value is None
    assert entries[0].error is None


@pytest.mark.asyncio
async def test_hover_applies_previews_after_debounce(fetcher, conn):
    fetcher.run("INSERT INTO sales.customers VALUES (1, 'Ana', 'm1');")
    changes = []
    ctl = HoverPreviewController(fetcher, conn, debounce=0, max_previews=1, on_change=changes.append)

    task = ctl.hover(1, [NAME_LINK, MLID_LINK])
    assert ctl.state.pending
    assert ctl.state.overflow == 1
    await task

    assert not ctl.state.pending
    assert ctl.state.previews["l1"].value == "Ana"
    assert len(changes) == 1
    assert len(fetcher.calls) == 1


@pytest.mark.asyncio
async def test_hover_without_previewable_links_does_nothing(fetcher, conn):
    ctl = HoverPreviewController(fetcher, conn, debounce=0)
    assert ctl.hover(1, [NO_PREVIEW_LINK]) is None
    assert ctl.state.previews == {}


@pytest.mark.asyncio
async def test_leaving_during_debounce_cancels_the_fetch(conn):
    f = GatedFetcher()
    ctl = HoverPreviewController(f, conn, debounce=10)

    task = ctl.hover(1, [NAME_LINK])
    await asyncio.sleep(0)
    ctl.leave()
    await asyncio.gather(task, return_exceptions=True)

    assert task.cancelled()
    assert f.calls == []
    assert ctl.state.previews == {}


@pytest.mark.asyncio
async def test_stale_result_is_never_applied(conn):
    f = GatedFetcher()
    changes = []
    ctl = HoverPreviewController(f, conn, debounce=0, on_change=changes.append)

    task = ctl.hover(1, [NAME_LINK])
    while not f.calls:
        await asyncio.sleep(0)

    # pointer leaves while the fetch is in flight
    ctl.leave()
    f.release()
    await task

    assert ctl.state.previews == {}
    assert changes == []


@pytest.mark.asyncio
async def test_rehover_discards_previous_generation(conn):
    f = GatedFetcher()
    ctl = HoverPreviewController(f, conn, debounce=0)

    first = ctl.hover(1, [NAME_LINK])
    while not f.calls:
        await asyncio.sleep(0)
    second = ctl.hover(2, [ARCHIVE_LINK])
    f.release()
    await asyncio.gather(first, second)

    assert list(ctl.state.previews) == ["l3"]
    assert ctl.state.generation == ctl.generation


@pytest.mark.asyncio
async def test_one_failing_link_does_not_block_the_others(conn):
    f = GatedFetcher(fail_tables=('"archive"',))
    ctl = HoverPreviewController(f, conn, debounce=0)

    task = ctl.hover(1, [NAME_LINK, ARCHIVE_LINK])
    f.release()
    await task

    assert ctl.state.previews["l1"].value == "Ana"
    assert ctl.state.previews["l3"].error == "relation does not exist"
    assert not ctl.state.pending


@pytest.mark.asyncio
async def test_close_cancels_in_flight_work(conn):
    f = GatedFetcher()
    ctl = HoverPreviewController(f, conn, debounce=0)

    task = ctl.hover(1, [NAME_LINK])
    while not f.calls:
        await asyncio.sleep(0)
    ctl.close()
    await asyncio.gather(task, return_exceptions=True)

    assert task.cancelled()
    assert ctl.state.previews == {}
