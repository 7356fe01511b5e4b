from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict

from reconcile.db import RowFetcher
from reconcile.errors import FetchError
from reconcile.mapping_store import MappingStore
from reconcile.models import ManualLink
from reconcile.schema_index import SchemaIndex
from reconcile.sql import select_where_text_equals

log = logging.getLogger(__name__)

AUTO_LINK_COLUMNS = ("grid", "mlid")
DEFAULT_DEBOUNCE_SECONDS = 0.4
DEFAULT_MAX_PREVIEWS = 3


def infer_link(column_path: str, schema: SchemaIndex) -> ManualLink | None:
    # "customers.grid" -> customers(grid) when customers is a known table
    parts = column_path.split(".")
    if len(parts) < 2 or parts[-1] not in AUTO_LINK_COLUMNS:
        return None
    table = schema.find_table(parts[-3], parts[-2]) if len(parts) >= 3 else None
    if table is None:
        table = schema.find_table(None, parts[-2])
    if table is None:
        return None
    return ManualLink(id=f"auto:{table.qualified_name}.{parts[-1]}", table=table.qualified_name, key_col=parts[-1])


def links_for_column(store: MappingStore, schema: SchemaIndex, column_path: str) -> list[ManualLink]:
    manual = store.get_links(column_path)
    if manual:
        return manual
    inferred = infer_link(column_path, schema)
    return [inferred] if inferred else []


class ClickAction(BaseModel):
    kind: Literal["resolve", "navigate", "select"]
    link: ManualLink | None = None
    links: list[ManualLink] = []


def click_action(links: list[ManualLink]) -> ClickAction:
    if not links:
        return ClickAction(kind="resolve")
    if len(links) == 1:
        return ClickAction(kind="navigate", link=links[0])
    return ClickAction(kind="select", links=links)


class PreviewEntry(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64")

    link_id: str
    table: str
    column: str
    value: Any = None
    found: bool = False
    error: str | None = None


async def preview_entry(fetcher: RowFetcher, conn: dict[str, Any], link: ManualLink, value: Any) -> PreviewEntry:
    entry = PreviewEntry(link_id=link.id, table=link.table, column=link.preview_col or "")
    sql, params = select_where_text_equals(link.table, [link.key_col], value, 1, fields=[link.preview_col])
    try:
        rows = await fetcher.execute(conn, sql, params)
    except FetchError as exc:
        entry.error = exc.message
        return entry
    if rows:
        entry.value = rows[0].get(link.preview_col)
        entry.found = True
    return entry


def previewable(links: list[ManualLink], max_previews: int) -> tuple[list[ManualLink], int]:
    with_preview = [l for l in links if l.preview_col]
    shown = with_preview[: max(0, max_previews)]
    return shown, len(with_preview) - len(shown)


async def collect_previews(
    fetcher: RowFetcher,
    conn: dict[str, Any],
    links: list[ManualLink],
    value: Any,
    max_previews: int = DEFAULT_MAX_PREVIEWS,
) -> tuple[list[PreviewEntry], int]:
    shown, overflow = previewable(links, max_previews)
    entries = await asyncio.gather(*(preview_entry(fetcher, conn, l, value) for l in shown))
    return list(entries), overflow


@dataclass
class PreviewState:
    generation: int = 0
    previews: dict[str, PreviewEntry] = field(default_factory=dict)
    expected: int = 0
    overflow: int = 0

    @property
    def pending(self) -> bool:
        return len(self.previews) < self.expected


class HoverPreviewController:
    """Debounced hover previews for one table cell view.

    Each hover opens a new generation. Leaving the cell (or hovering another)
    bumps the generation; results that come back for an older generation are
    dropped instead of being applied to ``state``.
    """

    def __init__(
        self,
        fetcher: RowFetcher,
        conn: dict[str, Any],
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        max_previews: int = DEFAULT_MAX_PREVIEWS,
        on_change: Callable[[PreviewState], None] | None = None,
    ):
        self.fetcher = fetcher
        self.conn = conn
        self.debounce = debounce
        self.max_previews = max_previews
        self.on_change = on_change
        self.state = PreviewState()
        self._generation = 0
        self._task: asyncio.Task | None = None
        self._fetch_started = False

    @property
    def generation(self) -> int:
        return self._generation

    def hover(self, value: Any, links: list[ManualLink]) -> asyncio.Task | None:
        self.leave()
        shown, overflow = previewable(links, self.max_previews)
        if not shown:
            return None
        gen = self._generation
        self.state = PreviewState(generation=gen, expected=len(shown), overflow=overflow)
        self._task = asyncio.get_running_loop().create_task(self._run(gen, value, shown))
        return self._task

    def leave(self) -> None:
        self._generation += 1
        if self._task is not None and not self._fetch_started:
            # still waiting out the debounce
            self._task.cancel()
        self._task = None
        self._fetch_started = False
        self.state = PreviewState(generation=self._generation)

    def close(self) -> None:
        task = self._task
        self.leave()
        if task is not None:
            task.cancel()

    async def _run(self, gen: int, value: Any, links: list[ManualLink]) -> None:
        await asyncio.sleep(self.debounce)
        if gen != self._generation:
            return
        self._fetch_started = True
        await asyncio.gather(*(self._fetch_one(gen, l, value) for l in links))

    async def _fetch_one(self, gen: int, link: ManualLink, value: Any) -> None:
        entry = await preview_entry(self.fetcher, self.conn, link, value)
        self._apply(gen, entry)

    def _apply(self, gen: int, entry: PreviewEntry) -> bool:
        if gen != self._generation:
            log.debug("dropping stale preview for %s (generation %d)", entry.link_id, gen)
            return False
        self.state.previews[entry.link_id] = entry
        if self.on_change is not None:
            self.on_change(self.state)
        return True
