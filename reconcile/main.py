from __future__ import annotations

import io
import logging
from functools import lru_cache

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from reconcile.compare_service import compare_records, compare_tables, filter_by_status, write_diff_workbook
from reconcile.db import RowFetcher, VerticaRowFetcher
from reconcile.drilldown import DrillDownResolver, DrillDownState
from reconcile.errors import FetchError, InvalidTransitionError, RecordNotFoundError, UnknownTableError
from reconcile.links import click_action, collect_previews, infer_link, links_for_column
from reconcile.mapping_store import MappingStore, SqliteKeyValueStore
from reconcile.models import (
    CompareRequest,
    LinkNavigateRequest,
    LinksPayload,
    PreferredColumnRequest,
    RecordCompareRequest,
    ResolveRequest,
)
from reconcile.schema_index import SchemaIndex, load_schema_index
from reconcile.settings import Settings, settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

app = FastAPI(title="Data Reconcile")


# Dependencies


def get_settings() -> Settings:
    return settings


def get_conn(cfg: Settings = Depends(get_settings)) -> dict:
    return cfg.db.model_dump()


@lru_cache(maxsize=1)
def _default_fetcher() -> VerticaRowFetcher:
    return VerticaRowFetcher()


def get_fetcher() -> RowFetcher:
    return _default_fetcher()


_schema_cache: dict[str, SchemaIndex] = {}


async def get_schema(
    fetcher: RowFetcher = Depends(get_fetcher),
    conn: dict = Depends(get_conn),
) -> SchemaIndex:
    if "index" not in _schema_cache:
        _schema_cache["index"] = await load_schema_index(fetcher, conn)
    return _schema_cache["index"]


def get_store(cfg: Settings = Depends(get_settings)) -> MappingStore:
    return MappingStore(SqliteKeyValueStore(cfg.mapping_db))


def get_resolver(
    fetcher: RowFetcher = Depends(get_fetcher),
    conn: dict = Depends(get_conn),
    schema: SchemaIndex = Depends(get_schema),
    store: MappingStore = Depends(get_store),
    cfg: Settings = Depends(get_settings),
) -> DrillDownResolver:
    return DrillDownResolver(fetcher, conn, schema, store, limit=cfg.drilldown_limit)


# Error mapping


@app.exception_handler(FetchError)
async def _fetch_error(request: Request, exc: FetchError):
    return JSONResponse({"error": exc.message}, status_code=502)


@app.exception_handler(RecordNotFoundError)
async def _record_not_found(request: Request, exc: RecordNotFoundError):
    return JSONResponse({"error": str(exc)}, status_code=404)


@app.exception_handler(UnknownTableError)
async def _unknown_table(request: Request, exc: UnknownTableError):
    return JSONResponse({"error": str(exc)}, status_code=404)


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse({"error": str(exc)}, status_code=400)


@app.exception_handler(ValueError)
async def _bad_value(request: Request, exc: ValueError):
    return JSONResponse({"error": str(exc)}, status_code=400)


# Schema


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/schema/tables")
def schema_tables(schema: SchemaIndex = Depends(get_schema)):
    return {"tables": schema.table_names()}


@app.get("/introspect")
def introspect(table_a: str, table_b: str, schema: SchemaIndex = Depends(get_schema)):
    ta = schema.find_table(table_a)
    tb = schema.find_table(table_b)
    missing = [name for name, t in ((table_a, ta), (table_b, tb)) if t is None]
    if missing:
        raise UnknownTableError(f"Unknown table(s): {', '.join(missing)}")

    common = schema.common_columns(ta, tb)
    return {
        "table_a": ta.qualified_name,
        "table_b": tb.qualified_name,
        "columns_a": ta.column_names,
        "columns_b": tb.column_names,
        "common_columns": common,
        "suggested_key": SchemaIndex.suggest_diff_key(common),
    }


# Diff


async def _run_compare(req: CompareRequest, fetcher, conn, schema, cfg: Settings):
    return await compare_tables(
        fetcher,
        conn,
        schema,
        req.table_a,
        req.table_b,
        key_column=req.key_column,
        limit=req.limit or cfg.default_diff_limit,
        god_mode=req.god_mode or cfg.god_mode_default,
    )


@app.post("/compare")
async def compare_ui(
    req: CompareRequest,
    fetcher: RowFetcher = Depends(get_fetcher),
    conn: dict = Depends(get_conn),
    schema: SchemaIndex = Depends(get_schema),
    cfg: Settings = Depends(get_settings),
):
    result = await _run_compare(req, fetcher, conn, schema, cfg)
    payload = result.model_dump(mode="json")
    payload["rows"] = [r.model_dump(mode="json") for r in filter_by_status(result.rows, req.status)]
    return JSONResponse(payload)


@app.post("/compare/export")
async def compare_export(
    req: CompareRequest,
    fetcher: RowFetcher = Depends(get_fetcher),
    conn: dict = Depends(get_conn),
    schema: SchemaIndex = Depends(get_schema),
    cfg: Settings = Depends(get_settings),
):
    result = await _run_compare(req, fetcher, conn, schema, cfg)
    bio = io.BytesIO()
    write_diff_workbook(result).save(bio)
    bio.seek(0)
    return StreamingResponse(
        bio,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": "attachment; filename=diff_export.xlsx"},
    )


@app.post("/compare/records")
async def compare_records_ui(
    req: RecordCompareRequest,
    fetcher: RowFetcher = Depends(get_fetcher),
    conn: dict = Depends(get_conn),
    schema: SchemaIndex = Depends(get_schema),
):
    key_column = req.key_column
    if not key_column:
        table = schema.find_table(req.table)
        if table is None:
            raise UnknownTableError(f"Unknown table: {req.table}")
        key_column = SchemaIndex.suggest_record_key(table)
        if not key_column:
            raise ValueError(f"{req.table} has no columns")

    items = await compare_records(fetcher, conn, req.table, key_column, req.id_a, req.id_b)
    return {
        "table": req.table,
        "key_column": key_column,
        "equivalent": not items,
        "differences": [i.model_dump(mode="json") for i in items],
    }


# Drill-down


@app.post("/drilldown/resolve")
async def drilldown_resolve(req: ResolveRequest, resolver: DrillDownResolver = Depends(get_resolver)):
    state = await resolver.resolve(req.target_table, req.value, req.column_hint)
    return JSONResponse(state.model_dump(mode="json"))


@app.post("/drilldown/choose")
def drilldown_choose(
    state: DrillDownState,
    column: str = Query(...),
    resolver: DrillDownResolver = Depends(get_resolver),
):
    return JSONResponse(resolver.choose(state, column).model_dump(mode="json"))


@app.post("/drilldown/map")
async def drilldown_map(
    state: DrillDownState,
    column: str = Query(...),
    resolver: DrillDownResolver = Depends(get_resolver),
):
    new_state = await resolver.map_column(state, column)
    return JSONResponse(new_state.model_dump(mode="json"))


@app.post("/drilldown/retry")
def drilldown_retry(state: DrillDownState, resolver: DrillDownResolver = Depends(get_resolver)):
    return JSONResponse(resolver.retry(state).model_dump(mode="json"))


# Manual links


@app.get("/links")
def get_links(
    column: str,
    store: MappingStore = Depends(get_store),
    schema: SchemaIndex = Depends(get_schema),
):
    manual = store.get_links(column)
    if manual:
        links = manual
    else:
        inferred = infer_link(column, schema)
        links = [inferred] if inferred else []
    return {
        "column": column,
        "inferred": not manual and bool(links),
        "links": [l.model_dump() for l in links],
    }


@app.put("/links")
def put_links(column: str, payload: LinksPayload, store: MappingStore = Depends(get_store)):
    store.set_links(column, payload.links)
    return {"column": column, "links": [l.model_dump() for l in payload.links]}


@app.get("/links/preview")
async def links_preview(
    column: str,
    value: str,
    fetcher: RowFetcher = Depends(get_fetcher),
    conn: dict = Depends(get_conn),
    store: MappingStore = Depends(get_store),
    schema: SchemaIndex = Depends(get_schema),
    cfg: Settings = Depends(get_settings),
):
    links = links_for_column(store, schema, column)
    entries, overflow = await collect_previews(fetcher, conn, links, value, cfg.max_previews)
    return {
        "column": column,
        "previews": [e.model_dump(mode="json") for e in entries],
        "overflow": overflow,
        "debounce_seconds": cfg.preview_debounce_seconds,
    }


@app.post("/links/navigate")
async def links_navigate(
    req: LinkNavigateRequest,
    store: MappingStore = Depends(get_store),
    schema: SchemaIndex = Depends(get_schema),
    resolver: DrillDownResolver = Depends(get_resolver),
):
    links = links_for_column(store, schema, req.column)
    if req.link_id:
        link = next((l for l in links if l.id == req.link_id), None)
        if link is None:
            raise ValueError(f"No link {req.link_id} on {req.column}")
        state = await resolver.follow_link(link, req.value)
        return {"action": "navigate", "state": state.model_dump(mode="json")}

    action = click_action(links)
    if action.kind == "navigate":
        state = await resolver.follow_link(action.link, req.value)
        return {"action": "navigate", "state": state.model_dump(mode="json")}
    return {"action": action.kind, "links": [l.model_dump() for l in action.links]}


# Preferred columns


@app.get("/mappings/preferred")
def preferred_columns(store: MappingStore = Depends(get_store)):
    return {"preferred": store.preferred_columns()}


@app.put("/mappings/preferred")
def set_preferred_column(req: PreferredColumnRequest, store: MappingStore = Depends(get_store)):
    store.set_preferred_column(req.target_table, req.column)
    return {"target_table": req.target_table, "column": req.column}
