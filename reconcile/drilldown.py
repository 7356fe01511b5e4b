"""Drill-down resolution: which record(s) does a clicked value identify?

The resolution flow is an explicit state machine. :func:`transition` is pure:
it takes the current :class:`DrillDownState` and an event describing what a
lookup returned (or what the user picked) and produces the next state. All
I/O lives in :class:`DrillDownResolver`, which runs the lookups, feeds the
results through :func:`transition` and persists the preferred column after a
successful manual mapping.

States::

    resolving ──(one matched column)──────────► found
        │      ──(several matched columns)────► ambiguous ──(choice)──► found
        │      ──(no rows)────────────────────► needs_mapping ──(rows)──► found (+ persisted)
        │                                            │
        └──(fetch error)──► failed ◄──(no rows)──────┘
                              │
                              └──(retry)──► needs_mapping
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict

from reconcile.db import RowFetcher
from reconcile.errors import FetchError, InvalidTransitionError, manual_match_not_found
from reconcile.mapping_store import MappingStore
from reconcile.models import AmbiguousMatch, AmbiguousOption, ManualLink, Row, Table
from reconcile.schema_index import SchemaIndex
from reconcile.sql import select_where_text_equals
from reconcile.values import display_string

log = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    RESOLVING = "resolving"
    FOUND = "found"
    AMBIGUOUS = "ambiguous"
    NEEDS_MAPPING = "needs_mapping"
    FAILED = "failed"


class DrillDownState(BaseModel):
    model_config = ConfigDict(ser_json_bytes="base64")

    status: ResolutionStatus = ResolutionStatus.RESOLVING
    target_table: str
    value: Any = None
    column_hint: str | None = None

    # found
    active_column: str | None = None
    rows: list[Row] = []
    via: str | None = None  # preferred | candidates | choice | manual | link

    # resolving: preferred column already tried without result
    tried_preferred: str | None = None

    # ambiguous
    matches: list[AmbiguousMatch] = []
    options: list[AmbiguousOption] = []

    # needs_mapping / failed
    columns: list[str] = []
    attempted_column: str | None = None
    error: str | None = None


# Events


@dataclass(frozen=True)
class PreferredLookupDone:
    column: str
    rows: list[Row]


@dataclass(frozen=True)
class CandidateLookupDone:
    candidates: list[str]
    rows: list[Row]
    columns: list[str]


@dataclass(frozen=True)
class LinkLookupDone:
    column: str
    rows: list[Row]


@dataclass(frozen=True)
class LookupFailed:
    message: str


@dataclass(frozen=True)
class OptionChosen:
    column: str


@dataclass(frozen=True)
class ManualLookupDone:
    column: str
    rows: list[Row]


@dataclass(frozen=True)
class RetryRequested:
    columns: list[str]


Event = Union[
    PreferredLookupDone,
    CandidateLookupDone,
    LinkLookupDone,
    LookupFailed,
    OptionChosen,
    ManualLookupDone,
    RetryRequested,
]


def matched_column(row: Row, candidates: list[str], value: Any) -> str:
    """The first candidate column through which ``row`` matched ``value``."""
    wanted = display_string(value)
    for col in candidates:
        if display_string(row.get(col)) == wanted:
            return col
    # The database compared a textual form we do not reproduce exactly
    # (e.g. boolean or numeric formatting); attribute the row to the first
    # candidate that holds a value.
    return next((c for c in candidates if row.get(c) is not None), candidates[0])


def group_matches(rows: list[Row], candidates: list[str], value: Any) -> tuple[list[AmbiguousMatch], list[AmbiguousOption]]:
    matches = [AmbiguousMatch(row=r, matched_column=matched_column(r, candidates, value)) for r in rows]
    options = [
        AmbiguousOption(column=col, rows=[m.row for m in matches if m.matched_column == col])
        for col in candidates
        if any(m.matched_column == col for m in matches)
    ]
    return matches, options


def _found(state: DrillDownState, column: str, rows: list[Row], via: str) -> DrillDownState:
    return state.model_copy(
        update={
            "status": ResolutionStatus.FOUND,
            "active_column": column,
            "rows": rows,
            "via": via,
            "matches": [],
            "options": [],
            "error": None,
        }
    )


def _failed(state: DrillDownState, message: str, attempted_column: str | None = None) -> DrillDownState:
    return state.model_copy(
        update={
            "status": ResolutionStatus.FAILED,
            "error": message,
            "attempted_column": attempted_column,
            "rows": [],
        }
    )


def _invalid(state: DrillDownState, event: Event) -> InvalidTransitionError:
    return InvalidTransitionError(f"{type(event).__name__} is not valid while {state.status.value}")


def transition(state: DrillDownState, event: Event) -> DrillDownState:
    s = state.status

    if isinstance(event, LookupFailed):
        if s in (ResolutionStatus.RESOLVING, ResolutionStatus.NEEDS_MAPPING):
            return _failed(state, event.message, state.attempted_column)
        raise _invalid(state, event)

    if s == ResolutionStatus.RESOLVING:
        if isinstance(event, PreferredLookupDone):
            if event.rows:
                return _found(state, event.column, event.rows, "preferred")
            return state.model_copy(update={"tried_preferred": event.column})

        if isinstance(event, CandidateLookupDone):
            if not event.rows:
                return state.model_copy(
                    update={"status": ResolutionStatus.NEEDS_MAPPING, "columns": event.columns}
                )
            matches, options = group_matches(event.rows, event.candidates, state.value)
            if len(options) == 1:
                return _found(state, options[0].column, event.rows, "candidates")
            return state.model_copy(
                update={
                    "status": ResolutionStatus.AMBIGUOUS,
                    "matches": matches,
                    "options": options,
                    "columns": event.columns,
                }
            )

        if isinstance(event, LinkLookupDone):
            return _found(state, event.column, event.rows, "link")

    elif s == ResolutionStatus.AMBIGUOUS:
        if isinstance(event, OptionChosen):
            option = next((o for o in state.options if o.column == event.column), None)
            if option is None:
                raise InvalidTransitionError(f"{event.column} is not one of the offered options")
            return _found(state, option.column, option.rows, "choice")

    elif s == ResolutionStatus.NEEDS_MAPPING:
        if isinstance(event, ManualLookupDone):
            if event.rows:
                return _found(state, event.column, event.rows, "manual")
            return _failed(
                state,
                manual_match_not_found(state.target_table, event.column, display_string(state.value)),
                event.column,
            )

    elif s == ResolutionStatus.FAILED:
        if isinstance(event, RetryRequested):
            return state.model_copy(
                update={
                    "status": ResolutionStatus.NEEDS_MAPPING,
                    "columns": event.columns or state.columns,
                    "error": None,
                }
            )

    raise _invalid(state, event)


class DrillDownResolver:
    def __init__(
        self,
        fetcher: RowFetcher,
        conn: dict[str, Any],
        schema: SchemaIndex,
        store: MappingStore,
        limit: int = 50,
    ):
        self.fetcher = fetcher
        self.conn = conn
        self.schema = schema
        self.store = store
        self.limit = limit

    def _table(self, target_table: str) -> Table | None:
        return self.schema.find_table(target_table)

    def _all_columns(self, target_table: str) -> list[str]:
        table = self._table(target_table)
        return table.column_names if table else []

    def candidates(self, target_table: str, column_hint: str | None = None) -> list[str]:
        table = self._table(target_table)
        if table is None:
            return [column_hint] if column_hint else []
        out = self.schema.identifier_candidates(table)
        hinted = table.column(column_hint) if column_hint else None
        if hinted is not None:
            out = [hinted.name] + [c for c in out if c != hinted.name]
        return out

    async def _lookup(self, target_table: str, columns: list[str], value: Any) -> list[Row]:
        sql, params = select_where_text_equals(target_table, columns, value, self.limit)
        return await self.fetcher.execute(self.conn, sql, params)

    async def resolve(self, target_table: str, value: Any, column_hint: str | None = None) -> DrillDownState:
        state = DrillDownState(target_table=target_table, value=value, column_hint=column_hint)
        table = self._table(target_table)
        columns = self._all_columns(target_table)

        preferred = self.store.get(target_table)
        if preferred and (table is None or table.column(preferred) is not None):
            try:
                rows = await self._lookup(target_table, [preferred], value)
            except FetchError as exc:
                return transition(state, LookupFailed(exc.message))
            state = transition(state, PreferredLookupDone(preferred, rows))
            if state.status != ResolutionStatus.RESOLVING:
                return state
            log.info("preferred column %s.%s had no match, widening search", target_table, preferred)

        candidates = self.candidates(target_table, column_hint)
        if not candidates:
            return transition(state, CandidateLookupDone([], [], columns))
        try:
            rows = await self._lookup(target_table, candidates, value)
        except FetchError as exc:
            return transition(state, LookupFailed(exc.message))

        state = transition(state, CandidateLookupDone(candidates, rows, columns))
        log.info("drill-down into %s resolved to %s", target_table, state.status.value)
        return state

    def choose(self, state: DrillDownState, column: str) -> DrillDownState:
        # Ambiguity is specific to this value; nothing is persisted.
        return transition(state, OptionChosen(column))

    async def map_column(self, state: DrillDownState, column: str) -> DrillDownState:
        if state.status != ResolutionStatus.NEEDS_MAPPING:
            raise InvalidTransitionError(f"Cannot map a column while {state.status.value}")
        if state.columns and column not in state.columns:
            raise InvalidTransitionError(f"{column} is not a column of {state.target_table}")

        try:
            rows = await self._lookup(state.target_table, [column], state.value)
        except FetchError as exc:
            return transition(state.model_copy(update={"attempted_column": column}), LookupFailed(exc.message))

        new_state = transition(state, ManualLookupDone(column, rows))
        if new_state.status == ResolutionStatus.FOUND:
            self.store.set_preferred_column(state.target_table, column)
        return new_state

    def retry(self, state: DrillDownState) -> DrillDownState:
        return transition(state, RetryRequested(self._all_columns(state.target_table)))

    async def follow_link(self, link: ManualLink, value: Any) -> DrillDownState:
        state = DrillDownState(target_table=link.table, value=value, column_hint=link.key_col)
        try:
            rows = await self._lookup(link.table, [link.key_col], value)
        except FetchError as exc:
            return transition(state, LookupFailed(exc.message))
        return transition(state, LinkLookupDone(link.key_col, rows))
