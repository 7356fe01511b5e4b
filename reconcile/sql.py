from __future__ import annotations

from typing import Any

from reconcile.values import display_string


def quote_ident(name: str) -> str:
    # ANSI SQL identifier quoting with escaped double-quotes.
    return '"' + name.replace('"', '""') + '"'


def quote_table(table_name: str) -> str:
    # schema.table -> "schema"."table"
    return ".".join(quote_ident(part) for part in table_name.split("."))


def escape_literal(value: Any) -> str:
    return "'" + display_string(value).replace("'", "''") + "'"


def render_sql(sql: str, params: tuple | None) -> str:
    """Inline parameters for display; never send the result to the database."""
    if not params:
        return sql
    parts = sql.split("%s")
    out = [parts[0]]
    for part, param in zip(parts[1:], params):
        out.append(escape_literal(param))
        out.append(part)
    return "".join(out)


def select_all(table: str, limit: int) -> tuple[str, tuple]:
    return f"SELECT * FROM {quote_table(table)} LIMIT {int(limit)}", ()


def select_where_text_equals(
    table: str,
    columns: list[str],
    value: Any,
    limit: int,
    fields: list[str] | None = None,
) -> tuple[str, tuple]:
    """SELECT rows where any of ``columns``, cast to text, equals ``value``."""
    if not columns:
        raise ValueError("At least one column is required")
    cols_sql = ", ".join(quote_ident(f) for f in fields) if fields else "*"
    text_value = display_string(value)
    predicate = " OR ".join(f"CAST({quote_ident(c)} AS VARCHAR) = %s" for c in columns)
    sql = f"SELECT {cols_sql} FROM {quote_table(table)} WHERE {predicate} LIMIT {int(limit)}"
    return sql, (text_value,) * len(columns)
