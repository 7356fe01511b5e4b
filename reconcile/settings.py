from __future__ import annotations

import os

from pydantic import BaseModel

ENV_PREFIX = "RECONCILE_"


class DbConn(BaseModel):
    host: str
    port: int = 5433
    user: str
    password: str
    database: str


class Settings(BaseModel):
    db: DbConn = DbConn(
        host="VERTICA_HOST",
        user="VERTICA_USER",
        password="VERTICA_PASSWORD",
        database="VERTICA_DB",
    )
    mapping_db: str = "mappings/drilldown.sqlite"
    default_diff_limit: int = 500
    drilldown_limit: int = 50
    preview_debounce_seconds: float = 0.4
    max_previews: int = 3
    god_mode_default: bool = False
    log_level: str = "INFO"


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    # RECONCILE_DB_HOST, RECONCILE_DRILLDOWN_LIMIT, ... override the defaults
    env = os.environ if environ is None else environ
    base = Settings()
    db = base.db.model_dump()
    top = base.model_dump(exclude={"db"})

    for field in db:
        raw = env.get(f"{ENV_PREFIX}DB_{field.upper()}")
        if raw is not None:
            db[field] = raw
    for field in top:
        raw = env.get(f"{ENV_PREFIX}{field.upper()}")
        if raw is not None:
            top[field] = raw

    return Settings(db=DbConn(**db), **top)


settings = load_settings()
