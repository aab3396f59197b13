"""
Connection helpers for the ``sql`` session backend.

SQLite at ``DB_PATH`` by default; Postgres when ``DATABASE_URL`` is set
(requires the ``postgres`` extra).
"""

from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional

from playground.config import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover - optional dependency for Postgres
    psycopg = None
    dict_row = None

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=3000",
)


@dataclass(frozen=True)
class DbInfo:
    dialect: str  # "sqlite" or "postgres"
    target: str  # database URL or SQLite file path

    @property
    def is_postgres(self) -> bool:
        return self.dialect == "postgres"


def get_db_info() -> DbInfo:
    database_url = os.getenv("DATABASE_URL") or None
    if database_url:
        return DbInfo(dialect="postgres", target=database_url)
    return DbInfo(dialect="sqlite", target=get_settings().db_path)


def is_postgres() -> bool:
    return get_db_info().is_postgres


def connect() -> Any:
    info = get_db_info()
    if info.is_postgres:
        if psycopg is None:
            raise RuntimeError("psycopg is required for Postgres connections (pip install llm-playground[postgres])")
        return psycopg.connect(info.target, row_factory=dict_row)
    conn = sqlite3.connect(info.target)
    conn.row_factory = sqlite3.Row
    return conn


def serial_primary_key() -> str:
    return "BIGSERIAL PRIMARY KEY" if is_postgres() else "INTEGER PRIMARY KEY AUTOINCREMENT"


def apply_schema(statements: Iterable[str]) -> None:
    """Create the SQLite directory if needed, then run DDL in one transaction."""
    info = get_db_info()
    if not info.is_postgres:
        Path(info.target).parent.mkdir(parents=True, exist_ok=True)
    with connect() as conn:
        if not info.is_postgres:
            for pragma in SQLITE_PRAGMAS:
                conn.execute(pragma)
        for statement in statements:
            conn.execute(statement)
        conn.commit()


def sql(query: str) -> str:
    """Rewrite '?' placeholders to '%s' when talking to Postgres."""
    if is_postgres():
        return query.replace("?", "%s")
    return query
