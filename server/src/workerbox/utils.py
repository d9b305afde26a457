import os
import sqlite3
import tempfile
from contextlib import contextmanager
from functools import cache
from pathlib import Path
from typing import Annotated

from annotated_types import Len
from fastapi import Depends
from pydantic import Field
from pydantic_settings import BaseSettings
from ulid import ULID

_TMP = Path(tempfile.gettempdir()) / "workerbox"


class Settings(BaseSettings):
    sqlite_url: str = Field(default="db.sqlite3")
    node_binary: str = Field(default="node", description="interpreter for worker scripts")
    runtime_root: Path = Field(
        default=_TMP / "runtimes", description="where live runtimes get a working dir"
    )
    snapshot_root: Path = Field(
        default=_TMP / "snapshots", description="where snapshots are kept"
    )
    snapshot_ttl_days: int = Field(default=7, ge=1)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)


def _load_sql() -> dict[str, str]:
    """
    load queries from queries.sql into a dict
    allows for a bunch of queries in one sql file that look like:
    -- query:begin name
    SELECT * FROM table;
    -- query:end
    """
    res: dict[str, str] = {}
    name = ""
    with open(os.path.join(os.path.dirname(__file__), "queries.sql")) as f:
        for line in f.readlines():
            if line.startswith("-- query:begin "):
                name = line.split(" ")[-1].strip()
                res[name] = ""
            elif line.startswith("-- query:end"):
                res[name] = res[name].strip()
            elif name:
                res[name] += line
    return res


SQL = _load_sql()


@cache
def get_settings():
    """
    load settings from environment variables + defaults
    """
    return Settings()


def get_conn(
    settings: Annotated[Settings, Depends(get_settings)],
):
    """
    get a connection to the sqlite db
    if any statements fail, the transaction is rolled back
    """
    conn = sqlite3.connect(settings.sqlite_url, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        with conn:
            conn.execute(SQL["foreign_keys_on"])
            yield conn
    finally:
        conn.close()


get_conn_ctx = contextmanager(get_conn)


def migrate():
    """
    run script to create tables and indexes
    """
    with get_conn_ctx(get_settings()) as conn:
        conn.executescript(SQL["migrate"])


PKPrefix = Annotated[str, Len(2)]


def new_primary_key(prefix: PKPrefix) -> str:
    """
    generate a new primary key
    primary key is entity type prefix (2 characters) followed by a hyphen and a ULID
    """
    ulid = ULID()
    return f"{prefix}-{ulid}".lower()
