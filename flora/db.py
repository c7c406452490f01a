from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Union

import streamlit as st

from flora.schema import SCHEMA_SQL

logger = logging.getLogger("flora.db")

# One connection is shared by every Streamlit session (get_conn is cached), so
# each statement and each atomic unit holds that connection's lock. Unit depth
# is tracked per thread: a nested unit joins only its own thread's outer unit.
_locks: dict[int, threading.RLock] = {}
_locks_guard = threading.Lock()
_local = threading.local()


def connect(db_path: Union[str, Path], *, timeout: float = 5.0) -> sqlite3.Connection:
    # Autocommit mode: atomic units are opened explicitly by transaction().
    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@st.cache_resource
def get_conn(db_path: Path, timeout: float = 5.0) -> sqlite3.Connection:
    return connect(db_path, timeout=timeout)


def _lock(conn: sqlite3.Connection) -> threading.RLock:
    with _locks_guard:
        return _locks.setdefault(id(conn), threading.RLock())


def _depths() -> dict[int, int]:
    depths = getattr(_local, "depths", None)
    if depths is None:
        depths = _local.depths = {}
    return depths


def in_unit(conn: sqlite3.Connection) -> bool:
    """True while the calling thread has a transaction() open on conn."""
    return _depths().get(id(conn), 0) > 0


def ensure_schema(conn: sqlite3.Connection) -> None:
    # executescript commits first, so it must never run inside a unit.
    if in_unit(conn):
        raise RuntimeError("ensure_schema() called inside an open transaction")
    with _lock(conn):
        conn.executescript(SCHEMA_SQL)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    One atomic unit against the store.

    BEGIN IMMEDIATE takes the write lock up front so a concurrent register
    cannot slip a decrement between our stock check and our write. Nested
    use on the same thread joins the outer unit; only the outermost block
    commits or rolls back. Other threads wait until the unit is finished.
    """
    depths = _depths()
    key = id(conn)
    if depths.get(key, 0):
        depths[key] += 1
        try:
            yield conn
        finally:
            depths[key] -= 1
        return

    with _lock(conn):
        depths[key] = 1
        try:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                logger.debug("Rolled back")
                raise
            else:
                conn.execute("COMMIT;")
        finally:
            depths.pop(key, None)


def q(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
    with _lock(conn):
        cur = conn.execute(sql, tuple(params))
        rows = cur.fetchall()
        cur.close()
    return rows


def stream(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = (), *, batch: int = 200) -> Iterator[sqlite3.Row]:
    """Like q() but yields rows in batches, releasing the lock between them."""
    with _lock(conn):
        cur = conn.execute(sql, tuple(params))
    try:
        while True:
            with _lock(conn):
                rows = cur.fetchmany(batch)
            if not rows:
                return
            yield from rows
    finally:
        with _lock(conn):
            cur.close()


def x(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    with _lock(conn):
        cur = conn.execute(sql, tuple(params))
        last = cur.lastrowid
        cur.close()
    return int(last or 0)


def u(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> int:
    """Run an UPDATE/DELETE and return the number of rows it touched."""
    with _lock(conn):
        cur = conn.execute(sql, tuple(params))
        n = cur.rowcount
        cur.close()
    return int(n)
