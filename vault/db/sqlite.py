"""
SQLite-backed KV store
======================

A small embedded KV using SQLite (BLOB keys & values), implementing the
`KV` / `ReadOnlyKV` / `Batch` protocols from `vault.db.kv`.

- Table schema: kv(k BLOB PRIMARY KEY, v BLOB NOT NULL)
- Keys/values are raw bytes; ordering is lexicographic (memcmp).
- Prefix scans use a bounded range (prefix_hi) plus a guard on
  `substr(k, 1, len(prefix)) = prefix`.

Batches buffer their writes and apply them in one `BEGIN IMMEDIATE ... COMMIT`
on exit, so readers sharing the connection never observe a half-applied batch.
A failure while applying rolls the whole transaction back and surfaces as
`StorageError`.
"""

from __future__ import annotations

import os
import sqlite3
import threading
from typing import Iterator, List, Optional, Tuple, Union

from ..errors import StorageError
from .kv import KV, Batch

DEFAULT_PRAGMAS = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "temp_store": "MEMORY",
    "foreign_keys": "OFF",
}

_UPSERT = "INSERT INTO kv(k, v) VALUES(?, ?) ON CONFLICT(k) DO UPDATE SET v=excluded.v"
_DELETE = "DELETE FROM kv WHERE k = ?"


def _apply_pragmas(conn: sqlite3.Connection, pragmas: Optional[dict] = None) -> None:
    p = dict(DEFAULT_PRAGMAS)
    if pragmas:
        p.update(pragmas)
    cur = conn.cursor()
    for name, value in p.items():
        cur.execute(f"PRAGMA {name}={value}")
    cur.close()


def _migrate(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv (
            k BLOB PRIMARY KEY,
            v BLOB NOT NULL
        )
        """
    )


def _prefix_hi(prefix: bytes) -> Optional[bytes]:
    """
    Return the smallest byte string strictly greater than every key that has
    `prefix` as a prefix. None if no such value exists (prefix is all 0xFF).

    Example: b"ab\\x01" -> b"ab\\x02"; b"\\xff\\xff" -> None
    """
    if not prefix:
        return None
    p = bytearray(prefix)
    for i in range(len(p) - 1, -1, -1):
        if p[i] != 0xFF:
            p[i] += 1
            del p[i + 1:]
            return bytes(p)
    return None


class SQLiteBatch(Batch):
    __slots__ = ("_kv", "_ops", "_open")

    def __init__(self, kv: "SQLiteKV") -> None:
        self._kv = kv
        self._ops: List[Tuple[str, bytes, Optional[bytes]]] = []
        self._open = False

    def __enter__(self) -> "SQLiteBatch":
        if self._open:
            raise RuntimeError("batch already open (nested batches not supported)")
        self._open = True
        return self

    def put(self, key: bytes, value: bytes) -> None:
        if not self._open:
            raise RuntimeError("batch not open")
        self._ops.append(("put", bytes(key), bytes(value)))

    def delete(self, key: bytes) -> None:
        if not self._open:
            raise RuntimeError("batch not open")
        self._ops.append(("del", bytes(key), None))

    def commit(self) -> None:
        if not self._open:
            return
        ops, self._ops = self._ops, []
        self._open = False
        self._kv._apply(ops)

    def rollback(self) -> None:
        self._ops = []
        self._open = False

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        # Propagate exception if any
        return None


def _open_connection(
    path: Union[str, "os.PathLike[str]"],
    *,
    pragmas: Optional[dict] = None,
    create: bool = True,
) -> sqlite3.Connection:
    path_str = str(path)
    if path_str.startswith("sqlite:///"):
        path_str = path_str[len("sqlite:///"):]
    if path_str != ":memory:" and not create and not os.path.exists(path_str):
        raise StorageError(f"SQLite KV not found at {path_str}", path=path_str)

    try:
        conn = sqlite3.connect(
            path_str,
            detect_types=0,
            isolation_level=None,      # autocommit; we explicitly BEGIN for batches
            check_same_thread=False,   # shared by the ledger's reader threads
        )
        _apply_pragmas(conn, pragmas)
        _migrate(conn)
    except sqlite3.Error as e:
        raise StorageError(f"cannot open SQLite KV at {path_str}: {e}", path=path_str) from e
    return conn


class SQLiteKV(KV):
    """
    SQLite-backed KV. Safe for multi-threaded readers; write batches are
    serialized by an internal lock.

    Use `open_sqlite_kv(path)` to construct.
    """

    __slots__ = ("_conn", "_wlock")

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._wlock = threading.Lock()

    # --- ReadOnlyKV ---

    def get(self, key: bytes) -> Optional[bytes]:
        cur = self._conn.execute("SELECT v FROM kv WHERE k = ?", (memoryview(key),))
        row = cur.fetchone()
        cur.close()
        return bytes(row[0]) if row is not None else None

    def has(self, key: bytes) -> bool:
        cur = self._conn.execute("SELECT 1 FROM kv WHERE k = ? LIMIT 1", (memoryview(key),))
        row = cur.fetchone()
        cur.close()
        return row is not None

    def iter_prefix(self, prefix: bytes) -> Iterator[Tuple[bytes, bytes]]:
        """Iterate keys with the given binary prefix in lexicographic order."""
        hi = _prefix_hi(prefix)
        if hi is not None:
            sql = (
                "SELECT k, v FROM kv "
                "WHERE k >= ? AND k < ? AND substr(k,1,?) = ? "
                "ORDER BY k"
            )
            args = (memoryview(prefix), memoryview(hi), len(prefix), memoryview(prefix))
        else:
            sql = "SELECT k, v FROM kv WHERE substr(k,1,?) = ? ORDER BY k"
            args = (len(prefix), memoryview(prefix))

        # Materialize so a concurrent batch cannot invalidate the cursor mid-scan.
        cur = self._conn.execute(sql, args)
        try:
            rows = cur.fetchall()
        finally:
            cur.close()
        for k, v in rows:
            yield bytes(k), bytes(v)

    def close(self) -> None:
        self._conn.close()

    # --- KV ---

    def put(self, key: bytes, value: bytes) -> None:
        self._apply([("put", bytes(key), bytes(value))])

    def delete(self, key: bytes) -> None:
        self._apply([("del", bytes(key), None)])

    def batch(self) -> Batch:
        return SQLiteBatch(self)

    def _apply(self, ops: List[Tuple[str, bytes, Optional[bytes]]]) -> None:
        if not ops:
            return
        with self._wlock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                for op, k, v in ops:
                    if op == "put":
                        self._conn.execute(_UPSERT, (memoryview(k), memoryview(v)))  # type: ignore[arg-type]
                    else:
                        self._conn.execute(_DELETE, (memoryview(k),))
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise StorageError(f"batch write failed: {e}", ops=len(ops)) from e


def open_sqlite_kv(
    path: Union[str, "os.PathLike[str]"],
    *,
    pragmas: Optional[dict] = None,
    create: bool = True,
) -> SQLiteKV:
    """
    Open (or create) a SQLite KV at `path` (":memory:" for a private in-memory store).

    `create=False` raises StorageError if the DB file does not exist.
    """
    return SQLiteKV(_open_connection(path, pragmas=pragmas, create=create))


__all__ = [
    "SQLiteKV",
    "SQLiteBatch",
    "open_sqlite_kv",
]
