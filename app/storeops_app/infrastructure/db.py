from __future__ import annotations

import asyncio
from contextlib import contextmanager
import logging
from pathlib import Path
import re
import sqlite3
import threading
import time
from typing import Any, Iterable, Mapping

import pandas as pd

PERF_LOGGER = logging.getLogger("storeops_app.perf")
LOGGER = logging.getLogger(__name__)

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MEMORY_DB_PATH = ":memory:"


class DataConnectionError(RuntimeError):
    """Raised when a database connection cannot be established."""


class DataQueryError(RuntimeError):
    """Raised when a query operation fails."""


class DataExecutionError(RuntimeError):
    """Raised when a non-query execution fails."""


def _quote_identifier(name: str) -> str:
    value = str(name or "").strip()
    if not _IDENTIFIER_PATTERN.match(value):
        raise DataExecutionError(f"Invalid SQL identifier: {name!r}")
    return f'"{value}"'


class LocalImportStore:
    """SQLite store for the import tables.

    Each ``insert_rows`` call runs in one transaction, so a failing batch is
    rolled back on its own while earlier batches stay committed.
    """

    def __init__(self, db_path: str, *, tables: Mapping[str, Iterable[tuple[str, str]]]) -> None:
        self.db_path = str(db_path or MEMORY_DB_PATH)
        self._tables: dict[str, list[tuple[str, str]]] = {
            str(table): [(str(name), str(sql_type)) for name, sql_type in columns]
            for table, columns in tables.items()
        }
        self._lock = threading.RLock()
        self._shared_conn: sqlite3.Connection | None = None
        self._tables_ready = False
        self._closed = False

    @property
    def is_memory(self) -> bool:
        return self.db_path == MEMORY_DB_PATH

    def table_columns(self, table: str) -> list[str]:
        columns = self._tables.get(table)
        if columns is None:
            raise DataExecutionError(f"Unknown import table: {table}")
        return [name for name, _ in columns]

    def _connect(self) -> sqlite3.Connection:
        if self.is_memory:
            return sqlite3.connect(MEMORY_DB_PATH, check_same_thread=False)
        db_path = Path(self.db_path).resolve()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(db_path))

    @contextmanager
    def _connection(self):
        if self._closed:
            raise DataConnectionError("Local import store is closed.")
        with self._lock:
            close_after_use = not self.is_memory
            if self.is_memory and self._shared_conn is not None:
                conn = self._shared_conn
            else:
                try:
                    conn = self._connect()
                except Exception as exc:
                    raise DataConnectionError(f"Failed to connect to local SQLite DB at {self.db_path}.") from exc
                if self.is_memory:
                    self._shared_conn = conn
            try:
                if not self._tables_ready:
                    self._create_tables(conn)
                yield conn
            finally:
                if close_after_use:
                    conn.close()

    def _create_tables(self, conn: sqlite3.Connection) -> None:
        for table, columns in self._tables.items():
            column_sql = ", ".join(
                f"{_quote_identifier(name)} {sql_type}" for name, sql_type in columns
            )
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {_quote_identifier(table)} "
                f"(id INTEGER PRIMARY KEY AUTOINCREMENT, {column_sql})"
            )
        conn.commit()
        self._tables_ready = True

    def ensure_tables(self) -> None:
        with self._connection():
            pass

    def _record_perf(self, *, operation: str, table: str, elapsed_ms: float, row_count: int | None, error: bool = False) -> None:
        log_fn = PERF_LOGGER.warning if error else PERF_LOGGER.debug
        log_fn(
            "Local store %s. table=%s rows=%s elapsed_ms=%.2f error=%s",
            operation,
            table,
            row_count,
            elapsed_ms,
            error,
            extra={
                "event": "local_store_operation",
                "operation": operation,
                "table": table,
                "row_count": row_count,
                "elapsed_ms": round(elapsed_ms, 2),
                "error": error,
            },
        )

    def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert ``rows`` in one transaction and return them with their new ``id``."""
        columns = self.table_columns(table)
        if not rows:
            return []
        unknown = sorted({key for row in rows for key in row} - set(columns))
        if unknown:
            raise DataExecutionError(f"Unknown columns for {table}: {', '.join(unknown)}")

        placeholders = ", ".join("?" for _ in columns)
        statement = (
            f"INSERT INTO {_quote_identifier(table)} "
            f"({', '.join(_quote_identifier(name) for name in columns)}) VALUES ({placeholders})"
        )
        started = time.perf_counter()
        inserted: list[dict[str, Any]] = []
        try:
            with self._connection() as conn:
                try:
                    cursor = conn.cursor()
                    for row in rows:
                        cursor.execute(statement, tuple(row.get(name) for name in columns))
                        inserted.append({"id": cursor.lastrowid, **row})
                    cursor.close()
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except DataConnectionError:
            self._record_perf(operation="insert", table=table, elapsed_ms=0.0, row_count=None, error=True)
            raise
        except Exception as exc:
            self._record_perf(
                operation="insert",
                table=table,
                elapsed_ms=(time.perf_counter() - started) * 1000.0,
                row_count=None,
                error=True,
            )
            raise DataExecutionError(f"Insert into {table} failed: {exc}") from exc
        self._record_perf(
            operation="insert",
            table=table,
            elapsed_ms=(time.perf_counter() - started) * 1000.0,
            row_count=len(inserted),
        )
        return inserted

    async def insert_batch(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self.insert_rows, table, rows)

    def query(self, statement: str, params: Iterable[Any] | None = None) -> pd.DataFrame:
        try:
            with self._connection() as conn:
                cursor = conn.cursor()
                cursor.execute(statement, tuple(params or ()))
                rows = cursor.fetchall()
                cols = [desc[0] for desc in cursor.description] if cursor.description else []
                cursor.close()
                return pd.DataFrame(rows, columns=cols)
        except DataConnectionError:
            raise
        except Exception as exc:
            raise DataQueryError("Query execution failed.") from exc

    def fetch_rows(self, table: str) -> pd.DataFrame:
        self.table_columns(table)
        return self.query(f"SELECT * FROM {_quote_identifier(table)} ORDER BY id")

    def count_rows(self, table: str) -> int:
        self.table_columns(table)
        frame = self.query(f"SELECT COUNT(*) AS row_count FROM {_quote_identifier(table)}")
        return int(frame.iloc[0]["row_count"]) if not frame.empty else 0

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._shared_conn is not None:
                self._shared_conn.close()
                self._shared_conn = None
