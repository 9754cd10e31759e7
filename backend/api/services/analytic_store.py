"""DuckDB-backed analytic engine holding uploaded structured datasets."""

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

import duckdb

from backend.api.services.errors import QueryExecutionError
from backend.api.services.sql_identifiers import quote_identifier, unique_column_names
from backend.models import ColumnDef, ColumnType, StorageEngine

logger = logging.getLogger(__name__)

DUCKDB_TYPES = {
    ColumnType.NUMBER: "DOUBLE",
    ColumnType.DATE: "TIMESTAMP",
    ColumnType.BOOLEAN: "BOOLEAN",
    ColumnType.TEXT: "VARCHAR",
}

_TRUE = {"true", "1", "yes", "y"}
_FALSE = {"false", "0", "no", "n"}


def coerce_cell(value: Any, col_type: ColumnType) -> Any:
    """Convert a raw CSV cell to the column's Python type; unparseable values become None."""
    if value is None:
        return None
    s = str(value).strip()
    if s == "":
        return None
    if col_type == ColumnType.NUMBER:
        try:
            return float(s.replace(",", ""))
        except ValueError:
            return None
    if col_type == ColumnType.BOOLEAN:
        low = s.lower()
        if low in _TRUE:
            return True
        if low in _FALSE:
            return False
        return None
    if col_type == ColumnType.DATE:
        try:
            parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return s


class AnalyticStore:
    def __init__(self, path: str = ":memory:"):
        self.path = path
        if path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        self._conn = duckdb.connect(path)
        self._lock = threading.Lock()
        logger.info("DuckDB initialized at: %s", path)

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        # caller closes it: `with self._cursor() as cur:`
        with self._lock:
            return self._conn.cursor()

    def create_table(self, table_name: str, columns: Sequence[ColumnDef]) -> None:
        names = unique_column_names([c.name for c in columns])
        col_defs = ", ".join(
            f"{quote_identifier(n)} {DUCKDB_TYPES[c.type]}" for n, c in zip(names, columns)
        )
        with self._cursor() as cur:
            cur.execute(f"CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} ({col_defs})")
        logger.info("DuckDB table created: %s", table_name)

    def insert_rows(self, table_name: str, columns: Sequence[ColumnDef], rows: Sequence[Dict[str, Any]], batch_size: int = 100) -> int:
        """Parameterized batched inserts; values coerced per column type."""
        if not rows:
            return 0
        names = unique_column_names([c.name for c in columns])
        placeholders = ", ".join("?" for _ in columns)
        sql = (
            f"INSERT INTO {quote_identifier(table_name)} ({', '.join(quote_identifier(n) for n in names)}) "
            f"VALUES ({placeholders})"
        )
        with self._cursor() as cur:
            for i in range(0, len(rows), batch_size):
                batch = [[coerce_cell(row.get(c.name), c.type) for c in columns] for row in rows[i : i + batch_size]]
                cur.executemany(sql, batch)
        return len(rows)

    def execute(self, query: str) -> List[Dict[str, Any]]:
        with self._cursor() as cur:
            try:
                cur.execute(query)
                if cur.description is None:
                    return []
                cols = [d[0] for d in cur.description]
                return [dict(zip(cols, r)) for r in cur.fetchall()]
            except duckdb.Error as e:
                logger.error("DuckDB query error: %s", e)
                raise QueryExecutionError(str(e), engine=StorageEngine.ANALYTIC.value, query=query) from e

    def preview(self, table_name: str, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        return self.execute(
            f"SELECT * FROM {quote_identifier(table_name)} LIMIT {max(0, int(limit))} OFFSET {max(0, int(offset))}"
        )

    def drop_table(self, table_name: str) -> None:
        with self._cursor() as cur:
            cur.execute(f"DROP TABLE IF EXISTS {quote_identifier(table_name)}")
        logger.info("DuckDB table dropped: %s", table_name)

    def list_tables(self) -> List[str]:
        rows = self.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'main'")
        return [r["table_name"] for r in rows]

    def close(self) -> None:
        self._conn.close()
