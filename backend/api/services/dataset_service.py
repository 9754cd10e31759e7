"""
Dataset registry and ingestion.

Structured uploads go to the analytic engine; if that fails the rows are stored in a
relational table instead. Column types are inferred once at ingestion.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    Table,
    Text,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.api.services.analytic_store import AnalyticStore, coerce_cell
from backend.api.services.errors import DatasetIngestionError, NotFoundError, QueryExecutionError
from backend.api.services.sql_identifiers import (
    RELATIONAL_TABLE_PREFIX,
    dataset_table_name,
    quote_identifier,
    unique_column_names,
)
from backend.db import datasets
from backend.models import ColumnDef, ColumnType, DataType, Dataset, StorageEngine

logger = logging.getLogger(__name__)

_BOOL_WORDS = {"true", "false", "yes", "no"}
_NUMBER_RE = re.compile(r"^[+-]?(\d{1,3}(,\d{3})+|\d+)?(\.\d+)?([eE][+-]?\d+)?$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?)?(Z|[+-]\d{2}:?\d{2})?$")

SQLALCHEMY_TYPES = {
    ColumnType.NUMBER: Float,
    ColumnType.DATE: DateTime,
    ColumnType.BOOLEAN: Boolean,
    ColumnType.TEXT: Text,
}


# ------------------------- Parsing & type inference -------------------------
def _is_number(s: str) -> bool:
    return bool(s) and any(ch.isdigit() for ch in s) and _NUMBER_RE.match(s) is not None


def _is_date(s: str) -> bool:
    if not _DATE_RE.match(s):
        return False
    try:
        datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def infer_column_type(values: Sequence[Any]) -> ColumnType:
    """Type that fits every non-empty value; all-empty columns are text."""
    present = [str(v).strip() for v in values if v is not None and str(v).strip() != ""]
    if not present:
        return ColumnType.TEXT
    if all(v.lower() in _BOOL_WORDS for v in present):
        return ColumnType.BOOLEAN
    if all(_is_number(v) for v in present):
        return ColumnType.NUMBER
    if all(_is_date(v) for v in present):
        return ColumnType.DATE
    return ColumnType.TEXT


def parse_csv(data: bytes) -> tuple[List[str], List[Dict[str, Any]]]:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("latin-1", errors="ignore")
    reader = csv.DictReader(io.StringIO(text))
    headers = [h.strip() for h in (reader.fieldnames or []) if h is not None]
    if not headers:
        raise DatasetIngestionError("CSV file has no header row")
    reader.fieldnames = headers
    rows = [{k: v for k, v in row.items() if k is not None} for row in reader]
    return headers, rows


def parse_column_schema(raw: Any) -> List[ColumnDef]:
    """Decode the stored column schema; raises ValueError on malformed metadata."""
    items = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    if not isinstance(items, list) or not items:
        raise ValueError("column schema must be a non-empty list")
    cols = []
    for item in items:
        if not isinstance(item, dict) or not item.get("name"):
            raise ValueError(f"invalid column entry: {item!r}")
        cols.append(ColumnDef(name=str(item["name"]), type=ColumnType(item.get("type", "text"))))
    return cols


def _record_to_dataset(rec: Mapping[str, Any]) -> Dataset:
    return Dataset(
        id=rec["id"],
        name=rec["name"],
        data_type=DataType(rec["data_type"]),
        row_count=rec["row_count"] or 0,
        columns=parse_column_schema(rec["column_schema"]),
        storage_engine=StorageEngine(rec["storage_engine"]),
        engine_table_name=rec["engine_table_name"],
    )


class DatasetService:
    def __init__(self, engine: Engine, analytic: AnalyticStore):
        self.engine = engine
        self.analytic = analytic

    # ------------------------- Registry -------------------------
    def list_records(self) -> List[Dict[str, Any]]:
        """Raw registry rows; column_schema is left undecoded so callers can skip bad rows."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(datasets).order_by(datasets.c.id)).mappings().all()
        return [dict(r) for r in rows]

    def list_datasets(self) -> List[Dataset]:
        out = []
        for rec in self.list_records():
            try:
                out.append(_record_to_dataset(rec))
            except (ValueError, TypeError, KeyError) as e:
                logger.warning("Skipping dataset %s with unreadable metadata: %s", rec.get("id"), e)
        return out

    def get_dataset(self, dataset_id: int) -> Dataset:
        with self.engine.connect() as conn:
            row = conn.execute(select(datasets).where(datasets.c.id == dataset_id)).first()
        if row is None:
            raise NotFoundError(f"Dataset {dataset_id} not found")
        return _record_to_dataset(row._mapping)

    # ------------------------- Ingestion -------------------------
    def ingest_csv(self, name: str, data: bytes) -> Dataset:
        headers, rows = parse_csv(data)
        columns = [ColumnDef(name=h, type=infer_column_type([r.get(h) for r in rows])) for h in headers]
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(datasets).values(
                    name=name,
                    data_type=DataType.STRUCTURED.value,
                    row_count=0,
                    column_schema=json.dumps([c.to_dict() for c in columns]),
                    storage_engine=StorageEngine.ANALYTIC.value,
                )
            )
            dataset_id = result.inserted_primary_key[0]

        try:
            table, engine_kind = self._store_analytic(dataset_id, name, columns, rows)
        except DatasetIngestionError as e:
            logger.warning("Analytic ingestion of dataset %s failed (%s); using relational engine", dataset_id, e)
            try:
                table, engine_kind = self._store_relational(dataset_id, name, columns, rows)
            except SQLAlchemyError as e2:
                with self.engine.begin() as conn:
                    conn.execute(delete(datasets).where(datasets.c.id == dataset_id))
                raise DatasetIngestionError(f"Could not store dataset {name!r}: {e2}") from e2

        with self.engine.begin() as conn:
            conn.execute(
                update(datasets)
                .where(datasets.c.id == dataset_id)
                .values(row_count=len(rows), storage_engine=engine_kind.value, engine_table_name=table)
            )
        logger.info("Dataset %s (%s) stored in %s table %s with %d rows", dataset_id, name, engine_kind.value, table, len(rows))
        return self.get_dataset(dataset_id)

    def _store_analytic(self, dataset_id: int, name: str, columns: List[ColumnDef], rows: List[Dict[str, Any]]):
        table = dataset_table_name(dataset_id, name)
        try:
            self.analytic.create_table(table, columns)
            self.analytic.insert_rows(table, columns, rows)
        except Exception as e:
            # leave no half-filled table behind
            try:
                self.analytic.drop_table(table)
            except Exception:
                logger.exception("Could not drop partial analytic table %s", table)
            raise DatasetIngestionError(str(e)) from e
        return table, StorageEngine.ANALYTIC

    def _relational_table(self, table: str, columns: Sequence[ColumnDef]) -> Table:
        names = unique_column_names([c.name for c in columns])
        return Table(
            table,
            MetaData(),
            Column("_row_id", Integer, primary_key=True),
            *[Column(n, SQLALCHEMY_TYPES[c.type]) for n, c in zip(names, columns)],
        )

    def _store_relational(self, dataset_id: int, name: str, columns: List[ColumnDef], rows: List[Dict[str, Any]]):
        table_name = dataset_table_name(dataset_id, name, prefix=RELATIONAL_TABLE_PREFIX)
        table = self._relational_table(table_name, columns)
        names = unique_column_names([c.name for c in columns])
        table.create(self.engine, checkfirst=True)
        if rows:
            payload = [{n: coerce_cell(r.get(c.name), c.type) for n, c in zip(names, columns)} for r in rows]
            with self.engine.begin() as conn:
                conn.execute(insert(table), payload)
        return table_name, StorageEngine.RELATIONAL

    # ------------------------- Access -------------------------
    def preview_rows(self, dataset_id: int, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        ds = self.get_dataset(dataset_id)
        if not ds.engine_table_name:
            return []
        if ds.storage_engine == StorageEngine.ANALYTIC:
            return self.analytic.preview(ds.engine_table_name, limit=limit, offset=offset)
        table = self._relational_table(ds.engine_table_name, ds.columns)
        stmt = select(*[c for c in table.c if c.name != "_row_id"]).limit(max(0, int(limit))).offset(max(0, int(offset)))
        try:
            with self.engine.connect() as conn:
                return [dict(r) for r in conn.execute(stmt).mappings().all()]
        except SQLAlchemyError as e:
            raise QueryExecutionError(str(e), engine=StorageEngine.RELATIONAL.value) from e

    def delete_dataset(self, dataset_id: int) -> None:
        with self.engine.connect() as conn:
            row = conn.execute(select(datasets).where(datasets.c.id == dataset_id)).first()
        if row is None:
            raise NotFoundError(f"Dataset {dataset_id} not found")
        table = row.engine_table_name
        if table:
            if row.storage_engine == StorageEngine.ANALYTIC.value:
                self.analytic.drop_table(table)
            else:
                with self.engine.begin() as conn:
                    conn.exec_driver_sql(f"DROP TABLE IF EXISTS {quote_identifier(table)}")
        with self.engine.begin() as conn:
            conn.execute(delete(datasets).where(datasets.c.id == dataset_id))
        logger.info("Dataset %s deleted (table %s dropped)", dataset_id, table)

