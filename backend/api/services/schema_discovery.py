from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from backend.api.services.dataset_service import DatasetService, parse_column_schema
from backend.api.services.sql_identifiers import quote_identifier, unique_column_names
from backend.db import BUILTIN_TABLES
from backend.models import ColumnDef, ColumnType, StorageEngine

logger = logging.getLogger(__name__)


def _safe_str(x: Any) -> str:
    try:
        return str(x)
    except Exception:
        return repr(x)


def analyze_database(engine: Engine, only: Iterable[str] | None = None) -> Dict[str, Any]:
    """
    Reflect tables, columns and foreign keys through SQLAlchemy:
    {
      "tables": [table, ...],
      "columns": {table: ["col:type", ...]},
      "relationships": [{"from_table", "from_columns", "to_table", "to_columns", "name"}]
    }
    """
    inspector = inspect(engine)
    tables: List[str] = sorted(inspector.get_table_names())
    if only is not None:
        wanted = set(only)
        tables = [t for t in tables if t in wanted]

    columns: Dict[str, List[str]] = {}
    for table in tables:
        cols_info = inspector.get_columns(table)
        columns[table] = [f"{c['name']}:{_safe_str(c.get('type'))}" for c in cols_info]

    relationships: List[Dict[str, Any]] = []
    for table in tables:
        for fk in inspector.get_foreign_keys(table):
            relationships.append(
                {
                    "from_table": table,
                    "from_columns": fk.get("constrained_columns", []) or [],
                    "to_table": fk.get("referred_table"),
                    "to_columns": fk.get("referred_columns", []) or [],
                    "name": fk.get("name"),
                }
            )

    return {"tables": tables, "columns": columns, "relationships": relationships}


@dataclass
class SchemaDescription:
    schema_text: str
    analytic_tables: List[str] = field(default_factory=list)
    dataset_names: List[str] = field(default_factory=list)
    # dataset name -> backing table, used by the deterministic fallback queries
    dataset_tables: Dict[str, str] = field(default_factory=dict)
    builtin_tables: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_text": self.schema_text,
            "analytic_tables": self.analytic_tables,
            "dataset_names": self.dataset_names,
        }


def dataset_example_queries(table: str, columns: List[ColumnDef], engine_columns: List[str]) -> List[str]:
    qt = quote_identifier(table)
    examples = [f"SELECT COUNT(*) AS count FROM {qt}", f"SELECT * FROM {qt} LIMIT 5"]
    for col, ident in zip(columns, engine_columns):
        if col.type == ColumnType.NUMBER:
            qc = quote_identifier(ident)
            examples.append(f"SELECT SUM({qc}) AS total_{ident}, AVG({qc}) AS avg_{ident} FROM {qt}")
            break
    return examples


def describe_dataset(record: Dict[str, Any]) -> str:
    """Description block for one registered dataset; raises on malformed metadata."""
    columns = parse_column_schema(record["column_schema"])
    table = record.get("engine_table_name")
    if not table:
        raise ValueError("dataset has no backing table")
    engine = StorageEngine(record["storage_engine"])
    idents = unique_column_names([c.name for c in columns])
    engine_label = "analytic engine (DuckDB)" if engine == StorageEngine.ANALYTIC else "relational engine"
    col_text = ", ".join(
        f"{quote_identifier(ident)} {c.type.value}" + ("" if ident == c.name else f" (source column: {c.name})")
        for ident, c in zip(idents, columns)
    )
    lines = [
        f'Dataset "{record["name"]}" -> table {quote_identifier(table)} [{engine_label}, {record.get("row_count") or 0} rows]',
        f"  Columns: {col_text}",
        "  Example queries:",
    ]
    lines.extend(f"    {q}" for q in dataset_example_queries(table, columns, idents))
    return "\n".join(lines)


class SchemaDiscovery:
    def __init__(self, engine: Engine, dataset_service: DatasetService):
        self.engine = engine
        self.dataset_service = dataset_service

    def _describe_builtin(self) -> tuple[str, List[str]]:
        info = analyze_database(self.engine, only=BUILTIN_TABLES)
        lines = [f"Built-in tables (relational engine, {self.engine.dialect.name}):"]
        for table in info["tables"]:
            cols = ", ".join(c.replace(":", " ", 1) for c in info["columns"][table])
            lines.append(f"- {table} ({cols})")
        if info["relationships"]:
            lines.append("Relationships:")
            for rel in info["relationships"]:
                for src, dst in zip(rel["from_columns"], rel["to_columns"]):
                    lines.append(f"- {rel['from_table']}.{src} references {rel['to_table']}.{dst}")
        return "\n".join(lines), info["tables"]

    def describe_schema(self) -> SchemaDescription:
        builtin_text, builtin_tables = self._describe_builtin()
        sections = [builtin_text]
        analytic_tables: List[str] = []
        dataset_names: List[str] = []
        dataset_tables: Dict[str, str] = {}
        blocks = []
        for record in self.dataset_service.list_records():
            try:
                block = describe_dataset(record)
            except (ValueError, TypeError, KeyError) as e:
                logger.warning("Skipping dataset %s in schema description: %s", record.get("id"), e)
                continue
            blocks.append(block)
            dataset_names.append(record["name"])
            dataset_tables[record["name"]] = record["engine_table_name"]
            if record["storage_engine"] == StorageEngine.ANALYTIC.value:
                analytic_tables.append(record["engine_table_name"])
        if blocks:
            sections.append(
                "Uploaded datasets (always double-quote their table and column names):\n" + "\n\n".join(blocks)
            )
        return SchemaDescription(
            schema_text="\n\n".join(sections),
            analytic_tables=analytic_tables,
            dataset_names=dataset_names,
            dataset_tables=dataset_tables,
            builtin_tables=list(builtin_tables),
        )
