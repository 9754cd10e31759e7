"""Tests for CSV dataset ingestion, the DuckDB store and identifier handling."""

from datetime import datetime

import duckdb
import pytest
from sqlalchemy import inspect

from backend.api.services.analytic_store import coerce_cell
from backend.api.services.dataset_service import infer_column_type, parse_column_schema, parse_csv
from backend.api.services.errors import DatasetIngestionError, NotFoundError, QueryExecutionError
from backend.api.services.sql_identifiers import dataset_table_name, quote_identifier, sanitize_identifier, unique_column_names
from backend.models import ColumnDef, ColumnType, StorageEngine

SALES_CSV = (
    b"Region,Sales Amount,Order Date,Shipped\n"
    b"North,1200.50,2024-01-05,yes\n"
    b"South,800,2024-01-06,no\n"
    b"East,,2024-02-01,true\n"
)


def _broken_insert(*args, **kwargs):
    raise RuntimeError("analytic engine unavailable")


class TestIdentifiers:
    """Sanitization and quoting of generated identifiers."""

    @pytest.mark.parametrize(
        "raw,expected",
        [("Sales Amount", "sales_amount"), ("__Weird--Name!!", "weird_name"), ("%%%", "col"), ("Q1 (USD)", "q1_usd")],
    )
    def test_sanitize(self, raw, expected) -> None:
        assert sanitize_identifier(raw) == expected

    def test_quote_escapes_double_quotes(self) -> None:
        assert quote_identifier('a"b') == '"a""b"'

    def test_unique_names(self) -> None:
        assert unique_column_names(["A b", "a_b", "a-b", "a_b_2"]) == ["a_b", "a_b_2", "a_b_3", "a_b_2_2"]

    def test_table_name(self) -> None:
        assert dataset_table_name(7, "Regional Sales 2024") == "dataset_7_regional_sales_2024"


class TestParsing:
    """CSV parsing and one-time column type inference."""

    def test_parse_csv(self) -> None:
        headers, rows = parse_csv(SALES_CSV)
        assert headers == ["Region", "Sales Amount", "Order Date", "Shipped"]
        assert rows[1]["Sales Amount"] == "800"

    def test_header_required(self) -> None:
        with pytest.raises(DatasetIngestionError):
            parse_csv(b"")

    @pytest.mark.parametrize(
        "values,expected",
        [
            (["1", "2.5", "-3", "1,200"], ColumnType.NUMBER),
            (["yes", "no", "TRUE"], ColumnType.BOOLEAN),
            (["2024-01-05", "2024-02-01T10:00:00"], ColumnType.DATE),
            (["North", "2"], ColumnType.TEXT),
            (["", None], ColumnType.TEXT),
        ],
    )
    def test_infer_column_type(self, values, expected) -> None:
        assert infer_column_type(values) == expected

    def test_column_def_dict(self) -> None:
        assert ColumnDef("Amount", ColumnType.NUMBER).to_dict() == {"name": "Amount", "type": "number"}

    def test_malformed_column_schema(self) -> None:
        with pytest.raises(ValueError):
            parse_column_schema("not json")
        with pytest.raises(ValueError):
            parse_column_schema("[]")

    def test_coerce_cell(self) -> None:
        assert coerce_cell("1,200.5", ColumnType.NUMBER) == 1200.5
        assert coerce_cell("abc", ColumnType.NUMBER) is None
        assert coerce_cell("Yes", ColumnType.BOOLEAN) is True
        assert coerce_cell("2024-01-05T10:00:00Z", ColumnType.DATE) == datetime(2024, 1, 5, 10, 0)
        assert coerce_cell("  ", ColumnType.TEXT) is None


class TestAnalyticIngestion:
    """Structured uploads land in DuckDB by default."""

    def test_ingest_to_analytic_engine(self, dataset_service, analytic_store) -> None:
        ds = dataset_service.ingest_csv("Regional Sales", SALES_CSV)
        assert ds.storage_engine == StorageEngine.ANALYTIC
        assert ds.engine_table_name == f"dataset_{ds.id}_regional_sales"
        assert ds.row_count == 3
        assert [c.type for c in ds.columns] == [ColumnType.TEXT, ColumnType.NUMBER, ColumnType.DATE, ColumnType.BOOLEAN]
        assert ds.engine_table_name in analytic_store.list_tables()

        rows = analytic_store.execute(f'SELECT SUM("sales_amount") AS total FROM "{ds.engine_table_name}"')
        assert rows[0]["total"] == pytest.approx(2000.5)

    def test_preview_rows(self, dataset_service) -> None:
        ds = dataset_service.ingest_csv("Regional Sales", SALES_CSV)
        rows = dataset_service.preview_rows(ds.id, limit=2, offset=1)
        assert [r["region"] for r in rows] == ["South", "East"]
        assert rows[1]["sales_amount"] is None

    def test_list_and_delete(self, dataset_service, analytic_store) -> None:
        ds = dataset_service.ingest_csv("Regional Sales", SALES_CSV)
        assert [d.id for d in dataset_service.list_datasets()] == [ds.id]

        dataset_service.delete_dataset(ds.id)
        assert dataset_service.list_datasets() == []
        assert ds.engine_table_name not in analytic_store.list_tables()
        with pytest.raises(NotFoundError):
            dataset_service.get_dataset(ds.id)

    def test_delete_unknown(self, dataset_service) -> None:
        with pytest.raises(NotFoundError):
            dataset_service.delete_dataset(999)

    def test_query_error_names_engine(self, analytic_store) -> None:
        with pytest.raises(QueryExecutionError) as exc:
            analytic_store.execute('SELECT * FROM "missing_table"')
        assert exc.value.engine == "analytic"

    def test_cursors_are_closed_after_use(self, analytic_store, monkeypatch) -> None:
        opened = []
        original = analytic_store._cursor

        def tracking_cursor():
            cur = original()
            opened.append(cur)
            return cur

        monkeypatch.setattr(analytic_store, "_cursor", tracking_cursor)
        columns = [ColumnDef("region", ColumnType.TEXT)]
        analytic_store.create_table("dataset_1_regions", columns)
        analytic_store.insert_rows("dataset_1_regions", columns, [{"region": "North"}])
        assert analytic_store.execute('SELECT * FROM "dataset_1_regions"') == [{"region": "North"}]
        with pytest.raises(QueryExecutionError):
            analytic_store.execute('SELECT * FROM "missing_table"')
        analytic_store.drop_table("dataset_1_regions")

        assert len(opened) == 5
        for cur in opened:
            with pytest.raises(duckdb.Error):
                cur.execute("SELECT 1")


class TestRelationalFallback:
    """When the analytic engine rejects the data, the relational engine stores it."""

    def test_falls_back_to_relational(self, dataset_service, analytic_store, monkeypatch) -> None:
        monkeypatch.setattr(analytic_store, "insert_rows", _broken_insert)
        ds = dataset_service.ingest_csv("Regional Sales", SALES_CSV)

        assert ds.storage_engine == StorageEngine.RELATIONAL
        assert ds.engine_table_name == f"rel_dataset_{ds.id}_regional_sales"
        assert ds.engine_table_name not in analytic_store.list_tables()

        rows = dataset_service.preview_rows(ds.id)
        assert [r["region"] for r in rows] == ["North", "South", "East"]
        assert rows[0]["shipped"] is True

    def test_relational_delete_drops_table(self, dataset_service, analytic_store, relational_engine, monkeypatch) -> None:
        monkeypatch.setattr(analytic_store, "insert_rows", _broken_insert)
        ds = dataset_service.ingest_csv("orders", b"id,amount\n1,10\n")
        assert ds.engine_table_name in inspect(relational_engine).get_table_names()

        dataset_service.delete_dataset(ds.id)
        assert ds.engine_table_name not in inspect(relational_engine).get_table_names()