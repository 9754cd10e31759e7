"""Tests for the question-answering pipeline: repair loop, routing, coercion and RAG mode."""

import json
from datetime import date, datetime
from decimal import Decimal

import numpy as np
import pytest

from backend.api.services.answer_synthesizer import NO_DOCUMENTS_MESSAGE
from backend.api.services.query_engine import APOLOGY_MESSAGE, RESULTS_FALLBACK_ANSWER, coerce_rows, coerce_value
from backend.models import NewChunk, StorageEngine

CSV = b"Region,Amount\nNorth,10\nSouth,20\n"


class TestSqlMode:
    """Generated query executes first time."""

    def test_product_count(self, query_engine, chat) -> None:
        chat.sql = "SELECT COUNT(*) AS count FROM products"
        result = query_engine.ask_question("total products count")

        assert result["rows"] == [{"count": 4}]
        assert result["query_text"] == "SELECT COUNT(*) AS count FROM products"
        assert result["answer"] == "Summary answer."
        assert "error" not in result
        assert chat.count("repair") == 0

    def test_fenced_output_is_cleaned(self, query_engine, chat) -> None:
        chat.sql = "```sql\nSELECT name FROM products WHERE stock < 20;\n```"
        result = query_engine.ask_question("which products are low on stock?")
        assert result["query_text"] == "SELECT name FROM products WHERE stock < 20"
        assert result["rows"] == [{"name": "Office Chair"}]

    def test_numeric_results_are_plain_numbers(self, query_engine, chat) -> None:
        chat.sql = "SELECT SUM(quantity) AS total_quantity, MAX(price) AS top_price FROM sales JOIN products ON products.id = sales.product_id"
        result = query_engine.ask_question("total quantity sold")
        json.dumps(result)
        assert result["rows"][0]["total_quantity"] == 5

    def test_summary_failure_uses_plain_answer(self, query_engine, chat) -> None:
        chat.sql = "SELECT COUNT(*) AS count FROM sales"
        chat.summary = ""
        result = query_engine.ask_question("how many sales")
        assert result["answer"] == RESULTS_FALLBACK_ANSWER
        assert result["rows"] == [{"count": 4}]

    def test_analytic_dataset_is_routed_to_duckdb(self, query_engine, chat, dataset_service) -> None:
        ds = dataset_service.ingest_csv("regional", CSV)
        chat.sql = f'SELECT SUM("amount") AS total FROM "{ds.engine_table_name}"'
        result = query_engine.ask_question("total amount in regional")
        assert result["rows"] == [{"total": 30}]

    def test_execute_reports_engine(self, query_engine, dataset_service) -> None:
        ds = dataset_service.ingest_csv("regional", CSV)
        engine, _ = query_engine.execute(f'SELECT * FROM "{ds.engine_table_name}"', [ds.engine_table_name])
        assert engine == StorageEngine.ANALYTIC
        engine, rows = query_engine.execute("SELECT COUNT(*) AS n FROM products", [ds.engine_table_name])
        assert engine == StorageEngine.RELATIONAL
        assert rows == [{"n": 4}]


class TestRepairLoop:
    """Failed queries are repaired up to the budget, then reported."""

    def test_dropped_dataset_exhausts_budget(self, query_engine, chat, dataset_service, analytic_store) -> None:
        ds = dataset_service.ingest_csv("regional", CSV)
        table = ds.engine_table_name
        analytic_store.drop_table(table)
        chat.sql = f'SELECT SUM("amount") AS total FROM "{table}"'
        chat.repairs = [f'SELECT COUNT(*) AS count FROM "{table}"', f'SELECT * FROM "{table}" LIMIT 10']

        result = query_engine.ask_question("total amount in regional")

        assert result["answer"] == APOLOGY_MESSAGE
        assert result["error"]
        assert result["rows"] == []
        assert result["query_text"] == f'SELECT * FROM "{table}" LIMIT 10'
        assert chat.count("repair") == 2
        assert chat.count("summary") == 0

    def test_repair_fixes_query(self, query_engine, chat) -> None:
        chat.sql = "SELECT nme FROM products"
        chat.repairs = ["SELECT name FROM products WHERE category = 'Furniture'"]
        result = query_engine.ask_question("list furniture products")
        assert result["rows"] == [{"name": "Office Chair"}]
        assert chat.count("repair") == 1

    def test_unusable_repair_uses_fallback(self, query_engine, chat) -> None:
        chat.sql = "SELECT nme FROM products"
        chat.repairs = ["Sorry, I can't fix that."]
        result = query_engine.ask_question("how many products are there?")
        assert result["query_text"] == "SELECT COUNT(*) AS count FROM products"
        assert result["rows"] == [{"count": 4}]
        assert query_engine.get_metrics()["fallback_queries"] == 1

    def test_invalid_generation_uses_fallback_without_repair(self, query_engine, chat) -> None:
        chat.sql = "I think you should look at the products table."
        result = query_engine.ask_question("How many products do we have?")
        assert result["query_text"] == "SELECT COUNT(*) AS count FROM products"
        assert result["rows"] == [{"count": 4}]
        assert chat.count("repair") == 0

    def test_generation_outage_falls_back(self, query_engine, fake_provider) -> None:
        fake_provider.error = "provider down"
        result = query_engine.ask_question("what is the total revenue?")
        assert result["query_text"] == "SELECT SUM(total_price) AS total_revenue FROM sales"
        assert result["rows"][0]["total_revenue"] == pytest.approx(1789.95)
        assert result["answer"] == RESULTS_FALLBACK_ANSWER

    def test_repair_budget_is_configurable(self, query_engine, chat) -> None:
        query_engine.max_repair_attempts = 0
        chat.sql = "SELECT nme FROM products"
        result = query_engine.ask_question("list products")
        assert result["answer"] == APOLOGY_MESSAGE
        assert "nme" in result["error"]
        assert chat.count("repair") == 0


class TestTopicGate:
    """Non-data questions skip SQL generation."""

    def test_chit_chat_gets_general_answer(self, query_engine, chat) -> None:
        result = query_engine.ask_question("Hello there, who are you?")
        assert result == {"answer": "General answer."}
        assert chat.count("sql") == 0

    def test_gate_can_be_disabled(self, query_engine, chat) -> None:
        query_engine.topic_gating = False
        chat.sql = "SELECT COUNT(*) AS count FROM products"
        assert query_engine.ask_question("Hello there")["rows"] == [{"count": 4}]


class TestRagMode:
    """Document questions go through retrieval and synthesis."""

    def test_empty_knowledge_base(self, query_engine, chat, fake_provider) -> None:
        result = query_engine.ask_question("What is the vacation policy?", mode="rag")
        assert result == {"answer": NO_DOCUMENTS_MESSAGE, "sources": []}
        assert fake_provider.calls == []

    def test_answer_with_sources(self, query_engine, knowledge_store) -> None:
        doc = knowledge_store.create_document("handbook.txt", "txt")
        knowledge_store.add_chunks(doc.id, [NewChunk(index=0, content="Vacation policy: 20 days per year.")])
        knowledge_store.mark_ready(doc.id, chunk_count=1, page_count=1)

        result = query_engine.ask_question("vacation policy", mode="rag")
        assert result["answer"] == "RAG answer."
        assert result["sources"][0]["document_name"] == "handbook.txt"
        assert "query_text" not in result


class TestHistoryAndMetrics:
    """Counters and recent questions."""

    def test_history_and_metrics(self, query_engine, chat) -> None:
        chat.sql = "SELECT COUNT(*) AS count FROM products"
        query_engine.ask_question("count products")
        query_engine.ask_question("anything in the docs?", mode="rag")

        history = query_engine.recent_history()
        assert [h["mode"] for h in history] == ["rag", "sql"]
        metrics = query_engine.get_metrics()
        assert metrics["total_queries"] == 2
        assert metrics["sql_queries"] == 1
        assert metrics["rag_queries"] == 1
        assert metrics["indexed_documents"] == 0

        query_engine.reset_metrics()
        assert query_engine.get_metrics()["total_queries"] == 0


class TestCoercion:
    """Engine values become JSON-safe."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (np.int64(7), 7),
            (np.float32(1.5), 1.5),
            (np.bool_(True), True),
            (Decimal("12.50"), 12.5),
            (Decimal("4"), 4),
            (float("nan"), None),
            (b"abc", "abc"),
            (b"\xff\x00", "ff00"),
            (date(2024, 1, 5), "2024-01-05"),
            (datetime(2024, 1, 5, 10, 30), "2024-01-05T10:30:00"),
            (None, None),
        ],
    )
    def test_coerce_value(self, value, expected) -> None:
        assert coerce_value(value) == expected

    def test_coerce_rows_serializable(self) -> None:
        rows = coerce_rows([{"n": np.int64(3), "amount": Decimal("1.10"), "tags": [np.int32(1)]}])
        assert json.loads(json.dumps(rows)) == [{"n": 3, "amount": 1.1, "tags": [1]}]
