# Unified question answering
# - SQL mode: describe schema -> generate SQL -> clean/validate -> route -> execute -> repair/fallback
# - RAG mode: hybrid chunk retrieval -> grounded answer synthesis

from __future__ import annotations

import json
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timedelta
from decimal import Decimal
from typing import Any, Dict, List

import numpy as np
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.api.services.analytic_store import AnalyticStore
from backend.api.services.answer_synthesizer import GENERATION_FAILED_MESSAGE, AnswerSynthesizer
from backend.api.services.dialect_router import route_query
from backend.api.services.errors import QueryExecutionError
from backend.api.services.llm_providers import FallbackGenerator
from backend.api.services.query_generator import QueryGenerator, clean_sql, fallback_query, is_valid_query
from backend.api.services.retrieval import HybridRetriever
from backend.api.services.schema_discovery import SchemaDescription, SchemaDiscovery
from backend.models import StorageEngine
from backend.nlp.intent_model import is_data_question

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "I couldn't execute the query. Please verify your question."
RESULTS_FALLBACK_ANSWER = "Here are the results."
SUMMARY_SYSTEM_PROMPT = "You are a helpful data assistant."
GENERAL_SYSTEM_PROMPT = (
    "You are a helpful assistant for a data analysis chatbot. Answer general questions briefly. "
    "If the user wants numbers from their data, suggest asking about the uploaded datasets or the "
    "products and sales tables."
)


# ------------------------- Value coercion -------------------------
def coerce_value(value: Any) -> Any:
    """Plain JSON-serializable values: numpy scalars, Decimals and 64-bit ints become numbers."""
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, np.generic):
        return coerce_value(value.item())
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Decimal):
        if not value.is_finite():
            return None
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return raw.hex()
    if isinstance(value, (datetime, date, dtime)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [coerce_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): coerce_value(v) for k, v in value.items()}
    return str(value)


def coerce_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{str(k): coerce_value(v) for k, v in row.items()} for row in rows]


@dataclass
class QueryOutcome:
    query: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    engine: StorageEngine | None = None
    repair_attempts: int = 0
    used_fallback: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


class QueryEngine:
    def __init__(
        self,
        relational: Engine,
        analytic: AnalyticStore,
        schema_discovery: SchemaDiscovery,
        query_generator: QueryGenerator,
        generator: FallbackGenerator,
        retriever: HybridRetriever,
        synthesizer: AnswerSynthesizer,
        max_repair_attempts: int = 2,
        topic_gating: bool = True,
        top_k: int = 5,
    ):
        self.relational = relational
        self.analytic = analytic
        self.schema_discovery = schema_discovery
        self.query_generator = query_generator
        self.generator = generator
        self.retriever = retriever
        self.synthesizer = synthesizer
        self.max_repair_attempts = max_repair_attempts
        self.topic_gating = topic_gating
        self.top_k = top_k
        self._history: List[Dict[str, Any]] = []
        self._metrics: Dict[str, Any] = {}
        self.reset_metrics()

    # ------------------------- Execution -------------------------
    def _run_relational(self, query: str) -> List[Dict[str, Any]]:
        try:
            with self.relational.connect() as conn:
                result = conn.exec_driver_sql(query)
                return [dict(r) for r in result.mappings().all()] if result.returns_rows else []
        except SQLAlchemyError as e:
            message = str(getattr(e, "orig", None) or e)
            logger.error("Relational query error: %s", message)
            raise QueryExecutionError(message, engine=StorageEngine.RELATIONAL.value, query=query) from e

    def execute(self, query: str, analytic_tables: List[str]) -> tuple[StorageEngine, List[Dict[str, Any]]]:
        engine = route_query(query, analytic_tables)
        logger.info("Executing on %s engine: %s", engine.value, query)
        if engine == StorageEngine.ANALYTIC:
            return engine, self.analytic.execute(query)
        return engine, self._run_relational(query)

    def _known_analytic_tables(self, schema: SchemaDescription) -> List[str]:
        tables = list(schema.analytic_tables)
        try:
            tables.extend(t for t in self.analytic.list_tables() if t not in tables)
        except QueryExecutionError as e:
            logger.warning("Could not list analytic tables: %s", e)
        return tables

    def execute_with_repair(self, question: str, raw_query: str, schema: SchemaDescription) -> QueryOutcome:
        """Clean, validate, execute and repair a generated query within the retry budget."""
        analytic_tables = self._known_analytic_tables(schema)
        used_fallback = False
        query = clean_sql(raw_query)
        if not is_valid_query(query):
            query = fallback_query(question, schema)
            used_fallback = True
            logger.warning("Generated SQL unusable; using fallback query: %s", query)

        repairs = 0
        while True:
            engine = route_query(query, analytic_tables)
            try:
                engine, rows = self.execute(query, analytic_tables)
                return QueryOutcome(query, coerce_rows(rows), None, engine, repairs, used_fallback)
            except QueryExecutionError as e:
                last_error = e.message

            if repairs >= self.max_repair_attempts:
                logger.error("Query failed after %d repair attempts: %s", repairs, last_error)
                return QueryOutcome(query, [], last_error, engine, repairs, used_fallback)

            repairs += 1
            repaired = self.query_generator.repair(question, query, last_error, schema.schema_text)
            if repaired and repaired != query and is_valid_query(repaired):
                logger.info("Repair attempt %d produced: %s", repairs, repaired)
                query = repaired
                continue
            query = fallback_query(question, schema)
            used_fallback = True
            logger.warning("Repair attempt %d unusable; using fallback query: %s", repairs, query)

    # ------------------------- Answers -------------------------
    def _summarize(self, question: str, outcome: QueryOutcome) -> str:
        sample = json.dumps(outcome.rows[:10], ensure_ascii=False, default=str)
        more = " ...(more rows)" if len(outcome.rows) > 10 else ""
        prompt = (
            f'User Question: "{question}"\n'
            f'SQL Query Executed: "{outcome.query}"\n'
            f"Data Returned: {sample}{more}\n\n"
            "Task: Provide a concise, friendly answer to the user's question based on the data returned.\n"
            "If the data is empty, say so politely.\n"
            "Do not mention the SQL or technical details in the answer, just the facts."
        )
        result = self.generator.generate(SUMMARY_SYSTEM_PROMPT, prompt, temperature=0.2, max_tokens=500)
        return result.text if result.ok else RESULTS_FALLBACK_ANSWER

    def _general_answer(self, question: str) -> str:
        result = self.generator.generate(GENERAL_SYSTEM_PROMPT, question, temperature=0.5, max_tokens=800)
        return result.text if result.ok else GENERATION_FAILED_MESSAGE

    def answer_from_data(self, question: str) -> Dict[str, Any]:
        try:
            schema = self.schema_discovery.describe_schema()
        except SQLAlchemyError as e:
            logger.exception("Schema description failed")
            return {"answer": APOLOGY_MESSAGE, "error": str(e)}

        if self.topic_gating and not is_data_question(
            question, schema.dataset_names, schema.builtin_tables + schema.analytic_tables
        ):
            self._inc("general_answers")
            return {"answer": self._general_answer(question)}

        raw = self.query_generator.generate(question, schema.schema_text)
        outcome = self.execute_with_repair(question, raw, schema)
        self._inc("repair_attempts", outcome.repair_attempts)
        if outcome.used_fallback:
            self._inc("fallback_queries")
        if not outcome.success:
            self._inc("failed_queries")
            return {"answer": APOLOGY_MESSAGE, "query_text": outcome.query, "rows": [], "error": outcome.error}
        return {
            "answer": self._summarize(question, outcome),
            "query_text": outcome.query,
            "rows": outcome.rows,
        }

    def answer_from_documents(self, question: str) -> Dict[str, Any]:
        search = self.retriever.search(question, self.top_k)
        answer = self.synthesizer.synthesize(question, search.results)
        return {"answer": answer, "sources": [r.to_dict() for r in search.results]}

    def ask_question(self, question: str, mode: str = "sql") -> Dict[str, Any]:
        """Boundary operation: {answer, query_text?, rows?, sources?, error?}."""
        t0 = time.time()
        self._inc("total_queries")
        if mode == "rag":
            self._inc("rag_queries")
            result = self.answer_from_documents(question)
        else:
            self._inc("sql_queries")
            result = self.answer_from_data(question)
        elapsed = time.time() - t0
        self._record_time(elapsed)
        self._history.append(
            {"q": question, "mode": mode, "time": elapsed, "ok": "error" not in result, "sql": result.get("query_text")}
        )
        if len(self._history) > 100:
            del self._history[:-100]
        return result

    # ------------------------- History & Metrics -------------------------
    def _record_time(self, elapsed: float) -> None:
        self._metrics["exec_times"].append(elapsed)
        if len(self._metrics["exec_times"]) > 500:
            del self._metrics["exec_times"][:-500]

    def _inc(self, name: str, delta: int = 1) -> None:
        self._metrics[name] = self._metrics.get(name, 0) + delta

    def recent_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(self._history[-limit:])[::-1]

    def get_metrics(self) -> Dict[str, Any]:
        times = self._metrics.get("exec_times", [])
        avg = sum(times) / len(times) if times else 0.0
        p95 = 0.0
        if times:
            s = sorted(times)
            p95 = s[min(len(s) - 1, int(0.95 * len(s)))]
        try:
            kb = self.retriever.store.stats()
        except SQLAlchemyError:
            logger.exception("Could not read knowledge base stats")
            kb = {"total_documents": 0, "total_chunks": 0}
        return {
            **{k: v for k, v in self._metrics.items() if k != "exec_times"},
            "avg_exec_sec": avg,
            "p95_exec_sec": p95,
            "recent_exec_times": times[-20:],
            "indexed_documents": kb["total_documents"],
            "indexed_chunks": kb["total_chunks"],
        }

    def reset_metrics(self) -> Dict[str, Any]:
        self._metrics = {
            "total_queries": 0,
            "sql_queries": 0,
            "rag_queries": 0,
            "general_answers": 0,
            "repair_attempts": 0,
            "fallback_queries": 0,
            "failed_queries": 0,
            "exec_times": [],
        }
        return {"ok": True}
