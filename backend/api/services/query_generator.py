"""Natural-language to SQL generation, cleaning and deterministic fallback queries."""

from __future__ import annotations

import logging
import re
from typing import List, Tuple

from backend.api.services.llm_providers import FallbackGenerator
from backend.api.services.schema_discovery import SchemaDescription
from backend.api.services.sql_identifiers import quote_identifier

logger = logging.getLogger(__name__)

QUERY_START_KEYWORD = "SELECT"

FEW_SHOT_EXAMPLES: List[Tuple[str, str]] = [
    ("How many products are there?", "SELECT COUNT(*) AS count FROM products"),
    (
        "What is the average price per category?",
        "SELECT category, ROUND(AVG(CAST(price AS REAL)), 2) AS avg_price FROM products GROUP BY category ORDER BY avg_price DESC",
    ),
    (
        "Top 3 best-selling products",
        "SELECT p.name, SUM(s.quantity) AS total_quantity FROM sales s JOIN products p ON s.product_id = p.id "
        "GROUP BY p.name ORDER BY total_quantity DESC LIMIT 3",
    ),
    ("What is the total revenue?", "SELECT SUM(CAST(total_price AS REAL)) AS total_revenue FROM sales"),
    ("Which products are low on stock?", "SELECT name, stock FROM products WHERE stock < 20 ORDER BY stock ASC"),
]

SQL_SYSTEM_PROMPT = """You are a SQL expert.
Convert the user's natural language question into ONE valid SQL SELECT query.

Schema:
{schema}

Rules:
1. Return ONLY the raw SQL query. No markdown, no code fences, no explanations.
2. Use only tables and columns that appear in the schema, spelled exactly as shown.
3. Uploaded dataset tables live in the analytic engine: always double-quote their table and column names.
4. Never mix built-in tables and uploaded dataset tables in one query.
5. Aggregate with GROUP BY and JOIN on the documented relationships; add LIMIT for listings.
6. CAST numeric text before arithmetic.

Examples:
{examples}"""

REPAIR_SYSTEM_PROMPT = """You are a SQL expert fixing a query that failed.
Schema:
{schema}

Return ONLY the corrected SQL SELECT query. No markdown, no explanations."""

_FENCE_RE = re.compile(r"```[a-zA-Z]*")
_SELECT_RE = re.compile(r"\bSELECT\b[\s\S]*?(?=;|$)", re.IGNORECASE)


def format_examples() -> str:
    return "\n".join(f"Q: {q}\nSQL: {sql}" for q, sql in FEW_SHOT_EXAMPLES)


def clean_sql(raw: str | None) -> str:
    """Strip code fences, keep the first SELECT statement, drop the terminator. Empty if none found."""
    if not raw:
        return ""
    text = _FENCE_RE.sub("", raw).replace("`", "")
    m = _SELECT_RE.search(text)
    if not m:
        return ""
    return m.group(0).strip().rstrip(";").strip()


def is_valid_query(cleaned: str) -> bool:
    return bool(cleaned) and cleaned.lstrip().upper().startswith(QUERY_START_KEYWORD)


# ------------------------- Deterministic fallback -------------------------
_FALLBACK_RULES: List[Tuple[re.Pattern, str]] = [
    (
        re.compile(r"(how many|count|number of|개수|몇).*(sales|orders|판매|주문)", re.I),
        "SELECT COUNT(*) AS count FROM sales",
    ),
    (
        re.compile(r"revenue|income|earning|total sales|sales total|매출|수익", re.I),
        "SELECT SUM(total_price) AS total_revenue FROM sales",
    ),
    (
        re.compile(r"best[- ]?sell|top[- ]?sell|most sold|popular|인기|가장 많이 팔", re.I),
        "SELECT p.name, SUM(s.quantity) AS total_quantity FROM sales s JOIN products p ON s.product_id = p.id "
        "GROUP BY p.name ORDER BY total_quantity DESC LIMIT 5",
    ),
    (
        re.compile(r"(how many|count|number of|개수|몇).*(products?|items?|제품|상품)", re.I),
        "SELECT COUNT(*) AS count FROM products",
    ),
    (
        re.compile(r"stock|inventory|재고", re.I),
        "SELECT name, stock FROM products ORDER BY stock ASC",
    ),
    (
        re.compile(r"categor|카테고리|분류", re.I),
        "SELECT category, COUNT(*) AS count FROM products GROUP BY category ORDER BY count DESC",
    ),
    (
        re.compile(r"\bsales\b|\borders?\b|판매|주문", re.I),
        "SELECT * FROM sales ORDER BY sale_date DESC LIMIT 10",
    ),
]

DEFAULT_FALLBACK_QUERY = "SELECT * FROM products LIMIT 10"


def fallback_query(question: str, schema: SchemaDescription | None = None) -> str:
    """Canned query chosen by keyword matches in the question."""
    q = question or ""
    if schema is not None:
        for name, table in schema.dataset_tables.items():
            if re.search(rf"(?<!\w){re.escape(name)}(?!\w)", q, re.I) or table.lower() in q.lower():
                return f"SELECT * FROM {quote_identifier(table)} LIMIT 10"
    for pattern, sql in _FALLBACK_RULES:
        if pattern.search(q):
            return sql
    return DEFAULT_FALLBACK_QUERY


class QueryGenerator:
    def __init__(self, generator: FallbackGenerator, max_tokens: int = 500):
        self.generator = generator
        self.max_tokens = max_tokens

    def generate(self, question: str, schema_text: str) -> str:
        """Raw provider output (uncleaned); empty string when every candidate fails."""
        system_prompt = SQL_SYSTEM_PROMPT.format(schema=schema_text, examples=format_examples())
        result = self.generator.generate(system_prompt, question, temperature=0, max_tokens=self.max_tokens)
        if not result.ok:
            logger.warning("SQL generation failed: %s", result.error)
            return ""
        logger.info("Generated SQL (raw): %s", result.text)
        return result.text

    def repair(self, question: str, failed_query: str, error: str, schema_text: str) -> str:
        """Cleaned repaired query; empty if the provider gave nothing usable."""
        system_prompt = REPAIR_SYSTEM_PROMPT.format(schema=schema_text)
        user_prompt = (
            f"Question: {question}\n\n"
            f"Failed query:\n{failed_query}\n\n"
            f"Error message:\n{error}\n\n"
            "Write a corrected query that answers the question."
        )
        result = self.generator.generate(system_prompt, user_prompt, temperature=0, max_tokens=self.max_tokens)
        if not result.ok:
            logger.warning("SQL repair failed: %s", result.error)
            return ""
        return clean_sql(result.text)
