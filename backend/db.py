"""Relational engine: table definitions, pooled engine cache and sample data."""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Dict

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    create_engine,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

logger = logging.getLogger(__name__)

metadata = MetaData()

# ------------------------- Built-in business data -------------------------
products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(200), nullable=False),
    Column("category", String(100), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("stock", Integer, nullable=False),
    Column("description", Text),
)

sales = Table(
    "sales",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("product_id", Integer, ForeignKey("products.id")),
    Column("quantity", Integer, nullable=False),
    Column("total_price", Numeric(10, 2), nullable=False),
    Column("sale_date", DateTime, server_default=func.now()),
)

BUILTIN_TABLES = ("products", "sales")

# ------------------------- Knowledge base -------------------------
knowledge_documents = Table(
    "knowledge_documents",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(500), nullable=False),
    Column("file_type", String(20)),
    Column("status", String(20), nullable=False, default="processing"),
    Column("chunk_count", Integer, nullable=False, default=0),
    Column("page_count", Integer, nullable=False, default=0),
    Column("used_fallback_extraction", Boolean, nullable=False, default=False),
    Column("error_message", Text),
    Column("created_at", DateTime, server_default=func.now()),
)

# Embedding stored as float32 bytes with its dimension
document_chunks = Table(
    "document_chunks",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("document_id", Integer, ForeignKey("knowledge_documents.id", ondelete="CASCADE"), nullable=False),
    Column("chunk_index", Integer, nullable=False),
    Column("content", Text, nullable=False),
    Column("page_number", Integer),
    Column("embedding", LargeBinary),
    Column("dim", Integer),
)

# ------------------------- Dataset registry -------------------------
datasets = Table(
    "datasets",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(300), nullable=False),
    Column("data_type", String(20), nullable=False, default="structured"),
    Column("row_count", Integer, nullable=False, default=0),
    Column("column_schema", Text, nullable=False, default="[]"),
    Column("storage_engine", String(20), nullable=False, default="analytic"),
    Column("engine_table_name", String(300)),
    Column("created_at", DateTime, server_default=func.now()),
)


# ------------------------- Engine Pooling -------------------------
_engine_cache: Dict[str, Engine] = {}


def get_engine(conn_str: str) -> Engine:
    eng = _engine_cache.get(conn_str)
    if eng is not None:
        return eng
    url = make_url(conn_str)
    kwargs = {"pool_pre_ping": True, "future": True}
    if url.get_backend_name().startswith("sqlite"):
        # SQLite needs special args for threading; make sure the file's directory exists
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)
    else:
        kwargs.update(pool_size=5, max_overflow=10)
    eng = create_engine(conn_str, **kwargs)
    _engine_cache[conn_str] = eng
    return eng


def init_schema(engine: Engine) -> None:
    metadata.create_all(engine)


SAMPLE_PRODUCTS = [
    {"name": "Laptop Pro", "category": "Electronics", "price": Decimal("1299.99"), "stock": 50,
     "description": "High performance laptop"},
    {"name": "Wireless Mouse", "category": "Accessories", "price": Decimal("29.99"), "stock": 200,
     "description": "Ergonomic wireless mouse"},
    {"name": "4K Monitor", "category": "Electronics", "price": Decimal("399.99"), "stock": 30,
     "description": "32-inch 4K display"},
    {"name": "Office Chair", "category": "Furniture", "price": Decimal("199.99"), "stock": 15,
     "description": "Comfortable mesh chair"},
]

# (product position in SAMPLE_PRODUCTS, quantity, total price)
SAMPLE_SALES = [
    (0, 1, Decimal("1299.99")),
    (1, 2, Decimal("59.98")),
    (2, 1, Decimal("399.99")),
    (1, 1, Decimal("29.99")),
]


def seed_sample_data(engine: Engine) -> bool:
    """Insert the sample products/sales when the products table is empty. Returns True if seeded."""
    with engine.begin() as conn:
        existing = conn.execute(select(func.count()).select_from(products)).scalar_one()
        if existing:
            return False
        product_ids = []
        for row in SAMPLE_PRODUCTS:
            result = conn.execute(insert(products).values(**row))
            product_ids.append(result.inserted_primary_key[0])
        conn.execute(
            insert(sales),
            [
                {"product_id": product_ids[pos], "quantity": qty, "total_price": total}
                for pos, qty, total in SAMPLE_SALES
            ],
        )
    logger.info("Seeded sample data: %d products, %d sales", len(SAMPLE_PRODUCTS), len(SAMPLE_SALES))
    return True
