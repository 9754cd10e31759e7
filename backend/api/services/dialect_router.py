from __future__ import annotations

import re
from typing import Iterable

from backend.api.services.sql_identifiers import ANALYTIC_TABLE_PREFIX
from backend.models import StorageEngine

# Generated analytic tables look like dataset_<id>_<name>; known tables may lag behind
GENERATED_TABLE_RE = re.compile(rf"(?<![\w]){re.escape(ANALYTIC_TABLE_PREFIX)}\d+\w*", re.IGNORECASE)


def references_table(query: str, table: str) -> bool:
    if not table:
        return False
    name = re.escape(table)
    if re.search(rf'"{name}"', query, re.IGNORECASE):
        return True
    return re.search(rf"(?<!\w){name}(?!\w)", query, re.IGNORECASE) is not None


def route_query(query: str, analytic_tables: Iterable[str]) -> StorageEngine:
    """Pick the engine that must run a cleaned query, based on the tables it references."""
    if any(references_table(query, t) for t in analytic_tables):
        return StorageEngine.ANALYTIC
    if GENERATED_TABLE_RE.search(query):
        return StorageEngine.ANALYTIC
    return StorageEngine.RELATIONAL
