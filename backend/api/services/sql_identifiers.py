"""Identifier sanitization and quoting. All generated table/column names go through here."""

from __future__ import annotations

import re

ANALYTIC_TABLE_PREFIX = "dataset_"
RELATIONAL_TABLE_PREFIX = "rel_dataset_"


def sanitize_identifier(name: str, default: str = "col") -> str:
    """Lowercase, fold non-alphanumerics to '_', collapse repeats, trim leading/trailing '_'."""
    s = re.sub(r"[^a-z0-9_]", "_", (name or "").lower())
    s = re.sub(r"_+", "_", s).strip("_")
    return s or default


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def dataset_table_name(dataset_id: int, dataset_name: str, prefix: str = ANALYTIC_TABLE_PREFIX) -> str:
    return f"{prefix}{int(dataset_id)}_{sanitize_identifier(dataset_name, default='data')}"


def unique_column_names(names: list[str]) -> list[str]:
    """Sanitized names, suffixed with _2, _3 ... when two source columns fold to the same identifier."""
    used: set[str] = set()
    out = []
    for n in names:
        base = sanitize_identifier(n)
        candidate, suffix = base, 1
        while candidate in used:
            suffix += 1
            candidate = f"{base}_{suffix}"
        used.add(candidate)
        out.append(candidate)
    return out
