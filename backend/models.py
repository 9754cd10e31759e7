from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List


class DocumentStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class StorageEngine(str, Enum):
    ANALYTIC = "analytic"
    RELATIONAL = "relational"


class DataType(str, Enum):
    STRUCTURED = "structured"
    UNSTRUCTURED = "unstructured"


class ColumnType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"


@dataclass
class ColumnDef:
    name: str
    type: ColumnType = ColumnType.TEXT

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type.value}


@dataclass
class Document:
    id: int
    name: str
    status: DocumentStatus
    chunk_count: int = 0
    page_count: int = 0
    file_type: str | None = None
    error_message: str | None = None
    used_fallback_extraction: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class Chunk:
    id: int
    document_id: int
    index: int
    content: str
    page_number: int | None = None
    embedding: List[float] | None = None


@dataclass
class NewChunk:
    """A chunk produced by processing, before it is stored."""

    index: int
    content: str
    page_number: int | None = None
    embedding: List[float] | None = None


@dataclass
class SearchResult:
    chunk_id: int
    document_id: int
    document_name: str
    content: str
    page_number: int | None
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResponse:
    results: List[SearchResult] = field(default_factory=list)
    total_found: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"results": [r.to_dict() for r in self.results], "total_found": self.total_found}


@dataclass
class Dataset:
    id: int
    name: str
    data_type: DataType
    row_count: int
    columns: List[ColumnDef]
    storage_engine: StorageEngine
    engine_table_name: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "data_type": self.data_type.value,
            "row_count": self.row_count,
            "columns": [c.to_dict() for c in self.columns],
            "storage_engine": self.storage_engine.value,
            "engine_table_name": self.engine_table_name,
        }
