"""Persistence for knowledge-base documents and their chunks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import numpy as np
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Engine

from backend.api.services.errors import NotFoundError
from backend.db import document_chunks, knowledge_documents
from backend.models import Chunk, Document, DocumentStatus, NewChunk

logger = logging.getLogger(__name__)


@dataclass
class RetrievableChunk:
    chunk: Chunk
    document_name: str


def _encode_embedding(embedding: Sequence[float] | None) -> tuple[bytes | None, int | None]:
    if not embedding:
        return None, None
    vec = np.asarray(embedding, dtype=np.float32)
    return vec.tobytes(), int(vec.shape[0])


def _decode_embedding(blob: bytes | None, dim: int | None) -> List[float] | None:
    if blob is None or not dim:
        return None
    vec = np.frombuffer(blob, dtype=np.float32)
    if vec.shape[0] != dim:
        return None
    return vec.tolist()


def _row_to_document(row: Any) -> Document:
    return Document(
        id=row.id,
        name=row.name,
        status=DocumentStatus(row.status),
        chunk_count=row.chunk_count or 0,
        page_count=row.page_count or 0,
        file_type=row.file_type,
        error_message=row.error_message,
        used_fallback_extraction=bool(row.used_fallback_extraction),
    )


class KnowledgeStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    # ------------------------- Documents -------------------------
    def create_document(self, name: str, file_type: str | None = None) -> Document:
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(knowledge_documents).values(
                    name=name,
                    file_type=file_type,
                    status=DocumentStatus.PROCESSING.value,
                    chunk_count=0,
                    page_count=0,
                    used_fallback_extraction=False,
                )
            )
            doc_id = result.inserted_primary_key[0]
        logger.info("Document %s (%s) created in processing state", doc_id, name)
        return self.get_document(doc_id)

    def get_document(self, document_id: int) -> Document:
        with self.engine.connect() as conn:
            row = conn.execute(select(knowledge_documents).where(knowledge_documents.c.id == document_id)).first()
        if row is None:
            raise NotFoundError(f"Document {document_id} not found")
        return _row_to_document(row)

    def list_documents(self) -> List[Document]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(knowledge_documents).order_by(knowledge_documents.c.id.desc())).all()
        return [_row_to_document(r) for r in rows]

    def _finish(self, document_id: int, **values: Any) -> bool:
        # Only a processing document may transition; ready/error are terminal
        with self.engine.begin() as conn:
            result = conn.execute(
                update(knowledge_documents)
                .where(knowledge_documents.c.id == document_id)
                .where(knowledge_documents.c.status == DocumentStatus.PROCESSING.value)
                .values(**values)
            )
        if result.rowcount == 0:
            logger.warning("Document %s is not processing; status change %s ignored", document_id, values.get("status"))
            return False
        return True

    def mark_ready(self, document_id: int, chunk_count: int, page_count: int, used_fallback_extraction: bool = False) -> bool:
        ok = self._finish(
            document_id,
            status=DocumentStatus.READY.value,
            chunk_count=chunk_count,
            page_count=page_count,
            used_fallback_extraction=used_fallback_extraction,
        )
        if ok:
            logger.info("Document %s ready with %d chunks", document_id, chunk_count)
        return ok

    def mark_error(self, document_id: int, message: str) -> bool:
        ok = self._finish(
            document_id,
            status=DocumentStatus.ERROR.value,
            chunk_count=0,
            error_message=message or "Document processing failed",
        )
        if ok:
            logger.info("Document %s failed: %s", document_id, message)
        return ok

    def delete_document(self, document_id: int) -> None:
        self.get_document(document_id)
        with self.engine.begin() as conn:
            conn.execute(delete(document_chunks).where(document_chunks.c.document_id == document_id))
            conn.execute(delete(knowledge_documents).where(knowledge_documents.c.id == document_id))
        logger.info("Document %s deleted with its chunks", document_id)

    # ------------------------- Chunks -------------------------
    def add_chunks(self, document_id: int, chunks: Sequence[NewChunk]) -> None:
        if not chunks:
            return
        rows = []
        for ch in chunks:
            blob, dim = _encode_embedding(ch.embedding)
            rows.append(
                {
                    "document_id": document_id,
                    "chunk_index": ch.index,
                    "content": ch.content,
                    "page_number": ch.page_number,
                    "embedding": blob,
                    "dim": dim,
                }
            )
        with self.engine.begin() as conn:
            conn.execute(insert(document_chunks), rows)

    def delete_chunks(self, document_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(document_chunks).where(document_chunks.c.document_id == document_id))

    def chunk_count(self, document_id: int) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(document_chunks).where(document_chunks.c.document_id == document_id)
            ).scalar_one()

    def ready_chunks(self) -> List[RetrievableChunk]:
        """All chunks of ready documents, in insertion order."""
        stmt = (
            select(
                document_chunks.c.id,
                document_chunks.c.document_id,
                document_chunks.c.chunk_index,
                document_chunks.c.content,
                document_chunks.c.page_number,
                document_chunks.c.embedding,
                document_chunks.c.dim,
                knowledge_documents.c.name.label("document_name"),
            )
            .select_from(document_chunks.join(knowledge_documents, document_chunks.c.document_id == knowledge_documents.c.id))
            .where(knowledge_documents.c.status == DocumentStatus.READY.value)
            .order_by(document_chunks.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [
            RetrievableChunk(
                chunk=Chunk(
                    id=r.id,
                    document_id=r.document_id,
                    index=r.chunk_index,
                    content=r.content,
                    page_number=r.page_number,
                    embedding=_decode_embedding(r.embedding, r.dim),
                ),
                document_name=r.document_name,
            )
            for r in rows
        ]

    def stats(self) -> Dict[str, Any]:
        with self.engine.connect() as conn:
            by_status = conn.execute(
                select(knowledge_documents.c.status, func.count()).group_by(knowledge_documents.c.status)
            ).all()
            total_chunks = conn.execute(select(func.count()).select_from(document_chunks)).scalar_one()
        counts = {status: int(n) for status, n in by_status}
        return {
            "total_documents": sum(counts.values()),
            "total_chunks": int(total_chunks),
            "documents_by_status": counts,
        }
