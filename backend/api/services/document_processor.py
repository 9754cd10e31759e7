from __future__ import annotations

import io
import logging
import math
import os
import re
import zipfile
from dataclasses import dataclass, field
from typing import List

from docx import Document as DocxDocument
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from backend.api.services.embeddings import EmbeddingProvider
from backend.api.services.errors import ExtractionError, NotFoundError
from backend.api.services.knowledge_store import KnowledgeStore
from backend.models import Document, DocumentStatus, NewChunk

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".pdf": "pdf", ".docx": "docx", ".txt": "txt", ".md": "txt"}
MAX_CHUNKS_PER_DOCUMENT = 5000


@dataclass
class ExtractedText:
    text: str
    page_count: int
    used_fallback_extraction: bool = False
    # per-page text when the format has pages
    pages: List[str] = field(default_factory=list)


def detect_doc_type(filename: str) -> str | None:
    return SUPPORTED_EXTENSIONS.get(os.path.splitext(filename or "")[1].lower())


def clean_text(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\t", " ")
    text = re.sub(r" +", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


class DocumentTextExtractor:
    """Plain text from PDF/DOCX/TXT uploads."""

    def extract(self, file_bytes: bytes, file_name: str) -> ExtractedText:
        doc_type = detect_doc_type(file_name)
        if doc_type == "pdf":
            return self._extract_pdf(file_bytes)
        if doc_type == "docx":
            return self._extract_docx(file_bytes)
        if doc_type == "txt":
            return self._extract_txt(file_bytes)
        raise ExtractionError(f"Unsupported file type: {os.path.splitext(file_name)[1] or file_name}")

    def _extract_pdf(self, file_bytes: bytes) -> ExtractedText:
        try:
            reader = PdfReader(io.BytesIO(file_bytes))
        except (PdfReadError, ValueError) as e:
            raise ExtractionError(f"PDF parsing failed: {e}") from e
        pages: List[str] = []
        for page in reader.pages:
            try:
                pages.append(clean_text(page.extract_text() or ""))
            except Exception:
                logger.warning("Could not extract text from a PDF page; leaving it empty")
                pages.append("")
        text = "\n\n".join(p for p in pages if p)
        if not text.strip():
            raise ExtractionError("PDF contains no extractable text (scanned or image-only document)")
        return ExtractedText(text=text, page_count=len(pages) or 1, pages=pages)

    def _extract_docx(self, file_bytes: bytes) -> ExtractedText:
        used_fallback = False
        try:
            doc = DocxDocument(io.BytesIO(file_bytes))
            text = "\n\n".join(p.text for p in doc.paragraphs)
        except Exception as e:
            logger.warning("Word parsing failed (%s); reading document XML directly", e)
            text = self._docx_xml_text(file_bytes)
            used_fallback = True
        text = clean_text(text)
        paragraphs = [p for p in re.split(r"\n\n+", text) if p.strip()]
        return ExtractedText(
            text=text,
            page_count=max(1, math.ceil(len(paragraphs) / 20)),
            used_fallback_extraction=used_fallback,
        )

    @staticmethod
    def _docx_xml_text(file_bytes: bytes) -> str:
        try:
            with zipfile.ZipFile(io.BytesIO(file_bytes)) as zf:
                xml = zf.read("word/document.xml").decode("utf-8", errors="ignore")
        except (zipfile.BadZipFile, KeyError) as e:
            raise ExtractionError("Word document parsing failed") from e
        xml = re.sub(r"</w:p>", "\n\n", xml)
        return re.sub(r"<[^>]+>", "", xml)

    def _extract_txt(self, file_bytes: bytes) -> ExtractedText:
        try:
            return ExtractedText(text=clean_text(file_bytes.decode("utf-8")), page_count=1)
        except UnicodeDecodeError:
            return ExtractedText(
                text=clean_text(file_bytes.decode("latin-1", errors="ignore")),
                page_count=1,
                used_fallback_extraction=True,
            )


# ------------------------- Chunking -------------------------
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?。！？])\s+")


def _pack_words(text: str, chunk_size: int) -> List[str]:
    chunks: List[str] = []
    buf = ""
    for word in text.split():
        if buf and len(buf) + len(word) + 1 > chunk_size:
            chunks.append(buf)
            buf = word
        else:
            buf = f"{buf} {word}" if buf else word
    if buf:
        chunks.append(buf)
    return chunks


def chunk_text(text: str, chunk_size: int = 500, chunk_overlap: int = 50) -> List[str]:
    """Sentence-packed chunks of about chunk_size chars, each starting with the tail words of the previous one."""
    text = (text or "").strip()
    if not text:
        return []
    overlap_words = math.ceil(chunk_overlap / 5) if chunk_overlap > 0 else 0
    chunks: List[str] = []
    current = ""
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        if current and len(current) + len(sentence) + 1 > chunk_size:
            chunks.append(current.strip())
            tail = current.split()[-overlap_words:] if overlap_words else []
            current = " ".join(tail + [sentence])
        else:
            current = f"{current} {sentence}" if current else sentence
    if current.strip():
        chunks.append(current.strip())

    # a single sentence far over the limit is re-packed word by word
    out: List[str] = []
    for c in chunks:
        out.extend(_pack_words(c, chunk_size) if len(c) > chunk_size * 2 else [c])
    return out


class DocumentProcessor:
    def __init__(
        self,
        store: KnowledgeStore,
        extractor: DocumentTextExtractor | None = None,
        embedder: EmbeddingProvider | None = None,
        chunk_size: int = 500,
        chunk_overlap: int = 50,
    ):
        self.store = store
        self.extractor = extractor or DocumentTextExtractor()
        self.embedder = embedder
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def register_upload(self, file_name: str) -> Document:
        return self.store.create_document(file_name, detect_doc_type(file_name))

    def build_chunks(self, extracted: ExtractedText) -> List[NewChunk]:
        chunks: List[NewChunk] = []
        if extracted.pages:
            for page_number, page_text in enumerate(extracted.pages, start=1):
                for piece in chunk_text(page_text, self.chunk_size, self.chunk_overlap):
                    chunks.append(NewChunk(index=len(chunks), content=piece, page_number=page_number))
        else:
            for piece in chunk_text(extracted.text, self.chunk_size, self.chunk_overlap):
                chunks.append(NewChunk(index=len(chunks), content=piece))
        if len(chunks) > MAX_CHUNKS_PER_DOCUMENT:
            logger.warning(
                "Document produced %d chunks; dropping %d beyond the limit of %d",
                len(chunks),
                len(chunks) - MAX_CHUNKS_PER_DOCUMENT,
                MAX_CHUNKS_PER_DOCUMENT,
            )
        return chunks[:MAX_CHUNKS_PER_DOCUMENT]

    def _embed(self, chunks: List[NewChunk]) -> None:
        if self.embedder is None or not chunks:
            return
        try:
            vectors = self.embedder.embed_many([c.content for c in chunks], batch_size=64)
        except Exception as e:
            logger.warning("Embedding failed (%s); chunks stored without vectors", e)
            return
        for chunk, vec in zip(chunks, vectors):
            chunk.embedding = vec

    def _is_processing(self, document_id: int) -> bool:
        try:
            return self.store.get_document(document_id).status == DocumentStatus.PROCESSING
        except NotFoundError:
            return False

    def process(self, document_id: int, file_bytes: bytes, file_name: str) -> Document | None:
        """Extract -> chunk -> embed -> store, then move the document to ready or error.

        Returns None when the document was deleted before processing finished.
        """
        if not self._is_processing(document_id):
            logger.warning("Document %s (%s) is no longer processing; skipped", document_id, file_name)
            return None
        try:
            extracted = self.extractor.extract(file_bytes, file_name)
            chunks = self.build_chunks(extracted)
            if not chunks:
                raise ExtractionError("No text could be extracted from the document")
            self._embed(chunks)
            if not self._is_processing(document_id):
                logger.warning("Document %s (%s) removed during processing; chunks discarded", document_id, file_name)
                return None
            self.store.add_chunks(document_id, chunks)
            if not self.store.mark_ready(
                document_id,
                chunk_count=len(chunks),
                page_count=extracted.page_count,
                used_fallback_extraction=extracted.used_fallback_extraction,
            ):
                # removed while chunks were being written
                self.store.delete_chunks(document_id)
        except Exception as e:
            logger.exception("Processing of document %s (%s) failed", document_id, file_name)
            self.store.delete_chunks(document_id)
            self.store.mark_error(document_id, str(e) or type(e).__name__)
        try:
            return self.store.get_document(document_id)
        except NotFoundError:
            logger.info("Document %s was deleted during processing", document_id)
            return None

    def ingest(self, file_bytes: bytes, file_name: str) -> Document | None:
        doc = self.register_upload(file_name)
        return self.process(doc.id, file_bytes, file_name)
