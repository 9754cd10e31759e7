"""Exception hierarchy shared by the chatbot services."""

from __future__ import annotations

from typing import Any, Dict


class ChatbotError(Exception):
    """Base class for errors raised by the chatbot services."""

    def __init__(self, message: str, details: Dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class GenerationError(ChatbotError):
    """A text provider failed or returned nothing usable."""


class QueryExecutionError(ChatbotError):
    """A storage engine rejected a query. `message` is the raw engine error."""

    def __init__(self, message: str, engine: str, query: str | None = None) -> None:
        super().__init__(message, {"engine": engine, "query": query})
        self.engine = engine
        self.query = query


class ExtractionError(ChatbotError):
    """Text could not be extracted from an uploaded document."""


class DatasetIngestionError(ChatbotError):
    """An uploaded dataset could not be parsed or stored."""


class NotFoundError(ChatbotError):
    """A requested document or dataset does not exist."""
