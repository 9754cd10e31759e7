from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

from backend.api.services.llm_providers import FallbackGenerator
from backend.models import SearchResult
from backend.nlp.intent_model import AnswerIntent, classify_answer_intent

logger = logging.getLogger(__name__)

NO_DOCUMENTS_MESSAGE = (
    "No relevant documents were found. Please register documents in the knowledge base first."
)
GENERATION_FAILED_MESSAGE = "An error occurred while generating the answer. Please try again shortly."

RAG_SYSTEM_PROMPT = """You are a document analysis assistant.
Answer questions using only the documents the user registered in the knowledge base.

Rules:
1. Use only the provided document context.
2. Cite the source (document name, page) for every fact you use.
3. If the documents do not contain the answer, say "The registered documents do not contain this information."
4. For summaries, organise the key points as bullet points.
5. For excerpts, quote the original text with quotation marks.
6. Answer in the language of the question."""

TASK_INSTRUCTIONS = {
    AnswerIntent.SUMMARY: "Summarize the document content systematically and list the key points.",
    AnswerIntent.EXCERPT: "Quote the relevant passages verbatim from the source text.",
    AnswerIntent.CONTENT: "Explain the relevant content of the documents in detail.",
    AnswerIntent.GENERAL: "Answer the question accurately and in detail.",
}


def citation_header(position: int, result: SearchResult) -> str:
    page = f" (page {result.page_number})" if result.page_number else ""
    return f"[Source {position}: {result.document_name}{page}]"


def build_context(chunks: Sequence[SearchResult]) -> str:
    return "\n\n---\n\n".join(f"{citation_header(i, r)}\n{r.content}" for i, r in enumerate(chunks, start=1))


def build_prompt(query: str, chunks: Sequence[SearchResult]) -> Tuple[str, str]:
    intent = classify_answer_intent(query)
    user_prompt = (
        f"## Question\n{query}\n\n"
        f"## Task\n{TASK_INSTRUCTIONS[intent]}\n\n"
        f"## Reference documents\n{build_context(chunks)}\n\n"
        "Answer based on the documents above."
    )
    return RAG_SYSTEM_PROMPT, user_prompt


class AnswerSynthesizer:
    def __init__(self, generator: FallbackGenerator, temperature: float = 0.2, max_tokens: int = 2000):
        self.generator = generator
        self.temperature = temperature
        self.max_tokens = max_tokens

    def synthesize(self, query: str, chunks: List[SearchResult]) -> str:
        """Grounded answer text; failures come back as canned messages, never as exceptions."""
        if not chunks:
            return NO_DOCUMENTS_MESSAGE
        system_prompt, user_prompt = build_prompt(query, chunks)
        result = self.generator.generate(system_prompt, user_prompt, temperature=self.temperature, max_tokens=self.max_tokens)
        if result.ok:
            return result.text
        logger.error("All RAG generation candidates failed: %s", result.error)
        return GENERATION_FAILED_MESSAGE
