"""Lightweight regex intent detection for questions."""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable


class AnswerIntent(str, Enum):
    SUMMARY = "summary"
    EXCERPT = "excerpt"
    CONTENT = "content"
    GENERAL = "general"


# Checked in order; English and Korean phrasings
_INTENT_PATTERNS = [
    (AnswerIntent.SUMMARY, re.compile(r"summar|outline|overview|brief|key points|tl;?dr|요약|정리|간략|핵심|개요", re.I)),
    (AnswerIntent.EXCERPT, re.compile(r"quote|verbatim|excerpt|exact (?:text|wording)|\bcite\b|발췌|인용|원문|그대로", re.I)),
    (AnswerIntent.CONTENT, re.compile(r"\bwhat\b|explain|describe|\bwhich\b|내용|뭐야|무엇|무슨|어떤", re.I)),
]


def classify_answer_intent(query: str) -> AnswerIntent:
    for intent, pattern in _INTENT_PATTERNS:
        if pattern.search(query or ""):
            return intent
    return AnswerIntent.GENERAL


DATA_HINTS = re.compile(
    r"\b(datasets?|tables?|spreadsheets?|csv|rows?|columns?|records?|database|sql|query|"
    r"count|total|sum|average|avg|revenue|sales?|products?|stock|inventory|categor(?:y|ies)|price)\b"
    r"|데이터|테이블|매출|판매|제품|상품|재고|합계|평균|개수",
    re.I,
)


def _mentions(question: str, name: str) -> bool:
    name = (name or "").strip()
    if not name:
        return False
    return re.search(rf"(?<!\w){re.escape(name)}(?!\w)", question, re.I) is not None


def is_data_question(question: str, dataset_names: Iterable[str] = (), table_names: Iterable[str] = ()) -> bool:
    """True if the question plausibly concerns the registered data rather than general chit-chat."""
    q = question or ""
    if DATA_HINTS.search(q):
        return True
    return any(_mentions(q, n) for n in list(dataset_names) + list(table_names))
