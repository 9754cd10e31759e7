"""Lexical and vector similarity used by document retrieval."""

from __future__ import annotations

import re
from typing import List, Sequence

import numpy as np

# \w is Unicode-aware, so Hangul/CJK/Cyrillic runs are kept as tokens
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
MIN_TOKEN_LENGTH = 2


def tokenize(text: str) -> List[str]:
    """Lowercase tokens of length >= 2 with punctuation stripped. Duplicates are kept."""
    if not text:
        return []
    return [t for t in _TOKEN_RE.findall(text.lower()) if len(t) >= MIN_TOKEN_LENGTH]


def lexical_match_score(query_tokens: Sequence[str], content_tokens: Sequence[str]) -> float:
    """Exact token match counts 1.0, substring containment 0.5; normalized by query length, clamped to [0, 1]."""
    if not query_tokens or not content_tokens:
        return 0.0
    raw = 0.0
    for q in query_tokens:
        for c in content_tokens:
            if c == q:
                raw += 1.0
            elif q in c or c in q:
                raw += 0.5
    return min(max(raw / max(1, len(query_tokens)), 0.0), 1.0)


def lexical_score(query: str, content: str) -> float:
    return lexical_match_score(tokenize(query), tokenize(content))


def keyword_bonus(query_tokens: Sequence[str], content: str) -> float:
    """Capped bonus for literal substring hits: 0.1 per distinct matching query term, at most 0.3."""
    lowered = (content or "").lower()
    hits = sum(1 for term in set(query_tokens) if term in lowered)
    return min(0.1 * hits, 0.3)


def cosine_similarity(a: Sequence[float] | np.ndarray | None, b: Sequence[float] | np.ndarray | None) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero-norm vectors."""
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    # clip float noise just outside [-1, 1]
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))
