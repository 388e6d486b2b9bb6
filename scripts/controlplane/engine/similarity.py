#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Keyword similarity used to flag overlapping learnings.

Titles are reduced to lowercase keyword sets (words of three or more letters,
common stop words removed) and compared with Jaccard similarity.
"""

import re

DEFAULT_SIMILARITY_THRESHOLD = 0.3

_WORD_RE = re.compile(r"\b[a-zA-Z]{3,}\b")

STOPWORDS = frozenset({
    "the", "are", "was", "were", "have", "has", "had", "does", "did",
    "will", "would", "could", "should", "this", "that", "not", "and",
    "but", "for", "with", "from", "into", "when", "use", "using", "via",
})


def extract_keywords(text: str) -> set[str]:
    words = _WORD_RE.findall(text.lower())
    return {w for w in words if w not in STOPWORDS}


def jaccard_similarity(set1: set[str], set2: set[str]) -> float:
    """Jaccard index of two keyword sets; 0.0 when either set is empty."""
    if not set1 or not set2:
        return 0.0
    return len(set1 & set2) / len(set1 | set2)


def title_similarity(title_a: str, title_b: str) -> float:
    return jaccard_similarity(extract_keywords(title_a), extract_keywords(title_b))
