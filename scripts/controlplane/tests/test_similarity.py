"""
Tests for engine/similarity.py

Validates:
- Keyword extraction lowercases, drops short words and stop words
- Jaccard similarity, including empty sets
"""

import sys
from pathlib import Path
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from controlplane.engine.similarity import (
    extract_keywords,
    jaccard_similarity,
    title_similarity,
)


def test_extract_keywords_filters_stopwords_and_short_words():
    keywords = extract_keywords("Use the WAL mode for SQLite in CI")
    assert keywords == {"wal", "mode", "sqlite"}


def test_extract_keywords_ignores_digits_and_punctuation():
    assert extract_keywords("retry-backoff: 3x, 2s!") == {"retry", "backoff"}


def test_jaccard_similarity_basic():
    assert jaccard_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)


def test_jaccard_similarity_empty_set_is_zero():
    assert jaccard_similarity(set(), {"a"}) == 0.0
    assert jaccard_similarity(set(), set()) == 0.0


def test_title_similarity_identical_titles():
    assert title_similarity("Lock ordering rules", "lock ordering RULES") == 1.0


def test_title_similarity_disjoint_titles():
    assert title_similarity("Lock ordering", "Cache eviction") == 0.0
