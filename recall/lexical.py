"""
In-memory BM25 keyword index.

score(d) = sum over query terms q of
    IDF(q) * f(q,d) * (k1 + 1) / (f(q,d) + k1 * (1 - b + b * |d| / avgdl))

Document frequencies, document count and total length are maintained
incrementally on every index/remove; nothing is recomputed over the
whole corpus. Each document's entry is added or removed as a whole.
"""

import math
import re
from collections import Counter
from datetime import datetime
from typing import Optional

from .config import DEFAULT_B, DEFAULT_K1
from .errors import ConfigError, QueryError
from .types import MemoryItem

# Anything that is not a word character or whitespace
_PUNCTUATION_RE = re.compile(r"[^\w\s]+")


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation, split on whitespace."""
    if not text:
        return []
    return _PUNCTUATION_RE.sub("", text.lower()).split()


def highlight(text: str, query: str, marker: str = "**") -> str:
    """
    Wrap whole-word occurrences of query terms in ``marker``.

    Matching is case-insensitive; the original casing is kept.
    """
    terms = sorted(set(tokenize(query)), key=len, reverse=True)
    if not terms or not text:
        return text
    pattern = re.compile(
        r"(?<!\w)(" + "|".join(re.escape(t) for t in terms) + r")(?!\w)",
        re.IGNORECASE,
    )
    return pattern.sub(lambda m: f"{marker}{m.group(0)}{marker}", text)


class BM25Index:
    """
    Inverted index with incremental BM25 statistics.

    Example:
        index = BM25Index()
        index.index(item)
        hits = index.search("cat mat", top_k=5)   # [(id, score), ...]
    """

    def __init__(self, k1: float = DEFAULT_K1, b: float = DEFAULT_B):
        if k1 < 0:
            raise ConfigError(f"BM25 k1 must be non-negative, got {k1}")
        if not 0 <= b <= 1:
            raise ConfigError(f"BM25 b must be in [0, 1], got {b}")
        self.k1 = k1
        self.b = b
        # term -> {item id -> term frequency}
        self._postings: dict[str, dict[str, int]] = {}
        # item id -> term counts, kept so remove() knows what to undo
        self._doc_terms: dict[str, Counter] = {}
        self._doc_lengths: dict[str, int] = {}
        self._created_at: dict[str, datetime] = {}
        self._total_length = 0

    def __len__(self) -> int:
        return len(self._doc_lengths)

    def __contains__(self, id: str) -> bool:
        return id in self._doc_lengths

    @property
    def term_count(self) -> int:
        """Number of distinct indexed terms."""
        return len(self._postings)

    @property
    def average_length(self) -> float:
        if not self._doc_lengths:
            return 0.0
        return self._total_length / len(self._doc_lengths)

    def document_frequency(self, term: str) -> int:
        return len(self._postings.get(term, ()))

    def idf(self, term: str) -> float:
        """ln(1 + (N - df + 0.5) / (df + 0.5)); zero for unknown terms."""
        df = self.document_frequency(term)
        n = len(self._doc_lengths)
        if df == 0 or n == 0:
            return 0.0
        return math.log(1 + (n - df + 0.5) / (df + 0.5))

    def index(self, item: MemoryItem) -> None:
        """Add an item. Re-indexing an id replaces its previous entry."""
        if item.id in self._doc_lengths:
            self.remove(item.id)

        counts = Counter(tokenize(item.text))
        length = sum(counts.values())
        for term, freq in counts.items():
            self._postings.setdefault(term, {})[item.id] = freq

        self._doc_terms[item.id] = counts
        self._doc_lengths[item.id] = length
        self._created_at[item.id] = item.created_at
        self._total_length += length

    def remove(self, id: str) -> bool:
        """
        Drop every posting for an item.

        Returns:
            True if the item was indexed
        """
        counts = self._doc_terms.pop(id, None)
        if counts is None:
            return False
        for term in counts:
            postings = self._postings.get(term)
            if postings is None:
                continue
            postings.pop(id, None)
            if not postings:
                del self._postings[term]
        self._total_length -= self._doc_lengths.pop(id)
        self._created_at.pop(id, None)
        return True

    def clear(self) -> None:
        self._postings.clear()
        self._doc_terms.clear()
        self._doc_lengths.clear()
        self._created_at.clear()
        self._total_length = 0

    def search(self, query: str, top_k: int = 10) -> list[tuple[str, float]]:
        """
        Rank indexed items against a keyword query.

        Returns:
            Up to top_k (id, score) pairs, best first. Ties go to the
            more recently created item, then to the smaller id.

        Raises:
            QueryError: If top_k < 1
        """
        if top_k < 1:
            raise QueryError(f"top_k must be >= 1, got {top_k}")
        terms = list(dict.fromkeys(tokenize(query)))
        if not terms or not self._doc_lengths:
            return []

        avgdl = self.average_length or 1.0
        k1, b = self.k1, self.b
        scores: dict[str, float] = {}
        for term in terms:
            postings = self._postings.get(term)
            if not postings:
                continue
            idf = self.idf(term)
            for doc_id, freq in postings.items():
                norm = 1 - b + b * self._doc_lengths[doc_id] / avgdl
                scores[doc_id] = scores.get(doc_id, 0.0) + idf * freq * (k1 + 1) / (freq + k1 * norm)

        ranked = sorted(
            scores.items(),
            key=lambda kv: (-kv[1], -self._timestamp(kv[0]), kv[0]),
        )
        return ranked[:top_k]

    def created_at(self, id: str) -> Optional[datetime]:
        return self._created_at.get(id)

    def _timestamp(self, id: str) -> float:
        created = self._created_at.get(id)
        return created.timestamp() if created is not None else 0.0
