"""
Score fusion for hybrid (keyword + semantic) search.

Each input list is min-max normalized to [0, 1] on its own, then

    fused = alpha * lexical + (1 - alpha) * semantic

with 0 for whichever signal an item is missing. When one list is empty
the other list's ranking is returned as-is (with normalized scores).
"""

import math
from datetime import datetime
from typing import Callable, Optional, Sequence

from .config import DEFAULT_ALPHA
from .errors import ConfigError
from .types import MatchedBy, QueryResult

Ranking = Sequence[tuple[str, float]]


def min_max_normalize(ranking: Ranking) -> dict[str, float]:
    """
    Scale scores to [0, 1] within one list.

    A list whose scores are all equal maps every entry to 1.0.
    """
    if not ranking:
        return {}
    values = [score for _, score in ranking]
    lo, hi = min(values), max(values)
    if hi > lo:
        return {id: (score - lo) / (hi - lo) for id, score in ranking}
    return {id: 1.0 for id, _ in ranking}


class HybridQueryEngine:
    """Weighted min-max fusion of a lexical and a semantic ranking."""

    def __init__(self, alpha: float = DEFAULT_ALPHA):
        """
        Args:
            alpha: Weight of the lexical signal in [0, 1]; the semantic
                signal gets 1 - alpha

        Raises:
            ConfigError: If alpha is outside [0, 1] or not finite
        """
        if (
            not isinstance(alpha, (int, float))
            or isinstance(alpha, bool)
            or not math.isfinite(alpha)
            or not 0 <= alpha <= 1
        ):
            raise ConfigError(f"Fusion weight alpha must be in [0, 1], got {alpha!r}")
        self.alpha = float(alpha)

    def fuse(
        self,
        lexical: Ranking,
        semantic: Ranking,
        *,
        created_at: Optional[Callable[[str], Optional[datetime]]] = None,
        top_k: Optional[int] = None,
    ) -> list[QueryResult]:
        """
        Merge two rankings into one.

        Args:
            lexical: (id, BM25 score) pairs
            semantic: (id, cosine similarity) pairs
            created_at: Lookup for recency tie-breaking
            top_k: Truncate the fused list (None keeps everything)

        Returns:
            QueryResults sorted by fused score, then matched-by-both
            first, then more recent, then id
        """
        lex_raw = dict(lexical)
        sem_raw = dict(semantic)
        lex_norm = min_max_normalize(lexical)
        sem_norm = min_max_normalize(semantic)

        if lex_norm and sem_norm:
            w_lex, w_sem = self.alpha, 1.0 - self.alpha
        elif lex_norm:
            w_lex, w_sem = 1.0, 0.0
        else:
            w_lex, w_sem = 0.0, 1.0

        results = []
        for id in list(dict.fromkeys([*lex_raw, *sem_raw])):
            in_lex = id in lex_raw
            in_sem = id in sem_raw
            if in_lex and in_sem:
                matched_by = MatchedBy.BOTH
            elif in_lex:
                matched_by = MatchedBy.LEXICAL
            else:
                matched_by = MatchedBy.SEMANTIC
            score = w_lex * lex_norm.get(id, 0.0) + w_sem * sem_norm.get(id, 0.0)
            results.append(QueryResult(
                item_id=id,
                score=score,
                matched_by=matched_by,
                lexical_score=lex_raw.get(id),
                semantic_score=sem_raw.get(id),
            ))

        def recency(id: str) -> float:
            if created_at is None:
                return 0.0
            ts = created_at(id)
            return ts.timestamp() if ts is not None else 0.0

        results.sort(key=lambda r: (
            -r.score,
            r.matched_by is not MatchedBy.BOTH,
            -recency(r.item_id),
            r.item_id,
        ))
        if top_k is not None:
            results = results[:top_k]
        return results
