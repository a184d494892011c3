# =============================================================================
# Lexical Index — Okapi BM25
# =============================================================================
#
# Ranks chunks by term-overlap relevance. Built once per analysis session
# from the full chunk set and read-only afterwards.
#
#   idf(t)     = ln((N - df + 0.5) / (df + 0.5) + 1)
#   tf_norm    = tf * (k1 + 1) / (tf + k1 * (1 - b + b * len / avg_len))
#   score(q,d) = Σ_{t in q} idf(t) * tf_norm(t, d)
#
# DESIGN DECISION: Hand-rolled instead of rank_bm25. BM25Okapi uses a
# different idf (no "+1" inside the log, with an epsilon floor for common
# terms), which changes rankings for terms present in most chunks. The
# "+1" form used here is always positive.
#
# DESIGN DECISION: Query terms are scored once each, in order of first
# appearance; repeating a word in the query does not double its weight.
# =============================================================================

from __future__ import annotations

import logging
import math
from collections import Counter
from collections.abc import Sequence

from finlens.models.chunk import Chunk, ScoredChunk
from finlens.services.tokenizer import tokenize

logger = logging.getLogger(__name__)


class BM25Index:
    """In-memory BM25 index over a fixed list of chunks."""

    def __init__(
        self,
        chunks: Sequence[Chunk],
        k1: float = 1.5,
        b: float = 0.75,
    ) -> None:
        self.k1 = k1
        self.b = b
        self._chunks: list[Chunk] = list(chunks)
        self._term_freqs: list[Counter[str]] = []
        self._lengths: list[int] = []
        self._doc_freqs: Counter[str] = Counter()

        for chunk in self._chunks:
            tokens = tokenize(chunk.text)
            freqs = Counter(tokens)
            self._term_freqs.append(freqs)
            self._lengths.append(len(tokens))
            self._doc_freqs.update(freqs.keys())

        total = sum(self._lengths)
        self._avg_length = total / len(self._lengths) if self._lengths else 0.0

        logger.info(
            "Built BM25 index: %d chunks, %d distinct terms, avg length %.1f",
            len(self._chunks), len(self._doc_freqs), self._avg_length,
        )

    def __len__(self) -> int:
        return len(self._chunks)

    def idf(self, term: str) -> float:
        """Inverse document frequency; 0.0 for terms absent from the corpus."""
        df = self._doc_freqs.get(term, 0)
        if df == 0:
            return 0.0
        n = len(self._chunks)
        return math.log((n - df + 0.5) / (df + 0.5) + 1)

    def score(self, query_terms: Sequence[str], position: int) -> float:
        """BM25 score of the chunk at `position` for pre-tokenized terms."""
        freqs = self._term_freqs[position]
        length = self._lengths[position]
        if self._avg_length:
            norm = 1 - self.b + self.b * (length / self._avg_length)
        else:
            norm = 1.0

        total = 0.0
        for term in dict.fromkeys(query_terms):
            tf = freqs.get(term, 0)
            if tf == 0:
                continue
            total += self.idf(term) * (tf * (self.k1 + 1)) / (tf + self.k1 * norm)
        return total

    def search(self, query: str, top_k: int) -> list[ScoredChunk]:
        """
        Return up to `top_k` chunks with a positive score, best first.

        Ties keep original chunk order. Never raises: an empty or
        unmatched query gives an empty list.
        """
        terms = tokenize(query)
        if not terms or not self._chunks or top_k <= 0:
            return []

        scored = [
            (self.score(terms, i), i)
            for i in range(len(self._chunks))
        ]
        # sorted() is stable, so equal scores stay in index order
        ranked = sorted(
            (pair for pair in scored if pair[0] > 0),
            key=lambda pair: pair[0],
            reverse=True,
        )

        return [
            ScoredChunk(chunk=self._chunks[i], score=round(score, 6))
            for score, i in ranked[:top_k]
        ]
