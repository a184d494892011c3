"""Index-term tokenizer shared by the BM25 index and query expansion.

Dollar signs and percent signs survive tokenization, so "$30.4" and "22%"
are first-class terms: financial questions hinge on them.
"""

from __future__ import annotations

import re

STOP_WORDS: frozenset[str] = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "was", "are", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would",
    "could", "should", "may", "might", "shall", "can", "this", "that",
    "these", "those", "it", "its", "as", "if", "not", "no", "so", "up",
    "out", "about", "into", "over", "after", "than", "also", "such", "each",
    "which", "their", "there", "then", "them", "they", "we", "our", "he",
    "she", "his", "her", "who", "all", "any", "some",
})

# Everything except word characters, whitespace, "$", "%" and a decimal
# point that sits between two digits becomes a separator.
_SEPARATORS = re.compile(r"(?!(?<=\d)\.(?=\d))[^\w\s$%]")


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation, drop stop words and 1-char tokens."""
    normalised = _SEPARATORS.sub(" ", text.lower())
    return [
        token
        for token in normalised.split()
        if len(token) > 1 and token not in STOP_WORDS
    ]
