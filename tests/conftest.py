# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Everything here runs offline:
#   - FakeEmbedder: deterministic hashed bag-of-words vectors, so semantic
#     search ranks by word overlap without an embedding API
#   - make_chunk: build Chunk records without running the chunker
#   - fresh_cache: an isolated SessionCache that drops its Chroma
#     collections after the test
# =============================================================================

from __future__ import annotations

import math
import zlib
from collections.abc import Sequence

import pytest

from finlens.models.chunk import Chunk, ContentType, Region, ScoredChunk
from finlens.services.llm import LLMResponse
from finlens.services.session_cache import SessionCache
from finlens.services.tokenizer import tokenize

EMBEDDING_DIM = 64


class FakeEmbedder:
    """Hashed bag-of-words embedder. Same text, same vector."""

    def __init__(self, dim: int = EMBEDDING_DIM) -> None:
        self.dim = dim
        self.calls: list[list[str]] = []

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self._vector(text) for text in texts]

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        vector[0] = 0.01  # never all-zero
        for token in tokenize(text):
            vector[1 + zlib.crc32(token.encode()) % (self.dim - 1)] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]


def build_chunk(
    chunk_id: str,
    text: str,
    section_name: str = "document",
    content_type: ContentType = ContentType.NARRATIVE,
    index: int = 0,
) -> Chunk:
    return Chunk(
        id=chunk_id,
        text=text,
        index=index,
        position=0.5,
        region=Region.BODY,
        section_name=section_name,
        section_label=section_name.replace("_", " ").title(),
        content_type=content_type,
        document_type="unknown",
        raw_text=text,
    )


def llm_response(content: str) -> LLMResponse:
    return LLMResponse(content=content, model="test-model", input_tokens=10, output_tokens=5)


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def make_chunk():
    return build_chunk


@pytest.fixture
def scored():
    """ScoredChunk list from (id, text) pairs, descending scores."""

    def _scored(*items: tuple[str, str]) -> list[ScoredChunk]:
        return [
            ScoredChunk(build_chunk(chunk_id, text, index=i), 1.0 - i * 0.1)
            for i, (chunk_id, text) in enumerate(items)
        ]

    return _scored


@pytest.fixture
def fresh_cache():
    cache = SessionCache(max_entries=4, ttl_seconds=None)
    yield cache
    cache.clear()


class ScriptedLLM:
    """
    Offline provider that answers by recognising the system prompt.

    Each agent uses a distinctive system prompt, so one object can play the
    company-name extractor, relevance judge, decomposer and analyst in a
    full pipeline run. Every call is recorded in `calls` as (system, user).
    """

    def __init__(
        self,
        company: str = "Acme Corp",
        section_text: str = "## Summary\n- **Revenue** grew strongly.",
        answer_text: str = "**Revenue** was $1,200 million.",
        classification: str = '{"type": "unknown", "confidence": 0.3}',
    ) -> None:
        self.company = company
        self.section_text = section_text
        self.answer_text = answer_text
        self.classification = classification
        self.calls: list[tuple[str, str]] = []
        self.fail_on: str | None = None
        self.error: Exception = RuntimeError("scripted failure")

    def _reply(self, system: str) -> str:
        if "extract the company name" in system:
            return self.company
        if "relevance judge" in system:
            return "[0]"
        if "classify financial documents" in system:
            return self.classification
        if "decompose complex financial questions" in system:
            return "[]"
        if "senior financial analyst" in system:
            return self.section_text
        return self.answer_text

    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        system = system or ""
        self.calls.append((system, messages[-1]["content"]))
        if self.fail_on is not None and self.fail_on in system:
            raise self.error
        return llm_response(self._reply(system))

    async def stream(self, messages, system=None, temperature=None, max_tokens=None):
        system = system or ""
        self.calls.append((system, messages[-1]["content"]))
        for word in self._reply(system).split(" "):
            yield word + " "
