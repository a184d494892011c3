# =============================================================================
# Semantic Index — ChromaDB Collection per Analysis Session
# =============================================================================
#
# Embeds a document's chunks once and answers nearest-neighbour queries
# against them for the lifetime of the analysis session.
#
# DESIGN DECISION: One in-process collection per document.
# Each SemanticIndex owns a uniquely named collection in an ephemeral
# chromadb.Client(). There is no cross-document search, so a per-document
# collection replaces the "document_id" metadata filter and makes eviction
# a single delete_collection() call.
#
# DESIGN DECISION: Cosine space, similarity = 1 - distance.
# Chroma returns cosine distance in [0, 2]. Converting to a similarity keeps
# "higher is better" consistent with BM25 scores, even though RRF only looks
# at ranks.
#
# DESIGN DECISION: ChromaDB's client is synchronous.
# Queries run in asyncio.to_thread() so a search never blocks the event
# loop; the embedding call (the slow part) is natively async.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence

import chromadb

from finlens.models.chunk import Chunk, ScoredChunk
from finlens.services.embedder import Embedder

logger = logging.getLogger(__name__)

# Shared ephemeral client; collections are the unit of isolation
_client: chromadb.ClientAPI | None = None


def _get_client() -> chromadb.ClientAPI:
    global _client
    if _client is None:
        _client = chromadb.Client()
    return _client


class SemanticIndex:
    """
    Embedding index over one document's chunks.

    Build with `await SemanticIndex.build(chunks, embedder)`; the
    constructor only wires an already-populated collection.
    """

    def __init__(
        self,
        collection: chromadb.Collection,
        chunks: Sequence[Chunk],
        embedder: Embedder,
        client: chromadb.ClientAPI | None = None,
    ) -> None:
        self._collection = collection
        self._client = client or _get_client()
        self._chunks: dict[str, Chunk] = {chunk.id: chunk for chunk in chunks}
        self._embedder = embedder
        self._closed = False

    @classmethod
    async def build(
        cls,
        chunks: Sequence[Chunk],
        embedder: Embedder,
        client: chromadb.ClientAPI | None = None,
    ) -> SemanticIndex:
        """
        Embed every chunk and store it in a fresh collection.

        Raises:
            UpstreamError: If the embedding call fails (propagated from the
                embedder). No collection is left behind in that case.
        """
        embeddings = await embedder.embed([chunk.text for chunk in chunks])

        chroma = client or _get_client()
        collection = chroma.create_collection(
            name=f"finlens_{uuid.uuid4().hex}",
            metadata={"hnsw:space": "cosine"},
        )
        if chunks:
            try:
                collection.add(
                    ids=[chunk.id for chunk in chunks],
                    documents=[chunk.text for chunk in chunks],
                    embeddings=embeddings,
                    metadatas=[
                        _sanitise_chroma_metadata(chunk.metadata()) for chunk in chunks
                    ],
                )
            except Exception:
                chroma.delete_collection(collection.name)
                raise

        logger.info(
            "Built semantic index: %d chunks in collection %s",
            len(chunks), collection.name,
        )
        return cls(collection, chunks, embedder, chroma)

    def __len__(self) -> int:
        return len(self._chunks)

    async def search(self, query: str, top_k: int) -> list[ScoredChunk]:
        """
        Nearest chunks to `query`, most similar first.

        Returns at most min(top_k, len(self)) results; an empty index or
        non-positive top_k gives an empty list without an embedding call.
        """
        n_results = min(top_k, len(self._chunks))
        if n_results <= 0:
            return []

        [query_embedding] = await self._embedder.embed([query])

        def _sync_search() -> list[ScoredChunk]:
            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=n_results,
                include=["distances"],
            )

            scored: list[ScoredChunk] = []
            if results and results["ids"] and results["ids"][0]:
                distances = results["distances"][0] if results["distances"] else []
                for i, chunk_id in enumerate(results["ids"][0]):
                    chunk = self._chunks.get(chunk_id)
                    if chunk is None:
                        continue
                    distance = distances[i] if i < len(distances) else 1.0
                    scored.append(ScoredChunk(chunk, round(1.0 - distance, 4)))
            return scored

        results = await asyncio.to_thread(_sync_search)
        logger.debug(
            "Semantic search returned %d chunks (top_k=%d)", len(results), top_k,
        )
        return results

    def close(self) -> None:
        """Drop the backing collection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._client.delete_collection(self._collection.name)
        logger.debug("Dropped collection %s", self._collection.name)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB compatibility.

    ChromaDB requires all metadata values to be str, int, float, or bool.
    None becomes "" and anything else non-scalar is stringified.
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
