# =============================================================================
# Embedding Service — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
#
# DESIGN DECISION: Async. Building the semantic index is the dominant
# latency of a report run, and it happens inside the async orchestrator.
#
# DESIGN DECISION: Same retry policy as completions. A 429 during indexing
# is retried with backoff; any other failure becomes UpstreamError and
# aborts the run before anything is cached.
#
# TOKEN LIMITS:
# - Each text: max 8,191 tokens
# - 50 texts per call by default (configurable); 50 × 1500 chars ≈ 18k tokens
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import openai

from finlens.config import settings
from finlens.errors import InputError, UpstreamError
from finlens.services.llm import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Anything that turns texts into same-length vectors, order preserved."""

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        ...


class OpenAIEmbedder:
    """
    Embedder backed by the OpenAI embeddings endpoint.

    API key resolution order:
      1. explicit api_key (per-request key)
      2. OPENAI_API_KEY
      3. LLM_API_KEY (shared key for completions + embeddings)
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        batch_size: int | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        resolved_key = api_key or settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise InputError(
                "No API key configured for embeddings. "
                "Pass api_key or set OPENAI_API_KEY / LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key, "max_retries": 0}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._model = model or settings.embedding_model
        self._batch_size = batch_size or settings.embedding_batch_size
        self._retry = retry_policy or RetryPolicy.from_settings()

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            self._model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed texts in sub-batches, returning vectors in input order.

        Raises:
            UpstreamError: If the embedding service fails after retries.
        """
        if not texts:
            return []

        all_embeddings: list[list[float]] = [[] for _ in texts]

        for i in range(0, len(texts), self._batch_size):
            batch = list(texts[i : i + self._batch_size])
            logger.debug(
                "Embedding batch %d–%d of %d texts (model=%s)",
                i + 1, i + len(batch), len(texts), self._model,
            )

            create_kwargs: dict = {"model": self._model, "input": batch}
            if settings.embedding_dimensions:
                create_kwargs["dimensions"] = settings.embedding_dimensions

            try:
                response = await call_with_retry(
                    lambda: self._client.embeddings.create(**create_kwargs),
                    self._retry,
                )
            except openai.APIStatusError as exc:
                raise UpstreamError("embedding", exc.message, exc.status_code) from exc
            except openai.APIError as exc:
                raise UpstreamError("embedding", str(exc)) from exc

            # Sort by index: order mismatches would silently corrupt the index
            for item in sorted(response.data, key=lambda x: x.index):
                all_embeddings[i + item.index] = item.embedding

        logger.info("Generated %d embeddings (model=%s)", len(texts), self._model)
        return all_embeddings
