# =============================================================================
# Application Configuration — Pydantic Settings
# =============================================================================
#
# DESIGN DECISION: One BaseSettings class holds every pipeline tunable.
# Values load in this priority order (highest first):
#   1. Environment variables (e.g., `CHUNK_SIZE=1200`)
#   2. Values from the .env file
#   3. Default values defined below
#
# Nothing here is required. A caller can run the whole pipeline by passing
# an `api_key` per request and leaving the environment empty.
#
# USAGE:
#   from finlens.config import settings
#   print(settings.chunk_size)
# =============================================================================

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Pipeline settings loaded from environment variables.

    Defaults are tuned for long SEC filings (10-K/10-Q) analysed with an
    OpenAI-compatible completion model.
    """

    # -------------------------------------------------------------------------
    # API Keys — External Services
    # -------------------------------------------------------------------------
    # A per-request api_key always wins over these. LLM_API_KEY is a shared
    # key used for both completions and embeddings when set.
    # -------------------------------------------------------------------------
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    # -------------------------------------------------------------------------
    # LLM Configuration — Multi-Provider
    # -------------------------------------------------------------------------
    # "openai_compatible" covers OpenAI itself plus DeepSeek, Qwen, etc.
    # "anthropic" uses the native Claude SDK.
    # -------------------------------------------------------------------------
    llm_provider: str = "openai_compatible"  # "openai_compatible" or "anthropic"
    llm_base_url: str | None = None
    llm_api_key: str | None = None
    llm_model: str = "gpt-4o"

    # -------------------------------------------------------------------------
    # Retry Policy — completion endpoint
    # -------------------------------------------------------------------------
    # DESIGN DECISION: Only rate-limit (429) failures are retried, with
    # exponential backoff plus jitter. The SDK clients are created with
    # max_retries=0 so this is the single retry layer.
    # -------------------------------------------------------------------------
    llm_max_attempts: int = 3
    llm_retry_base_delay: float = 1.0   # seconds; doubled per attempt
    llm_retry_max_jitter: float = 1.0   # seconds; uniform random addition

    # -------------------------------------------------------------------------
    # Embedding Configuration
    # -------------------------------------------------------------------------
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str | None = None
    embedding_dimensions: int | None = None  # None = model default
    embedding_batch_size: int = 50  # Texts per embedding API call

    # -------------------------------------------------------------------------
    # Chunking Configuration (characters, not tokens)
    # -------------------------------------------------------------------------
    # DESIGN DECISION: Character-based sizes. Section and table boundaries
    # drive where chunks break; the size limit only decides when a running
    # paragraph buffer is flushed. 1500 chars ≈ 350 tokens.
    # -------------------------------------------------------------------------
    chunk_size: int = 1500
    chunk_overlap: int = 200
    chunk_min_size: int = 200  # Trailing fragments below this merge backwards
    table_min_rows: int = 3

    # -------------------------------------------------------------------------
    # Report Sections
    # -------------------------------------------------------------------------
    section_max_tokens: int = 1200
    section_temperature: float = 0.05
    section_chunks_per_query: int = 4
    section_delay_seconds: float = 0.5  # Pause between sections (rate limits)

    # -------------------------------------------------------------------------
    # Interactive Q&A
    # -------------------------------------------------------------------------
    qa_max_tokens: int = 400
    qa_temperature: float = 0.1
    qa_chunks: int = 5

    # -------------------------------------------------------------------------
    # Hybrid Retrieval
    # -------------------------------------------------------------------------
    # Weights multiply each list's reciprocal-rank contribution. Leaving both
    # at 1.0 gives plain RRF.
    # -------------------------------------------------------------------------
    hybrid_search_enabled: bool = True
    hybrid_semantic_weight: float = 1.0
    hybrid_keyword_weight: float = 1.0
    rrf_k: int = 60
    metadata_filter_min_results: int = 3  # Below this, retry unfiltered

    # -------------------------------------------------------------------------
    # Reranking
    # -------------------------------------------------------------------------
    rerank_enabled: bool = True
    rerank_candidates: int = 15  # Candidates shown to the LLM judge
    rerank_preview_chars: int = 400

    # -------------------------------------------------------------------------
    # Query Processing
    # -------------------------------------------------------------------------
    query_decomposition_enabled: bool = True
    query_expansion_enabled: bool = True
    max_sub_queries: int = 3

    # -------------------------------------------------------------------------
    # Document Classification / Company Name
    # -------------------------------------------------------------------------
    classification_enabled: bool = True
    classification_sample_length: int = 3000
    company_name_sample_length: int = 4000

    # -------------------------------------------------------------------------
    # Session Cache
    # -------------------------------------------------------------------------
    # DESIGN DECISION: Bounded LRU + TTL. Each session holds a Chroma
    # collection with every chunk embedding, so an unbounded map would grow
    # with every uploaded document.
    # -------------------------------------------------------------------------
    session_cache_max_entries: int = 16
    session_cache_ttl_seconds: float = 3600.0

    # -------------------------------------------------------------------------
    # Uploads
    # -------------------------------------------------------------------------
    max_upload_bytes: int = 10 * 1024 * 1024

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Create and cache a Settings instance.

    The settings object is effectively a singleton. Tests patch fields on
    the module-level `settings` instance with `patch.object`.
    """
    return Settings()


# ---------------------------------------------------------------------------
# Module-level convenience instance
# ---------------------------------------------------------------------------
settings = get_settings()
