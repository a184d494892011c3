# =============================================================================
# FinLens — Financial Document Analysis Pipeline
# =============================================================================
# Turns the extracted text of a financial document (10-K, 10-Q, earnings
# transcript, annual report, CSV/Excel extract) into a four-section analyst
# report, then answers follow-up questions over the same document with
# hybrid (BM25 + semantic) retrieval and LLM reranking.
#
# Package structure:
#   finlens/
#   ├── config.py     → pydantic-settings configuration
#   ├── errors.py     → exception taxonomy
#   ├── models/       → Chunk dataclasses, Pydantic result and event schemas
#   ├── services/     → Leaf services (extraction, cleaning, chunking,
#   │                    indices, LLM/embedding clients, session cache)
#   └── agents/       → Classification, query processing, retrieval,
#                        reranking, report and Q&A orchestration
#
# The HTTP layer is not part of this package: callers drive
# agents.report and agents.orchestrator directly.
# =============================================================================
