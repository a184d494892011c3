# =============================================================================
# Services Package — Leaf Services
# =============================================================================
# Building blocks with no knowledge of reports or questions:
#   - parser.py: document text extraction (Docling PDF, pandas CSV/Excel)
#   - cleaner.py: page-furniture removal, whitespace normalisation
#   - patterns.py / sections.py: section-header catalogue and detection
#   - tables.py: table region detection and key:value flattening
#   - chunker.py: section-bounded, table-atomic chunking
#   - tokenizer.py / bm25.py: lexical index
#   - embedder.py / vectorstore.py: semantic index on ChromaDB
#   - llm.py: multi-provider completion client with rate-limit retry
#   - session_cache.py: bounded cache of per-document index pairs
# =============================================================================
