# =============================================================================
# Agents Package — LLM-Driven Pipeline Stages
# =============================================================================
#   - classifier.py: document type (heuristics, LLM when unsure)
#   - query.py: query classification, decomposition, synonym expansion
#   - search.py: RRF fusion, hybrid and multi-query retrieval
#   - reranker.py: LLM relevance reranking
#   - analyst.py: section and answer prompts, company-name extraction
#   - report.py: report orchestrator (batch and streaming)
#   - orchestrator.py: LangGraph Q&A graph (batch and streaming)
# =============================================================================
