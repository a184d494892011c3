# =============================================================================
# Models Package
# =============================================================================
# Data shapes shared across the pipeline:
#   - chunk.py: Chunk / ScoredChunk dataclasses (internal, hot path)
#   - responses.py: Pydantic V2 schemas for report and answer results
#   - events.py: Pydantic V2 tagged union of streaming events
# =============================================================================
