# =============================================================================
# Services Package - Business Logic
# =============================================================================
# Contains the core business logic, separated from API handlers:
#   - parser.py: PDF text extraction with Docling
#   - chunker.py: Token-based chunking with size-adaptive windows
#   - embedder.py: OpenAI-compatible embedding generation (batched)
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - answer.py: Grounded answer generation from retrieved chunks
#   - vector_cache.py: Bounded two-level LRU of parsed vectors
#   - vectorstore.py: Durable chunk vectors with cache invalidation
#   - similarity.py: Paged exact cosine top-K search
#   - documents.py / chat_history.py: Session, document and message records
#   - metrics.py: In-process timing averages
#   - cleanup.py: Periodic retention sweep for jobs and orphaned vectors
# =============================================================================
