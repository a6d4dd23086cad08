# =============================================================================
# Workers Package - Durable Background Job Queue
# =============================================================================
# Handles asynchronous, long-running operations inside the API process:
#   - jobs.py: Job dataclass, enums and the progress channel
#   - store.py: job_queue table access (the durable source of truth)
#   - queue.py: QueueManager - single worker, retries, crash recovery
#   - runners.py: Index and chat pipelines executed by the worker
#
# WHY A QUEUE?
# Indexing a PDF (parse, chunk, embed, store) and answering a chat query
# (embed, scan, generate) take seconds. Handlers enqueue and return 202
# with a job_id; clients poll or stream progress.
# =============================================================================
