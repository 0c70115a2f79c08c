"""In-process LLM job queue.

Jobs live in an in-memory store owned by one process; a single-flight executor
runs them one at a time against an LLM transport, and the runner hands each
response to the handler named by the job's `next_step`. Transient failures
are retried with exponential backoff forever, permanent ones are parked in a
dead-letter queue until recovered or trimmed. Durability is a SQLite snapshot
of the whole store, restored on start with in-flight jobs reset to pending.
"""
