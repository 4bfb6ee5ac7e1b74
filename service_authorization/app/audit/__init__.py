"""
Audit package.

Queues audit entries in memory and flushes them in batches to a durable
sink (memory, JSON lines file or PostgreSQL). Logging never blocks or
fails the caller.
"""
