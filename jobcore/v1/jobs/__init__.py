"""
Asynchronous job processing core.

This package provides:
- Priority-tiered durable queues with per-type isolation and a dead-letter queue
- Prefetch-bounded worker pool with weighted priority dispatch
- Bounded retries with fixed, linear or exponential backoff
- Per-type and per-owner concurrency limits
- Dead-letter persistence, escalation and operational metrics
"""
