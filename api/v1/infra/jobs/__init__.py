"""
Durable sync queue for outbound CRM side effects.

This package provides:
- A Postgres-backed job table keyed by (org_id, dedupe_key)
- Idempotent enqueue that collapses repeated events into one pending job
- Batch claiming with FOR UPDATE SKIP LOCKED and expiring claims
- Retry with exponential backoff and terminal failure after max_attempts
- Registry-based pluggable handlers and a polling worker
"""
