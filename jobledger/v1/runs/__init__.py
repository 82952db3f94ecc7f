"""
Job run ledger.

- Allowlist sanitizer for persisted run metadata
- begin/complete bookkeeping with idempotency-key collapse
- Advisory concurrency governor
- Read-only rollups
"""
