"""
Content hashing and idempotency keys for embedding jobs.
"""

import hashlib
from uuid import UUID


def content_hash(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def build_idempotency_key(
    organization_id: UUID | str,
    source_table: str,
    source_id: str,
    source_field: str,
    hash_hex: str,
) -> str:
    """
    Deterministic key for one (source field, content) pair.

    Identical content for the same field always yields the same key, so the
    unique constraint on embedding_jobs.idempotency_key rejects re-enqueues.
    """
    return f"emb:{organization_id}:{source_table}:{source_id}:{source_field}:{hash_hex}"
