"""
Allowlist projection of caller metadata before it is persisted on a job run.

job_runs is long-lived and broadly readable, so only known keys survive and
every string is capped. Anything unexpected is dropped without error.
"""

import json
from collections.abc import Mapping
from typing import Any

SCOPES = frozenset({"webhook", "internal", "edge", "batch", "cron"})
RUNNERS = frozenset(
    {"supabase_scheduler", "external_cron", "edge_function", "worker", "cli"}
)
BACKOFF_STRATEGIES = frozenset({"exponential", "fixed"})

STATS_KEYS = (
    "items_processed",
    "rows_affected",
    "tokens_used",
    "shards",
    "items_failed",
    "items_skipped",
)
INPUT_SUMMARY_KEYS = ("resource", "filters", "batch_size", "query_type")
OUTPUT_SUMMARY_KEYS = ("artifact_url", "records_written", "result_type")
ENV_KEYS = ("region", "version", "git_commit_hash")

MAX_FIELD_CHARS = 500
MAX_MESSAGE_FULL_CHARS = 5000
MAX_STACK_CHARS = 5000
MAX_CAUSE_CHARS = 1000
MAX_CONTEXT_CHARS = 2000


def _cap_str(value: Any, limit: int = MAX_FIELD_CHARS) -> str | None:
    if not isinstance(value, str):
        return None
    return value[:limit]


def _number(value: Any) -> int | float | None:
    # bool is an int subclass; a flag is not a count
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def _bounded_json(value: Any, limit: int = MAX_FIELD_CHARS) -> Any:
    """Return value if it encodes to JSON within limit characters, else None."""
    try:
        encoded = json.dumps(value)
    except (TypeError, ValueError):
        return None
    if len(encoded) > limit:
        return None
    return value


def _summary(value: Any, allowed: tuple[str, ...]) -> dict[str, Any] | None:
    if not isinstance(value, Mapping):
        return None
    summary = {}
    for key in allowed:
        if key in value:
            kept = _bounded_json(value[key])
            if kept is not None:
                summary[key] = kept
    return summary


def _retry_policy(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, Mapping):
        return None
    policy: dict[str, Any] = {}
    for key in ("max_retries", "base_ms", "max_ms"):
        number = _non_negative_int(value.get(key))
        if number is not None:
            policy[key] = number
    if value.get("backoff") in BACKOFF_STRATEGIES:
        policy["backoff"] = value["backoff"]
    return policy or None


def _stats(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, Mapping):
        return None
    stats = {}
    for key in STATS_KEYS:
        number = _number(value.get(key))
        if number is not None:
            stats[key] = number
    return stats or None


def _env(value: Any) -> dict[str, str] | None:
    if not isinstance(value, Mapping):
        return None
    env = {}
    for key in ENV_KEYS:
        text = _cap_str(value.get(key))
        if text is not None:
            env[key] = text
    return env or None


def _error_details(value: Any) -> dict[str, Any] | None:
    if not isinstance(value, Mapping):
        return None
    details: dict[str, Any] = {}
    for key, limit in (
        ("message_full", MAX_MESSAGE_FULL_CHARS),
        ("stack", MAX_STACK_CHARS),
        ("cause", MAX_CAUSE_CHARS),
    ):
        text = _cap_str(value.get(key), limit)
        if text is not None:
            details[key] = text

    context = value.get("context")
    if context is not None:
        kept = _bounded_json(context, MAX_CONTEXT_CHARS)
        details["context"] = kept if kept is not None else {"truncated": True}

    return details or None


def sanitize_job_meta(meta: Mapping[str, Any] | None) -> dict[str, Any]:
    """Project arbitrary metadata onto the persisted allowlist."""
    if not isinstance(meta, Mapping):
        return {}

    sanitized: dict[str, Any] = {}

    if meta.get("scope") in SCOPES:
        sanitized["scope"] = meta["scope"]
    if meta.get("runner") in RUNNERS:
        sanitized["runner"] = meta["runner"]

    shard = meta.get("shard")
    if isinstance(shard, str):
        sanitized["shard"] = shard[:MAX_FIELD_CHARS]
    elif _non_negative_int(shard) is not None:
        sanitized["shard"] = shard

    for key in ("trigger_id", "timeout_at"):
        text = _cap_str(meta.get(key))
        if text is not None:
            sanitized[key] = text

    max_duration_ms = _non_negative_int(meta.get("max_duration_ms"))
    if max_duration_ms is not None:
        sanitized["max_duration_ms"] = max_duration_ms

    if isinstance(meta.get("cancel_requested"), bool):
        sanitized["cancel_requested"] = meta["cancel_requested"]

    for key, project in (
        ("retry_policy", _retry_policy),
        ("stats", _stats),
        ("env", _env),
        ("error_details", _error_details),
    ):
        projected = project(meta.get(key))
        if projected is not None:
            sanitized[key] = projected

    for key, allowed in (
        ("input_summary", INPUT_SUMMARY_KEYS),
        ("output_summary", OUTPUT_SUMMARY_KEYS),
    ):
        summary = _summary(meta.get(key), allowed)
        if summary is not None:
            sanitized[key] = summary

    return sanitized
