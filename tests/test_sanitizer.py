"""Tests for the job run metadata allowlist."""

from jobledger.v1.runs.sanitizer import (
    MAX_CAUSE_CHARS,
    MAX_FIELD_CHARS,
    MAX_MESSAGE_FULL_CHARS,
    MAX_STACK_CHARS,
    sanitize_job_meta,
)


class TestSanitizeJobMeta:
    def test_none_and_non_mapping_yield_empty_dict(self):
        assert sanitize_job_meta(None) == {}
        assert sanitize_job_meta("not a dict") == {}  # type: ignore[arg-type]
        assert sanitize_job_meta([("scope", "cron")]) == {}  # type: ignore[arg-type]

    def test_unlisted_keys_are_dropped(self):
        """Secrets and personal data never reach the ledger."""
        meta = {
            "scope": "cron",
            "api_key": "sk-secret",
            "email": "someone@example.com",
            "password": "hunter2",
        }
        assert sanitize_job_meta(meta) == {"scope": "cron"}

    def test_enum_fields_require_known_values(self):
        assert sanitize_job_meta({"scope": "batch", "runner": "worker"}) == {
            "scope": "batch",
            "runner": "worker",
        }
        assert sanitize_job_meta({"scope": "galaxy", "runner": "laptop"}) == {}

    def test_string_fields_are_capped(self):
        long_text = "x" * (MAX_FIELD_CHARS + 100)
        sanitized = sanitize_job_meta(
            {"trigger_id": long_text, "timeout_at": long_text, "shard": long_text}
        )
        assert len(sanitized["trigger_id"]) == MAX_FIELD_CHARS
        assert len(sanitized["timeout_at"]) == MAX_FIELD_CHARS
        assert len(sanitized["shard"]) == MAX_FIELD_CHARS

    def test_shard_accepts_non_negative_int(self):
        assert sanitize_job_meta({"shard": 3}) == {"shard": 3}
        assert sanitize_job_meta({"shard": -1}) == {}

    def test_cancel_requested_must_be_bool(self):
        assert sanitize_job_meta({"cancel_requested": True}) == {"cancel_requested": True}
        assert sanitize_job_meta({"cancel_requested": "yes"}) == {}

    def test_stats_keep_numeric_allowlisted_keys(self):
        sanitized = sanitize_job_meta(
            {
                "stats": {
                    "items_processed": 10,
                    "items_failed": 1,
                    "tokens_used": 2.5,
                    "items_skipped": True,
                    "customer_names": ["a", "b"],
                }
            }
        )
        assert sanitized == {
            "stats": {"items_processed": 10, "items_failed": 1, "tokens_used": 2.5}
        }

    def test_retry_policy(self):
        sanitized = sanitize_job_meta(
            {
                "retry_policy": {
                    "max_retries": 3,
                    "backoff": "exponential",
                    "base_ms": 100,
                    "max_ms": -5,
                    "jitter": "full",
                }
            }
        )
        assert sanitized == {
            "retry_policy": {"max_retries": 3, "backoff": "exponential", "base_ms": 100}
        }

    def test_summaries_use_inner_allowlists(self):
        sanitized = sanitize_job_meta(
            {
                "input_summary": {
                    "resource": "posts",
                    "batch_size": 50,
                    "raw_rows": [{"email": "x@example.com"}],
                },
                "output_summary": {"records_written": 12, "body": "..."},
            }
        )
        assert sanitized == {
            "input_summary": {"resource": "posts", "batch_size": 50},
            "output_summary": {"records_written": 12},
        }

    def test_oversized_summary_value_is_dropped(self):
        sanitized = sanitize_job_meta(
            {"input_summary": {"filters": {"q": "y" * (MAX_FIELD_CHARS * 2)}}}
        )
        assert sanitized == {"input_summary": {}}

    def test_env_fields(self):
        sanitized = sanitize_job_meta(
            {"env": {"region": "eu-west-1", "version": "1.2.3", "hostname": "box"}}
        )
        assert sanitized == {"env": {"region": "eu-west-1", "version": "1.2.3"}}

    def test_error_details_are_bounded(self):
        sanitized = sanitize_job_meta(
            {
                "error_details": {
                    "message_full": "m" * 6000,
                    "stack": "s" * 6000,
                    "cause": "c" * 2000,
                    "context": {"rows": ["r" * 100] * 50},
                    "request_body": "dropped",
                }
            }
        )
        details = sanitized["error_details"]
        assert len(details["message_full"]) == MAX_MESSAGE_FULL_CHARS
        assert len(details["stack"]) == MAX_STACK_CHARS
        assert len(details["cause"]) == MAX_CAUSE_CHARS
        assert details["context"] == {"truncated": True}
        assert "request_body" not in details

    def test_small_error_context_is_kept(self):
        sanitized = sanitize_job_meta({"error_details": {"context": {"attempt": 2}}})
        assert sanitized == {"error_details": {"context": {"attempt": 2}}}

    def test_never_raises_on_unserializable_values(self):
        sanitized = sanitize_job_meta(
            {"input_summary": {"filters": object()}, "error_details": {"context": {1, 2}}}
        )
        assert sanitized["input_summary"] == {}
        assert sanitized["error_details"] == {"context": {"truncated": True}}
