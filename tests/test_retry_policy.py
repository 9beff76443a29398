from datetime import UTC, datetime, timedelta

from herald.core.settings import _parse_seconds_table
from herald.worker.retry import backoff_seconds, in_backoff_window, sanitize_error

EMAIL_SCHEDULE = (0, 30, 120, 600, 1800)


def test_backoff_seconds_indexes_by_attempts_and_clamps() -> None:
    assert backoff_seconds(0, EMAIL_SCHEDULE) == 0
    assert backoff_seconds(1, EMAIL_SCHEDULE) == 30
    assert backoff_seconds(2, EMAIL_SCHEDULE) == 120
    assert backoff_seconds(4, EMAIL_SCHEDULE) == 1800
    assert backoff_seconds(9, EMAIL_SCHEDULE) == 1800
    assert backoff_seconds(-1, EMAIL_SCHEDULE) == 0


def test_backoff_is_monotonic_over_attempts() -> None:
    waits = [backoff_seconds(attempts, (0, 15, 60, 300, 900)) for attempts in range(8)]
    assert waits == sorted(waits)


def test_in_backoff_window_uses_last_attempt() -> None:
    last = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    assert in_backoff_window(last + timedelta(seconds=10), last, 1, EMAIL_SCHEDULE)
    assert not in_backoff_window(last + timedelta(seconds=30), last, 1, EMAIL_SCHEDULE)
    assert not in_backoff_window(last, None, 3, EMAIL_SCHEDULE)


def test_parse_seconds_table_rejects_bad_entries() -> None:
    assert _parse_seconds_table("0, 15,60", name="X") == (0, 15, 60)
    for raw in ("", "1,-2", "a,b"):
        try:
            _parse_seconds_table(raw, name="X")
        except ValueError:
            continue
        raise AssertionError(f"{raw!r} should be rejected")


def test_sanitize_error_redacts_sensitive_values() -> None:
    exc = ValueError("Authorization: Bearer secret-token-abc")
    error_text = sanitize_error(exc, default_message="failed")
    assert "secret-token-abc" not in error_text
    assert "[redacted]" in error_text


def test_sanitize_error_truncates_and_defaults() -> None:
    assert sanitize_error(RuntimeError(""), default_message="fallback") == "fallback"
    assert len(sanitize_error(RuntimeError("x" * 900), default_message="f")) == 500
