from __future__ import annotations

import allure

from agent_relay.sanitization import mask_values, sanitize_preview

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Error Redaction"),
]


def test_sanitize_preview_redacts_secret_patterns() -> None:
    raw = (
        "Authorization: Bearer abcdef1234567890 "
        "key sk-ant-secret12345 "
        "password: hunter22 "
        "contact user@example.com "
        "url https://example.com/cb?sig=1&signature=abcd"
    )

    sanitized = sanitize_preview(raw)

    assert "abcdef1234567890" not in sanitized
    assert "Bearer [redacted-token]" in sanitized
    assert "sk-ant-secret12345" not in sanitized
    assert "hunter22" not in sanitized
    assert "password=[redacted-secret]" in sanitized
    assert "user@example.com" not in sanitized
    assert "&signature=[redacted]" in sanitized


def test_injected_secret_values_are_masked() -> None:
    sanitized = sanitize_preview(
        "engine failed with s3cr3t-value in output",
        secret_values=["s3cr3t-value"],
    )

    assert sanitized == "engine failed with [redacted-secret] in output"


def test_short_secret_values_are_left_alone() -> None:
    assert mask_values("key abc supersecret", ["abc", "supersecret"]) == (
        "key abc [redacted-secret]"
    )


def test_longest_secret_is_masked_first() -> None:
    assert mask_values("token-long", ["token", "token-long"]) == "[redacted-secret]"


def test_preview_is_stripped_and_clamped() -> None:
    assert sanitize_preview("   ") == ""
    assert sanitize_preview("  " + "x" * 50, max_chars=10) == "x" * 10
    assert sanitize_preview("plain failure") == "plain failure"
