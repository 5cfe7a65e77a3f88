"""
Unit tests for the error taxonomy.
"""

import socket

import pytest

from ai_reliability_guard.errors import (
    AllModelsExhausted,
    BudgetExceeded,
    CircuitOpenError,
    ErrorKind,
    FatalProviderError,
    ProviderError,
    RetryableProviderError,
    TerminalError,
    TotalTimeoutExceeded,
    classify_error,
    error_payload,
)


class TestClassifyError:
    """Test mapping exceptions to error kinds."""

    @pytest.mark.parametrize("error, kind", [
        (RetryableProviderError("429", ErrorKind.RATE_LIMIT), ErrorKind.RATE_LIMIT),
        (RetryableProviderError("503"), ErrorKind.SERVER_ERROR),
        (FatalProviderError("bad"), ErrorKind.BAD_REQUEST),
        (ProviderError("odd"), ErrorKind.UNKNOWN),
        (CircuitOpenError("SummaryAgent", "gpt-4o"), ErrorKind.CIRCUIT_OPEN),
        (TimeoutError("read timed out"), ErrorKind.TIMEOUT),
        (socket.timeout("timed out"), ErrorKind.TIMEOUT),
        (ConnectionResetError("reset"), ErrorKind.CONNECTION),
        (ValueError("nope"), ErrorKind.UNKNOWN),
    ])
    def test_classification(self, error, kind):
        assert classify_error(error) is kind

    def test_retryable_rejects_fatal_kind(self):
        with pytest.raises(ValueError):
            RetryableProviderError("401", ErrorKind.AUTHENTICATION)

    @pytest.mark.parametrize("kind", [ErrorKind.UNKNOWN, ErrorKind.CIRCUIT_OPEN])
    def test_retryable_rejects_non_transient_kind(self, kind):
        with pytest.raises(ValueError, match="not a retryable error kind"):
            RetryableProviderError("upstream hiccup", kind)

    def test_fatal_rejects_transient_kind(self):
        with pytest.raises(ValueError):
            FatalProviderError("429", ErrorKind.RATE_LIMIT)


class TestTerminalErrors:
    """Test terminal error messages and attempt history."""

    def test_attempts_are_copied(self):
        attempts = ["a", "b"]
        error = TotalTimeoutExceeded(5.0, 5.2, attempts)
        attempts.append("c")

        assert error.attempts == ["a", "b"]
        assert isinstance(error, TerminalError)
        assert "5.0s" in str(error)

    def test_budget_exceeded_message(self):
        error = BudgetExceeded("per_agent_daily_cost", 4.9, 5.0, tenant_id="acme", agent_type="SummaryAgent")
        message = str(error)
        assert "per_agent_daily_cost" in message
        assert "SummaryAgent" in message
        assert "tenant acme" in message
        assert error.attempts == []

    def test_exhausted_without_attempts(self):
        error = AllModelsExhausted(["gpt-4o"], None)
        assert "no attempts were made" in str(error)

    def test_circuit_open_message(self):
        error = CircuitOpenError("SummaryAgent", "gpt-4o", time_until_close=12.34)
        assert "closes in 12.3s" in str(error)


def test_error_payload_truncates_message():
    payload = error_payload(ValueError("x" * 2000))
    assert payload["error_class"] == "ValueError"
    assert payload["error_kind"] == "unknown"
    assert len(payload["error_message"]) == 1000
