"""
Unit tests for SDK layer.

Tests OpenAI client wrapper behavior, error classification and ledger records.
"""

import os
import tempfile
from datetime import date
from decimal import Decimal
from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from ai_reliability_guard.config.loader import build_guard_config
from ai_reliability_guard.core.engine import ReliabilityGuard
from ai_reliability_guard.errors import (
    AllModelsExhausted,
    ErrorKind,
    FatalProviderError,
    RetryableProviderError,
)
from ai_reliability_guard.sdk.openai_client import (
    GuardedOpenAI,
    classify_openai_error,
    to_provider_error,
)
from ai_reliability_guard.storage.models import GLOBAL_TENANT, TENANT_SCOPE
from ai_reliability_guard.storage.repository import TenantUsageRepository

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _status_error(cls, status_code):
    response = httpx.Response(status_code, request=REQUEST)
    return cls("boom", response=response, body=None)


def _completion(prompt_tokens=100, completion_tokens=50):
    response = Mock()
    response.id = "chat_123"
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    response.choices = [Mock(finish_reason="stop")]
    return response


class TestErrorClassification:
    """Test mapping of OpenAI exceptions to error kinds."""

    @pytest.mark.parametrize("error, kind", [
        (openai.APITimeoutError(request=REQUEST), ErrorKind.TIMEOUT),
        (openai.APIConnectionError(request=REQUEST), ErrorKind.CONNECTION),
        (_status_error(openai.RateLimitError, 429), ErrorKind.RATE_LIMIT),
        (_status_error(openai.AuthenticationError, 401), ErrorKind.AUTHENTICATION),
        (_status_error(openai.PermissionDeniedError, 403), ErrorKind.PERMISSION_DENIED),
        (_status_error(openai.BadRequestError, 400), ErrorKind.BAD_REQUEST),
        (_status_error(openai.NotFoundError, 404), ErrorKind.BAD_REQUEST),
        (_status_error(openai.InternalServerError, 500), ErrorKind.SERVER_ERROR),
        (_status_error(openai.APIStatusError, 503), ErrorKind.SERVER_ERROR),
        (_status_error(openai.ConflictError, 409), ErrorKind.UNKNOWN),
    ])
    def test_classification(self, error, kind):
        assert classify_openai_error(error) is kind

    def test_provider_error_types(self):
        assert isinstance(to_provider_error(_status_error(openai.RateLimitError, 429)), RetryableProviderError)
        assert isinstance(to_provider_error(_status_error(openai.BadRequestError, 400)), FatalProviderError)


class TestGuardedOpenAI:
    """Test GuardedOpenAI client wrapper."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        self.today = date(2026, 3, 15)
        self.sleeps = []
        config = build_guard_config({
            "max_retries": 1,
            "base_delay": 0.1,
            "max_delay": 0.2,
            "agents": {
                "SummaryAgent": {"model": "gpt-4", "fallback_models": ["gpt-3.5-turbo"]}
            },
            "budgets": {"global_daily_cost": 100.0}
        })
        self.guard = ReliabilityGuard(
            config,
            db_path=self.db_path,
            sleeper=self.sleeps.append,
            today=lambda: self.today
        )

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch('ai_reliability_guard.sdk.openai_client.OpenAI')
    def test_init_uses_configured_model(self, mock_openai_class):
        """Test successful initialization."""
        mock_openai_class.return_value = Mock()

        client = GuardedOpenAI("SummaryAgent", self.guard)

        assert client.model == "gpt-4"
        assert client.agent_type == "SummaryAgent"
        assert client.client is mock_openai_class.return_value

    def test_init_missing_agent_type(self):
        """Test initialization fails with missing agent type."""
        with pytest.raises(ValueError, match="agent_type is required"):
            GuardedOpenAI("", self.guard, client=Mock())

    def test_init_missing_model(self):
        """Test initialization fails when no model is given or configured."""
        with pytest.raises(ValueError, match="model is required"):
            GuardedOpenAI("UnknownAgent", self.guard, client=Mock())

    @patch('ai_reliability_guard.sdk.openai_client.OpenAI')
    def test_chat_success_records_execution(self, mock_openai_class):
        """Test successful chat call records execution and spend."""
        mock_response = _completion()
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = mock_response
        mock_openai_class.return_value = mock_client

        client = GuardedOpenAI("SummaryAgent", self.guard)
        messages = [{"role": "user", "content": "Hello"}]
        result = client.chat(messages=messages, temperature=0.7)

        mock_client.chat.completions.create.assert_called_once_with(
            model="gpt-4",
            messages=messages,
            temperature=0.7,
            max_tokens=None
        )
        assert result.content is mock_response
        assert result.chosen_model == "gpt-4"
        # GPT-4: 100 * 30/M + 50 * 60/M
        assert float(result.total_cost) == pytest.approx(0.006)

        records = self.guard.executions.get_recent_executions()
        assert len(records) == 1
        assert records[0].status == "success"
        assert records[0].input_tokens == 100

        usage = TenantUsageRepository(self.db_path).get_usage(GLOBAL_TENANT, TENANT_SCOPE, self.today)
        assert usage.daily_cost_spent == Decimal("0.006")
        assert usage.daily_tokens_used == 150

    def test_rate_limit_retries_then_falls_back(self):
        """Test retryable OpenAI errors go through retry and fallback."""
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = [
            _status_error(openai.RateLimitError, 429),
            _status_error(openai.RateLimitError, 429),
            _completion(),
        ]

        client = GuardedOpenAI("SummaryAgent", self.guard, client=mock_client)
        result = client.chat(messages=[{"role": "user", "content": "Hello"}])

        models = [call.kwargs["model"] for call in mock_client.chat.completions.create.call_args_list]
        assert models == ["gpt-4", "gpt-4", "gpt-3.5-turbo"]
        assert result.chosen_model == "gpt-3.5-turbo"
        assert len(self.sleeps) == 1

    def test_auth_error_is_not_retried(self):
        """Test fatal OpenAI errors skip retries but still fall back."""
        mock_client = Mock()
        mock_client.chat.completions.create.side_effect = _status_error(openai.AuthenticationError, 401)

        client = GuardedOpenAI("SummaryAgent", self.guard, client=mock_client)
        with pytest.raises(AllModelsExhausted) as exc_info:
            client.chat(messages=[{"role": "user", "content": "Hello"}])

        assert mock_client.chat.completions.create.call_count == 2
        assert isinstance(exc_info.value.last_error, FatalProviderError)
        assert self.sleeps == []

        records = self.guard.executions.get_recent_executions()
        assert records[0].status == "error"
        assert records[0].attempts_count == 2

    def test_missing_usage_fails_attempt(self):
        response = _completion()
        response.usage = None
        mock_client = Mock()
        mock_client.chat.completions.create.return_value = response

        client = GuardedOpenAI("SummaryAgent", self.guard, client=mock_client)
        with pytest.raises(AllModelsExhausted, match="missing usage"):
            client.chat(messages=[{"role": "user", "content": "Hello"}])

    def test_empty_messages_rejected(self):
        client = GuardedOpenAI("SummaryAgent", self.guard, client=Mock())
        with pytest.raises(ValueError, match="messages is required"):
            client.chat(messages=[])
