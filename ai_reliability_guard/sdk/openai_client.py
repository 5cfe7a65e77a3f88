"""
Guarded OpenAI client wrapper.

Routes chat completions through the reliability guard: retries, fallback
models, circuit breakers, total timeout and budgets all apply, and every call
lands in the execution ledger.
"""

from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from ..core.constraints import CancellationToken
from ..core.engine import ReliabilityGuard
from ..core.orchestrator import ExecutionResult
from ..core.provider import ProviderResponse
from ..errors import (
    DEFAULT_RETRYABLE_KINDS,
    FATAL_KINDS,
    ErrorKind,
    FatalProviderError,
    ProviderError,
    RetryableProviderError,
)


def classify_openai_error(error: openai.OpenAIError) -> ErrorKind:
    """Map an OpenAI SDK exception to an ErrorKind."""
    # APITimeoutError subclasses APIConnectionError
    if isinstance(error, openai.APITimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, openai.APIConnectionError):
        return ErrorKind.CONNECTION
    if isinstance(error, openai.RateLimitError):
        return ErrorKind.RATE_LIMIT
    if isinstance(error, openai.AuthenticationError):
        return ErrorKind.AUTHENTICATION
    if isinstance(error, openai.PermissionDeniedError):
        return ErrorKind.PERMISSION_DENIED
    if isinstance(error, (openai.BadRequestError, openai.NotFoundError,
                          openai.UnprocessableEntityError)):
        return ErrorKind.BAD_REQUEST
    if isinstance(error, openai.InternalServerError):
        return ErrorKind.SERVER_ERROR
    if isinstance(error, openai.APIStatusError) and error.status_code >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.UNKNOWN


def to_provider_error(error: openai.OpenAIError) -> ProviderError:
    kind = classify_openai_error(error)
    if kind in FATAL_KINDS:
        return FatalProviderError(str(error), kind)
    if kind in DEFAULT_RETRYABLE_KINDS:
        return RetryableProviderError(str(error), kind)
    return ProviderError(str(error), kind)


class GuardedOpenAI:
    """OpenAI chat client whose calls run through a ReliabilityGuard.

    The wrapped model is the primary; fallbacks, retries and budgets come from
    the guard's configuration for ``agent_type``.
    """

    def __init__(
        self,
        agent_type: str,
        guard: ReliabilityGuard,
        model: Optional[str] = None,
        tenant_id: Optional[str] = None,
        client: Optional[OpenAI] = None
    ):
        """Initialize guarded OpenAI client.

        Args:
            agent_type: Agent identifier for config, breakers and budgets (required)
            guard: Engine that executes the calls
            model: Primary model; defaults to the agent's configured model
            tenant_id: Default tenant for calls from this client
            client: Existing OpenAI client (a new one is created otherwise)

        Raises:
            ValueError: If agent_type is missing/empty or no model is available
        """
        if not agent_type or not agent_type.strip():
            raise ValueError("agent_type is required and cannot be empty")

        model = model or guard.config.model_for(agent_type)
        if not model or not model.strip():
            raise ValueError(f"model is required: none given and none configured for '{agent_type}'")

        self.agent_type = agent_type
        self.guard = guard
        self.model = model
        self.tenant_id = tenant_id
        self.client = client or OpenAI()

    def invoke(self, model_id: str, request: Dict[str, Any]) -> ProviderResponse:
        """Provider invoker: one chat completion against ``model_id``.

        Raises:
            ProviderError: For any OpenAI API failure, classified by kind
            ValueError: If the response has no usage information
        """
        try:
            response = self.client.chat.completions.create(model=model_id, **request)
        except openai.OpenAIError as e:
            raise to_provider_error(e) from e

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        choice = response.choices[0] if response.choices else None
        return ProviderResponse(
            content=response,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            finish_reason=getattr(choice, "finish_reason", None)
        )

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        tenant_id: Optional[str] = None,
        budget_override: Optional[Dict[str, Any]] = None,
        cancel: Optional[CancellationToken] = None,
        **kwargs: Any
    ) -> ExecutionResult:
        """Create a guarded chat completion.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            tenant_id: Tenant for this call, overriding the client default
            budget_override: Per-call budget fields
            cancel: Optional cancellation token
            **kwargs: Additional OpenAI parameters

        Returns:
            ExecutionResult whose ``content`` is the OpenAI response

        Raises:
            ValueError: If messages is empty
            TerminalError subclasses: Budget, timeout, cancellation or exhaustion
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        request = dict(messages=messages, temperature=temperature, max_tokens=max_tokens, **kwargs)
        return self.guard.execute(
            self.agent_type,
            request,
            model=self.model,
            tenant_id=tenant_id or self.tenant_id,
            budget_override=budget_override,
            cancel=cancel,
            invoke=self.invoke
        )
