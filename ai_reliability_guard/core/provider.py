"""
Provider invocation contract.

The guard treats the model call as opaque: an invoker takes a model id and a
request and returns a ProviderResponse, or raises.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from .token_counter import TokenUsage


@dataclass(frozen=True)
class ProviderResponse:
    """Result of one successful provider call."""
    content: Any
    input_tokens: int = 0
    output_tokens: int = 0
    finish_reason: Optional[str] = None

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(self.input_tokens, self.output_tokens)


# invoke(model_id, request) -> ProviderResponse
ProviderInvoker = Callable[[str, Any], ProviderResponse]
