from webpilot.providers.base import (
    ProviderExecutionError,
    ProviderResponseError,
    ProviderTimeoutError,
    ReasoningProvider,
)
from webpilot.providers.openai_compat import OpenAICompatibleProvider
from webpilot.providers.resilient import ResilientProvider, RetryPolicy

__all__ = [
    "OpenAICompatibleProvider",
    "ProviderExecutionError",
    "ProviderResponseError",
    "ProviderTimeoutError",
    "ReasoningProvider",
    "ResilientProvider",
    "RetryPolicy",
]
