from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel


class ProviderExecutionError(RuntimeError):
    """Raised when a reasoning provider call fails at the transport level."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retriable = retriable


class ProviderTimeoutError(ProviderExecutionError):
    """Raised when a provider call exceeds its configured timeout."""


class ProviderResponseError(ProviderExecutionError):
    """Raised when the provider answers with something that is not a JSON object."""


class ReasoningProvider(ABC):
    name: str = "provider"
    model: str = ""

    @abstractmethod
    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        output_schema: type[BaseModel],
    ) -> dict[str, Any]:
        """Return a structured result shaped like ``output_schema``.

        Implementations must not validate the payload against the schema;
        stages do that so they can classify structural failures themselves.
        """
