from __future__ import annotations

import asyncio
from importlib import resources
from typing import Any

from pydantic import BaseModel

from webpilot.errors import CallTimeoutError
from webpilot.providers.base import ProviderExecutionError, ReasoningProvider


class Stage:
    role: str = "stage"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a browser automation specialist."

    def __init__(
        self,
        provider: ReasoningProvider | None,
        *,
        timeout_seconds: float = 45.0,
    ) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("webpilot.prompts").joinpath(self.prompt_file)
            return prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            return self.fallback_prompt.strip()

    async def _invoke(self, user_prompt: str, output_schema: type[BaseModel]) -> dict[str, Any]:
        if self.provider is None:
            raise ProviderExecutionError(
                f"No reasoning provider configured for {self.role}", retriable=False
            )
        try:
            return await asyncio.wait_for(
                self.provider.invoke(self.system_prompt, user_prompt, output_schema),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            raise CallTimeoutError(f"{self.role} provider call", self.timeout_seconds) from exc
        except ProviderExecutionError:
            raise
        except Exception as exc:
            raise ProviderExecutionError(
                f"{self.role} provider failed: {str(exc) or type(exc).__name__}"
            ) from exc
