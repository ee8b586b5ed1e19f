from __future__ import annotations

import asyncio
import json
from typing import Any

from pydantic import BaseModel

from webpilot.providers.base import (
    ProviderExecutionError,
    ProviderResponseError,
    ReasoningProvider,
)

RETRIABLE_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


class OpenAICompatibleProvider(ReasoningProvider):
    """Structured-output provider speaking the OpenAI chat completions API.

    Every supported provider identity (OpenAI, OpenRouter, NVIDIA NIM, Google's
    OpenAI endpoint, gateways) differs only in base URL, so one client covers
    them all.
    """

    def __init__(
        self,
        *,
        name: str,
        model: str,
        api_key: str,
        base_url: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.name = name
        self.model = model
        if client is None:
            from openai import OpenAI

            client = OpenAI(api_key=api_key, base_url=base_url)
        self._client = client

    @staticmethod
    def response_format(output_schema: type[BaseModel]) -> dict[str, Any]:
        return {
            "type": "json_schema",
            "json_schema": {
                "name": output_schema.__name__,
                "schema": output_schema.model_json_schema(),
            },
        }

    @staticmethod
    def _extract_text(payload: Any) -> str:
        choices = getattr(payload, "choices", None)
        if choices is None and isinstance(payload, dict):
            choices = payload.get("choices")
        if not choices:
            return ""
        first = choices[0]
        message = getattr(first, "message", None)
        if message is None and isinstance(first, dict):
            message = first.get("message")
        content = getattr(message, "content", None)
        if content is None and isinstance(message, dict):
            content = message.get("content")
        return content if isinstance(content, str) else ""

    @staticmethod
    def _strip_fences(text: str) -> str:
        stripped = text.strip()
        if stripped.startswith("```"):
            stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
            if stripped.rstrip().endswith("```"):
                stripped = stripped.rstrip()[:-3]
        return stripped.strip()

    def _classify(self, exc: Exception) -> ProviderExecutionError:
        status_code = getattr(exc, "status_code", None)
        retriable = status_code is None or status_code in RETRIABLE_STATUS_CODES
        return ProviderExecutionError(
            f"{self.name} request failed: {exc}",
            provider=self.name,
            status_code=status_code,
            retriable=retriable,
        )

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        output_schema: type[BaseModel],
    ) -> dict[str, Any]:
        def _request() -> Any:
            return self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format=self.response_format(output_schema),
            )

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            raise self._classify(exc) from exc

        text = self._strip_fences(self._extract_text(payload))
        if not text:
            raise ProviderResponseError(
                f"{self.name} returned an empty response", provider=self.name, retriable=True
            )
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProviderResponseError(
                f"{self.name} returned malformed JSON: {exc.msg}",
                provider=self.name,
                retriable=True,
            ) from exc
        if not isinstance(parsed, dict):
            raise ProviderResponseError(
                f"{self.name} returned {type(parsed).__name__}, expected an object",
                provider=self.name,
                retriable=True,
            )
        return parsed
