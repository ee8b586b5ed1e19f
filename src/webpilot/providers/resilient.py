from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel

from webpilot.providers.base import (
    ProviderExecutionError,
    ProviderTimeoutError,
    ReasoningProvider,
)

ProviderEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 45.0


class ResilientProvider(ReasoningProvider):
    """Wraps primary/fallback providers with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary_provider: ReasoningProvider,
        fallback_name: str,
        fallback_provider: ReasoningProvider,
        retry_policy: RetryPolicy,
        event_hook: ProviderEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_provider = primary_provider
        self.fallback_name = fallback_name
        self.fallback_provider = fallback_provider
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.name = primary_provider.name
        self.model = primary_provider.model

    def _emit(self, event: dict[str, Any]) -> None:
        logger.debug("[PROVIDER] {event}", event=event.get("event"), detail=event)
        if self.event_hook:
            self.event_hook(event)

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        output_schema: type[BaseModel],
    ) -> dict[str, Any]:
        attempts: list[tuple[str, ReasoningProvider]] = [
            (self.primary_name, self.primary_provider)
        ]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_provider))

        call_name = f"invoke:{output_schema.__name__}"
        errors: list[str] = []
        for provider_name, provider in attempts:
            if provider_name != self.primary_name:
                self._emit(
                    {
                        "event": "provider_failover_start",
                        "provider": provider_name,
                        "call": call_name,
                    }
                )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "provider_retry",
                            "provider": provider_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "call": call_name,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    payload = await asyncio.wait_for(
                        provider.invoke(system_prompt, user_prompt, output_schema),
                        timeout=self.retry_policy.timeout_seconds,
                    )
                except TimeoutError:
                    error = ProviderTimeoutError(
                        "Provider request timed out after "
                        f"{self.retry_policy.timeout_seconds:.1f}s",
                        provider=provider_name,
                        retriable=True,
                    )
                    errors.append(f"{provider_name}[{attempt}]: {error}")
                    self._emit(
                        {
                            "event": "provider_attempt_failed",
                            "provider": provider_name,
                            "attempt": attempt,
                            "call": call_name,
                            "error": str(error),
                            "retriable": True,
                        }
                    )
                    continue
                except ProviderExecutionError as exc:
                    errors.append(f"{provider_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "provider_attempt_failed",
                            "provider": provider_name,
                            "attempt": attempt,
                            "call": call_name,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                except Exception as exc:
                    errors.append(f"{provider_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "provider_attempt_failed",
                            "provider": provider_name,
                            "attempt": attempt,
                            "call": call_name,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )
                    continue

                if provider_name != self.primary_name:
                    self._emit(
                        {
                            "event": "provider_fallback_success",
                            "provider": provider_name,
                            "attempt": attempt,
                            "call": call_name,
                        }
                    )
                return payload

        summary = "; ".join(errors[-6:])
        raise ProviderExecutionError(
            f"All provider attempts failed for {call_name}. {summary}",
            provider=self.primary_name,
            retriable=False,
        )
