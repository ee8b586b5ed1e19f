from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ProviderName = Literal["openai", "openrouter", "nim", "google", "gateway"]
PlanningFallback = Literal["fail", "direct"]
TimeoutPolicy = Literal["degraded", "fail"]

PROVIDER_BASE_URLS: dict[str, str | None] = {
    "openai": None,
    "openrouter": "https://openrouter.ai/api/v1",
    "nim": "https://integrate.api.nvidia.com/v1",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai/",
    "gateway": "https://ai-gateway.vercel.sh/v1",
}


@dataclass(slots=True)
class ProviderConfig:
    name: ProviderName = "google"
    model: str = "gemini-2.5-flash"
    api_key_env: str = "WEBPILOT_API_KEY"
    base_url: str = ""
    fallback_model: str = ""

    def resolved_base_url(self) -> str | None:
        if self.base_url.strip():
            return self.base_url.strip()
        return PROVIDER_BASE_URLS.get(self.name)


@dataclass(slots=True)
class BackendConfig:
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 45.0


@dataclass(slots=True)
class WorkflowConfig:
    completeness_threshold: float = 0.7
    max_replanning_cycles: int = 2
    planning_max_retries: int = 1
    planning_fallback: PlanningFallback = "fail"
    run_timeout_seconds: float = 120.0
    timeout_policy: TimeoutPolicy = "degraded"
    planning_timeout_seconds: float = 45.0
    evaluation_timeout_seconds: float = 15.0
    analysis_timeout_seconds: float = 15.0
    summary_timeout_seconds: float = 10.0
    error_analysis: bool = True
    summarize_with_provider: bool = True


@dataclass(slots=True)
class ExecutionConfig:
    step_max_retries: int = 1
    tool_timeout_seconds: float = 30.0
    retry_delay_seconds: float = 0.0
    tool_settle_seconds: float = 10.0
    critical_first_navigation: bool = True
    critical_actions: list[str] = field(default_factory=list)
    honor_planner_critical_paths: bool = False


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass(slots=True)
class EventsConfig:
    max_history: int = 1000


@dataclass(slots=True)
class WebpilotConfig:
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    events: EventsConfig = field(default_factory=EventsConfig)

    @classmethod
    def default(cls) -> WebpilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WebpilotConfig:
        return cls(
            provider=ProviderConfig(**data.get("provider", {})),
            backend=BackendConfig(**data.get("backend", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            logging=LoggingConfig(**data.get("logging", {})),
            events=EventsConfig(**data.get("events", {})),
        )

    def to_dict(self) -> dict:
        return {
            "provider": {
                "name": self.provider.name,
                "model": self.provider.model,
                "api_key_env": self.provider.api_key_env,
                "base_url": self.provider.base_url,
                "fallback_model": self.provider.fallback_model,
            },
            "backend": {
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "workflow": {
                "completeness_threshold": self.workflow.completeness_threshold,
                "max_replanning_cycles": self.workflow.max_replanning_cycles,
                "planning_max_retries": self.workflow.planning_max_retries,
                "planning_fallback": self.workflow.planning_fallback,
                "run_timeout_seconds": self.workflow.run_timeout_seconds,
                "timeout_policy": self.workflow.timeout_policy,
                "planning_timeout_seconds": self.workflow.planning_timeout_seconds,
                "evaluation_timeout_seconds": self.workflow.evaluation_timeout_seconds,
                "analysis_timeout_seconds": self.workflow.analysis_timeout_seconds,
                "summary_timeout_seconds": self.workflow.summary_timeout_seconds,
                "error_analysis": self.workflow.error_analysis,
                "summarize_with_provider": self.workflow.summarize_with_provider,
            },
            "execution": {
                "step_max_retries": self.execution.step_max_retries,
                "tool_timeout_seconds": self.execution.tool_timeout_seconds,
                "retry_delay_seconds": self.execution.retry_delay_seconds,
                "tool_settle_seconds": self.execution.tool_settle_seconds,
                "critical_first_navigation": self.execution.critical_first_navigation,
                "critical_actions": list(self.execution.critical_actions),
                "honor_planner_critical_paths": self.execution.honor_planner_critical_paths,
            },
            "logging": {
                "level": self.logging.level,
                "json": self.logging.json,
            },
            "events": {
                "max_history": self.events.max_history,
            },
        }


@dataclass(frozen=True, slots=True)
class Capabilities:
    """What a run may use, decided once when the run is configured."""

    reasoning: bool = False
    diagnostics: bool = False
    summarization: bool = False


def resolve_api_key(config: WebpilotConfig) -> str | None:
    value = os.environ.get(config.provider.api_key_env, "").strip()
    return value or None


def resolve_capabilities(config: WebpilotConfig, *, api_key: str | None) -> Capabilities:
    reasoning = bool(api_key)
    return Capabilities(
        reasoning=reasoning,
        diagnostics=reasoning and config.workflow.error_analysis,
        summarization=reasoning and config.workflow.summarize_with_provider,
    )


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: WebpilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["provider", "backend", "workflow", "execution", "logging", "events"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WebpilotConfig:
    if not path.exists():
        return WebpilotConfig.default()
    return WebpilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: WebpilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
