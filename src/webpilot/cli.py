from __future__ import annotations

import asyncio
import importlib
import json
from collections import Counter
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import click

from webpilot.config import (
    PROVIDER_BASE_URLS,
    WebpilotConfig,
    dumps_toml,
    load_config,
    resolve_api_key,
    resolve_capabilities,
    save_config,
)
from webpilot.log import configure_logging
from webpilot.orchestrator import Orchestrator
from webpilot.providers import OpenAICompatibleProvider, ResilientProvider, RetryPolicy
from webpilot.state import RunContext, RunResult
from webpilot.tools import ToolRegistry

PROVIDER_CHOICES = sorted(PROVIDER_BASE_URLS)


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _record_provider_event(stats: Counter[str], event: dict[str, Any]) -> None:
    name = event.get("event")
    if isinstance(name, str):
        stats[name] += 1


def _build_provider(
    config: WebpilotConfig, api_key: str, stats: Counter[str]
) -> ResilientProvider:
    settings = config.provider
    base_url = settings.resolved_base_url()
    fallback_model = settings.fallback_model.strip() or settings.model
    primary = OpenAICompatibleProvider(
        name=settings.name, model=settings.model, api_key=api_key, base_url=base_url
    )
    fallback = OpenAICompatibleProvider(
        name=settings.name, model=fallback_model, api_key=api_key, base_url=base_url
    )
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(1.0, float(config.backend.timeout_seconds)),
    )
    return ResilientProvider(
        primary_name=f"{settings.name}:{settings.model}",
        primary_provider=primary,
        fallback_name=f"{settings.name}:{fallback_model}",
        fallback_provider=fallback,
        retry_policy=policy,
        event_hook=lambda event: _record_provider_event(stats, event),
    )


def _load_tools(reference: str) -> ToolRegistry:
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise click.BadParameter("Expected 'module:attribute'.", param_hint="--tools")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise click.ClickException(f"Cannot import tool module '{module_name}': {exc}") from exc
    try:
        target = getattr(module, attribute)
    except AttributeError as exc:
        raise click.ClickException(f"'{module_name}' has no attribute '{attribute}'") from exc
    if callable(target) and not isinstance(target, Mapping):
        target = target()
    if not isinstance(target, Mapping):
        raise click.ClickException(
            f"Tool registry '{reference}' must be a mapping of action name to callable."
        )
    return dict(target)


def _echo_result(result: RunResult, stats: Counter[str]) -> None:
    click.echo(f"Run: {result.run_id}")
    click.echo(f"Phase: {result.phase}")
    click.echo(f"Success: {'yes' if result.success else 'no'}")
    if result.degraded:
        click.echo("Degraded: yes")
    click.echo(f"Steps: {result.steps}")
    if result.replanning_cycles:
        click.echo(f"Replanning cycles: {result.replanning_cycles}")
    if result.final_url:
        click.echo(f"Final URL: {result.final_url}")
    if result.error:
        click.echo(f"Error: {result.error}")
    if stats:
        click.echo(
            "Provider events: "
            + ", ".join(f"{name}={count}" for name, count in sorted(stats.items()))
        )
    if result.error_analysis is not None:
        click.echo("")
        click.echo(f"Recap: {result.error_analysis.recap}")
        click.echo(f"Blame: {result.error_analysis.blame}")
        click.echo(f"Improvement: {result.error_analysis.improvement}")
    if result.final_answer:
        click.echo("")
        click.echo(result.final_answer.rstrip())


@click.group()
def cli() -> None:
    """Webpilot CLI."""


@cli.command("init")
@click.option("--provider", "provider_name", type=click.Choice(PROVIDER_CHOICES), default=None)
@click.option("--config", "config_value", default="webpilot.toml", show_default=True)
def init_command(provider_name: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    config = load_config(config_path)
    if provider_name:
        config.provider.name = provider_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Provider: {config.provider.name} ({config.provider.model})")
    click.echo(f"API key variable: {config.provider.api_key_env}")


@cli.command("run")
@click.argument("query")
@click.option("--tools", "tools_ref", required=True, help="module:attribute of a tool registry.")
@click.option("--url", "current_url", default=None, help="URL the browser is currently on.")
@click.option("--config", "config_value", default="webpilot.toml", show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False)
def run_command(
    query: str,
    tools_ref: str,
    current_url: str | None,
    config_value: str,
    as_json: bool,
) -> None:
    config = load_config(_resolve_config_path(Path.cwd().resolve(), config_value))
    configure_logging(config.logging.level, json=config.logging.json)
    tools = _load_tools(tools_ref)

    api_key = resolve_api_key(config)
    capabilities = resolve_capabilities(config, api_key=api_key)
    stats: Counter[str] = Counter()
    provider = _build_provider(config, api_key, stats) if api_key else None

    orchestrator = Orchestrator(
        config=config, tools=tools, provider=provider, capabilities=capabilities
    )
    context = RunContext(current_url=current_url) if current_url else None
    result = asyncio.run(orchestrator.run(query, context))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        _echo_result(result, stats)
    if not result.success:
        raise click.exceptions.Exit(1)


@cli.command("config")
@click.option("--config", "config_value", default="webpilot.toml", show_default=True)
def config_command(config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    config = load_config(config_path)
    capabilities = resolve_capabilities(config, api_key=resolve_api_key(config))
    click.echo(f"# {config_path}{'' if config_path.exists() else ' (defaults)'}")
    click.echo(dumps_toml(config).rstrip())
    click.echo("")
    click.echo(
        f"# capabilities: reasoning={capabilities.reasoning} "
        f"diagnostics={capabilities.diagnostics} summarization={capabilities.summarization}"
    )


@cli.command("provider")
@click.argument("provider_name", type=click.Choice(PROVIDER_CHOICES))
@click.option("--model", default=None)
@click.option("--config", "config_value", default="webpilot.toml", show_default=True)
def provider_command(provider_name: str, model: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    config = load_config(config_path)
    config.provider.name = provider_name  # type: ignore[assignment]
    if model:
        config.provider.model = model
    save_config(config_path, config)
    click.echo(f"Provider set to {provider_name} ({config.provider.model})")
