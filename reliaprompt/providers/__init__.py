# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
import importlib
import logging
from typing import List

from reliaprompt.config import DEFAULT_MODELS, EngineConfig
from reliaprompt.errors import ConfigurationError
from reliaprompt.providers.base import LLMProvider, ModelRunner

__all__ = [
    "LLMProvider", "ModelRunner", "PROVIDER_REGISTRY",
    "create_provider", "build_model_runners", "parse_model_spec",
]

logger = logging.getLogger(__name__)


# Provider registry: maps provider name to module path and class name
PROVIDER_REGISTRY = {
    "openai": {
        "module": "reliaprompt.providers.openai",
        "class": "OpenAIProvider",
    },
    "anthropic": {
        "module": "reliaprompt.providers.anthropic",
        "class": "AnthropicProvider",
    },
    "ollama": {
        "module": "reliaprompt.providers.ollama",
        "class": "OllamaProvider",
    },
}


def create_provider(provider_name: str, **kwargs) -> LLMProvider:
    """Create an LLM provider by name using the registry."""
    entry = PROVIDER_REGISTRY.get(provider_name)
    if entry is None:
        raise ConfigurationError("Unknown provider: {}".format(provider_name))
    mod = importlib.import_module(entry["module"])
    cls = getattr(mod, entry["class"])
    return cls(**kwargs)


def parse_model_spec(spec: str):
    """Split ``provider:model_id``. A bare provider gets its default model."""
    provider, _, model_id = spec.strip().partition(":")
    provider = provider.strip().lower()
    model_id = model_id.strip() or DEFAULT_MODELS.get(provider, "")
    if provider not in PROVIDER_REGISTRY or not model_id:
        raise ConfigurationError("Invalid model spec: {!r}".format(spec))
    return provider, model_id


def _provider_kwargs(provider: str, config: EngineConfig) -> dict:
    common = {"temperature": config.temperature, "max_tokens": config.max_tokens}
    if provider == "openai":
        return dict(common, api_key=config.openai_api_key)
    if provider == "anthropic":
        return dict(common, api_key=config.anthropic_api_key)
    return dict(common, base_url=config.ollama_base_url)


def _has_credentials(provider: str, config: EngineConfig) -> bool:
    if provider == "openai":
        return bool(config.openai_api_key)
    if provider == "anthropic":
        return bool(config.anthropic_api_key)
    return True


def build_model_runners(config: EngineConfig) -> List[ModelRunner]:
    """Build one runner per configured model spec.

    Providers share one client per name. Specs whose provider has no
    credentials are skipped with a warning.
    """
    providers = {}
    runners: List[ModelRunner] = []
    for spec in config.models:
        provider_name, model_id = parse_model_spec(spec)
        if not _has_credentials(provider_name, config):
            logger.warning("Skipping %s: no API key configured for %s", spec, provider_name)
            continue
        if provider_name not in providers:
            providers[provider_name] = create_provider(
                provider_name, **_provider_kwargs(provider_name, config),
            )
        runners.append(ModelRunner(provider=providers[provider_name], model_id=model_id))
    return runners
