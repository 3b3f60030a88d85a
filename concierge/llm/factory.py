"""
Provider Factory.

Builds one ``ProviderDescriptor`` per known backend from ``Config``.
Backends without credentials are still registered, with no handle, so they
show up in status reports but are never selected.
"""

import logging

from concierge.config import Config

from .base import BaseProvider, CostModel, ProviderConfig, ProviderDescriptor
from .providers import BedrockProvider, GeminiProvider, OpenAIProvider

logger = logging.getLogger(__name__)

# Lower is tried first
PROVIDER_PRIORITY = {
    "openai": 1,
    "gemini": 2,
    "bedrock": 3,
}

PROVIDER_CLASSES: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
    "bedrock": BedrockProvider,
}

PROVIDER_COST_MODELS = {
    "openai": CostModel.PAID,
    "gemini": CostModel.FREE,
    "bedrock": CostModel.PAID,
}

# Circuit breaker keys; embeddings get their own breaker
CHAT_BREAKER_KEYS = {
    "openai": "openai_chat",
    "gemini": "gemini_ai",
    "bedrock": "bedrock_nova",
}

EMBEDDING_BREAKER_KEYS = {
    "openai": "openai_embeddings",
    "bedrock": "bedrock_embeddings",
}


def provider_config(name: str, cfg: Config) -> ProviderConfig:
    """Translate application config into one provider's settings."""
    common = {
        "temperature": cfg.temperature,
        "max_tokens": cfg.max_tokens,
        "timeout": cfg.provider_timeout,
    }
    if name == "openai":
        return ProviderConfig(
            provider=name,
            api_key=cfg.openai_api_key or None,
            model=cfg.openai_chat_model,
            embed_model=cfg.openai_embed_model,
            **common,
        )
    if name == "gemini":
        return ProviderConfig(
            provider=name,
            api_key=cfg.gemini_api_key or None,
            model=cfg.gemini_model,
            **common,
        )
    if name == "bedrock":
        return ProviderConfig(
            provider=name,
            region=cfg.aws_region or None,
            model=cfg.nova_model,
            embed_model=cfg.titan_embed_model,
            **common,
        )
    raise ValueError(f"Unknown provider: {name}")


def create_provider(name: str, cfg: Config) -> BaseProvider | None:
    """Create a provider instance, or None when it is not usable."""
    if name not in PROVIDER_CLASSES:
        raise ValueError(f"Unknown provider: {name}")
    provider = PROVIDER_CLASSES[name](provider_config(name, cfg))
    return provider if provider.available else None


def describe(name: str, handle: BaseProvider | None = None) -> ProviderDescriptor:
    """Descriptor for a known provider, optionally bound to a handle."""
    cls = PROVIDER_CLASSES[name]
    return ProviderDescriptor(
        name=name,
        priority=PROVIDER_PRIORITY[name],
        capabilities=cls.capabilities,
        cost_model=PROVIDER_COST_MODELS[name],
        circuit_breaker_key=CHAT_BREAKER_KEYS[name],
        embedding_breaker_key=EMBEDDING_BREAKER_KEYS.get(name),
        handle=handle,
    )


def build_descriptors(cfg: Config) -> list[ProviderDescriptor]:
    """Register every known provider, attaching handles where credentials exist."""
    descriptors = []
    for name in sorted(PROVIDER_CLASSES, key=PROVIDER_PRIORITY.get):
        handle = create_provider(name, cfg)
        descriptors.append(describe(name, handle))

    active = [d.name for d in descriptors if d.handle is not None]
    if active:
        logger.info(f"Providers: Available: {', '.join(active)}")
    else:
        logger.info("Providers: No API keys found - generative stage disabled (LITE MODE)")
    return descriptors
