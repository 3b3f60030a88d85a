"""
Base Provider Interface.

Every generative backend implements the same small capability interface
(``generate``, ``embed``, ``analyze_image``). The failover manager selects
providers through ``ProviderDescriptor`` records, never by method name.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from concierge.errors import ProviderUnavailableError

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    CHAT = "chat"
    EMBEDDINGS = "embeddings"
    IMAGE_ANALYSIS = "image_analysis"


class CostModel(str, Enum):
    PAID = "paid"
    FREE = "free"


@dataclass(slots=True)
class ProviderConfig:
    """Provider-agnostic connection and generation settings."""

    provider: str
    api_key: Optional[str] = None
    model: Optional[str] = None
    embed_model: Optional[str] = None
    region: Optional[str] = None

    # Generation parameters
    temperature: float = 0.7
    max_tokens: int = 150
    timeout: int = 30

    # Optional endpoint override (for self-hosted or proxies)
    base_url: Optional[str] = None


@dataclass(slots=True)
class LLMResponse:
    """Standardized text result from any provider."""
    text: str
    provider: str = "unknown"
    model: str = "unknown"
    usage: dict = field(default_factory=dict)
    latency_ms: int = 0

    @property
    def input_tokens(self) -> int:
        return int(self.usage.get("prompt_tokens", 0) or 0)

    @property
    def output_tokens(self) -> int:
        return int(self.usage.get("completion_tokens", 0) or 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "provider": self.provider,
            "model": self.model,
            "usage": self.usage,
            "latency_ms": self.latency_ms,
        }


class BaseProvider(ABC):
    """
    Abstract base class for generative providers.

    Failures raise. The caller wraps every call in the provider's circuit
    breaker, so a swallowed error would hide an outage from it.

    Implementations:
    - OpenAIProvider: chat, embeddings, image analysis
    - GeminiProvider: chat, image analysis
    - BedrockProvider: Nova chat and image analysis, Titan embeddings
    """

    capabilities: frozenset[Capability] = frozenset()

    def __init__(self, config: ProviderConfig):
        self.config = config
        self.available = False

    @property
    def name(self) -> str:
        return self.config.provider

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def _require(self, capability: Capability) -> None:
        if not self.available:
            raise ProviderUnavailableError(f"{self.name} is not available")
        if not self.supports(capability):
            raise ProviderUnavailableError(f"{self.name} does not support {capability.value}")

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> LLMResponse:
        """
        Generate a chat completion.

        Args:
            prompt: User prompt / main content
            system_prompt: Optional system instruction
            options: Per-call overrides (max_tokens, temperature)
        """

    async def embed(self, text: str) -> list[float]:
        self._require(Capability.EMBEDDINGS)
        raise NotImplementedError

    async def analyze_image(
        self,
        prompt: str,
        image_url: str,
        options: Optional[dict[str, Any]] = None,
    ) -> LLMResponse:
        self._require(Capability.IMAGE_ANALYSIS)
        raise NotImplementedError

    def _option(self, options: Optional[dict[str, Any]], key: str, default: Any) -> Any:
        if options and options.get(key) is not None:
            return options[key]
        return default

    async def close(self) -> None:
        """Cleanup resources. Override if needed."""

    def get_info(self) -> dict[str, Any]:
        return {
            "provider": self.name,
            "available": self.available,
            "model": self.config.model,
            "capabilities": sorted(c.value for c in self.capabilities),
        }


@dataclass(slots=True, frozen=True)
class ProviderDescriptor:
    """Registration record for one provider.

    Immutable once registered; ``with_handle`` returns a copy bound to a
    concrete provider instance.
    """
    name: str
    priority: int  # lower is tried first
    capabilities: frozenset[Capability]
    cost_model: CostModel
    circuit_breaker_key: str
    embedding_breaker_key: Optional[str] = None
    handle: Optional[BaseProvider] = field(default=None, compare=False)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities and self.handle is not None

    def with_handle(self, handle: Optional[BaseProvider]) -> "ProviderDescriptor":
        return replace(self, handle=handle)

    @property
    def is_free(self) -> bool:
        return self.cost_model == CostModel.FREE
