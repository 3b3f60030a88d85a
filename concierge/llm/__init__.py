"""
Generative Provider Package.

Capability interface, concrete providers and the failover manager.

Usage:
    from concierge.llm import ProviderManager, build_descriptors, Capability

    manager = ProviderManager(executor, build_descriptors(cfg))
    outcome = await manager.generate("Hotels in Gondar?", user_id="42")
"""

from .base import (
    BaseProvider,
    Capability,
    CostModel,
    LLMResponse,
    ProviderConfig,
    ProviderDescriptor,
)
from .factory import PROVIDER_PRIORITY, build_descriptors, create_provider, describe
from .manager import InvocationResult, ProviderManager

__all__ = [
    # Base
    "BaseProvider",
    "Capability",
    "CostModel",
    "LLMResponse",
    "ProviderConfig",
    "ProviderDescriptor",
    # Factory
    "PROVIDER_PRIORITY",
    "build_descriptors",
    "create_provider",
    "describe",
    # Manager
    "InvocationResult",
    "ProviderManager",
]
