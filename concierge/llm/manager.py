"""
Provider Failover Manager.

Given a capability, tries the registered providers that support it in
order (user preference first, then ascending priority), each through its
own circuit breaker, and returns the first success.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from concierge.errors import AllProvidersFailedError, ProviderUnavailableError
from concierge.events import EventBus
from concierge.utils.resilience import ResilienceExecutor

from .base import BaseProvider, Capability, LLMResponse, ProviderDescriptor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InvocationResult:
    result: Any  # LLMResponse for chat/image analysis, list[float] for embeddings
    provider_used: str
    fallback_used: bool
    attempted: list[str] = field(default_factory=list)
    descriptor: Optional[ProviderDescriptor] = None

    def to_dict(self) -> dict[str, Any]:
        result = self.result.to_dict() if isinstance(self.result, LLMResponse) else self.result
        return {
            "result": result,
            "provider_used": self.provider_used,
            "fallback_used": self.fallback_used,
            "attempted": self.attempted,
        }


def _chat(handle: BaseProvider, payload: dict, options: dict) -> Awaitable[LLMResponse]:
    return handle.generate(payload["prompt"], payload.get("system_prompt"), options)


def _image(handle: BaseProvider, payload: dict, options: dict) -> Awaitable[LLMResponse]:
    return handle.analyze_image(payload["prompt"], payload["image_url"], options)


def _embed(handle: BaseProvider, payload: dict, options: dict) -> Awaitable[list[float]]:
    return handle.embed(payload["text"])


_DISPATCH: dict[Capability, Callable[[BaseProvider, dict, dict], Awaitable[Any]]] = {
    Capability.CHAT: _chat,
    Capability.IMAGE_ANALYSIS: _image,
    Capability.EMBEDDINGS: _embed,
}


class ProviderManager:
    """Ordered provider failover with per-user preferences.

    Usage:
        manager = ProviderManager(executor, build_descriptors(cfg))
        outcome = await manager.invoke(Capability.CHAT, {"prompt": "..."}, user_id="42")
        outcome.result.text, outcome.provider_used, outcome.fallback_used
    """

    def __init__(
        self,
        executor: ResilienceExecutor,
        descriptors: Iterable[ProviderDescriptor] = (),
        embedding_provider: str = "openai",
        fallback_enabled: bool = True,
        events: EventBus | None = None,
    ):
        self.executor = executor
        self.embedding_provider = embedding_provider
        self.fallback_enabled = fallback_enabled
        self.events = events
        self._providers: dict[str, ProviderDescriptor] = {}
        self._preferences: dict[str, str] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, descriptor: ProviderDescriptor) -> None:
        self._providers[descriptor.name] = descriptor
        logger.debug(
            f"Registered provider {descriptor.name} (priority {descriptor.priority}, "
            f"handle: {descriptor.handle is not None})"
        )

    def attach_handle(self, name: str, handle: BaseProvider | None) -> None:
        """Bind (or unbind) the concrete provider behind a registered descriptor."""
        if name not in self._providers:
            raise ValueError(f"Unknown provider: {name}")
        self._providers[name] = self._providers[name].with_handle(handle)

    def get(self, name: str) -> ProviderDescriptor | None:
        return self._providers.get(name)

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def set_user_preference(self, user_id: str, provider: str) -> None:
        if provider not in self._providers:
            raise ValueError(f"Unknown provider: {provider}")
        self._preferences[user_id] = provider
        logger.info(f"User {user_id} prefers provider {provider}")

    def get_user_preference(self, user_id: str) -> str | None:
        return self._preferences.get(user_id)

    def clear_user_preference(self, user_id: str) -> None:
        self._preferences.pop(user_id, None)

    def set_fallback_enabled(self, enabled: bool) -> None:
        self.fallback_enabled = enabled
        logger.info(f"Provider fallback {'enabled' if enabled else 'disabled'}")

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def candidates(self, capability: Capability, user_id: str | None = None) -> list[ProviderDescriptor]:
        """Providers able to serve ``capability``, in the order they will be tried."""
        ordered = sorted(
            (d for d in self._providers.values() if d.supports(capability)),
            key=lambda d: d.priority,
        )
        preferred = self._preferences.get(user_id) if user_id else None
        if preferred:
            for i, descriptor in enumerate(ordered):
                if descriptor.name == preferred:
                    ordered.insert(0, ordered.pop(i))
                    break
        return ordered

    def available_providers(self, capability: Capability | None = None) -> list[str]:
        if capability is None:
            return [d.name for d in self._providers.values() if d.handle is not None]
        return [d.name for d in self.candidates(capability)]

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def invoke(
        self,
        capability: Capability,
        payload: dict[str, Any],
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> InvocationResult:
        """Try each candidate provider until one succeeds.

        Raises:
            AllProvidersFailedError: every candidate failed, or none exist.
        """
        call = _DISPATCH[capability]
        options = options or {}
        candidates = self.candidates(capability, user_id)
        if not self.fallback_enabled:
            candidates = candidates[:1]

        attempted: list[str] = []
        last_error: BaseException | None = None

        for descriptor in candidates:
            attempted.append(descriptor.name)
            handle = descriptor.handle
            try:
                result = await self.executor.execute_ai(
                    descriptor.circuit_breaker_key,
                    lambda: call(handle, payload, options),
                    operation_name=f"{descriptor.name}.{capability.value}",
                )
            except Exception as e:
                last_error = e
                logger.warning(f"Provider {descriptor.name} failed for {capability.value}: {e}")
                self._emit("warn", "Provider call failed", provider=descriptor.name,
                           capability=capability.value, error=str(e))
                continue

            fallback_used = len(attempted) > 1
            if fallback_used:
                logger.info(f"Provider fallback used: {descriptor.name} after {attempted[:-1]}")
                self._emit("info", "Provider fallback used", provider=descriptor.name,
                           capability=capability.value, attempted=attempted)
            return InvocationResult(
                result=result,
                provider_used=descriptor.name,
                fallback_used=fallback_used,
                attempted=attempted,
                descriptor=descriptor,
            )

        self._emit("error", "All providers failed", capability=capability.value, attempted=attempted)
        raise AllProvidersFailedError(capability.value, attempted, last_error)

    async def generate(
        self,
        prompt: str,
        user_id: str | None = None,
        system_prompt: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> InvocationResult:
        return await self.invoke(
            Capability.CHAT,
            {"prompt": prompt, "system_prompt": system_prompt},
            user_id,
            options,
        )

    async def analyze_image(
        self,
        prompt: str,
        image_url: str,
        user_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> InvocationResult:
        return await self.invoke(
            Capability.IMAGE_ANALYSIS,
            {"prompt": prompt, "image_url": image_url},
            user_id,
            options,
        )

    async def embed(self, text: str) -> list[float]:
        """Embed through the single designated provider. No failover, no retry.

        Raises:
            ProviderUnavailableError: the designated provider cannot embed.
            CircuitOpenError: its embedding breaker is open.
        """
        descriptor = self._providers.get(self.embedding_provider)
        if descriptor is None or not descriptor.supports(Capability.EMBEDDINGS):
            raise ProviderUnavailableError(
                f"Embedding provider '{self.embedding_provider}' is not available"
            )
        key = descriptor.embedding_breaker_key or f"{descriptor.name}_embeddings"
        return await self.executor.registry.call(key, lambda: descriptor.handle.embed(text))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def provider_status(self) -> dict[str, Any]:
        registry = self.executor.registry
        providers = {}
        for descriptor in sorted(self._providers.values(), key=lambda d: d.priority):
            breaker = registry.get(descriptor.circuit_breaker_key).get_state()
            info = descriptor.handle.get_info() if descriptor.handle is not None else {}
            providers[descriptor.name] = {
                "priority": descriptor.priority,
                "model": info.get("model"),
                "capabilities": sorted(c.value for c in descriptor.capabilities),
                "cost_model": descriptor.cost_model.value,
                "available": descriptor.handle is not None,
                "circuit_breaker": breaker,
                "healthy": descriptor.handle is not None and breaker["is_healthy"],
            }
        return {
            "providers": providers,
            "fallback_enabled": self.fallback_enabled,
            "embedding_provider": self.embedding_provider,
            "user_preferences": len(self._preferences),
        }

    async def close(self) -> None:
        for descriptor in self._providers.values():
            if descriptor.handle is not None:
                await descriptor.handle.close()

    def _emit(self, level: str, message: str, **context: Any) -> None:
        if self.events is not None:
            self.events.emit(level, message, component="providers", **context)
