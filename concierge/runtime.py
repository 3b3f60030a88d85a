"""Runtime context.

Owns every process-wide structure (breaker registry, response cache, event
channel, provider manager) and injects them into the cascade. Built once at
startup; ``start``/``stop`` manage the background tasks.
"""

import asyncio
import json
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable

from .analytics import UsageTracker
from .cache import CacheJanitor, ResponseCache
from .config import Config
from .escalation import EscalationEngine
from .events import EventBus, RedisStreamSink
from .llm import Capability, ProviderDescriptor, ProviderManager, build_descriptors
from .orchestrator import CascadeOrchestrator
from .responses import preload_items
from .semantic import KnowledgeIndex, SemanticSearch
from .session import SessionManager
from .stores import (
    MemoryCacheStore,
    MemoryEscalationStore,
    RedisCacheStore,
    RedisEscalationStore,
    connect_redis,
)
from .utils.resilience import CircuitBreakerRegistry, CircuitState, ResilienceExecutor, RetryPolicy

logger = logging.getLogger(__name__)


class Runtime:
    """Everything the pipeline needs, wired from a ``Config``.

    Usage:
        runtime = await Runtime.connect(Config())
        await runtime.start()
        result = await runtime.orchestrator.resolve("hi", "en", user_id="42")
        await runtime.stop()
    """

    def __init__(
        self,
        config: Config,
        redis=None,
        descriptors: list[ProviderDescriptor] | None = None,
        semantic: SemanticSearch | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.redis = redis

        self.events = EventBus(max_size=config.event_queue_size)
        if redis is not None and config.event_stream_enabled:
            self.events.add_sink(RedisStreamSink(redis))

        self.breakers = CircuitBreakerRegistry(
            failure_threshold=config.breaker_failure_threshold,
            reset_timeout=config.breaker_reset_timeout,
            clock=clock,
            on_state_change=self._on_breaker_change,
        )
        self.executor = ResilienceExecutor(
            self.breakers,
            default_policy=RetryPolicy(
                max_attempts=config.retry_max_attempts,
                base_delay=config.retry_base_delay,
                backoff_multiplier=config.retry_backoff_multiplier,
                max_delay=config.retry_max_delay,
            ),
            ai_policy=RetryPolicy(
                max_attempts=config.ai_retry_max_attempts,
                base_delay=config.ai_retry_base_delay,
                backoff_multiplier=config.retry_backoff_multiplier,
                max_delay=config.retry_max_delay,
            ),
            sleep=sleep,
        )

        self.cache = ResponseCache(
            store=RedisCacheStore(redis) if redis is not None else MemoryCacheStore(),
            max_size=config.memory_cache_size,
            ttl=config.memory_cache_ttl,
            default_max_age=config.persistent_horizon_semantic,
            aggressive_ratio=config.cache_aggressive_ratio,
            clock=clock,
        )
        self.janitor = CacheJanitor(
            self.cache,
            sweep_interval=config.cache_sweep_interval,
            aggressive_interval=config.cache_aggressive_interval,
        )

        self.escalation = EscalationEngine(
            sink=RedisEscalationStore(redis) if redis is not None else MemoryEscalationStore(),
            failure_threshold=config.escalation_failure_threshold,
            complexity_threshold=config.complexity_threshold,
            events=self.events,
            clock=clock,
        )

        self.providers = ProviderManager(
            self.executor,
            descriptors or [],
            embedding_provider=config.embedding_provider,
            fallback_enabled=config.fallback_enabled,
            events=self.events,
        )
        if config.default_provider in self.providers.available_providers():
            # Configured default goes first for everyone without a preference
            default = self.providers.get(config.default_provider)
            self.providers.register(replace(default, priority=0))

        if semantic is None and self.providers.available_providers(Capability.EMBEDDINGS):
            semantic = KnowledgeIndex(self.providers.embed)
        self.semantic = semantic

        self.usage = UsageTracker(clock=clock)
        self.sessions = SessionManager(
            redis,
            ttl=config.session_ttl,
            history_limit=config.history_limit,
            default_language=config.default_language,
        )

        self.orchestrator = CascadeOrchestrator(
            cache=self.cache,
            escalation=self.escalation,
            executor=self.executor,
            providers=self.providers,
            semantic=self.semantic,
            usage=self.usage,
            events=self.events,
            default_language=config.default_language,
            timeout=config.cascade_timeout,
            semantic_threshold=config.semantic_threshold,
            semantic_limit=config.semantic_limit,
            canned_max_age=config.persistent_horizon_canned,
            semantic_max_age=config.persistent_horizon_semantic,
            history_limit=config.history_limit,
        )
        self._started = False

    @classmethod
    async def connect(cls, config: Config | None = None) -> "Runtime":
        """Build a runtime against real backends (Redis, provider APIs)."""
        config = config or Config()
        redis = await connect_redis(config.redis_url)
        return cls(config, redis=redis, descriptors=build_descriptors(config))

    @property
    def mode(self) -> str:
        return "FULL" if self.redis is not None else "LITE"

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.events.start()
        await self.janitor.start()
        if self.config.preload_canned_responses:
            await self.cache.preload(preload_items(), max_age=self.config.persistent_horizon_canned)
        elif self.redis is not None:
            # Promote what a previous process left in the persistent tier
            await self.cache.warm_up((query, language) for query, language, _, _ in preload_items())
        if self.config.knowledge_file and isinstance(self.semantic, KnowledgeIndex):
            await self._load_knowledge(Path(self.config.knowledge_file))

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.janitor.stop()
        await self.events.stop()
        await self.providers.close()
        if self.redis is not None:
            await self.redis.aclose()

    async def _load_knowledge(self, path: Path) -> None:
        try:
            documents = json.loads(path.read_text(encoding="utf-8"))
            await self.semantic.add_many(
                (d["text"], d.get("language", self.config.default_language)) for d in documents
            )
        except Exception as e:
            logger.error(f"Failed to load knowledge file {path}: {e}")

    def _on_breaker_change(self, name: str, old: CircuitState, new: CircuitState, failures: int) -> None:
        level = "info" if new == CircuitState.CLOSED else "warn"
        self.events.emit(
            level, "Circuit breaker state changed",
            component="resilience", service=name,
            old_state=old.value, new_state=new.value, failures=failures,
        )

    def health(self) -> dict[str, Any]:
        breakers = self.breakers.health_check()
        return {
            "status": breakers["overall"],
            "mode": self.mode,
            "redis": self.redis is not None,
            "providers": self.providers.available_providers(),
            "semantic_search": self.semantic is not None,
            "cache": {"memory_size": len(self.cache), "max_size": self.cache.max_size},
            "unhealthy_services": breakers["unhealthy_services"],
            "events": self.events.stats(),
        }