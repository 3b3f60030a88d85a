"""Pytest configuration and shared fixtures."""

import sys
from fnmatch import fnmatch
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from concierge.cache import ResponseCache
from concierge.escalation import EscalationEngine
from concierge.llm.base import BaseProvider, Capability, LLMResponse, ProviderConfig
from concierge.stores import MemoryCacheStore, MemoryEscalationStore
from concierge.utils.resilience import CircuitBreakerRegistry, ResilienceExecutor, RetryPolicy


class FakeClock:
    """Manually advanced clock, callable like ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async sleep stand-in that records requested delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeProvider(BaseProvider):
    """Scriptable provider. ``error`` makes every call raise it."""

    def __init__(
        self,
        name: str,
        capabilities=(Capability.CHAT, Capability.IMAGE_ANALYSIS),
        text: str = "generated answer",
        error: Exception | None = None,
        embedding: list[float] | None = None,
    ):
        super().__init__(ProviderConfig(provider=name, model=f"{name}-model"))
        self.capabilities = frozenset(capabilities)
        self.available = True
        self.text = text
        self.error = error
        self.embedding = embedding or [1.0, 0.0, 0.0]
        self.calls = {"generate": 0, "embed": 0, "analyze_image": 0}
        self.last_system_prompt = None
        self.closed = False

    async def generate(self, prompt, system_prompt=None, options=None):
        self.calls["generate"] += 1
        self.last_system_prompt = system_prompt
        if self.error:
            raise self.error
        return LLMResponse(
            text=self.text,
            provider=self.name,
            model=self.config.model,
            usage={"prompt_tokens": 100, "completion_tokens": 50},
        )

    async def embed(self, text):
        self.calls["embed"] += 1
        if self.error:
            raise self.error
        return list(self.embedding)

    async def analyze_image(self, prompt, image_url, options=None):
        self.calls["analyze_image"] += 1
        if self.error:
            raise self.error
        return LLMResponse(text=f"image: {image_url}", provider=self.name, model=self.config.model)

    async def close(self):
        self.closed = True


class FakePipeline:
    """Queues commands and applies them on ``execute``."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, key, value):
        self.ops.append(("set", key, value))

    def zadd(self, key, mapping):
        self.ops.append(("zadd", key, mapping))

    async def execute(self):
        for op, *args in self.ops:
            await getattr(self.redis, op)(*args)
        self.ops = []


class FakeRedis:
    """Dict-backed stand-in for the subset of redis.asyncio the stores use."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.streams: dict[str, list[dict]] = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value

    async def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def scan_iter(self, match="*"):
        for key in list(self.data):
            if fnmatch(key, match):
                yield key

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    async def zrangebyscore(self, key, low, high):
        low, high = float(low), float(high)
        members = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1])
        return [member for member, score in members if low <= score <= high]

    async def xadd(self, stream, fields, maxlen=None, approximate=True):
        self.streams.setdefault(stream, []).append(fields)

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def registry(clock):
    return CircuitBreakerRegistry(failure_threshold=5, reset_timeout=60.0, clock=clock)


@pytest.fixture
def executor(registry, sleeper):
    return ResilienceExecutor(
        registry,
        default_policy=RetryPolicy(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0, max_delay=10.0),
        ai_policy=RetryPolicy(max_attempts=2, base_delay=2.0),
        sleep=sleeper,
    )


@pytest.fixture
def cache_store():
    return MemoryCacheStore()


@pytest.fixture
def cache(cache_store, clock):
    return ResponseCache(store=cache_store, max_size=200, ttl=180.0, clock=clock)


@pytest.fixture
def escalation_store():
    return MemoryEscalationStore()


@pytest.fixture
def escalation(escalation_store, clock):
    return EscalationEngine(escalation_store, failure_threshold=3, complexity_threshold=0.8, clock=clock)


@pytest.fixture
def make_provider():
    """Factory for FakeProvider instances."""
    return FakeProvider
