"""Usage analytics: per-resolution records, token/cost estimates, optimization stats."""

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from time import time
from typing import Any, Callable

from .models import ResolutionMethod

logger = logging.getLogger(__name__)

# USD per 1K tokens
EMBEDDING_COST_PER_1K = 0.00002   # text-embedding-3-small
CHAT_INPUT_COST_PER_1K = 0.00015  # gpt-4o-mini input
CHAT_OUTPUT_COST_PER_1K = 0.0006  # gpt-4o-mini output

# Methods that avoided a generative call
OPTIMIZED_METHODS = frozenset({
    ResolutionMethod.CACHED,
    ResolutionMethod.FALLBACK,
    ResolutionMethod.SEMANTIC_SEARCH,
})


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    return math.ceil(len(text) / 4) if text else 0


def embedding_cost(tokens: int) -> float:
    return tokens / 1000 * EMBEDDING_COST_PER_1K


def chat_cost(input_tokens: int, output_tokens: int, free: bool = False) -> float:
    if free:
        return 0.0
    return input_tokens / 1000 * CHAT_INPUT_COST_PER_1K + output_tokens / 1000 * CHAT_OUTPUT_COST_PER_1K


@dataclass(slots=True)
class UsageRecord:
    user_id: str | None
    query: str
    language: str
    method: ResolutionMethod
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0
    provider: str | None = None
    timestamp: float = field(default_factory=time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "query": self.query,
            "language": self.language,
            "method": self.method.value,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "latency_ms": self.latency_ms,
            "provider": self.provider,
            "timestamp": self.timestamp,
        }


class UsageTracker:
    """Bounded in-memory log of resolutions."""

    def __init__(self, max_records: int = 10000, clock: Callable[[], float] = time):
        self.clock = clock
        self._records: deque[UsageRecord] = deque(maxlen=max_records)

    def __len__(self) -> int:
        return len(self._records)

    def record(
        self,
        user_id: str | None,
        query: str,
        language: str,
        method: ResolutionMethod,
        tokens_used: int = 0,
        cost: float = 0.0,
        latency_ms: int = 0,
        provider: str | None = None,
    ) -> UsageRecord:
        entry = UsageRecord(
            user_id=user_id,
            query=query[:500],
            language=language,
            method=method,
            tokens_used=tokens_used,
            cost=cost,
            latency_ms=latency_ms,
            provider=provider,
            timestamp=self.clock(),
        )
        self._records.append(entry)
        return entry

    def recent(self, limit: int = 20) -> list[UsageRecord]:
        return list(self._records)[-limit:]

    def optimization_stats(self, window: float | None = None) -> dict[str, Any]:
        """Counts per method, totals, and share of queries resolved without a model call."""
        since = self.clock() - window if window else None
        records = [r for r in self._records if since is None or r.timestamp >= since]

        methods: dict[str, int] = {}
        total_tokens = 0
        total_cost = 0.0
        total_latency = 0
        optimized = 0
        for r in records:
            methods[r.method.value] = methods.get(r.method.value, 0) + 1
            total_tokens += r.tokens_used
            total_cost += r.cost
            total_latency += r.latency_ms
            if r.method in OPTIMIZED_METHODS:
                optimized += 1

        total = len(records)
        return {
            "total_queries": total,
            "methods": methods,
            "total_tokens": total_tokens,
            "total_cost": round(total_cost, 6),
            "average_latency_ms": round(total_latency / total, 1) if total else 0.0,
            "optimization_rate": round(optimized / total * 100, 2) if total else 0.0,
        }
