"""
Session Manager - Keeps each user's ConversationContext between messages.
Stores contexts in Redis with TTL, falls back to in-memory.

Used by the transport layer; the resolution pipeline never persists contexts.
"""

import json

from .models import ConversationContext


class SessionManager:
    """Manages conversation contexts with an optional Redis backend."""

    __slots__ = ("redis", "ttl", "history_limit", "default_language", "_fallback")

    def __init__(self, redis=None, ttl: int = 3600, history_limit: int = 20, default_language: str = "en"):
        self.redis = redis
        self.ttl = ttl  # 1 hour default
        self.history_limit = history_limit
        self.default_language = default_language
        self._fallback: dict[str, ConversationContext] = {}

    def _key(self, user_id: str) -> str:
        return f"concierge:session:{user_id}"

    async def get(self, user_id: str, language: str | None = None) -> ConversationContext:
        """Get or create the context for ``user_id``."""
        context = None
        if self.redis is not None:
            if data := await self.redis.get(self._key(user_id)):
                context = ConversationContext.from_dict(json.loads(data))
        else:
            context = self._fallback.get(user_id)

        if context is None:
            context = ConversationContext(
                user_id=user_id,
                language=language or self.default_language,
                history_limit=self.history_limit,
            )
        elif language:
            context.language = language
        return context

    async def save(self, context: ConversationContext) -> None:
        """Persist context to storage."""
        if self.redis is not None:
            data = json.dumps(context.to_dict())
            await self.redis.setex(self._key(context.user_id), self.ttl, data)
        else:
            self._fallback[context.user_id] = context

    async def delete(self, user_id: str) -> None:
        if self.redis is not None:
            await self.redis.delete(self._key(user_id))
        else:
            self._fallback.pop(user_id, None)

    async def clear_all(self) -> int:
        """Clear all sessions. Returns count deleted."""
        if self.redis is not None:
            keys = [key async for key in self.redis.scan_iter(match="concierge:session:*")]
            if keys:
                await self.redis.delete(*keys)
            return len(keys)
        count = len(self._fallback)
        self._fallback.clear()
        return count
