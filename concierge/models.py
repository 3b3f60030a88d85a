"""Resolution Pipeline Models.

Data structures shared by the cache, escalation engine and cascade
orchestrator. Enums subclass ``str`` so they serialize as plain values.
"""

import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from time import time
from typing import Any


class ResolutionMethod(str, Enum):
    """Which cascade stage produced the answer."""
    CACHED = "cached"
    FALLBACK = "fallback"
    SEMANTIC_SEARCH = "semantic_search"
    AI_GENERATED = "ai_generated"
    FINAL_FALLBACK = "final_fallback"
    ESCALATED = "escalated"
    ERROR_FALLBACK = "error_fallback"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EscalationReason(str, Enum):
    CONSECUTIVE_FAILURES = "consecutive_failures"
    HUMAN_REQUEST = "human_request"
    COMPLEX_QUERY = "complex_query"
    BOOKING_MODIFICATION = "booking_modification"
    COMPLAINT = "complaint"
    TECHNICAL_ERROR = "technical_error"
    MANUAL_ESCALATION = "manual_escalation"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


ACTIVE_ESCALATION_STATUSES = (EscalationStatus.PENDING, EscalationStatus.IN_PROGRESS)


@dataclass(slots=True)
class CacheEntry:
    """A cached answer keyed by normalized query hash + language.

    Attributes:
        key: Hash of the normalized query text.
        language: Language code the answer is written in.
        response_text: The answer returned to the user.
        category: Classifier category or stage tag that produced it.
        created_at: When the answer was first written.
        last_used_at: Last read or write; drives persistent staleness.
        hit_count: Number of reads served.
        expires_at: Optional absolute expiry, checked in both tiers.
        max_age: Persistent-tier staleness horizon in seconds.
        query_text: Original query, kept for diagnostics only.
    """
    key: str
    language: str
    response_text: str
    category: str = "general"
    created_at: float = field(default_factory=time)
    last_used_at: float = field(default_factory=time)
    hit_count: int = 0
    expires_at: float | None = None
    max_age: float = 24 * 3600.0
    query_text: str = ""

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_stale(self, now: float) -> bool:
        """Persistent-tier freshness check."""
        return self.is_expired(now) or now - self.last_used_at > self.max_age

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "language": self.language,
            "response_text": self.response_text,
            "category": self.category,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "hit_count": self.hit_count,
            "expires_at": self.expires_at,
            "max_age": self.max_age,
            "query_text": self.query_text,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        return cls(
            key=data["key"],
            language=data["language"],
            response_text=data["response_text"],
            category=data.get("category", "general"),
            created_at=data.get("created_at", time()),
            last_used_at=data.get("last_used_at", time()),
            hit_count=data.get("hit_count", 0),
            expires_at=data.get("expires_at"),
            max_age=data.get("max_age", 24 * 3600.0),
            query_text=data.get("query_text", ""),
        )


@dataclass(slots=True)
class ChatMessage:
    role: str  # "user" | "assistant"
    content: str
    timestamp: float = field(default_factory=time)


@dataclass(slots=True)
class ConversationContext:
    """Session-scoped state owned by the caller.

    The pipeline reads it and updates ``failure_count``, ``last_response`` and
    the bounded history; persisting it is the caller's job.
    """
    user_id: str
    language: str = "en"
    username: str | None = None
    failure_count: int = 0
    last_response: str | None = None
    history_limit: int = 20
    conversation_history: deque = field(default_factory=deque)

    def __post_init__(self):
        if self.conversation_history.maxlen != self.history_limit:
            self.conversation_history = deque(
                self.conversation_history, maxlen=self.history_limit
            )

    def add_message(self, role: str, content: str) -> None:
        self.conversation_history.append(ChatMessage(role=role, content=content))

    def history(self) -> list[dict[str, Any]]:
        return [
            {"role": m.role, "content": m.content, "timestamp": m.timestamp}
            for m in self.conversation_history
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "language": self.language,
            "username": self.username,
            "failure_count": self.failure_count,
            "last_response": self.last_response,
            "history_limit": self.history_limit,
            "conversation_history": self.history(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationContext":
        limit = data.get("history_limit", 20)
        return cls(
            user_id=data["user_id"],
            language=data.get("language", "en"),
            username=data.get("username"),
            failure_count=data.get("failure_count", 0),
            last_response=data.get("last_response"),
            history_limit=limit,
            conversation_history=deque(
                (ChatMessage(**m) for m in data.get("conversation_history", [])),
                maxlen=limit,
            ),
        )


@dataclass(slots=True)
class EscalationRecord:
    """A human-handoff case. One active record per user."""
    user_id: str
    query: str
    reason: EscalationReason
    priority: Priority
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    username: str | None = None
    details: str = ""
    status: EscalationStatus = EscalationStatus.PENDING
    conversation_history: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time)
    updated_at: float = field(default_factory=time)
    resolved_at: float | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ESCALATION_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "username": self.username,
            "query": self.query,
            "reason": self.reason.value,
            "priority": self.priority.value,
            "details": self.details,
            "status": self.status.value,
            "conversation_history": self.conversation_history,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscalationRecord":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            username=data.get("username"),
            query=data.get("query", ""),
            reason=EscalationReason(data["reason"]),
            priority=Priority(data["priority"]),
            details=data.get("details", ""),
            status=EscalationStatus(data.get("status", "pending")),
            conversation_history=data.get("conversation_history", []),
            metadata=data.get("metadata", {}),
            created_at=data.get("created_at", time()),
            updated_at=data.get("updated_at", time()),
            resolved_at=data.get("resolved_at"),
        )


@dataclass(slots=True)
class EscalationDecision:
    escalate: bool
    reason: EscalationReason | None = None
    priority: Priority | None = None
    details: str = ""
    case_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "escalate": self.escalate,
            "reason": self.reason.value if self.reason else None,
            "priority": self.priority.value if self.priority else None,
            "details": self.details,
            "case_id": self.case_id,
        }


@dataclass(slots=True)
class ResolutionResult:
    """What the cascade hands back to the transport layer."""
    response: str
    method: ResolutionMethod
    cost: float = 0.0
    latency_ms: int = 0
    tokens_used: int = 0
    category: str | None = None
    provider: str | None = None
    fallback_used: bool = False
    timed_out: bool = False
    escalation: EscalationDecision | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "method": self.method.value,
            "cost": self.cost,
            "latency_ms": self.latency_ms,
            "tokens_used": self.tokens_used,
            "category": self.category,
            "provider": self.provider,
            "fallback_used": self.fallback_used,
            "timed_out": self.timed_out,
            "escalation": self.escalation.to_dict() if self.escalation else None,
        }
