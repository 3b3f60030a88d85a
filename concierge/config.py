"""Configuration with sensible defaults for LITE MODE (no Redis, no provider keys)."""

from dataclasses import dataclass, field
from os import getenv


def _parse_bool(value: str, default: bool = True) -> bool:
    """Parse boolean from environment variable."""
    if not value:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str, default: float) -> float:
    """Parse float from environment variable."""
    try:
        return float(value) if value else default
    except ValueError:
        return default


def _parse_int(value: str, default: int) -> int:
    """Parse int from environment variable."""
    try:
        return int(value) if value else default
    except ValueError:
        return default


def _env_int(name: str, default: int):
    return field(default_factory=lambda: _parse_int(getenv(name, ""), default))


def _env_float(name: str, default: float):
    return field(default_factory=lambda: _parse_float(getenv(name, ""), default))


@dataclass(slots=True, frozen=True)
class Config:
    # ==================== Storage (empty = in-memory LITE MODE) ====================
    redis_url: str = field(default_factory=lambda: getenv("REDIS_URL", ""))
    session_ttl: int = _env_int("SESSION_TTL", 3600)

    # ==================== Circuit Breaker ====================
    breaker_failure_threshold: int = _env_int("BREAKER_FAILURE_THRESHOLD", 5)
    breaker_reset_timeout: float = _env_float("BREAKER_RESET_TIMEOUT", 60.0)

    # ==================== Retry (database-style calls) ====================
    retry_max_attempts: int = _env_int("RETRY_MAX_ATTEMPTS", 3)
    retry_base_delay: float = _env_float("RETRY_BASE_DELAY", 1.0)
    retry_backoff_multiplier: float = _env_float("RETRY_BACKOFF_MULTIPLIER", 2.0)
    retry_max_delay: float = _env_float("RETRY_MAX_DELAY", 10.0)

    # ==================== Retry (AI calls - retries cost money) ====================
    ai_retry_max_attempts: int = _env_int("AI_RETRY_MAX_ATTEMPTS", 2)
    ai_retry_base_delay: float = _env_float("AI_RETRY_BASE_DELAY", 2.0)

    # ==================== Response Cache ====================
    memory_cache_size: int = _env_int("MEMORY_CACHE_SIZE", 200)
    memory_cache_ttl: float = _env_float("MEMORY_CACHE_TTL", 180.0)  # 3 minutes
    cache_sweep_interval: float = _env_float("CACHE_SWEEP_INTERVAL", 120.0)
    cache_aggressive_interval: float = _env_float("CACHE_AGGRESSIVE_INTERVAL", 600.0)
    cache_aggressive_ratio: float = _env_float("CACHE_AGGRESSIVE_RATIO", 0.9)
    persistent_horizon_canned: float = _env_float("PERSISTENT_HORIZON_CANNED", 7 * 24 * 3600.0)
    persistent_horizon_semantic: float = _env_float("PERSISTENT_HORIZON_SEMANTIC", 24 * 3600.0)
    preload_canned_responses: bool = field(
        default_factory=lambda: _parse_bool(getenv("PRELOAD_CANNED_RESPONSES", ""), True)
    )

    # ==================== Semantic Search ====================
    semantic_threshold: float = _env_float("SEMANTIC_THRESHOLD", 0.8)
    semantic_limit: int = _env_int("SEMANTIC_LIMIT", 3)
    # JSON list of {"text": ..., "language": ...} indexed at startup
    knowledge_file: str = field(default_factory=lambda: getenv("KNOWLEDGE_FILE", ""))

    # ==================== Escalation ====================
    escalation_failure_threshold: int = _env_int("ESCALATION_FAILURE_THRESHOLD", 3)
    complexity_threshold: float = _env_float("COMPLEXITY_THRESHOLD", 0.8)

    # ==================== Cascade ====================
    cascade_timeout: float = _env_float("CASCADE_TIMEOUT", 15.0)
    default_language: str = field(default_factory=lambda: getenv("DEFAULT_LANGUAGE", "en"))
    history_limit: int = _env_int("HISTORY_LIMIT", 20)

    # ==================== Event Channel ====================
    event_queue_size: int = _env_int("EVENT_QUEUE_SIZE", 1000)
    event_stream_enabled: bool = field(
        default_factory=lambda: _parse_bool(getenv("EVENT_STREAM_ENABLED", ""), False)
    )

    # ==================== Generative Providers ====================
    openai_api_key: str = field(default_factory=lambda: getenv("OPENAI_API_KEY", ""))
    openai_chat_model: str = field(default_factory=lambda: getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini"))
    openai_embed_model: str = field(
        default_factory=lambda: getenv("OPENAI_EMBED_MODEL", "text-embedding-3-small")
    )
    gemini_api_key: str = field(default_factory=lambda: getenv("GEMINI_API_KEY", ""))
    gemini_model: str = field(default_factory=lambda: getenv("GEMINI_MODEL", "gemini-2.0-flash"))
    # Bedrock uses the boto3 default credential chain; empty region disables it
    aws_region: str = field(default_factory=lambda: getenv("AWS_REGION", ""))
    nova_model: str = field(default_factory=lambda: getenv("NOVA_MODEL", "us.amazon.nova-lite-v1:0"))
    titan_embed_model: str = field(
        default_factory=lambda: getenv("TITAN_EMBED_MODEL", "amazon.titan-embed-text-v2:0")
    )
    provider_timeout: int = _env_int("PROVIDER_TIMEOUT", 30)
    max_tokens: int = _env_int("PROVIDER_MAX_TOKENS", 150)
    temperature: float = _env_float("PROVIDER_TEMPERATURE", 0.7)
    default_provider: str = field(default_factory=lambda: getenv("DEFAULT_PROVIDER", "openai"))
    embedding_provider: str = field(default_factory=lambda: getenv("EMBEDDING_PROVIDER", "openai"))
    fallback_enabled: bool = field(
        default_factory=lambda: _parse_bool(getenv("PROVIDER_FALLBACK_ENABLED", ""), True)
    )

    def is_redis_configured(self) -> bool:
        """Check if a persistent Redis backend is configured."""
        return bool(self.redis_url)

    def is_bedrock_configured(self) -> bool:
        """Check if Bedrock providers should be attempted."""
        return bool(self.aws_region)

    def configured_providers(self) -> list[str]:
        """Provider names that have credentials configured."""
        names = []
        if self.openai_api_key:
            names.append("openai")
        if self.gemini_api_key:
            names.append("gemini")
        if self.aws_region:
            names.append("bedrock")
        return names


cfg = Config()
