"""
Fallback Cascade Orchestrator.

Resolves a query through ordered stages, cheapest first:

    escalation check -> cache -> canned answer -> semantic lookup
    -> generative provider -> static final fallback

The first stage that produces a non-empty answer wins. Every stage boundary
catches and logs its own errors and falls through; ``resolve`` itself never
raises.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from .analytics import UsageTracker, chat_cost, embedding_cost, estimate_tokens
from .cache import ResponseCache
from .classifier import QueryCategory, classify
from .errors import AllProvidersFailedError
from .escalation import EscalationEngine
from .events import EventBus
from .llm.manager import ProviderManager
from .models import (
    ConversationContext,
    EscalationDecision,
    EscalationReason,
    ResolutionMethod,
    ResolutionResult,
)
from .responses import build_system_prompt, canned_response, error_message, final_fallback
from .semantic import SearchResult, SemanticSearch
from .utils.resilience import ResilienceExecutor

logger = logging.getLogger(__name__)

# Methods that count as a failed interaction for escalation purposes
FAILED_METHODS = frozenset({ResolutionMethod.FINAL_FALLBACK, ResolutionMethod.ERROR_FALLBACK})


@dataclass(slots=True)
class _CascadeState:
    """Per-resolution bookkeeping."""
    stage: str = "start"
    degraded: bool = False  # some stage raised
    category: QueryCategory | None = None


class CascadeOrchestrator:
    """Sequences the resolution stages for one query at a time.

    Usage:
        orchestrator = CascadeOrchestrator(cache, escalation, executor, providers, semantic)
        result = await orchestrator.resolve("hotels in gondar", "en", user_id="42", context=ctx)
        result.response, result.method
    """

    SEMANTIC_SERVICE_KEY = "embeddings"

    def __init__(
        self,
        cache: ResponseCache,
        escalation: EscalationEngine,
        executor: ResilienceExecutor,
        providers: ProviderManager | None = None,
        semantic: SemanticSearch | None = None,
        usage: UsageTracker | None = None,
        events: EventBus | None = None,
        default_language: str = "en",
        timeout: float = 15.0,
        semantic_threshold: float = 0.8,
        semantic_limit: int = 3,
        canned_max_age: float = 7 * 24 * 3600.0,
        semantic_max_age: float = 24 * 3600.0,
        history_limit: int = 20,
    ):
        self.cache = cache
        self.escalation = escalation
        self.executor = executor
        self.providers = providers
        self.semantic = semantic
        self.usage = usage
        self.events = events
        self.default_language = default_language
        self.timeout = timeout
        self.semantic_threshold = semantic_threshold
        self.semantic_limit = semantic_limit
        self.canned_max_age = canned_max_age
        self.semantic_max_age = semantic_max_age
        self.history_limit = history_limit

    async def resolve(
        self,
        query: str,
        language: str | None = None,
        user_id: str = "anonymous",
        context: ConversationContext | None = None,
        timeout: float | None = None,
    ) -> ResolutionResult:
        """Resolve ``query``. Never raises.

        Args:
            query: The user's message
            language: Response language; defaults to the context's, then the default
            user_id: Used when no context is supplied
            context: Caller-owned conversation state, updated in place
            timeout: Bound on total latency; on expiry the active stage is
                abandoned and the final fallback returned
        """
        start = time.time()
        if context is None:
            context = ConversationContext(
                user_id=user_id,
                language=language or self.default_language,
                history_limit=self.history_limit,
            )
        language = language or context.language or self.default_language
        state = _CascadeState()

        try:
            result = await asyncio.wait_for(
                self._run(query, language, context, state),
                timeout if timeout is not None else self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Cascade timed out during '{state.stage}' stage for user {context.user_id}")
            self._emit("warn", "Cascade timed out", user_id=context.user_id, stage=state.stage)
            result = ResolutionResult(
                response=final_fallback(language, degraded=True),
                method=ResolutionMethod.FINAL_FALLBACK,
                timed_out=True,
            )
        except Exception as e:
            logger.error(f"Cascade failed during '{state.stage}' stage: {e}", exc_info=True)
            self._emit("error", "Cascade failed", user_id=context.user_id, stage=state.stage, error=str(e))
            result = ResolutionResult(
                response=error_message(language),
                method=ResolutionMethod.ERROR_FALLBACK,
            )

        result.latency_ms = int((time.time() - start) * 1000)
        if result.category is None and state.category is not None:
            result.category = state.category.value
        self._finish(query, language, context, result)
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run(
        self,
        query: str,
        language: str,
        context: ConversationContext,
        state: _CascadeState,
    ) -> ResolutionResult:
        state.stage = "escalation"
        decision = await self.escalation.should_escalate(context, query)
        if decision.escalate:
            return await self._escalate(query, language, context, decision)

        state.stage = "cache"
        if result := await self._from_cache(query, language, state):
            return result

        state.stage = "fallback"
        state.category = classify(query)
        if result := await self._from_canned(query, language, state):
            return result

        state.stage = "semantic_search"
        if result := await self._from_semantic(query, language, state):
            return result

        state.stage = "ai_generated"
        if result := await self._from_provider(query, language, context, state):
            return result

        state.stage = "final_fallback"
        return ResolutionResult(
            response=final_fallback(language, degraded=state.degraded),
            method=ResolutionMethod.FINAL_FALLBACK,
        )

    async def _escalate(
        self,
        query: str,
        language: str,
        context: ConversationContext,
        decision: EscalationDecision,
    ) -> ResolutionResult:
        try:
            record = await self.escalation.open_case(context, query, decision)
            decision.case_id = record.id
            if decision.reason == EscalationReason.CONSECUTIVE_FAILURES:
                # The open case now carries the conversation
                context.failure_count = 0
        except Exception as e:
            # Still hand off; the case can be opened manually
            logger.error(f"Failed to open escalation case for user {context.user_id}: {e}")
        return ResolutionResult(
            response=self.escalation.escalation_message(decision.reason, language),
            method=ResolutionMethod.ESCALATED,
            escalation=decision,
        )

    async def _from_cache(self, query: str, language: str, state: _CascadeState) -> ResolutionResult | None:
        try:
            entry = await self.cache.get(query, language)
        except Exception as e:
            self._stage_failed(state, e)
            return None
        if entry is None or not entry.response_text:
            return None
        return ResolutionResult(
            response=entry.response_text,
            method=ResolutionMethod.CACHED,
            category=entry.category,
        )

    async def _from_canned(self, query: str, language: str, state: _CascadeState) -> ResolutionResult | None:
        text = canned_response(state.category, language, self.default_language)
        if not text:
            return None
        await self._write_through(query, language, text, state.category.value, self.canned_max_age)
        return ResolutionResult(
            response=text,
            method=ResolutionMethod.FALLBACK,
            category=state.category.value,
        )

    async def _search(self, query: str, language: str) -> list[SearchResult]:
        return await self.semantic.search_similar(
            query, language, self.semantic_threshold, self.semantic_limit
        )

    async def _from_semantic(self, query: str, language: str, state: _CascadeState) -> ResolutionResult | None:
        if self.semantic is None:
            return None
        try:
            results = await self.executor.execute(
                self.SEMANTIC_SERVICE_KEY,
                lambda: self._search(query, language),
                operation_name="semantic_search",
            )
        except Exception as e:
            self._stage_failed(state, e)
            return None

        matches = [r for r in results or [] if r.score >= self.semantic_threshold and r.text.strip()]
        if not matches:
            return None

        text = matches[0].text.strip()
        tokens = estimate_tokens(query)
        await self._write_through(query, language, text, "semantic_search", self.semantic_max_age)
        return ResolutionResult(
            response=text,
            method=ResolutionMethod.SEMANTIC_SEARCH,
            cost=embedding_cost(tokens),
            tokens_used=tokens,
        )

    async def _from_provider(
        self,
        query: str,
        language: str,
        context: ConversationContext,
        state: _CascadeState,
    ) -> ResolutionResult | None:
        if self.providers is None:
            return None
        system_prompt = build_system_prompt(language, state.category)
        try:
            outcome = await self.providers.generate(
                query, user_id=context.user_id, system_prompt=system_prompt
            )
        except AllProvidersFailedError as e:
            if e.attempted:
                self._stage_failed(state, e)
            else:
                logger.debug("No generative provider configured; skipping stage")
            return None
        except Exception as e:
            self._stage_failed(state, e)
            return None

        response = outcome.result
        text = response.text.strip()
        if not text:
            return None

        input_tokens = response.input_tokens or estimate_tokens(system_prompt + query)
        output_tokens = response.output_tokens or estimate_tokens(text)
        free = outcome.descriptor is not None and outcome.descriptor.is_free
        # Generated answers are never cached
        return ResolutionResult(
            response=text,
            method=ResolutionMethod.AI_GENERATED,
            cost=chat_cost(input_tokens, output_tokens, free=free),
            tokens_used=input_tokens + output_tokens,
            provider=outcome.provider_used,
            fallback_used=outcome.fallback_used,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _write_through(self, query: str, language: str, text: str, category: str, max_age: float) -> None:
        try:
            await self.cache.set(query, language, text, category, max_age=max_age)
        except Exception as e:
            logger.warning(f"Cache write-through failed: {e}")

    def _stage_failed(self, state: _CascadeState, error: Exception) -> None:
        state.degraded = True
        logger.warning(f"Stage '{state.stage}' failed: {type(error).__name__}: {error}")
        self._emit("warn", "Cascade stage failed", stage=state.stage, error=str(error))

    def _finish(
        self,
        query: str,
        language: str,
        context: ConversationContext,
        result: ResolutionResult,
    ) -> None:
        """Update the caller's context, record usage, publish the outcome."""
        if result.method in FAILED_METHODS:
            context.failure_count += 1
        elif result.method != ResolutionMethod.ESCALATED:
            context.failure_count = 0
        context.last_response = result.response
        context.add_message("user", query)
        context.add_message("assistant", result.response)

        if self.usage is not None:
            self.usage.record(
                user_id=context.user_id,
                query=query,
                language=language,
                method=result.method,
                tokens_used=result.tokens_used,
                cost=result.cost,
                latency_ms=result.latency_ms,
                provider=result.provider,
            )

        logger.debug(f"Resolved via {result.method.value} in {result.latency_ms}ms")
        self._emit(
            "info", "Query resolved",
            user_id=context.user_id,
            method=result.method.value,
            category=result.category,
            provider=result.provider,
            latency_ms=result.latency_ms,
            cost=result.cost,
        )

    def _emit(self, level: str, message: str, **context: Any) -> None:
        if self.events is not None:
            self.events.emit(level, message, component="cascade", **context)
