"""Tests for the fallback cascade."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.analytics import UsageTracker, chat_cost
from concierge.classifier import QueryCategory
from concierge.escalation import EscalationEngine
from concierge.events import EventBus
from concierge.llm import CostModel, ProviderDescriptor, ProviderManager
from concierge.models import ConversationContext, EscalationReason, EscalationStatus, ResolutionMethod
from concierge.orchestrator import CascadeOrchestrator
from concierge.responses import CANNED_RESPONSES, ERROR_MESSAGES, FINAL_FALLBACK
from concierge.semantic import SearchResult

# Matches no classifier pattern and no escalation rule
UNCATEGORIZED = "Is breakfast included at Kuriftu?"


class FakeSemantic:
    """Semantic lookup returning fixed results."""

    def __init__(self, results=None, error=None, delay=0.0):
        self.results = results or []
        self.error = error
        self.delay = delay
        self.calls = 0

    async def search_similar(self, query, language, threshold=0.8, limit=3):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.results)


def provider_descriptor(handle, priority=1, free=False):
    return ProviderDescriptor(
        name=handle.name,
        priority=priority,
        capabilities=frozenset(handle.capabilities),
        cost_model=CostModel.FREE if free else CostModel.PAID,
        circuit_breaker_key=f"{handle.name}_chat",
        handle=handle,
    )


@pytest.fixture
def llm(make_provider):
    return make_provider("openai", text="Yes, breakfast is served from 7 to 10.")


@pytest.fixture
def providers(executor, llm):
    return ProviderManager(executor, [provider_descriptor(llm)])


@pytest.fixture
def semantic():
    return FakeSemantic()


@pytest.fixture
def usage(clock):
    return UsageTracker(clock=clock)


@pytest.fixture
def make_orchestrator(cache, escalation, executor, providers, semantic, usage):
    def factory(**overrides):
        kwargs = {
            "cache": cache,
            "escalation": escalation,
            "executor": executor,
            "providers": providers,
            "semantic": semantic,
            "usage": usage,
            "timeout": 5.0,
        }
        kwargs.update(overrides)
        return CascadeOrchestrator(**kwargs)
    return factory


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def context():
    return ConversationContext(user_id="user-1", language="en")


class TestStageOrder:
    """The first stage with an answer wins."""

    @pytest.mark.asyncio
    async def test_cache_hit_skips_later_stages(self, orchestrator, cache, semantic, llm, context):
        await cache.set(UNCATEGORIZED, "en", "Breakfast is included.")

        result = await orchestrator.resolve(UNCATEGORIZED, "en", context=context)

        assert result.method == ResolutionMethod.CACHED
        assert result.response == "Breakfast is included."
        assert result.cost == 0.0
        assert semantic.calls == 0
        assert llm.calls["generate"] == 0

    @pytest.mark.asyncio
    async def test_canned_answer_is_written_through(self, orchestrator, cache_store, context):
        first = await orchestrator.resolve("hello", "en", context=context)
        second = await orchestrator.resolve("Hello!", "en", context=context)

        assert first.method == ResolutionMethod.FALLBACK
        assert first.category == "greeting"
        assert first.response == CANNED_RESPONSES[QueryCategory.GREETING]["en"]
        assert second.method == ResolutionMethod.CACHED
        assert second.category == "greeting"
        assert await cache_store.count() == 1

    @pytest.mark.asyncio
    async def test_canned_answer_uses_persistent_horizon(self, orchestrator, cache):
        await orchestrator.resolve("help", "en")
        entry = await cache.get("help", "en")
        assert entry.max_age == 7 * 24 * 3600

    @pytest.mark.asyncio
    async def test_canned_answer_falls_back_to_default_language(self, orchestrator):
        result = await orchestrator.resolve("which payment options are there", "so")

        assert result.method == ResolutionMethod.FALLBACK
        assert result.response == CANNED_RESPONSES[QueryCategory.PAYMENT]["en"]

    @pytest.mark.asyncio
    async def test_canned_answer_in_requested_language(self, orchestrator):
        result = await orchestrator.resolve("hello", "am")
        assert result.response == CANNED_RESPONSES[QueryCategory.GREETING]["am"]

    @pytest.mark.asyncio
    async def test_cancel_has_no_canned_answer(self, orchestrator, llm):
        result = await orchestrator.resolve("stop", "en")

        assert result.method == ResolutionMethod.AI_GENERATED
        assert result.category == "cancel"
        assert llm.calls["generate"] == 1

    @pytest.mark.asyncio
    async def test_semantic_hit_is_cached(self, orchestrator, semantic, llm):
        semantic.results = [SearchResult(text="  Breakfast is included at Kuriftu.  ", score=0.92)]

        first = await orchestrator.resolve(UNCATEGORIZED, "en")
        second = await orchestrator.resolve(UNCATEGORIZED, "en")

        assert first.method == ResolutionMethod.SEMANTIC_SEARCH
        assert first.response == "Breakfast is included at Kuriftu."
        assert first.tokens_used == 9
        assert first.cost > 0
        assert second.method == ResolutionMethod.CACHED
        assert second.category == "semantic_search"
        assert semantic.calls == 1
        assert llm.calls["generate"] == 0

    @pytest.mark.asyncio
    async def test_semantic_results_below_threshold_are_ignored(self, orchestrator, semantic):
        semantic.results = [SearchResult(text="Unrelated", score=0.5)]

        result = await orchestrator.resolve(UNCATEGORIZED, "en")

        assert result.method == ResolutionMethod.AI_GENERATED

    @pytest.mark.asyncio
    async def test_generated_answer_is_not_cached(self, orchestrator, llm, cache_store):
        first = await orchestrator.resolve(UNCATEGORIZED, "en")
        second = await orchestrator.resolve(UNCATEGORIZED, "en")

        assert first.method == ResolutionMethod.AI_GENERATED
        assert second.method == ResolutionMethod.AI_GENERATED
        assert llm.calls["generate"] == 2
        assert await cache_store.count() == 0

    @pytest.mark.asyncio
    async def test_generated_answer_cost_and_prompt(self, orchestrator, llm):
        result = await orchestrator.resolve(UNCATEGORIZED, "am")

        assert result.provider == "openai"
        assert result.tokens_used == 150
        assert result.cost == pytest.approx(chat_cost(100, 50))
        assert not result.fallback_used
        assert "Respond in Amharic" in llm.last_system_prompt

    @pytest.mark.asyncio
    async def test_free_provider_costs_nothing(self, make_orchestrator, executor, make_provider):
        gemini = make_provider("gemini", text="Yes it is.")
        providers = ProviderManager(executor, [provider_descriptor(gemini, free=True)])
        orchestrator = make_orchestrator(providers=providers)

        result = await orchestrator.resolve(UNCATEGORIZED, "en")

        assert result.provider == "gemini"
        assert result.cost == 0.0
        assert result.tokens_used == 150

    @pytest.mark.asyncio
    async def test_blank_generated_answer_falls_through(self, make_orchestrator, executor, make_provider):
        blank = make_provider("openai", text="   ")
        orchestrator = make_orchestrator(providers=ProviderManager(executor, [provider_descriptor(blank)]))

        result = await orchestrator.resolve(UNCATEGORIZED, "en")

        assert result.method == ResolutionMethod.FINAL_FALLBACK
        assert result.response == FINAL_FALLBACK["en"]


class TestEscalation:
    """Escalation short-circuits every other stage."""

    @pytest.mark.asyncio
    async def test_booking_modification_escalates(self, orchestrator, escalation_store, llm, context):
        result = await orchestrator.resolve("I want to cancel my booking", "en", context=context)

        assert result.method == ResolutionMethod.ESCALATED
        assert result.escalation.reason == EscalationReason.BOOKING_MODIFICATION
        assert "booking specialists" in result.response
        assert llm.calls["generate"] == 0

        cases = await escalation_store.list_cases()
        assert len(cases) == 1
        assert result.escalation.case_id == cases[0].id

    @pytest.mark.asyncio
    async def test_consecutive_failures_escalate(self, make_orchestrator, executor, escalation, context):
        orchestrator = make_orchestrator(providers=ProviderManager(executor, []), semantic=None)

        for _ in range(3):
            result = await orchestrator.resolve("xyzzy", "en", context=context)
            assert result.method == ResolutionMethod.FINAL_FALLBACK
        assert context.failure_count == 3

        result = await orchestrator.resolve("xyzzy", "en", context=context)
        assert result.method == ResolutionMethod.ESCALATED
        assert result.escalation.reason == EscalationReason.CONSECUTIVE_FAILURES
        assert context.failure_count == 0
        case_id = result.escalation.case_id

        # The open case keeps the conversation with a human
        follow_up = await orchestrator.resolve("xyzzy", "en", context=context)
        assert follow_up.escalation.reason == EscalationReason.MANUAL_ESCALATION
        assert follow_up.escalation.case_id == case_id

        await escalation.update_status(case_id, EscalationStatus.RESOLVED)
        after = await orchestrator.resolve("xyzzy", "en", context=context)
        assert after.method == ResolutionMethod.FINAL_FALLBACK
        assert context.failure_count == 1

    @pytest.mark.asyncio
    async def test_case_open_failure_still_hands_off(self, make_orchestrator, clock, context):
        sink = MagicMock()
        sink.find_open_case = AsyncMock(return_value=None)
        sink.create_case = AsyncMock(side_effect=ConnectionError("redis down"))
        orchestrator = make_orchestrator(escalation=EscalationEngine(sink, clock=clock))

        result = await orchestrator.resolve("let me talk to a human", "en", context=context)

        assert result.method == ResolutionMethod.ESCALATED
        assert result.escalation.case_id is None


class TestDegradation:
    """Timeouts, stage failures and the final fallback."""

    @pytest.mark.asyncio
    async def test_timeout_returns_final_fallback(self, make_orchestrator, context):
        orchestrator = make_orchestrator(semantic=FakeSemantic(delay=1.0))

        result = await orchestrator.resolve(UNCATEGORIZED, "en", context=context, timeout=0.05)

        assert result.method == ResolutionMethod.FINAL_FALLBACK
        assert result.timed_out
        assert result.response == ERROR_MESSAGES["en"]
        assert context.failure_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_error_fallback(self, make_orchestrator, context):
        broken = MagicMock()
        broken.should_escalate = AsyncMock(side_effect=RuntimeError("boom"))
        orchestrator = make_orchestrator(escalation=broken)

        result = await orchestrator.resolve("hello", "am", context=context)

        assert result.method == ResolutionMethod.ERROR_FALLBACK
        assert result.response == ERROR_MESSAGES["am"]
        assert context.failure_count == 1

    @pytest.mark.asyncio
    async def test_semantic_failure_falls_through(self, make_orchestrator, llm, sleeper):
        orchestrator = make_orchestrator(semantic=FakeSemantic(error=ConnectionError("index down")))

        result = await orchestrator.resolve(UNCATEGORIZED, "en")

        assert result.method == ResolutionMethod.AI_GENERATED
        assert sleeper.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_all_providers_failing_gives_degraded_text(self, orchestrator, llm):
        llm.error = ConnectionError("openai down")

        result = await orchestrator.resolve(UNCATEGORIZED, "en")

        assert result.method == ResolutionMethod.FINAL_FALLBACK
        assert result.response == ERROR_MESSAGES["en"]
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_no_providers_gives_guidance_text(self, make_orchestrator, executor):
        orchestrator = make_orchestrator(providers=ProviderManager(executor, []), semantic=None)

        result = await orchestrator.resolve(UNCATEGORIZED, "ti")

        assert result.method == ResolutionMethod.FINAL_FALLBACK
        assert result.response == FINAL_FALLBACK["ti"]

    @pytest.mark.asyncio
    async def test_cache_failure_falls_through(self, make_orchestrator):
        broken_cache = MagicMock()
        broken_cache.get = AsyncMock(side_effect=ConnectionError("cache down"))
        broken_cache.set = AsyncMock(side_effect=ConnectionError("cache down"))
        orchestrator = make_orchestrator(cache=broken_cache)

        result = await orchestrator.resolve("hello", "en")

        assert result.method == ResolutionMethod.FALLBACK
        broken_cache.set.assert_awaited_once()


class TestBookkeeping:
    """Context updates, usage records and events."""

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, orchestrator, context):
        context.failure_count = 2
        await orchestrator.resolve("hello", "en", context=context)
        assert context.failure_count == 0

    @pytest.mark.asyncio
    async def test_history_and_last_response(self, orchestrator, context):
        result = await orchestrator.resolve("hello", "en", context=context)

        history = context.history()
        assert [m["role"] for m in history] == ["user", "assistant"]
        assert history[0]["content"] == "hello"
        assert context.last_response == result.response

    @pytest.mark.asyncio
    async def test_language_defaults_to_context(self, orchestrator):
        context = ConversationContext(user_id="u", language="am")
        result = await orchestrator.resolve("hello", context=context)
        assert result.response == CANNED_RESPONSES[QueryCategory.GREETING]["am"]

    @pytest.mark.asyncio
    async def test_usage_is_recorded(self, orchestrator, usage):
        await orchestrator.resolve("hello", "en")
        await orchestrator.resolve("hello", "en")
        await orchestrator.resolve(UNCATEGORIZED, "en")

        stats = usage.optimization_stats()
        assert stats["total_queries"] == 3
        assert stats["methods"] == {"fallback": 1, "cached": 1, "ai_generated": 1}
        assert stats["optimization_rate"] == pytest.approx(66.67)
        assert stats["total_tokens"] == 150

    @pytest.mark.asyncio
    async def test_resolution_event(self, make_orchestrator):
        delivered = []
        bus = EventBus(sinks=[delivered.append])
        orchestrator = make_orchestrator(events=bus)

        await orchestrator.resolve("hello", "en", user_id="u9")
        await bus.flush()

        resolved = [e for e in delivered if e.message == "Query resolved"]
        assert len(resolved) == 1
        assert resolved[0].context["method"] == "fallback"
        assert resolved[0].context["user_id"] == "u9"
