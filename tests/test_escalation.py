"""Tests for the escalation rule chain and case management."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge.escalation import EscalationEngine, complexity_score
from concierge.events import EventBus
from concierge.models import (
    ConversationContext,
    EscalationDecision,
    EscalationReason,
    EscalationStatus,
    Priority,
)


@pytest.fixture
def context():
    return ConversationContext(user_id="user-1", language="en", username="abebe")


def decision(reason=EscalationReason.HUMAN_REQUEST, priority=Priority.MEDIUM):
    return EscalationDecision(escalate=True, reason=reason, priority=priority, details="test")


class TestRules:
    """Rule order and keyword matching."""

    @pytest.mark.asyncio
    async def test_consecutive_failures(self, escalation, context):
        context.failure_count = 3
        result = await escalation.should_escalate(context, "hello")

        assert result.escalate
        assert result.reason == EscalationReason.CONSECUTIVE_FAILURES
        assert result.priority == Priority.HIGH

    @pytest.mark.asyncio
    async def test_below_failure_threshold(self, escalation, context):
        context.failure_count = 2
        result = await escalation.should_escalate(context, "hello")
        assert not result.escalate
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_failures_take_precedence_over_keywords(self, escalation, context):
        context.failure_count = 5
        result = await escalation.should_escalate(context, "I want a human agent")
        assert result.reason == EscalationReason.CONSECUTIVE_FAILURES

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query,reason,priority", [
        ("Can I talk to a human please", EscalationReason.HUMAN_REQUEST, Priority.MEDIUM),
        ("Get me customer service", EscalationReason.HUMAN_REQUEST, Priority.MEDIUM),
        ("I want to cancel my booking", EscalationReason.BOOKING_MODIFICATION, Priority.HIGH),
        ("I need a refund", EscalationReason.BOOKING_MODIFICATION, Priority.HIGH),
        ("This service is TERRIBLE", EscalationReason.COMPLAINT, Priority.HIGH),
        ("I am very disappointed", EscalationReason.COMPLAINT, Priority.HIGH),
    ])
    async def test_keyword_rules(self, escalation, context, query, reason, priority):
        result = await escalation.should_escalate(context, query)
        assert result.escalate
        assert result.reason == reason
        assert result.priority == priority

    @pytest.mark.asyncio
    async def test_human_request_beats_booking_modification(self, escalation, context):
        result = await escalation.should_escalate(context, "Let me speak to a manager to change my dates")
        assert result.reason == EscalationReason.HUMAN_REQUEST

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", [
        "What is on the agenda for the humanities tour",
        "I changed my mind about the view",
        "Personally I like Gondar",
    ])
    async def test_keywords_match_whole_words_only(self, escalation, context, query):
        result = await escalation.should_escalate(context, query)
        assert not result.escalate

    @pytest.mark.asyncio
    async def test_complex_query(self, escalation, context):
        for i in range(4):
            context.add_message("user", f"message {i}")
        query = (
            "Why does the api return a database error when my billing invoice is "
            "generated twice for the same stay, and why is the receipt missing? "
            "Which transaction is the real one?"
        )
        result = await escalation.should_escalate(context, query)

        assert result.reason == EscalationReason.COMPLEX_QUERY
        assert result.priority == Priority.MEDIUM

    def test_complexity_score_bounds(self):
        assert complexity_score("") == 0.0
        assert complexity_score("hello") == pytest.approx(0.01)
        heavy = "api error bug database billing invoice ???? " * 20
        assert complexity_score(heavy, history_length=50) == pytest.approx(1.0)

    @pytest.mark.parametrize("query,score", [
        ("error error error", 0.184),
        ("billing errors on my payments", 0.358),
        ("API Integration", 0.33),
    ])
    def test_technical_terms_count_once_each(self, query, score):
        assert complexity_score(query) == pytest.approx(score)

    def test_evaluate_rules_is_synchronous(self, escalation, context):
        assert escalation.evaluate_rules(context, "hello") is None
        assert escalation.evaluate_rules(context, "human").reason == EscalationReason.HUMAN_REQUEST


class TestCases:
    """Case creation, reuse and status tracking."""

    @pytest.mark.asyncio
    async def test_open_case_records_conversation(self, escalation, context):
        context.add_message("user", "where is my booking")
        record = await escalation.open_case(context, "I need an agent", decision())

        assert record.user_id == "user-1"
        assert record.username == "abebe"
        assert record.status == EscalationStatus.PENDING
        assert record.metadata["language"] == "en"
        assert record.conversation_history[0]["content"] == "where is my booking"

    @pytest.mark.asyncio
    async def test_second_escalation_reuses_case(self, escalation, escalation_store, context):
        first = await escalation.open_case(context, "human please", decision())
        second = await escalation.open_case(
            context, "this is terrible", decision(EscalationReason.COMPLAINT, Priority.HIGH)
        )

        assert first.id == second.id
        assert len(await escalation_store.list_cases()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_open_case_creates_one(self, escalation, escalation_store, context):
        records = await asyncio.gather(
            *(escalation.open_case(context, "agent", decision()) for _ in range(5))
        )

        assert len({r.id for r in records}) == 1
        assert len(await escalation_store.list_cases()) == 1

    @pytest.mark.asyncio
    async def test_lock_pool_is_fixed_size(self, escalation_store, clock):
        engine = EscalationEngine(escalation_store, clock=clock, lock_stripes=8)
        contexts = [ConversationContext(user_id=f"guest-{i}") for i in range(100)]

        records = await asyncio.gather(
            *(engine.open_case(c, "agent", decision()) for c in contexts)
        )

        assert len(engine._locks) == 8
        assert len({r.user_id for r in records}) == 100
        assert len(await escalation_store.list_cases()) == 100

    @pytest.mark.asyncio
    async def test_decision_carries_existing_case_id(self, escalation, context):
        record = await escalation.open_case(context, "agent", decision())
        result = await escalation.should_escalate(context, "I want a refund")

        assert result.reason == EscalationReason.BOOKING_MODIFICATION
        assert result.case_id == record.id

    @pytest.mark.asyncio
    async def test_open_case_continues_with_manual_escalation(self, escalation, context):
        record = await escalation.open_case(
            context, "terrible", decision(EscalationReason.COMPLAINT, Priority.HIGH)
        )
        result = await escalation.should_escalate(context, "hello again")

        assert result.escalate
        assert result.reason == EscalationReason.MANUAL_ESCALATION
        assert result.priority == Priority.HIGH
        assert result.case_id == record.id

    @pytest.mark.asyncio
    async def test_resolved_case_stops_manual_escalation(self, escalation, context, clock):
        record = await escalation.open_case(context, "agent", decision())
        clock.advance(300)

        updated = await escalation.update_status(record.id, EscalationStatus.RESOLVED)
        assert updated.resolved_at == clock.now
        assert updated.updated_at == clock.now

        result = await escalation.should_escalate(context, "hello")
        assert not result.escalate

        fresh = await escalation.open_case(context, "agent again", decision())
        assert fresh.id != record.id

    @pytest.mark.asyncio
    async def test_in_progress_keeps_case_open(self, escalation, context):
        record = await escalation.open_case(context, "agent", decision())
        updated = await escalation.update_status(record.id, EscalationStatus.IN_PROGRESS)

        assert updated.resolved_at is None
        result = await escalation.should_escalate(context, "hello")
        assert result.case_id == record.id

    @pytest.mark.asyncio
    async def test_update_unknown_case(self, escalation):
        assert await escalation.update_status("missing", EscalationStatus.RESOLVED) is None

    @pytest.mark.asyncio
    async def test_stats_window(self, escalation, clock):
        old_user = ConversationContext(user_id="old")
        await escalation.open_case(old_user, "agent", decision())
        clock.advance(25 * 3600)

        a = ConversationContext(user_id="a")
        b = ConversationContext(user_id="b")
        await escalation.open_case(a, "agent", decision())
        case_b = await escalation.open_case(b, "terrible", decision(EscalationReason.COMPLAINT, Priority.HIGH))
        await escalation.update_status(case_b.id, EscalationStatus.RESOLVED)

        stats = await escalation.stats()
        assert stats["total"] == 2
        assert stats["active"] == 1
        assert stats["by_reason"] == {"human_request": 1, "complaint": 1}
        assert stats["by_priority"] == {"medium": 1, "high": 1}
        assert stats["by_status"] == {"pending": 1, "resolved": 1}


class TestFailureHandling:
    """Engine errors force an escalation instead of propagating."""

    @pytest.mark.asyncio
    async def test_sink_failure_escalates_as_technical_error(self, clock, context):
        sink = MagicMock()
        sink.find_open_case = AsyncMock(side_effect=ConnectionError("redis down"))
        engine = EscalationEngine(sink, clock=clock)

        result = await engine.should_escalate(context, "hello")

        assert result.escalate
        assert result.reason == EscalationReason.TECHNICAL_ERROR
        assert result.priority == Priority.HIGH
        assert "redis down" in result.details

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures,query,reason", [
        (3, "thanks", EscalationReason.CONSECUTIVE_FAILURES),
        (0, "I want a human", EscalationReason.HUMAN_REQUEST),
    ])
    async def test_matched_rule_survives_sink_failure(self, clock, context, failures, query, reason):
        sink = MagicMock()
        sink.find_open_case = AsyncMock(side_effect=ConnectionError("redis down"))
        engine = EscalationEngine(sink, clock=clock)
        context.failure_count = failures

        result = await engine.should_escalate(context, query)

        assert result.escalate
        assert result.reason == reason
        assert result.case_id is None

    @pytest.mark.asyncio
    async def test_escalation_emits_event(self, escalation_store, clock, context):
        delivered = []
        bus = EventBus(sinks=[delivered.append])
        engine = EscalationEngine(escalation_store, events=bus, clock=clock)

        await engine.should_escalate(context, "I want a human")
        await engine.should_escalate(context, "hello")
        await bus.flush()

        assert [e.message for e in delivered] == ["Escalation triggered"]
        assert delivered[0].level == "warn"
        assert delivered[0].context["reason"] == "human_request"
