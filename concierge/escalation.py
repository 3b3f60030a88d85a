"""Escalation decision engine.

Decides when automated resolution should stop and a human take over, and
manages the resulting cases (one active case per user).

Rules are evaluated in order, first match wins:
    1. consecutive failures        -> consecutive_failures, high
    2. human-request keywords      -> human_request, medium
    3. booking-modification words  -> booking_modification, high
    4. complaint words             -> complaint, high
    5. complexity score            -> complex_query, medium
    6. existing open case          -> manual_escalation, case priority
An evaluation error escalates with technical_error, high.
"""

import asyncio
import logging
import re
from time import time
from typing import Any, Callable, Iterable

from .errors import EscalationEngineError
from .events import EventBus
from .models import (
    ConversationContext,
    EscalationDecision,
    EscalationReason,
    EscalationRecord,
    EscalationStatus,
    Priority,
)
from .responses import escalation_message
from .stores import EscalationSink

logger = logging.getLogger(__name__)

HUMAN_REQUEST_KEYWORDS = (
    "human", "agent", "person", "representative", "speak to someone",
    "talk to human", "customer service", "manager", "supervisor",
)
BOOKING_MODIFICATION_KEYWORDS = (
    "cancel", "modify", "change", "refund", "reschedule", "update booking",
)
COMPLAINT_KEYWORDS = (
    "complaint", "dissatisfied", "unhappy", "terrible", "awful", "worst",
    "horrible", "disappointed", "angry", "frustrated",
)
TECHNICAL_TERMS = (
    "api", "integration", "database", "technical", "error", "bug",
    "payment", "billing", "invoice", "receipt", "transaction",
)


def _keyword_pattern(keywords: Iterable[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


_HUMAN_REQUEST = _keyword_pattern(HUMAN_REQUEST_KEYWORDS)
_BOOKING_MODIFICATION = _keyword_pattern(BOOKING_MODIFICATION_KEYWORDS)
_COMPLAINT = _keyword_pattern(COMPLAINT_KEYWORDS)


def complexity_score(query: str, history_length: int = 0) -> float:
    """Bounded weighted sum in [0, 1].

    length (cap 0.3) + question marks (cap 0.2) + technical terms (cap 0.3)
    + conversation length (cap 0.2)

    Technical terms count once each and match inside longer words
    ("errors", "payments").
    """
    score = min(len(query) / 500, 0.3)
    score += min(query.count("?") * 0.1, 0.2)
    text = query.casefold()
    score += min(sum(1 for term in TECHNICAL_TERMS if term in text) * 0.15, 0.3)
    score += min(history_length * 0.05, 0.2)
    return max(0.0, min(score, 1.0))


class EscalationEngine:
    """Rule chain plus idempotent case management over an ``EscalationSink``."""

    def __init__(
        self,
        sink: EscalationSink,
        failure_threshold: int = 3,
        complexity_threshold: float = 0.8,
        events: EventBus | None = None,
        clock: Callable[[], float] = time,
        lock_stripes: int = 64,
    ):
        self.sink = sink
        self.failure_threshold = failure_threshold
        self.complexity_threshold = complexity_threshold
        self.events = events
        self.clock = clock
        # Fixed pool; a user always maps to the same lock
        self._locks = [asyncio.Lock() for _ in range(max(1, lock_stripes))]

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def evaluate_rules(self, context: ConversationContext, query: str) -> EscalationDecision | None:
        """Rules 1-5. Synchronous; None when none fires."""
        if context.failure_count >= self.failure_threshold:
            return EscalationDecision(
                escalate=True,
                reason=EscalationReason.CONSECUTIVE_FAILURES,
                priority=Priority.HIGH,
                details=f"User has {context.failure_count} consecutive failed interactions",
            )

        if match := _HUMAN_REQUEST.search(query):
            return EscalationDecision(
                escalate=True,
                reason=EscalationReason.HUMAN_REQUEST,
                priority=Priority.MEDIUM,
                details=f"User explicitly requested human assistance ('{match.group(0)}')",
            )

        if match := _BOOKING_MODIFICATION.search(query):
            return EscalationDecision(
                escalate=True,
                reason=EscalationReason.BOOKING_MODIFICATION,
                priority=Priority.HIGH,
                details=f"Booking modification request ('{match.group(0)}')",
            )

        if match := _COMPLAINT.search(query):
            return EscalationDecision(
                escalate=True,
                reason=EscalationReason.COMPLAINT,
                priority=Priority.HIGH,
                details=f"Customer complaint detected ('{match.group(0)}')",
            )

        score = complexity_score(query, len(context.conversation_history))
        if score >= self.complexity_threshold:
            return EscalationDecision(
                escalate=True,
                reason=EscalationReason.COMPLEX_QUERY,
                priority=Priority.MEDIUM,
                details=f"Query complexity score: {score:.2f}",
            )
        return None

    async def _existing_case_id(self, user_id: str) -> str | None:
        """Open case id for a decision already made by rules 1-5; lookup errors are not fatal."""
        try:
            existing = await self.sink.find_open_case(user_id)
        except Exception as e:
            logger.warning(f"Open case lookup failed for user {user_id}: {e}")
            return None
        return existing.id if existing else None

    async def _evaluate(self, context: ConversationContext, query: str) -> EscalationDecision:
        try:
            decision = self.evaluate_rules(context, query)
        except Exception as e:
            raise EscalationEngineError(f"Escalation evaluation failed: {e}") from e

        if decision is not None:
            # An active case is reused, never duplicated
            decision.case_id = await self._existing_case_id(context.user_id)
            return decision

        try:
            existing = await self.sink.find_open_case(context.user_id)
        except Exception as e:
            raise EscalationEngineError(f"Escalation evaluation failed: {e}") from e

        if existing is not None:
            return EscalationDecision(
                escalate=True,
                reason=EscalationReason.MANUAL_ESCALATION,
                priority=existing.priority,
                details=f"Existing open case {existing.id} ({existing.status.value})",
                case_id=existing.id,
            )
        return EscalationDecision(escalate=False)

    async def should_escalate(self, context: ConversationContext, query: str) -> EscalationDecision:
        """Evaluate the rule chain. Never raises; errors force an escalation."""
        try:
            decision = await self._evaluate(context, query)
        except EscalationEngineError as e:
            logger.error(f"{e} (user {context.user_id})")
            decision = EscalationDecision(
                escalate=True,
                reason=EscalationReason.TECHNICAL_ERROR,
                priority=Priority.HIGH,
                details=str(e),
            )

        if decision.escalate:
            self._emit(
                "warn", "Escalation triggered",
                user_id=context.user_id,
                reason=decision.reason.value,
                priority=decision.priority.value,
                details=decision.details,
            )
        return decision

    # ------------------------------------------------------------------
    # Case management
    # ------------------------------------------------------------------

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        return self._locks[hash(user_id) % len(self._locks)]

    async def open_case(
        self,
        context: ConversationContext,
        query: str,
        decision: EscalationDecision,
        metadata: dict[str, Any] | None = None,
    ) -> EscalationRecord:
        """Create a case for ``decision``, or return the user's active one."""
        async with self._user_lock(context.user_id):
            existing = await self.sink.find_open_case(context.user_id)
            if existing is not None:
                return existing

            now = self.clock()
            record = EscalationRecord(
                user_id=context.user_id,
                username=context.username,
                query=query,
                reason=decision.reason or EscalationReason.MANUAL_ESCALATION,
                priority=decision.priority or Priority.MEDIUM,
                details=decision.details,
                conversation_history=context.history(),
                metadata={"language": context.language, **(metadata or {})},
                created_at=now,
                updated_at=now,
            )
            await self.sink.create_case(record)

        logger.warning(
            f"Escalation case {record.id} opened for user {record.user_id} "
            f"({record.reason.value}, {record.priority.value})"
        )
        self._emit(
            "warn", "Escalation case created",
            case_id=record.id, user_id=record.user_id,
            reason=record.reason.value, priority=record.priority.value,
        )
        return record

    async def update_status(self, case_id: str, status: EscalationStatus) -> EscalationRecord | None:
        record = await self.sink.get_case(case_id)
        if record is None:
            return None
        now = self.clock()
        record.status = status
        record.updated_at = now
        if status == EscalationStatus.RESOLVED:
            record.resolved_at = now
        await self.sink.update_case(record)
        logger.info(f"Escalation case {case_id} -> {status.value}")
        self._emit("info", "Escalation status updated", case_id=case_id, status=status.value)
        return record

    async def stats(self, window: float = 24 * 3600.0) -> dict[str, Any]:
        """Counts by reason, priority and status over the last ``window`` seconds."""
        cases = await self.sink.list_cases(since=self.clock() - window)
        by_reason: dict[str, int] = {}
        by_priority: dict[str, int] = {}
        by_status: dict[str, int] = {}
        for case in cases:
            by_reason[case.reason.value] = by_reason.get(case.reason.value, 0) + 1
            by_priority[case.priority.value] = by_priority.get(case.priority.value, 0) + 1
            by_status[case.status.value] = by_status.get(case.status.value, 0) + 1
        return {
            "window_seconds": window,
            "total": len(cases),
            "active": sum(1 for c in cases if c.is_active),
            "by_reason": by_reason,
            "by_priority": by_priority,
            "by_status": by_status,
        }

    def escalation_message(self, reason: EscalationReason | None, language: str = "en") -> str:
        return escalation_message(reason, language)

    def _emit(self, level: str, message: str, **context: Any) -> None:
        if self.events is not None:
            self.events.emit(level, message, component="escalation", **context)
