"""Pattern classifier for incoming queries.

Pure and synchronous: an ordered list of keyword patterns, first match wins.
Order is a priority, so "how do I cancel my room" is a cancel query even
though it also mentions a room and asks "how".
"""

import re
from dataclasses import dataclass
from enum import Enum


class QueryCategory(str, Enum):
    GREETING = "greeting"
    CANCEL = "cancel"
    BOOKING = "booking"
    PAYMENT = "payment"
    LOCATION = "location"
    HELP = "help"


@dataclass(slots=True, frozen=True)
class Classification:
    category: QueryCategory
    matched: str      # text fragment that triggered the match
    pattern: str      # source of the pattern that matched


# Greeting is anchored at the start; everything else may appear anywhere.
_PATTERNS: tuple[tuple[QueryCategory, re.Pattern], ...] = (
    (QueryCategory.GREETING, re.compile(
        r"^\s*(hi|hello|hey|good morning|good afternoon|good evening|salam|selam|nagayu|akkam|peace)\b",
        re.IGNORECASE,
    )),
    (QueryCategory.CANCEL, re.compile(
        r"\b(cancel\w*|stop|exit|quit|no|nevermind|never mind)\b",
        re.IGNORECASE,
    )),
    (QueryCategory.BOOKING, re.compile(
        r"\b(book|reserv|hotel|room|stay|check.?in|check.?out|guest|night)",
        re.IGNORECASE,
    )),
    (QueryCategory.PAYMENT, re.compile(
        r"\b(pay|telebirr|chappa|ebirr|cbe|money|cost|price)",
        re.IGNORECASE,
    )),
    (QueryCategory.LOCATION, re.compile(
        r"\b(addis|bahir|dire|gondar|mekelle|hawassa|jimma|adama|city|cities|where|location)",
        re.IGNORECASE,
    )),
    (QueryCategory.HELP, re.compile(
        r"\b(help|support|problem|issue|question|how|what|why|when)\b",
        re.IGNORECASE,
    )),
)


def classify_detailed(text: str) -> Classification | None:
    """Classify ``text`` and report which pattern matched."""
    if not text:
        return None
    for category, pattern in _PATTERNS:
        if match := pattern.search(text):
            return Classification(category=category, matched=match.group(1), pattern=pattern.pattern)
    return None


def classify(text: str) -> QueryCategory | None:
    """Return the first matching category, or None."""
    result = classify_detailed(text)
    return result.category if result else None


def categories() -> list[QueryCategory]:
    """Categories in priority order."""
    return [category for category, _ in _PATTERNS]
