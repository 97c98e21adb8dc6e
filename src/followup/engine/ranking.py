"""Sentiment fallback, priority, deduplication and ordering of candidates."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from followup.config_schema import PriorityThresholds
from followup.core.logging import get_logger
from followup.engine.thread_utils import normalize_address, normalize_subject
from followup.models import FollowupCandidate, Priority, Sentiment

logger = get_logger(__name__)

URGENT_KEYWORDS = ("urgent", "asap", "immediately", "critical", "emergency")
NEGATIVE_KEYWORDS = ("problem", "issue", "error", "failed", "wrong")
POSITIVE_KEYWORDS = ("thanks", "great", "excellent", "perfect", "appreciate")

PRIORITY_RANK: dict[str, int] = {"low": 0, "medium": 1, "high": 2}
SENTIMENT_SEVERITY: dict[str, int] = {"positive": 0, "neutral": 1, "negative": 2, "urgent": 3}

_ESCALATE: dict[str, Priority] = {"low": "medium", "medium": "high", "high": "high"}


def classify_sentiment_basic(text: str | None) -> Sentiment:
    """Keyword-based sentiment used when the advisor is off or fails.

    Urgent keywords win over negative, negative over positive.
    """
    lowered = (text or "").lower()
    if any(word in lowered for word in URGENT_KEYWORDS):
        return "urgent"
    if any(word in lowered for word in NEGATIVE_KEYWORDS):
        return "negative"
    if any(word in lowered for word in POSITIVE_KEYWORDS):
        return "positive"
    return "neutral"


def compute_priority(
    days_without_response: int,
    sentiment: Sentiment,
    thread_length: int,
    thresholds: PriorityThresholds | None = None,
) -> Priority:
    """Priority of a candidate.

    Args:
        days_without_response: Whole days since the owner's last message
        sentiment: Sentiment of that message
        thread_length: Messages in the resolved thread
        thresholds: Day thresholds for high/medium (7/3 by default)

    Returns:
        "high", "medium" or "low"
    """
    thresholds = thresholds or PriorityThresholds()

    priority: Priority = "low"
    if days_without_response >= thresholds.high:
        priority = "high"
    elif days_without_response >= thresholds.medium:
        priority = "medium"

    if sentiment == "urgent":
        priority = "high"
    elif sentiment == "negative" and priority == "low":
        priority = "medium"

    if thread_length > 1:
        priority = _ESCALATE[priority]

    return priority


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end (floored, never negative)."""
    return max(0, (end - start) // timedelta(days=1))


def human_thread_key(candidate: FollowupCandidate) -> tuple[str, tuple[str, ...]]:
    """Normalized subject plus the sorted, lowercased sender and recipients."""
    people = {normalize_address(candidate.account_email)}
    people.update(normalize_address(r) for r in candidate.recipients)
    people.discard("")
    return normalize_subject(candidate.subject), tuple(sorted(people))


def dedupe_candidates(
    candidates: Iterable[FollowupCandidate],
    window_days: float = 3,
) -> list[FollowupCandidate]:
    """Keep at most one candidate per human conversation.

    Candidates are considered newest first. One is rejected when a kept
    candidate has the same non-blank conversation id, or the same human
    thread key with a sent date within the window.

    Args:
        candidates: Candidates from every resolved conversation
        window_days: Dedupe window in days

    Returns:
        Kept candidates, newest first
    """
    window = timedelta(days=window_days)
    kept: list[FollowupCandidate] = []
    conversation_ids: set[str] = set()
    sent_by_key: dict[tuple[str, tuple[str, ...]], list[datetime]] = {}

    for candidate in sorted(candidates, key=lambda c: c.sent_date, reverse=True):
        conversation_id = (candidate.conversation_id or "").strip()
        if conversation_id and conversation_id in conversation_ids:
            logger.debug("candidate_deduped", candidate_id=candidate.id, rule="conversation_id")
            continue

        key = human_thread_key(candidate)
        if any(abs(candidate.sent_date - sent) <= window for sent in sent_by_key.get(key, [])):
            logger.debug("candidate_deduped", candidate_id=candidate.id, rule="human_thread")
            continue

        kept.append(candidate)
        if conversation_id:
            conversation_ids.add(conversation_id)
        sent_by_key.setdefault(key, []).append(candidate.sent_date)

    return kept


def sort_candidates(candidates: Iterable[FollowupCandidate]) -> list[FollowupCandidate]:
    """Priority desc, then sentiment severity desc, then sent date desc."""
    return sorted(
        candidates,
        key=lambda c: (PRIORITY_RANK[c.priority], SENTIMENT_SEVERITY[c.sentiment], c.sent_date),
        reverse=True,
    )
