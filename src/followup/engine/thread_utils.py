"""Thread utilities: subject and address normalization, ordering, participants.

Normalized subjects are the join key for every subject-based comparison in
the engine (reconstruction, suppression, deduplication), so all of them go
through normalize_subject().

Usage:
    from followup.engine.thread_utils import normalize_subject, to_thread_message

    normalize_subject("RE[2]: AW: Budget")  # -> "budget"
    message = to_thread_message(raw, current_user_email="me@example.com")
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

import regex

from followup.core.logging import get_logger
from followup.models import RawMessage, ThreadMessage

logger = get_logger(__name__)

# Regex timeout for security (used in match operations)
REGEX_TIMEOUT = 1.0

# Reply/forward prefixes in English and common localized forms, with optional
# counters ("RE[2]:", "Re(3):") and ASCII or full-width colons.
# Note: timeout is passed at match time (sub, search), not compile time
SUBJECT_PREFIX_PATTERN = regex.compile(
    r"^\s*(?:re|fwd?|aw|wg|sv|vs|tr|rif|antw|doorst|odp|enc|res|回复|回覆|转发|轉寄)"
    r"\s*(?:\[\d+\]|\(\d+\))?\s*[:：]\s*",
    regex.IGNORECASE,
)

WHITESPACE_PATTERN = regex.compile(r"\s+")


def normalize_subject(subject: str | None) -> str:
    """Normalize a subject by removing reply/forward prefixes.

    Prefixes are stripped repeatedly ("Re: Fwd: RE[2]: x" -> "x"), then
    whitespace is collapsed and the result lowercased.

    Args:
        subject: Email subject

    Returns:
        Normalized subject for comparison
    """
    if not subject:
        return ""

    try:
        normalized = subject
        while True:
            new_normalized = SUBJECT_PREFIX_PATTERN.sub("", normalized, count=1, timeout=REGEX_TIMEOUT)
            if new_normalized == normalized:
                break
            normalized = new_normalized
        normalized = WHITESPACE_PATTERN.sub(" ", normalized, timeout=REGEX_TIMEOUT)
        return normalized.strip().lower()
    except (regex.error, TimeoutError):
        # Timeout or error - return original with whitespace collapsed
        return " ".join(subject.split()).lower()


def normalize_address(address: str | None) -> str:
    """Lowercase and strip an email address ("" for None)."""
    return (address or "").strip().lower()


def is_from_user(sender: str, current_user_email: str) -> bool:
    """Case-insensitive exact address match."""
    return bool(current_user_email) and normalize_address(sender) == normalize_address(
        current_user_email
    )


def to_thread_message(raw: RawMessage, current_user_email: str) -> ThreadMessage:
    """Normalize a RawMessage for a mailbox owner."""
    return ThreadMessage(
        id=raw.id,
        subject=raw.subject,
        sender=raw.sender,
        to=raw.to,
        cc=raw.cc,
        sent_date=raw.sent_date,
        received_date=raw.received_date,
        body=raw.body,
        conversation_id=raw.conversation_id,
        is_from_current_user=is_from_user(raw.sender, current_user_email),
    )


def effective_timestamp(message: RawMessage | ThreadMessage) -> datetime:
    """Received date, falling back to sent date."""
    return message.received_date or message.sent_date


def sort_chronologically[M: (RawMessage, ThreadMessage)](messages: Iterable[M]) -> list[M]:
    """Sort oldest first by effective timestamp (stable for ties)."""
    return sorted(messages, key=effective_timestamp)


def latest_message(messages: Iterable[ThreadMessage]) -> ThreadMessage | None:
    """The message with the newest effective timestamp."""
    return max(messages, key=effective_timestamp, default=None)


def message_identity(message: RawMessage | ThreadMessage) -> str:
    """Key used to merge copies of one message fetched from different folders.

    The message id when present, otherwise sender + sent time + subject.
    """
    if message.id:
        return message.id
    return "|".join(
        (
            normalize_address(message.sender),
            message.sent_date.isoformat(),
            normalize_subject(message.subject),
        )
    )


def dedupe_messages[M: (RawMessage, ThreadMessage)](messages: Iterable[M]) -> list[M]:
    """Drop later copies of the same message, keeping first-seen order."""
    seen: set[str] = set()
    unique: list[M] = []
    for message in messages:
        identity = message_identity(message)
        if identity in seen:
            continue
        seen.add(identity)
        unique.append(message)
    return unique


def participants(message: RawMessage | ThreadMessage, include_cc: bool = False) -> frozenset[str]:
    """Normalized {sender} + To (+ Cc) addresses of a message."""
    addresses = [message.sender, *message.to]
    if include_cc:
        addresses.extend(message.cc)
    return frozenset(a for a in (normalize_address(x) for x in addresses) if a)
