"""Domain types for the follow-up engine.

RawMessage is the immutable snapshot the mail source hands over. It is
normalized into ThreadMessage (which knows whether the mailbox owner sent
it), ordered into a Thread, and a thread that needs a follow-up becomes a
FollowupCandidate.

parse_graph_message() maps one Microsoft Graph style message dict (or a flat
dict with the same fields) to a RawMessage, raising MessageParseError when a
required field is missing or malformed. The engine never looks at raw mail
payloads beyond this function.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from followup.core.errors import MessageParseError, ThreadOrderError

Priority = Literal["high", "medium", "low"]
Sentiment = Literal["positive", "neutral", "negative", "urgent"]

VALID_SENTIMENTS: frozenset[str] = frozenset({"positive", "neutral", "negative", "urgent"})


@dataclass(frozen=True, slots=True)
class RawMessage:
    """A mail item as delivered by the mail source.

    Attributes:
        id: Stable message identifier
        subject: Subject line as sent
        sender: From address
        to: To addresses
        cc: Cc addresses
        sent_date: When the message was sent (timezone-aware)
        received_date: When the message was received, if known
        body: Message body (HTML or text)
        conversation_id: Server-side conversation identifier, if any
    """

    id: str
    subject: str
    sender: str
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    sent_date: datetime = field(default_factory=lambda: datetime.now(UTC))
    received_date: datetime | None = None
    body: str = ""
    conversation_id: str | None = None


@dataclass(frozen=True, slots=True)
class ThreadMessage:
    """A RawMessage normalized for one mailbox owner."""

    id: str
    subject: str
    sender: str
    to: tuple[str, ...]
    cc: tuple[str, ...]
    sent_date: datetime
    received_date: datetime | None
    body: str
    conversation_id: str | None
    is_from_current_user: bool

    @property
    def effective_date(self) -> datetime:
        """Ordering timestamp: received date, falling back to sent date."""
        return self.received_date or self.sent_date

    @property
    def recipients(self) -> tuple[str, ...]:
        return self.to + self.cc


def check_chronology(
    messages: tuple[ThreadMessage, ...] | list[ThreadMessage],
    conversation_key: str | None = None,
) -> None:
    """Verify messages are non-decreasing by effective date.

    Raises:
        ThreadOrderError: At the first message older than its predecessor
    """
    for position in range(1, len(messages)):
        previous = messages[position - 1].effective_date
        current = messages[position].effective_date
        if current < previous:
            raise ThreadOrderError(
                f"Thread {conversation_key or '<unknown>'} is out of order at position "
                f"{position}: {current.isoformat()} precedes {previous.isoformat()}",
                conversation_key=conversation_key,
                position=position,
            )


@dataclass(frozen=True, slots=True)
class Thread:
    """Chronologically ordered messages of one conversation.

    Construction validates the order and raises ThreadOrderError on violation.

    Attributes:
        key: Conversation group key the thread was resolved for
        messages: Messages, oldest first
        reconstructed: True if built by heuristic reconstruction
        suppressed: True if a newer reply outside the conversation answered it
    """

    key: str
    messages: tuple[ThreadMessage, ...]
    reconstructed: bool = False
    suppressed: bool = False

    def __post_init__(self) -> None:
        check_chronology(self.messages, self.key)

    def __len__(self) -> int:
        return len(self.messages)


@dataclass(slots=True)
class ConversationGroup:
    """Raw messages that share a conversation key.

    Attributes:
        key: conversation_id, or the message id when the message has none
        conversation_id: The shared conversation id, None for singleton groups
        messages: Member messages in input order
    """

    key: str
    conversation_id: str | None
    messages: list[RawMessage] = field(default_factory=list)


@dataclass(slots=True)
class FollowupCandidate:
    """A thread where the owner sent last and nobody has replied.

    Attributes:
        id: Id of the owner's last message
        subject: Subject of that message
        recipients: Its To addresses
        sent_date: When it was sent
        body: Its body
        summary: Short plain-text summary
        priority: high, medium or low
        days_without_response: Whole days since sent_date
        conversation_id: Conversation id, if any
        thread_messages: The resolved thread, oldest first
        sentiment: Sentiment of the body
        account_email: Address the last message was sent from
        llm_summary: Advisor summary, when requested and available
        llm_suggestions: Advisor follow-up suggestions, when requested
        is_snoozed: Currently snoozed
        snooze_until: End of the snooze
        is_dismissed: Dismissed by the owner
    """

    id: str
    subject: str
    recipients: tuple[str, ...]
    sent_date: datetime
    body: str
    summary: str
    priority: Priority
    days_without_response: int
    conversation_id: str | None
    thread_messages: tuple[ThreadMessage, ...]
    sentiment: Sentiment
    account_email: str
    llm_summary: str | None = None
    llm_suggestions: tuple[str, ...] = ()
    is_snoozed: bool = False
    snooze_until: datetime | None = None
    is_dismissed: bool = False


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_datetime(value: Any, field_name: str, item_id: str | None) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError as e:
            raise MessageParseError(
                f"Message {item_id}: field '{field_name}' is not an ISO 8601 timestamp: {value!r}",
                item_id=item_id,
                field=field_name,
            ) from e
    else:
        raise MessageParseError(
            f"Message {item_id}: field '{field_name}' is missing or empty",
            item_id=item_id,
            field=field_name,
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _address(value: Any) -> str | None:
    """Extract an address from a Graph recipient dict or a plain string."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, Mapping):
        inner = value.get("emailAddress", value)
        if isinstance(inner, Mapping):
            address = inner.get("address")
            if isinstance(address, str) and address.strip():
                return address.strip()
    return None


def _addresses(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str | Mapping):
        value = [value]
    return tuple(a for a in (_address(v) for v in value) if a)


def _body(data: Mapping[str, Any]) -> str:
    body = data.get("body")
    if isinstance(body, Mapping):
        content = body.get("content")
        return content if isinstance(content, str) else ""
    if isinstance(body, str):
        return body
    preview = data.get("bodyPreview")
    return preview if isinstance(preview, str) else ""


def parse_graph_message(data: Mapping[str, Any]) -> RawMessage:
    """Map a message dict to a RawMessage.

    Accepts Graph field names (from, toRecipients, ccRecipients, sentDateTime,
    receivedDateTime, body.content, conversationId) and flat snake_case names
    (sender, to, cc, sent_date, received_date, body, conversation_id).

    Args:
        data: One message as decoded from JSON

    Returns:
        Parsed RawMessage

    Raises:
        MessageParseError: If id, sender or sent date is missing or malformed
    """
    if not isinstance(data, Mapping):
        raise MessageParseError(f"Message must be a mapping, got {type(data).__name__}")

    item_id = data.get("id")
    if not isinstance(item_id, str) or not item_id.strip():
        raise MessageParseError("Message has no 'id'", field="id")

    sender = _address(data.get("from", data.get("sender")))
    if sender is None:
        raise MessageParseError(
            f"Message {item_id}: no sender address in 'from'",
            item_id=item_id,
            field="from",
        )

    sent_raw = data.get("sentDateTime", data.get("sent_date"))
    sent_date = _parse_datetime(sent_raw, "sentDateTime", item_id)

    received_raw = data.get("receivedDateTime", data.get("received_date"))
    received_date = (
        _parse_datetime(received_raw, "receivedDateTime", item_id) if received_raw else None
    )

    conversation_id = data.get("conversationId", data.get("conversation_id"))
    if not isinstance(conversation_id, str) or not conversation_id.strip():
        conversation_id = None

    subject = data.get("subject")

    return RawMessage(
        id=item_id,
        subject=subject if isinstance(subject, str) else "",
        sender=sender,
        to=_addresses(data.get("toRecipients", data.get("to"))),
        cc=_addresses(data.get("ccRecipients", data.get("cc"))),
        sent_date=sent_date,
        received_date=received_date,
        body=_body(data),
        conversation_id=conversation_id,
    )
