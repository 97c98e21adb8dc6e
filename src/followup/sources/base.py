"""Interfaces of the external collaborators the engine consumes.

The engine never talks to a mail server or an LLM directly. It depends on
these protocols, and callers inject implementations (JsonMailSource,
ClaudeAdvisor, or test doubles).
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from followup.models import RawMessage, Sentiment


@runtime_checkable
class MailSource(Protocol):
    """Read-only access to a mailbox."""

    async def fetch_recent_messages(self, count: int, cutoff_date: datetime) -> list[RawMessage]:
        """Most recent messages across folders sent on or after cutoff_date, newest first."""
        ...

    async def fetch_conversation(self, conversation_id: str) -> list[RawMessage]:
        """Every message sharing a conversation id, across folders."""
        ...

    async def fetch_single_item(self, item_id: str) -> RawMessage | None:
        """One message by id, or None if it no longer exists."""
        ...


@runtime_checkable
class FollowupAdvisor(Protocol):
    """Optional LLM assistance. Failures fall back to local heuristics."""

    async def summarize(self, body: str) -> str: ...

    async def suggest_followups(self, body: str) -> list[str]: ...

    async def classify_sentiment(self, body: str) -> Sentiment: ...
