"""Snooze and dismiss state for follow-up candidates.

Held in memory by the analyzer for the lifetime of a session. Keys are
candidate ids (the id of the owner's last message in a thread).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from followup.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class FollowupState:
    """Which candidates are snoozed (until when) and which are dismissed."""

    snoozed: dict[str, datetime] = field(default_factory=dict)
    dismissed: set[str] = field(default_factory=set)

    def snooze(self, candidate_id: str, until: datetime) -> None:
        self.snoozed[candidate_id] = until

    def unsnooze(self, candidate_id: str) -> bool:
        return self.snoozed.pop(candidate_id, None) is not None

    def dismiss(self, candidate_id: str) -> None:
        self.dismissed.add(candidate_id)
        self.snoozed.pop(candidate_id, None)

    def is_dismissed(self, candidate_id: str) -> bool:
        return candidate_id in self.dismissed

    def snoozed_until(self, candidate_id: str, now: datetime) -> datetime | None:
        """End of an active snooze; an expired snooze is cleared and None returned."""
        until = self.snoozed.get(candidate_id)
        if until is None:
            return None
        if until <= now:
            del self.snoozed[candidate_id]
            logger.debug("snooze_expired", candidate_id=candidate_id)
            return None
        return until
