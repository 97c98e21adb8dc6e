"""Heuristic thread reconstruction for messages the mail source cannot place.

When a conversation resolves to a single message, the surrounding messages
of the analysis window are searched for quoting evidence:

1. Context messages with the same normalized subject, sent within the
   look-back window before the base message, that share at least one
   participant with the base (other than the mailbox owner).
2. Their bodies are normalized (see snippet.normalize_body); bodies shorter
   than the minimum length are ignored as noise.
3. Oldest first, a strict containment chain is built: the first usable body
   seeds it and each accepted body must contain the previously accepted one.
   Messages that do not extend the chain are skipped.
4. A chain of more than one message that ends at the base becomes the thread.

If no chain forms, a suppression check looks for a strictly newer message
with the same subject from someone other than the owner. If one exists the
base has been answered outside its conversation and is suppressed.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

from followup.config_schema import HeuristicsConfig
from followup.core.logging import get_logger
from followup.engine.snippet import normalize_body
from followup.engine.thread_utils import (
    normalize_address,
    normalize_subject,
    participants,
    sort_chronologically,
)
from followup.models import ThreadMessage

logger = get_logger(__name__)

ReconstructionReason = Literal[
    "containment_chain",
    "quoted_reply",
    "subject_participant_match",
    "no_chain",
]


@dataclass(frozen=True, slots=True)
class ReconstructionResult:
    """Outcome of a reconstruction attempt.

    Attributes:
        messages: The thread, oldest first (the base alone when nothing formed)
        reconstructed: True if a containment chain longer than one was found
        suppressed: True if a newer reply from someone else was found
        reason: Which rule decided the outcome
    """

    messages: tuple[ThreadMessage, ...]
    reconstructed: bool
    suppressed: bool
    reason: ReconstructionReason


class ThreadReconstructor:
    """Builds artificial threads from quoting evidence in nearby messages."""

    def __init__(
        self,
        heuristics: HeuristicsConfig | None = None,
        normalizer: Callable[[str | None], str] = normalize_body,
    ):
        """Initialize the reconstructor.

        Args:
            heuristics: Thresholds (look-back window, minimum body length, ...)
            normalizer: Body normalization used for containment checks
        """
        self._heuristics = heuristics or HeuristicsConfig()
        self._normalize = normalizer

    def reconstruct(
        self,
        base: ThreadMessage,
        context: Sequence[ThreadMessage],
        current_user_email: str,
    ) -> ReconstructionResult:
        """Try to rebuild the thread that ends at `base`.

        Args:
            base: The lone message of an unresolved conversation
            context: Recent messages to search (the analysis window)
            current_user_email: Mailbox owner

        Returns:
            ReconstructionResult
        """
        related = self._related_messages(base, context, current_user_email)
        base_time = base.effective_date
        window_start = base_time - timedelta(days=self._heuristics.lookback_days)

        earlier = [m for m in related if window_start <= m.effective_date <= base_time]
        bodies: dict[str, str] = {base.id: self._normalize(base.body)}
        for message in related:
            bodies[message.id] = self._normalize(message.body)

        chain = self._containment_chain(sort_chronologically([*earlier, base]), bodies)
        if len(chain) > 1 and chain[-1].id == base.id:
            logger.debug(
                "thread_reconstructed",
                base_id=base.id,
                messages=len(chain),
            )
            return ReconstructionResult(
                messages=tuple(chain),
                reconstructed=True,
                suppressed=False,
                reason="containment_chain",
            )

        later = sort_chronologically(m for m in related if m.effective_date > base_time)
        reason = self._suppression_reason(base, later, bodies)
        if reason is not None:
            logger.debug("base_message_suppressed", base_id=base.id, reason=reason)
            return ReconstructionResult(
                messages=(base,),
                reconstructed=False,
                suppressed=True,
                reason=reason,
            )

        return ReconstructionResult(
            messages=(base,),
            reconstructed=False,
            suppressed=False,
            reason="no_chain",
        )

    def _related_messages(
        self,
        base: ThreadMessage,
        context: Sequence[ThreadMessage],
        current_user_email: str,
    ) -> list[ThreadMessage]:
        """Same normalized subject and a shared participant besides the owner."""
        subject = normalize_subject(base.subject)
        owner = normalize_address(current_user_email)
        base_participants = participants(base) - {owner}
        if not subject or not base_participants:
            return []

        related: list[ThreadMessage] = []
        seen: set[str] = {base.id}
        for message in context:
            if message.id in seen:
                continue
            if normalize_subject(message.subject) != subject:
                continue
            if not (participants(message, include_cc=True) & base_participants):
                continue
            seen.add(message.id)
            related.append(message)
        return related

    def _containment_chain(
        self,
        ordered: list[ThreadMessage],
        bodies: dict[str, str],
    ) -> list[ThreadMessage]:
        chain: list[ThreadMessage] = []
        previous_body: str | None = None
        for message in ordered:
            body = bodies[message.id]
            if len(body) < self._heuristics.min_body_length:
                continue
            if previous_body is None:
                chain.append(message)
                previous_body = body
            elif body != previous_body and previous_body in body:
                chain.append(message)
                previous_body = body
        return chain

    def _suppression_reason(
        self,
        base: ThreadMessage,
        later: list[ThreadMessage],
        bodies: dict[str, str],
    ) -> ReconstructionReason | None:
        replies = [m for m in later if not m.is_from_current_user]
        if not replies:
            return None

        base_body = bodies[base.id]
        if len(base_body) >= max(self._heuristics.min_body_length, 1):
            for reply in replies:
                if base_body in bodies[reply.id]:
                    return "quoted_reply"

        if self._heuristics.suppression_requires_quote:
            return None
        return "subject_participant_match"
