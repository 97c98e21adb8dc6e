"""Conversation resolution: from raw messages to follow-up candidates.

For each conversation group the resolver:
1. Resolves the full thread: a cross-folder conversation fetch when the
   group has a conversation id, single-item retrieval otherwise (or when the
   conversation fetch fails), and heuristic reconstruction when only one
   message is left.
2. Decides whether the thread needs a follow-up (owner sent last, nobody
   replied, account filter, snooze/dismiss state).
3. Builds the candidate: days without response, sentiment, priority, summary.

Every mail-source call goes through the retry executor under the
"mail-source" circuit, every advisor call under "llm-api". Resolved threads
and advisor sentiment are memoized in the cache engine.

Usage:
    from followup.engine.resolver import ConversationResolver, ResolutionContext

    resolver = ConversationResolver(cache, retry, config, mail_source=source)
    groups = ConversationResolver.group_by_conversation(raw_messages)
    candidate = await resolver.resolve_group(groups[0], context)
"""

from __future__ import annotations

import hashlib
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from followup.core.logging import get_logger
from followup.engine.ranking import classify_sentiment_basic, compute_priority, days_between
from followup.engine.reconstruction import ThreadReconstructor
from followup.engine.snippet import generate_summary
from followup.engine.state import FollowupState
from followup.engine.thread_utils import (
    dedupe_messages,
    latest_message,
    normalize_address,
    normalize_subject,
    sort_chronologically,
    to_thread_message,
)
from followup.models import (
    VALID_SENTIMENTS,
    ConversationGroup,
    FollowupCandidate,
    RawMessage,
    Sentiment,
    Thread,
    ThreadMessage,
)

if TYPE_CHECKING:
    from followup.config_schema import AnalysisConfig, AppConfig
    from followup.core.cache import CacheEngine
    from followup.core.resilience import RetryExecutor
    from followup.sources.base import FollowupAdvisor, MailSource

logger = get_logger(__name__)

MAIL_SOURCE_BREAKER = "mail-source"
LLM_BREAKER = "llm-api"


@dataclass(frozen=True, slots=True)
class ResolutionContext:
    """Inputs shared by every conversation of one analysis run.

    Attributes:
        current_user_email: Mailbox owner
        analysis: Per-run analysis settings
        context_messages: Recent messages searched during reconstruction
        now: Reference time for days-without-response and snooze expiry
    """

    current_user_email: str
    analysis: AnalysisConfig
    context_messages: tuple[ThreadMessage, ...]
    now: datetime


@dataclass(frozen=True, slots=True)
class Evaluation:
    """Whether a thread needs a follow-up and, if not, why."""

    last_message: ThreadMessage | None
    reason: str

    @property
    def needs_followup(self) -> bool:
        return self.last_message is not None


class ConversationResolver:
    """Resolves conversation groups into follow-up candidates."""

    def __init__(
        self,
        cache: CacheEngine,
        retry: RetryExecutor,
        config: AppConfig,
        mail_source: MailSource | None = None,
        advisor: FollowupAdvisor | None = None,
        state: FollowupState | None = None,
        reconstructor: ThreadReconstructor | None = None,
    ):
        """Initialize the resolver.

        Args:
            cache: Memoizes resolved threads and advisor sentiment
            retry: Wraps every collaborator call
            config: Application configuration
            mail_source: Conversation and single-item lookups (group messages only if None)
            advisor: Optional LLM advisor
            state: Snooze/dismiss state shared with the analyzer
            reconstructor: Heuristic thread reconstruction
        """
        self._cache = cache
        self._retry = retry
        self._config = config
        self._source = mail_source
        self._advisor = advisor
        self._state = state or FollowupState()
        self._reconstructor = reconstructor or ThreadReconstructor(config.heuristics)

    # -----------------------------------------------------------------
    # Grouping
    # -----------------------------------------------------------------

    @staticmethod
    def group_by_conversation(messages: Iterable[RawMessage]) -> list[ConversationGroup]:
        """Partition messages by conversation id (the message id when absent).

        Groups keep first-seen order and members keep input order.
        """
        groups: dict[str, ConversationGroup] = {}
        for message in messages:
            conversation_id = (message.conversation_id or "").strip() or None
            key = conversation_id or message.id
            group = groups.get(key)
            if group is None:
                group = ConversationGroup(key=key, conversation_id=conversation_id)
                groups[key] = group
            group.messages.append(message)
        return list(groups.values())

    # -----------------------------------------------------------------
    # Per-group pipeline
    # -----------------------------------------------------------------

    async def resolve_group(
        self,
        group: ConversationGroup,
        context: ResolutionContext,
    ) -> FollowupCandidate | None:
        """Resolve one group to a candidate, or None if it needs no follow-up.

        Raises:
            ThreadOrderError: If the resolved thread is out of order
            Exception: Collaborator failures that have no fallback
        """
        thread = await self.resolve_thread(group, context)
        evaluation = self.evaluate(thread, context)
        last = evaluation.last_message
        if last is None:
            logger.debug(
                "conversation_skipped",
                conversation_key=group.key,
                reason=evaluation.reason,
            )
            return None
        return await self.build_candidate(thread, last, context)

    async def resolve_thread(self, group: ConversationGroup, context: ResolutionContext) -> Thread:
        """Full, chronologically validated thread for a group.

        Threads of one message go through reconstruction. The result is
        cached under a key that covers every input it was derived from (see
        thread_cache_key), so a new reply produces a new resolution.
        """
        owner = context.current_user_email
        cache_key = self.thread_cache_key(group, context)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        raw_messages = await self._fetch_thread_messages(group)
        messages = [to_thread_message(m, owner) for m in dedupe_messages(raw_messages)]
        thread = Thread(key=group.key, messages=tuple(sort_chronologically(messages)))

        if len(thread) == 1:
            result = self._reconstructor.reconstruct(
                thread.messages[0], context.context_messages, owner
            )
            thread = Thread(
                key=group.key,
                messages=result.messages,
                reconstructed=result.reconstructed,
                suppressed=result.suppressed,
            )

        self._cache.set(cache_key, thread, ttl=self._config.cache.thread_ttl_seconds)
        logger.debug(
            "thread_resolved",
            conversation_key=group.key,
            messages=len(thread),
            reconstructed=thread.reconstructed,
            suppressed=thread.suppressed,
        )
        return thread

    @staticmethod
    def thread_cache_key(group: ConversationGroup, context: ResolutionContext) -> str:
        """Cache key for a group's resolved thread.

        Covers the owner, the group's member ids and the context messages
        that reconstruction and suppression can see (same normalized subject
        as a member). Any new member or newly visible reply changes the key.
        """
        member_ids = sorted({m.id for m in group.messages})
        subjects = {normalize_subject(m.subject) for m in group.messages}
        related_ids = sorted(
            {
                m.id
                for m in context.context_messages
                if m.id not in member_ids and normalize_subject(m.subject) in subjects
            }
        )
        digest = hashlib.sha256(
            "\n".join([*member_ids, "", *related_ids]).encode("utf-8")
        ).hexdigest()[:16]
        owner = normalize_address(context.current_user_email)
        return f"thread:{owner}:{group.key}:{digest}"

    async def _fetch_thread_messages(self, group: ConversationGroup) -> list[RawMessage]:
        if self._source is None:
            return list(group.messages)
        source = self._source

        conversation_id = group.conversation_id
        if conversation_id:
            try:
                fetched = await self._retry.execute(
                    lambda: source.fetch_conversation(conversation_id),
                    breaker_key=MAIL_SOURCE_BREAKER,
                )
            except Exception as e:
                logger.warning(
                    "conversation_fetch_failed",
                    conversation_key=group.key,
                    error=str(e),
                )
            else:
                if fetched:
                    return [*group.messages, *fetched]

        # Single-item retrieval of the group's latest message
        base = max(group.messages, key=lambda m: m.received_date or m.sent_date)
        item = await self._retry.execute(
            lambda: source.fetch_single_item(base.id),
            breaker_key=MAIL_SOURCE_BREAKER,
        )
        if item is None:
            logger.info("message_no_longer_exists", message_id=base.id)
            return []
        return [item]

    def evaluate(self, thread: Thread, context: ResolutionContext) -> Evaluation:
        """Decide whether a thread needs a follow-up."""
        if thread.suppressed:
            return Evaluation(None, "answered_outside_conversation")

        last = latest_message(thread.messages)
        if last is None:
            return Evaluation(None, "empty_thread")
        if not last.is_from_current_user:
            return Evaluation(None, "last_message_not_from_owner")

        if any(m.sent_date > last.sent_date and not m.is_from_current_user for m in thread.messages):
            return Evaluation(None, "response_received")

        analysis = context.analysis
        if analysis.selected_accounts and normalize_address(last.sender) not in analysis.selected_accounts:
            return Evaluation(None, "account_not_selected")

        if (
            self._state.snoozed_until(last.id, context.now) is not None
            and not analysis.show_snoozed_emails
        ):
            return Evaluation(None, "snoozed")

        if self._state.is_dismissed(last.id) and not analysis.show_dismissed_emails:
            return Evaluation(None, "dismissed")

        return Evaluation(last, "needs_followup")

    async def build_candidate(
        self,
        thread: Thread,
        last: ThreadMessage,
        context: ResolutionContext,
    ) -> FollowupCandidate:
        """Assemble the candidate for a thread that needs a follow-up."""
        analysis = context.analysis
        days = days_between(last.sent_date, context.now)
        sentiment = await self._sentiment(last.body, analysis)
        priority = compute_priority(days, sentiment, len(thread), analysis.priority_thresholds)

        llm_summary: str | None = None
        llm_suggestions: tuple[str, ...] = ()
        advisor = self._active_advisor(analysis)
        if advisor is not None:
            if analysis.enable_llm_summary:
                llm_summary = await self._ask_advisor(
                    "summarize", lambda: advisor.summarize(last.body)
                )
            if analysis.enable_llm_suggestions:
                suggestions = await self._ask_advisor(
                    "suggest_followups", lambda: advisor.suggest_followups(last.body)
                )
                llm_suggestions = tuple(suggestions or ())

        snooze_until = self._state.snoozed_until(last.id, context.now)

        return FollowupCandidate(
            id=last.id,
            subject=last.subject,
            recipients=last.to,
            sent_date=last.sent_date,
            body=last.body,
            summary=llm_summary or generate_summary(last.body, last.subject),
            priority=priority,
            days_without_response=days,
            conversation_id=last.conversation_id,
            thread_messages=thread.messages,
            sentiment=sentiment,
            account_email=last.sender,
            llm_summary=llm_summary,
            llm_suggestions=llm_suggestions,
            is_snoozed=snooze_until is not None,
            snooze_until=snooze_until,
            is_dismissed=self._state.is_dismissed(last.id),
        )

    # -----------------------------------------------------------------
    # Advisor helpers
    # -----------------------------------------------------------------

    def _active_advisor(self, analysis: AnalysisConfig) -> FollowupAdvisor | None:
        """The advisor, or None when absent or AI is disabled for this run."""
        if not analysis.ai_enabled:
            return None
        return self._advisor

    async def _sentiment(self, body: str, analysis: AnalysisConfig) -> Sentiment:
        """Advisor sentiment (cached), falling back to keyword classification."""
        advisor = self._active_advisor(analysis)
        if advisor is None:
            return classify_sentiment_basic(body)

        digest = hashlib.sha256(body.encode("utf-8")).hexdigest()
        cache_key = f"sentiment:{digest}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        sentiment = await self._ask_advisor(
            "classify_sentiment", lambda: advisor.classify_sentiment(body)
        )
        if sentiment not in VALID_SENTIMENTS:
            if sentiment is not None:
                logger.warning("advisor_sentiment_invalid", sentiment=str(sentiment)[:20])
            return classify_sentiment_basic(body)

        self._cache.set(cache_key, sentiment, ttl=self._config.cache.sentiment_ttl_seconds)
        return sentiment

    async def _ask_advisor(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
    ) -> Any | None:
        """Run an advisor call through the resilience layer; None on failure."""
        try:
            return await self._retry.execute(call, breaker_key=LLM_BREAKER)
        except Exception as e:
            logger.warning("advisor_call_failed", operation=operation, error=str(e))
            return None
