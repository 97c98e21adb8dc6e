"""Tests for the conversation resolver.

Tests grouping, thread resolution through the mail source (with fallbacks),
reconstruction, follow-up evaluation and candidate building.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from followup.config_schema import AnalysisConfig, AppConfig
from followup.core.cache import CacheEngine
from followup.core.errors import AdvisorError, PermanentError
from followup.core.resilience import RetryExecutor, RetryPolicy
from followup.engine.resolver import ConversationResolver, ResolutionContext
from followup.engine.state import FollowupState
from followup.engine.thread_utils import to_thread_message
from followup.models import ConversationGroup, RawMessage, Thread

MessageFactory = Callable[..., RawMessage]

BOB = "bob@example.com"


async def _no_sleep(delay: float) -> None:
    return None


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def retry(sample_config: AppConfig) -> RetryExecutor:
    return RetryExecutor(
        RetryPolicy.from_config(sample_config.retry),
        sample_config.circuit_breaker,
        sleep=_no_sleep,
    )


@pytest.fixture
def cache(sample_config: AppConfig) -> CacheEngine:
    return CacheEngine(sample_config.cache)


@pytest.fixture
def state() -> FollowupState:
    return FollowupState()


@pytest.fixture
def mail_source() -> MagicMock:
    """Create a mock MailSource."""
    source = MagicMock()
    source.fetch_recent_messages = AsyncMock(return_value=[])
    source.fetch_conversation = AsyncMock(return_value=[])
    source.fetch_single_item = AsyncMock(return_value=None)
    return source


@pytest.fixture
def advisor() -> MagicMock:
    """Create a mock FollowupAdvisor."""
    mock = MagicMock()
    mock.classify_sentiment = AsyncMock(return_value="neutral")
    mock.summarize = AsyncMock(return_value="Waiting on Q3 numbers.")
    mock.suggest_followups = AsyncMock(return_value=["Send a reminder"])
    return mock


@pytest.fixture
def make_resolver(
    sample_config: AppConfig,
    cache: CacheEngine,
    retry: RetryExecutor,
    state: FollowupState,
) -> Callable[..., ConversationResolver]:
    def make(mail_source=None, advisor=None) -> ConversationResolver:
        return ConversationResolver(
            cache,
            retry,
            sample_config,
            mail_source=mail_source,
            advisor=advisor,
            state=state,
        )

    return make


@pytest.fixture
def context(owner: str, now: datetime) -> ResolutionContext:
    return ResolutionContext(
        current_user_email=owner,
        analysis=AnalysisConfig(ai_enabled=False),
        context_messages=(),
        now=now,
    )


def with_analysis(context: ResolutionContext, **changes) -> ResolutionContext:
    return ResolutionContext(
        current_user_email=context.current_user_email,
        analysis=AnalysisConfig(**{"ai_enabled": False, **changes}),
        context_messages=context.context_messages,
        now=context.now,
    )


def group_of(*messages: RawMessage) -> ConversationGroup:
    groups = ConversationResolver.group_by_conversation(messages)
    assert len(groups) == 1
    return groups[0]


# =============================================================================
# Test grouping
# =============================================================================


class TestGroupByConversation:
    """Tests for conversation grouping."""

    def test_groups_by_conversation_id(self, message_factory: MessageFactory) -> None:
        messages = [
            message_factory("m1", conversation_id="c1"),
            message_factory("m2", conversation_id="c2"),
            message_factory("m3", conversation_id="c1"),
        ]

        groups = ConversationResolver.group_by_conversation(messages)

        assert [g.key for g in groups] == ["c1", "c2"]
        assert [m.id for m in groups[0].messages] == ["m1", "m3"]

    def test_messages_without_id_form_singletons(self, message_factory: MessageFactory) -> None:
        messages = [
            message_factory("m1"),
            message_factory("m2", conversation_id="   "),
        ]

        groups = ConversationResolver.group_by_conversation(messages)

        assert [g.key for g in groups] == ["m1", "m2"]
        assert all(g.conversation_id is None for g in groups)


# =============================================================================
# Test evaluation (no mail source)
# =============================================================================


class TestEvaluation:
    """Tests for the follow-up decision."""

    async def test_owner_sent_last(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        message_factory: MessageFactory,
    ) -> None:
        group = group_of(
            message_factory("m1", sender=BOB, to=("me@example.com",), days_ago=3, conversation_id="c1"),
            message_factory("m2", to=(BOB,), days_ago=1, conversation_id="c1"),
        )

        candidate = await make_resolver().resolve_group(group, context)

        assert candidate is not None
        assert candidate.id == "m2"
        assert candidate.days_without_response == 1
        assert candidate.recipients == (BOB,)
        assert candidate.account_email == "me@example.com"
        assert len(candidate.thread_messages) == 2
        # Neutral and one day old is low; a real conversation escalates it
        assert candidate.priority == "medium"
        assert candidate.sentiment == "neutral"
        assert candidate.llm_summary is None

    async def test_other_party_sent_last(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        message_factory: MessageFactory,
    ) -> None:
        group = group_of(
            message_factory("m1", to=(BOB,), days_ago=3, conversation_id="c1"),
            message_factory("m2", sender=BOB, to=("me@example.com",), days_ago=1, conversation_id="c1"),
        )

        assert await make_resolver().resolve_group(group, context) is None

    async def test_reply_sent_after_owner_is_a_response(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        message_factory: MessageFactory,
    ) -> None:
        owner_message = message_factory("m1", to=(BOB,), days_ago=2, conversation_id="c1")
        # Sent after the owner's message but stamped as received earlier
        reply = message_factory(
            "m2",
            sender=BOB,
            days_ago=1,
            received_date=owner_message.sent_date - timedelta(hours=1),
            conversation_id="c1",
        )
        resolver = make_resolver()
        group = group_of(owner_message, reply)

        thread = await resolver.resolve_thread(group, context)

        assert resolver.evaluate(thread, context).reason == "response_received"

    async def test_account_filter(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        message_factory: MessageFactory,
    ) -> None:
        group = group_of(message_factory("m1", to=(BOB,)))

        filtered = with_analysis(context, selected_accounts=["Other@Example.com"])
        assert await make_resolver().resolve_group(group, filtered) is None

        allowed = with_analysis(context, selected_accounts=["ME@example.com"])
        assert await make_resolver().resolve_group(group, allowed) is not None

    async def test_snoozed_candidate_hidden(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        state: FollowupState,
        message_factory: MessageFactory,
        now: datetime,
    ) -> None:
        group = group_of(message_factory("m1", to=(BOB,)))
        until = now + timedelta(hours=2)
        state.snooze("m1", until)

        assert await make_resolver().resolve_group(group, context) is None

        shown = await make_resolver().resolve_group(
            group, with_analysis(context, show_snoozed_emails=True)
        )
        assert shown is not None
        assert shown.is_snoozed
        assert shown.snooze_until == until

    async def test_expired_snooze_ignored(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        state: FollowupState,
        message_factory: MessageFactory,
        now: datetime,
    ) -> None:
        state.snooze("m1", now - timedelta(minutes=1))

        candidate = await make_resolver().resolve_group(
            group_of(message_factory("m1", to=(BOB,))), context
        )

        assert candidate is not None
        assert not candidate.is_snoozed
        assert "m1" not in state.snoozed

    async def test_dismissed_candidate_hidden(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        state: FollowupState,
        message_factory: MessageFactory,
    ) -> None:
        group = group_of(message_factory("m1", to=(BOB,)))
        state.dismiss("m1")

        assert await make_resolver().resolve_group(group, context) is None

        shown = await make_resolver().resolve_group(
            group, with_analysis(context, show_dismissed_emails=True)
        )
        assert shown is not None
        assert shown.is_dismissed

    def test_empty_thread_needs_nothing(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
    ) -> None:
        evaluation = make_resolver().evaluate(Thread(key="gone", messages=()), context)

        assert evaluation.last_message is None
        assert evaluation.reason == "empty_thread"


# =============================================================================
# Test thread resolution through the mail source
# =============================================================================


class TestMailSourceResolution:
    """Tests for conversation fetch and its fallbacks."""

    async def test_conversation_fetch_finds_reply(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        mail_source: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        sent = message_factory("m1", to=(BOB,), days_ago=2, conversation_id="c1")
        reply_in_inbox = message_factory(
            "m2", sender=BOB, to=("me@example.com",), days_ago=1, conversation_id="c1"
        )
        mail_source.fetch_conversation.return_value = [sent, reply_in_inbox]

        result = await make_resolver(mail_source).resolve_group(group_of(sent), context)

        assert result is None
        mail_source.fetch_conversation.assert_awaited_once_with("c1")
        mail_source.fetch_single_item.assert_not_awaited()

    async def test_conversation_fetch_failure_falls_back_to_single_item(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        mail_source: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        sent = message_factory("m1", to=(BOB,), conversation_id="c1")
        mail_source.fetch_conversation.side_effect = PermanentError("404 not found", 404)
        mail_source.fetch_single_item.return_value = sent

        candidate = await make_resolver(mail_source).resolve_group(group_of(sent), context)

        assert candidate is not None
        assert candidate.id == "m1"
        mail_source.fetch_single_item.assert_awaited_once_with("m1")

    async def test_empty_conversation_falls_back_to_single_item(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        mail_source: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        sent = message_factory("m1", to=(BOB,), conversation_id="c1")
        mail_source.fetch_single_item.return_value = sent

        candidate = await make_resolver(mail_source).resolve_group(group_of(sent), context)

        assert candidate is not None

    async def test_message_without_conversation_uses_single_item(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        mail_source: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        sent = message_factory("m1", to=(BOB,))
        mail_source.fetch_single_item.return_value = sent

        await make_resolver(mail_source).resolve_group(group_of(sent), context)

        mail_source.fetch_conversation.assert_not_awaited()
        mail_source.fetch_single_item.assert_awaited_once_with("m1")

    async def test_deleted_message_yields_nothing(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        mail_source: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        resolver = make_resolver(mail_source)
        group = group_of(message_factory("m1", to=(BOB,)))

        thread = await resolver.resolve_thread(group, context)

        assert len(thread) == 0
        assert resolver.evaluate(thread, context).reason == "empty_thread"

    async def test_single_item_failure_propagates(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        mail_source: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        mail_source.fetch_single_item.side_effect = PermanentError("403 forbidden", 403)

        with pytest.raises(PermanentError):
            await make_resolver(mail_source).resolve_group(
                group_of(message_factory("m1", to=(BOB,))), context
            )

    async def test_resolved_thread_is_cached(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        mail_source: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        sent = message_factory("m1", to=(BOB,), conversation_id="c1")
        mail_source.fetch_conversation.return_value = [sent]
        resolver = make_resolver(mail_source)

        first = await resolver.resolve_group(group_of(sent), context)
        second = await resolver.resolve_group(group_of(sent), context)

        assert first is not None and second is not None
        assert mail_source.fetch_conversation.await_count == 1

    async def test_cached_thread_replaced_when_reply_joins_conversation(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        mail_source: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        sent = message_factory("m1", to=(BOB,), conversation_id="c1", days_ago=2)
        reply = message_factory(
            "m2", sender=BOB, to=("me@example.com",), conversation_id="c1", days_ago=1
        )
        resolver = make_resolver(mail_source)

        mail_source.fetch_conversation.return_value = [sent]
        assert await resolver.resolve_group(group_of(sent), context) is not None

        mail_source.fetch_conversation.return_value = [sent, reply]
        assert await resolver.resolve_group(group_of(sent, reply), context) is None
        assert mail_source.fetch_conversation.await_count == 2


# =============================================================================
# Test reconstruction inside the resolver
# =============================================================================


class TestReconstructionPath:
    """Tests for single-message groups resolved from the analysis window."""

    @pytest.fixture
    def budget(self, message_factory: MessageFactory) -> list[RawMessage]:
        ask = "Can we finalize the Q3 budget numbers this week?"
        answer = "Yes, I will send them tomorrow."
        return [
            message_factory("m1", to=(BOB,), subject="Budget", body=ask, days_ago=2),
            message_factory(
                "m2",
                sender=BOB,
                to=("me@example.com",),
                subject="RE: Budget",
                body=f"{answer}\n\n> {ask}",
                days_ago=1.5,
            ),
            message_factory(
                "m3",
                to=(BOB,),
                subject="RE: Budget",
                body=f"Great, thanks.\n\n> {answer}\n> > {ask}",
                days_ago=1,
            ),
        ]

    @pytest.fixture
    def budget_context(
        self, context: ResolutionContext, budget: list[RawMessage], owner: str
    ) -> ResolutionContext:
        return ResolutionContext(
            current_user_email=owner,
            analysis=context.analysis,
            context_messages=tuple(to_thread_message(m, owner) for m in budget),
            now=context.now,
        )

    async def test_reconstructed_thread_produces_candidate(
        self,
        make_resolver: Callable[..., ConversationResolver],
        budget: list[RawMessage],
        budget_context: ResolutionContext,
    ) -> None:
        candidate = await make_resolver().resolve_group(group_of(budget[2]), budget_context)

        assert candidate is not None
        assert [m.id for m in candidate.thread_messages] == ["m1", "m2", "m3"]
        assert candidate.priority == "medium"

    async def test_quoted_message_is_suppressed(
        self,
        make_resolver: Callable[..., ConversationResolver],
        budget: list[RawMessage],
        budget_context: ResolutionContext,
    ) -> None:
        resolver = make_resolver()
        thread = await resolver.resolve_thread(group_of(budget[0]), budget_context)

        assert thread.suppressed
        assert resolver.evaluate(thread, budget_context).reason == "answered_outside_conversation"

    async def test_reply_seen_after_caching_suppresses(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        budget: list[RawMessage],
        budget_context: ResolutionContext,
        owner: str,
    ) -> None:
        resolver = make_resolver()
        alone = ResolutionContext(
            current_user_email=owner,
            analysis=context.analysis,
            context_messages=(to_thread_message(budget[0], owner),),
            now=context.now,
        )

        assert await resolver.resolve_group(group_of(budget[0]), alone) is not None
        assert await resolver.resolve_group(group_of(budget[0]), budget_context) is None

    def test_thread_cache_key_ignores_unrelated_context(
        self,
        budget: list[RawMessage],
        budget_context: ResolutionContext,
        message_factory: MessageFactory,
        owner: str,
    ) -> None:
        group = group_of(budget[0])
        unrelated = to_thread_message(message_factory("x1", subject="Lunch"), owner)
        widened = ResolutionContext(
            current_user_email=owner,
            analysis=budget_context.analysis,
            context_messages=(*budget_context.context_messages, unrelated),
            now=budget_context.now,
        )

        key = ConversationResolver.thread_cache_key(group, budget_context)

        assert key.startswith("thread:me@example.com:m1:")
        assert ConversationResolver.thread_cache_key(group, widened) == key


# =============================================================================
# Test advisor integration
# =============================================================================


class TestAdvisor:
    """Tests for advisor sentiment, summaries and fallbacks."""

    async def test_advisor_sentiment_drives_priority(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        advisor: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        advisor.classify_sentiment.return_value = "urgent"

        candidate = await make_resolver(advisor=advisor).resolve_group(
            group_of(message_factory("m1", to=(BOB,))), with_analysis(context, ai_enabled=True)
        )

        assert candidate is not None
        assert candidate.sentiment == "urgent"
        assert candidate.priority == "high"

    async def test_sentiment_is_cached_by_body(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        advisor: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        resolver = make_resolver(advisor=advisor)
        enabled = with_analysis(context, ai_enabled=True)

        await resolver.resolve_group(group_of(message_factory("m1", body="Same body text")), enabled)
        await resolver.resolve_group(group_of(message_factory("m2", body="Same body text")), enabled)

        assert advisor.classify_sentiment.await_count == 1

    async def test_advisor_failure_falls_back_to_keywords(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        advisor: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        advisor.classify_sentiment.side_effect = AdvisorError("no tool call", "classify_sentiment")

        candidate = await make_resolver(advisor=advisor).resolve_group(
            group_of(message_factory("m1", body="We have a problem with the invoice")),
            with_analysis(context, ai_enabled=True),
        )

        assert candidate is not None
        assert candidate.sentiment == "negative"

    async def test_invalid_advisor_sentiment_falls_back(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        advisor: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        advisor.classify_sentiment.return_value = "furious"

        candidate = await make_resolver(advisor=advisor).resolve_group(
            group_of(message_factory("m1", body="Thanks for your help")),
            with_analysis(context, ai_enabled=True),
        )

        assert candidate is not None
        assert candidate.sentiment == "positive"

    async def test_summary_and_suggestions(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        advisor: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        candidate = await make_resolver(advisor=advisor).resolve_group(
            group_of(message_factory("m1")),
            with_analysis(
                context, ai_enabled=True, enable_llm_summary=True, enable_llm_suggestions=True
            ),
        )

        assert candidate is not None
        assert candidate.llm_summary == "Waiting on Q3 numbers."
        assert candidate.llm_suggestions == ("Send a reminder",)

    async def test_advisor_unused_when_ai_disabled(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        advisor: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        candidate = await make_resolver(advisor=advisor).resolve_group(
            group_of(message_factory("m1")),
            with_analysis(context, enable_llm_summary=True),
        )

        assert candidate is not None
        advisor.classify_sentiment.assert_not_awaited()
        advisor.summarize.assert_not_awaited()

    async def test_advisor_summary_preferred(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        advisor: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        candidate = await make_resolver(advisor=advisor).resolve_group(
            group_of(message_factory("m1", body="Any news on the Q3 numbers?")),
            with_analysis(context, ai_enabled=True, enable_llm_summary=True),
        )

        assert candidate is not None
        assert candidate.summary == "Waiting on Q3 numbers."

    async def test_failed_advisor_summary_falls_back(
        self,
        make_resolver: Callable[..., ConversationResolver],
        context: ResolutionContext,
        advisor: MagicMock,
        message_factory: MessageFactory,
    ) -> None:
        advisor.summarize.side_effect = AdvisorError("no tool call", "summarize")

        candidate = await make_resolver(advisor=advisor).resolve_group(
            group_of(message_factory("m1", body="Any news on the Q3 numbers?")),
            with_analysis(context, ai_enabled=True, enable_llm_summary=True),
        )

        assert candidate is not None
        assert candidate.llm_summary is None
        assert candidate.summary == "Any news on the Q3 numbers?"
