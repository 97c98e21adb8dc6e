"""Follow-up analysis: the engine's public entry point.

Wires the cache engine, resilience layer and batch executor around the
conversation resolver, and owns the snooze/dismiss state.

Flow per analyze() call:
1. Group raw messages by conversation
2. Resolve every group through the batch executor (bounded concurrency,
   per-conversation error isolation)
3. Deduplicate candidates of the same human thread
4. Sort by priority, sentiment severity and sent date

Usage:
    from followup.engine.analyzer import FollowupAnalyzer

    analyzer = FollowupAnalyzer(config, mail_source=source, advisor=advisor)
    candidates = await analyzer.analyze(raw_messages, "me@example.com")
    print(analyzer.last_summary)
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import regex

from followup.config_schema import AppConfig
from followup.core.batch import BatchExecutor, BatchOptions
from followup.core.cache import CacheEngine, CacheStats
from followup.core.errors import FollowupError, SnoozeError
from followup.core.logging import get_logger, run_context
from followup.core.resilience import (
    CircuitBreakerSnapshot,
    RetryExecutor,
    RetryPolicy,
    RetryStats,
)
from followup.engine.ranking import dedupe_candidates, sort_candidates
from followup.engine.resolver import MAIL_SOURCE_BREAKER, ConversationResolver, ResolutionContext
from followup.engine.state import FollowupState
from followup.engine.thread_utils import sort_chronologically, to_thread_message
from followup.models import FollowupCandidate, RawMessage, ThreadMessage

if TYPE_CHECKING:
    from followup.config_schema import AnalysisConfig
    from followup.sources.base import FollowupAdvisor, MailSource

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class AnalysisSummary:
    """Outcome of one analysis run.

    Attributes:
        run_id: Correlation id of the run (also on every log line)
        groups: Conversation groups processed
        candidates: Candidates returned after dedupe
        errors: Conversations excluded because resolution failed
        failed_conversations: Keys of those conversations
        cancelled: True if the run was cancelled
        duration_ms: Wall time of the run
    """

    run_id: str
    groups: int
    candidates: int
    errors: int
    failed_conversations: tuple[str, ...]
    cancelled: bool
    duration_ms: int


class FollowupAnalyzer:
    """Finds threads where the mailbox owner is waiting for a reply."""

    def __init__(
        self,
        config: AppConfig | None = None,
        mail_source: MailSource | None = None,
        advisor: FollowupAdvisor | None = None,
        cache: CacheEngine | None = None,
        retry: RetryExecutor | None = None,
        batch: BatchExecutor | None = None,
        now: Callable[[], datetime] = utc_now,
    ):
        """Initialize the analyzer.

        Collaborators not supplied are built from the configuration.

        Args:
            config: Application configuration (defaults if not provided)
            mail_source: Mailbox access; without it, analyze() works on the given messages only
            advisor: Optional LLM advisor
            cache: Cache engine
            retry: Retry executor shared by every collaborator call
            batch: Batch executor driving per-conversation resolution
            now: Returns the current UTC time
        """
        self._config = config or AppConfig()
        self._source = mail_source
        self._cache = cache or CacheEngine(self._config.cache)
        self._retry = retry or RetryExecutor(
            RetryPolicy.from_config(self._config.retry),
            self._config.circuit_breaker,
        )
        self._batch = batch or BatchExecutor(self._retry)
        self._now = now
        self._advisor = advisor
        self._state = FollowupState()
        self._resolver = self._build_resolver()
        self._active_runs: set[str] = set()
        self._last_summary: AnalysisSummary | None = None

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def cache(self) -> CacheEngine:
        return self._cache

    @property
    def retry(self) -> RetryExecutor:
        return self._retry

    @property
    def resolver(self) -> ConversationResolver:
        return self._resolver

    @property
    def last_summary(self) -> AnalysisSummary | None:
        return self._last_summary

    def reconfigure(self, config: AppConfig, advisor: FollowupAdvisor | None = None) -> None:
        """Apply a reloaded configuration without losing runtime state.

        The cache keeps its entries and sweep, the retry executor keeps its
        breakers and statistics, and snooze/dismiss state is kept. Only the
        resolver is rebuilt, around the same collaborators.

        Args:
            config: New application configuration
            advisor: Advisor to use from now on (None disables it)

        Raises:
            pydantic.ValidationError: If the cache options are invalid
        """
        previous = self._config
        self._config = config
        if config.cache != previous.cache:
            self._cache.update_options(**config.cache.model_dump())
        if config.retry != previous.retry or config.circuit_breaker != previous.circuit_breaker:
            self._retry.reconfigure(
                RetryPolicy.from_config(config.retry),
                config.circuit_breaker,
            )
        self._advisor = advisor
        self._resolver = self._build_resolver()
        logger.info("analyzer_reconfigured", advisor=advisor is not None)

    def _build_resolver(self) -> ConversationResolver:
        return ConversationResolver(
            self._cache,
            self._retry,
            self._config,
            mail_source=self._source,
            advisor=self._advisor,
            state=self._state,
        )

    # -----------------------------------------------------------------
    # Analysis
    # -----------------------------------------------------------------

    async def analyze(
        self,
        raw_messages: Iterable[RawMessage],
        current_user_email: str,
        config: AnalysisConfig | None = None,
    ) -> list[FollowupCandidate]:
        """Find follow-up candidates among a window of messages.

        A conversation that fails to resolve is logged, counted in
        last_summary and left out; it never aborts the run.

        Args:
            raw_messages: Messages to analyze
            current_user_email: Mailbox owner
            config: Analysis settings (the application config's if not provided)

        Returns:
            Candidates, highest priority first
        """
        if not current_user_email or "@" not in current_user_email:
            raise FollowupError(
                f"current_user_email '{current_user_email}' is not an email address. "
                "Pass the mailbox owner's address (or set user_email in config.yaml)."
            )

        analysis = config or self._config.analysis
        messages = list(raw_messages)
        run_id = str(uuid.uuid4())
        start_time = time.monotonic()
        self._active_runs.add(run_id)

        with run_context(run_id):
            try:
                groups = ConversationResolver.group_by_conversation(messages)
                context = ResolutionContext(
                    current_user_email=current_user_email,
                    analysis=analysis,
                    context_messages=self._context_window(messages, current_user_email),
                    now=self._now(),
                )

                logger.info(
                    "analysis_started",
                    messages=len(messages),
                    groups=len(groups),
                    user=current_user_email,
                )

                options = BatchOptions.from_config(self._config.batch, run_id=run_id)
                result = await self._batch.run(
                    groups,
                    lambda group: self._resolver.resolve_group(group, context),
                    options,
                )

                candidates = [c for c in result.results if c is not None]
                candidates = dedupe_candidates(
                    candidates, self._config.heuristics.dedupe_window_days
                )
                candidates = sort_candidates(candidates)

                self._last_summary = AnalysisSummary(
                    run_id=run_id,
                    groups=len(groups),
                    candidates=len(candidates),
                    errors=len(result.errors),
                    failed_conversations=tuple(e.item.key for e in result.errors),
                    cancelled=result.cancelled,
                    duration_ms=int((time.monotonic() - start_time) * 1000),
                )

                logger.info(
                    "analysis_complete",
                    groups=len(groups),
                    candidates=len(candidates),
                    errors=len(result.errors),
                    cancelled=result.cancelled,
                    duration_ms=self._last_summary.duration_ms,
                )
                return candidates
            finally:
                self._active_runs.discard(run_id)

    async def analyze_recent(
        self,
        current_user_email: str,
        config: AnalysisConfig | None = None,
    ) -> list[FollowupCandidate]:
        """Fetch recent messages from the mail source and analyze them.

        Raises:
            FollowupError: If no mail source is configured
        """
        if self._source is None:
            raise FollowupError(
                "analyze_recent() needs a mail source. Pass mail_source to FollowupAnalyzer "
                "or call analyze() with the messages."
            )
        source = self._source
        analysis = config or self._config.analysis
        cutoff = self._now() - timedelta(days=analysis.days_back)

        messages = await self._retry.execute(
            lambda: source.fetch_recent_messages(analysis.email_count, cutoff),
            breaker_key=MAIL_SOURCE_BREAKER,
        )
        return await self.analyze(messages, current_user_email, analysis)

    def cancel(self) -> bool:
        """Stop the running analysis after the items already in flight.

        Returns:
            True if a run was cancelled
        """
        cancelled = sum(self._batch.cancel(run_id) for run_id in list(self._active_runs))
        return cancelled > 0

    def _context_window(
        self, messages: list[RawMessage], current_user_email: str
    ) -> tuple[ThreadMessage, ...]:
        """Most recent messages, normalized, searched during reconstruction."""
        size = self._config.heuristics.context_window_size
        recent = sort_chronologically(messages)[-size:]
        return tuple(to_thread_message(m, current_user_email) for m in recent)

    # -----------------------------------------------------------------
    # Snooze / dismiss
    # -----------------------------------------------------------------

    def snooze(self, candidate_id: str, until: datetime) -> None:
        """Hide a candidate until the given time.

        Raises:
            SnoozeError: If until is not in the future
        """
        if until.tzinfo is None:
            until = until.replace(tzinfo=UTC)
        if until <= self._now():
            raise SnoozeError(
                f"Cannot snooze {candidate_id} until {until.isoformat()}: time is in the past",
                candidate_id=candidate_id,
                until=until,
            )
        self._state.snooze(candidate_id, until)
        self._invalidate_for(candidate_id)
        logger.info("candidate_snoozed", candidate_id=candidate_id, until=until.isoformat())

    def snooze_for(self, candidate_id: str, minutes: int) -> datetime:
        """Hide a candidate for a number of minutes. Returns the snooze end."""
        until = self._now() + timedelta(minutes=minutes)
        self.snooze(candidate_id, until)
        return until

    def unsnooze(self, candidate_id: str) -> bool:
        removed = self._state.unsnooze(candidate_id)
        if removed:
            self._invalidate_for(candidate_id)
            logger.info("candidate_unsnoozed", candidate_id=candidate_id)
        return removed

    def dismiss(self, candidate_id: str) -> None:
        """Hide a candidate permanently (unless show_dismissed_emails is set)."""
        self._state.dismiss(candidate_id)
        self._invalidate_for(candidate_id)
        logger.info("candidate_dismissed", candidate_id=candidate_id)

    def bulk_snooze(self, candidate_ids: Iterable[str], minutes: int) -> int:
        until = self._now() + timedelta(minutes=minutes)
        count = 0
        for candidate_id in candidate_ids:
            self.snooze(candidate_id, until)
            count += 1
        return count

    def bulk_dismiss(self, candidate_ids: Iterable[str]) -> int:
        count = 0
        for candidate_id in candidate_ids:
            self.dismiss(candidate_id)
            count += 1
        return count

    def _invalidate_for(self, candidate_id: str) -> None:
        self._cache.bulk_invalidate(regex.escape(candidate_id))

    # -----------------------------------------------------------------
    # Introspection
    # -----------------------------------------------------------------

    def get_cache_stats(self) -> CacheStats:
        return self._cache.get_stats()

    def clear_cache(self, pattern: str | None = None) -> int:
        """Remove cached entries (all of them, or those whose key matches pattern)."""
        removed = self._cache.clear() if pattern is None else self._cache.bulk_invalidate(pattern)
        logger.info("cache_cleared", pattern=pattern, removed=removed)
        return removed

    def retry_stats(self) -> RetryStats:
        return self._retry.stats()

    def breaker_states(self) -> dict[str, CircuitBreakerSnapshot]:
        return self._retry.breaker_states()
