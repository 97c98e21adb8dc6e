"""Tests for thread utilities.

Tests subject and address normalization, chronological ordering,
deduplication and participant extraction.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import pytest

from followup.engine.thread_utils import (
    dedupe_messages,
    is_from_user,
    latest_message,
    message_identity,
    normalize_address,
    normalize_subject,
    participants,
    sort_chronologically,
    to_thread_message,
)
from followup.models import RawMessage

MessageFactory = Callable[..., RawMessage]


# =============================================================================
# Test normalize_subject
# =============================================================================


class TestNormalizeSubject:
    """Tests for subject normalization."""

    def test_removes_re_prefix(self) -> None:
        """Test removal of Re: prefix."""
        assert normalize_subject("Re: Project Update") == "project update"
        assert normalize_subject("RE: Project Update") == "project update"

    def test_removes_fwd_prefix(self) -> None:
        """Test removal of Fwd:/FW: prefixes."""
        assert normalize_subject("Fwd: Project Update") == "project update"
        assert normalize_subject("FW: Project Update") == "project update"

    def test_removes_chained_prefixes(self) -> None:
        """Test removal of multiple prefixes."""
        assert normalize_subject("Re: Fwd: Re: Topic") == "topic"
        assert normalize_subject("RE: FW: RE: Topic") == "topic"

    def test_removes_counted_prefixes(self) -> None:
        assert normalize_subject("RE[2]: Budget") == "budget"
        assert normalize_subject("Re(3): Budget") == "budget"

    @pytest.mark.parametrize(
        "subject",
        ["AW: WG: Termin", "SV: Termin", "TR: Termin", "Antw: Termin", "RIF: Termin", "Odp: Termin"],
    )
    def test_removes_localized_prefixes(self, subject: str) -> None:
        assert normalize_subject(subject) == "termin"

    def test_removes_cjk_prefix_with_fullwidth_colon(self) -> None:
        assert normalize_subject("回复：季度报告") == "季度报告"

    def test_keeps_words_that_start_like_prefixes(self) -> None:
        assert normalize_subject("Research: notes") == "research: notes"
        assert normalize_subject("Reply needed") == "reply needed"

    def test_collapses_whitespace(self) -> None:
        assert normalize_subject("  Budget    Q3  ") == "budget q3"

    def test_handles_empty_subject(self) -> None:
        assert normalize_subject("") == ""
        assert normalize_subject(None) == ""
        assert normalize_subject("Re: ") == ""


# =============================================================================
# Test addresses
# =============================================================================


class TestAddresses:
    """Tests for address helpers."""

    def test_normalize_address(self) -> None:
        assert normalize_address("  Me@Example.COM ") == "me@example.com"
        assert normalize_address(None) == ""

    def test_is_from_user_is_case_insensitive(self) -> None:
        assert is_from_user("Me@Example.com", "me@example.com")
        assert not is_from_user("other@example.com", "me@example.com")
        assert not is_from_user("me@example.com", "")

    def test_participants(self, message_factory: MessageFactory) -> None:
        message = message_factory(
            "m1",
            sender="Me@Example.com",
            to=("Alice@Example.com",),
            cc=("bob@example.com",),
        )

        assert participants(message) == {"me@example.com", "alice@example.com"}
        assert participants(message, include_cc=True) == {
            "me@example.com",
            "alice@example.com",
            "bob@example.com",
        }


# =============================================================================
# Test ordering
# =============================================================================


class TestOrdering:
    """Tests for chronological helpers."""

    def test_to_thread_message_flags_owner(self, message_factory: MessageFactory) -> None:
        mine = to_thread_message(message_factory("m1", sender="ME@example.com"), "me@example.com")
        theirs = to_thread_message(
            message_factory("m2", sender="alice@example.com"), "me@example.com"
        )

        assert mine.is_from_current_user
        assert not theirs.is_from_current_user

    def test_sort_uses_received_date_when_present(self, message_factory: MessageFactory) -> None:
        early = message_factory("a", days_ago=3)
        late_sent_early_received = message_factory(
            "b",
            days_ago=1,
            received_date=early.sent_date - timedelta(hours=1),
        )

        ordered = sort_chronologically([early, late_sent_early_received])

        assert [m.id for m in ordered] == ["b", "a"]

    def test_latest_message(self, message_factory: MessageFactory, owner: str) -> None:
        messages = [
            to_thread_message(message_factory(str(i), days_ago=days), owner)
            for i, days in enumerate([3, 1, 2])
        ]

        latest = latest_message(messages)
        assert latest is not None
        assert latest.id == "1"
        assert latest_message([]) is None


# =============================================================================
# Test deduplication
# =============================================================================


class TestDedupe:
    """Tests for message identity and deduplication."""

    def test_identity_is_id_when_present(self, message_factory: MessageFactory) -> None:
        assert message_identity(message_factory("abc")) == "abc"

    def test_identity_without_id(self, message_factory: MessageFactory) -> None:
        message = message_factory("", sender="Me@Example.com", subject="RE: Budget")

        assert message_identity(message) == (
            f"me@example.com|{message.sent_date.isoformat()}|budget"
        )

    def test_dedupe_keeps_first_copy(self, message_factory: MessageFactory) -> None:
        first = message_factory("m1", body="first")
        duplicate = message_factory("m1", body="copy")
        other = message_factory("m2")

        unique = dedupe_messages([first, duplicate, other])

        assert unique == [first, other]
