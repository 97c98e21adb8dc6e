"""Collaborator interfaces and the bundled mail source."""

from followup.sources.base import FollowupAdvisor, MailSource
from followup.sources.json_source import JsonMailSource, load_messages

__all__ = [
    "FollowupAdvisor",
    "JsonMailSource",
    "MailSource",
    "load_messages",
]
