"""Mail source backed by a JSON export of a mailbox.

The file holds a list of message objects, or a Graph-style page
({"value": [...]}). Each object is parsed with parse_graph_message();
malformed items are skipped with a warning so one bad record does not hide
the rest of the mailbox.

Usage:
    from followup.sources.json_source import JsonMailSource

    source = JsonMailSource(Path("export/messages.json"))
    recent = await source.fetch_recent_messages(100, cutoff)
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from followup.core.errors import MessageParseError, PermanentError
from followup.core.logging import get_logger
from followup.engine.thread_utils import effective_timestamp
from followup.models import RawMessage, parse_graph_message

logger = get_logger(__name__)


def load_messages(path: Path) -> list[RawMessage]:
    """Read and parse every message in a JSON export.

    Args:
        path: Export file

    Returns:
        Parsed messages in file order

    Raises:
        PermanentError: If the file is missing or is not valid JSON of the expected shape
    """
    try:
        with open(path, encoding="utf-8") as f:
            data: Any = json.load(f)
    except FileNotFoundError as e:
        raise PermanentError(f"Message export not found: {path}") from e
    except json.JSONDecodeError as e:
        raise PermanentError(f"Message export {path} is not valid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("value")
    if not isinstance(data, list):
        raise PermanentError(
            f"Message export {path} must be a list of messages or an object with a 'value' list"
        )

    messages: list[RawMessage] = []
    skipped = 0
    for item in data:
        try:
            messages.append(parse_graph_message(item))
        except MessageParseError as e:
            skipped += 1
            logger.warning("message_parse_failed", item_id=e.item_id, field=e.field, error=str(e))

    logger.info("message_export_loaded", path=str(path), messages=len(messages), skipped=skipped)
    return messages


class JsonMailSource:
    """MailSource over an in-memory list loaded from a JSON export."""

    def __init__(self, path: Path | None = None, messages: list[RawMessage] | None = None):
        """Initialize the source.

        Args:
            path: JSON export to load
            messages: Pre-parsed messages (used instead of path)
        """
        if messages is None:
            if path is None:
                raise ValueError("JsonMailSource needs a path or a list of messages")
            messages = load_messages(path)
        self._path = path
        self._set_messages(messages)

    @property
    def messages(self) -> list[RawMessage]:
        return list(self._messages)

    def reload(self) -> int:
        """Re-read the export file. Returns the number of messages loaded.

        Raises:
            PermanentError: If the source has no path, or the file cannot be read
        """
        if self._path is None:
            raise PermanentError("JsonMailSource was built from a message list and cannot reload")
        self._set_messages(load_messages(self._path))
        return len(self._messages)

    def _set_messages(self, messages: list[RawMessage]) -> None:
        self._messages = messages
        self._by_id = {m.id: m for m in messages}

    async def fetch_recent_messages(self, count: int, cutoff_date: datetime) -> list[RawMessage]:
        recent = [m for m in self._messages if m.sent_date >= cutoff_date]
        recent.sort(key=effective_timestamp, reverse=True)
        return recent[:count]

    async def fetch_conversation(self, conversation_id: str) -> list[RawMessage]:
        return [m for m in self._messages if m.conversation_id == conversation_id]

    async def fetch_single_item(self, item_id: str) -> RawMessage | None:
        return self._by_id.get(item_id)
