"""Custom exception types for the follow-up detection engine.

Error messages state what failed, where it failed, and how to fix it when the
caller can do something about it.

The resilience layer classifies errors by kind first:
- TransientResourceError is retried per policy
- PermanentError is surfaced immediately and never retried
- CircuitOpenError bypasses retries entirely
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class FollowupError(Exception):
    """Base exception for all follow-up engine errors."""

    pass


class ConfigValidationError(FollowupError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(FollowupError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class TransientResourceError(FollowupError):
    """Raised for failures that may succeed on retry (network, timeout, 5xx, 429).

    Attributes:
        status_code: HTTP-like status code from the upstream, if known
        should_circuit_break: If True, the circuit breaker for the call's key
            opens immediately instead of waiting for the failure threshold
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        should_circuit_break: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.should_circuit_break = should_circuit_break


class PermanentError(FollowupError):
    """Raised for failures that will not succeed on retry (4xx other than 429).

    Attributes:
        status_code: HTTP-like status code from the upstream, if known
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MessageParseError(PermanentError):
    """Raised when a raw mail item cannot be mapped to a RawMessage.

    Attributes:
        item_id: Identifier of the malformed item, if one could be read
        field: The field that was missing or invalid
    """

    def __init__(self, message: str, item_id: str | None = None, field: str | None = None):
        super().__init__(message)
        self.item_id = item_id
        self.field = field


class CircuitOpenError(FollowupError):
    """Raised when a call is rejected because its circuit breaker is OPEN.

    Attributes:
        key: Resource key of the open breaker (e.g. "llm-api")
        next_attempt_at: Monotonic clock value after which a trial call is allowed
    """

    def __init__(self, key: str, next_attempt_at: float | None = None):
        super().__init__(
            f"Circuit breaker '{key}' is open; calls are rejected until the "
            "recovery timeout elapses"
        )
        self.key = key
        self.next_attempt_at = next_attempt_at


class CacheIntegrityError(FollowupError):
    """Raised internally when a cached value no longer matches its stored hash.

    The cache engine converts this to a miss; it never reaches callers.

    Attributes:
        key: Cache key whose entry failed the check
    """

    def __init__(self, key: str):
        super().__init__(f"Cached value for '{key}' was modified after it was stored")
        self.key = key


class ThreadOrderError(FollowupError):
    """Raised when a resolved thread is not in chronological order.

    Attributes:
        conversation_key: Key of the conversation being resolved
        position: Index of the first message that is older than its predecessor
    """

    def __init__(self, message: str, conversation_key: str | None = None, position: int = 0):
        super().__init__(message)
        self.conversation_key = conversation_key
        self.position = position


class BatchItemError(FollowupError):
    """Failure of a single item inside a batch run.

    Collected in BatchResult.errors; never aborts sibling items.

    Attributes:
        batch_index: Index of the batch that contained the item
        item_index: Position of the item in the original input
        item: The input item that failed
        cause: The underlying exception
    """

    def __init__(self, batch_index: int, item_index: int, item: Any, cause: BaseException):
        super().__init__(f"Batch {batch_index} item {item_index} failed: {cause}")
        self.batch_index = batch_index
        self.item_index = item_index
        self.item = item
        self.cause = cause


class AdvisorError(FollowupError):
    """Raised when the LLM advisor returns output that cannot be used.

    Attributes:
        operation: Advisor operation that failed (summarize, suggest, sentiment)
    """

    def __init__(self, message: str, operation: str):
        super().__init__(message)
        self.operation = operation


class SnoozeError(FollowupError):
    """Raised when a snooze request is invalid (e.g. a time in the past).

    Attributes:
        candidate_id: Candidate the request targeted
        until: Requested snooze end
    """

    def __init__(self, message: str, candidate_id: str, until: datetime | None = None):
        super().__init__(message)
        self.candidate_id = candidate_id
        self.until = until
