"""Claude-backed implementation of the follow-up advisor.

Each operation forces one tool call and validates its input. Anthropic SDK
errors are translated into the engine's error taxonomy so the resilience
layer can decide what to retry:
- RateLimitError, APIConnectionError (incl. timeouts), 5xx -> TransientResourceError
- Other status errors (400, 401, 403, 404, ...) -> PermanentError
- A response without a usable tool call -> AdvisorError

The SDK's own retries should be disabled (max_retries=0) because the
engine's retry executor already wraps every call.

Usage:
    import anthropic
    from followup.advisor.claude_advisor import ClaudeAdvisor

    client = anthropic.AsyncAnthropic(max_retries=0)
    advisor = ClaudeAdvisor(client, config.advisor)
    sentiment = await advisor.classify_sentiment(body)
"""

from __future__ import annotations

from typing import Any

import anthropic

from followup.advisor.prompts import (
    SENTIMENT_TOOL,
    SUGGEST_TOOL,
    SUMMARIZE_TOOL,
    SYSTEM_PROMPT,
    build_user_message,
)
from followup.config_schema import AdvisorConfig
from followup.core.errors import AdvisorError, PermanentError, TransientResourceError
from followup.core.logging import get_logger
from followup.engine.snippet import collapse_whitespace, strip_html
from followup.models import VALID_SENTIMENTS, Sentiment

logger = get_logger(__name__)

# Status codes worth retrying besides 429 and 5xx
RETRYABLE_STATUS_CODES = frozenset({408, 409})


class ClaudeAdvisor:
    """FollowupAdvisor backed by the Anthropic Messages API."""

    def __init__(self, client: anthropic.AsyncAnthropic, config: AdvisorConfig | None = None):
        """Initialize the advisor.

        Args:
            client: Async Anthropic client (SDK retries should be disabled)
            config: Model and token settings
        """
        self._client = client
        self._config = config or AdvisorConfig()

    async def summarize(self, body: str) -> str:
        data = await self._call_tool(
            SUMMARIZE_TOOL,
            body,
            "Summarize what this email is waiting for.",
            operation="summarize",
        )
        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            raise AdvisorError("Summary tool call returned no text", operation="summarize")
        return summary.strip()

    async def suggest_followups(self, body: str) -> list[str]:
        data = await self._call_tool(
            SUGGEST_TOOL,
            body,
            "Suggest follow-up actions for this unanswered email.",
            operation="suggest_followups",
        )
        suggestions = data.get("suggestions")
        if not isinstance(suggestions, list):
            raise AdvisorError(
                "Suggestion tool call did not return a list", operation="suggest_followups"
            )
        return [s.strip() for s in suggestions if isinstance(s, str) and s.strip()]

    async def classify_sentiment(self, body: str) -> Sentiment:
        data = await self._call_tool(
            SENTIMENT_TOOL,
            body,
            "Classify the tone of this email.",
            operation="classify_sentiment",
        )
        sentiment = data.get("sentiment")
        if sentiment not in VALID_SENTIMENTS:
            raise AdvisorError(
                f"Invalid sentiment: {sentiment!r}. Must be one of: "
                f"{', '.join(sorted(VALID_SENTIMENTS))}",
                operation="classify_sentiment",
            )
        return sentiment

    def _prepare_body(self, body: str) -> str:
        text = collapse_whitespace(strip_html(body or ""))
        return text[: self._config.max_body_chars]

    async def _call_tool(
        self,
        tool: dict[str, Any],
        body: str,
        task: str,
        operation: str,
    ) -> dict[str, Any]:
        """Make one forced tool call and return the tool input.

        Raises:
            TransientResourceError: Rate limits, connection problems, 5xx
            PermanentError: Other API status errors
            AdvisorError: No tool call in the response
        """
        try:
            response = await self._client.messages.create(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                system=SYSTEM_PROMPT,
                messages=[
                    {"role": "user", "content": build_user_message(self._prepare_body(body), task)}
                ],
                tools=[tool],
                tool_choice={"type": "tool", "name": tool["name"]},
            )
        except anthropic.RateLimitError as e:
            raise TransientResourceError(
                f"Claude rate limit during {operation}: {e}", status_code=429
            ) from e
        except anthropic.APIConnectionError as e:
            raise TransientResourceError(f"Claude connection error during {operation}: {e}") from e
        except anthropic.APIStatusError as e:
            if e.status_code >= 500 or e.status_code in RETRYABLE_STATUS_CODES:
                raise TransientResourceError(
                    f"Claude API error {e.status_code} during {operation}: {e.message}",
                    status_code=e.status_code,
                ) from e
            raise PermanentError(
                f"Claude API error {e.status_code} during {operation}: {e.message}",
                status_code=e.status_code,
            ) from e

        tool_input = _extract_tool_call(response, tool["name"])
        if tool_input is None:
            logger.warning("advisor_no_tool_call", operation=operation, model=self._config.model)
            raise AdvisorError(
                f"No {tool['name']} tool call in response (unexpected with forced tool_choice)",
                operation=operation,
            )
        return tool_input


def _extract_tool_call(response: anthropic.types.Message, name: str) -> dict[str, Any] | None:
    """Extract the named tool call's input from an API response.

    Args:
        response: Anthropic API response
        name: Tool name to look for

    Returns:
        Tool call input dict, or None if no such tool call was made
    """
    for block in response.content:
        if block.type == "tool_use" and block.name == name:
            return block.input
    return None
