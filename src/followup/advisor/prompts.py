"""System prompts and tool definitions for the Claude advisor.

Every advisor call forces a single tool call so the response is structured
and can be validated before the engine uses it.
"""

from __future__ import annotations

from typing import Any

SYSTEM_PROMPT = """You help a busy professional keep track of emails they sent \
that have not been answered yet. You are given the body of one email the user \
sent. Answer only through the tool you are asked to call. Be concise and \
factual; never invent details that are not in the email."""

SUMMARIZE_TOOL: dict[str, Any] = {
    "name": "record_summary",
    "description": "Record a one or two sentence summary of what the email asks for",
    "input_schema": {
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "What the sender is waiting for, in at most two sentences",
            },
        },
        "required": ["summary"],
    },
}

SUGGEST_TOOL: dict[str, Any] = {
    "name": "record_suggestions",
    "description": "Record short, polite follow-up actions the sender could take",
    "input_schema": {
        "type": "object",
        "properties": {
            "suggestions": {
                "type": "array",
                "items": {"type": "string"},
                "minItems": 1,
                "maxItems": 3,
                "description": "Follow-up actions or one-line nudges, most useful first",
            },
        },
        "required": ["suggestions"],
    },
}

SENTIMENT_TOOL: dict[str, Any] = {
    "name": "record_sentiment",
    "description": "Record the overall tone of the email",
    "input_schema": {
        "type": "object",
        "properties": {
            "sentiment": {
                "type": "string",
                "enum": ["positive", "neutral", "negative", "urgent"],
                "description": (
                    "urgent: explicit deadline pressure or escalation; "
                    "negative: complaints, problems, frustration; "
                    "positive: thanks, praise; neutral: everything else"
                ),
            },
        },
        "required": ["sentiment"],
    },
}


def build_user_message(body: str, task: str) -> str:
    """User message for one advisor call.

    Args:
        body: Plain-text email body (already truncated)
        task: One sentence describing what to produce

    Returns:
        Message text
    """
    return f"{task}\n\n<email>\n{body}\n</email>"
