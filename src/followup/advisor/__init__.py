"""LLM advisor backed by Claude."""

from followup.advisor.claude_advisor import ClaudeAdvisor

__all__ = ["ClaudeAdvisor"]
