"""Email body normalization for thread matching and summaries.

Two consumers:
- Thread reconstruction compares bodies by substring containment, so every
  body goes through the same normalization: strip HTML, drop quote markers
  and quoted-reply headers, drop signature blocks, collapse whitespace,
  lowercase. A reply that quotes a message then contains that message's
  normalized text.
- Candidate summaries need a short plain-text preview.

All regex operations use the `regex` library with a timeout on match
operations so that hostile mail content cannot stall an analysis run.

Usage:
    from followup.engine.snippet import generate_summary, normalize_body

    key = normalize_body(message.body)
    preview = generate_summary(message.body, message.subject)
"""

from __future__ import annotations

import html

import regex

from followup.core.logging import get_logger

logger = get_logger(__name__)

# Regex timeout in seconds (all operations MUST use this)
REGEX_TIMEOUT = 1.0

SUMMARY_MAX_LENGTH = 150


# =============================================================================
# Compiled Regex Patterns
# Note: timeout is passed at match time (search, sub, etc.), not compile time
# =============================================================================

HTML_BLOCK_TAG_PATTERN = regex.compile(
    r"<\s*(?:br|/p|/div|/li|/tr|/h[1-6]|hr)\b[^>]*>",
    regex.IGNORECASE,
)
HTML_DROP_BLOCK_PATTERN = regex.compile(
    r"<\s*(style|script|head)\b[^>]*>.*?<\s*/\s*\1\s*>",
    regex.IGNORECASE | regex.DOTALL,
)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")

# Leading ">" quote markers, possibly nested ("> > text")
QUOTE_MARKER_PATTERN = regex.compile(r"^\s*(?:>\s?)+")

# Lines that introduce quoted content rather than carry it
QUOTE_HEADER_PATTERNS = [
    regex.compile(r"^\s*(?:From|Sent|To|Cc|Bcc|Subject|Date)\s*:", regex.IGNORECASE),
    regex.compile(r"^\s*On\s.+\swrote:\s*$", regex.IGNORECASE),
    regex.compile(
        r"^\s*-{2,}\s*(?:Original|Forwarded)\s+Message\s*-{2,}",
        regex.IGNORECASE,
    ),
]

# Lines that start a signature block; the block runs to the next blank line
SIGNATURE_START_PATTERN = regex.compile(r"^\s*(?:--|_{5,})\s*$")

# Single-line signatures
SIGNATURE_LINE_PATTERNS = [
    regex.compile(
        r"^\s*Sent from my (?:iPhone|iPad|Android|Galaxy|Pixel|mobile)\b.*$",
        regex.IGNORECASE,
    ),
    regex.compile(r"^\s*Get Outlook for (?:iOS|Android)\b.*$", regex.IGNORECASE),
]

WHITESPACE_PATTERN = regex.compile(r"\s+")


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> tuple[str, bool]:
    """Safely perform regex substitution with timeout.

    Args:
        pattern: Compiled regex pattern
        repl: Replacement string
        text: Text to process

    Returns:
        Tuple of (result_text, was_modified)
    """
    try:
        result = pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
        return result, result != text
    except TimeoutError:
        logger.warning("regex_timeout", pattern=pattern.pattern[:50])
        return text, False


def _safe_search(pattern: regex.Pattern, text: str) -> bool:
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT) is not None
    except TimeoutError:
        logger.warning("regex_timeout", pattern=pattern.pattern[:50])
        return False


def looks_like_html(text: str) -> bool:
    return _safe_search(HTML_TAG_PATTERN, text)


def strip_html(text: str) -> str:
    """Convert HTML to plain text, keeping line breaks at block boundaries.

    Args:
        text: HTML or plain text

    Returns:
        Text with tags removed and entities decoded
    """
    if not text:
        return ""
    cleaned, _ = _safe_sub(HTML_DROP_BLOCK_PATTERN, " ", text)
    cleaned, _ = _safe_sub(HTML_BLOCK_TAG_PATTERN, "\n", cleaned)
    cleaned, _ = _safe_sub(HTML_TAG_PATTERN, " ", cleaned)
    # Decode HTML entities (&amp; -> &, &nbsp; -> non-breaking space, etc.)
    return html.unescape(cleaned)


def collapse_whitespace(text: str) -> str:
    collapsed, _ = _safe_sub(WHITESPACE_PATTERN, " ", text)
    return collapsed.strip()


class BodyNormalizer:
    """Normalizes bodies so that a quoting reply contains what it quotes.

    Pipeline:
    1. Strip HTML tags, decode entities (if the body looks like HTML)
    2. Remove leading quote markers from each line
    3. Drop quoted-reply header lines (From:, Sent:, "On ... wrote:", ...)
    4. Drop signature blocks and single-line device signatures
    5. Collapse whitespace and lowercase

    Every step works line by line on text whose quote markers are already
    gone, so quoted copies of a message normalize exactly like the original.
    """

    def normalize(self, text: str | None) -> str:
        """Run the full pipeline.

        Args:
            text: Raw body (HTML or plain text); None is treated as empty

        Returns:
            Normalized single-line lowercase text
        """
        if not text:
            return ""

        current = strip_html(text) if looks_like_html(text) else text
        lines = current.splitlines()
        lines = self._step_remove_quote_markers(lines)
        lines = self._step_remove_quote_headers(lines)
        lines = self._step_remove_signatures(lines)
        return collapse_whitespace(" ".join(lines)).lower()

    def _step_remove_quote_markers(self, lines: list[str]) -> list[str]:
        return [_safe_sub(QUOTE_MARKER_PATTERN, "", line)[0] for line in lines]

    def _step_remove_quote_headers(self, lines: list[str]) -> list[str]:
        return [
            line
            for line in lines
            if not any(_safe_search(pattern, line) for pattern in QUOTE_HEADER_PATTERNS)
        ]

    def _step_remove_signatures(self, lines: list[str]) -> list[str]:
        kept: list[str] = []
        in_signature = False
        for line in lines:
            if in_signature:
                if not line.strip():
                    in_signature = False
                continue
            if _safe_search(SIGNATURE_START_PATTERN, line):
                in_signature = True
                continue
            if any(_safe_search(pattern, line) for pattern in SIGNATURE_LINE_PATTERNS):
                continue
            kept.append(line)
        return kept


_default_normalizer = BodyNormalizer()


def normalize_body(text: str | None) -> str:
    """Convenience function to normalize a body for containment matching."""
    return _default_normalizer.normalize(text)


def generate_summary(body: str | None, subject: str = "", max_length: int = SUMMARY_MAX_LENGTH) -> str:
    """Short plain-text preview of a body.

    Args:
        body: Raw body (HTML or plain text)
        subject: Used when the body has no text
        max_length: Characters kept before "..." is appended

    Returns:
        Preview text
    """
    text = collapse_whitespace(strip_html(body or ""))
    if not text:
        return f"Email about: {subject}" if subject else "No content"
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text
