"""Follow-up detection engines.

This package provides the detection pipeline:
- Thread utilities and body normalization
- Thread reconstruction for conversations without a usable id
- Conversation resolver deciding whether a thread needs a follow-up
- Analyzer running the resolver over a window of messages
"""

from followup.engine.analyzer import AnalysisSummary, FollowupAnalyzer
from followup.engine.reconstruction import ReconstructionResult, ThreadReconstructor
from followup.engine.resolver import ConversationResolver, Evaluation, ResolutionContext
from followup.engine.snippet import BodyNormalizer, generate_summary, normalize_body
from followup.engine.state import FollowupState
from followup.engine.thread_utils import (
    dedupe_messages,
    normalize_subject,
    sort_chronologically,
)

__all__ = [
    # Analyzer
    "AnalysisSummary",
    "FollowupAnalyzer",
    # Resolver
    "ConversationResolver",
    "Evaluation",
    "ResolutionContext",
    "FollowupState",
    # Reconstruction
    "ReconstructionResult",
    "ThreadReconstructor",
    # Normalization
    "BodyNormalizer",
    "generate_summary",
    "normalize_body",
    # Thread utilities
    "dedupe_messages",
    "normalize_subject",
    "sort_chronologically",
]
