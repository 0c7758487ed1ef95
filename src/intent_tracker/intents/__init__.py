"""
Intent domain logic: lifecycle, scoring, completion, labels and merge rules.

The ``engine`` module is imported directly (``intent_tracker.intents.engine``)
since it depends on the scheduler services.
"""

from .state_machine import (
    OPEN_STATUSES,
    InvalidTransitionError,
    auto_transition,
    can_transition,
    get_final_intent,
    get_merge_chain,
    transition_intent,
)
from .scoring import MatchBreakdown, create_embedding, score_breakdown, score_match
from .completion import CompletionResult, detect_completion
from .merge_validation import MergeValidation, validate_merge, validate_merged_intent

__all__ = [
    "OPEN_STATUSES",
    "InvalidTransitionError",
    "auto_transition",
    "can_transition",
    "get_final_intent",
    "get_merge_chain",
    "transition_intent",
    "MatchBreakdown",
    "create_embedding",
    "score_breakdown",
    "score_match",
    "CompletionResult",
    "detect_completion",
    "MergeValidation",
    "validate_merge",
    "validate_merged_intent",
]
