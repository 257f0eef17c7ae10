"""Structured contracts passed between the agent's components.

- Utterance / Intent: what the user said and how it was interpreted
- QuerySpec / InsightMetadata: bounded record requests and discovered schema
- DispatchOutcome / ErrorSummary: what the capability call produced
- Turn / SessionStats: conversation memory
- ChatResponse: what callers receive
"""

from orgchat.agents.contracts import (
    # Enums
    IntentSource,
    Operation,
    # Interpretation
    FilterPredicate,
    Intent,
    LLMIntentPayload,
    Utterance,
    # Schema
    InsightMetadata,
    QuerySpec,
    QuerySuggestion,
    # Dispatch
    DispatchOutcome,
    ErrorSummary,
    # Memory
    SessionStats,
    Turn,
    # API
    ChatResponse,
)

__all__ = [
    "IntentSource",
    "Operation",
    "FilterPredicate",
    "Intent",
    "LLMIntentPayload",
    "Utterance",
    "InsightMetadata",
    "QuerySpec",
    "QuerySuggestion",
    "DispatchOutcome",
    "ErrorSummary",
    "SessionStats",
    "Turn",
    "ChatResponse",
]
