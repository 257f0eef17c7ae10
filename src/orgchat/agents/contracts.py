"""Pydantic schemas for the conversational agent.

This module defines the structured contracts passed between the agent's
components. Every component returns or consumes one of these models.

Contracts:
- Utterance / Intent: what the user said and how it was interpreted
- QuerySpec: bounded, schema-validated record request
- InsightMetadata: discovered schema summary for one object
- DispatchOutcome: what the single capability call produced
- Turn / SessionStats: conversation memory
- ChatResponse: what callers of ``process_message`` receive
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


FilterValue = str | int | float | bool | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class Operation(str, Enum):
    """Operations an utterance can resolve to."""

    INSPECT_SCHEMA = "inspect-schema"  # "What fields does Account have?"
    LIST_RECORDS = "list-records"  # "Show me recent opportunities"
    AGGREGATE = "aggregate"  # "How many open deals by stage?"
    RECALL_MEMORY = "recall-memory"  # "What did we just discuss?"
    SMALLTALK = "smalltalk"  # "Hi! What can you help me with?"

    @property
    def needs_data(self) -> bool:
        """Whether the operation requires a capability call."""
        return self not in (Operation.RECALL_MEMORY, Operation.SMALLTALK)


class IntentSource(str, Enum):
    """Where an intent classification came from."""

    RULE = "rule"
    LLM = "llm"
    FALLBACK = "fallback"


# =============================================================================
# Utterance / Intent
# =============================================================================

class Utterance(BaseModel):
    """Raw user text. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="Raw user text")
    user_id: str = Field(..., description="User identifier")
    timestamp: datetime = Field(default_factory=_utc_now)


class FilterPredicate(BaseModel):
    """A single ``field operator value`` predicate."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1, description="Field API name")
    operator: str = Field(..., min_length=1, description="Comparison operator: =, !=, >, >=, <, <=, LIKE, IN")
    value: FilterValue = Field(None, description="Comparison value")

    def as_where(self) -> dict[str, Any]:
        """Render in the capability service's where-clause shape."""
        return {"field": self.field, "op": self.operator, "value": self.value}


class Intent(BaseModel):
    """Structured interpretation of one utterance."""

    model_config = ConfigDict(frozen=True)

    operation: Operation = Field(..., description="Resolved operation")
    target_object: str = Field(..., min_length=1, description="Object the request is about")
    filters: tuple[FilterPredicate, ...] = Field(default=(), description="Extracted filters, in order")
    limit: int | None = Field(None, description="Requested record count, if any")
    fields: tuple[str, ...] = Field(default=(), description="Fields the user named explicitly")
    group_by: str | None = Field(None, description="Grouping term for aggregates (e.g. 'stage')")
    query_text: str = Field("", description="Normalized utterance text")
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    low_confidence: bool = Field(False, description="True when resolution degraded")
    source: IntentSource = Field(IntentSource.RULE)
    rationale: str = Field("", max_length=300)

    @field_validator("limit")
    @classmethod
    def validate_limit(cls, v: int | None) -> int | None:
        """Reject non-positive limits; the synthesizer clamps the upper bound."""
        if v is not None and v < 1:
            raise ValueError("limit must be a positive integer")
        return v


class LLMIntentPayload(BaseModel):
    """JSON contract expected from the language-model classifier."""

    operation: Operation
    target_object: str | None = None
    filters: list[FilterPredicate] = Field(default_factory=list)
    limit: int | None = Field(None, ge=1)
    group_by: str | None = None
    confidence: float = Field(0.7, ge=0.0, le=1.0)
    rationale: str = Field("Classified by language model", max_length=300)


# =============================================================================
# Schema metadata / QuerySpec
# =============================================================================

class QuerySuggestion(BaseModel):
    """A suggested query shape discovered for an object."""

    model_config = ConfigDict(frozen=True)

    title: str
    description: str = ""
    fields: tuple[str, ...] = ()
    where: tuple[FilterPredicate, ...] = ()
    order_by: str | None = None
    limit: int | None = None


class InsightMetadata(BaseModel):
    """Summary of an object's discovered schema."""

    model_config = ConfigDict(frozen=True)

    object_name: str
    field_count: int = 0
    record_types: tuple[str, ...] = ()
    default_fields: tuple[str, ...] = ()
    top_fields: tuple[str, ...] = ()
    suggestions: tuple[QuerySuggestion, ...] = ()


class QuerySpec(BaseModel):
    """Bounded, schema-validated description of a record request."""

    model_config = ConfigDict(frozen=True)

    object: str = Field(..., min_length=1)
    fields: tuple[str, ...] = Field(..., min_length=1)
    filters: tuple[FilterPredicate, ...] = ()
    limit: int = Field(..., ge=1)
    order_by: str | None = None
    group_by: str | None = Field(None, description="Field aggregates are grouped by (not sent to the service)")
    suggestion: str | None = Field(None, description="Title of the insight suggestion used")
    warnings: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        """Render as the capability service's safe-query payload."""
        payload: dict[str, Any] = {
            "object": self.object,
            "fields": list(self.fields),
            "where": [f.as_where() for f in self.filters],
            "limit": self.limit,
            "flatten": True,
        }
        if self.order_by:
            payload["orderBy"] = self.order_by
        return payload


# =============================================================================
# Dispatch
# =============================================================================

class ErrorSummary(BaseModel):
    """Diagnostic record of a failure inside a turn."""

    model_config = ConfigDict(frozen=True)

    type: str
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class DispatchOutcome(BaseModel):
    """Result of dispatching one turn."""

    function_called: str | None = None
    function_result: dict[str, Any] | None = None
    error: ErrorSummary | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def record_count(self) -> int:
        if not self.function_result:
            return 0
        return int(self.function_result.get("recordCount", 0) or 0)


# =============================================================================
# Memory
# =============================================================================

class Turn(BaseModel):
    """One request/response exchange. Append-only."""

    model_config = ConfigDict(frozen=True)

    turn_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    utterance: Utterance
    intent: Intent
    function_called: str | None = None
    function_result: dict[str, Any] | None = None
    error: ErrorSummary | None = None
    reply: str
    warnings: tuple[str, ...] = ()
    timestamp: datetime = Field(default_factory=_utc_now)
    duration_ms: float = Field(0.0, ge=0.0)


class SessionStats(BaseModel):
    """Conversation statistics; zero-valued for unknown users."""

    user_id: str
    message_count: int = 0
    duration_ms: float = 0.0
    started_at: datetime | None = None


# =============================================================================
# API
# =============================================================================

class ChatResponse(BaseModel):
    """What callers of ``ChatAgent.process_message`` receive."""

    response: str = Field(..., min_length=1)
    function_called: str | None = None
    function_result: dict[str, Any] | None = None
    error: str | None = Field(None, description="Error code when the turn failed")
    warnings: list[str] = Field(default_factory=list)
    low_confidence: bool = False
