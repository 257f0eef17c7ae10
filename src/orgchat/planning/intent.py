"""Intent resolution for chat utterances.

Turns free text into an ``Intent``: an operation plus the parameters the
query synthesizer needs.

Resolution runs in two stages:
1. A deterministic rule table. Each ``OperationRule`` declares the operation it
   produces, a matcher scoring how well the utterance fits, and an extractor
   pulling out filters, limits and grouping. No external call.
2. If no rule scores at least ``rule_confidence_threshold``, the utterance is
   escalated to a language-model classifier that returns the same shape as
   JSON. Malformed output gets one repair attempt.

When escalation is needed but unavailable (disabled, unreachable, missing
credentials, unusable output) the resolver degrades to its best deterministic
guess and marks the intent ``low_confidence``.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError

from orgchat.agents.contracts import (
    FilterPredicate,
    Intent,
    IntentSource,
    LLMIntentPayload,
    Operation,
)
from orgchat.config import AgentConfig
from orgchat.errors import ResolutionDegraded
from orgchat.llm.router import call_llm, parse_json_response


logger = logging.getLogger(__name__)

LLMCaller = Callable[..., str]


# =============================================================================
# Vocabulary
# =============================================================================

GREETING_RE = re.compile(
    r"^\s*(hi|hello|hey|howdy|hiya|yo|greetings|good (morning|afternoon|evening))\b",
    re.IGNORECASE,
)
THANKS_RE = re.compile(r"\b(thanks|thank you|thx|cheers|bye|goodbye|see you)\b", re.IGNORECASE)
HELP_RE = re.compile(
    r"(what can you (do|help)|help me with|who are you|what are you|how does this work|^\s*help\s*[?!.]*$)",
    re.IGNORECASE,
)
RECALL_RE = re.compile(
    r"\b(what (did|have) (we|i) (just )?(discuss(ed)?|talk(ed)? about|ask(ed)?|say|said)"
    r"|what were we (just )?(talking about|discussing)"
    r"|remind me what"
    r"|recap"
    r"|summari[sz]e (our|the|this) (conversation|chat|discussion)"
    r"|(my|the) (previous|last|earlier) (question|answer|request))",
    re.IGNORECASE,
)
SCHEMA_RE = re.compile(
    r"\b(fields?|schema|columns?|describe|structure|metadata|insights?|record ?types?"
    r"|picklists?|custom fields?|what data|what information)\b",
    re.IGNORECASE,
)
TOP_FIELDS_RE = re.compile(
    r"\b(most (used|popular|common|queried)|top fields|frequently used|popular fields)\b",
    re.IGNORECASE,
)
AGGREGATE_RE = re.compile(
    r"\b(how many|count|number of|total|sum|average|avg|mean|win rate|breakdown|broken down"
    r"|pipeline value|statistics|stats|summary of|grouped by)\b",
    re.IGNORECASE,
)
LIST_RE = re.compile(
    r"\b(show|list|find|get|display|give me|pull|fetch|which|what are|see|recent|latest|newest"
    r"|top \d+|first \d+)\b",
    re.IGNORECASE,
)

# Everyday words that refer to a known object.
OBJECT_ALIASES = {
    "deal": "Opportunity",
    "deals": "Opportunity",
    "opp": "Opportunity",
    "opps": "Opportunity",
    "pipeline": "Opportunity",
    "customer": "Account",
    "customers": "Account",
    "company": "Account",
    "companies": "Account",
    "ticket": "Case",
    "tickets": "Case",
    "people": "Contact",
    "prospect": "Lead",
    "prospects": "Lead",
    "salesperson": "User",
    "salespeople": "User",
    "reps": "User",
}

FIELD_TOKEN_RE = re.compile(r"\b([A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)+(?:\.[A-Z]\w*)?|[A-Z]\w*\.[A-Z]\w*|\w+__c)\b")

TOP_N_RE = re.compile(
    r"\b(?:top|first|last|latest|show(?: me)?|list|give me|limit(?: to)?)\s+(\d{1,4})\b"
    r"(?!\s*(?:days?|weeks?|months?|years?|quarters?))",
    re.IGNORECASE,
)
N_RECORDS_RE = re.compile(
    r"\b(\d{1,4})\s+(?:records|rows|results|items|entries|deals|opportunities|accounts|contacts"
    r"|leads|cases|tasks|users)\b",
    re.IGNORECASE,
)
LAST_N_DAYS_RE = re.compile(r"\b(?:last|past|previous)\s+(\d{1,4})\s+days?\b", re.IGNORECASE)
RECENT_RE = re.compile(
    r"\b(?:recent|recently|latest|newest)\b"
    r"|\bnew\s+(?:records|deals|opportunities|opps|accounts|contacts|leads|cases|tasks|customers|tickets)\b",
    re.IGNORECASE,
)
PERIOD_RE = re.compile(r"\b(this|next|last)\s+(week|month|quarter|year)\b", re.IGNORECASE)
CLOSING_RE = re.compile(r"\bclos(e|es|ing)\b", re.IGNORECASE)
AMOUNT_RE = re.compile(
    r"\b(over|above|more than|greater than|at least|under|below|less than|at most)\s+"
    r"(\$)?(\d[\d,]*(?:\.\d+)?)\s*([km])?\b",
    re.IGNORECASE,
)
OWNER_RE = re.compile(
    r"\b(?:owned by|assigned to|belonging to|managed by)\s+"
    r"([A-Z][a-zA-Z'\-]+(?:\s+[A-Z][a-zA-Z'\-]+)?)"
)
POSSESSIVE_OWNER_RE = re.compile(
    r"\b([A-Z][a-zA-Z\-]+)'s\s+(?:deals|opportunities|opps|pipeline|accounts|cases|leads|territory)\b"
)
NAMED_USER_RE = re.compile(
    r"\b(?:[Ss]alesperson|[Ss]ales rep|[Rr]ep|[Uu]ser|named|called)\s+"
    r"([A-Z][a-zA-Z'\-]+(?:\s+[A-Z][a-zA-Z'\-]+)?)"
)
STAGE_RE = re.compile(
    r"\b(?:in|at)\s+(?:the\s+)?['\"]?([A-Z][\w/\-]*(?:\s+[A-Z][\w/\-]*)*)['\"]?\s+stage\b"
    r"|\bstage\s+(?:is\s+|=\s*)?['\"]?([A-Z][\w/\-]*(?:\s+[A-Z][\w/\-]*)*)['\"]?"
)
GROUP_BY_RE = re.compile(
    r"(?<!owned )(?<!assigned )\b(?:by|per|grouped by|broken down by)\s+"
    r"([a-z][\w.]*(?:\s+(?:name|type|source|status|stage))?)",
    re.IGNORECASE,
)

_AMOUNT_OPERATORS = {
    "over": ">",
    "above": ">",
    "more than": ">",
    "greater than": ">",
    "at least": ">=",
    "under": "<",
    "below": "<",
    "less than": "<",
    "at most": "<=",
}

DEFAULT_RECENT_DAYS = 30


def normalize_text(text: str) -> str:
    """Collapse whitespace and strip the utterance."""
    return re.sub(r"\s+", " ", text or "").strip()


def _plural(name: str) -> str:
    lower = name.lower()
    if lower.endswith("y") and lower[-2:-1] not in "aeiou":
        return lower[:-1] + "ies"
    if lower.endswith(("s", "x", "ch", "sh")):
        return lower + "es"
    return lower + "s"


def detect_object(text: str, known_objects: tuple[str, ...]) -> str | None:
    """Find the first known object mentioned in the text.

    Matches API names, plurals and everyday aliases ("deals", "tickets").
    The earliest mention wins.
    """
    lowered = text.lower()
    best: tuple[int, str] | None = None
    for name in known_objects:
        for form in (name.lower(), _plural(name)):
            match = re.search(rf"\b{re.escape(form)}\b", lowered)
            if match and (best is None or match.start() < best[0]):
                best = (match.start(), name)
    for alias, name in OBJECT_ALIASES.items():
        if name not in known_objects:
            continue
        match = re.search(rf"\b{re.escape(alias)}\b", lowered)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), name)
    return best[1] if best else None


def wants_top_fields(text: str) -> bool:
    """Whether a schema question asks for the most-used fields."""
    return bool(TOP_FIELDS_RE.search(text or ""))


# =============================================================================
# Parameter extraction
# =============================================================================

def _is_year(raw: str) -> bool:
    return len(raw) == 4 and 1900 <= int(raw) <= 2099


def extract_limit(text: str) -> int | None:
    """Extract an explicit record count ("top 5", "10 records").

    Four-digit numbers between 1900 and 2099 are read as years, not counts.
    """
    for pattern in (TOP_N_RE, N_RECORDS_RE):
        for match in pattern.finditer(text):
            raw = match.group(1)
            if _is_year(raw):
                continue
            value = int(raw)
            if value >= 1:
                return value
    return None


def _number(raw: str, suffix: str | None) -> int | float:
    value = float(raw.replace(",", ""))
    if suffix:
        value *= 1_000 if suffix.lower() == "k" else 1_000_000
    return int(value) if value.is_integer() else value


def extract_filters(text: str, target_object: str) -> list[FilterPredicate]:
    """Extract filter predicates from an utterance.

    Field names are the platform's standard ones; the synthesizer drops any
    that the target object does not expose.
    """
    filters: list[FilterPredicate] = []
    lowered = text.lower()

    # Time window: explicit period beats "recent"
    period = PERIOD_RE.search(text)
    days = LAST_N_DAYS_RE.search(text)
    if period:
        literal = f"{period.group(1).upper()}_{period.group(2).upper()}"
        field = "CloseDate" if CLOSING_RE.search(text) else "CreatedDate"
        filters.append(FilterPredicate(field=field, operator="=", value=literal))
    elif days:
        filters.append(FilterPredicate(field="CreatedDate", operator="=", value=f"LAST_N_DAYS:{int(days.group(1))}"))
    elif RECENT_RE.search(text):
        filters.append(FilterPredicate(field="CreatedDate", operator="=", value=f"LAST_N_DAYS:{DEFAULT_RECENT_DAYS}"))

    # Open / won / lost
    if re.search(r"\b(closed[ -]won|won)\b", lowered):
        filters.append(FilterPredicate(field="IsWon", operator="=", value=True))
    elif re.search(r"\b(closed[ -]lost|lost)\b", lowered):
        filters.append(FilterPredicate(field="IsClosed", operator="=", value=True))
        filters.append(FilterPredicate(field="IsWon", operator="=", value=False))
    elif re.search(r"\b(open|active|in progress)\b", lowered):
        filters.append(FilterPredicate(field="IsClosed", operator="=", value=False))
    elif re.search(r"\bclosed\b", lowered):
        filters.append(FilterPredicate(field="IsClosed", operator="=", value=True))

    # Amount thresholds. Bare small numbers are counts, not money.
    amount_field = "AnnualRevenue" if target_object == "Account" else "Amount"
    for match in AMOUNT_RE.finditer(text):
        phrase, currency, raw, suffix = match.groups()
        value = _number(raw, suffix)
        if not (currency or suffix or value >= 1000):
            continue
        operator = _AMOUNT_OPERATORS[phrase.lower()]
        filters.append(FilterPredicate(field=amount_field, operator=operator, value=value))

    # Owner
    owner = OWNER_RE.search(text) or POSSESSIVE_OWNER_RE.search(text)
    if owner:
        filters.append(FilterPredicate(field="Owner.Name", operator="LIKE", value=f"%{owner.group(1)}%"))

    # Person lookup on users ("find salesperson Sarah Lee")
    if target_object == "User":
        person = NAMED_USER_RE.search(text)
        if person:
            filters.append(FilterPredicate(field="Name", operator="LIKE", value=f"%{person.group(1)}%"))

    # Stage
    stage = STAGE_RE.search(text)
    if stage:
        value = (stage.group(1) or stage.group(2) or "").strip()
        if value:
            filters.append(FilterPredicate(field="StageName", operator="=", value=value))

    return filters


def extract_fields(text: str, known_objects: tuple[str, ...]) -> list[str]:
    """Extract tokens that look like field API names (CamelCase, dotted, __c)."""
    fields: list[str] = []
    for match in FIELD_TOKEN_RE.finditer(text):
        token = match.group(1)
        if token in known_objects or token in fields:
            continue
        fields.append(token)
    return fields


def extract_group_by(text: str) -> str | None:
    match = GROUP_BY_RE.search(text)
    if not match:
        return None
    return match.group(1).strip().lower()


# =============================================================================
# Rule table
# =============================================================================

@dataclass(frozen=True)
class RuleContext:
    """What a rule sees besides the text."""

    text: str
    target_object: str
    mentioned_object: str | None
    known_objects: tuple[str, ...]


@dataclass(frozen=True)
class OperationRule:
    """One entry in the classifier: an operation, its matcher and its extractor."""

    operation: Operation
    matcher: Callable[[RuleContext], float]
    extractor: Callable[[RuleContext], dict[str, Any]]


def _has_data_signal(ctx: RuleContext) -> bool:
    return bool(
        ctx.mentioned_object
        or AGGREGATE_RE.search(ctx.text)
        or SCHEMA_RE.search(ctx.text)
        or (LIST_RE.search(ctx.text) and not HELP_RE.search(ctx.text))
    )


def _match_recall(ctx: RuleContext) -> float:
    return 0.95 if RECALL_RE.search(ctx.text) else 0.0


def _match_smalltalk(ctx: RuleContext) -> float:
    if not ctx.text:
        return 1.0
    social = GREETING_RE.search(ctx.text) or THANKS_RE.search(ctx.text) or HELP_RE.search(ctx.text)
    if not social:
        return 0.0
    return 0.95 if not _has_data_signal(ctx) else 0.2


def _match_inspect(ctx: RuleContext) -> float:
    if TOP_FIELDS_RE.search(ctx.text):
        return 0.9
    if SCHEMA_RE.search(ctx.text):
        return 0.9 if ctx.mentioned_object else 0.8
    return 0.0


def _match_aggregate(ctx: RuleContext) -> float:
    if not AGGREGATE_RE.search(ctx.text):
        return 0.0
    return 0.85 if ctx.mentioned_object else 0.7


def _match_list(ctx: RuleContext) -> float:
    verb = LIST_RE.search(ctx.text)
    if verb and ctx.mentioned_object:
        return 0.85
    if verb:
        return 0.65
    if ctx.mentioned_object:
        # "opportunities over $50k" reads as a listing; a bare object name does not
        return 0.7 if extract_filters(ctx.text, ctx.target_object) else 0.5
    return 0.0


def _no_params(ctx: RuleContext) -> dict[str, Any]:
    return {}


def _inspect_params(ctx: RuleContext) -> dict[str, Any]:
    return {"fields": extract_fields(ctx.text, ctx.known_objects)}


def _list_params(ctx: RuleContext) -> dict[str, Any]:
    return {
        "filters": extract_filters(ctx.text, ctx.target_object),
        "limit": extract_limit(ctx.text),
        "fields": extract_fields(ctx.text, ctx.known_objects),
    }


def _aggregate_params(ctx: RuleContext) -> dict[str, Any]:
    params = _list_params(ctx)
    params["group_by"] = extract_group_by(ctx.text)
    return params


# Declared order breaks ties: the earlier rule wins.
RULES: tuple[OperationRule, ...] = (
    OperationRule(Operation.RECALL_MEMORY, _match_recall, _no_params),
    OperationRule(Operation.SMALLTALK, _match_smalltalk, _no_params),
    OperationRule(Operation.INSPECT_SCHEMA, _match_inspect, _inspect_params),
    OperationRule(Operation.AGGREGATE, _match_aggregate, _aggregate_params),
    OperationRule(Operation.LIST_RECORDS, _match_list, _list_params),
)


# =============================================================================
# Language-model escalation
# =============================================================================

INTENT_SYSTEM_PROMPT = """You classify messages sent to a CRM data assistant. Output ONLY valid JSON. No markdown. No commentary."""

INTENT_USER_PROMPT_TEMPLATE = """Classify this message:

Message: {text}

Known objects: {objects}
Object currently being discussed: {current_object}

Operations:
- "list-records": show or find records ("show me open deals", "accounts in Texas")
- "aggregate": counts, totals, averages, breakdowns ("how many cases by status")
- "inspect-schema": questions about fields, structure or insights of an object
- "recall-memory": questions about the conversation so far
- "smalltalk": greetings, thanks, questions about the assistant

Rules:
- target_object must be one of the known objects, or null
- filters use field API names: {{"field": "StageName", "operator": "=", "value": "Prospecting"}}
- limit is the number of records requested, or null
- group_by is the grouping term for aggregates ("stage", "owner"), or null
- confidence: 0.9+ clear, 0.7-0.9 moderate, below 0.7 weak

Output format (JSON only):
{{
  "operation": "list-records",
  "target_object": "Opportunity",
  "filters": [],
  "limit": null,
  "group_by": null,
  "confidence": 0.9,
  "rationale": "Asks to see records"
}}"""

INTENT_REPAIR_PROMPT_TEMPLATE = """The previous JSON output had errors. Fix the JSON.

Previous output:
{previous_output}

Errors:
{errors}

Rules:
- Output ONLY valid JSON (no markdown)
- Required: operation (one of: list-records, aggregate, inspect-schema, recall-memory, smalltalk)
- Optional: target_object, filters, limit (positive integer), group_by, confidence (0.0-1.0), rationale

Return ONLY the corrected JSON."""


class IntentResolver:
    """Resolve utterances into intents.

    Usage:
        resolver = IntentResolver(config)
        intent = resolver.resolve("show me recent opportunities")
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        *,
        llm: LLMCaller | None = None,
        rules: tuple[OperationRule, ...] = RULES,
        max_repairs: int = 1,
    ):
        """Initialize the resolver.

        Args:
            config: Agent configuration
            llm: Callable with ``call_llm``'s signature (default: the router)
            rules: Ordered rule table
            max_repairs: Repair attempts for malformed model output
        """
        self.config = config or AgentConfig()
        self.llm = llm or call_llm
        self.rules = rules
        self.max_repairs = max_repairs

    def infer_object(
        self,
        text: str,
        target_object_hint: str | None = None,
        last_object: str | None = None,
    ) -> tuple[str, str | None]:
        """Pick the target object.

        Returns:
            (target_object, object mentioned in the text or None)
        """
        mentioned = detect_object(text, self.config.known_objects)
        hint = (target_object_hint or "").strip()
        if hint:
            return hint, mentioned
        return mentioned or last_object or self.config.default_object, mentioned

    def resolve(
        self,
        text: str,
        target_object_hint: str | None = None,
        *,
        last_object: str | None = None,
    ) -> Intent:
        """Resolve an utterance into an intent.

        Args:
            text: Raw user text
            target_object_hint: Explicit object chosen by the caller
            last_object: Most recently discussed object in this session

        Returns:
            Intent (never raises for bad or ambiguous input)
        """
        clean = normalize_text(text)
        target, mentioned = self.infer_object(clean, target_object_hint, last_object)
        ctx = RuleContext(
            text=clean,
            target_object=target,
            mentioned_object=mentioned,
            known_objects=self.config.known_objects,
        )

        best_rule, best_score = self._best_rule(ctx)
        if best_rule is not None and best_score >= self.config.rule_confidence_threshold:
            return self._build(best_rule, ctx, best_score, IntentSource.RULE, "Matched rule table")

        try:
            return self._escalate(ctx)
        except ResolutionDegraded as e:
            logger.warning("Intent resolution degraded for %r: %s", clean[:80], e.message)
            return self._fallback(ctx, best_rule, best_score, e.message)

    def _best_rule(self, ctx: RuleContext) -> tuple[OperationRule | None, float]:
        best_rule: OperationRule | None = None
        best_score = 0.0
        for rule in self.rules:
            score = rule.matcher(ctx)
            if score > best_score:
                best_rule, best_score = rule, score
        return best_rule, best_score

    def _build(
        self,
        rule: OperationRule,
        ctx: RuleContext,
        confidence: float,
        source: IntentSource,
        rationale: str,
        low_confidence: bool = False,
    ) -> Intent:
        params = rule.extractor(ctx)
        return Intent(
            operation=rule.operation,
            target_object=ctx.target_object,
            filters=tuple(params.get("filters") or ()),
            limit=params.get("limit"),
            fields=tuple(params.get("fields") or ()),
            group_by=params.get("group_by"),
            query_text=ctx.text,
            confidence=round(confidence, 3),
            low_confidence=low_confidence,
            source=source,
            rationale=rationale,
        )

    def _fallback(
        self,
        ctx: RuleContext,
        rule: OperationRule | None,
        score: float,
        reason: str,
    ) -> Intent:
        """Best-effort deterministic guess after a failed escalation."""
        if rule is None:
            operation = Operation.LIST_RECORDS if _has_data_signal(ctx) else Operation.SMALLTALK
            rule = next(r for r in self.rules if r.operation == operation)
        return self._build(
            rule,
            ctx,
            min(score, 0.5) if score else 0.3,
            IntentSource.FALLBACK,
            f"Low-confidence guess ({reason})"[:300],
            low_confidence=True,
        )

    def _escalate(self, ctx: RuleContext) -> Intent:
        """Classify with the language model.

        Raises:
            ResolutionDegraded: If the model is disabled, fails or keeps
                returning unusable output
        """
        if not self.config.use_llm:
            raise ResolutionDegraded("language-model classification disabled")

        messages = [
            {"role": "system", "content": INTENT_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": INTENT_USER_PROMPT_TEMPLATE.format(
                    text=ctx.text or "(empty)",
                    objects=", ".join(ctx.known_objects),
                    current_object=ctx.target_object,
                ),
            },
        ]

        last_error = ""
        for attempt in range(self.max_repairs + 1):
            try:
                response = self.llm(
                    messages,
                    role="intent",
                    provider=self.config.llm_provider,
                    model=self.config.llm_model_overrides.get("intent"),
                    timeout=int(self.config.capability_timeout),
                )
            except Exception as e:
                raise ResolutionDegraded(
                    f"language model unavailable: {e}",
                    {"error_type": type(e).__name__},
                ) from e

            try:
                payload = LLMIntentPayload(**parse_json_response(response))
            except (ValueError, ValidationError, TypeError) as e:
                last_error = str(e)
                if attempt < self.max_repairs:
                    messages = [
                        {"role": "system", "content": INTENT_SYSTEM_PROMPT},
                        {
                            "role": "user",
                            "content": INTENT_REPAIR_PROMPT_TEMPLATE.format(
                                previous_output=response,
                                errors=last_error,
                            ),
                        },
                    ]
                    continue
                break

            return self._from_payload(payload, ctx)

        raise ResolutionDegraded(
            f"language model returned unusable output: {last_error[:200]}",
            {"attempts": self.max_repairs + 1},
        )

    def _from_payload(self, payload: LLMIntentPayload, ctx: RuleContext) -> Intent:
        target = ctx.target_object
        if payload.target_object:
            by_lower = {o.lower(): o for o in ctx.known_objects}
            target = by_lower.get(payload.target_object.strip().lower(), target)

        data_op = payload.operation.needs_data
        return Intent(
            operation=payload.operation,
            target_object=target,
            filters=tuple(payload.filters) if data_op else (),
            limit=payload.limit if data_op else None,
            fields=tuple(extract_fields(ctx.text, ctx.known_objects)) if data_op else (),
            group_by=payload.group_by if payload.operation == Operation.AGGREGATE else None,
            query_text=ctx.text,
            confidence=payload.confidence,
            low_confidence=payload.confidence < self.config.rule_confidence_threshold,
            source=IntentSource.LLM,
            rationale=payload.rationale[:300],
        )


def describe_intent(intent: Intent) -> str:
    """One-line JSON rendering of an intent for logs."""
    return json.dumps(
        {
            "operation": intent.operation.value,
            "object": intent.target_object,
            "filters": [f.as_where() for f in intent.filters],
            "limit": intent.limit,
            "source": intent.source.value,
            "confidence": intent.confidence,
        },
        default=str,
    )
