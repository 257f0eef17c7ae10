"""Query synthesis: Intent + discovered schema -> bounded QuerySpec.

The synthesizer is a pure function. It never calls the capability service;
callers pass in the fields and insight metadata they discovered. Given the
same inputs it always returns the same QuerySpec.

Guarantees:
- every selected field and every filter field is available on the object;
  relationship paths (``Owner.Name``) count only when listed verbatim
- the limit is always within [1, max_limit]
- dropped fields and filters are reported in ``QuerySpec.warnings``
"""

import logging
import re
from collections.abc import Iterable

from orgchat.agents.contracts import FilterPredicate, InsightMetadata, Intent, Operation, QuerySpec
from orgchat.config import AgentConfig
from orgchat.errors import SchemaMismatch
from orgchat.planning.suggestions import best_suggestion


logger = logging.getLogger(__name__)

CORE_FIELDS = ("Id", "Name")

# Commonly used fields per object, in display order.
OBJECT_FIELDS: dict[str, tuple[str, ...]] = {
    "Opportunity": ("StageName", "Amount", "CloseDate", "IsClosed", "IsWon"),
    "Account": ("Type", "Industry", "AnnualRevenue", "NumberOfEmployees"),
    "Case": ("Status", "Priority", "Subject"),
    "Contact": ("Email", "Phone", "Title"),
    "Lead": ("Status", "Company", "Email"),
}

SCORING_FIELD_RE = re.compile(r"probability|likelihood|score", re.IGNORECASE)

# Group-by words that name a relationship rather than a field.
GROUP_ALIASES = {
    "owner": ("Owner.Name", "OwnerId"),
    "rep": ("Owner.Name", "OwnerId"),
    "salesperson": ("Owner.Name", "OwnerId"),
    "account": ("Account.Name", "AccountId"),
}


class FieldResolver:
    """Case-insensitive lookup against a set of available field names."""

    def __init__(self, available_fields: Iterable[str]):
        self.available = frozenset(available_fields)
        self._by_lower: dict[str, str] = {}
        for name in sorted(self.available):
            self._by_lower.setdefault(name.lower(), name)

    def resolve(self, name: str) -> str | None:
        """Return the canonical field name, or None if not available."""
        if not name:
            return None
        if name in self.available:
            return name
        canonical = self._by_lower.get(name.lower())
        if canonical:
            return canonical
        return None

    def resolve_group(self, term: str) -> str | None:
        """Map a grouping term ("stage", "lead source") to a field."""
        term = term.strip().lower()
        if not term:
            return None
        compact = term.replace(" ", "")
        for candidate in (term, compact):
            found = self.resolve(candidate)
            if found:
                return found
        for alias in GROUP_ALIASES.get(term, ()):
            found = self.resolve(alias)
            if found:
                return found
        for name in sorted(self.available):
            if compact in name.lower():
                return name
        return None

    def sorted_fields(self) -> list[str]:
        return sorted(self.available)


def clamp_limit(limit: int | None, operation: Operation, config: AgentConfig) -> int:
    """Apply the limit policy.

    Explicit limits are clamped to ``[1, max_limit]``. Without one, listings use
    ``default_limit`` and aggregates sample up to ``max_limit`` records.
    """
    if limit is None:
        return config.max_limit if operation == Operation.AGGREGATE else config.default_limit
    return max(1, min(int(limit), config.max_limit))


def _append(selected: list[str], name: str | None) -> None:
    if name and name not in selected:
        selected.append(name)


def _validate_filters(
    filters: Iterable[FilterPredicate],
    resolver: FieldResolver,
    warnings: list[str],
) -> list[FilterPredicate]:
    kept: list[FilterPredicate] = []
    for predicate in filters:
        field = resolver.resolve(predicate.field)
        if field is None:
            warnings.append(f"Dropped filter on unavailable field '{predicate.field}'")
            continue
        kept.append(predicate if field == predicate.field else predicate.model_copy(update={"field": field}))
    return kept


def synthesize_query(
    intent: Intent,
    available_fields: Iterable[str],
    insight_metadata: InsightMetadata | None = None,
    *,
    config: AgentConfig | None = None,
) -> QuerySpec:
    """Build a bounded, schema-validated QuerySpec.

    Args:
        intent: Resolved intent (list-records or aggregate)
        available_fields: Fields discovered for ``intent.target_object``
        insight_metadata: Discovered insights (suggestions, default/top fields)
        config: Agent configuration (limits, field cap, suggestion threshold)

    Returns:
        QuerySpec

    Raises:
        SchemaMismatch: If the object exposes no fields
    """
    config = config or AgentConfig()
    resolver = FieldResolver(available_fields)
    if not resolver.available:
        raise SchemaMismatch(
            f"No fields available for {intent.target_object}",
            {"object": intent.target_object},
        )

    insights = insight_metadata or InsightMetadata(object_name=intent.target_object)
    warnings: list[str] = []

    # Suggestion pattern
    match = best_suggestion(intent.query_text, insights.suggestions, config.suggestion_min_score)
    suggestion = match.suggestion if match else None

    # Filters: the user's first, then the suggestion's for fields not already constrained
    filters = _validate_filters(intent.filters, resolver, warnings)
    if suggestion:
        constrained = {f.field for f in filters}
        extra = [w for w in suggestion.where if resolver.resolve(w.field) not in constrained]
        filters.extend(_validate_filters(extra, resolver, []))

    # Grouping
    group_field = None
    if intent.operation == Operation.AGGREGATE and intent.group_by:
        group_field = resolver.resolve_group(intent.group_by)
        if group_field is None:
            warnings.append(f"Could not group by '{intent.group_by}'; no matching field")

    # Field selection
    selected: list[str] = []
    if intent.fields:
        _append(selected, resolver.resolve("Id"))
        for name in intent.fields:
            field = resolver.resolve(name)
            if field is None:
                warnings.append(f"Dropped unavailable field '{name}'")
            _append(selected, field)
        _append(selected, group_field)
    else:
        for name in CORE_FIELDS:
            _append(selected, resolver.resolve(name))
        _append(selected, group_field)
        for name in OBJECT_FIELDS.get(intent.target_object, ()):
            _append(selected, resolver.resolve(name))
        for name in resolver.sorted_fields():
            if SCORING_FIELD_RE.search(name):
                _append(selected, name)
        if suggestion:
            for name in suggestion.fields:
                _append(selected, resolver.resolve(name))
        for name in insights.default_fields + insights.top_fields:
            _append(selected, resolver.resolve(name))
        for predicate in filters:
            _append(selected, resolver.resolve(predicate.field))

    if len(selected) > config.max_fields:
        selected = selected[: config.max_fields]
    if not selected:
        selected = resolver.sorted_fields()[: config.max_fields]

    # Ordering
    order_by = None
    if suggestion and suggestion.order_by:
        order_field = suggestion.order_by.split()[0]
        if resolver.resolve(order_field):
            order_by = suggestion.order_by
    if order_by is None and any(f.field == "CreatedDate" for f in filters) and resolver.resolve("CreatedDate"):
        order_by = "CreatedDate DESC"

    for warning in warnings:
        logger.warning("%s: %s", intent.target_object, warning)

    return QuerySpec(
        object=intent.target_object,
        fields=tuple(selected),
        filters=tuple(filters),
        limit=clamp_limit(intent.limit, intent.operation, config),
        order_by=order_by,
        group_by=group_field if group_field in selected else None,
        suggestion=suggestion.title if suggestion else None,
        warnings=tuple(warnings),
    )
