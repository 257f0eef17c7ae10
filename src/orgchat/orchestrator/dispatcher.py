"""Function dispatcher: one capability call per data turn.

Maps an intent's operation to a named function, performs exactly one call on
the capability client, and bounds the wait with ``capability_timeout``.

| Operation                           | Function            | Capability call     |
|-------------------------------------|---------------------|---------------------|
| list-records                        | query_records       | execute_query       |
| aggregate                           | analyze_records     | execute_query       |
| inspect-schema                      | get_object_insights | object_insights     |
| inspect-schema ("most used fields") | get_top_fields      | top_fields          |
| recall-memory, smalltalk            | (none)              | (none)              |

The call never raises to the caller: failures come back as an ``ErrorSummary``
on the ``DispatchOutcome``.
"""

import concurrent.futures
import logging
from collections import Counter
from typing import Any, Callable

from orgchat.agents.contracts import DispatchOutcome, ErrorSummary, Intent, Operation, QuerySpec
from orgchat.capability.catalog import parse_insights
from orgchat.capability.client import CapabilityClient
from orgchat.config import AgentConfig
from orgchat.errors import CapabilityError, CapabilityTimeout, CapabilityUnavailable
from orgchat.planning.intent import wants_top_fields


logger = logging.getLogger(__name__)

FUNCTION_BY_OPERATION = {
    Operation.LIST_RECORDS: "query_records",
    Operation.AGGREGATE: "analyze_records",
    Operation.INSPECT_SCHEMA: "get_object_insights",
}
TOP_FIELDS_FUNCTION = "get_top_fields"

MAX_GROUPS = 10


# =============================================================================
# Record analytics
# =============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _round(value: float) -> float:
    return round(float(value), 2)


def summarize_records(
    records: list[dict[str, Any]],
    object_name: str,
    group_field: str | None = None,
) -> dict[str, Any]:
    """Compute summary statistics over a bounded record sample.

    Args:
        records: Flattened records
        object_name: Object the records belong to
        group_field: Optional field to count groups by

    Returns:
        Dict with ``numeric`` stats per numeric field, ``groups`` (when
        grouping) and ``performance`` (Opportunity only)
    """
    numeric: dict[str, list[float]] = {}
    for record in records:
        for key, value in record.items():
            if key == "attributes" or key == "Id":
                continue
            if _is_number(value):
                numeric.setdefault(key, []).append(float(value))

    stats = {
        name: {
            "count": len(values),
            "sum": _round(sum(values)),
            "avg": _round(sum(values) / len(values)),
            "min": _round(min(values)),
            "max": _round(max(values)),
        }
        for name, values in sorted(numeric.items())
    }

    summary: dict[str, Any] = {"numeric": stats}

    if group_field:
        counts = Counter(
            "(none)" if record.get(group_field) in (None, "") else str(record.get(group_field))
            for record in records
        )
        summary["groupBy"] = group_field
        summary["groups"] = [
            {"value": value, "count": count}
            for value, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:MAX_GROUPS]
        ]

    if object_name == "Opportunity" and records:
        summary["performance"] = _opportunity_performance(records)

    return summary


def _opportunity_performance(records: list[dict[str, Any]]) -> dict[str, Any]:
    """Pipeline value and win rate for a sample of opportunities."""
    amounts = [float(r["Amount"]) for r in records if _is_number(r.get("Amount"))]
    closed_won = sum(1 for r in records if r.get("IsWon") is True)
    closed_lost = sum(1 for r in records if r.get("IsClosed") is True and r.get("IsWon") is False)
    pipeline = sum(1 for r in records if r.get("IsClosed") is False)
    decided = closed_won + closed_lost
    return {
        "totalValue": _round(sum(amounts)),
        "averageValue": _round(sum(amounts) / len(amounts)) if amounts else 0.0,
        "pipelineCount": pipeline,
        "closedWon": closed_won,
        "closedLost": closed_lost,
        "winRate": _round(100.0 * closed_won / decided) if decided else None,
    }


def _records_of(result: dict[str, Any]) -> list[dict[str, Any]]:
    records = result.get("records")
    if records is None:
        records = []
    if not isinstance(records, list):
        raise ValueError("records is not a list")
    return [r for r in records if isinstance(r, dict)]


# =============================================================================
# Dispatcher
# =============================================================================

class FunctionDispatcher:
    """Performs the single capability call for a turn.

    Usage:
        dispatcher = FunctionDispatcher(client, config)
        outcome = dispatcher.dispatch(intent, spec)
    """

    def __init__(
        self,
        client: CapabilityClient,
        config: AgentConfig | None = None,
        *,
        max_workers: int = 8,
    ):
        self.client = client
        self.config = config or AgentConfig()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="orgchat-capability",
        )

    def close(self) -> None:
        """Release worker threads."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def function_for(self, intent: Intent) -> str | None:
        """Name of the function an intent dispatches to (None for no call)."""
        if not intent.operation.needs_data:
            return None
        if intent.operation == Operation.INSPECT_SCHEMA and wants_top_fields(intent.query_text):
            return TOP_FIELDS_FUNCTION
        return FUNCTION_BY_OPERATION[intent.operation]

    def dispatch(self, intent: Intent, query_spec: QuerySpec | None = None) -> DispatchOutcome:
        """Dispatch one intent.

        Args:
            intent: Resolved intent
            query_spec: Synthesized spec (required for list-records and aggregate)

        Returns:
            DispatchOutcome with either ``function_result`` or ``error``

        Raises:
            ValueError: If a record operation is dispatched without a QuerySpec
        """
        function = self.function_for(intent)
        if function is None:
            return DispatchOutcome()

        call = self._build_call(function, intent, query_spec)
        try:
            result = self.run_bounded(function, call)
        except CapabilityTimeout as e:
            logger.warning("Capability call %s timed out for %s", function, intent.target_object)
            return DispatchOutcome(function_called=function, error=ErrorSummary(**e.summary()))
        except CapabilityError as e:
            logger.warning("Capability call %s failed: %s", function, e.message)
            return DispatchOutcome(function_called=function, error=ErrorSummary(**e.summary()))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            error = CapabilityUnavailable(
                f"Unexpected {function} response: {e}",
                function=function,
                details={"error_type": type(e).__name__},
            )
            logger.warning("Capability call %s returned an unusable result: %s", function, e)
            return DispatchOutcome(function_called=function, error=ErrorSummary(**error.summary()))

        return DispatchOutcome(function_called=function, function_result=result)

    def run_bounded(self, function: str, call: Callable[[], Any]) -> Any:
        """Run ``call`` on a worker thread and wait at most ``capability_timeout``.

        A call that overruns is abandoned, not retried.

        Raises:
            CapabilityTimeout: If the call does not finish in time
        """
        timeout = self.config.capability_timeout
        future = self._executor.submit(call)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise CapabilityTimeout(
                f"{function} did not complete within {timeout:g}s",
                function=function,
            ) from None

    def _build_call(
        self,
        function: str,
        intent: Intent,
        query_spec: QuerySpec | None,
    ) -> Callable[[], dict[str, Any]]:
        object_name = intent.target_object

        if function == TOP_FIELDS_FUNCTION:
            return lambda: self._top_fields(object_name)
        if function == "get_object_insights":
            return lambda: self._insights(object_name)

        if query_spec is None:
            raise ValueError(f"{function} requires a QuerySpec")
        if function == "analyze_records":
            return lambda: self._analyze(query_spec)
        return lambda: self._query(query_spec)

    # -------------------------------------------------------------------------
    # Functions
    # -------------------------------------------------------------------------

    def _query(self, spec: QuerySpec) -> dict[str, Any]:
        result = self.client.execute_query(spec)
        records = _records_of(result)
        return {
            "object": spec.object,
            "records": records,
            "recordCount": len(records),
            "totalSize": int(result.get("totalSize", len(records)) or 0),
            "fields": list(spec.fields),
            "suggestion": spec.suggestion,
        }

    def _analyze(self, spec: QuerySpec) -> dict[str, Any]:
        result = self.client.execute_query(spec)
        records = _records_of(result)
        total = int(result.get("totalSize", len(records)) or 0)
        return {
            "object": spec.object,
            "recordCount": len(records),
            "totalSize": total,
            "sampled": total > len(records),
            "suggestion": spec.suggestion,
            **summarize_records(records, spec.object, spec.group_by),
        }

    def _insights(self, object_name: str) -> dict[str, Any]:
        payload = self.client.object_insights(object_name)
        if not isinstance(payload, dict):
            raise ValueError("insights payload is not an object")
        metadata = parse_insights(object_name, payload)
        return {
            "object": object_name,
            "fieldCount": metadata.field_count,
            "recordTypes": list(metadata.record_types),
            "defaultFields": list(metadata.default_fields),
            "topFields": list(metadata.top_fields),
            "suggestions": [s.title for s in metadata.suggestions],
        }

    def _top_fields(self, object_name: str) -> dict[str, Any]:
        entries = self.client.top_fields(object_name, self.config.top_fields_count)
        fields = []
        for entry in entries:
            if isinstance(entry, dict) and entry.get("field"):
                fields.append({"field": str(entry["field"]), "count": int(entry.get("count") or 0)})
            elif isinstance(entry, str):
                fields.append({"field": entry, "count": 0})
        return {"object": object_name, "topFields": fields}
