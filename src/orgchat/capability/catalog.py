"""Cached schema discovery for the query synthesizer.

Field lists and insight summaries change rarely, so the catalog keeps them per
object for ``ttl_seconds``. Generating a context bundle invalidates the entry
for that object.
"""

import logging
import threading
import time
from typing import Any

from pydantic import ValidationError

from orgchat.agents.contracts import FilterPredicate, InsightMetadata, QuerySuggestion
from orgchat.capability.client import CapabilityClient
from orgchat.errors import CapabilityError


logger = logging.getLogger(__name__)


def parse_insights(object_name: str, payload: dict[str, Any] | None) -> InsightMetadata:
    """Normalize an insights payload into ``InsightMetadata``.

    Unknown or malformed parts are skipped rather than failing the whole
    summary.

    Args:
        object_name: Object the insights describe
        payload: Raw ``object_insights`` response

    Returns:
        InsightMetadata (empty when payload is empty)
    """
    if not payload:
        return InsightMetadata(object_name=object_name)

    summary = _mapping(payload.get("summary"))
    allowlist = _mapping(summary.get("allowlist"))

    top_fields: list[str] = []
    for entry in payload.get("topFields") or []:
        name = entry.get("field") if isinstance(entry, dict) else entry
        if name and name not in top_fields:
            top_fields.append(str(name))

    record_types: list[str] = []
    for rt in payload.get("recordTypes") or []:
        name = (rt.get("developerName") or rt.get("name")) if isinstance(rt, dict) else rt
        if name:
            record_types.append(str(name))

    suggestions: list[QuerySuggestion] = []
    for raw in payload.get("suggestions") or []:
        if not isinstance(raw, dict) or not raw.get("title"):
            continue
        try:
            where = tuple(
                FilterPredicate(
                    field=w.get("field", ""),
                    operator=w.get("op") or w.get("operator") or "=",
                    value=_scalar(w.get("value")),
                )
                for w in raw.get("where") or []
                if isinstance(w, dict)
            )
            suggestions.append(
                QuerySuggestion(
                    title=str(raw["title"]),
                    description=str(raw.get("description") or ""),
                    fields=tuple(raw.get("fields") or ()),
                    where=where,
                    order_by=raw.get("orderBy") or raw.get("order_by"),
                    limit=raw.get("limit"),
                )
            )
        except ValidationError as e:
            logger.warning("Skipping malformed suggestion %r for %s: %s", raw.get("title"), object_name, e)

    return InsightMetadata(
        object_name=object_name,
        field_count=_count(summary.get("fieldsCount")),
        record_types=tuple(record_types),
        default_fields=tuple(allowlist.get("defaultFields") or ()),
        top_fields=tuple(top_fields),
        suggestions=tuple(suggestions),
    )


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _count(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _scalar(value: Any) -> Any:
    # Multi-value IN lists are flattened to a comma-separated literal.
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return value


class SchemaCatalog:
    """Thread-safe TTL cache over field and insight discovery."""

    def __init__(self, client: CapabilityClient, ttl_seconds: float = 300.0):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._lock = threading.RLock()
        self._fields: dict[str, tuple[float, frozenset[str]]] = {}
        self._insights: dict[str, tuple[float, InsightMetadata]] = {}

    def _fresh(self, stamp: float) -> bool:
        return (time.monotonic() - stamp) < self.ttl_seconds

    def fields(self, object_name: str) -> frozenset[str]:
        """Return the available fields for an object (cached).

        Raises:
            CapabilityError: If discovery fails. Expired entries are not
                served as a fallback
        """
        with self._lock:
            cached = self._fields.get(object_name)
            if cached and self._fresh(cached[0]):
                return cached[1]

        fields = frozenset(self.client.available_fields(object_name))
        with self._lock:
            self._fields[object_name] = (time.monotonic(), fields)
        return fields

    def insights(self, object_name: str) -> InsightMetadata:
        """Return insight metadata for an object (cached).

        Insight discovery is best effort: a failure yields empty metadata so
        the synthesizer can still fall back to default field selection.
        """
        with self._lock:
            cached = self._insights.get(object_name)
            if cached and self._fresh(cached[0]):
                return cached[1]

        try:
            metadata = parse_insights(object_name, self.client.object_insights(object_name))
        except CapabilityError as e:
            logger.warning("Insight discovery failed for %s: %s", object_name, e)
            return InsightMetadata(object_name=object_name)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Ignoring malformed insights for %s: %s", object_name, e)
            return InsightMetadata(object_name=object_name)

        with self._lock:
            self._insights[object_name] = (time.monotonic(), metadata)
        return metadata

    def invalidate(self, object_name: str | None = None) -> None:
        """Drop cached entries for one object, or for all objects."""
        with self._lock:
            if object_name is None:
                self._fields.clear()
                self._insights.clear()
            else:
                self._fields.pop(object_name, None)
                self._insights.pop(object_name, None)
