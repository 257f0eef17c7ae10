"""Client for the schema/capability service.

The agent never talks to the data platform directly. Everything it knows about
objects, fields and records comes through the operations on
``CapabilityClient``. ``HttpCapabilityClient`` implements them over the helper
service's HTTP routes, with retry logic for transient transport failures.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import quote

import requests

from orgchat.agents.contracts import QuerySpec
from orgchat.errors import CapabilityTimeout, CapabilityUnavailable


logger = logging.getLogger(__name__)

USER_AGENT = "orgchat-capability-client/0.1.0"


class CapabilityClient(ABC):
    """Operations consumed from the schema/capability service.

    All operations may raise ``CapabilityTimeout`` or ``CapabilityUnavailable``.
    """

    @abstractmethod
    def health(self) -> dict[str, Any]:
        """Return service liveness status."""
        ...

    @abstractmethod
    def org_info(self) -> dict[str, Any]:
        """Return identity and org metadata."""
        ...

    @abstractmethod
    def available_fields(self, object_name: str) -> list[str]:
        """Return field names currently queryable for an object."""
        ...

    @abstractmethod
    def execute_query(self, spec: QuerySpec) -> dict[str, Any]:
        """Run a bounded query. Returns ``{"records": [...], "totalSize": n}``."""
        ...

    @abstractmethod
    def object_insights(self, object_name: str) -> dict[str, Any]:
        """Return the insight summary (field count, record types, suggestions)."""
        ...

    @abstractmethod
    def top_fields(self, object_name: str, n: int = 10) -> list[dict[str, Any]]:
        """Return the most-used fields, ranked."""
        ...

    @abstractmethod
    def generate_context_bundle(self, object_name: str, **options: Any) -> dict[str, Any]:
        """Generate and persist a context bundle for an object."""
        ...


class HttpCapabilityClient(CapabilityClient):
    """Capability client backed by the helper service's HTTP API."""

    def __init__(
        self,
        base_url: str = "http://localhost:3000",
        *,
        timeout: float = 30.0,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        session: requests.Session | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Service base URL (trailing slash ignored)
            timeout: Per-request timeout in seconds
            max_retries: Retries for connection errors and 5xx responses
            retry_delay: Base delay for exponential backoff
            session: Optional ``requests.Session`` to reuse connections
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health", function="health")

    def org_info(self) -> dict[str, Any]:
        identity = self._request("GET", "/me", function="org_info")
        limits = self._request("GET", "/limits", function="org_info")
        return {"identity": identity, "limits": limits}

    def allowlist(self) -> dict[str, Any]:
        """Return the dynamic allowlist (static plus discovered fields).

        Not cached here; ``SchemaCatalog`` owns field-list caching and expiry.
        """
        result = self._request("GET", "/allowlist", function="available_fields")
        return result if isinstance(result, dict) else {}

    def available_fields(self, object_name: str) -> list[str]:
        allowlist = self.allowlist()
        objects = allowlist.get("objects", allowlist)
        spec = objects.get(object_name) or {}
        fields = spec.get("fields", []) if isinstance(spec, dict) else []
        return [str(f) for f in fields]

    def execute_query(self, spec: QuerySpec) -> dict[str, Any]:
        result = self._request("POST", "/safe-query", json=spec.to_payload(), function="execute_query")
        if not isinstance(result, dict):
            raise CapabilityUnavailable(
                "Unexpected safe-query response format",
                function="execute_query",
            )
        return result

    def object_insights(self, object_name: str) -> dict[str, Any]:
        return self._request(
            "GET",
            f"/objects/{quote(object_name)}/insights",
            function="object_insights",
        )

    def top_fields(self, object_name: str, n: int = 10) -> list[dict[str, Any]]:
        result = self._request(
            "GET",
            "/analytics/top-fields",
            params={"object": object_name, "top": n},
            function="top_fields",
        )
        if isinstance(result, dict):
            result = result.get("fields") or result.get("topFields") or []
        return list(result)

    def generate_context_bundle(self, object_name: str, **options: Any) -> dict[str, Any]:
        payload = {
            "persist": options.get("persist", True),
            "runQueries": options.get("run_queries", False),
            "sample": options.get("sample", 50),
            "verbose": options.get("verbose", False),
        }
        if options.get("dir"):
            payload["dir"] = options["dir"]
        result = self._request(
            "POST",
            f"/objects/{quote(object_name)}/context/bundle",
            json=payload,
            function="generate_context_bundle",
        )
        return result

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        function: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Send one request with retries.

        Args:
            method: HTTP method
            path: Route path beginning with '/'
            function: Capability operation name, recorded on errors
            params: Optional query parameters
            json: Optional JSON body

        Returns:
            Decoded JSON body (or text for non-JSON responses)

        Raises:
            CapabilityTimeout: If the request timed out on every attempt
            CapabilityUnavailable: On connection failure or error response
        """
        url = f"{self.base_url}{path}"
        response = None

        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                content_type = response.headers.get("content-type", "")
                if "application/json" in content_type:
                    return response.json()
                return response.text

            except requests.exceptions.Timeout as e:
                if attempt < self.max_retries:
                    self._backoff(attempt, function, e)
                    continue
                raise CapabilityTimeout(
                    f"{function} timed out after {self.timeout}s",
                    function=function,
                ) from e

            except requests.exceptions.ConnectionError as e:
                if attempt < self.max_retries:
                    self._backoff(attempt, function, e)
                    continue
                raise CapabilityUnavailable(
                    f"Cannot connect to capability service at {self.base_url}",
                    function=function,
                ) from e

            except requests.exceptions.HTTPError as e:
                status = response.status_code if response is not None else None
                if status is not None and 500 <= status < 600 and attempt < self.max_retries:
                    self._backoff(attempt, function, e)
                    continue
                raise self._error_from_response(response, function) from e

        raise CapabilityUnavailable(f"{function} failed after {self.max_retries} retries", function=function)

    def _backoff(self, attempt: int, function: str, error: Exception) -> None:
        wait_time = self.retry_delay * (2 ** attempt)
        logger.warning(
            "Capability call %s failed (attempt %d/%d), retrying in %.1fs: %s",
            function,
            attempt + 1,
            self.max_retries + 1,
            wait_time,
            error,
        )
        time.sleep(wait_time)

    @staticmethod
    def _error_from_response(response: requests.Response | None, function: str) -> CapabilityUnavailable:
        """Build an error carrying the service's message and suggestions."""
        if response is None:
            return CapabilityUnavailable(f"{function} failed", function=function)
        try:
            data = response.json()
        except ValueError:
            data = {"error": response.text}
        if not isinstance(data, dict):
            data = {"error": str(data)}
        message = data.get("error") or f"HTTP {response.status_code}: {response.reason}"
        return CapabilityUnavailable(
            str(message),
            function=function,
            status=response.status_code,
            suggestions=data.get("suggestions") or [],
            details={"code": data.get("code")} if data.get("code") else None,
        )
