"""Shared test fixtures for the orgchat test suite.

Provides:

* ``FakeCapabilityClient`` -- in-memory capability service with call recording,
  optional latency and injectable failures
* ``StubLLM``              -- deterministic stand-in for the language model
* ``config``               -- AgentConfig with escalation disabled and a short timeout
* ``fake_client`` / ``agent`` -- a ready-to-use agent over the fake service
"""

from __future__ import annotations

import threading
import time
from typing import Any

import pytest

from orgchat.agents.contracts import (
    ErrorSummary,
    Intent,
    IntentSource,
    Operation,
    QuerySpec,
    Turn,
    Utterance,
)
from orgchat.capability.client import CapabilityClient
from orgchat.config import AgentConfig
from orgchat.orchestrator.runtime import ChatAgent


# ---------------------------------------------------------------------------
# Sample org
# ---------------------------------------------------------------------------

OPPORTUNITY_FIELDS = [
    "Id",
    "Name",
    "StageName",
    "Amount",
    "CloseDate",
    "IsClosed",
    "IsWon",
    "CreatedDate",
    "OwnerId",
    "Probability",
    "LeadSource",
    "Type",
]
ACCOUNT_FIELDS = ["Id", "Name", "Type", "Industry", "AnnualRevenue", "NumberOfEmployees", "CreatedDate", "OwnerId"]
CASE_FIELDS = ["Id", "CaseNumber", "Subject", "Status", "Priority", "IsClosed", "CreatedDate"]

OPPORTUNITY_RECORDS = [
    {"Id": "006A", "Name": "Acme Renewal", "StageName": "Prospecting", "Amount": 50000,
     "IsClosed": False, "IsWon": False, "Probability": 10},
    {"Id": "006B", "Name": "Globex Expansion", "StageName": "Closed Won", "Amount": 120000,
     "IsClosed": True, "IsWon": True, "Probability": 100},
    {"Id": "006C", "Name": "Initech Pilot", "StageName": "Closed Lost", "Amount": 15000,
     "IsClosed": True, "IsWon": False, "Probability": 0},
    {"Id": "006D", "Name": "Umbrella Upgrade", "StageName": "Prospecting", "Amount": 80000,
     "IsClosed": False, "IsWon": False, "Probability": 40},
]
ACCOUNT_RECORDS = [
    {"Id": "001A", "Name": "Acme", "Type": "Customer", "Industry": "Manufacturing", "AnnualRevenue": 5000000},
    {"Id": "001B", "Name": "Globex", "Type": "Prospect", "Industry": "Energy", "AnnualRevenue": 1200000},
]

OPPORTUNITY_INSIGHTS = {
    "summary": {
        "fieldsCount": 48,
        "allowlist": {"defaultFields": ["Id", "Name", "StageName", "Amount"], "fields": 12, "allowlisted": True},
    },
    "topFields": [{"field": "StageName", "count": 40}, {"field": "Amount", "count": 35}],
    "recordTypes": [{"name": "New Business", "developerName": "New_Business"}],
    "suggestions": [
        {
            "title": "Open pipeline",
            "description": "Opportunities that are still open",
            "where": [{"field": "IsClosed", "op": "=", "value": False}],
            "limit": 10,
        },
        {
            "title": "Last 30 days",
            "where": [{"field": "CreatedDate", "op": "=", "value": "LAST_N_DAYS:30"}],
            "orderBy": "CreatedDate DESC",
        },
        {
            "title": "Closing this quarter",
            "where": [{"field": "CloseDate", "op": "=", "value": "THIS_QUARTER"}],
        },
    ],
}

TOP_FIELDS = [{"field": "StageName", "count": 40}, {"field": "Amount", "count": 35}, {"field": "CloseDate", "count": 20}]


class FakeCapabilityClient(CapabilityClient):
    """In-memory capability service.

    ``calls`` records every operation as ``(name, argument)``. ``delay`` makes
    record queries slow; ``failures`` maps an operation name to the exception
    it raises.
    """

    def __init__(
        self,
        fields: dict[str, list[str]] | None = None,
        records: dict[str, list[dict[str, Any]]] | None = None,
        insights: dict[str, dict[str, Any]] | None = None,
        top: list[dict[str, Any]] | None = None,
        *,
        delay: float = 0.0,
        failures: dict[str, Exception] | None = None,
    ):
        self.fields = fields if fields is not None else {
            "Opportunity": list(OPPORTUNITY_FIELDS),
            "Account": list(ACCOUNT_FIELDS),
            "Case": list(CASE_FIELDS),
        }
        self.records = records if records is not None else {
            "Opportunity": [dict(r) for r in OPPORTUNITY_RECORDS],
            "Account": [dict(r) for r in ACCOUNT_RECORDS],
            "Case": [],
        }
        self.insights = insights if insights is not None else {"Opportunity": OPPORTUNITY_INSIGHTS}
        self.top = top if top is not None else list(TOP_FIELDS)
        self.delay = delay
        self.failures = failures or {}
        self.calls: list[tuple[str, Any]] = []
        self.specs: list[QuerySpec] = []
        self._lock = threading.Lock()

    def _record(self, name: str, arg: Any) -> None:
        with self._lock:
            self.calls.append((name, arg))
        if name in self.failures:
            raise self.failures[name]

    def names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.calls]

    def health(self) -> dict[str, Any]:
        self._record("health", None)
        return {"status": "ok"}

    def org_info(self) -> dict[str, Any]:
        self._record("org_info", None)
        return {"identity": {"organization_id": "00D000000000001"}, "limits": {}}

    def available_fields(self, object_name: str) -> list[str]:
        self._record("available_fields", object_name)
        return list(self.fields.get(object_name, []))

    def execute_query(self, spec: QuerySpec) -> dict[str, Any]:
        with self._lock:
            self.specs.append(spec)
        self._record("execute_query", spec.object)
        if self.delay:
            time.sleep(self.delay)
        rows = self.records.get(spec.object, [])
        selected = [{k: v for k, v in r.items() if k in spec.fields} for r in rows[: spec.limit]]
        return {"records": selected, "totalSize": len(rows)}

    def object_insights(self, object_name: str) -> dict[str, Any]:
        self._record("object_insights", object_name)
        return self.insights.get(object_name, {})

    def top_fields(self, object_name: str, n: int = 10) -> list[dict[str, Any]]:
        self._record("top_fields", object_name)
        return self.top[:n]

    def generate_context_bundle(self, object_name: str, **options: Any) -> dict[str, Any]:
        self._record("generate_context_bundle", object_name)
        return {"object": object_name, "persisted": True}


class StubLLM:
    """Deterministic language model: returns queued responses in order.

    A queued exception is raised instead of returned. An empty queue raises
    ``ConnectionError`` like an unreachable provider.
    """

    def __init__(self, *responses: str | Exception):
        self.responses = list(responses)
        self.calls: list[tuple[list[dict[str, str]], dict[str, Any]]] = []

    def __call__(self, messages: list[dict[str, str]], **kwargs: Any) -> str:
        self.calls.append((messages, kwargs))
        if not self.responses:
            raise ConnectionError("language model unavailable")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_turn(
    user_id: str = "u1",
    text: str = "hello",
    *,
    operation: Operation = Operation.SMALLTALK,
    target_object: str = "Opportunity",
    function_called: str | None = None,
    function_result: dict[str, Any] | None = None,
    error_code: str | None = None,
    reply: str = "ok",
    duration_ms: float = 1.0,
) -> Turn:
    """Build a Turn without running the agent."""
    intent = Intent(
        operation=operation,
        target_object=target_object,
        query_text=text,
        source=IntentSource.RULE,
    )
    error = (
        ErrorSummary(type="CapabilityTimeout", code=error_code, message="timed out")
        if error_code
        else None
    )
    return Turn(
        user_id=user_id,
        utterance=Utterance(text=text, user_id=user_id),
        intent=intent,
        function_called=function_called,
        function_result=function_result,
        error=error,
        reply=reply,
        duration_ms=duration_ms,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config() -> AgentConfig:
    return AgentConfig(use_llm=False, capability_timeout=2.0)


@pytest.fixture
def fake_client() -> FakeCapabilityClient:
    return FakeCapabilityClient()


@pytest.fixture
def agent(fake_client: FakeCapabilityClient, config: AgentConfig):
    chat_agent = ChatAgent(fake_client, config)
    yield chat_agent
    chat_agent.close()
