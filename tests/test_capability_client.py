"""HTTP capability client tests (transport mocked at the requests.Session level)."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from orgchat.agents.contracts import FilterPredicate, QuerySpec
from orgchat.capability.catalog import SchemaCatalog
from orgchat.capability.client import HttpCapabilityClient
from orgchat.config import AgentConfig
from orgchat.errors import CapabilityTimeout, CapabilityUnavailable
from orgchat.orchestrator.runtime import ChatAgent


ALLOWLIST = {
    "objects": {
        "Opportunity": {"fields": ["Id", "Name", "Amount"]},
        "Account": {"fields": ["Id", "Name"]},
    }
}


def _response(status: int = 200, body=None, *, json_body: bool = True, reason: str = "OK") -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.reason = reason
    response.headers = {"content-type": "application/json" if json_body else "text/plain"}
    if json_body:
        response.json.return_value = body
    else:
        response.json.side_effect = ValueError("not json")
    response.text = body if isinstance(body, str) else str(body)
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} error", response=response)
    return response


def _client(*responses) -> tuple[HttpCapabilityClient, MagicMock]:
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = list(responses)
    client = HttpCapabilityClient("http://svc:3000/", max_retries=2, retry_delay=0, session=session)
    return client, session


def test_available_fields_reads_allowlist():
    client, session = _client(_response(body=ALLOWLIST), _response(body=ALLOWLIST))

    assert client.available_fields("Opportunity") == ["Id", "Name", "Amount"]
    assert client.available_fields("Lead") == []
    assert session.request.call_count == 2
    method, url = session.request.call_args.args
    assert (method, url) == ("GET", "http://svc:3000/allowlist")


def test_execute_query_posts_safe_query_payload():
    client, session = _client(_response(body={"records": [{"Id": "1"}], "totalSize": 1}))
    spec = QuerySpec(
        object="Opportunity",
        fields=("Id", "Name"),
        filters=(FilterPredicate(field="IsClosed", operator="=", value=False),),
        limit=5,
        order_by="CreatedDate DESC",
    )

    result = client.execute_query(spec)

    assert result["totalSize"] == 1
    kwargs = session.request.call_args.kwargs
    assert session.request.call_args.args == ("POST", "http://svc:3000/safe-query")
    assert kwargs["json"] == {
        "object": "Opportunity",
        "fields": ["Id", "Name"],
        "where": [{"field": "IsClosed", "op": "=", "value": False}],
        "limit": 5,
        "flatten": True,
        "orderBy": "CreatedDate DESC",
    }


def test_execute_query_rejects_non_object_response():
    client, _ = _client(_response(body="plain text", json_body=False))
    with pytest.raises(CapabilityUnavailable):
        client.execute_query(QuerySpec(object="Account", fields=("Id",), limit=1))


def test_error_response_carries_suggestions():
    body = {"error": "Field not allowed: Secret__c", "suggestions": ["Name", "Amount"], "code": "FIELD_NOT_ALLOWED"}
    client, session = _client(_response(400, body, reason="Bad Request"))

    with pytest.raises(CapabilityUnavailable) as exc_info:
        client.object_insights("Opportunity")

    error = exc_info.value
    assert error.message == "Field not allowed: Secret__c"
    assert error.status == 400
    assert error.suggestions == ["Name", "Amount"]
    assert error.details["code"] == "FIELD_NOT_ALLOWED"
    assert error.details["function"] == "object_insights"
    # Client errors are not retried
    assert session.request.call_count == 1


def test_server_errors_are_retried():
    client, session = _client(
        _response(503, {"error": "busy"}, reason="Service Unavailable"),
        _response(body={"status": "ok"}),
    )

    assert client.health() == {"status": "ok"}
    assert session.request.call_count == 2


def test_timeouts_exhaust_retries():
    client, session = _client(*[requests.exceptions.Timeout("slow")] * 3)

    with pytest.raises(CapabilityTimeout) as exc_info:
        client.health()

    assert session.request.call_count == 3
    assert exc_info.value.code == "capability_timeout"


def test_connection_error_is_unavailable():
    client, _ = _client(*[requests.exceptions.ConnectionError("refused")] * 3)

    with pytest.raises(CapabilityUnavailable, match="Cannot connect"):
        client.org_info()


def test_org_info_combines_identity_and_limits():
    client, _ = _client(_response(body={"organization_id": "00D1"}), _response(body={"DailyApiRequests": {}}))
    info = client.org_info()
    assert info == {"identity": {"organization_id": "00D1"}, "limits": {"DailyApiRequests": {}}}


def test_top_fields_unwraps_response():
    client, session = _client(_response(body={"fields": [{"field": "StageName", "count": 3}]}))

    assert client.top_fields("Opportunity", 3) == [{"field": "StageName", "count": 3}]
    assert session.request.call_args.kwargs["params"] == {"object": "Opportunity", "top": 3}


def test_bundle_generation_then_fresh_fields():
    client, session = _client(
        _response(body=ALLOWLIST),
        _response(body={"persisted": True}),
        _response(body={"objects": {"Opportunity": {"fields": ["Id", "Name", "Amount", "NextStep"]}}}),
    )

    assert len(client.available_fields("Opportunity")) == 3
    client.generate_context_bundle("Opportunity", run_queries=True)
    assert session.request.call_args.kwargs["json"]["runQueries"] is True
    assert "NextStep" in client.available_fields("Opportunity")
    assert session.request.call_count == 3


def test_backoff_sleeps_between_attempts():
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = [requests.exceptions.ConnectionError("x"), _response(body={"status": "ok"})]
    client = HttpCapabilityClient("http://svc", retry_delay=0.25, session=session)

    with patch("orgchat.capability.client.time.sleep") as sleep:
        client.health()

    sleep.assert_called_once_with(0.25)


def test_refresh_without_bundle_sees_new_fields():
    client, session = _client(
        _response(body={"objects": {"Opportunity": {"fields": ["Id", "Name"]}}}),
        _response(body={"objects": {"Opportunity": {"fields": ["Id", "Name", "Amount", "StageName"]}}}),
    )
    agent = ChatAgent(client, AgentConfig(use_llm=False))
    try:
        assert agent.catalog.fields("Opportunity") == frozenset({"Id", "Name"})
        result = agent.refresh_schema("Opportunity", generate_bundle=False)
    finally:
        agent.close()

    assert result["fieldCount"] == 4
    assert session.request.call_count == 2


def test_expired_catalog_entry_refetches_allowlist():
    client, session = _client(
        _response(body={"objects": {"Account": {"fields": ["Id"]}}}),
        _response(body={"objects": {"Account": {"fields": ["Id", "Name"]}}}),
    )
    catalog = SchemaCatalog(client, ttl_seconds=0)

    assert catalog.fields("Account") == frozenset({"Id"})
    assert catalog.fields("Account") == frozenset({"Id", "Name"})
    assert session.request.call_count == 2
