"""End-to-end turn tests for ChatAgent over the in-memory capability service."""

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest

from orgchat.agents.contracts import IntentSource, Operation
from orgchat.config import AgentConfig
from orgchat.errors import CapabilityUnavailable
from orgchat.explain.narrator import APOLOGY, LOW_CONFIDENCE_HEDGE
from orgchat.orchestrator.runtime import ChatAgent

from conftest import OPPORTUNITY_FIELDS, FakeCapabilityClient, StubLLM


class CountingClient(FakeCapabilityClient):
    """Fake service that measures how many queries run at once."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.active = 0
        self.max_active = 0
        self._active_lock = threading.Lock()

    def execute_query(self, spec):
        with self._active_lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(0.2)
            return super().execute_query(spec)
        finally:
            with self._active_lock:
                self.active -= 1


# ============================================================================
# Core scenarios
# ============================================================================

def test_greeting_makes_no_capability_call(agent, fake_client):
    response = agent.process_message("u1", "Hi! What can you help me with?")

    assert response.function_called is None
    assert response.function_result is None
    assert response.error is None
    assert agent.config.agent_name in response.response
    assert fake_client.calls == []
    assert agent.get_conversation_stats("u1").message_count == 1


def test_recent_opportunities(agent, fake_client):
    response = agent.process_message("u1", "Show me recent opportunities")

    assert response.function_called == "query_records"
    assert response.error is None
    assert response.function_result["recordCount"] == 4

    spec = fake_client.specs[-1]
    assert spec.object == "Opportunity"
    assert spec.limit == 5
    assert set(spec.fields) <= set(OPPORTUNITY_FIELDS)
    assert any(f.field == "CreatedDate" and f.value == "LAST_N_DAYS:30" for f in spec.filters)
    assert fake_client.names().count("execute_query") == 1
    assert response.response.startswith("I found 4 Opportunity records")


def test_each_data_turn_makes_one_record_call(agent, fake_client):
    agent.process_message("u1", "show me accounts")
    agent.process_message("u1", "show me opportunities")

    assert fake_client.names().count("execute_query") == 2
    # Field discovery is cached per object
    assert fake_client.names().count("available_fields") == 2


def test_timeout_becomes_apology_and_turn_is_recorded():
    slow = FakeCapabilityClient(delay=0.5)
    agent = ChatAgent(slow, AgentConfig(use_llm=False, capability_timeout=0.05))
    try:
        response = agent.process_message("u1", "show me opportunities")
    finally:
        agent.close()

    assert response.response.startswith(APOLOGY)
    assert response.function_result is None
    assert response.error == "capability_timeout"

    history = agent.get_history("u1")
    assert len(history) == 1
    assert history[0].error.code == "capability_timeout"
    assert history[0].function_called == "query_records"


def test_window_keeps_last_turns(fake_client):
    agent = ChatAgent(fake_client, AgentConfig(use_llm=False, max_turns=5))
    try:
        for i in range(6):
            agent.process_message("u1", f"hello number {i}")
    finally:
        agent.close()

    history = agent.get_history("u1")
    assert len(history) == 5
    assert history[0].utterance.text == "hello number 1"
    assert agent.get_conversation_stats("u1").message_count == 5


# ============================================================================
# Conversation context
# ============================================================================

def test_follow_up_uses_last_object(agent, fake_client):
    agent.process_message("u1", "show me accounts")
    response = agent.process_message("u1", "how many are open?")

    assert response.function_called == "analyze_records"
    assert fake_client.specs[-1].object == "Account"
    assert response.function_result["recordCount"] == 2
    # Accounts have no IsClosed field
    assert any("IsClosed" in w for w in response.warnings)


def test_recall_uses_history_without_calls(agent, fake_client):
    agent.process_message("u1", "show me accounts")
    calls_before = len(fake_client.calls)

    response = agent.process_message("u1", "What did we just discuss?")

    assert response.function_called is None
    assert len(fake_client.calls) == calls_before
    assert '"show me accounts"' in response.response
    assert "found 2 Account records" in response.response


def test_users_do_not_see_each_other(agent):
    agent.process_message("alice", "show me accounts")
    response = agent.process_message("bob", "what did we just discuss?")

    assert "haven't discussed anything" in response.response
    assert agent.get_conversation_stats("alice").message_count == 1
    assert agent.get_conversation_stats("bob").message_count == 1


def test_blank_user_id_is_anonymous(agent):
    agent.process_message("   ", "hello")
    assert agent.get_conversation_stats("anonymous").message_count == 1


def test_object_hint_wins(agent, fake_client):
    agent.process_message("u1", "show me the first 2 records", object_hint="Account")
    spec = fake_client.specs[-1]
    assert spec.object == "Account"
    assert spec.limit == 2


# ============================================================================
# Failures
# ============================================================================

def test_discovery_failure_is_reported(config):
    client = FakeCapabilityClient(
        failures={"available_fields": CapabilityUnavailable("down", function="available_fields", status=503)}
    )
    agent = ChatAgent(client, config)
    try:
        response = agent.process_message("u1", "show me opportunities")
    finally:
        agent.close()

    assert response.error == "capability_unavailable"
    assert response.response.startswith(APOLOGY)
    assert "execute_query" not in client.names()
    assert agent.get_history("u1")[0].error.details["status"] == 503


def test_object_without_fields_is_schema_mismatch(config):
    client = FakeCapabilityClient(fields={"Opportunity": []})
    agent = ChatAgent(client, config)
    try:
        response = agent.process_message("u1", "show me opportunities")
    finally:
        agent.close()

    assert response.error == "schema_mismatch"
    assert "Opportunity" in response.response
    assert "execute_query" not in client.names()


def test_unexpected_error_never_escapes(agent):
    with patch.object(agent.resolver, "resolve", side_effect=RuntimeError("kaboom")):
        response = agent.process_message("u1", "show me opportunities")

    assert response.error == "internal_error"
    assert response.response.startswith(APOLOGY)
    assert "kaboom" not in response.response
    turn = agent.get_history("u1")[0]
    assert turn.error.type == "RuntimeError"
    assert turn.intent.source == IntentSource.FALLBACK


class SlowDiscoveryClient(FakeCapabilityClient):
    """Fake service whose field discovery hangs."""

    def available_fields(self, object_name):
        time.sleep(1.0)
        return super().available_fields(object_name)


def test_slow_field_discovery_is_bounded():
    client = SlowDiscoveryClient()
    agent = ChatAgent(client, AgentConfig(use_llm=False, capability_timeout=0.1))
    try:
        start = time.perf_counter()
        response = agent.process_message("u1", "show me opportunities")
        elapsed = time.perf_counter() - start
    finally:
        agent.close()

    assert elapsed < 0.8
    assert response.error == "capability_timeout"
    assert response.response.startswith(APOLOGY)
    assert "execute_query" not in client.names()
    assert agent.get_history("u1")[0].error.details["function"] == "available_fields"


def test_malformed_insights_do_not_fail_the_turn(config):
    client = FakeCapabilityClient(insights={"Opportunity": {"summary": {"fieldsCount": "many"}}})
    agent = ChatAgent(client, config)
    try:
        response = agent.process_message("u1", "show me recent opportunities")
    finally:
        agent.close()

    assert response.error is None
    assert response.function_called == "query_records"
    assert response.function_result["recordCount"] == 4


def test_salesperson_lookup_filters_users_by_name(config):
    client = FakeCapabilityClient(
        fields={"User": ["Id", "Name", "Email", "IsActive"]},
        records={"User": [{"Id": "005A", "Name": "Sarah Lee", "Email": "sarah@example.com", "IsActive": True}]},
    )
    agent = ChatAgent(client, config)
    try:
        response = agent.process_message("u1", "find salesperson Sarah Lee")
    finally:
        agent.close()

    assert response.error is None
    spec = client.specs[-1]
    assert spec.object == "User"
    assert [(f.field, f.operator, f.value) for f in spec.filters] == [("Name", "LIKE", "%Sarah Lee%")]


# ============================================================================
# Language-model escalation
# ============================================================================

def test_unclear_message_is_escalated(fake_client):
    llm = StubLLM(json.dumps({
        "operation": "list-records",
        "target_object": "account",
        "limit": 3,
        "confidence": 0.9,
        "rationale": "Wants accounts",
    }))
    agent = ChatAgent(fake_client, AgentConfig(capability_timeout=2.0), llm=llm)
    try:
        response = agent.process_message("u1", "anything interesting in Texas?")
    finally:
        agent.close()

    assert response.function_called == "query_records"
    assert response.low_confidence is False
    assert fake_client.specs[-1].object == "Account"
    assert fake_client.specs[-1].limit == 3
    assert agent.get_history("u1")[0].intent.source == IntentSource.LLM


def test_unreachable_model_degrades_to_hedged_reply(fake_client):
    agent = ChatAgent(fake_client, AgentConfig(capability_timeout=2.0), llm=StubLLM())
    try:
        response = agent.process_message("u1", "anything interesting in Texas?")
    finally:
        agent.close()

    assert response.low_confidence is True
    assert response.response.startswith(LOW_CONFIDENCE_HEDGE)
    assert response.error is None
    assert agent.get_history("u1")[0].intent.operation == Operation.SMALLTALK


# ============================================================================
# Concurrency
# ============================================================================

def test_different_users_run_concurrently(config):
    client = CountingClient()
    agent = ChatAgent(client, config)
    try:
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda u: agent.process_message(u, "show me opportunities"), ["a", "b", "c", "d"]))
    finally:
        agent.close()

    assert client.max_active >= 2
    for user in "abcd":
        assert agent.get_conversation_stats(user).message_count == 1


def test_same_user_turns_are_serialized(config):
    client = CountingClient()
    agent = ChatAgent(client, config)
    try:
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda i: agent.process_message("u1", f"show me {i + 1} opportunities"), range(4)))
    finally:
        agent.close()

    assert client.max_active == 1
    history = agent.get_history("u1")
    assert len(history) == 4
    assert all(t.error is None for t in history)


# ============================================================================
# Management
# ============================================================================

def test_clear_conversation(agent):
    agent.process_message("u1", "hello")

    assert agent.clear_conversation("u1") is True
    assert agent.get_conversation_stats("u1").message_count == 0
    assert agent.clear_conversation("u1") is False


def test_refresh_schema_regenerates_and_rediscovers(agent, fake_client):
    agent.process_message("u1", "show me opportunities")
    result = agent.refresh_schema("Opportunity")

    assert result["fieldCount"] == len(OPPORTUNITY_FIELDS)
    assert result["bundle"]["persisted"] is True
    assert fake_client.names().count("available_fields") == 2

    agent.refresh_schema("Opportunity", generate_bundle=False)
    assert fake_client.names().count("generate_context_bundle") == 1


def test_health(agent):
    agent.process_message("u1", "hello")
    health = agent.health()
    assert health["status"] == "ok"
    assert health["sessions"] == 1
    assert health["archived_turns"] is None
    assert health["llm"]["enabled"] is False


def test_user_locks_do_not_accumulate(agent):
    for user in ("a", "b", "c"):
        agent.process_message(user, "hello")
    assert agent._locks == {}

    agent.clear_conversation("a")
    assert agent._locks == {}
    assert agent.get_conversation_stats("b").message_count == 1


def test_archived_history_outlives_the_window(fake_client, tmp_path):
    config = AgentConfig(use_llm=False, max_turns=2, archive_path=str(tmp_path / "turns.duckdb"))
    agent = ChatAgent(fake_client, config)
    try:
        for text in ("hello", "show me accounts", "thanks"):
            agent.process_message("u1", text)
        archived = agent.get_archived_history("u1")
        health = agent.health()
        agent.clear_conversation("u1")
        after_clear = agent.get_archived_history("u1")
    finally:
        agent.close()

    assert len(agent.get_history("u1")) == 0
    assert [t["utterance"]["text"] for t in archived] == ["hello", "show me accounts", "thanks"]
    assert health["archived_turns"] == 3
    assert after_clear == []


def test_health_reports_model_routing(fake_client, monkeypatch):
    monkeypatch.delenv("ORGCHAT_INTENT_MODEL", raising=False)
    config = AgentConfig(llm_provider="openai", llm_model_overrides={"narrator": "gpt-test"})
    agent = ChatAgent(fake_client, config)
    try:
        llm = agent.health()["llm"]
    finally:
        agent.close()

    assert llm["enabled"] is True
    assert llm["provider"] == "openai"
    assert llm["intent_model"] == "gpt-4o-mini"
    assert llm["narrator_model"] == "gpt-test"
    assert "ollama" in llm["available_providers"]

def test_health_degraded(config):
    client = FakeCapabilityClient(failures={"health": CapabilityUnavailable("down", function="health")})
    agent = ChatAgent(client, config)
    try:
        health = agent.health()
    finally:
        agent.close()

    assert health["status"] == "degraded"
    assert health["service"]["code"] == "capability_unavailable"


@pytest.mark.parametrize("text", ["", "   "])
def test_empty_message_is_smalltalk(agent, fake_client, text):
    response = agent.process_message("u1", text)
    assert response.response
    assert response.function_called is None
    assert fake_client.calls == []
