"""CLI tests using click's CliRunner with an injected agent."""

import json

import pytest
from click.testing import CliRunner

from orgchat.cli import main
from orgchat.config import AgentConfig
from orgchat.errors import CapabilityUnavailable
from orgchat.orchestrator.runtime import ChatAgent

from conftest import FakeCapabilityClient


@pytest.fixture
def runner():
    return CliRunner()


def _invoke(runner, agent, args, **kwargs):
    return runner.invoke(main, args, obj={"agent": agent, "config": agent.config}, **kwargs)


def test_ask(runner, agent):
    result = _invoke(runner, agent, ["ask", "show me recent opportunities"])

    assert result.exit_code == 0, result.output
    assert "I found 4 Opportunity records" in result.output
    assert "query_records" in result.output


def test_ask_json(runner, agent):
    result = _invoke(runner, agent, ["ask", "--json", "--object", "Account", "show me 2 records"])

    assert result.exit_code == 0, result.output
    body = json.loads(result.stdout)
    assert body["function_called"] == "query_records"
    assert body["function_result"]["object"] == "Account"


def test_ask_failure_exits_nonzero(runner):
    slow = ChatAgent(FakeCapabilityClient(delay=0.5), AgentConfig(use_llm=False, capability_timeout=0.05))
    try:
        result = _invoke(runner, slow, ["ask", "show me opportunities"])
    finally:
        slow.close()

    assert result.exit_code == 1
    assert "I apologize" in result.output


def test_chat_repl(runner, agent):
    result = _invoke(runner, agent, ["chat", "--user", "repl"], input="hello\nshow me accounts\n/stats\nexit\n")

    assert result.exit_code == 0, result.output
    assert "2 messages" in result.output
    assert "Goodbye! (2 messages this session)" in result.output


def test_chat_repl_clear(runner, agent):
    result = _invoke(runner, agent, ["chat"], input="hello\n/clear\nquit\n")

    assert "Conversation cleared." in result.output
    assert "Goodbye! (0 messages this session)" in result.output


def test_status(runner, agent):
    result = _invoke(runner, agent, ["status"])

    assert result.exit_code == 0, result.output
    assert "(ok)" in result.output
    assert "00D000000000001" in result.output
    assert "LLM: disabled" in result.output


def test_status_degraded(runner, config):
    agent = ChatAgent(FakeCapabilityClient(failures={"health": CapabilityUnavailable("down")}), config)
    try:
        result = _invoke(runner, agent, ["status"])
    finally:
        agent.close()

    assert result.exit_code == 2
    assert "(degraded)" in result.output


def test_bundle(runner, agent, fake_client):
    result = _invoke(runner, agent, ["bundle", "Opportunity"])

    assert result.exit_code == 0, result.output
    assert "Opportunity: 12 fields available" in result.output
    assert "generate_context_bundle" in fake_client.names()


def test_bundle_failure(runner, config):
    failing = FakeCapabilityClient(
        failures={
            "generate_context_bundle": CapabilityUnavailable(
                "Unknown object", function="generate_context_bundle", suggestions=["Opportunity"]
            )
        }
    )
    agent = ChatAgent(failing, config)
    try:
        result = _invoke(runner, agent, ["bundle", "Opportunty"])
    finally:
        agent.close()

    assert result.exit_code == 1
    assert "Unknown object" in result.output


def test_status_shows_model_routing(runner, fake_client):
    agent = ChatAgent(fake_client, AgentConfig(llm_provider="ollama", llm_model_overrides={"intent": "qwen-test"}))
    try:
        result = _invoke(runner, agent, ["status"])
    finally:
        agent.close()

    assert result.exit_code == 0, result.output
    assert "LLM: ollama (intent: qwen-test" in result.output


def test_history_reads_archive(runner, fake_client, tmp_path):
    agent = ChatAgent(fake_client, AgentConfig(use_llm=False, archive_path=str(tmp_path / "turns.duckdb")))
    try:
        agent.process_message("u1", "show me accounts")
        result = _invoke(runner, agent, ["history", "u1"])
        empty = _invoke(runner, agent, ["history", "nobody"])
    finally:
        agent.close()

    assert result.exit_code == 0, result.output
    assert "list-records Account" in result.output
    assert "you> show me accounts" in result.output
    assert "No archived turns for nobody." in empty.output


def test_history_without_archive(runner, agent):
    result = _invoke(runner, agent, ["history", "u1"])

    assert result.exit_code == 1
    assert "No archive configured" in result.output
