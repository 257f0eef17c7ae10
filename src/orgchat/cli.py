"""CLI entrypoint for orgchat."""

import json
import logging
import sys

import click

from orgchat import __version__
from orgchat.agents.contracts import ChatResponse
from orgchat.config import AgentConfig
from orgchat.errors import CapabilityError
from orgchat.orchestrator.runtime import ChatAgent


EXIT_WORDS = {"exit", "quit", ":q", "bye"}


def _agent(ctx: click.Context) -> ChatAgent:
    """Return the agent for this invocation, building it on first use."""
    obj = ctx.ensure_object(dict)
    if obj.get("agent") is None:
        obj["agent"] = ChatAgent(config=obj["config"])
    return obj["agent"]


def _echo_response(response: ChatResponse, show_json: bool) -> None:
    if show_json:
        click.echo(response.model_dump_json(indent=2))
        return
    click.echo(response.response)
    if response.function_called:
        status = f"error: {response.error}" if response.error else "ok"
        click.echo(click.style(f"\n[{response.function_called} · {status}]", dim=True))
    for warning in response.warnings:
        click.echo(click.style(f"⚠️  {warning}", fg="yellow"), err=True)


@click.group()
@click.version_option(__version__)
@click.option("--base-url", envvar="ORGCHAT_BASE_URL", default=None, help="Capability service URL")
@click.option("--no-llm", is_flag=True, default=False, help="Disable language-model escalation")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, base_url: str | None, no_llm: bool, verbose: bool):
    """orgchat - Conversational assistant for CRM data."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    obj = ctx.ensure_object(dict)
    if "config" not in obj:
        overrides = {}
        if base_url:
            overrides["base_url"] = base_url
        if no_llm:
            overrides["use_llm"] = False
        obj["config"] = AgentConfig.from_env(**overrides)


@main.command()
@click.argument("message")
@click.option("--user", "-u", default="cli", show_default=True, help="Conversation owner")
@click.option("--object", "object_hint", default=None, help="Object to ask about (e.g. Account)")
@click.option("--json", "show_json", is_flag=True, default=False, help="Print the full JSON response")
@click.pass_context
def ask(ctx: click.Context, message: str, user: str, object_hint: str | None, show_json: bool):
    """Send a single message and print the reply."""
    response = _agent(ctx).process_message(user, message, object_hint)
    _echo_response(response, show_json)
    if response.error:
        sys.exit(1)


@main.command()
@click.option("--user", "-u", default="cli", show_default=True, help="Conversation owner")
@click.option("--object", "object_hint", default=None, help="Object to ask about by default")
@click.pass_context
def chat(ctx: click.Context, user: str, object_hint: str | None):
    """Start an interactive conversation (type 'exit' to leave)."""
    agent = _agent(ctx)
    click.echo(f"💬 {agent.config.agent_name} - ask about your CRM data. Type 'exit' to leave.\n")

    while True:
        try:
            message = click.prompt("you", prompt_suffix="> ", default="", show_default=False)
        except (EOFError, click.Abort):
            click.echo()
            break

        command = message.strip().lower()
        if command in EXIT_WORDS:
            break
        if command == "/stats":
            stats = agent.get_conversation_stats(user)
            click.echo(f"{stats.message_count} messages, {stats.duration_ms:.0f}ms total\n")
            continue
        if command == "/clear":
            agent.clear_conversation(user)
            click.echo("🧹 Conversation cleared.\n")
            continue
        if not command:
            continue

        response = agent.process_message(user, message, object_hint)
        click.echo()
        _echo_response(response, show_json=False)
        click.echo()

    stats = agent.get_conversation_stats(user)
    click.echo(f"👋 Goodbye! ({stats.message_count} messages this session)")


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Show capability service health and org information."""
    agent = _agent(ctx)
    health = agent.health()
    icon = "✅" if health["status"] == "ok" else "⚠️ "
    click.echo(f"{icon} Agent: {health['agent']} ({health['status']})")
    click.echo(f"   Service: {agent.config.base_url}")
    llm = health["llm"]
    if llm["enabled"]:
        click.echo(f"   LLM: {llm['provider']} (intent: {llm['intent_model']}, narrator: {llm['narrator_model']})")
    else:
        click.echo("   LLM: disabled (rules only)")
    if health["archived_turns"] is not None:
        click.echo(f"   Archived turns: {health['archived_turns']}")
    click.echo(json.dumps(health["service"], indent=2, default=str))

    if health["status"] != "ok":
        sys.exit(2)

    try:
        info = agent.org_info()
    except CapabilityError as e:
        click.echo(f"❌ Unable to read org info: {e.message}", err=True)
        sys.exit(2)
    click.echo("\nOrg:")
    click.echo(json.dumps(info, indent=2, default=str))


@main.command()
@click.argument("object_name")
@click.option("--no-generate", is_flag=True, default=False, help="Only drop cached schema, do not regenerate")
@click.pass_context
def bundle(ctx: click.Context, object_name: str, no_generate: bool):
    """Generate a context bundle for OBJECT_NAME and refresh cached schema."""
    agent = _agent(ctx)
    try:
        result = agent.refresh_schema(object_name, generate_bundle=not no_generate)
    except CapabilityError as e:
        click.echo(f"❌ Error refreshing {object_name}: {e.message}", err=True)
        for suggestion in e.suggestions:
            click.echo(f"   💡 {suggestion}", err=True)
        sys.exit(1)

    click.echo(f"✅ {object_name}: {result['fieldCount']} fields available")
    if result.get("bundle"):
        click.echo(json.dumps(result["bundle"], indent=2, default=str))


@main.command()
@click.argument("user")
@click.option("--limit", "-n", default=20, show_default=True, type=click.IntRange(1, 500), help="Turns to show")
@click.pass_context
def history(ctx: click.Context, user: str, limit: int):
    """Show archived turns for USER (requires ORGCHAT_ARCHIVE_PATH)."""
    agent = _agent(ctx)
    if agent.store.archive is None:
        click.echo("❌ No archive configured. Set ORGCHAT_ARCHIVE_PATH.", err=True)
        sys.exit(1)

    turns = agent.get_archived_history(user, limit=limit)
    if not turns:
        click.echo(f"No archived turns for {user}.")
        return
    for turn in turns:
        intent = turn.get("intent") or {}
        click.echo(f"[{turn.get('timestamp', '')}] {intent.get('operation', '?')} {intent.get('target_object', '')}")
        click.echo(f"  you> {(turn.get('utterance') or {}).get('text', '')}")
        click.echo(f"  bot> {turn.get('reply', '')}")


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int):
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from orgchat.api.server import create_app

    uvicorn.run(create_app(_agent(ctx)), host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
