"""LLM router for dispatching to the configured provider.

The agent uses a language model for two roles:
- intent: classify utterances the rule table cannot resolve
- narrator: optionally phrase replies for successful data turns

Supported providers:
- ollama: Local models via Ollama (default)
- anthropic: Claude models via Anthropic API
- openai: GPT models via OpenAI API

Environment variables:
- ORGCHAT_LLM_PROVIDER: Provider to use (ollama, anthropic, openai)
- ORGCHAT_ANTHROPIC_API_KEY / ANTHROPIC_API_KEY: Anthropic API key
- ORGCHAT_OPENAI_API_KEY / OPENAI_API_KEY: OpenAI API key
- ORGCHAT_INTENT_MODEL: Model for intent classification
- ORGCHAT_NARRATOR_MODEL: Model for narration
"""

import importlib
import importlib.util
import json
import os
import re
from typing import Any

from orgchat.llm.ollama_client import ollama_chat


DEFAULT_MODELS = {
    "ollama": {
        "intent": "qwen2.5:7b-instruct",
        "narrator": "llama3.1:8b",
    },
    "anthropic": {
        "intent": "claude-3-5-haiku-20241022",
        "narrator": "claude-3-5-haiku-20241022",
    },
    "openai": {
        "intent": "gpt-4o-mini",
        "narrator": "gpt-4o-mini",
    },
}

ROLES = ("intent", "narrator")


def _call_anthropic(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> str:
    """Call Anthropic API (Claude models)."""
    try:
        anthropic = importlib.import_module("anthropic")
    except ImportError:
        raise ImportError(
            "anthropic package not installed. "
            "Install with: pip install 'orgchat[anthropic]'"
        ) from None

    api_key = os.environ.get("ORGCHAT_ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise ValueError(
            "Anthropic API key not found. "
            "Set ORGCHAT_ANTHROPIC_API_KEY or ANTHROPIC_API_KEY environment variable."
        )

    client = anthropic.Anthropic(api_key=api_key, timeout=timeout)

    # Anthropic takes the system prompt separately
    system_content = None
    api_messages = []
    for msg in messages:
        if msg["role"] == "system":
            system_content = msg["content"]
        else:
            api_messages.append(msg)

    response = client.messages.create(
        model=model,
        max_tokens=max_tokens or 1024,
        temperature=temperature,
        system=system_content or "You are a helpful CRM data assistant.",
        messages=api_messages,
    )

    return response.content[0].text


def _call_openai(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> str:
    """Call OpenAI API (GPT models)."""
    try:
        openai_module = importlib.import_module("openai")
    except ImportError:
        raise ImportError(
            "openai package not installed. "
            "Install with: pip install 'orgchat[openai]'"
        ) from None

    api_key = os.environ.get("ORGCHAT_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise ValueError(
            "OpenAI API key not found. "
            "Set ORGCHAT_OPENAI_API_KEY or OPENAI_API_KEY environment variable."
        )

    client = openai_module.OpenAI(api_key=api_key, timeout=timeout)

    response = client.chat.completions.create(
        model=model,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens or 1024,
    )

    return response.choices[0].message.content or ""


def call_llm(
    messages: list[dict[str, str]],
    *,
    role: str = "intent",
    max_tokens: int | None = None,
    timeout: int = 30,
    provider: str | None = None,
    model: str | None = None,
) -> str:
    """Route LLM call to the configured provider for a role.

    Args:
        messages: List of message dicts with 'role' and 'content'
        role: 'intent' or 'narrator'
        max_tokens: Maximum tokens in response (optional)
        timeout: Request timeout in seconds
        provider: Provider override (default: ORGCHAT_LLM_PROVIDER or ollama)
        model: Model override

    Returns:
        Response text content

    Raises:
        ValueError: If role/provider is invalid or the LLM call fails
        ConnectionError: If the provider cannot be reached
        ImportError: If the provider's SDK is not installed
    """
    if role not in ROLES:
        raise ValueError(f"Invalid role: {role}. Must be one of {', '.join(ROLES)}")

    resolved_provider = (provider or os.environ.get("ORGCHAT_LLM_PROVIDER", "ollama")).lower()
    if resolved_provider not in DEFAULT_MODELS:
        raise ValueError(
            f"Unsupported LLM provider: {resolved_provider}. "
            "Supported: ollama, anthropic, openai"
        )

    default_model = DEFAULT_MODELS[resolved_provider][role]
    if role == "intent":
        role_model = os.environ.get("ORGCHAT_INTENT_MODEL", default_model)
        temperature = float(os.environ.get("ORGCHAT_INTENT_TEMPERATURE", "0"))
    else:
        role_model = os.environ.get("ORGCHAT_NARRATOR_MODEL", default_model)
        temperature = float(os.environ.get("ORGCHAT_NARRATOR_TEMPERATURE", "0.3"))

    if model is not None:
        role_model = model

    if resolved_provider == "anthropic":
        return _call_anthropic(messages, role_model, temperature, max_tokens, timeout)
    if resolved_provider == "openai":
        return _call_openai(messages, role_model, temperature, max_tokens, timeout)
    return ollama_chat(
        messages,
        model=role_model,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )


def parse_json_response(response: str) -> dict[str, Any]:
    """Parse a JSON object from an LLM response.

    Handles markdown code fences and prose around the object.

    Args:
        response: Raw LLM response text

    Returns:
        Parsed JSON dict

    Raises:
        ValueError: If no JSON object can be parsed
    """
    text = response.strip()
    if text.startswith("```"):
        lines = text.split("\n")[1:]  # Remove ```json line
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines).strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if not match:
            raise ValueError(f"Failed to parse JSON: {e}") from e
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError:
            raise ValueError(f"Failed to parse JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    return data


def _has_module(module_name: str) -> bool:
    """Return True when a module is installed in the current environment."""
    return importlib.util.find_spec(module_name) is not None


def get_available_providers() -> list[str]:
    """Get providers usable with the installed packages and API keys."""
    available = ["ollama"]

    if _has_module("anthropic") and (
        os.environ.get("ORGCHAT_ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY")
    ):
        available.append("anthropic")

    if _has_module("openai") and (
        os.environ.get("ORGCHAT_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
    ):
        available.append("openai")

    return available


def get_current_config(
    provider: str | None = None,
    model_overrides: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Get current LLM configuration.

    Args:
        provider: Provider override, resolved the same way ``call_llm`` does
        model_overrides: Per-role model overrides (``intent``, ``narrator``)
    """
    provider = (provider or os.environ.get("ORGCHAT_LLM_PROVIDER", "ollama")).lower()
    defaults = DEFAULT_MODELS.get(provider, DEFAULT_MODELS["ollama"])
    overrides = model_overrides or {}
    return {
        "provider": provider,
        "intent_model": overrides.get("intent") or os.environ.get("ORGCHAT_INTENT_MODEL", defaults["intent"]),
        "narrator_model": overrides.get("narrator") or os.environ.get("ORGCHAT_NARRATOR_MODEL", defaults["narrator"]),
        "available_providers": get_available_providers(),
    }
