"""Ollama client wrapper for local LLM inference.

Used by the router when the configured provider is ``ollama``. Connection
errors, timeouts and 5xx responses are retried with exponential backoff.
"""

import os
import time
from typing import Any

import requests


DEFAULT_BASE_URL = "http://localhost:11434"


def _backoff(attempt: int) -> None:
    time.sleep(0.5 * (2 ** attempt))


def _build_payload(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
) -> dict[str, Any]:
    options: dict[str, Any] = {
        "temperature": temperature,
        "num_ctx": int(os.environ.get("ORGCHAT_OLLAMA_NUM_CTX", "4096")),
    }
    if max_tokens is not None:
        options["num_predict"] = max_tokens
    return {"model": model, "messages": messages, "stream": False, "options": options}


def ollama_chat(
    messages: list[dict[str, str]],
    *,
    model: str,
    temperature: float = 0.0,
    max_tokens: int | None = None,
    timeout: int = 30,
    base_url: str | None = None,
    max_retries: int | None = None,
) -> str:
    """Send a chat request to Ollama and return the reply text.

    Args:
        messages: List of message dicts with 'role' and 'content'
        model: Ollama model name (e.g. qwen2.5:7b-instruct)
        temperature: Sampling temperature (0 for deterministic intent output)
        max_tokens: Maximum tokens in response (Ollama calls it num_predict)
        timeout: Request timeout in seconds
        base_url: Ollama URL (default: ORGCHAT_OLLAMA_BASE_URL or localhost)
        max_retries: Retries for transient failures (default: ORGCHAT_LLM_MAX_RETRIES or 1)

    Returns:
        Response text content

    Raises:
        ConnectionError: If Ollama cannot be reached
        ValueError: On timeouts, error responses or an unexpected response shape
    """
    base_url = (base_url or os.environ.get("ORGCHAT_OLLAMA_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
    if max_retries is None:
        max_retries = int(os.environ.get("ORGCHAT_LLM_MAX_RETRIES", "1"))

    endpoint = f"{base_url}/api/chat"
    payload = _build_payload(messages, model, temperature, max_tokens)

    for attempt in range(max_retries + 1):
        response = None
        retry = attempt < max_retries
        try:
            response = requests.post(endpoint, json=payload, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.ConnectionError as e:
            if retry:
                _backoff(attempt)
                continue
            raise ConnectionError(
                f"Cannot connect to Ollama at {base_url}. "
                "Ensure Ollama is running (ollama serve or Ollama app)."
            ) from e
        except requests.exceptions.Timeout as e:
            if retry:
                _backoff(attempt)
                continue
            raise ValueError(f"Ollama request timed out after {timeout}s (model: {model})") from e
        except requests.exceptions.HTTPError as e:
            status = response.status_code if response is not None else 0
            if 500 <= status < 600 and retry:
                _backoff(attempt)
                continue
            detail = response.text if response is not None else str(e)
            raise ValueError(f"Ollama API error ({status}): {detail}") from e

        result = response.json()
        message = result.get("message") if isinstance(result, dict) else None
        if not isinstance(message, dict) or "content" not in message:
            raise ValueError(f"Unexpected Ollama response format: {result}")
        return message["content"]

    raise ValueError(f"Ollama request failed after {max_retries + 1} attempts")
