"""Agent configuration.

Values default to the constants below and can be overridden from the
environment with ``AgentConfig.from_env()``:

- ORGCHAT_BASE_URL: Capability service base URL (default http://localhost:3000)
- ORGCHAT_DEFAULT_OBJECT: Object used when none can be inferred (default Opportunity)
- ORGCHAT_KNOWN_OBJECTS: Comma-separated object names recognised in utterances
- ORGCHAT_MAX_TURNS: Conversation window per user (default 20)
- ORGCHAT_DEFAULT_LIMIT: Records returned when the user gives no limit (default 5)
- ORGCHAT_MAX_LIMIT: Hard cap for any query limit (default 50)
- ORGCHAT_MAX_FIELDS: Cap on selected fields per query (default 12)
- ORGCHAT_CAPABILITY_TIMEOUT: Seconds to wait for one capability call (default 15)
- ORGCHAT_USE_LLM: Escalate unclear utterances to the language model (default 1)
- ORGCHAT_LLM_NARRATION: Let the language model phrase data replies (default 0)
- ORGCHAT_LLM_PROVIDER: ollama, anthropic or openai
- ORGCHAT_SCHEMA_TTL: Seconds to cache discovered fields/insights (default 300)
- ORGCHAT_ARCHIVE_PATH: DuckDB file that archives every turn (optional)
- ORGCHAT_AGENT_NAME: Assistant name used in replies
"""

import os
from dataclasses import dataclass, field


DEFAULT_KNOWN_OBJECTS = (
    "Opportunity",
    "Account",
    "Contact",
    "Lead",
    "Case",
    "Task",
    "Event",
    "User",
    "Campaign",
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass
class AgentConfig:
    """Configuration for the chat agent and its components."""

    # Capability service
    base_url: str = "http://localhost:3000"
    capability_timeout: float = 15.0
    schema_ttl_seconds: float = 300.0

    # Object inference
    default_object: str = "Opportunity"
    known_objects: tuple[str, ...] = DEFAULT_KNOWN_OBJECTS

    # Query bounds
    default_limit: int = 5
    max_limit: int = 50
    max_fields: int = 12
    top_fields_count: int = 10
    suggestion_min_score: int = 20

    # Memory
    max_turns: int = 20
    archive_path: str | None = None

    # Language model
    use_llm: bool = True
    use_llm_narration: bool = False
    llm_provider: str | None = None
    llm_model_overrides: dict[str, str] = field(default_factory=dict)
    rule_confidence_threshold: float = 0.6

    # Persona
    agent_name: str = "Org Assistant"

    def __post_init__(self) -> None:
        if self.max_limit < 1:
            raise ValueError("max_limit must be at least 1")
        if not 1 <= self.default_limit <= self.max_limit:
            raise ValueError("default_limit must be between 1 and max_limit")
        if self.max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        if self.max_fields < 1:
            raise ValueError("max_fields must be at least 1")
        if self.capability_timeout <= 0:
            raise ValueError("capability_timeout must be positive")

    @classmethod
    def from_env(cls, **overrides) -> "AgentConfig":
        """Build a config from ORGCHAT_* environment variables.

        Args:
            **overrides: Explicit values that win over the environment

        Returns:
            AgentConfig instance
        """
        known = os.environ.get("ORGCHAT_KNOWN_OBJECTS")
        values = {
            "base_url": os.environ.get("ORGCHAT_BASE_URL", cls.base_url),
            "capability_timeout": _env_float("ORGCHAT_CAPABILITY_TIMEOUT", cls.capability_timeout),
            "schema_ttl_seconds": _env_float("ORGCHAT_SCHEMA_TTL", cls.schema_ttl_seconds),
            "default_object": os.environ.get("ORGCHAT_DEFAULT_OBJECT", cls.default_object),
            "known_objects": (
                tuple(o.strip() for o in known.split(",") if o.strip())
                if known
                else DEFAULT_KNOWN_OBJECTS
            ),
            "default_limit": _env_int("ORGCHAT_DEFAULT_LIMIT", cls.default_limit),
            "max_limit": _env_int("ORGCHAT_MAX_LIMIT", cls.max_limit),
            "max_fields": _env_int("ORGCHAT_MAX_FIELDS", cls.max_fields),
            "max_turns": _env_int("ORGCHAT_MAX_TURNS", cls.max_turns),
            "archive_path": os.environ.get("ORGCHAT_ARCHIVE_PATH") or None,
            "use_llm": _env_bool("ORGCHAT_USE_LLM", cls.use_llm),
            "use_llm_narration": _env_bool("ORGCHAT_LLM_NARRATION", cls.use_llm_narration),
            "llm_provider": os.environ.get("ORGCHAT_LLM_PROVIDER") or None,
            "agent_name": os.environ.get("ORGCHAT_AGENT_NAME", cls.agent_name),
        }
        values.update(overrides)
        return cls(**values)
