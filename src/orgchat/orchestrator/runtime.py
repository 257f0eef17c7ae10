"""Chat agent runtime.

This module wires the components into one turn:
Resolve intent → Synthesize query → Dispatch → Synthesize reply → Record turn

Key features:
- Turns for one user are serialized; different users run concurrently
- At most one capability call per turn, bounded by a timeout
- Every failure is converted into an apologetic reply and a recorded Turn;
  nothing escapes ``process_message``
- Conversation memory is an explicit store owned by the agent instance
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from orgchat.agents.contracts import (
    ChatResponse,
    DispatchOutcome,
    ErrorSummary,
    InsightMetadata,
    Intent,
    IntentSource,
    Operation,
    QuerySpec,
    SessionStats,
    Turn,
    Utterance,
)
from orgchat.capability.catalog import SchemaCatalog
from orgchat.capability.client import CapabilityClient, HttpCapabilityClient
from orgchat.config import AgentConfig
from orgchat.errors import CapabilityError, CapabilityTimeout, OrgChatError
from orgchat.explain.narrator import APOLOGY, ResponseSynthesizer
from orgchat.llm.router import get_current_config
from orgchat.memory.archive import TurnArchive
from orgchat.memory.store import ConversationStore
from orgchat.orchestrator.dispatcher import FunctionDispatcher
from orgchat.planning.intent import IntentResolver, describe_intent, normalize_text
from orgchat.planning.query_synth import synthesize_query


logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"


@dataclass
class _UserLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class ChatAgent:
    """Conversational agent over the CRM capability service.

    Usage:
        agent = ChatAgent(HttpCapabilityClient("http://localhost:3000"))
        response = agent.process_message("user-1", "show me recent opportunities")
        print(response.response)
    """

    def __init__(
        self,
        client: CapabilityClient | None = None,
        config: AgentConfig | None = None,
        *,
        store: ConversationStore | None = None,
        llm: Callable[..., str] | None = None,
    ):
        """Initialize the agent.

        Args:
            client: Capability client (default: HTTP client for ``config.base_url``)
            config: Agent configuration
            store: Conversation store (default: in-memory, archived when
                ``config.archive_path`` is set)
            llm: Language-model callable shared by the resolver and narrator
        """
        self.config = config or AgentConfig()
        self.client = client or HttpCapabilityClient(
            self.config.base_url,
            timeout=self.config.capability_timeout,
        )
        if store is None:
            archive = TurnArchive(self.config.archive_path) if self.config.archive_path else None
            store = ConversationStore(self.config.max_turns, archive=archive)
        self.store = store

        self.catalog = SchemaCatalog(self.client, ttl_seconds=self.config.schema_ttl_seconds)
        self.resolver = IntentResolver(self.config, llm=llm)
        self.dispatcher = FunctionDispatcher(self.client, self.config)
        self.narrator = ResponseSynthesizer(self.config, llm=llm)

        self._locks: dict[str, _UserLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _user_turn(self, user_id: str) -> Iterator[None]:
        """Hold the user's lock for the duration of the block.

        Entries live only while some thread holds or waits on them, so the
        map does not grow with every user ever seen.
        """
        with self._locks_guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = _UserLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[user_id]

    # =========================================================================
    # Turns
    # =========================================================================

    def process_message(
        self,
        user_id: str,
        text: str,
        object_hint: str | None = None,
    ) -> ChatResponse:
        """Process one user message.

        Args:
            user_id: Conversation owner
            text: Raw user text
            object_hint: Optional object the caller wants the question applied to

        Returns:
            ChatResponse (always; failures become apologetic replies)
        """
        user_id = (user_id or "").strip() or ANONYMOUS_USER
        text = text if isinstance(text, str) else ""
        start = time.perf_counter()

        with self._user_turn(user_id):
            history = self.store.history(user_id)
            utterance = Utterance(text=text, user_id=user_id)
            intent = self._placeholder_intent(text, object_hint)
            outcome = DispatchOutcome()
            warnings: list[str] = []

            try:
                intent = self.resolver.resolve(
                    text,
                    object_hint,
                    last_object=self.store.last_object(user_id),
                )
                logger.debug("Resolved intent for %s: %s", user_id, describe_intent(intent))

                spec = self._synthesize(intent)
                if spec is not None:
                    warnings.extend(spec.warnings)

                outcome = self.dispatcher.dispatch(intent, spec)
                reply = self.narrator.synthesize(intent, outcome, history)

            except OrgChatError as e:
                logger.warning("Turn failed for %s (%s): %s", user_id, e.code, e.message)
                outcome = self._failed(intent, e.summary())
                reply = self._failure_reply(intent, outcome, history)

            except Exception as e:
                logger.exception("Unexpected error processing message for %s", user_id)
                outcome = self._failed(
                    intent,
                    {
                        "type": type(e).__name__,
                        "code": "internal_error",
                        "message": str(e)[:500],
                        "details": {},
                    },
                )
                reply = self._failure_reply(intent, outcome, history)

            turn = Turn(
                user_id=user_id,
                utterance=utterance,
                intent=intent,
                function_called=outcome.function_called,
                function_result=outcome.function_result,
                error=outcome.error,
                reply=reply,
                warnings=tuple(warnings),
                duration_ms=(time.perf_counter() - start) * 1000,
            )
            self.store.append(user_id, turn)

        logger.info(
            "Turn user=%s operation=%s function=%s ok=%s %.0fms",
            user_id,
            intent.operation.value,
            outcome.function_called or "-",
            outcome.error is None,
            turn.duration_ms,
        )

        return ChatResponse(
            response=reply,
            function_called=outcome.function_called,
            function_result=outcome.function_result,
            error=outcome.error.code if outcome.error else None,
            warnings=warnings,
            low_confidence=intent.low_confidence,
        )

    def _synthesize(self, intent: Intent) -> QuerySpec | None:
        """Discover the schema and build a QuerySpec for record operations.

        Discovery shares the capability timeout. Slow field discovery fails
        the turn; slow insight discovery falls back to empty metadata.
        """
        if intent.operation not in (Operation.LIST_RECORDS, Operation.AGGREGATE):
            return None
        object_name = intent.target_object
        fields = self.dispatcher.run_bounded("available_fields", lambda: self.catalog.fields(object_name))
        try:
            insights = self.dispatcher.run_bounded("object_insights", lambda: self.catalog.insights(object_name))
        except CapabilityTimeout as e:
            logger.warning("Insight discovery for %s skipped: %s", object_name, e.message)
            insights = InsightMetadata(object_name=object_name)
        return synthesize_query(intent, fields, insights, config=self.config)

    def _placeholder_intent(self, text: str, object_hint: str | None) -> Intent:
        """Intent recorded when resolution itself fails."""
        return Intent(
            operation=Operation.SMALLTALK,
            target_object=(object_hint or "").strip() or self.config.default_object,
            query_text=normalize_text(text),
            confidence=0.0,
            low_confidence=True,
            source=IntentSource.FALLBACK,
            rationale="Resolution failed",
        )

    def _failed(self, intent: Intent, summary: dict[str, Any]) -> DispatchOutcome:
        return DispatchOutcome(
            function_called=self.dispatcher.function_for(intent),
            error=ErrorSummary(**summary),
        )

    def _failure_reply(self, intent: Intent, outcome: DispatchOutcome, history: list[Turn]) -> str:
        try:
            return self.narrator.synthesize(intent, outcome, history)
        except Exception:
            logger.exception("Reply synthesis failed")
            return APOLOGY

    # =========================================================================
    # Conversation management
    # =========================================================================

    def get_conversation_stats(self, user_id: str) -> SessionStats:
        """Statistics for a user's conversation (zero-valued if none)."""
        return self.store.stats(user_id)

    def get_history(self, user_id: str) -> list[Turn]:
        return self.store.history(user_id)

    def get_archived_history(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Archived turns for a user, oldest first.

        Unlike ``get_history`` this reaches past the in-memory window and
        survives restarts. Empty when no archive is configured.
        """
        return self.store.archived(user_id, limit=limit)

    def clear_conversation(self, user_id: str) -> bool:
        """Forget a user's conversation, archived turns included.

        Returns True if anything existed.
        """
        with self._user_turn(user_id):
            return self.store.reset(user_id)

    # =========================================================================
    # Schema and service
    # =========================================================================

    def refresh_schema(self, object_name: str, generate_bundle: bool = True) -> dict[str, Any]:
        """Refresh what the agent knows about an object.

        Args:
            object_name: Object to refresh
            generate_bundle: Regenerate the object's context bundle first

        Returns:
            Dict with the object, the bundle result (if generated) and the
            number of available fields afterwards

        Raises:
            CapabilityError: If the service call fails
        """
        bundle = None
        if generate_bundle:
            bundle = self.client.generate_context_bundle(object_name)
        self.catalog.invalidate(object_name)
        fields = self.catalog.fields(object_name)
        logger.info("Refreshed schema for %s (%d fields)", object_name, len(fields))
        return {
            "object": object_name,
            "bundle": bundle,
            "fieldCount": len(fields),
        }

    def health(self) -> dict[str, Any]:
        """Agent and capability service health."""
        try:
            service = self.client.health()
            status = "ok"
        except CapabilityError as e:
            service = e.summary()
            status = "degraded"
        return {
            "status": status,
            "agent": self.config.agent_name,
            "service": service,
            "sessions": len(self.store.user_ids()),
            "archived_turns": self.store.archived_count(),
            "llm": {
                "enabled": self.config.use_llm,
                **get_current_config(self.config.llm_provider, self.config.llm_model_overrides),
            },
        }

    def org_info(self) -> dict[str, Any]:
        """Identity and org limits from the capability service.

        Raises:
            CapabilityError: If the service call fails
        """
        return self.client.org_info()

    def close(self) -> None:
        self.dispatcher.close()
