"""FastAPI backend for the chat agent.

Provides an HTTP API that wraps ``ChatAgent``: one endpoint per agent
operation plus health and org information. Returns stable JSON contracts for
UI consumption.
"""

from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from orgchat import __version__
from orgchat.agents.contracts import ChatResponse, SessionStats
from orgchat.config import AgentConfig
from orgchat.errors import CapabilityError
from orgchat.orchestrator.runtime import ChatAgent


class ChatRequest(BaseModel):
    """Request to send one chat message."""

    user_id: str = Field(..., min_length=1, description="Conversation owner")
    message: str = Field(..., description="User message")
    object: str | None = Field(None, description="Optional object hint (e.g. Opportunity)")


class ClearResponse(BaseModel):
    user_id: str
    cleared: bool


class TurnView(BaseModel):
    """Compact view of a recorded turn."""

    turn_id: str
    message: str
    operation: str
    target_object: str
    function_called: str | None = None
    error: str | None = None
    reply: str
    timestamp: str


def _capability_http_error(e: CapabilityError) -> HTTPException:
    return HTTPException(status_code=502, detail=e.summary())


def create_app(agent: ChatAgent | None = None) -> FastAPI:
    """Build the API application.

    Args:
        agent: Agent to serve (default: built from ORGCHAT_* environment)

    Returns:
        FastAPI app
    """
    chat_agent = agent or ChatAgent(config=AgentConfig.from_env())

    app = FastAPI(title="orgchat API", version=__version__)
    app.state.agent = chat_agent

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        return chat_agent.health()

    @app.get("/org")
    def org_info() -> dict[str, Any]:
        """Identity and limits of the connected org."""
        try:
            return chat_agent.org_info()
        except CapabilityError as e:
            raise _capability_http_error(e) from e

    @app.post("/chat", response_model=ChatResponse)
    def chat(request: ChatRequest) -> ChatResponse:
        """Process one message.

        Failures inside the turn come back as a normal response with an
        apologetic reply and an ``error`` code.
        """
        if not request.message.strip():
            raise HTTPException(status_code=400, detail="Message cannot be empty")
        return chat_agent.process_message(request.user_id, request.message, request.object)

    @app.get("/chat/{user_id}/stats", response_model=SessionStats)
    def conversation_stats(user_id: str) -> SessionStats:
        return chat_agent.get_conversation_stats(user_id)

    @app.get("/chat/{user_id}/history", response_model=list[TurnView])
    def conversation_history(user_id: str) -> list[TurnView]:
        return [
            TurnView(
                turn_id=turn.turn_id,
                message=turn.utterance.text,
                operation=turn.intent.operation.value,
                target_object=turn.intent.target_object,
                function_called=turn.function_called,
                error=turn.error.code if turn.error else None,
                reply=turn.reply,
                timestamp=turn.timestamp.isoformat(),
            )
            for turn in chat_agent.get_history(user_id)
        ]

    @app.get("/chat/{user_id}/archive")
    def archived_history(user_id: str, limit: int = Query(20, ge=1, le=500)) -> list[dict[str, Any]]:
        """Archived turns beyond the in-memory window (empty without an archive)."""
        return chat_agent.get_archived_history(user_id, limit=limit)

    @app.delete("/chat/{user_id}", response_model=ClearResponse)
    def clear_conversation(user_id: str) -> ClearResponse:
        return ClearResponse(user_id=user_id, cleared=chat_agent.clear_conversation(user_id))

    @app.post("/objects/{object_name}/refresh")
    def refresh_schema(object_name: str, generate_bundle: bool = True) -> dict[str, Any]:
        """Regenerate an object's context bundle and drop cached schema."""
        try:
            return chat_agent.refresh_schema(object_name, generate_bundle=generate_bundle)
        except CapabilityError as e:
            raise _capability_http_error(e) from e

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_level="info")
