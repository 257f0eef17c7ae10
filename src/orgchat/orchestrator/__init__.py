"""Orchestrator module for the chat agent.

This module runs one conversational turn:
Resolve → Synthesize query → Dispatch → Reply → Record
"""

from orgchat.orchestrator.dispatcher import FunctionDispatcher
from orgchat.orchestrator.runtime import ChatAgent

__all__ = ["ChatAgent", "FunctionDispatcher"]
