"""API module for the chat agent.

This module provides FastAPI endpoints wrapping ``ChatAgent``.
"""

from orgchat.api.server import create_app

__all__ = ["create_app"]
