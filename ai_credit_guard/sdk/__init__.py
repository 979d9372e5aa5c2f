"""
SDK for AI Credit Guard.

Provides a chat client that enforces metering decisions.
"""

from ..core.guardrails import RequestDenied
from .openai_client import GuardedChatClient

__all__ = ["GuardedChatClient", "RequestDenied"]
