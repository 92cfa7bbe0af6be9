"""Agent engine providers."""
from .base import AuthorizeCallback, Provider, iterate_until_cancelled
from .claude_provider import ClaudeProvider, message_to_raw
from .opencode_provider import OpenCodeClient, OpenCodeProvider, OpenCodeServer
from .registry import ProviderRegistry

__all__ = [
    "AuthorizeCallback",
    "ClaudeProvider",
    "OpenCodeClient",
    "OpenCodeProvider",
    "OpenCodeServer",
    "Provider",
    "ProviderRegistry",
    "iterate_until_cancelled",
    "message_to_raw",
]
