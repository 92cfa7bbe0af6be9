"""Steward: supervise long-running, interactive coding-agent sessions."""

__version__ = "0.1.0"
