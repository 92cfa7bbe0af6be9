"""Adapters package - bridge between the session engine and its hosts.

Contains the session orchestrator, the event bus it publishes on, and
the project permission store.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "ProjectPermissionStore",
    "SessionOrchestrator",
]

from steward.adapters.event_bus import EventBus
from steward.adapters.orchestrator import SessionOrchestrator
from steward.adapters.permission_store import ProjectPermissionStore
