"""Exception hierarchy for the session engine.

Usage errors are raised before any state is mutated. Engine failures
are caught at the turn boundary by the orchestrator and never escape
to the host process.
"""
from __future__ import annotations


class StewardError(Exception):
    """Base exception for all steward errors."""


class SessionAlreadyActiveError(StewardError):
    """A session is already running for the task."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Session already running for task {task_id}")


class NoActiveSessionError(StewardError):
    """The operation needs a live session and there is none."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"No active session for task {task_id}")


class PendingRequestNotFoundError(StewardError):
    """No pending permission/question request with the given id."""
    def __init__(self, task_id: str, request_id: str):
        self.task_id = task_id
        self.request_id = request_id
        super().__init__(
            f"No pending request {request_id} for task {task_id}"
        )


class QueuedPromptNotFoundError(StewardError):
    """No queued prompt with the given id."""
    def __init__(self, task_id: str, prompt_id: str):
        self.task_id = task_id
        self.prompt_id = prompt_id
        super().__init__(
            f"Queued prompt {prompt_id} not found for task {task_id}"
        )


class TaskNotFoundError(StewardError):
    """The task does not exist in the store."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class WorkingDirectoryMissingError(StewardError):
    """The task's working directory is gone from disk."""
    def __init__(self, task_id: str, path: str):
        self.task_id = task_id
        self.path = path
        super().__init__(
            f"Working directory for task {task_id} does not exist: {path}"
        )


class InvalidTransitionError(StewardError):
    """A task status change that the lifecycle does not allow."""
    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        self.allowed = allowed
        allowed_str = ", ".join(allowed) or "none"
        super().__init__(
            f"Invalid status transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )


class ProviderNotAvailableError(StewardError):
    """Requested engine backend is not installed or not reachable."""
    def __init__(self, provider_name: str, available: list[str]):
        self.provider_name = provider_name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Provider '{provider_name}' is not available. "
            f"Available providers: {avail_str}"
        )


class EngineStreamError(StewardError):
    """The engine reported a failure or ended its stream unexpectedly."""
    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"{backend} engine error: {reason}")
