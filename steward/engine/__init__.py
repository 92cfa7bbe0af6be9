"""Steward engine: session state, normalization and engine providers."""
from .models import (
    AgentBackend,
    DecisionBehavior,
    InteractionMode,
    PermissionMode,
    PermissionResponse,
    QuestionResponse,
    QueuedPrompt,
    RequestKind,
    SessionAllowOption,
    Task,
    TaskStatus,
    ToolDecision,
)
from .config import EngineConfig
from .errors import (
    EngineStreamError,
    InvalidTransitionError,
    NoActiveSessionError,
    PendingRequestNotFoundError,
    ProviderNotAvailableError,
    QueuedPromptNotFoundError,
    SessionAlreadyActiveError,
    StewardError,
    TaskNotFoundError,
    WorkingDirectoryMissingError,
)
from .session import (
    CancellationToken,
    PendingRequest,
    PendingRequestQueue,
    PromptQueue,
    Session,
    SessionRegistry,
)
from .task_store import TaskStore

__all__ = [
    "AgentBackend",
    "CancellationToken",
    "DecisionBehavior",
    "EngineConfig",
    "EngineStreamError",
    "InteractionMode",
    "InvalidTransitionError",
    "NoActiveSessionError",
    "PendingRequest",
    "PendingRequestNotFoundError",
    "PendingRequestQueue",
    "PermissionMode",
    "PermissionResponse",
    "PromptQueue",
    "ProviderNotAvailableError",
    "QuestionResponse",
    "QueuedPrompt",
    "QueuedPromptNotFoundError",
    "RequestKind",
    "Session",
    "SessionAllowOption",
    "SessionAlreadyActiveError",
    "SessionRegistry",
    "StewardError",
    "Task",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskStore",
    "ToolDecision",
    "WorkingDirectoryMissingError",
]
