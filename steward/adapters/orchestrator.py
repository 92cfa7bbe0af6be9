"""Session orchestrator: drives engine turns and arbitrates tool permissions.

One ``Session`` per task while a turn is in flight. Raw engine data flow
through the provider's normalizer; every resulting entry is persisted
with the next per-task index and published on the event bus. When the
engine asks to run a tool, the turn parks on a future in the session's
pending-request queue until ``respond`` (or ``stop``) resolves it.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

from steward.adapters.event_bus import EventBus
from steward.adapters.events import (
    EntryAdded,
    EntryUpdated,
    NameUpdated,
    PermissionRequested,
    QuestionRequested,
    QueueUpdated,
    SessionEvent,
    StatusChanged,
    ToolResultPatched,
)
from steward.adapters.permission_store import ProjectPermissionStore
from steward.engine.config import EngineConfig
from steward.engine.entries import (
    CompleteEvent,
    EntryEvent,
    EntryUpdateEvent,
    ErrorEvent,
    NormalizationEvent,
    NormalizationEventKind,
    NormalizedEntry,
    PermissionRequestEvent,
    RateLimitEvent,
    ResultEntry,
    SessionIdEvent,
    SessionUpdatedEvent,
    ToolResultEvent,
    UserPromptEntry,
)
from steward.engine.errors import (
    InvalidTransitionError,
    NoActiveSessionError,
    PendingRequestNotFoundError,
    QueuedPromptNotFoundError,
    SessionAlreadyActiveError,
    TaskNotFoundError,
    WorkingDirectoryMissingError,
)
from steward.engine.lifecycle import STALE_STATUSES, validate_transition
from steward.engine.models import (
    ENGINE_PERMISSION_MODES,
    DecisionBehavior,
    InteractionMode,
    PermissionResponse,
    QuestionResponse,
    QueuedPrompt,
    RequestKind,
    Task,
    TaskStatus,
    ToolDecision,
)
from steward.engine.permissions import (
    ASK_USER_QUESTION_TOOL,
    is_tool_allowed,
    session_allow_option,
)
from steward.engine.providers.base import Provider, iterate_until_cancelled
from steward.engine.providers.registry import ProviderRegistry
from steward.engine.session import PendingRequest, Session, SessionRegistry
from steward.engine.task_store import TaskStore

logger = logging.getLogger(__name__)

INTERRUPTED_RESULT_TEXT = "Task interrupted by user"
STOPPED_BY_USER = "Stopped by user"
DEFAULT_DENY_MESSAGE = "Denied by user"

RequestResponse = Union[PermissionResponse, QuestionResponse, ToolDecision]


@dataclass
class TurnOutcome:
    """How one engine turn ended."""
    is_error: bool = False
    error: str | None = None


class SessionOrchestrator:
    """Owns session lifecycles for every task in the process."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: TaskStore,
        publisher: EventBus,
        providers: ProviderRegistry,
        config: EngineConfig | None = None,
        *,
        project_permissions: Callable[[str], ProjectPermissionStore] = ProjectPermissionStore,
    ) -> None:
        self._registry = registry
        self._store = store
        self._publisher = publisher
        self._providers = providers
        self._config = config or EngineConfig()
        self._project_permissions = project_permissions
        self._event_handlers: dict[
            NormalizationEventKind,
            Callable[[Session, Any], Awaitable[TurnOutcome | None]],
        ] = {
            NormalizationEventKind.ENTRY: self._on_entry,
            NormalizationEventKind.ENTRY_UPDATE: self._on_entry_update,
            NormalizationEventKind.TOOL_RESULT: self._on_tool_result,
            NormalizationEventKind.SESSION_ID: self._on_session_id,
            NormalizationEventKind.SESSION_UPDATED: self._on_session_updated,
            NormalizationEventKind.PERMISSION_REQUEST: self._on_permission_request,
            NormalizationEventKind.COMPLETE: self._on_complete,
            NormalizationEventKind.ERROR: self._on_error,
            NormalizationEventKind.RATE_LIMIT: self._on_rate_limit,
        }

    # ── Session lifecycle ──

    async def start(self, task_id: str) -> None:
        """Run the task's own prompt in a new session until it finishes."""
        if task_id in self._registry:
            raise SessionAlreadyActiveError(task_id)
        task = self._require_task(task_id)
        logger.info("Starting task=%s backend=%s", task_id[:8], task.agent_backend.value)
        await self._run_session(task, task.prompt)

    async def send_message(self, task_id: str, text: str) -> None:
        """Follow up on a task, resuming the engine conversation.

        A session still in flight is stopped first.
        """
        if task_id in self._registry:
            logger.info("send_message: stopping active session task=%s", task_id[:8])
            await self.stop(task_id)
        task = self._require_task(task_id)
        logger.info(
            "Sending follow-up task=%s resume=%s",
            task_id[:8], (task.session_id or "")[:8] or "-",
        )
        await self._run_session(task, text)

    async def stop(self, task_id: str) -> None:
        """Interrupt the task's turn. No-op without a live session."""
        session = self._registry.get(task_id)
        if session is None:
            logger.debug("stop: no session for task=%s", task_id[:8])
            return

        session.stopped = True
        session.prompts.clear()
        await self._publish_queue(session)
        session.cancel_token.cancel(STOPPED_BY_USER)

        for request in session.pending.drain():
            if not request.future.done():
                request.future.set_result(ToolDecision.deny(STOPPED_BY_USER))

        await self._add_entry(
            session, ResultEntry(value=INTERRUPTED_RESULT_TEXT, is_error=True),
        )
        await self._set_status(task_id, TaskStatus.INTERRUPTED, error=STOPPED_BY_USER)
        self._registry.release(session)
        logger.info("Task %s stopped and session released", task_id[:8])

    def recover_stale_tasks(self) -> int:
        """Mark tasks left running/waiting by a dead process as interrupted.

        Run once at startup, before any session exists. Publishes nothing.
        """
        stale = self._store.list_tasks_by_status(STALE_STATUSES)
        for task in stale:
            self._store.update_task(task.id, status=TaskStatus.INTERRUPTED)
        if stale:
            logger.info("Recovered %d stale task(s) on startup", len(stale))
        return len(stale)

    async def shutdown(self) -> None:
        """Stop every live session and release provider resources."""
        for task_id in self._registry.task_ids():
            await self.stop(task_id)
        await self._providers.shutdown()

    # ── Prompt queue ──

    async def queue_prompt(self, task_id: str, text: str) -> str:
        """Queue ``text`` to run after the current turn. Returns its id."""
        session = self._require_session(task_id)
        prompt = session.prompts.add(text)
        await self._publish_queue(session)
        logger.info("Queued prompt %s for task=%s", prompt.id[:8], task_id[:8])
        return prompt.id

    async def cancel_queued_prompt(self, task_id: str, prompt_id: str) -> None:
        session = self._require_session(task_id)
        if not session.prompts.cancel(prompt_id):
            raise QueuedPromptNotFoundError(task_id, prompt_id)
        await self._publish_queue(session)
        logger.info("Cancelled queued prompt %s for task=%s", prompt_id[:8], task_id[:8])

    def get_queued_prompts(self, task_id: str) -> list[QueuedPrompt]:
        session = self._registry.get(task_id)
        return session.prompts.snapshot() if session else []

    # ── Requests ──

    async def respond(
        self, task_id: str, request_id: str, response: RequestResponse,
    ) -> None:
        """Resolve a pending permission/question request."""
        session = self._require_session(task_id)
        request = session.pending.remove(request_id)
        if request is None:
            raise PendingRequestNotFoundError(task_id, request_id)
        if not request.future.done():
            request.future.set_result(response)
        logger.info(
            "Resolved %s request %s tool=%s task=%s (remaining pending: %d)",
            request.kind.value, request_id[:8], request.tool_name,
            task_id[:8], len(session.pending),
        )
        next_request = session.pending.head()
        if next_request is not None:
            await self._publisher.publish(self._request_event(task_id, next_request))

    def get_pending_request(self, task_id: str) -> SessionEvent | None:
        """The request currently shown to the user, as its publish event."""
        session = self._registry.get(task_id)
        if session is None:
            return None
        request = session.pending.head()
        return self._request_event(task_id, request) if request else None

    # ── Task queries and settings ──

    def is_running(self, task_id: str) -> bool:
        return task_id in self._registry

    def get_entries(self, task_id: str) -> list[dict[str, Any]]:
        return self._store.list_entries(task_id)

    def get_entry_count(self, task_id: str) -> int:
        return self._store.get_entry_count(task_id)

    async def set_mode(self, task_id: str, mode: InteractionMode) -> None:
        """Persist the interaction mode and apply it to a live engine."""
        self._require_task(task_id)
        self._persist(
            "interaction mode", self._store.update_task, task_id, interaction_mode=mode,
        )
        session = self._registry.get(task_id)
        if session is not None:
            await session.provider.set_mode(ENGINE_PERMISSION_MODES[mode])
        logger.info("Interaction mode for task=%s set to %s", task_id[:8], mode.value)

    # ── Turn execution ──

    async def _run_session(self, task: Task, prompt: str) -> None:
        provider = self._providers.create(task.agent_backend)
        session = Session(
            task_id=task.id,
            provider=provider,
            context=provider.normalizer.new_context(),
            next_index=self._store.get_entry_count(task.id),
            resume_token=task.session_id,
        )
        self._registry.claim(session)
        logger.info(
            "Session created task=%s resuming=%s next_index=%d",
            task.id[:8], "yes" if session.resume_token else "no", session.next_index,
        )
        try:
            await self._set_status(task.id, TaskStatus.RUNNING)
            await self._run_turns(session, prompt)
        except Exception as exc:
            if session.stopped:
                logger.info("Stopped session task=%s ended with %s", task.id[:8], exc)
            else:
                logger.exception("Session failed task=%s", task.id[:8])
                await self._set_status(
                    task.id, TaskStatus.ERRORED, error=str(exc) or type(exc).__name__,
                )
        finally:
            self._registry.release(session)
            await self._shutdown_provider(provider)

    async def _run_turns(self, session: Session, prompt: str) -> None:
        next_prompt: str | None = prompt
        while next_prompt is not None and not session.stopped:
            outcome = await self._run_turn(session, next_prompt)
            if outcome is None:
                logger.info("Turn cancelled task=%s", session.task_id[:8])
                return
            next_prompt = None
            if not outcome.is_error:
                queued = session.prompts.pop()
                if queued is not None:
                    await self._publish_queue(session)
                    logger.info(
                        "Task %s running queued prompt %s (remaining: %d)",
                        session.task_id[:8], queued.id[:8], len(session.prompts),
                    )
                    next_prompt = queued.content
                    continue
            if session.stopped:
                return
            status = TaskStatus.ERRORED if outcome.is_error else TaskStatus.COMPLETED
            await self._set_status(session.task_id, status, error=outcome.error)

    async def _run_turn(self, session: Session, prompt: str) -> TurnOutcome | None:
        """One prompt round-trip. None when the turn was cancelled."""
        task = self._require_task(session.task_id)
        if not os.path.isdir(task.cwd):
            raise WorkingDirectoryMissingError(task.id, task.cwd)

        mode = ENGINE_PERMISSION_MODES[task.interaction_mode]
        token = session.new_turn()
        normalizer = session.provider.normalizer
        normalizer.begin_turn(session.context)
        logger.info(
            "Turn starting task=%s mode=%s cwd=%s resume=%s",
            task.id[:8], mode.value, task.cwd, (session.resume_token or "")[:8] or "-",
        )

        await self._add_entry(session, UserPromptEntry(value=prompt))

        async def authorize(tool_name: str, tool_input: dict[str, Any]) -> ToolDecision:
            return await self._authorize(session, tool_name, tool_input)

        stream = session.provider.run_turn(
            prompt,
            cwd=task.cwd,
            authorize=authorize,
            mode=mode,
            cancel=token,
            resume_token=session.resume_token,
            model=task.model,
        )
        outcome: TurnOutcome | None = None
        async for raw in iterate_until_cancelled(stream, token):
            for event in normalizer.process(raw, session.context):
                result = await self._apply(session, event)
                if outcome is None and result is not None:
                    outcome = result

        if token.cancelled:
            return None
        if outcome is None:
            logger.warning("Engine stream ended without a result task=%s", task.id[:8])
            return TurnOutcome(is_error=True, error="Engine stream ended without a result")
        return outcome

    async def _apply(
        self, session: Session, event: NormalizationEvent,
    ) -> TurnOutcome | None:
        handler = self._event_handlers[NormalizationEventKind(event.kind)]
        return await handler(session, event)

    async def _on_entry(self, session: Session, event: EntryEvent) -> None:
        await self._add_entry(session, event.entry)

    async def _on_entry_update(self, session: Session, event: EntryUpdateEvent) -> None:
        self._persist("entry update", self._store.update_entry, session.task_id, event.entry)
        await self._publisher.publish(EntryUpdated(
            task_id=session.task_id, entry=event.entry.to_dict(),
        ))

    async def _on_tool_result(self, session: Session, event: ToolResultEvent) -> None:
        self._persist(
            "tool result", self._store.update_tool_result,
            session.task_id, event.tool_id, event.result, event.is_error,
        )
        await self._publisher.publish(ToolResultPatched(
            task_id=session.task_id,
            tool_id=event.tool_id,
            result=event.result,
            is_error=event.is_error,
        ))

    async def _on_session_id(self, session: Session, event: SessionIdEvent) -> None:
        if not event.session_id or event.session_id == session.resume_token:
            return
        session.resume_token = event.session_id
        self._persist(
            "session id", self._store.update_task, session.task_id, session_id=event.session_id,
        )
        logger.info(
            "Captured session id for task=%s: %s", session.task_id[:8], event.session_id[:8],
        )

    async def _on_session_updated(self, session: Session, event: SessionUpdatedEvent) -> None:
        if not event.title:
            return
        task = self._store.get_task(session.task_id)
        if task is None or task.name:
            return
        self._persist("task name", self._store.update_task, session.task_id, name=event.title)
        await self._publisher.publish(NameUpdated(task_id=session.task_id, name=event.title))

    async def _on_permission_request(
        self, session: Session, event: PermissionRequestEvent,
    ) -> None:
        # Answered through the provider's authorize callback
        logger.debug(
            "Engine permission request %s tool=%s task=%s",
            event.request_id[:8], event.tool_name, session.task_id[:8],
        )

    async def _on_complete(self, session: Session, event: CompleteEvent) -> TurnOutcome:
        result = event.result
        error = (result.text or "Engine reported an error") if result.is_error else None
        return TurnOutcome(is_error=result.is_error, error=error)

    async def _on_error(self, session: Session, event: ErrorEvent) -> TurnOutcome:
        logger.warning("Engine error task=%s: %s", session.task_id[:8], event.error)
        return TurnOutcome(is_error=True, error=event.error)

    async def _on_rate_limit(self, session: Session, event: RateLimitEvent) -> None:
        logger.info(
            "Engine rate limited task=%s retry_after_ms=%s",
            session.task_id[:8], event.retry_after_ms,
        )

    # ── Tool authorization ──

    async def _authorize(
        self, session: Session, tool_name: str, tool_input: dict[str, Any],
    ) -> ToolDecision:
        task_id = session.task_id
        task = self._store.get_task(task_id)
        allowed = task.session_allowed_tools if task else []
        working_dir = task.cwd if task else None
        if is_tool_allowed(tool_name, tool_input, allowed, working_dir):
            logger.info("Tool %s is session-allowed for task=%s", tool_name, task_id[:8])
            return ToolDecision.allow(tool_input)
        if session.stopped:
            return ToolDecision.deny(STOPPED_BY_USER)

        future = asyncio.get_running_loop().create_future()
        if tool_name == ASK_USER_QUESTION_TOOL:
            questions = tool_input.get("questions")
            request = PendingRequest(
                kind=RequestKind.QUESTION,
                tool_name=tool_name,
                input=tool_input,
                future=future,
                questions=questions if isinstance(questions, list) else [],
            )
        else:
            request = PendingRequest(
                kind=RequestKind.PERMISSION,
                tool_name=tool_name,
                input=tool_input,
                future=future,
                session_allow=session_allow_option(tool_name, tool_input),
            )

        logger.info(
            "%s request %s tool=%s task=%s",
            request.kind.value, request.request_id[:8], tool_name, task_id[:8],
        )
        if session.pending.push(request):
            await self._publisher.publish(self._request_event(task_id, request))
        await self._set_status(task_id, TaskStatus.WAITING)

        try:
            response = await self._await_response(request)
        except asyncio.CancelledError:
            await self._drop_request(session, request)
            raise
        if response is None:
            await self._drop_request(session, request)

        if not session.stopped and not session.pending:
            await self._set_status(task_id, TaskStatus.RUNNING)
        return await self._to_decision(session, request, response)

    async def _await_response(self, request: PendingRequest) -> RequestResponse | None:
        """The user's response, or None once the configured timeout expires."""
        timeout = self._config.permission_timeout_seconds
        if not timeout or timeout <= 0:
            return await request.future
        try:
            return await asyncio.wait_for(request.future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Request %s tool=%s timed out after %.1fs",
                request.request_id[:8], request.tool_name, timeout,
            )
            return None

    async def _drop_request(self, session: Session, request: PendingRequest) -> None:
        """Remove an unanswered request, surfacing the next one if it was shown."""
        was_head = session.pending.head() is request
        session.pending.remove(request.request_id)
        next_request = session.pending.head()
        if was_head and next_request is not None:
            await self._publisher.publish(self._request_event(session.task_id, next_request))

    async def _to_decision(
        self,
        session: Session,
        request: PendingRequest,
        response: RequestResponse | None,
    ) -> ToolDecision:
        if response is None:
            return ToolDecision.deny("Permission request timed out")
        if isinstance(response, ToolDecision):
            return response
        if request.kind == RequestKind.QUESTION:
            answers = response.answers if isinstance(response, QuestionResponse) else {}
            return ToolDecision.allow({
                "questions": request.input.get("questions"),
                "answers": answers,
            })
        if not isinstance(response, PermissionResponse):
            logger.warning(
                "Unexpected response %s for permission request %s",
                type(response).__name__, request.request_id[:8],
            )
            return ToolDecision.deny(DEFAULT_DENY_MESSAGE)
        if response.behavior == DecisionBehavior.DENY:
            return ToolDecision.deny(response.message or DEFAULT_DENY_MESSAGE)

        remember = response.allow_mode in ("session", "project")
        if remember and response.tools_to_allow:
            self._grant_tools(session.task_id, response.tools_to_allow, response.allow_mode)
        if response.set_mode_on_allow is not None:
            await self.set_mode(session.task_id, response.set_mode_on_allow)
        updated = response.updated_input
        return ToolDecision.allow(
            updated if updated is not None else request.input, remember=remember,
        )

    def _grant_tools(self, task_id: str, tools: list[str], allow_mode: str | None) -> None:
        task = self._store.get_task(task_id)
        if task is None:
            return
        merged = list(task.session_allowed_tools)
        merged.extend(t for t in tools if t not in merged)
        self._persist(
            "session allow-list", self._store.update_task, task_id, session_allowed_tools=merged,
        )
        logger.info("Session-allowed for task=%s: %s", task_id[:8], ", ".join(tools))
        if allow_mode == "project" and self._config.persist_project_permissions:
            store = self._project_permissions(task.cwd)
            self._persist("project permissions", store.add, tools)

    # ── Helpers ──

    def _require_task(self, task_id: str) -> Task:
        task = self._store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _require_session(self, task_id: str) -> Session:
        session = self._registry.get(task_id)
        if session is None:
            raise NoActiveSessionError(task_id)
        return session

    def _persist(self, what: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a store write; failures are logged and the stream goes on."""
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.exception("Failed to persist %s", what)
            return None

    async def _add_entry(self, session: Session, entry: NormalizedEntry) -> None:
        index = session.take_index()
        self._persist("entry", self._store.append_entry, session.task_id, index, entry)
        await self._publisher.publish(EntryAdded(
            task_id=session.task_id, index=index, entry=entry.to_dict(),
        ))

    async def _set_status(
        self, task_id: str, status: TaskStatus, error: str | None = None,
    ) -> None:
        task = self._store.get_task(task_id)
        if task is None:
            logger.warning("Status %s for unknown task=%s", status.value, task_id[:8])
            return
        try:
            validate_transition(task.status, status)
        except InvalidTransitionError as exc:
            logger.warning("Skipping status change for task=%s: %s", task_id[:8], exc)
            return
        self._persist("status", self._store.update_task, task_id, status=status)
        await self._publisher.publish(StatusChanged(
            task_id=task_id, status=status.value, error=error,
        ))

    async def _publish_queue(self, session: Session) -> None:
        await self._publisher.publish(QueueUpdated(
            task_id=session.task_id,
            queued_prompts=[p.to_dict() for p in session.prompts.snapshot()],
        ))

    @staticmethod
    def _request_event(task_id: str, request: PendingRequest) -> SessionEvent:
        if request.kind == RequestKind.QUESTION:
            return QuestionRequested(
                task_id=task_id,
                request_id=request.request_id,
                questions=request.questions,
            )
        return PermissionRequested(
            task_id=task_id,
            request_id=request.request_id,
            tool_name=request.tool_name,
            input=request.input,
            session_allow_option=(
                request.session_allow.to_dict() if request.session_allow else None
            ),
        )

    @staticmethod
    async def _shutdown_provider(provider: Provider) -> None:
        try:
            await provider.shutdown()
        except Exception as exc:
            logger.error("Error shutting down provider '%s': %s", provider.name, exc)
