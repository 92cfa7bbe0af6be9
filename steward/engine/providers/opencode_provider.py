"""OpenCode provider.

Talks to an ``opencode serve`` HTTP server over aiohttp. The server is
shared by every OpenCode session in the process: either one we spawn on
first use or an existing one given by URL.

A turn subscribes to the server's SSE bus before posting the prompt,
then forwards the events of its own session until ``session.idle`` or
``session.error``. Permission requests are answered from background
tasks so the event stream keeps flowing while the user decides.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from ..errors import EngineStreamError
from ..models import AgentBackend, PermissionMode
from ..normalizers.opencode import OpenCodeNormalizer
from ..session import CancellationToken
from .base import AuthorizeCallback, Provider

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"https?://[^\s]+")

# After the prompt call returns, wait this long for session.idle before
# closing the event stream ourselves.
IDLE_GRACE_SECONDS = 5.0

# Stop waiting for a spawned server this long after terminate()
SHUTDOWN_TIMEOUT_SECONDS = 5.0

_BACKEND = AgentBackend.OPENCODE.value


def _parse_model(model: str | None) -> dict[str, str] | None:
    """``"provider/model"`` → ``{"providerID": ..., "modelID": ...}``."""
    if not model or "/" not in model:
        return None
    provider_id, model_id = model.split("/", 1)
    if not provider_id or not model_id:
        return None
    return {"providerID": provider_id, "modelID": model_id}


def event_session_id(event: dict[str, Any]) -> str | None:
    """Session an SSE event belongs to, wherever the event nests it."""
    props = event.get("properties")
    if not isinstance(props, dict):
        return None
    if isinstance(props.get("sessionID"), str):
        return props["sessionID"]
    for key in ("info", "part"):
        nested = props.get(key)
        if isinstance(nested, dict) and isinstance(nested.get("sessionID"), str):
            return nested["sessionID"]
    return None


async def iter_sse(response: aiohttp.ClientResponse) -> AsyncIterator[dict[str, Any]]:
    """Decode ``data:`` frames of a text/event-stream response as JSON."""
    data_lines: list[str] = []
    async for raw_line in response.content:
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
            continue
        if line or not data_lines:
            continue
        payload = "\n".join(data_lines)
        data_lines = []
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON SSE frame: %s", payload[:200])
            continue
        if isinstance(event, dict):
            yield event


class OpenCodeServer:
    """Handle on the shared OpenCode server."""

    def __init__(
        self,
        command: str = "opencode",
        url: str | None = None,
        startup_timeout: float = 30.0,
    ) -> None:
        self._command = command
        self._url = url.rstrip("/") if url else None
        self._external = url is not None
        self._startup_timeout = startup_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._drain_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    @property
    def url(self) -> str | None:
        return self._url

    def is_available(self) -> bool:
        return self._external or shutil.which(self._command) is not None

    async def ensure_started(self) -> str:
        """Base URL of the server, spawning it on first use."""
        async with self._lock:
            if self._url is not None:
                return self._url

            cmd = [self._command, "serve", "--hostname", "127.0.0.1", "--port", "0"]
            logger.info("Starting OpenCode server: %s", " ".join(cmd))
            # create_subprocess_exec passes args as array, no shell
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            try:
                url = await asyncio.wait_for(
                    self._read_url(proc), timeout=self._startup_timeout,
                )
            except asyncio.TimeoutError:
                await self._terminate(proc)
                raise EngineStreamError(
                    _BACKEND,
                    f"server did not report its URL within {self._startup_timeout:.0f}s",
                ) from None
            except EngineStreamError:
                await self._terminate(proc)
                raise

            self._process = proc
            self._url = url.rstrip("/")
            self._drain_task = asyncio.create_task(self._drain(proc))
            logger.info("OpenCode server started at %s (pid=%d)", self._url, proc.pid)
            return self._url

    @staticmethod
    async def _read_url(proc: asyncio.subprocess.Process) -> str:
        if proc.stdout is None:
            raise EngineStreamError(_BACKEND, "server stdout is not piped")
        while True:
            line = await proc.stdout.readline()
            if not line:
                raise EngineStreamError(
                    _BACKEND, f"server exited before listening (rc={proc.returncode})",
                )
            text = line.decode("utf-8", errors="replace").strip()
            logger.debug("opencode: %s", text)
            match = _URL_RE.search(text)
            if match:
                return match.group(0)

    @staticmethod
    async def _drain(proc: asyncio.subprocess.Process) -> None:
        # Keep the pipe from filling up once the URL has been read
        if proc.stdout is None:
            return
        while True:
            line = await proc.stdout.readline()
            if not line:
                return
            logger.debug("opencode: %s", line.decode("utf-8", errors="replace").rstrip())

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=SHUTDOWN_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            pass

    async def stop(self) -> None:
        """Stop the server if this process spawned it."""
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None
        if self._process is not None:
            pid = self._process.pid
            await self._terminate(self._process)
            logger.info("OpenCode server stopped (pid=%d)", pid)
            self._process = None
            self._url = None


class OpenCodeClient:
    """The slice of the OpenCode HTTP API a session needs."""

    def __init__(self, base_url: str, http: aiohttp.ClientSession) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    @staticmethod
    async def _check(response: aiohttp.ClientResponse, what: str) -> None:
        if response.status >= 400:
            body = await response.text()
            raise EngineStreamError(
                _BACKEND, f"{what} failed with HTTP {response.status}: {body[:500]}",
            )

    async def get_session(self, session_id: str, directory: str) -> dict[str, Any] | None:
        async with self._http.get(
            self._url(f"/session/{session_id}"), params={"directory": directory},
        ) as response:
            if response.status == 404:
                return None
            await self._check(response, "session lookup")
            return await response.json()

    async def create_session(self, directory: str) -> dict[str, Any]:
        async with self._http.post(
            self._url("/session"), params={"directory": directory}, json={},
        ) as response:
            await self._check(response, "session create")
            return await response.json()

    async def prompt(
        self,
        session_id: str,
        text: str,
        directory: str,
        model: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Post a prompt; returns ``{"info": ..., "parts": [...]}`` when done."""
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if model:
            body["model"] = model
        async with self._http.post(
            self._url(f"/session/{session_id}/message"),
            params={"directory": directory},
            json=body,
            timeout=aiohttp.ClientTimeout(total=None),
        ) as response:
            await self._check(response, "prompt")
            return await response.json()

    async def abort(self, session_id: str, directory: str) -> None:
        async with self._http.post(
            self._url(f"/session/{session_id}/abort"), params={"directory": directory},
        ) as response:
            await self._check(response, "abort")

    async def respond_permission(
        self, session_id: str, permission_id: str, response_kind: str, directory: str,
    ) -> None:
        """``response_kind`` is "once", "always" or "reject"."""
        async with self._http.post(
            self._url(f"/session/{session_id}/permissions/{permission_id}"),
            params={"directory": directory},
            json={"response": response_kind},
        ) as response:
            await self._check(response, "permission response")

    async def subscribe(self, directory: str) -> aiohttp.ClientResponse:
        """Open the SSE bus. The caller closes the returned response."""
        response = await self._http.get(
            self._url("/event"),
            params={"directory": directory},
            timeout=aiohttp.ClientTimeout(total=None, sock_read=None),
        )
        if response.status >= 400:
            try:
                await self._check(response, "event subscribe")
            finally:
                response.close()
        return response


class OpenCodeProvider(Provider):
    """Provider backed by a shared OpenCode server."""

    def __init__(self, server: OpenCodeServer) -> None:
        self._server = server
        self._normalizer = OpenCodeNormalizer()
        self._mode = PermissionMode.DEFAULT

    @property
    def name(self) -> str:
        return _BACKEND

    @property
    def normalizer(self) -> OpenCodeNormalizer:
        return self._normalizer

    def is_available(self) -> bool:
        return self._server.is_available()

    async def set_mode(self, mode: PermissionMode) -> None:
        # Applies to permission requests that arrive from now on
        self._mode = mode
        logger.info("OpenCode permission mode set to %s", mode.value)

    async def run_turn(
        self,
        prompt: str,
        *,
        cwd: str,
        authorize: AuthorizeCallback,
        mode: PermissionMode,
        cancel: CancellationToken,
        resume_token: str | None = None,
        model: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        self._mode = mode
        base_url = await self._server.ensure_started()
        async with aiohttp.ClientSession() as http:
            client = OpenCodeClient(base_url, http)

            session = None
            if resume_token:
                session = await client.get_session(resume_token, cwd)
                if session is None:
                    logger.warning(
                        "OpenCode session %s not found; starting a new one",
                        resume_token[:8],
                    )
            if session is None:
                session = await client.create_session(cwd)
            session_id = session["id"]
            logger.info(
                "OpenCode turn starting session=%s cwd=%s mode=%s",
                session_id[:8], cwd, mode.value,
            )
            yield {"kind": "session", "session": session}

            events = await client.subscribe(cwd)
            loop = asyncio.get_running_loop()
            close_handle: asyncio.TimerHandle | None = None

            def _on_prompt_done(task: asyncio.Task) -> None:
                nonlocal close_handle
                if task.cancelled() or task.exception() is not None:
                    events.close()
                else:
                    close_handle = loop.call_later(IDLE_GRACE_SECONDS, events.close)

            prompt_task = asyncio.create_task(
                client.prompt(session_id, prompt, cwd, model=_parse_model(model)),
            )
            prompt_task.add_done_callback(_on_prompt_done)
            answering: set[asyncio.Task] = set()
            terminal = False
            try:
                try:
                    async for event in iter_sse(events):
                        owner = event_session_id(event)
                        if owner is not None and owner != session_id:
                            continue
                        event_type = event.get("type")
                        if event_type == "permission.updated":
                            task = asyncio.create_task(self._answer_permission(
                                client, session_id, event.get("properties") or {},
                                authorize, cwd,
                            ))
                            answering.add(task)
                            task.add_done_callback(answering.discard)
                        yield {"kind": "event", "event": event}
                        if event_type in ("session.idle", "session.error"):
                            terminal = True
                            break
                except aiohttp.ClientError as exc:
                    # We close the stream ourselves once the prompt is settled
                    if not prompt_task.done():
                        raise EngineStreamError(_BACKEND, f"event stream failed: {exc}") from exc

                if not terminal:
                    result = await prompt_task
                    yield {
                        "kind": "prompt-result",
                        "info": result.get("info") or {},
                        "parts": result.get("parts") or [],
                    }
                    yield {
                        "kind": "event",
                        "event": {"type": "session.idle", "properties": {"sessionID": session_id}},
                    }
            finally:
                if close_handle is not None:
                    close_handle.cancel()
                for task in list(answering):
                    task.cancel()
                if not prompt_task.done():
                    if cancel.cancelled:
                        try:
                            await client.abort(session_id, cwd)
                            logger.info("OpenCode session %s aborted", session_id[:8])
                        except (aiohttp.ClientError, EngineStreamError) as exc:
                            logger.warning("OpenCode abort failed: %s", exc)
                    prompt_task.cancel()
                await self._settle(prompt_task)
                events.close()

    @staticmethod
    async def _settle(task: asyncio.Task) -> None:
        try:
            await task
        except asyncio.CancelledError:
            pass
        except (aiohttp.ClientError, EngineStreamError) as exc:
            logger.debug("OpenCode prompt ended with %s", exc)

    async def _answer_permission(
        self,
        client: OpenCodeClient,
        session_id: str,
        props: dict[str, Any],
        authorize: AuthorizeCallback,
        cwd: str,
    ) -> None:
        permission_id = props.get("id", "")
        try:
            if self._mode == PermissionMode.BYPASS:
                response_kind = "once"
            else:
                metadata = props.get("metadata")
                decision = await authorize(
                    props.get("type", ""), metadata if isinstance(metadata, dict) else {},
                )
                if not decision.allowed:
                    response_kind = "reject"
                elif decision.remember:
                    response_kind = "always"
                else:
                    response_kind = "once"
            await client.respond_permission(session_id, permission_id, response_kind, cwd)
            logger.info(
                "OpenCode permission %s answered %s", permission_id[:8], response_kind,
            )
        except (aiohttp.ClientError, EngineStreamError) as exc:
            logger.warning("OpenCode permission %s response failed: %s", permission_id[:8], exc)
