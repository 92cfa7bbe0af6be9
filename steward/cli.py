"""Command line entry point.

Usage:
    steward run "Add a --json flag to the exporter" --cwd ~/src/app
    steward run --backend opencode --model anthropic/claude-sonnet-4-5 "Fix the flaky test"
    steward send <task-id> "Now update the changelog"
    steward history <task-id>
    steward list
    steward recover
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

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
    event_to_dict,
)
from steward.adapters.orchestrator import SessionOrchestrator
from steward.engine.config import EngineConfig
from steward.engine.errors import StewardError
from steward.engine.models import (
    AgentBackend,
    DecisionBehavior,
    InteractionMode,
    PermissionResponse,
    QuestionResponse,
    SessionAllowOption,
    Task,
)
from steward.engine.providers.registry import ProviderRegistry
from steward.engine.session import SessionRegistry
from steward.engine.task_store import TaskStore
from steward.engine.yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

_STATUS_STYLES = {
    "running": "cyan",
    "waiting": "yellow",
    "completed": "green",
    "errored": "red",
    "interrupted": "magenta",
}


def configure_logging(config: EngineConfig, verbose: bool = False) -> Path:
    """Log to a rotating file; only warnings (or everything with -v) to stderr."""
    log_dir = Path(config.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "steward.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s", datefmt="%H:%M:%S",
    ))
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


# ── Rendering ──


def render_entry(console: Console, entry: dict[str, Any]) -> None:
    entry_type = entry.get("type")
    if entry_type == "user-prompt":
        console.print(Text("> ", style="bold blue") + Text(entry.get("value", "")))
    elif entry_type == "assistant-message":
        console.print(entry.get("value", ""))
    elif entry_type == "system-status":
        status = entry.get("status")
        console.print(Text("compacting context..." if status else "context compacted", style="dim"))
    elif entry_type == "result":
        style = "red" if entry.get("is_error") else "green"
        parts = [entry.get("value") or ("error" if entry.get("is_error") else "done")]
        cost = (entry.get("cost") or {}).get("cost_usd")
        if cost:
            parts.append(f"${cost:.4f}")
        if entry.get("duration_ms"):
            parts.append(f"{entry['duration_ms'] / 1000:.1f}s")
        console.print(Text(" · ".join(str(p) for p in parts), style=style))
    elif entry_type == "tool-use":
        label = entry.get("tool_name") or entry.get("skill_name") or entry.get("name", "tool")
        summary = json.dumps(entry.get("input"), default=str)
        if len(summary) > 120:
            summary = summary[:117] + "..."
        marker = "✓" if entry.get("result") is not None else "…"
        console.print(Text(f"{marker} {label} ", style="yellow") + Text(summary, style="dim"))
    else:
        console.print(Text(json.dumps(entry, default=str), style="dim"))


def render_status(console: Console, event: StatusChanged) -> None:
    style = _STATUS_STYLES.get(event.status, "white")
    line = Text(f"[{event.status}]", style=f"bold {style}")
    if event.error:
        line += Text(f" {event.error}", style=style)
    console.print(line)


def ask_permission(console: Console, event: PermissionRequested) -> PermissionResponse:
    """Blocking prompt for a permission request."""
    console.print(Panel(
        json.dumps(event.input, indent=2, default=str),
        title=f"Allow {event.tool_name}?",
        border_style="yellow",
    ))
    choices = ["y", "n"]
    hint = "y = allow once, n = deny"
    option = None
    if event.session_allow_option:
        option = SessionAllowOption(
            label=event.session_allow_option.get("label", ""),
            tools_to_allow=list(event.session_allow_option.get("tools_to_allow") or []),
            set_mode_on_allow=(
                InteractionMode(event.session_allow_option["set_mode_on_allow"])
                if event.session_allow_option.get("set_mode_on_allow") else None
            ),
        )
        choices += ["s", "p"]
        hint += f", s = {option.label}, p = allow for project"
    console.print(Text(hint, style="dim"))
    answer = Prompt.ask("Decision", choices=choices, default="y", console=console)
    if answer == "n":
        message = Prompt.ask("Reason (optional)", default="", console=console)
        return PermissionResponse(behavior=DecisionBehavior.DENY, message=message or None)
    if answer in ("s", "p") and option is not None:
        return PermissionResponse(
            allow_mode="session" if answer == "s" else "project",
            tools_to_allow=option.tools_to_allow,
            set_mode_on_allow=option.set_mode_on_allow,
        )
    return PermissionResponse()


def ask_questions(console: Console, event: QuestionRequested) -> QuestionResponse:
    """Blocking prompt for every question in a question request."""
    answers: dict[str, str] = {}
    for question in event.questions:
        text = str(question.get("question", ""))
        labels = [
            str(o.get("label"))
            for o in question.get("options") or []
            if isinstance(o, dict) and o.get("label")
        ]
        if question.get("header"):
            console.print(Text(str(question["header"]), style="bold"))
        for label in labels:
            console.print(Text(f"  - {label}", style="dim"))
        answers[text] = Prompt.ask(text, console=console, default=labels[0] if labels else "")
    return QuestionResponse(answers=answers)


# ── Commands ──


def _build(config: EngineConfig) -> tuple[SessionOrchestrator, TaskStore, EventBus]:
    store = TaskStore(config.db_path)
    bus = EventBus(maxsize=config.event_queue_size)
    orchestrator = SessionOrchestrator(
        SessionRegistry(), store, bus, ProviderRegistry(config), config,
    )
    return orchestrator, store, bus


async def _handle_event(
    console: Console,
    orchestrator: SessionOrchestrator,
    event: SessionEvent,
    interactive: bool,
) -> None:
    logger.debug("event %s", json.dumps(event_to_dict(event), default=str))
    if isinstance(event, EntryAdded):
        render_entry(console, event.entry)
    elif isinstance(event, EntryUpdated):
        if event.entry.get("type") == "tool-use" and event.entry.get("result") is not None:
            render_entry(console, event.entry)
    elif isinstance(event, StatusChanged):
        if event.status != "waiting":
            render_status(console, event)
    elif isinstance(event, NameUpdated):
        console.print(Text(f"Task named: {event.name}", style="dim"))
    elif isinstance(event, QueueUpdated):
        if event.queued_prompts:
            console.print(Text(f"{len(event.queued_prompts)} prompt(s) queued", style="dim"))
    elif isinstance(event, (PermissionRequested, QuestionRequested)) and interactive:
        if isinstance(event, PermissionRequested):
            response: Any = await asyncio.to_thread(ask_permission, console, event)
        else:
            response = await asyncio.to_thread(ask_questions, console, event)
        try:
            await orchestrator.respond(event.task_id, event.request_id, response)
        except StewardError as exc:
            console.print(Text(str(exc), style="red"))


async def _consume(console: Console, orchestrator: SessionOrchestrator, bus: EventBus) -> None:
    async for event in bus.consume():
        await _handle_event(console, orchestrator, event, interactive=True)


async def _drive(
    console: Console,
    orchestrator: SessionOrchestrator,
    bus: EventBus,
    task_id: str,
    send_text: str | None = None,
) -> None:
    consumer = asyncio.create_task(_consume(console, orchestrator, bus))
    try:
        if send_text is None:
            await orchestrator.start(task_id)
        else:
            await orchestrator.send_message(task_id, send_text)
    finally:
        bus.close()
        await consumer
        for event in bus.drain_nowait():
            await _handle_event(console, orchestrator, event, interactive=False)
        await orchestrator.shutdown()


def cmd_run(args: argparse.Namespace, config: EngineConfig, console: Console) -> int:
    orchestrator, store, bus = _build(config)
    cwd = os.path.abspath(os.path.expanduser(args.cwd or os.getcwd()))
    task = store.create_task(Task(
        prompt=args.prompt,
        cwd=cwd,
        name=args.name,
        interaction_mode=InteractionMode(args.mode or config.default_interaction_mode),
        agent_backend=AgentBackend(args.backend or config.default_backend),
        model=args.model or config.default_model,
    ))
    console.print(Text(f"Task {task.id}", style="bold"))
    asyncio.run(_drive(console, orchestrator, bus, task.id))
    return 0


def cmd_send(args: argparse.Namespace, config: EngineConfig, console: Console) -> int:
    orchestrator, _, bus = _build(config)
    asyncio.run(_drive(console, orchestrator, bus, args.task_id, send_text=args.message))
    return 0


def cmd_history(args: argparse.Namespace, config: EngineConfig, console: Console) -> int:
    store = TaskStore(config.db_path)
    task = store.get_task(args.task_id)
    if task is None:
        console.print(Text(f"Task {args.task_id} not found", style="red"))
        return 1
    console.print(Panel(
        task.prompt,
        title=task.name or task.id,
        subtitle=f"{task.status.value} · {task.agent_backend.value}",
    ))
    for entry in store.list_entries(task.id):
        render_entry(console, entry)
    return 0


def cmd_list(args: argparse.Namespace, config: EngineConfig, console: Console) -> int:
    store = TaskStore(config.db_path)
    table = Table(title="Tasks")
    table.add_column("id")
    table.add_column("name")
    table.add_column("status")
    table.add_column("backend")
    table.add_column("updated")
    for task in store.list_tasks():
        style = _STATUS_STYLES.get(task.status.value, "white")
        table.add_row(
            task.id,
            task.name or task.prompt[:40],
            Text(task.status.value, style=style),
            task.agent_backend.value,
            task.updated_at,
        )
    console.print(table)
    return 0


def cmd_recover(args: argparse.Namespace, config: EngineConfig, console: Console) -> int:
    orchestrator, _, _ = _build(config)
    count = orchestrator.recover_stale_tasks()
    console.print(f"Recovered {count} stale task(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="steward",
        description="Run and supervise interactive coding-agent sessions",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (overrides STEWARD_* env vars)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging on stderr",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Create a task and run it")
    run.add_argument("prompt", help="What the agent should do")
    run.add_argument("--cwd", default=None, help="Working directory (default: current dir)")
    run.add_argument("--name", default=None, help="Task name (default: engine-provided title)")
    run.add_argument(
        "--backend",
        choices=[b.value for b in AgentBackend],
        default=None,
        help="Agent engine (default: from config)",
    )
    run.add_argument("--model", default=None, help="Model id (opencode: provider/model)")
    run.add_argument(
        "--mode",
        choices=[m.value for m in InteractionMode],
        default=None,
        help="ask: confirm tools, auto: never ask, plan: plan only",
    )
    run.set_defaults(func=cmd_run)

    send = sub.add_parser("send", help="Send a follow-up message to a task")
    send.add_argument("task_id")
    send.add_argument("message")
    send.set_defaults(func=cmd_send)

    history = sub.add_parser("history", help="Show a task's entries")
    history.add_argument("task_id")
    history.set_defaults(func=cmd_history)

    lst = sub.add_parser("list", help="List tasks")
    lst.set_defaults(func=cmd_list)

    recover = sub.add_parser("recover", help="Mark tasks left running by a crash as interrupted")
    recover.set_defaults(func=cmd_recover)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = EngineConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    log_file = configure_logging(config, verbose=args.verbose)
    logger.info("steward %s log=%s", args.command, log_file)

    console = Console()
    try:
        return args.func(args, config, console)
    except StewardError as exc:
        console.print(Text(str(exc), style="red"))
        return 1
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
