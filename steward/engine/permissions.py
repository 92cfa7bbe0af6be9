"""Allow-list rules for tool permissions.

Permission strings follow the Claude settings format: a bare tool name
(``Edit``) or ``Bash(<exact command>)``. A bare ``Bash`` never matches
anything; shell access is always granted one command at a time.
"""
from __future__ import annotations

import os
import re
import shlex
from collections.abc import Iterable
from typing import Any

from .models import InteractionMode, SessionAllowOption

BASH_TOOL = "Bash"
EXIT_PLAN_MODE_TOOL = "ExitPlanMode"
ASK_USER_QUESTION_TOOL = "AskUserQuestion"

_FLAG_RE = re.compile(r"^-[a-zA-Z]+$")
_LS_FLAG_RE = re.compile(r"^-[a-zA-Z0-9]+$")
# Anything the shell would expand, chain or redirect
_SHELL_META_RE = re.compile(r"[;&|$`<>(){}\[\]*?~!#\\\n\r]")


def is_bare_bash(permission: str) -> bool:
    return permission in ("Bash", "Bash()")


def build_permission_string(tool_name: str, tool_input: dict[str, Any]) -> str | None:
    """Permission string granting this exact call, or None for empty Bash."""
    if tool_name == BASH_TOOL:
        command = str(tool_input.get("command") or "").strip()
        if not command:
            return None
        return f"Bash({command})"
    return tool_name


def session_allow_option(
    tool_name: str, tool_input: dict[str, Any],
) -> SessionAllowOption | None:
    """The "allow for session" choice offered alongside a permission request."""
    if tool_name == EXIT_PLAN_MODE_TOOL:
        return SessionAllowOption(
            label="Allow and Auto-Edit",
            tools_to_allow=["Edit", "Write"],
            set_mode_on_allow=InteractionMode.ASK,
        )
    permission = build_permission_string(tool_name, tool_input)
    if permission is None:
        return None
    return SessionAllowOption(
        label=f"Allow {tool_name} for Session",
        tools_to_allow=[permission],
    )


def _split_args(arg_string: str) -> list[str] | None:
    try:
        return shlex.split(arg_string)
    except ValueError:
        return None


def _paths_only(args: list[str], flag_re: re.Pattern[str] = _FLAG_RE) -> list[str] | None:
    """Positional args, or None if any flag looks malformed."""
    paths = []
    for arg in args:
        if arg.startswith("-"):
            if not flag_re.match(arg):
                return None
            continue
        paths.append(arg)
    return paths


def _is_within(path: str, directory: str) -> bool:
    target = os.path.normpath(path)
    root = os.path.normpath(directory)
    return target == root or target.startswith(root + os.sep)


def _all_within(paths: list[str], directory: str) -> bool:
    return all(os.path.isabs(p) and _is_within(p, directory) for p in paths)


def _is_mkdir_within(command: str, directory: str) -> bool:
    match = re.match(r"^mkdir\s+-p\s+(.+)$", command)
    if not match:
        return False
    paths = _split_args(match.group(1))
    return bool(paths) and _all_within(paths, directory)


def _is_mv_within(command: str, directory: str) -> bool:
    if not re.match(r"^mv\s", command):
        return False
    args = _split_args(command[2:].strip())
    paths = _paths_only(args) if args is not None else None
    return paths is not None and len(paths) >= 2 and _all_within(paths, directory)


def _is_cat_within(command: str, directory: str) -> bool:
    if not re.match(r"^cat\s", command):
        return False
    args = _split_args(command[3:].strip())
    paths = _paths_only(args) if args is not None else None
    return bool(paths) and _all_within(paths, directory)


def _is_ls_within(command: str, directory: str) -> bool:
    trimmed = command.strip()
    if trimmed == "ls":
        return True
    if not re.match(r"^ls\s", trimmed):
        return False
    args = _split_args(trimmed[2:].strip())
    paths = _paths_only(args, _LS_FLAG_RE) if args is not None else None
    if paths is None:
        return False
    return not paths or _all_within(paths, directory)


def is_tool_allowed(
    tool_name: str,
    tool_input: dict[str, Any],
    permissions: Iterable[str],
    working_dir: str | None = None,
) -> bool:
    """Whether ``permissions`` already cover this tool call.

    With ``working_dir`` set, a ``Write`` grant also covers ``mkdir -p``
    and ``mv`` inside it, and a ``Read`` grant covers ``cat`` and ``ls``.
    Commands carrying shell metacharacters never qualify for these.
    """
    granted = set(permissions)
    if tool_name == BASH_TOOL:
        command = str(tool_input.get("command") or "")
        permission = f"Bash({command})"
        if is_bare_bash(permission):
            return False
        if permission in granted:
            return True
        if working_dir and not _SHELL_META_RE.search(command):
            if "Write" in granted and (
                _is_mkdir_within(command, working_dir)
                or _is_mv_within(command, working_dir)
            ):
                return True
            if "Read" in granted and (
                _is_cat_within(command, working_dir)
                or _is_ls_within(command, working_dir)
            ):
                return True
        return False
    return not is_bare_bash(tool_name) and tool_name in granted
