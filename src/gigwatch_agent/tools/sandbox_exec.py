"""Sandboxed command execution — the ``bash_exec`` tool.

Lets the agent run constrained inspection commands inside the service's
working directory:

- only ``command + args``; nothing is ever handed to a shell;
- the command must be on a default-deny allow-list and off a denylist of
  interpreters, remote-access and privilege-escalation binaries;
- path-shaped arguments must stay at-or-under the working root;
- wall-clock time and captured output are bounded.

Every failure is reported as a :class:`ToolResult`; nothing raises across
the tool boundary. Cancelling a running call kills and reaps the child
before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import re
import time
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from ..errors import ErrorKind
from .base import Tool, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 15_000
MIN_TIMEOUT_MS = 500
MAX_TIMEOUT_MS = 60_000

DEFAULT_MAX_OUTPUT_CHARS = 8_000
MIN_OUTPUT_CHARS = 500
MAX_OUTPUT_CHARS = 20_000

_READ_CHUNK = 4096

# Secondary interpreters, remote access and privilege escalation.
BLOCKED_COMMANDS: frozenset[str] = frozenset(
    {
        "bash", "sh", "zsh", "fish", "dash", "ksh", "csh", "tcsh",
        "python", "python3", "node", "bun", "deno", "perl", "ruby", "php", "lua",
        "pwsh", "powershell",
        "sudo", "su", "doas",
        "ssh", "scp", "sftp", "rsync", "nc", "telnet", "curl", "wget",
    }
)  # fmt: skip

# Read-only inspection utilities available on stock Linux/macOS.
DEFAULT_ALLOWED_COMMANDS: frozenset[str] = frozenset(
    {
        "basename", "cat", "cut", "date", "dirname", "du", "echo", "file",
        "find", "grep", "head", "id", "ls", "nl", "paste", "pwd", "realpath",
        "sort", "stat", "tail", "tr", "uname", "uniq", "wc", "whoami",
    }
)  # fmt: skip


@dataclass(frozen=True)
class _OptionRules:
    """Options that would make an allowed utility execute or write.

    ``predicates`` are single-dash words (find); ``long`` names are refused
    under any abbreviation getopt would accept; ``short`` letters are refused
    anywhere in a cluster, while ``short_with_value`` letters end the cluster.
    """

    predicates: tuple[str, ...] = ()
    long: tuple[str, ...] = ()
    short: str = ""
    short_with_value: str = ""


_FORBIDDEN_OPTIONS: dict[str, _OptionRules] = {
    "find": _OptionRules(
        predicates=(
            "-exec", "-execdir", "-ok", "-okdir", "-delete",
            "-fprint", "-fprint0", "-fprintf", "-fls",
        ),
    ),
    "sort": _OptionRules(
        long=("output", "compress-program", "temporary-directory"),
        short="oT",
        short_with_value="kSt",
    ),
}  # fmt: skip

# Shortest abbreviation of a find predicate that is refused.
_MIN_PREDICATE_PREFIX = 3

_COMMAND_NAME = re.compile(r"^[A-Za-z0-9._-]+$")
_CONTROL_CHARS = re.compile(r"[\r\n\t\0]")


class ExecOutcome(StrEnum):
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass(frozen=True)
class Rejection:
    """A validation stage's verdict: which rule failed and why."""

    kind: ErrorKind
    message: str


@dataclass
class ExecRequest:
    """A validated, clamped execution request."""

    command: str
    args: list[str]
    timeout_ms: int
    max_output_chars: int


@dataclass
class _Completion:
    outcome: ExecOutcome
    exit_code: int | None = None
    error: str | None = None


@dataclass
class _CappedBuffer:
    """Accumulates decoded output up to *limit* characters."""

    limit: int
    text: str = ""
    truncated: bool = False
    _decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )

    def feed(self, chunk: bytes, final: bool = False) -> None:
        self.append(self._decoder.decode(chunk, final=final))

    def append(self, piece: str) -> None:
        if not piece:
            return
        if len(self.text) >= self.limit:
            self.truncated = True
            return
        combined = self.text + piece
        if len(combined) > self.limit:
            self.text = combined[: self.limit]
            self.truncated = True
        else:
            self.text = combined


# ---------------------------------------------------------------------------
# Validation chain
# ---------------------------------------------------------------------------


def is_path_like(arg: str) -> bool:
    """Coarse check for arguments that name a filesystem location."""
    if not arg or arg.startswith("-"):
        return False
    if arg in (".", ".."):
        return True
    return "/" in arg or arg.startswith(".")


def is_inside_root(root: Path, candidate: str) -> bool:
    """True if *candidate* is relative and normalises at-or-under *root*."""
    if not candidate:
        return True
    if os.path.isabs(candidate) or candidate.startswith("~"):
        return False
    resolved = os.path.normpath(os.path.join(root, candidate))
    rel = os.path.relpath(resolved, root)
    return rel == "." or not (rel == ".." or rel.startswith(".." + os.sep))


def clamp(value: Any, default: int, floor: int, ceiling: int) -> int:
    """Coerce *value* to an int within ``[floor, ceiling]``; non-numbers → default."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        number = default
    elif isinstance(value, float) and value != value:  # NaN
        number = default
    elif value in (float("inf"), float("-inf")):
        number = ceiling if value > 0 else floor
    else:
        number = int(value)
    return max(floor, min(ceiling, number))


def _path_candidates(arg: str) -> list[str]:
    if arg.startswith("--") and "=" in arg:
        return [arg.split("=", 1)[1]]
    return [arg]


def is_forbidden_option(rules: _OptionRules, arg: str) -> bool:
    """True if *arg* spells, abbreviates or bundles one of *rules*' options."""
    if arg.startswith("--"):
        name = arg[2:].split("=", 1)[0]
        return bool(name) and any(option.startswith(name) for option in rules.long)
    if not arg.startswith("-") or len(arg) < 2:
        return False
    for predicate in rules.predicates:
        if arg == predicate or (
            len(arg) >= _MIN_PREDICATE_PREFIX and predicate.startswith(arg)
        ):
            return True
    if rules.predicates:
        return False
    for letter in arg[1:]:
        if letter in rules.short:
            return True
        if letter in rules.short_with_value:
            break
    return False


class SandboxedExecutor(Tool):
    """Runs allow-listed commands confined to a working root."""

    name = "bash_exec"
    description = (
        "Run a read-only inspection command inside the project directory. "
        "Takes a command name plus an argument list; shell syntax (pipes, "
        "redirects, globbing, variables) is not supported."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "Command name, e.g. find, grep, ls, cat, head, wc",
            },
            "args": {
                "type": "array",
                "description": 'Argument list, e.g. ["-n", "TODO", "src"]',
                "items": {"type": "string"},
            },
            "timeoutMs": {
                "type": "number",
                "description": f"Timeout in milliseconds (default {DEFAULT_TIMEOUT_MS}, "
                f"max {MAX_TIMEOUT_MS})",
                "default": DEFAULT_TIMEOUT_MS,
            },
            "maxOutputChars": {
                "type": "number",
                "description": f"Max characters kept per stream (default "
                f"{DEFAULT_MAX_OUTPUT_CHARS}, max {MAX_OUTPUT_CHARS})",
                "default": DEFAULT_MAX_OUTPUT_CHARS,
            },
        },
        "required": ["command"],
    }

    def __init__(
        self,
        root: str | Path | None = None,
        allowed_commands: frozenset[str] | set[str] | None = None,
        blocked_commands: frozenset[str] | set[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self._root = Path(root if root is not None else os.getcwd()).resolve()
        self._allowed = frozenset(
            allowed_commands if allowed_commands is not None else DEFAULT_ALLOWED_COMMANDS
        )
        self._blocked = frozenset(
            blocked_commands if blocked_commands is not None else BLOCKED_COMMANDS
        )
        self._env = env

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Tool entry point
    # ------------------------------------------------------------------

    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        validated = self.validate(arguments)
        if isinstance(validated, Rejection):
            logger.info("bash_exec rejected: %s", validated.message)
            return ToolResult.fail(validated.kind, validated.message)

        start = time.perf_counter()
        result = await self.run(validated)
        result.duration_ms = (time.perf_counter() - start) * 1000
        return result

    def validate(self, arguments: dict[str, Any]) -> ExecRequest | Rejection:
        """Run the validation chain; the first failing stage wins."""
        raw_command = arguments.get("command")
        command = raw_command.strip() if isinstance(raw_command, str) else ""
        raw_args = arguments.get("args")
        args = [str(a) for a in raw_args] if isinstance(raw_args, list) else []

        stages = (
            lambda: self._check_command_name(command),
            lambda: self._check_denylist(command),
            lambda: self._check_allowlist(command),
            lambda: self._check_options(command, args),
            lambda: self._check_control_chars(args),
            lambda: self._check_paths(args),
        )
        for stage in stages:
            rejection = stage()
            if rejection is not None:
                return rejection

        return ExecRequest(
            command=command,
            args=args,
            timeout_ms=clamp(
                arguments.get("timeoutMs"), DEFAULT_TIMEOUT_MS, MIN_TIMEOUT_MS, MAX_TIMEOUT_MS
            ),
            max_output_chars=clamp(
                arguments.get("maxOutputChars"),
                DEFAULT_MAX_OUTPUT_CHARS,
                MIN_OUTPUT_CHARS,
                MAX_OUTPUT_CHARS,
            ),
        )

    @staticmethod
    def _check_command_name(command: str) -> Rejection | None:
        if not command:
            return Rejection(ErrorKind.INPUT, "command is required")
        if not _COMMAND_NAME.match(command):
            return Rejection(ErrorKind.EXECUTOR_SECURITY, "invalid command name")
        return None

    def _check_denylist(self, command: str) -> Rejection | None:
        if command in self._blocked:
            return Rejection(ErrorKind.EXECUTOR_SECURITY, f'command "{command}" is blocked')
        return None

    def _check_allowlist(self, command: str) -> Rejection | None:
        if command not in self._allowed:
            permitted = ", ".join(sorted(self._allowed))
            return Rejection(
                ErrorKind.EXECUTOR_SECURITY,
                f'command "{command}" is not allowed; permitted: {permitted}',
            )
        return None

    @staticmethod
    def _check_options(command: str, args: list[str]) -> Rejection | None:
        rules = _FORBIDDEN_OPTIONS.get(command)
        if rules is None:
            return None
        for arg in args:
            if is_forbidden_option(rules, arg):
                option = arg.split("=", 1)[0]
                return Rejection(
                    ErrorKind.EXECUTOR_SECURITY,
                    f'option "{option}" is not allowed for {command}',
                )
        return None

    @staticmethod
    def _check_control_chars(args: list[str]) -> Rejection | None:
        for arg in args:
            if _CONTROL_CHARS.search(arg):
                return Rejection(ErrorKind.EXECUTOR_SECURITY, "args contain control characters")
        return None

    def _check_paths(self, args: list[str]) -> Rejection | None:
        for arg in args:
            for candidate in _path_candidates(arg):
                if is_path_like(candidate) and not is_inside_root(self._root, candidate):
                    return Rejection(
                        ErrorKind.EXECUTOR_SECURITY,
                        f"path arg is outside workspace: {arg}",
                    )
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, request: ExecRequest) -> ToolResult:
        """Spawn the command and resolve exit / failure / timeout exactly once."""
        stdout = _CappedBuffer(request.max_output_chars)
        stderr = _CappedBuffer(request.max_output_chars)
        data: dict[str, Any] = {
            "command": request.command,
            "args": request.args,
            "cwd": str(self._root),
        }

        try:
            proc = await asyncio.create_subprocess_exec(
                request.command,
                *request.args,
                cwd=self._root,
                env=self._env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning("bash_exec failed to start %s: %s", request.command, exc)
            data.update(_stream_fields(stdout, stderr))
            return ToolResult.fail(
                ErrorKind.EXECUTOR_SPAWN, f"failed to start command: {exc}", data
            )

        data["pid"] = proc.pid
        completion = await self._await_completion(proc, stdout, stderr, request.timeout_ms)
        data.update(_stream_fields(stdout, stderr))

        if completion.outcome is ExecOutcome.TIMED_OUT:
            data["timedOut"] = True
            data["exitCode"] = proc.returncode
            return ToolResult.fail(
                ErrorKind.EXECUTOR_TIMEOUT,
                f"command timed out after {request.timeout_ms}ms",
                data,
            )
        if completion.outcome is ExecOutcome.FAILED:
            return ToolResult.fail(
                ErrorKind.EXECUTOR_SPAWN, f"command failed: {completion.error}", data
            )

        data["exitCode"] = completion.exit_code
        if completion.exit_code == 0:
            return ToolResult.ok(data)
        return ToolResult.fail(
            ErrorKind.TOOL_EXECUTION,
            f"command exited with code {completion.exit_code}",
            data,
        )

    async def _await_completion(
        self,
        proc: asyncio.subprocess.Process,
        stdout: _CappedBuffer,
        stderr: _CappedBuffer,
        timeout_ms: int,
    ) -> _Completion:
        loop = asyncio.get_running_loop()
        settled: asyncio.Future[_Completion] = loop.create_future()

        def settle(completion: _Completion) -> None:
            if not settled.done():
                settled.set_result(completion)

        def on_timeout() -> None:
            if settled.done():
                return
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            settle(_Completion(ExecOutcome.TIMED_OUT))

        async def watch_exit() -> None:
            await asyncio.gather(
                _pump(proc.stdout, stdout),
                _pump(proc.stderr, stderr),
            )
            code = await proc.wait()
            settle(_Completion(ExecOutcome.EXITED, exit_code=code))

        def on_watcher_done(task: asyncio.Task[None]) -> None:
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                settle(_Completion(ExecOutcome.FAILED, error=str(exc)))

        timer = loop.call_later(timeout_ms / 1000, on_timeout)
        watcher = asyncio.create_task(watch_exit())
        watcher.add_done_callback(on_watcher_done)
        try:
            completion = await settled
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            watcher.cancel()
            await proc.wait()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
            raise
        finally:
            timer.cancel()

        if completion.outcome is not ExecOutcome.EXITED:
            # Reap the killed child, then stop pumping pipes that a surviving
            # grandchild may still hold open.
            await proc.wait()
            if not watcher.done():
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
        return completion


async def _pump(stream: asyncio.StreamReader | None, buffer: _CappedBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            buffer.feed(b"", final=True)
            return
        buffer.feed(chunk)


def _stream_fields(stdout: _CappedBuffer, stderr: _CappedBuffer) -> dict[str, Any]:
    return {
        "stdout": stdout.text,
        "stderr": stderr.text,
        "stdoutTruncated": stdout.truncated,
        "stderrTruncated": stderr.truncated,
    }
