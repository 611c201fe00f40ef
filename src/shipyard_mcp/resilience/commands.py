"""Timeout wrappers and async subprocess execution."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


class OperationTimeoutError(TimeoutError):
    """Raised when an operation exceeds its time budget."""

    def __init__(self, message: str, timeout_ms: int, *, label: str | None = None) -> None:
        super().__init__(message)
        self.timeout_ms = timeout_ms
        self.label = label


class CommandError(RuntimeError):
    """Raised when a command exits with a non-zero status and the caller asked to check it."""

    def __init__(self, result: "CommandResult", message: str | None = None) -> None:
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        super().__init__(message or f"Command failed ({' '.join(result.args[:3])}): {detail}")
        self.result = result


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of an external command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def check(self) -> "CommandResult":
        if not self.ok:
            raise CommandError(self)
        return self


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


async def with_timeout(operation: Awaitable[T], timeout_ms: int = 10_000, label: str = "Operation") -> T:
    """Await ``operation`` but give up after ``timeout_ms`` milliseconds."""

    try:
        return await asyncio.wait_for(operation, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        raise OperationTimeoutError(
            f"{label} timed out after {timeout_ms}ms", timeout_ms, label=label
        ) from exc


async def with_timeout_fallback(
    operation: Awaitable[T],
    timeout_ms: int,
    fallback: T,
    label: str = "Operation",
) -> T:
    """Like :func:`with_timeout` but return ``fallback`` instead of raising."""

    try:
        return await with_timeout(operation, timeout_ms, label)
    except OperationTimeoutError:
        logger.warning("Operation timed out, using fallback", extra={"label": label, "timeout_ms": timeout_ms})
        return fallback


async def run_command(
    args: Sequence[str],
    *,
    cwd: Path | str | None = None,
    timeout_ms: int = 10_000,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run an external command, terminating it when the timeout expires."""

    cmd = [str(arg) for arg in args]
    process = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=str(cwd) if cwd is not None else None,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else sanitize_environment(),
    )
    payload = input_text.encode("utf-8") if input_text is not None else None
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(payload), timeout=timeout_ms / 1000
        )
    except asyncio.TimeoutError as exc:
        _terminate(process)
        await process.wait()
        preview = " ".join(cmd)[:50]
        raise OperationTimeoutError(
            f"Command timed out after {timeout_ms}ms: {preview}...", timeout_ms, label=preview
        ) from exc

    return CommandResult(
        args=tuple(cmd),
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout_bytes.decode("utf-8", errors="replace"),
        stderr=stderr_bytes.decode("utf-8", errors="replace"),
    )


def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


class CommandRunner:
    """Run external commands with a shared environment."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env = dict(env) if env is not None else None

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        timeout_ms: int = 10_000,
        input_text: str | None = None,
    ) -> CommandResult:
        return await run_command(
            args,
            cwd=cwd,
            timeout_ms=timeout_ms,
            input_text=input_text,
            env=self._env if self._env is not None else sanitize_environment(),
        )


Handler = Callable[[tuple[str, ...], Path | str | None], CommandResult | None]


class FakeCommandRunner(CommandRunner):
    """Test double that answers commands from a handler or a scripted queue."""

    def __init__(
        self,
        responses: Iterable[CommandResult] | None = None,
        *,
        handler: Handler | None = None,
    ) -> None:
        super().__init__(env={})
        self._responses = list(responses or [])
        self._handler = handler
        self._invocations: list[dict[str, Any]] = []

    async def run(  # type: ignore[override]
        self,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        timeout_ms: int = 10_000,
        input_text: str | None = None,
    ) -> CommandResult:
        call = tuple(str(arg) for arg in args)
        self._invocations.append(
            {"args": call, "cwd": cwd, "timeout_ms": timeout_ms, "input_text": input_text}
        )
        if self._handler is not None:
            result = self._handler(call, cwd)
            if result is not None:
                return result
        if self._responses:
            return self._responses.pop(0)
        return CommandResult(args=call, returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[dict[str, Any]]:
        return self._invocations

    def commands(self) -> list[tuple[str, ...]]:
        return [entry["args"] for entry in self._invocations]


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "OperationTimeoutError",
    "run_command",
    "sanitize_environment",
    "with_timeout",
    "with_timeout_fallback",
]
