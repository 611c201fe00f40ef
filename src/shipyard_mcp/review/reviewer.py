"""AI reviewer backed by the Claude CLI."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from ..resilience import CommandResult, CommandRunner


class ReviewerError(RuntimeError):
    """Base class for reviewer errors."""


class ReviewerNotFoundError(ReviewerError):
    """Raised when the reviewer CLI executable cannot be located."""


class InferenceClient(Protocol):
    """One prompt in, one completion out."""

    async def complete(self, prompt: str, *, cwd: Path | None = None, timeout_ms: int = 300_000) -> str:
        ...


class ClaudeReviewer:
    """Run ``claude -p`` with the prompt on stdin and return its text output."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        runner: CommandRunner | None = None,
        extra_args: Sequence[str] = (),
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._runner = runner or CommandRunner()
        self._extra_args = list(extra_args)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise ReviewerNotFoundError(f"Reviewer executable not found at {candidate}")

        binary = shutil.which("claude")
        if binary is None:
            raise ReviewerNotFoundError("claude CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> CommandResult:
        return await self._runner.run([str(self._executable_path), "--version"], timeout_ms=10_000)

    async def complete(self, prompt: str, *, cwd: Path | None = None, timeout_ms: int = 300_000) -> str:
        result = await self._runner.run(
            [str(self._executable_path), "-p", "--output-format", "text", *self._extra_args],
            cwd=cwd,
            timeout_ms=timeout_ms,
            input_text=prompt,
        )
        if not result.ok:
            detail = result.stderr.strip() or f"exit code {result.returncode}"
            raise ReviewerError(f"Reviewer CLI failed: {detail}")
        return result.stdout


class UnavailableReviewer:
    """Stands in when no reviewer CLI is installed; every review fails with the lookup error."""

    def __init__(self, reason: str) -> None:
        self.reason = reason

    async def complete(self, prompt: str, *, cwd: Path | None = None, timeout_ms: int = 300_000) -> str:
        raise ReviewerNotFoundError(self.reason)


class FakeReviewer:
    """Test double returning scripted completions (or raising scripted errors)."""

    def __init__(self, responses: Iterable[str | BaseException] | None = None) -> None:
        self._responses = list(responses or [])
        self.prompts: list[str] = []

    async def complete(self, prompt: str, *, cwd: Path | None = None, timeout_ms: int = 300_000) -> str:
        self.prompts.append(prompt)
        if not self._responses:
            return '{"passed": true, "summary": "Looks good", "issues": []}'
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


__all__ = [
    "ClaudeReviewer",
    "FakeReviewer",
    "InferenceClient",
    "ReviewerError",
    "ReviewerNotFoundError",
    "UnavailableReviewer",
]
