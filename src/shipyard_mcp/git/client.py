"""Thin async wrapper over the git command line."""

from __future__ import annotations

import logging
from pathlib import Path

from ..resilience import CircuitBreaker, CommandError, CommandResult, CommandRunner

logger = logging.getLogger(__name__)

DEFAULT_BRANCH_CANDIDATES = ("main", "master")


class GitCommandError(CommandError):
    """Raised when a git command exits non-zero."""


class GitClient:
    """Run git commands with an explicit working directory and timeout.

    Network-bound commands (push, ls-remote) go through ``breaker`` when one
    is supplied.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        executable: str = "git",
        command_timeout_ms: int = 15_000,
        worktree_timeout_ms: int = 30_000,
        push_timeout_ms: int = 30_000,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._runner = runner or CommandRunner()
        self._executable = executable
        self.command_timeout_ms = command_timeout_ms
        self.worktree_timeout_ms = worktree_timeout_ms
        self.push_timeout_ms = push_timeout_ms
        self._breaker = breaker

    async def run(
        self,
        *args: str,
        cwd: Path | str,
        timeout_ms: int | None = None,
        check: bool = True,
    ) -> CommandResult:
        result = await self._runner.run(
            [self._executable, *args],
            cwd=cwd,
            timeout_ms=timeout_ms or self.command_timeout_ms,
        )
        if check and not result.ok:
            raise GitCommandError(result)
        return result

    async def _remote(self, *args: str, cwd: Path | str, timeout_ms: int) -> CommandResult:
        async def call() -> CommandResult:
            return await self.run(*args, cwd=cwd, timeout_ms=timeout_ms)

        if self._breaker is None:
            return await call()
        return await self._breaker.execute(call)

    async def status_porcelain(self, cwd: Path | str, *, timeout_ms: int | None = None) -> str:
        result = await self.run("status", "--porcelain", cwd=cwd, timeout_ms=timeout_ms)
        return result.stdout

    async def has_uncommitted_changes(self, cwd: Path | str, *, timeout_ms: int | None = None) -> bool:
        return bool((await self.status_porcelain(cwd, timeout_ms=timeout_ms)).strip())

    async def add_all(self, cwd: Path | str) -> None:
        await self.run("add", "-A", cwd=cwd)

    async def commit(self, cwd: Path | str, message: str) -> None:
        await self.run("commit", "-m", message, cwd=cwd)

    async def current_branch(self, cwd: Path | str) -> str:
        result = await self.run("rev-parse", "--abbrev-ref", "HEAD", cwd=cwd)
        return result.stdout.strip()

    async def rev_parse(self, cwd: Path | str, ref: str) -> str:
        result = await self.run("rev-parse", ref, cwd=cwd)
        return result.stdout.strip()

    async def push(self, cwd: Path | str, branch: str, *, set_upstream: bool = True) -> None:
        args = ["push", "-u", "origin", branch] if set_upstream else ["push", "origin", branch]
        await self._remote(*args, cwd=cwd, timeout_ms=self.push_timeout_ms)

    async def remote_branch_exists(self, cwd: Path | str, branch: str) -> bool:
        result = await self._remote(
            "ls-remote", "--heads", "origin", branch, cwd=cwd, timeout_ms=self.command_timeout_ms
        )
        return bool(result.stdout.strip())

    async def diff(self, cwd: Path | str, base: str, head: str, *, three_dot: bool = True) -> str:
        args = ["diff", f"{base}...{head}"] if three_dot else ["diff", base, head]
        result = await self.run(*args, cwd=cwd)
        return result.stdout

    async def default_branch(self, repo: Path | str) -> str:
        """Resolve the default branch: remote HEAD, then main/master, then ``main``."""

        symbolic = await self.run(
            "symbolic-ref", "--quiet", "refs/remotes/origin/HEAD", cwd=repo, check=False
        )
        ref = symbolic.stdout.strip()
        if symbolic.ok and ref:
            return ref.rsplit("/", 1)[-1]

        listed = await self.run("branch", "--list", *DEFAULT_BRANCH_CANDIDATES, cwd=repo, check=False)
        names = {line.strip().lstrip("*+ ").strip() for line in listed.stdout.splitlines() if line.strip()}
        for candidate in DEFAULT_BRANCH_CANDIDATES:
            if candidate in names:
                return candidate
        return DEFAULT_BRANCH_CANDIDATES[0]

    async def branch_exists(self, repo: Path | str, branch: str) -> bool:
        result = await self.run(
            "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}", cwd=repo, check=False
        )
        return result.ok

    async def worktree_add(
        self,
        repo: Path | str,
        path: Path | str,
        branch: str,
        start_point: str,
        *,
        new_branch: bool = True,
    ) -> None:
        args = ["worktree", "add", str(path), "-b", branch, start_point] if new_branch else [
            "worktree", "add", str(path), branch
        ]
        await self.run(*args, cwd=repo, timeout_ms=self.worktree_timeout_ms)

    async def worktree_remove(self, repo: Path | str, path: Path | str) -> None:
        await self.run(
            "worktree", "remove", str(path), "--force",
            cwd=repo,
            timeout_ms=self.worktree_timeout_ms,
        )

    async def worktree_list(self, repo: Path | str) -> list[Path]:
        result = await self.run("worktree", "list", "--porcelain", cwd=repo)
        return [
            Path(line[len("worktree "):].strip())
            for line in result.stdout.splitlines()
            if line.startswith("worktree ")
        ]

    async def worktree_prune(self, repo: Path | str) -> None:
        await self.run("worktree", "prune", cwd=repo)


__all__ = ["DEFAULT_BRANCH_CANDIDATES", "GitClient", "GitCommandError"]
