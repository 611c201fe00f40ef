from __future__ import annotations

import json
import re
import shutil
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

from shipyard_mcp.github import GitHubClient
from shipyard_mcp.resilience import CommandResult, FakeCommandRunner
from shipyard_mcp.storage import ChromaStore, Task, YamlTaskRepository

REPO = "acme/widgets"
T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if ids is not None:
            wanted = set(ids)
            filtered = [record for record in filtered if record.id in wanted]
        if where:
            for key, value in where.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


class Clock:
    """Mutable wall clock shared by the store, the fake tracker and the engines."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class FakeGitHub:
    """In-memory GitHub REST API for one repository, served through ``httpx.MockTransport``."""

    def __init__(self, clock: Clock, repo: str = REPO) -> None:
        self.clock = clock
        self.repo = repo
        self.issues: dict[int, dict[str, Any]] = {}
        self.comments: dict[int, list[str]] = defaultdict(list)
        self.labels: dict[str, dict[str, Any]] = {}
        self.pulls: dict[int, dict[str, Any]] = {}
        self.deleted_branches: list[str] = []
        self.requests: list[tuple[str, str, Any]] = []
        self.failures: dict[tuple[str, str], int] = {}
        self._next_number = 1

    # -- helpers for tests -------------------------------------------------

    def client(self, **kwargs: Any) -> GitHubClient:
        return GitHubClient("test-token", self.repo, transport=httpx.MockTransport(self.handler), **kwargs)

    def _stamp(self) -> str:
        self.clock.advance(seconds=1)
        return iso(self.clock.now)

    def add_issue(
        self,
        *,
        title: str,
        body: str = "",
        labels: list[str] | None = None,
        state: str = "open",
        created_at: datetime | None = None,
    ) -> dict[str, Any]:
        number = self._next_number
        self._next_number += 1
        stamp = iso(created_at) if created_at else self._stamp()
        issue = {
            "number": number,
            "title": title,
            "body": body,
            "state": state,
            "labels": [{"name": name} for name in labels or []],
            "html_url": f"https://github.com/{self.repo}/issues/{number}",
            "created_at": stamp,
            "updated_at": stamp,
        }
        self.issues[number] = issue
        return issue

    def edit_issue(self, number: int, **fields: Any) -> dict[str, Any]:
        issue = self.issues[number]
        if "labels" in fields:
            fields["labels"] = [{"name": name} for name in fields["labels"]]
        issue.update(fields)
        issue["updated_at"] = self._stamp()
        return issue

    def add_pull(self, *, branch: str, mergeable: bool | None = True, state: str = "open") -> dict[str, Any]:
        number = self._next_number
        self._next_number += 1
        pull = {
            "number": number,
            "html_url": f"https://github.com/{self.repo}/pull/{number}",
            "state": state,
            "merged": False,
            "mergeable": mergeable,
            "mergeable_state": "clean" if mergeable else "dirty",
            "head": {"ref": branch},
        }
        self.pulls[number] = pull
        return pull

    def calls(self, method: str, pattern: str = "") -> list[tuple[str, str, Any]]:
        return [call for call in self.requests if call[0] == method and re.search(pattern, call[1])]

    # -- transport ---------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((method, path, body))

        forced = self.failures.get((method, path))
        if forced is not None:
            return httpx.Response(forced, json={"message": "forced failure"})

        if path == "/user":
            return httpx.Response(200, json={"login": "octocat"})

        prefix = f"/repos/{self.repo}"
        if not path.startswith(prefix):
            return httpx.Response(404, json={"message": "Not Found"})
        rest = path[len(prefix):]
        params = request.url.params

        if rest == "":
            return httpx.Response(200, json={"full_name": self.repo})
        if rest == "/labels":
            if method == "GET":
                return httpx.Response(200, json=list(self.labels.values()))
            if body["name"] in self.labels:
                return httpx.Response(422, json={"message": "Validation Failed"})
            self.labels[body["name"]] = body
            return httpx.Response(201, json=body)
        if rest == "/issues":
            if method == "POST":
                issue = self.add_issue(title=body["title"], body=body["body"], labels=body.get("labels"))
                return httpx.Response(201, json=issue)
            return httpx.Response(200, json=self._list_issues(params))

        match = re.fullmatch(r"/issues/(\d+)(/.*)?", rest)
        if match:
            return self._issue_route(method, int(match.group(1)), match.group(2) or "", body)

        if rest == "/pulls":
            if method == "POST":
                pull = self.add_pull(branch=body["head"])
                pull.update({"title": body["title"], "body": body["body"], "base": {"ref": body["base"]}})
                return httpx.Response(201, json=pull)
            branch = params.get("head", "").split(":", 1)[-1]
            found = [
                pull
                for pull in self.pulls.values()
                if pull["head"]["ref"] == branch and pull["state"] == params.get("state", "open")
            ]
            return httpx.Response(200, json=found[:1])

        match = re.fullmatch(r"/pulls/(\d+)(/merge)?", rest)
        if match:
            pull = self.pulls.get(int(match.group(1)))
            if pull is None:
                return httpx.Response(404, json={"message": "Not Found"})
            if match.group(2):
                pull.update({"state": "closed", "merged": True})
                return httpx.Response(200, json={"sha": "abc123", "merged": True})
            return httpx.Response(200, json=pull)

        if rest.startswith("/git/refs/heads/") and method == "DELETE":
            self.deleted_branches.append(rest[len("/git/refs/heads/"):])
            return httpx.Response(204)

        return httpx.Response(404, json={"message": "Not Found"})

    def _list_issues(self, params: httpx.QueryParams) -> list[dict[str, Any]]:
        if int(params.get("page", "1")) > 1:
            return []
        state = params.get("state", "open")
        label = params.get("labels")
        issues = []
        for issue in self.issues.values():
            if state != "all" and issue["state"] != state:
                continue
            if label and label not in {item["name"] for item in issue["labels"]}:
                continue
            issues.append(issue)
        return issues

    def _issue_route(self, method: str, number: int, suffix: str, body: Any) -> httpx.Response:
        issue = self.issues.get(number)
        if issue is None:
            return httpx.Response(404, json={"message": "Not Found"})
        if suffix == "":
            if method == "PATCH":
                return httpx.Response(200, json=self.edit_issue(number, **body))
            return httpx.Response(200, json=issue)
        if suffix == "/comments":
            self.comments[number].append(body["body"])
            return httpx.Response(201, json={"id": len(self.comments[number])})
        if suffix == "/labels":
            if method == "PUT":
                self.edit_issue(number, labels=body["labels"])
            return httpx.Response(200, json=issue["labels"])
        if suffix.startswith("/labels/") and method == "DELETE":
            name = suffix[len("/labels/"):]
            remaining = [label for label in issue["labels"] if label["name"] != name]
            if len(remaining) == len(issue["labels"]):
                return httpx.Response(404, json={"message": "Label does not exist"})
            issue["labels"] = remaining
            return httpx.Response(200, json=remaining)
        return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(tmp_path: Path, clock: Clock) -> ChromaStore:
    return ChromaStore(tmp_path / "chroma", client_factory=lambda: StubClient(), clock=clock)


@pytest.fixture
def repository(tmp_path: Path) -> YamlTaskRepository:
    return YamlTaskRepository(tmp_path / "tasks.yaml")


@pytest.fixture
def fake_github(clock: Clock) -> FakeGitHub:
    return FakeGitHub(clock)


def make_task(**overrides: Any) -> Task:
    fields: dict[str, Any] = {
        "id": "abcdef12-3456-7890-abcd-ef1234567890",
        "title": "Fix login bug",
        "description": "Users cannot log in with SSO.",
        "created_at": T0,
        "updated_at": T0,
    }
    fields.update(overrides)
    return Task(**fields)


class GitSimulator:
    """Answers the git commands Shipyard issues, creating and removing worktree directories on disk."""

    def __init__(self, repo_root: Path, *, default_branch: str = "main") -> None:
        self.repo_root = repo_root
        self.default_branch = default_branch
        self.worktrees: list[Path] = [repo_root]
        self.branches: set[str] = {default_branch}
        self.dirty: set[Path] = set()
        self.remote_branches: set[str] = set()
        self.diff = "diff --git a/app.py b/app.py\n+print('fixed')\n"
        self.fail: dict[str, CommandResult] = {}
        self.runner = FakeCommandRunner(handler=self.handle)

    def _ok(self, args: tuple[str, ...], stdout: str = "") -> CommandResult:
        return CommandResult(args=args, returncode=0, stdout=stdout, stderr="")

    def handle(self, args: tuple[str, ...], cwd) -> CommandResult | None:
        sub = args[1:]
        key = " ".join(sub[:2])
        if key in self.fail:
            return self.fail[key]
        if sub[:1] == ("symbolic-ref",):
            return self._ok(args, f"refs/remotes/origin/{self.default_branch}\n")
        if sub[:2] == ("rev-parse", "--verify"):
            branch = sub[-1].removeprefix("refs/heads/")
            return self._ok(args) if branch in self.branches else CommandResult(args, 1, "", "")
        if sub[:2] == ("rev-parse", "--abbrev-ref"):
            return self._ok(args, "main\n")
        if sub[:2] == ("worktree", "add"):
            path = Path(sub[2])
            path.mkdir(parents=True, exist_ok=True)
            self.worktrees.append(path)
            if "-b" in sub:
                self.branches.add(sub[sub.index("-b") + 1])
            return self._ok(args)
        if sub[:2] == ("worktree", "remove"):
            path = Path(sub[2])
            shutil.rmtree(path, ignore_errors=True)
            self.worktrees = [item for item in self.worktrees if item != path]
            return self._ok(args)
        if sub[:2] == ("worktree", "list"):
            return self._ok(args, "".join(f"worktree {path}\nHEAD abc\n\n" for path in self.worktrees))
        if sub[:1] == ("status",):
            return self._ok(args, " M app.py\n" if Path(cwd) in self.dirty else "")
        if sub[:1] == ("commit",):
            self.dirty.discard(Path(cwd))
            return self._ok(args)
        if sub[:1] == ("ls-remote",):
            return self._ok(args, "abc\trefs/heads/x\n" if sub[-1] in self.remote_branches else "")
        if sub[:1] == ("push",):
            self.remote_branches.add(sub[-1])
            return self._ok(args)
        if sub[:1] == ("diff",):
            return self._ok(args, self.diff)
        return None

    def commands(self, *prefix: str) -> list[tuple[str, ...]]:
        return [call for call in self.runner.commands() if call[1 : 1 + len(prefix)] == prefix]
