"""Async GitHub REST client for issues, labels and pull requests."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx

from ..resilience import CircuitBreaker, OperationTimeoutError, with_retry

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
PAGE_SIZE = 100


class GitHubError(RuntimeError):
    """Raised for failed tracker API calls."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubClientError(GitHubError):
    """A 4xx response: the request itself was rejected."""


class GitHubAuthError(GitHubClientError):
    """Missing or rejected credentials."""


class GitHubNotFoundError(GitHubClientError):
    """The addressed resource does not exist."""


class GitHubConfigError(GitHubError):
    """Raised when the client is used without a token or repository."""


class GitHubClient:
    """Bearer-authenticated access to one repository.

    Every call goes through ``breaker`` when one is supplied; 4xx responses are
    raised outside it and do not count as failures. Reads are retried once on timeout.
    """

    def __init__(
        self,
        token: str | None,
        repo: str | None,
        *,
        api_url: str = "https://api.github.com",
        timeout_ms: int = 15_000,
        breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._token = token
        self.repo = repo
        self._api_url = api_url.rstrip("/")
        self._timeout_ms = timeout_ms
        self._breaker = breaker
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self._token and self.repo)

    @property
    def owner(self) -> str:
        return (self.repo or "").split("/", 1)[0]

    def _http(self) -> httpx.AsyncClient:
        if not self.configured:
            raise GitHubConfigError("GitHub token and repository must be configured")
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._api_url,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": API_VERSION,
                },
                timeout=self._timeout_ms / 1000,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        client = self._http()

        async def call() -> Any:
            try:
                response = await client.request(method, path, json=json, params=params)
            except httpx.TimeoutException as exc:
                raise OperationTimeoutError(
                    f"GitHub {method} {path} timed out after {self._timeout_ms}ms",
                    self._timeout_ms,
                    label=f"github:{method}",
                ) from exc
            except httpx.TransportError as exc:
                raise GitHubError(f"GitHub {method} {path} failed: {exc}") from exc
            if 400 <= response.status_code < 500:
                # Rejected requests say nothing about the health of the service.
                return response
            return self._decode(method, path, response)

        async def guarded() -> Any:
            result = await (call() if self._breaker is None else self._breaker.execute(call))
            if isinstance(result, httpx.Response):
                return self._decode(method, path, result)
            return result

        if method.upper() == "GET":
            retry_kwargs: dict[str, Any] = {}
            if self._sleep is not None:
                retry_kwargs["sleep"] = self._sleep
            return await with_retry(
                guarded,
                max_attempts=2,
                delay_ms=500,
                retry_on=(OperationTimeoutError,),
                label=f"github:{path}",
                **retry_kwargs,
            )
        return await guarded()

    @staticmethod
    def _decode(method: str, path: str, response: httpx.Response) -> Any:
        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            message = f"GitHub {method} {path} failed ({response.status_code}): {detail}"
            if response.status_code in (401, 403):
                raise GitHubAuthError(message, response.status_code)
            if response.status_code == 404:
                raise GitHubNotFoundError(message, response.status_code)
            if response.status_code < 500:
                raise GitHubClientError(message, response.status_code)
            raise GitHubError(message, response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.repo}{suffix}"

    # -- identity ----------------------------------------------------------

    async def get_user(self) -> dict[str, Any]:
        return await self.request("GET", "/user")

    async def get_repository(self) -> dict[str, Any]:
        return await self.request("GET", self._repo_path(""))

    # -- issues ------------------------------------------------------------

    async def list_issues(self, *, labels: str | None = None, state: str = "all") -> list[dict[str, Any]]:
        """All issues (pull requests excluded), following pagination."""

        issues: list[dict[str, Any]] = []
        page = 1
        while True:
            params: dict[str, Any] = {"state": state, "per_page": PAGE_SIZE, "page": page}
            if labels:
                params["labels"] = labels
            batch = await self.request("GET", self._repo_path("/issues"), params=params) or []
            issues.extend(item for item in batch if "pull_request" not in item)
            if len(batch) < PAGE_SIZE:
                return issues
            page += 1

    async def get_issue(self, number: int) -> dict[str, Any]:
        return await self.request("GET", self._repo_path(f"/issues/{number}"))

    async def create_issue(self, *, title: str, body: str, labels: list[str]) -> dict[str, Any]:
        return await self.request(
            "POST", self._repo_path("/issues"), json={"title": title, "body": body, "labels": labels}
        )

    async def update_issue(self, number: int, **fields: Any) -> dict[str, Any]:
        return await self.request("PATCH", self._repo_path(f"/issues/{number}"), json=fields)

    async def add_comment(self, number: int, body: str) -> dict[str, Any]:
        return await self.request(
            "POST", self._repo_path(f"/issues/{number}/comments"), json={"body": body}
        )

    # -- labels ------------------------------------------------------------

    async def get_issue_labels(self, number: int) -> list[str]:
        labels = await self.request("GET", self._repo_path(f"/issues/{number}/labels")) or []
        return [label["name"] for label in labels]

    async def set_issue_labels(self, number: int, labels: list[str]) -> list[str]:
        """Replace the issue's complete label set in one call."""

        result = await self.request(
            "PUT", self._repo_path(f"/issues/{number}/labels"), json={"labels": labels}
        ) or []
        return [label["name"] for label in result]

    async def remove_issue_label(self, number: int, name: str) -> None:
        await self.request("DELETE", self._repo_path(f"/issues/{number}/labels/{name}"))

    async def list_repo_labels(self) -> list[dict[str, Any]]:
        return await self.request(
            "GET", self._repo_path("/labels"), params={"per_page": PAGE_SIZE}
        ) or []

    async def create_label(self, name: str, *, color: str, description: str = "") -> bool:
        """Create a label; returns False when it already exists."""

        try:
            await self.request(
                "POST",
                self._repo_path("/labels"),
                json={"name": name, "color": color, "description": description},
            )
        except GitHubClientError as exc:
            if exc.status_code == 422:
                return False
            raise
        return True

    # -- pull requests -----------------------------------------------------

    async def find_open_pull(self, branch: str) -> dict[str, Any] | None:
        pulls = await self.request(
            "GET",
            self._repo_path("/pulls"),
            params={"head": f"{self.owner}:{branch}", "state": "open", "per_page": 1},
        ) or []
        return pulls[0] if pulls else None

    async def get_pull(self, number: int) -> dict[str, Any]:
        return await self.request("GET", self._repo_path(f"/pulls/{number}"))

    async def create_pull(self, *, title: str, head: str, base: str, body: str) -> dict[str, Any]:
        return await self.request(
            "POST",
            self._repo_path("/pulls"),
            json={"title": title, "head": head, "base": base, "body": body},
        )

    async def merge_pull(self, number: int, *, merge_method: str = "squash") -> dict[str, Any]:
        return await self.request(
            "PUT", self._repo_path(f"/pulls/{number}/merge"), json={"merge_method": merge_method}
        )

    async def delete_branch(self, branch: str) -> None:
        await self.request("DELETE", self._repo_path(f"/git/refs/heads/{branch}"))


__all__ = [
    "GitHubAuthError",
    "GitHubClient",
    "GitHubClientError",
    "GitHubConfigError",
    "GitHubError",
    "GitHubNotFoundError",
]
