"""FastMCP server bootstrap for Shipyard."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import httpx
from fastmcp import Context, FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse

from . import __version__
from .config import ShipyardSettings, get_settings
from .git import GitClient, WorkspaceManager
from .github import GitHubClient, PRLifecycleManager
from .resilience import AI_INFERENCE, GIT_OPERATIONS, CircuitBreakerRegistry, CommandRunner
from .review import ClaudeReviewer, InferenceClient, ReviewerNotFoundError, ReviewPipeline, UnavailableReviewer
from .storage import ChromaStore, ChromaUnavailableError, TaskStatus, YamlTaskRepository
from .streaming import execution_snapshots, parse_last_event_id, sse_events
from .sync import AutoSyncDriver, IssueSyncEngine
from .tools import register_tools
from .workflow import TaskWorkflow


def configure_logging(level: str) -> None:
    """Configure root logging for the Shipyard server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def create_server(
    settings: Optional[ShipyardSettings] = None,
    *,
    reviewer: InferenceClient | None = None,
    store: ChromaStore | None = None,
    runner: CommandRunner | None = None,
    github_transport: httpx.AsyncBaseTransport | None = None,
    registry: CircuitBreakerRegistry | None = None,
) -> FastMCP:
    """Wire the engines together and expose them as MCP tools and HTTP routes."""

    settings = settings or get_settings()
    logger = logging.getLogger(__name__)
    registry = registry or CircuitBreakerRegistry()

    reviewer_metadata: dict[str, Any] = {"available": False, "version": None, "error": None}
    if reviewer is None:
        try:
            claude = ClaudeReviewer(
                Path(settings.reviewer_path) if settings.reviewer_path else None, runner=runner
            )
            reviewer = claude
            reviewer_metadata["available"] = True
            version_result = _run_sync(claude.version())
            if version_result.ok:
                reviewer_metadata["version"] = version_result.stdout.strip()
            else:
                reviewer_metadata["error"] = version_result.stderr.strip() or "Reviewer version command failed"
        except ReviewerNotFoundError as exc:
            reviewer_metadata["error"] = str(exc)
            reviewer = UnavailableReviewer(str(exc))
    else:
        reviewer_metadata["available"] = True

    chroma_metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "shipyard_records",
        "error": None,
    }
    if store is None:
        store = ChromaStore(settings.chroma_persist_path)
    try:
        store.ping()
        chroma_metadata["available"] = True
    except ChromaUnavailableError as exc:
        chroma_metadata["error"] = str(exc)
        logger.error("Chroma store unavailable; workspace and execution tracking will fail", extra={"error": str(exc)})

    repository = YamlTaskRepository(settings.tasks_file, autoflush=not settings.auto_sync)
    git = GitClient(
        runner,
        command_timeout_ms=settings.git_timeout_ms,
        worktree_timeout_ms=settings.worktree_timeout_ms,
        push_timeout_ms=settings.push_timeout_ms,
        breaker=registry.get(GIT_OPERATIONS),
    )
    workspaces = WorkspaceManager(settings.repo_root, git, store, tasks_dir_name=settings.tasks_dir_name)

    github: GitHubClient | None = None
    pr_manager: PRLifecycleManager | None = None
    sync_engine: IssueSyncEngine | None = None
    auto_sync: AutoSyncDriver | None = None
    token = settings.resolve_github_token()
    if token and settings.github_repo:
        github = GitHubClient(
            token,
            settings.github_repo,
            api_url=settings.github_api_url,
            timeout_ms=settings.github_timeout_ms,
            breaker=registry.get(GIT_OPERATIONS),
            transport=github_transport,
        )
        pr_manager = PRLifecycleManager(github, git)
        sync_engine = IssueSyncEngine(github, repository)
        if settings.auto_sync:
            auto_sync = AutoSyncDriver(sync_engine, repository, interval_ms=settings.sync_interval_ms)

    pipeline = ReviewPipeline(
        git,
        reviewer,
        registry.get(AI_INFERENCE),
        pr_manager=pr_manager,
        diff_max_chars=settings.diff_max_chars,
        review_timeout_ms=settings.review_timeout_ms,
    )
    workflow = TaskWorkflow(
        repository,
        workspaces,
        store,
        pipeline,
        pr_manager=pr_manager,
        defer_cleanup=settings.defer_cleanup,
        retention_hours=settings.retention_hours,
        review_on_stop=settings.review_on_stop,
    )

    @asynccontextmanager
    async def lifespan(_server: FastMCP):
        if auto_sync is not None:
            auto_sync.start()
        try:
            yield {}
        finally:
            if auto_sync is not None:
                await auto_sync.stop()
            await workflow.wait_for_background()
            repository.flush()
            if github is not None:
                await github.aclose()

    server = FastMCP(
        name="Shipyard MCP",
        version=__version__,
        instructions=(
            "Shipyard moves backlog tasks through isolated git worktrees, AI code review, "
            "pull requests and GitHub issue sync. Tackle a task to get a workspace, review it "
            "when the agent is done, and ship it once the review passes."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(
        server,
        settings=settings,
        repository=repository,
        store=store,
        workspaces=workspaces,
        workflow=workflow,
        registry=registry,
        github=github,
        pr_manager=pr_manager,
        sync_engine=sync_engine,
        auto_sync=auto_sync,
    )

    @server.custom_route("/hooks/session-stop", methods=["POST"])
    async def session_stop_route(request: Request) -> JSONResponse:
        status, envelope = await handles.session_stop(await _json_body(request))
        return JSONResponse(envelope, status_code=status)

    @server.custom_route("/hooks/subagent-stop", methods=["POST"])
    async def subagent_stop_route(request: Request) -> JSONResponse:
        status, envelope = await handles.subagent_stop(await _json_body(request))
        return JSONResponse(envelope, status_code=status)

    @server.custom_route("/health", methods=["GET"])
    async def health_route(request: Request) -> JSONResponse:
        payload = registry.health()
        return JSONResponse(payload, status_code=503 if payload["status"] == "unhealthy" else 200)

    @server.custom_route("/executions/{execution_id}/stream", methods=["GET"])
    async def execution_stream_route(request: Request) -> StreamingResponse:
        revision, chunk = parse_last_event_id(request.headers.get("last-event-id"))
        snapshots = execution_snapshots(
            store,
            request.path_params["execution_id"],
            after_revision=revision,
            after_chunk=chunk,
        )
        return StreamingResponse(
            sse_events(snapshots),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @server.resource(
        "resource://shipyard/status",
        name="shipyard_status",
        title="Shipyard MCP Status",
        description="Provides the current runtime status for the Shipyard MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        status_counts: dict[str, int] = {status.value: 0 for status in TaskStatus}
        task_error: str | None = None
        try:
            for task in repository.list_tasks():
                status_counts[task.status.value] += 1
        except Exception as exc:  # keep the status resource readable
            task_error = str(exc)

        workspace_preview: list[dict[str, Any]] = []
        storage_error = None
        try:
            workspace_preview = [
                {"task_id": record.task_id, "path": record.path, "pending_cleanup": record.pending_cleanup}
                for record in store.list_workspaces()[-5:]
            ]
        except Exception as exc:  # keep the status resource readable
            storage_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "repo_root": str(settings.repo_root),
            "tasks": {"file": str(settings.tasks_file), "status_counts": status_counts, "error": task_error},
            "reviewer": {"path": settings.reviewer_path, **reviewer_metadata},
            "storage": {"chroma": chroma_metadata, "workspaces_preview": workspace_preview, "error": storage_error},
            "github": {
                "configured": github is not None,
                "repo": settings.github_repo,
                "pending_conflicts": len(sync_engine.conflicts) if sync_engine else 0,
            },
            "auto_sync": auto_sync.snapshot() if auto_sync else None,
            "circuits": registry.health(),
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "settings", settings)
    setattr(server, "repository", repository)
    setattr(server, "chroma_store", store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "reviewer_metadata", reviewer_metadata)
    setattr(server, "workflow", workflow)
    setattr(server, "sync_engine", sync_engine)
    setattr(server, "auto_sync", auto_sync)
    setattr(server, "breakers", registry)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Shipyard MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Shipyard MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "repo_root": str(settings.repo_root),
            "reviewer_available": getattr(server, "reviewer_metadata", {}).get("available"),
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
            "github_configured": getattr(server, "sync_engine", None) is not None,
        },
    )
    server.run()


if __name__ == "__main__":
    main()
