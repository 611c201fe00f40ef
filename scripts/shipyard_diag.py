"""Shipyard MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict

from shipyard_mcp.config import ShipyardSettings, get_settings
from shipyard_mcp.git import GitClient, WorkspaceManager
from shipyard_mcp.storage import ChromaStore, ChromaUnavailableError, CleanupPolicy, RecordNotFoundError


def load_store(settings: ShipyardSettings) -> ChromaStore:
    return ChromaStore(settings.chroma_persist_path)


def _unavailable(exc: Exception) -> None:
    print(f"Chroma unavailable: {exc}")
    raise SystemExit(1)


def cmd_workspaces(args: argparse.Namespace) -> None:
    settings = get_settings()
    store = load_store(settings)
    try:
        records = store.list_workspaces()
    except ChromaUnavailableError as exc:
        _unavailable(exc)
    if args.task_id:
        records = [record for record in records if record.task_id == args.task_id]
    if args.json:
        print(json.dumps([record.to_dict() for record in records], indent=2))
    else:
        for record in records:
            flags = []
            if record.pending_cleanup:
                flags.append("pending-cleanup")
            flags.append(record.cleanup_policy.value)
            print(f"{record.task_id} {record.branch} -> {record.path} [{', '.join(flags)}]")


def cmd_executions(args: argparse.Namespace) -> None:
    settings = get_settings()
    store = load_store(settings)
    try:
        if args.task_id:
            records = store.executions_with_children(args.task_id)
        else:
            records = store.list_executions()
    except ChromaUnavailableError as exc:
        _unavailable(exc)
    print(json.dumps([record.to_dict() for record in records], indent=2))


def cmd_logs(args: argparse.Namespace) -> None:
    settings = get_settings()
    store = load_store(settings)
    try:
        if store.get_execution(args.execution_id) is None:
            raise RecordNotFoundError(args.execution_id)
        chunks = store.list_log_chunks(args.execution_id)
    except ChromaUnavailableError as exc:
        _unavailable(exc)
    except RecordNotFoundError:
        print(f"Execution {args.execution_id} not found")
        raise SystemExit(1)
    for chunk in chunks:
        print(f"[{chunk.stream}] {chunk.content}", end="" if chunk.content.endswith("\n") else "\n")


def cmd_orphans(args: argparse.Namespace) -> None:
    settings = get_settings()
    store = load_store(settings)
    git = GitClient(
        command_timeout_ms=settings.git_timeout_ms,
        worktree_timeout_ms=settings.worktree_timeout_ms,
    )
    manager = WorkspaceManager(settings.repo_root, git, store, tasks_dir_name=settings.tasks_dir_name)
    if args.remove:
        report = asyncio.run(manager.remove_orphans(dry_run=args.dry_run))
        print(json.dumps(report.to_dict(), indent=2))
        return
    orphans = asyncio.run(manager.find_orphans())
    print(json.dumps([asdict(orphan) for orphan in orphans], indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = get_settings()
    store = load_store(settings)
    try:
        workspaces = store.list_workspaces()
        executions = store.list_executions()
    except ChromaUnavailableError as exc:
        _unavailable(exc)

    status_counts: dict[str, int] = {}
    for record in executions:
        status = record.status.value
        status_counts[status] = status_counts.get(status, 0) + 1

    subagents = [record for record in executions if record.parent_execution_id]
    metrics = {
        "workspaces_total": len(workspaces),
        "workspaces_pending_cleanup": sum(1 for record in workspaces if record.pending_cleanup),
        "workspaces_pinned": sum(1 for record in workspaces if record.cleanup_policy is CleanupPolicy.PINNED),
        "executions_total": len(executions),
        "execution_status_counts": status_counts,
        "subagent_executions": len(subagents),
        "subagent_tokens": sum(record.total_tokens or 0 for record in subagents),
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Shipyard MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_workspaces = sub.add_parser("workspaces", help="List workspace records")
    p_workspaces.add_argument("--task-id")
    p_workspaces.add_argument("--json", action="store_true", help="Output JSON")
    p_workspaces.set_defaults(func=cmd_workspaces)

    p_executions = sub.add_parser("executions", help="List execution records")
    p_executions.add_argument("--task-id", help="Group subagent runs under their parent for one task")
    p_executions.set_defaults(func=cmd_executions)

    p_logs = sub.add_parser("logs", help="Print the captured output of one execution")
    p_logs.add_argument("execution_id")
    p_logs.set_defaults(func=cmd_logs)

    p_orphans = sub.add_parser("orphans", help="List task directories git no longer tracks")
    p_orphans.add_argument("--remove", action="store_true", help="Delete the orphaned directories")
    p_orphans.add_argument("--dry-run", action="store_true", help="With --remove, only report")
    p_orphans.set_defaults(func=cmd_orphans)

    p_metrics = sub.add_parser("metrics", help="Show workspace/execution counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
