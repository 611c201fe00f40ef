"""Run GitHub issue sync passes from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

from shipyard_mcp.config import ShipyardSettings, get_settings
from shipyard_mcp.github import GitHubClient, GitHubError
from shipyard_mcp.resilience import CircuitOpenError, OperationTimeoutError
from shipyard_mcp.storage import YamlTaskRepository
from shipyard_mcp.sync import IssueSyncEngine, SyncDirection, dedupe_issues, tracker_health


def build_client(settings: ShipyardSettings) -> GitHubClient:
    token = settings.resolve_github_token()
    if not token or not settings.github_repo:
        print("GitHub is not configured: set GITHUB_TOKEN and GITHUB_REPO")
        raise SystemExit(2)
    return GitHubClient(
        token,
        settings.github_repo,
        api_url=settings.github_api_url,
        timeout_ms=settings.github_timeout_ms,
    )


async def _sync(settings: ShipyardSettings, github: GitHubClient, direction: SyncDirection) -> dict:
    repository = YamlTaskRepository(settings.tasks_file)
    engine = IssueSyncEngine(github, repository)
    try:
        report = await engine.run_pass(direction)
    finally:
        await github.aclose()
    repository.flush()
    return report.to_dict()


async def _dedupe(github: GitHubClient, apply: bool) -> dict:
    try:
        report = await dedupe_issues(github, dry_run=not apply)
    finally:
        await github.aclose()
    return report.to_dict()


async def _health(settings: ShipyardSettings, github: GitHubClient) -> dict:
    try:
        return await tracker_health(github, YamlTaskRepository(settings.tasks_file))
    finally:
        await github.aclose()


def _run(coro) -> dict:
    try:
        return asyncio.run(coro)
    except (GitHubError, OperationTimeoutError, CircuitOpenError) as exc:
        print(f"GitHub request failed: {exc}")
        raise SystemExit(1)


def cmd_sync(args: argparse.Namespace) -> None:
    settings = get_settings()
    github = build_client(settings)
    payload = _run(_sync(settings, github, SyncDirection(args.direction)))
    print(json.dumps(payload, indent=2))
    if payload["conflicts"] or payload["errors"]:
        raise SystemExit(3)


def cmd_dedupe(args: argparse.Namespace) -> None:
    settings = get_settings()
    github = build_client(settings)
    print(json.dumps(_run(_dedupe(github, args.apply)), indent=2))


def cmd_health(args: argparse.Namespace) -> None:
    settings = get_settings()
    github = build_client(settings)
    payload = _run(_health(settings, github))
    print(json.dumps(payload, indent=2))
    if not payload["healthy"]:
        raise SystemExit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Shipyard GitHub issue sync")
    parser.add_argument("--verbose", action="store_true", help="Log each request")
    sub = parser.add_subparsers(dest="cmd")

    p_sync = sub.add_parser("sync", help="Run one sync pass")
    p_sync.add_argument(
        "--direction",
        choices=[direction.value for direction in SyncDirection],
        default=SyncDirection.BOTH.value,
    )
    p_sync.set_defaults(func=cmd_sync)

    p_dedupe = sub.add_parser("dedupe", help="Find (and optionally close) duplicate synced issues")
    p_dedupe.add_argument("--apply", action="store_true", help="Close duplicates instead of only listing them")
    p_dedupe.set_defaults(func=cmd_dedupe)

    p_health = sub.add_parser("health", help="Check credentials, repository access and sync hygiene")
    p_health.set_defaults(func=cmd_health)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    args.func(args)


if __name__ == "__main__":
    main()
