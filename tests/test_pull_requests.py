from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import REPO, GitSimulator
from shipyard_mcp.git import GitClient
from shipyard_mcp.github import GitHubError, PRLifecycleManager, PullRequestError

BRANCH = "task/abcdef12-fix-login-bug"


@pytest.fixture
def git_sim(tmp_path: Path) -> GitSimulator:
    return GitSimulator(tmp_path)


def _manager(fake_github, git_sim=None) -> PRLifecycleManager:
    git = GitClient(git_sim.runner) if git_sim is not None else None
    return PRLifecycleManager(fake_github.client(), git)


def test_ensure_pr_reuses_open_pull(fake_github) -> None:
    existing = fake_github.add_pull(branch=BRANCH)

    info = asyncio.run(_manager(fake_github).ensure_pr(branch=BRANCH, base_branch="main", title="Fix login bug"))

    assert info.created is False
    assert info.number == existing["number"]
    assert fake_github.calls("POST", "/pulls$") == []


def test_ensure_pr_pushes_missing_branch_and_links_issue(fake_github, git_sim) -> None:
    info = asyncio.run(
        _manager(fake_github, git_sim).ensure_pr(
            branch=BRANCH,
            base_branch="main",
            title="Fix login bug",
            issue_number=12,
            workdir=git_sim.repo_root,
        )
    )

    assert info.created is True
    assert git_sim.commands("push") == [("git", "push", "-u", "origin", BRANCH)]
    pull = fake_github.pulls[info.number]
    assert pull["body"] == "Automated PR for task: Fix login bug\n\nCloses #12"
    assert pull["base"]["ref"] == "main"


def test_ensure_pr_skips_push_when_remote_has_branch(fake_github, git_sim) -> None:
    git_sim.remote_branches.add(BRANCH)

    asyncio.run(
        _manager(fake_github, git_sim).ensure_pr(
            branch=BRANCH, base_branch="main", title="Fix", body="Done. Closes #3", issue_number=3, workdir=git_sim.repo_root
        )
    )

    assert git_sim.commands("push") == []
    (pull,) = fake_github.pulls.values()
    assert pull["body"] == "Done. Closes #3"


def test_ensure_pr_reports_creation_failure(fake_github) -> None:
    fake_github.failures[("POST", f"/repos/{REPO}/pulls")] = 422

    with pytest.raises(PullRequestError) as excinfo:
        asyncio.run(_manager(fake_github).ensure_pr(branch=BRANCH, base_branch="main", title="Fix"))

    assert excinfo.value.step == "create"


def test_merge_refuses_default_branch(fake_github) -> None:
    outcome = asyncio.run(_manager(fake_github).merge_pr("main"))

    assert outcome.success is False
    assert "default branch" in outcome.error
    assert fake_github.requests == []


def test_merge_requires_open_pull(fake_github) -> None:
    outcome = asyncio.run(_manager(fake_github).merge_pr(BRANCH))

    assert outcome.success is False
    assert outcome.error == f"No open pull request for branch '{BRANCH}'"


def test_merge_refuses_unmergeable_pull(fake_github) -> None:
    pull = fake_github.add_pull(branch=BRANCH, mergeable=False)

    outcome = asyncio.run(_manager(fake_github).merge_pr(pull["number"]))

    assert outcome.success is False
    assert "not mergeable (status: dirty)" in outcome.error
    assert fake_github.calls("PUT", "/merge$") == []


def test_merge_refuses_closed_pull(fake_github) -> None:
    pull = fake_github.add_pull(branch=BRANCH, state="closed")

    outcome = asyncio.run(_manager(fake_github).merge_pr(str(pull["number"])))

    assert outcome.success is False
    assert "is not open" in outcome.error


def test_merge_squashes_and_deletes_branch(fake_github) -> None:
    pull = fake_github.add_pull(branch=BRANCH)

    outcome = asyncio.run(_manager(fake_github).merge_pr(BRANCH))

    assert outcome.success is True
    assert outcome.pr_number == pull["number"]
    assert outcome.sha == "abc123"
    assert outcome.branch_deleted is True
    assert fake_github.deleted_branches == [BRANCH]
    (merge_call,) = fake_github.calls("PUT", "/merge$")
    assert merge_call[2]["merge_method"] == "squash"


def test_branch_deletion_failure_is_only_a_warning(fake_github) -> None:
    pull = fake_github.add_pull(branch=BRANCH)
    fake_github.failures[("DELETE", f"/repos/{REPO}/git/refs/heads/{BRANCH}")] = 422

    outcome = asyncio.run(_manager(fake_github).merge_pr(pull["number"]))

    assert outcome.success is True
    assert outcome.branch_deleted is False
    assert outcome.warnings and outcome.warnings[0].startswith("Branch deletion failed")


def test_status_label_replaces_previous_status_in_one_write(fake_github) -> None:
    issue = fake_github.add_issue(title="Fix", labels=["shipyard", "status: backlog", "priority:high"])

    update = asyncio.run(_manager(fake_github).update_status_label(issue["number"], "review"))

    assert update.previous == ["shipyard", "status: backlog", "priority:high"]
    assert update.labels == ["shipyard", "priority:high", "status: review"]
    assert len(fake_github.calls("PUT", "/labels$")) == 1
    assert fake_github.calls("POST", "/labels$") == []


def test_metadata_labels_keep_unmanaged_labels(fake_github) -> None:
    issue = fake_github.add_issue(title="Fix", labels=["bug", "priority:low", "effort:high"])

    update = asyncio.run(_manager(fake_github).update_metadata_labels(issue["number"], priority="critical"))

    assert update.labels == ["bug", "effort:high", "priority:critical"]


def test_metadata_labels_require_a_field(fake_github) -> None:
    with pytest.raises(ValueError):
        asyncio.run(_manager(fake_github).update_metadata_labels(1))


def test_ensure_pr_twice_creates_one_pull(fake_github) -> None:
    manager = _manager(fake_github)

    first = asyncio.run(manager.ensure_pr(branch=BRANCH, base_branch="main", title="Fix login bug"))
    second = asyncio.run(manager.ensure_pr(branch=BRANCH, base_branch="main", title="Fix login bug"))

    assert first.created is True
    assert second.created is False
    assert second.number == first.number
    assert len(fake_github.calls("POST", "/pulls$")) == 1


def test_closes_reference_needs_the_exact_issue_number(fake_github) -> None:
    info = asyncio.run(
        _manager(fake_github).ensure_pr(
            branch=BRANCH, base_branch="main", title="Fix", body="Follow-up to #12", issue_number=1
        )
    )

    assert fake_github.pulls[info.number]["body"] == "Follow-up to #12\n\nCloses #1"


def test_merge_refuses_detected_default_branch(fake_github, tmp_path) -> None:
    git_sim = GitSimulator(tmp_path, default_branch="develop")
    manager = _manager(fake_github, git_sim)

    refused = asyncio.run(manager.merge_pr("develop", repo_root=tmp_path))
    fake_github.add_pull(branch="main")
    merged = asyncio.run(manager.merge_pr("main", repo_root=tmp_path))

    assert refused.success is False
    assert refused.error == "Refusing to merge default branch 'develop'"
    assert merged.success is True
    assert fake_github.deleted_branches == ["main"]


def test_failed_label_write_leaves_labels_unchanged(fake_github) -> None:
    issue = fake_github.add_issue(title="Fix", labels=["shipyard", "status: backlog"])
    number = issue["number"]
    fake_github.failures[("PUT", f"/repos/{REPO}/issues/{number}/labels")] = 500

    with pytest.raises(GitHubError):
        asyncio.run(_manager(fake_github).update_status_label(number, "review"))

    assert [label["name"] for label in fake_github.issues[number]["labels"]] == ["shipyard", "status: backlog"]
    assert len(fake_github.calls("GET", "/labels$")) == 1
    assert fake_github.calls("DELETE") == []
