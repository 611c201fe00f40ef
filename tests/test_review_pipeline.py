from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conftest import GitSimulator
from shipyard_mcp.api import error_envelope, status_for
from shipyard_mcp.git import GitClient
from shipyard_mcp.github import PRLifecycleManager
from shipyard_mcp.resilience import CircuitBreaker, CircuitOpenError, CommandResult
from shipyard_mcp.review import (
    NO_CHANGES_SUMMARY,
    FakeReviewer,
    ReviewError,
    ReviewParseError,
    ReviewPipeline,
    ReviewResult,
    apply_gating,
    parse_review,
    truncate_diff,
)


def _verdict(passed: bool, *issues: tuple[str, str], scope: dict | None = None) -> str:
    payload = {
        "passed": passed,
        "summary": "Reviewed",
        "issues": [{"severity": severity, "message": message, "file": "app.py", "line": 3} for severity, message in issues],
    }
    if scope is not None:
        payload["scope"] = scope
    return f"Here is my review:\n```json\n{json.dumps(payload)}\n```\nThanks!"


@pytest.fixture
def git_sim(tmp_path: Path) -> GitSimulator:
    repo_root = tmp_path / "repo"
    workdir = repo_root / ".tasks" / "task-abcdef12"
    workdir.mkdir(parents=True)
    return GitSimulator(repo_root)


def _pipeline(git_sim, reviewer, *, pr_manager=None, breaker=None, diff_max_chars=60_000) -> ReviewPipeline:
    return ReviewPipeline(
        GitClient(git_sim.runner),
        reviewer,
        breaker or CircuitBreaker("ai-inference", 3, 30_000),
        pr_manager=pr_manager,
        diff_max_chars=diff_max_chars,
    )


def _review(pipeline: ReviewPipeline, git_sim: GitSimulator, **kwargs):
    return asyncio.run(
        pipeline.review(
            title="Fix login bug",
            description="Users cannot log in",
            workdir=git_sim.repo_root / ".tasks" / "task-abcdef12",
            repo_root=git_sim.repo_root,
            branch="task/abcdef12-fix-login-bug",
            **kwargs,
        )
    )


def test_parse_review_ignores_surrounding_prose() -> None:
    result = parse_review(_verdict(True, ("minor", "Rename variable")))

    assert result.passed is True
    assert result.issues[0].severity.value == "minor"
    assert result.issues[0].line == 3


def test_parse_review_rejects_output_without_json() -> None:
    with pytest.raises(ReviewParseError):
        parse_review("I could not review this change.")


def test_gating_minor_issues_always_pass() -> None:
    result = apply_gating(parse_review(_verdict(False, ("minor", "style"), ("suggestion", "idea"))))
    assert result.passed is True


def test_gating_keeps_failure_for_blocking_issue() -> None:
    result = apply_gating(parse_review(_verdict(False, ("major", "missing error handling"))))
    assert result.passed is False
    assert [issue.message for issue in result.blocking_issues] == ["missing error handling"]


def test_gating_partial_completion_never_requests_rescope() -> None:
    scope = {"aligned": True, "needsRescope": True, "completeness": "partial", "scopeCreep": ["extra logging"]}
    result = apply_gating(parse_review(_verdict(True, scope=scope)))
    assert result.scope is not None
    assert result.scope.needs_rescope is False

    misaligned = dict(scope, aligned=False, reason="Implements a different feature")
    kept = apply_gating(parse_review(_verdict(False, ("critical", "wrong feature"), scope=misaligned)))
    assert kept.scope.needs_rescope is True
    assert "Rescope suggested: Implements a different feature" in kept.format_feedback()


def test_truncate_diff_appends_notice() -> None:
    bounded, truncated = truncate_diff("x" * 120, 100)
    assert truncated is True
    assert bounded.startswith("x" * 100)
    assert "20 characters omitted" in bounded
    assert truncate_diff("short", 100) == ("short", False)


def test_review_commits_pushes_and_asks_reviewer(git_sim) -> None:
    workdir = git_sim.repo_root / ".tasks" / "task-abcdef12"
    git_sim.dirty.add(workdir)
    reviewer = FakeReviewer([_verdict(True, ("minor", "nit"))])

    outcome = _review(_pipeline(git_sim, reviewer), git_sim, acceptance_criteria=["SSO works"])

    assert outcome.passed is True
    assert outcome.committed is True
    assert outcome.pushed is True
    assert git_sim.commands("commit")[0][-1] == "WIP: Fix login bug"
    assert git_sim.commands("diff")[0][-1] == "main...task/abcdef12-fix-login-bug"
    prompt = reviewer.prompts[0]
    assert "print('fixed')" in prompt
    assert "SSO works" in prompt
    assert outcome.to_dict()["result"]["summary"] == "Reviewed"


def test_empty_diff_passes_without_calling_reviewer(git_sim) -> None:
    git_sim.diff = ""
    reviewer = FakeReviewer([AssertionError("reviewer must not be called")])

    outcome = _review(_pipeline(git_sim, reviewer), git_sim)

    assert outcome.skipped_ai is True
    assert outcome.result.summary == NO_CHANGES_SUMMARY
    assert reviewer.prompts == []


def test_two_dot_diff_fallback(git_sim) -> None:
    git_sim.fail["diff main...task/abcdef12-fix-login-bug"] = CommandResult(("git", "diff"), 128, "", "bad revision")

    outcome = _review(_pipeline(git_sim, FakeReviewer()), git_sim)

    assert outcome.passed is True
    assert git_sim.commands("diff")[-1][-2:] == ("main", "task/abcdef12-fix-login-bug")


def test_push_failure_is_a_warning(git_sim) -> None:
    git_sim.fail["push -u"] = CommandResult(("git", "push"), 1, "", "rejected")
    git_sim.fail["push origin"] = CommandResult(("git", "push"), 1, "", "rejected")

    outcome = _review(_pipeline(git_sim, FakeReviewer()), git_sim)

    assert outcome.pushed is False
    assert any(warning.startswith("Push failed") for warning in outcome.warnings)
    assert outcome.passed is True


def test_long_diff_is_truncated_before_review(git_sim) -> None:
    git_sim.diff = "+" + "a" * 500
    reviewer = FakeReviewer()

    outcome = _review(_pipeline(git_sim, reviewer, diff_max_chars=100), git_sim)

    assert outcome.diff_truncated is True
    assert "characters omitted" in reviewer.prompts[0]


def test_reviewer_failures_open_the_circuit(git_sim) -> None:
    breaker = CircuitBreaker("ai-inference", 2, 30_000)
    reviewer = FakeReviewer([RuntimeError("cli crashed"), RuntimeError("cli crashed"), _verdict(True)])
    pipeline = _pipeline(git_sim, reviewer, breaker=breaker)

    for _ in range(2):
        with pytest.raises(RuntimeError):
            _review(pipeline, git_sim)

    with pytest.raises(CircuitOpenError):
        _review(pipeline, git_sim)
    assert len(reviewer.prompts) == 2


def test_passing_review_opens_pull_request(git_sim, fake_github) -> None:
    manager = PRLifecycleManager(fake_github.client(), GitClient(git_sim.runner))

    outcome = _review(_pipeline(git_sim, FakeReviewer(), pr_manager=manager), git_sim, issue_number=7)

    assert outcome.pull_request is not None
    assert outcome.pull_request.created is True
    pull = fake_github.pulls[outcome.pull_request.number]
    assert pull["head"]["ref"] == "task/abcdef12-fix-login-bug"
    assert pull["base"]["ref"] == "main"
    assert "Closes #7" in pull["body"]


def test_failing_review_does_not_open_pull_request(git_sim, fake_github) -> None:
    manager = PRLifecycleManager(fake_github.client(), GitClient(git_sim.runner))
    reviewer = FakeReviewer([_verdict(False, ("critical", "SQL injection"))])

    outcome = _review(_pipeline(git_sim, reviewer, pr_manager=manager), git_sim)

    assert outcome.passed is False
    assert outcome.pull_request is None
    assert fake_github.pulls == {}
    assert "- [critical] (app.py:3) SQL injection" in outcome.result.format_feedback()


def test_feedback_format_lists_missing_requirements() -> None:
    result = ReviewResult.model_validate(
        {
            "passed": False,
            "summary": "Incomplete",
            "issues": [],
            "scope": {"aligned": True, "missingRequirements": ["Logout button"]},
        }
    )

    assert result.format_feedback().splitlines() == [
        "Review failed: Incomplete",
        "Missing requirements:",
        "- Logout button",
    ]


def test_unparseable_verdict_fails_the_parse_step(git_sim) -> None:
    reviewer = FakeReviewer(["I looked at it and it seems fine."])

    with pytest.raises(ReviewError) as excinfo:
        _review(_pipeline(git_sim, reviewer), git_sim)

    assert excinfo.value.step == "parse"
    assert isinstance(excinfo.value.__cause__, ReviewParseError)
    assert status_for(excinfo.value) == 502
    assert error_envelope("review", excinfo.value)["error"]["step"] == "parse"
