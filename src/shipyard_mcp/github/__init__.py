"""Issue tracker client, label conventions and pull request lifecycle."""

from .client import (
    GitHubAuthError,
    GitHubClient,
    GitHubClientError,
    GitHubConfigError,
    GitHubError,
    GitHubNotFoundError,
)
from .labels import LABEL_SCHEMA, STATUS_TO_LABEL, SYNC_LABEL
from .pulls import LabelUpdate, MergeOutcome, PRLifecycleManager, PullRequestError, PullRequestInfo

__all__ = [
    "LABEL_SCHEMA",
    "STATUS_TO_LABEL",
    "SYNC_LABEL",
    "GitHubAuthError",
    "GitHubClient",
    "GitHubClientError",
    "GitHubConfigError",
    "GitHubError",
    "GitHubNotFoundError",
    "LabelUpdate",
    "MergeOutcome",
    "PRLifecycleManager",
    "PullRequestError",
    "PullRequestInfo",
]
