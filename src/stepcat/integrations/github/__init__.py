from .checks import (
    ChecksTimeoutError,
    ChecksTracker,
    CheckWaitContext,
    CommitRelation,
    MergeConflictError,
)
from .client import GitHubApiError, GitHubClient

__all__ = [
    "CheckWaitContext",
    "ChecksTimeoutError",
    "ChecksTracker",
    "CommitRelation",
    "GitHubApiError",
    "GitHubClient",
    "MergeConflictError",
]
