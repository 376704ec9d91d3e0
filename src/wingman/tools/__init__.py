"""Git and patch tooling used by the applier."""

from .patch import ApplyOptions, ApplyResult, PatchOutcome, apply_patches
from .vcs import GitError, GitRepository, WorkingTreeError

__all__ = [
    "ApplyOptions",
    "ApplyResult",
    "GitError",
    "GitRepository",
    "PatchOutcome",
    "WorkingTreeError",
    "apply_patches",
]
