"""Apply unified diff suggestions posted in pull request comments."""

from .extract import CandidatePatch, extract_patches
from .tools.patch import ApplyOptions, ApplyResult, PatchOutcome, apply_patches
from .tools.vcs import GitError, WorkingTreeError

__all__ = [
    "ApplyOptions",
    "ApplyResult",
    "CandidatePatch",
    "GitError",
    "PatchOutcome",
    "WorkingTreeError",
    "apply_patches",
    "extract_patches",
]
