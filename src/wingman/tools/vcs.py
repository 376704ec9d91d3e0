"""Minimal git helpers
The helpers below provide just enough structure to apply patch files against
a checked-out working tree, inspect pending changes, and publish a commit.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import List, Sequence, Set

_NOTHING_TO_COMMIT = ("nothing to commit", "nothing added to commit", "no changes added to commit")


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class WorkingTreeError(GitError):
    """Raised when a working tree handle cannot be used at all."""


def _decode(payload: bytes | None) -> str:
    return payload.decode("utf-8", errors="replace") if payload else ""


def _literal_pathspecs(paths: Sequence[Path]) -> List[str]:
    return [f":(literal){Path(path).as_posix()}" for path in paths]


def _run(args: Sequence[str], *, cwd: Path, check: bool = True) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except OSError as error:
        raise GitError(f"failed to execute git: {error}") from error
    result = subprocess.CompletedProcess(process.args, process.returncode, _decode(process.stdout), _decode(process.stderr))
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands bound to one working tree."""

    def __init__(self, root: Path | str) -> None:
        path = Path(root)
        if not path.exists():
            raise WorkingTreeError(f"Working tree does not exist: {path}")
        if not path.is_dir():
            raise WorkingTreeError(f"Working tree is not a directory: {path}")
        self.root = path.resolve()
        if not (self.root / ".git").exists():
            raise WorkingTreeError(f"Not a git repository: {self.root}")
        if not os.access(self.root, os.W_OK):
            raise WorkingTreeError(f"Working tree is not writable: {self.root}")

    @classmethod
    def clone(cls, url: str, destination: Path | str, *, branch: str | None = None) -> "GitRepository":
        """Clone ``url`` into ``destination`` and optionally check out ``branch``."""

        target = Path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        _run(["clone", url, str(target)], cwd=target.parent)
        repo = cls(target)
        if branch:
            repo.git("checkout", branch)
        return repo

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run(args, cwd=self.root, check=check)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    def configure_identity(self, name: str, email: str) -> None:
        """Set the commit identity used for commits created in this tree."""

        self._run_git(["config", "user.name", name])
        self._run_git(["config", "user.email", email])

    # ------------------------------------------------------------------ apply
    def apply(
        self,
        patch_path: Path,
        *,
        check_only: bool = False,
        reject: bool = False,
        reverse: bool = False,
        ignore_whitespace: bool = False,
        whitespace: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``git apply`` for ``patch_path`` and return the completed process.

        Failures are reported through the return code rather than raised so the
        caller can keep git's diagnostic text.
        """

        args: List[str] = ["apply"]
        if check_only:
            args.append("--check")
        if reject:
            args.append("--reject")
        if reverse:
            args.append("--reverse")
        if ignore_whitespace:
            args.append("--ignore-whitespace")
        if whitespace:
            args.append(f"--whitespace={whitespace}")
        args.append(str(patch_path))
        return self._run_git(args, check=False)

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    # ------------------------------------------------------------- repo status
    def status_entries(self) -> List[tuple[str, Path]]:
        """Return ``(status, path)`` pairs from ``git status --porcelain -z``.

        The NUL-delimited form keeps paths verbatim, so names with spaces or
        non-ASCII characters need no unquoting.
        """

        result = self._run_git(["status", "--porcelain", "-z", "--untracked-files=all"], check=True)
        entries: List[tuple[str, Path]] = []
        records = iter(result.stdout.split("\0"))
        for record in records:
            if len(record) < 4:
                continue
            status = record[:2]
            entries.append((status.strip() or status, Path(record[3:])))
            if status[0] in {"R", "C"}:
                # The rename source follows as its own record.
                next(records, None)
        return entries

    def working_tree_changes(self) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = {path for _status, path in self.status_entries()}
        return sorted(paths, key=lambda item: item.as_posix())

    # -------------------------------------------------------------- commits
    def _current_head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    def stage(self, paths: Sequence[Path]) -> None:
        """Stage additions, modifications and deletions of ``paths`` only."""

        if not paths:
            return
        self._run_git(["add", "--all", "--", *_literal_pathspecs(paths)], check=True)

    def commit(self, message: str, *, paths: Sequence[Path] = ()) -> str | None:
        """Commit staged changes, restricted to ``paths`` when given.

        Returns the new commit SHA, or ``None`` when there was nothing staged.
        """

        args: List[str] = ["commit", "-m", message]
        if paths:
            args.extend(["--only", "--", *_literal_pathspecs(paths)])
        commit = self._run_git(args, check=False)
        if commit.returncode != 0:
            output = "\n".join(part.strip() for part in (commit.stderr, commit.stdout) if part.strip())
            lowered = output.lower()
            if any(phrase in lowered for phrase in _NOTHING_TO_COMMIT):
                return None
            raise GitError(f"git commit failed: {output}")
        return self._current_head()

    def commit_paths(self, message: str, paths: Sequence[Path]) -> str | None:
        """Stage ``paths`` and commit exactly those, leaving other changes alone."""

        if not paths:
            return None
        self.stage(paths)
        return self.commit(message, paths=paths)

    # -------------------------------------------------------------- remotes
    def push(self, remote: str, branch: str) -> None:
        """Push ``branch`` to ``remote``."""

        self._run_git(["push", remote, f"HEAD:refs/heads/{branch}"], check=True)


__all__ = ["GitError", "GitRepository", "WorkingTreeError"]
