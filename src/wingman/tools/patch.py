"""Apply extracted unified diff patches to a working tree with guard rails."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Sequence, Tuple

from ..extract import CandidatePatch
from .vcs import GitError, GitRepository, WorkingTreeError

LOG = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("wingman.telemetry")

REJECT_SUFFIX = ".rej"
CANCELLED_REASON = "cancelled before the patch was attempted"
DEFAULT_COMMIT_MESSAGE = (
    "Apply suggested fixes from pull request comment\n\n"
    "Patches applied: {applied}\n"
    "Patches failed: {failed}\n"
)

_PATCH_FAILED_RE = re.compile(r"error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_PATCH_DOES_NOT_APPLY_RE = re.compile(r"error: (?P<path>.+?): patch does not apply")
_HUNK_FAILED_RE = re.compile(r"error: (?P<path>.+?): hunk #(?P<hunk>\d+) failed at (?P<line>-?\d+)")
_NO_SUCH_FILE_RE = re.compile(r"error: (?P<path>.+?): No such file or directory")


@dataclass(slots=True)
class ApplyOptions:
    """Knobs controlling how candidates are applied and published."""

    whitespace: str | None = "fix"
    reject_mode: bool = True
    commit: bool = True
    push: bool = True
    remote: str = "origin"
    branch: str | None = None
    commit_message: str = DEFAULT_COMMIT_MESSAGE
    artifact_prefix: str = "wingman-patch"


@dataclass(slots=True)
class PatchOutcome:
    """Result of applying a single candidate patch."""

    index: int
    applied: bool = False
    failure_reason: str | None = None
    attempted: bool = True
    already_applied: bool = False
    reject_attempted: bool = False
    reject_succeeded: bool = False
    reject_paths: Tuple[Path, ...] = ()
    failing_hunks: Tuple[Mapping[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "applied": self.applied,
            "failure_reason": self.failure_reason,
            "attempted": self.attempted,
            "already_applied": self.already_applied,
            "reject_attempted": self.reject_attempted,
            "reject_succeeded": self.reject_succeeded,
            "reject_paths": [path.as_posix() for path in self.reject_paths],
            "failing_hunks": [dict(item) for item in self.failing_hunks],
        }


@dataclass(slots=True)
class ApplyResult:
    """Aggregate outcome of applying every candidate to one working tree."""

    outcomes: list[PatchOutcome] = field(default_factory=list)
    has_tree_changes: bool = False
    changed_paths: Tuple[Path, ...] = ()
    commit_sha: str | None = None
    pushed: bool = False
    push_error: str | None = None
    cancelled: bool = False

    @property
    def applied_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.applied)

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.applied)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def failures(self) -> list[PatchOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.applied]

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied_count": self.applied_count,
            "failed_count": self.failed_count,
            "has_tree_changes": self.has_tree_changes,
            "changed_paths": [path.as_posix() for path in self.changed_paths],
            "commit_sha": self.commit_sha,
            "pushed": self.pushed,
            "push_error": self.push_error,
            "cancelled": self.cancelled,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_patch_event(event: str, **fields: Any) -> None:
    """Log structured telemetry events when applying patches."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def _parse_git_apply_failures(output: str) -> Tuple[Mapping[str, Any], ...]:
    """Parse git apply stderr for failing hunk metadata."""
    if not output:
        return ()
    entries: list[dict[str, Any]] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _HUNK_FAILED_RE.match(line)
        if match:
            entries.append(
                {
                    "path": match.group("path"),
                    "hunk": int(match.group("hunk")),
                    "line": int(match.group("line")),
                    "reason": "hunk_failed",
                }
            )
            continue
        match = _PATCH_FAILED_RE.match(line)
        if match:
            line_text = match.group("line")
            entries.append(
                {
                    "path": match.group("path"),
                    "line": int(line_text) if line_text is not None else None,
                    "reason": "patch_failed",
                }
            )
            continue
        match = _PATCH_DOES_NOT_APPLY_RE.match(line)
        if match:
            entries.append({"path": match.group("path"), "reason": "does_not_apply"})
            continue
        match = _NO_SUCH_FILE_RE.match(line)
        if match:
            entries.append({"path": match.group("path"), "reason": "missing_file"})
    return tuple(entries)


def _diagnostic(stdout: str, stderr: str) -> str:
    text = "\n".join(part.strip() for part in (stderr, stdout) if part and part.strip())
    return text or "git apply exited with a non-zero status"


@contextmanager
def _patch_artifact(candidate: CandidatePatch, prefix: str) -> Iterator[Path]:
    """Write ``candidate`` to a temporary patch file removed on every exit path."""
    body = candidate.body if candidate.body.endswith("\n") else candidate.body + "\n"
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        prefix=f"{prefix}-{candidate.index:03d}-",
        suffix=".patch",
        delete=False,
    ) as handle:
        handle.write(body)
        temp_path = Path(handle.name)
    try:
        yield temp_path
    finally:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError as error:
            LOG.warning("Failed to remove patch artifact %s: %s", temp_path, error)


_ABSENT: Tuple[str, str | None] = ("", None)


def _digest(path: Path) -> str | None:
    try:
        return hashlib.sha1(path.read_bytes()).hexdigest()
    except OSError:
        return None


def _snapshot(repo: GitRepository, *, suffix: str | None = None) -> Dict[Path, Tuple[str, str | None]]:
    """Map every dirty path to its status code and content digest."""
    snapshot: Dict[Path, Tuple[str, str | None]] = {}
    for status, path in repo.status_entries():
        if suffix is not None and not path.name.endswith(suffix):
            continue
        snapshot[path] = (status, _digest(repo.root / path))
    return snapshot


def _diff_snapshots(
    before: Mapping[Path, Tuple[str, str | None]],
    after: Mapping[Path, Tuple[str, str | None]],
) -> list[Path]:
    """Return paths whose content differs between two snapshots."""
    changed = [
        path
        for path in set(before) | set(after)
        if before.get(path, _ABSENT)[1] != after.get(path, _ABSENT)[1]
        or (path in before) != (path in after)
    ]
    return sorted(changed, key=lambda item: item.as_posix())


def _new_rejects(repo: GitRepository, before: Mapping[Path, Tuple[str, str | None]]) -> Tuple[Path, ...]:
    after = _snapshot(repo, suffix=REJECT_SUFFIX)
    return tuple(path for path in _diff_snapshots(before, after) if path in after)


def _record_failure(
    repo: GitRepository,
    outcome: PatchOutcome,
    patch_path: Path,
    diagnostic: str,
    options: ApplyOptions,
) -> None:
    """Capture a failed candidate and fall back to a partial reject-mode apply."""
    outcome.applied = False
    outcome.failure_reason = diagnostic
    outcome.failing_hunks = _parse_git_apply_failures(diagnostic)

    reverse = repo.apply(
        patch_path,
        check_only=True,
        reverse=True,
        ignore_whitespace=True,
        whitespace=options.whitespace,
    )
    if reverse.returncode == 0:
        outcome.already_applied = True
        outcome.failure_reason = f"patch already applied\n{diagnostic}"
        _emit_patch_event("patch_already_applied", index=outcome.index)
        return

    if not options.reject_mode:
        return

    before = _snapshot(repo, suffix=REJECT_SUFFIX)
    outcome.reject_attempted = True
    partial = repo.apply(patch_path, reject=True, whitespace=options.whitespace)
    outcome.reject_succeeded = partial.returncode == 0
    outcome.reject_paths = _new_rejects(repo, before)
    if outcome.reject_succeeded:
        LOG.info("Patch %d partially applied with rejects", outcome.index + 1)
    else:
        LOG.error("Patch %d could not be applied, even partially", outcome.index + 1)
    _emit_patch_event(
        "patch_reject_attempted",
        index=outcome.index,
        returncode=partial.returncode,
        reject_paths=outcome.reject_paths,
    )


def _apply_candidate(repo: GitRepository, candidate: CandidatePatch, options: ApplyOptions, total: int) -> PatchOutcome:
    outcome = PatchOutcome(index=candidate.index)
    label = f"{candidate.index + 1}/{total}"
    with _patch_artifact(candidate, options.artifact_prefix) as patch_path:
        LOG.info("Applying patch %s", label)
        check = repo.apply(patch_path, check_only=True, whitespace=options.whitespace)
        if check.returncode != 0:
            diagnostic = _diagnostic(check.stdout, check.stderr)
            LOG.warning("Patch %s failed validation: %s", label, diagnostic)
            _emit_patch_event(
                "patch_validation_failed",
                index=candidate.index,
                patch_path=patch_path,
                returncode=check.returncode,
                stderr=check.stderr.strip(),
            )
            _record_failure(repo, outcome, patch_path, diagnostic, options)
            return outcome

        result = repo.apply(patch_path, whitespace=options.whitespace)
        if result.returncode != 0:
            diagnostic = _diagnostic(result.stdout, result.stderr)
            LOG.error("Patch %s passed validation but failed to apply: %s", label, diagnostic)
            _emit_patch_event(
                "patch_apply_failed",
                index=candidate.index,
                patch_path=patch_path,
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )
            _record_failure(repo, outcome, patch_path, diagnostic, options)
            return outcome

        outcome.applied = True
        LOG.info("Patch %s applied", label)
        _emit_patch_event("patch_apply_succeeded", index=candidate.index, patch_path=patch_path)
    return outcome


def _publish(
    repo: GitRepository,
    result: ApplyResult,
    options: ApplyOptions,
    before: Mapping[Path, Tuple[str, str | None]],
) -> None:
    """Commit the paths this run changed and push them, recording push failures on ``result``."""
    # An untracked file that vanished has nothing left to stage.
    paths = [
        path
        for path in result.changed_paths
        if not (before.get(path, _ABSENT)[0] == "??" and not (repo.root / path).exists())
    ]
    message = options.commit_message.format(applied=result.applied_count, failed=result.failed_count)
    result.commit_sha = repo.commit_paths(message, paths)
    LOG.info("Committed %d changed file(s) as %s", len(paths), result.commit_sha)
    if not options.push or result.commit_sha is None:
        return

    branch = options.branch or repo.current_branch()
    if branch is None:
        result.push_error = "cannot push from a detached HEAD without an explicit branch"
        LOG.error("Push skipped: %s", result.push_error)
        return
    try:
        repo.push(options.remote, branch)
    except GitError as error:
        result.push_error = str(error)
        LOG.error("Push to %s/%s failed: %s", options.remote, branch, error)
        _emit_patch_event("push_failed", remote=options.remote, branch=branch, error=str(error))
        return
    result.pushed = True
    LOG.info("Pushed changes to %s/%s", options.remote, branch)
    _emit_patch_event("push_succeeded", remote=options.remote, branch=branch, commit=result.commit_sha)


def _tree_snapshot(repo: GitRepository) -> Dict[Path, Tuple[str, str | None]]:
    try:
        return _snapshot(repo)
    except GitError as error:
        raise WorkingTreeError(f"Unable to read working tree status: {error}") from error


def apply_patches(
    tree: GitRepository | Path | str,
    candidates: Sequence[CandidatePatch],
    *,
    options: ApplyOptions | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> ApplyResult:
    """Apply ``candidates`` to ``tree`` in order and publish any resulting change.

    Each candidate is validated with ``git apply --check`` before it touches the
    tree, and a failing candidate never stops later ones from being attempted.
    Patches salvaged through reject mode are still reported as failures.

    ``has_tree_changes`` compares the tree after the loop with a snapshot taken
    before it, so edits that were already present, patches that net out to no
    change, and reject files written by this run do not count. Only the paths
    this run changed are committed.

    Raises :class:`WorkingTreeError` when ``tree`` cannot be used.
    """

    opts = options or ApplyOptions()
    repo = tree if isinstance(tree, GitRepository) else GitRepository(tree)
    result = ApplyResult()
    total = len(candidates)
    before = _tree_snapshot(repo)

    for position, candidate in enumerate(candidates):
        if should_cancel is not None and should_cancel():
            LOG.warning("Cancelled after %d of %d patch(es)", position, total)
            result.cancelled = True
            for skipped in candidates[position:]:
                result.outcomes.append(
                    PatchOutcome(index=skipped.index, attempted=False, failure_reason=CANCELLED_REASON)
                )
            break
        result.outcomes.append(_apply_candidate(repo, candidate, opts, total))

    rejects = {path for outcome in result.outcomes for path in outcome.reject_paths}
    after = _tree_snapshot(repo)
    result.changed_paths = tuple(path for path in _diff_snapshots(before, after) if path not in rejects)

    _emit_patch_event(
        "patches_processed",
        applied=result.applied_count,
        failed=result.failed_count,
        changed_paths=result.changed_paths,
    )
    if not result.changed_paths:
        LOG.info("No changes to commit after processing %d patch(es)", total)
        return result

    result.has_tree_changes = True
    if opts.commit:
        _publish(repo, result, opts, before)
    return result


__all__ = [
    "ApplyOptions",
    "ApplyResult",
    "PatchOutcome",
    "apply_patches",
]
