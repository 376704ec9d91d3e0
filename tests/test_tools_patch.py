from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path

import pytest

from conftest import TreeRepo, run_git
from wingman.extract import CandidatePatch, extract_patches
from wingman.tools.patch import ApplyOptions, apply_patches
from wingman.tools.vcs import GitRepository, WorkingTreeError

SCENARIO_COMMENT = "```diff\n--- a/f\n+++ b/f\n@@ -1 +1 @@\n-old\n+new\n```"
LOCAL = ApplyOptions(push=False)


def _patch(index: int, body: str) -> CandidatePatch:
    return CandidatePatch(index=index, body=body)


def _replace(path: str, old: str, new: str) -> str:
    return f"--- a/{path}\n+++ b/{path}\n@@ -1 +1 @@\n-{old}\n+{new}"


def test_single_patch_is_applied_and_committed(tree: TreeRepo) -> None:
    candidates = extract_patches(SCENARIO_COMMENT)
    before = tree.head()

    result = apply_patches(tree.root, candidates, options=LOCAL)

    assert (result.applied_count, result.failed_count) == (1, 0)
    assert result.has_tree_changes is True
    assert result.changed_paths == (Path("f"),)
    assert tree.read("f") == "new\n"
    assert result.commit_sha == tree.head() != before
    assert tree.status() == ""
    assert result.outcomes[0].applied and result.outcomes[0].failure_reason is None


def test_commit_message_lists_counts(tree: TreeRepo) -> None:
    candidates = [_patch(0, _replace("f", "old", "new")), _patch(1, _replace("missing", "a", "b"))]

    apply_patches(tree.root, candidates, options=LOCAL)

    message = run_git(tree.root, "log", "-1", "--format=%B").stdout
    assert "Patches applied: 1" in message
    assert "Patches failed: 1" in message


def test_patch_for_missing_file_fails_without_blocking_others(tree: TreeRepo) -> None:
    comment = SCENARIO_COMMENT + "\n\n```diff\n" + _replace("g", "x", "y") + "\n```"
    candidates = extract_patches(comment)
    assert len(candidates) == 2

    result = apply_patches(tree.root, candidates, options=LOCAL)

    assert (result.applied_count, result.failed_count) == (1, 1)
    failure = result.outcomes[1]
    assert failure.applied is False
    assert failure.failure_reason
    assert "g" in failure.failure_reason
    assert tree.read("f") == "new\n"


def test_reapplying_is_reported_as_already_applied(tree: TreeRepo) -> None:
    candidates = extract_patches(SCENARIO_COMMENT)
    apply_patches(tree.root, candidates, options=LOCAL)
    head = tree.head()

    second = apply_patches(tree.root, candidates, options=LOCAL)

    assert (second.applied_count, second.failed_count) == (0, 1)
    assert second.has_tree_changes is False
    assert second.commit_sha is None
    assert second.outcomes[0].already_applied is True
    assert second.outcomes[0].reject_attempted is False
    assert "already applied" in (second.outcomes[0].failure_reason or "")
    assert tree.head() == head
    assert tree.read("f") == "new\n"
    assert tree.status() == ""


def test_middle_failure_does_not_affect_neighbours(tree: TreeRepo) -> None:
    tree.write("a", "a1\n")
    tree.write("b", "b1\n")
    tree.write("c", "c1\n")
    tree.commit_all("add files")
    candidates = [
        _patch(0, _replace("a", "a1", "a2")),
        _patch(1, _replace("b", "nope", "b2")),
        _patch(2, _replace("c", "c1", "c2")),
    ]

    result = apply_patches(tree.root, candidates, options=LOCAL)

    assert [outcome.applied for outcome in result.outcomes] == [True, False, True]
    assert result.applied_count + result.failed_count == len(candidates)
    assert tree.read("a") == "a2\n"
    assert tree.read("b") == "b1\n"
    assert tree.read("c") == "c2\n"
    assert result.outcomes[1].reject_attempted is True


def test_later_patches_see_earlier_changes(tree: TreeRepo) -> None:
    candidates = [_patch(0, _replace("f", "old", "mid")), _patch(1, _replace("f", "mid", "final"))]

    result = apply_patches(tree.root, candidates, options=LOCAL)

    assert result.applied_count == 2
    assert tree.read("f") == "final\n"


def test_patches_that_cancel_out_report_no_tree_changes(tree: TreeRepo) -> None:
    candidates = [_patch(0, _replace("f", "old", "new")), _patch(1, _replace("f", "new", "old"))]
    head = tree.head()

    result = apply_patches(tree.root, candidates, options=LOCAL)

    assert [outcome.applied for outcome in result.outcomes] == [True, True]
    assert result.has_tree_changes is False
    assert result.commit_sha is None
    assert tree.head() == head


def test_reject_mode_keeps_partial_hunks_but_not_success(tree: TreeRepo) -> None:
    tree.write("x.txt", "".join(f"line{number}\n" for number in range(1, 11)))
    tree.commit_all("add x")
    body = "\n".join(
        [
            "--- a/x.txt",
            "+++ b/x.txt",
            "@@ -1,3 +1,3 @@",
            "-line1",
            "+LINE1",
            " line2",
            " line3",
            "@@ -8,3 +8,3 @@",
            " line8",
            " line9",
            "-nope",
            "+LINE10",
        ]
    )

    result = apply_patches(tree.root, [_patch(0, body)], options=LOCAL)

    outcome = result.outcomes[0]
    assert outcome.applied is False
    assert outcome.reject_attempted is True
    assert outcome.reject_paths == (Path("x.txt.rej"),)
    assert tree.read("x.txt").startswith("LINE1\n")
    assert result.has_tree_changes is True
    assert result.changed_paths == (Path("x.txt"),)
    assert "x.txt.rej" not in tree.tracked()
    assert (tree.root / "x.txt.rej").exists()


def test_reject_mode_can_be_disabled(tree: TreeRepo) -> None:
    result = apply_patches(
        tree.root,
        [_patch(0, _replace("f", "nope", "new"))],
        options=ApplyOptions(push=False, reject_mode=False),
    )

    assert result.outcomes[0].reject_attempted is False
    assert result.has_tree_changes is False


def test_failing_hunks_are_parsed_from_diagnostics(tree: TreeRepo) -> None:
    result = apply_patches(tree.root, [_patch(0, _replace("f", "nope", "new"))], options=LOCAL)

    hunks = result.outcomes[0].failing_hunks
    assert hunks
    assert all(entry["path"] == "f" for entry in hunks)


def test_no_commit_leaves_changes_in_tree(tree: TreeRepo) -> None:
    result = apply_patches(
        tree.root,
        extract_patches(SCENARIO_COMMENT),
        options=ApplyOptions(commit=False, push=False),
    )

    assert result.has_tree_changes is True
    assert result.commit_sha is None
    assert "f" in tree.status()


def test_push_updates_remote_branch(tree: TreeRepo, remote: Path) -> None:
    result = apply_patches(tree.root, extract_patches(SCENARIO_COMMENT))

    assert result.pushed is True
    assert result.push_error is None
    remote_head = run_git(remote, "rev-parse", "refs/heads/feature").stdout.strip()
    assert remote_head == result.commit_sha


def test_push_failure_is_reported_not_raised(tree: TreeRepo) -> None:
    result = apply_patches(tree.root, extract_patches(SCENARIO_COMMENT), options=ApplyOptions(remote="nowhere"))

    assert result.pushed is False
    assert result.push_error
    assert result.commit_sha == tree.head()
    assert result.outcomes[0].applied is True


def test_cancellation_marks_remaining_candidates(tree: TreeRepo) -> None:
    calls = {"count": 0}

    def should_cancel() -> bool:
        calls["count"] += 1
        return calls["count"] > 1

    candidates = [
        _patch(0, _replace("f", "old", "new")),
        _patch(1, _replace("f", "new", "newer")),
        _patch(2, _replace("f", "newer", "newest")),
    ]

    result = apply_patches(tree.root, candidates, options=LOCAL, should_cancel=should_cancel)

    assert result.cancelled is True
    assert [outcome.attempted for outcome in result.outcomes] == [True, False, False]
    assert (result.applied_count, result.failed_count) == (1, 2)
    assert tree.read("f") == "new\n"


def test_patch_artifacts_are_named_by_index_and_removed(
    tree: TreeRepo,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    artifact_dir = tmp_path / "artifacts"
    artifact_dir.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(artifact_dir))
    seen: list[str] = []
    original = GitRepository.apply

    def recording_apply(self: GitRepository, patch_path: Path, **kwargs: object):
        seen.append(patch_path.name)
        assert patch_path.read_text(encoding="utf-8").endswith("\n")
        return original(self, patch_path, **kwargs)

    monkeypatch.setattr(GitRepository, "apply", recording_apply)
    candidates = [_patch(0, _replace("f", "old", "new")), _patch(1, _replace("f", "nope", "x"))]

    apply_patches(tree.root, candidates, options=LOCAL)

    assert seen[0].startswith("wingman-patch-000-")
    assert any(name.startswith("wingman-patch-001-") for name in seen)
    assert list(artifact_dir.iterdir()) == []


def test_telemetry_events_are_json(tree: TreeRepo, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="wingman.telemetry")

    apply_patches(tree.root, extract_patches(SCENARIO_COMMENT), options=LOCAL)

    events = [json.loads(record.getMessage())["event"] for record in caplog.records if record.name == "wingman.telemetry"]
    assert "patch_apply_succeeded" in events
    assert events[-1] == "patches_processed"


def test_missing_tree_raises_environment_error(tmp_path: Path) -> None:
    with pytest.raises(WorkingTreeError):
        apply_patches(tmp_path / "absent", extract_patches(SCENARIO_COMMENT))


def test_tree_without_git_metadata_raises(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()

    with pytest.raises(WorkingTreeError, match="Not a git repository"):
        apply_patches(plain, [])


def test_result_serialises_counts(tree: TreeRepo) -> None:
    result = apply_patches(tree.root, extract_patches(SCENARIO_COMMENT), options=LOCAL)

    payload = result.to_dict()
    assert payload["applied_count"] == 1
    assert payload["failed_count"] == 0
    assert payload["changed_paths"] == ["f"]
    assert payload["outcomes"][0]["index"] == 0


def test_unwritable_tree_raises_environment_error(tree: TreeRepo, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("wingman.tools.vcs.os.access", lambda path, mode: False)

    with pytest.raises(WorkingTreeError, match="not writable"):
        apply_patches(tree.root, extract_patches(SCENARIO_COMMENT), options=LOCAL)


def test_existing_edits_are_not_reported_or_committed(tree: TreeRepo) -> None:
    tree.write("notes.txt", "scratch\n")
    head = tree.head()

    result = apply_patches(tree.root, [_patch(0, _replace("f", "nope", "new"))], options=LOCAL)

    assert result.applied_count == 0
    assert result.has_tree_changes is False
    assert result.changed_paths == ()
    assert result.commit_sha is None
    assert tree.head() == head
    assert "?? notes.txt" in tree.status()


def test_only_patched_paths_are_committed_on_a_dirty_tree(tree: TreeRepo) -> None:
    tree.write("notes.txt", "scratch\n")

    result = apply_patches(tree.root, extract_patches(SCENARIO_COMMENT), options=LOCAL)

    assert result.has_tree_changes is True
    assert result.changed_paths == (Path("f"),)
    committed = run_git(tree.root, "show", "--name-only", "--format=", "HEAD").stdout.split()
    assert committed == ["f"]
    assert "?? notes.txt" in tree.status()
    assert "notes.txt" not in tree.tracked()


def test_patch_rewriting_a_line_verbatim_applies_without_tree_changes(tree: TreeRepo) -> None:
    head = tree.head()

    result = apply_patches(tree.root, [_patch(0, _replace("f", "old", "old"))], options=LOCAL)

    assert result.outcomes[0].applied is True
    assert result.has_tree_changes is False
    assert result.commit_sha is None
    assert tree.head() == head


def test_context_only_hunk_leaves_tree_unchanged(tree: TreeRepo) -> None:
    body = "--- a/f\n+++ b/f\n@@ -1 +1 @@\n old"

    result = apply_patches(tree.root, [_patch(0, body)], options=LOCAL)

    assert result.has_tree_changes is False
    assert result.applied_count + result.failed_count == 1
    assert tree.read("f") == "old\n"
    assert tree.status() == ""


def test_reapplying_without_commit_reports_no_tree_changes(tree: TreeRepo) -> None:
    options = ApplyOptions(commit=False, push=False)
    candidates = extract_patches(SCENARIO_COMMENT)

    first = apply_patches(tree.root, candidates, options=options)
    second = apply_patches(tree.root, candidates, options=options)

    assert first.has_tree_changes is True
    assert second.applied_count == 0
    assert second.outcomes[0].already_applied is True
    assert second.has_tree_changes is False
    assert tree.read("f") == "new\n"


def test_reapplying_patch_with_trailing_whitespace_is_already_applied(tree: TreeRepo) -> None:
    candidates = [_patch(0, "--- a/f\n+++ b/f\n@@ -1 +1 @@\n-old\n+new   ")]
    apply_patches(tree.root, candidates, options=LOCAL)
    assert tree.read("f") == "new\n"

    second = apply_patches(tree.root, candidates, options=LOCAL)

    outcome = second.outcomes[0]
    assert outcome.already_applied is True
    assert outcome.reject_attempted is False
    assert outcome.reject_paths == ()
    assert not (tree.root / "f.rej").exists()
    assert second.has_tree_changes is False


def test_tracked_reject_named_file_is_patched_and_committed(tree: TreeRepo) -> None:
    tree.write("keep.rej", "a\n")
    tree.commit_all("track keep.rej")

    result = apply_patches(tree.root, [_patch(0, _replace("keep.rej", "a", "b"))], options=LOCAL)

    assert result.outcomes[0].applied is True
    assert result.has_tree_changes is True
    assert result.changed_paths == (Path("keep.rej"),)
    assert result.commit_sha == tree.head()
    assert tree.status() == ""


def test_stale_reject_file_from_an_earlier_run_is_not_a_change(tree: TreeRepo) -> None:
    tree.write("f.rej", "leftover\n")

    result = apply_patches(tree.root, extract_patches(SCENARIO_COMMENT), options=LOCAL)

    assert result.changed_paths == (Path("f"),)
    assert "f.rej" not in tree.tracked()
