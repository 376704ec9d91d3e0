"""Render apply results as pull request comments."""

from __future__ import annotations

from enum import Enum

from .tools.patch import ApplyResult, PatchOutcome

_MAX_REASON_CHARS = 1_500


class ApplyStatus(str, Enum):
    """User-visible classification of a run."""

    NO_PATCHES = "no_patches"
    NONE_APPLIED = "none_applied"
    NO_CHANGES = "no_changes"
    APPLIED = "applied"


def classify(result: ApplyResult | None) -> ApplyStatus:
    if result is None or result.total == 0:
        return ApplyStatus.NO_PATCHES
    if result.has_tree_changes and result.applied_count > 0:
        return ApplyStatus.APPLIED
    if result.applied_count == 0:
        return ApplyStatus.NONE_APPLIED
    return ApplyStatus.NO_CHANGES


def _trim(text: str) -> str:
    if len(text) <= _MAX_REASON_CHARS:
        return text
    return text[:_MAX_REASON_CHARS].rstrip() + "\n... (truncated)"


def _describe_failure(outcome: PatchOutcome) -> list[str]:
    label = f"Patch {outcome.index + 1}"
    if not outcome.attempted:
        return [f"- {label}: skipped (run cancelled)"]
    if outcome.already_applied:
        return [f"- {label}: already applied"]
    lines = [f"- {label}: failed"]
    if outcome.reject_attempted and outcome.reject_succeeded:
        lines[0] += " (partially applied, rejected hunks left for review)"
    if outcome.failure_reason:
        lines.append("")
        lines.append("  ```")
        lines.extend(f"  {line}" for line in _trim(outcome.failure_reason).splitlines())
        lines.append("  ```")
    return lines


def _failure_section(result: ApplyResult) -> list[str]:
    failures = result.failures
    if not failures:
        return []
    lines = ["", "<details><summary>Failed patches</summary>", ""]
    for outcome in failures:
        lines.extend(_describe_failure(outcome))
    lines.extend(["", "</details>"])
    return lines


def render_comment(result: ApplyResult | None, *, error: str | None = None) -> str:
    """Return the markdown body describing ``result`` (or an aborted run)."""

    if error is not None:
        return "\n".join(
            [
                "### ❌ Error applying suggested fixes",
                "",
                error,
                "",
                "Please review the suggestions manually and apply them as needed.",
            ]
        )

    status = classify(result)
    if status is ApplyStatus.NO_PATCHES or result is None:
        return "\n".join(
            [
                "### ⚠️ No patches found",
                "",
                "No valid diff patches were found in the comment.",
            ]
        )

    if status is ApplyStatus.NONE_APPLIED:
        lines = [
            "### ⚠️ Suggested fixes could not be applied",
            "",
            f"Failed to apply any of the **{result.failed_count}** patch(es). Manual intervention may be required.",
        ]
        if result.has_tree_changes:
            lines.extend(["", "Hunks salvaged from partially applicable patches were committed for review."])
        lines.extend(_failure_section(result))
        return "\n".join(lines)

    if status is ApplyStatus.NO_CHANGES:
        lines = [
            "### ℹ️ No changes required",
            "",
            f"Processed {result.total} patch(es) but the working tree did not change.",
        ]
        lines.extend(_failure_section(result))
        return "\n".join(lines)

    lines = [
        "### ✅ Suggested fixes applied",
        "",
        f"Successfully applied **{result.applied_count}** patch(es).",
    ]
    if result.failed_count:
        lines.extend(["", f"⚠️ **{result.failed_count}** patch(es) could not be applied automatically."])
    lines.append("")
    if result.pushed:
        lines.append("The changes have been committed and pushed. CI will re-run automatically.")
    elif result.push_error:
        lines.append(f"The changes were committed locally but the push failed: `{result.push_error.splitlines()[0]}`")
    elif result.commit_sha:
        lines.append(f"The changes were committed locally as `{result.commit_sha[:7]}`.")
    else:
        lines.append("The changes were left uncommitted in the working tree.")
    lines.extend(_failure_section(result))
    return "\n".join(lines)


__all__ = ["ApplyStatus", "classify", "render_comment"]
