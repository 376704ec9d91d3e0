"""Process one pull request comment from detection through notification."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, ContextManager, Protocol, Tuple

from .config import WingmanConfig
from .detection import is_candidate_comment
from .events import CommentEvent
from .extract import CandidatePatch, extract_patches
from .report import ApplyStatus, classify, render_comment
from .tools.patch import ApplyResult, apply_patches
from .tools.vcs import GitError

LOG = logging.getLogger(__name__)


class SourceError(RuntimeError):
    """Raised by a comment source when the forge cannot be reached."""


class CommentSource(Protocol):
    """Forge-specific collaborator supplying trees and receiving notifications."""

    def workspace(self, event: CommentEvent) -> ContextManager[Path]:
        """Yield a working tree checked out to the pull request head branch."""

    def post_comment(self, event: CommentEvent, body: str) -> None:
        """Publish ``body`` on the pull request."""

    def rerun_checks(self, event: CommentEvent) -> bool:
        """Ask CI to re-run; return ``True`` when a run was re-triggered."""


@dataclass(slots=True)
class HandlerOutcome:
    """What happened while handling one comment."""

    handled: bool
    skipped_reason: str | None = None
    patches: Tuple[CandidatePatch, ...] = ()
    result: ApplyResult | None = None
    status: ApplyStatus | None = None
    comment: str | None = None
    error: str | None = None
    rerun_requested: bool = False
    notes: list[str] = field(default_factory=list)


def handle_comment(
    event: CommentEvent,
    source: CommentSource,
    *,
    config: WingmanConfig | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> HandlerOutcome:
    """Extract patches from ``event`` and apply them through ``source``."""

    config = config or WingmanConfig()

    if not event.is_pull_request:
        LOG.info("Comment on #%d is not on a pull request, skipping", event.number)
        return HandlerOutcome(handled=False, skipped_reason="not a pull request")

    if not is_candidate_comment(event.author, event.body, config.detection):
        LOG.info("Comment by %s does not carry suggested fixes, skipping", event.author)
        return HandlerOutcome(handled=False, skipped_reason="not a suggestion comment")

    LOG.info("Processing comment by %s on %s#%d", event.author, event.full_name, event.number)
    patches = tuple(extract_patches(event.body))
    if not patches:
        LOG.warning("No diff patches found in comment on #%d", event.number)
        outcome = HandlerOutcome(handled=True, status=ApplyStatus.NO_PATCHES, comment=render_comment(None))
        _post(source, event, outcome)
        return outcome

    LOG.info("Found %d patch(es) to apply", len(patches))
    try:
        with source.workspace(event) as tree:
            result = apply_patches(
                tree,
                patches,
                options=config.apply_options(branch=event.head_ref),
                should_cancel=should_cancel,
            )
    except (GitError, SourceError) as error:
        LOG.exception("Failed to apply patches for %s#%d", event.full_name, event.number)
        outcome = HandlerOutcome(
            handled=True,
            patches=patches,
            comment=render_comment(None, error=str(error)),
            error=str(error),
        )
        _post(source, event, outcome)
        return outcome

    outcome = HandlerOutcome(
        handled=True,
        patches=patches,
        result=result,
        status=classify(result),
        comment=render_comment(result),
    )
    if result.push_error:
        outcome.notes.append(f"push failed: {result.push_error}")
    _post(source, event, outcome)

    if result.pushed and config.notify.rerun_checks:
        try:
            outcome.rerun_requested = source.rerun_checks(event)
        except SourceError as error:
            LOG.error("Failed to re-run checks for %s#%d: %s", event.full_name, event.number, error)
            outcome.notes.append(f"check re-run failed: {error}")
    return outcome


def _post(source: CommentSource, event: CommentEvent, outcome: HandlerOutcome) -> None:
    """Publish ``outcome.comment``; a forge failure is recorded, not raised."""
    if outcome.comment is None:
        return
    try:
        source.post_comment(event, outcome.comment)
    except SourceError as error:
        LOG.error("Failed to comment on %s#%d: %s", event.full_name, event.number, error)
        outcome.notes.append(f"comment failed: {error}")
        if outcome.error is None:
            outcome.error = f"comment failed: {error}"


__all__ = ["CommentSource", "HandlerOutcome", "SourceError", "handle_comment"]
