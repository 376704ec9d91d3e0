"""Decide whether a pull request comment carries suggestions worth applying."""

from __future__ import annotations

from .config import DetectionConfig
from .extract import contains_diff_fence


def is_bot_author(login: str | None, bot_names: list[str]) -> bool:
    lowered = (login or "").lower()
    return any(name.lower() in lowered for name in bot_names if name)


def is_candidate_comment(author: str | None, body: str | None, rules: DetectionConfig | None = None) -> bool:
    """Return ``True`` when the comment should be handed to the extractor.

    A comment qualifies when its author looks like one of the configured bots,
    when it contains a fenced ``diff`` block, or when it mentions one of the
    configured marker phrases.
    """

    rules = rules or DetectionConfig()
    if is_bot_author(author, rules.bot_names):
        return True
    if rules.match_diff_fence and contains_diff_fence(body):
        return True
    text = body or ""
    return any(marker in text for marker in rules.body_markers if marker)


__all__ = ["is_bot_author", "is_candidate_comment"]
