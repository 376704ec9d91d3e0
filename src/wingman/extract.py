"""Locate unified diff code blocks inside free-text pull request comments."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

__all__ = [
    "CandidatePatch",
    "contains_diff_fence",
    "extract_patches",
    "is_diff_line",
]

_FENCE = "```"
_OPEN_FENCE = re.compile(r"^```[ \t]*(?:diff|patch)(?:\s.*)?$")
_DIFF_LINE = re.compile(r"^(?:diff |--- |\+\+\+ |@@ |[+-])")


@dataclass(frozen=True, slots=True)
class CandidatePatch:
    """One fenced diff block extracted from a comment."""

    index: int
    body: str

    @property
    def line_count(self) -> int:
        return len(self.body.splitlines())


def is_diff_line(line: str) -> bool:
    """Return ``True`` when ``line`` looks like part of a unified diff."""
    return bool(_DIFF_LINE.match(line))


def contains_diff_fence(text: str | None) -> bool:
    """Return ``True`` when ``text`` carries a fenced ``diff`` block marker."""
    return bool(text) and f"{_FENCE}diff" in text


def _is_opener(line: str) -> bool:
    return bool(_OPEN_FENCE.match(line.strip()))


def _is_closer(line: str) -> bool:
    return line.strip() == _FENCE


def extract_patches(comment: str | None) -> List[CandidatePatch]:
    """Return the diff/patch fenced blocks found in ``comment`` in document order.

    A block is kept only when at least one of its lines looks like unified diff
    content. Blocks left open at the end of the comment are dropped, and the
    first bare closing fence ends a block even when it was meant to close a
    nested example.
    """

    if not comment:
        return []

    patches: List[CandidatePatch] = []
    inside = False
    seen_diff = False
    buffer: List[str] = []

    for line in comment.replace("\r\n", "\n").split("\n"):
        if not inside:
            if _is_opener(line):
                inside = True
                seen_diff = False
                buffer = []
            continue

        if _is_closer(line):
            if seen_diff and buffer:
                patches.append(CandidatePatch(index=len(patches), body="\n".join(buffer)))
            inside = False
            buffer = []
            continue

        if is_diff_line(line):
            seen_diff = True
        buffer.append(line)

    return patches
