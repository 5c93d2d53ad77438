"""Heuristics over harness stdout: pending questions and touched files."""

from __future__ import annotations

import re

QUESTION_PATTERNS = (
    re.compile(r"^\s*\?\s+(.+)"),
    re.compile(r"^(.+\?)\s*$"),
    re.compile(r"\[y/n\]", re.IGNORECASE),
    re.compile(r"\(yes/no\)", re.IGNORECASE),
    re.compile(r"press enter to continue", re.IGNORECASE),
    re.compile(r"continue\?\s*$", re.IGNORECASE),
    re.compile(r"proceed\?\s*$", re.IGNORECASE),
    re.compile(r"confirm\?\s*$", re.IGNORECASE),
)

FILE_OPERATION_PATTERNS = (
    re.compile(r"^Created?\s+(\S.*)$", re.IGNORECASE),
    re.compile(r"^Wrote\s+(\S.*)$", re.IGNORECASE),
    re.compile(r"^Edited?\s+(\S.*)$", re.IGNORECASE),
    re.compile(r"^Modified?\s+(\S.*)$", re.IGNORECASE),
    re.compile(r"^Updated?\s+(\S.*)$", re.IGNORECASE),
    re.compile(r"^Deleted?\s+(\S.*)$", re.IGNORECASE),
    re.compile(r"^Removed?\s+(\S.*)$", re.IGNORECASE),
)

COMPLETION_PATTERNS = (
    re.compile(r"^Done\.?$", re.IGNORECASE),
    re.compile(r"^Completed\.?$", re.IGNORECASE),
    re.compile(r"^Finished\.?$", re.IGNORECASE),
    re.compile(r"^Task completed", re.IGNORECASE),
    re.compile(r"^All done", re.IGNORECASE),
)

QUESTION_LOOKBACK_LINES = 5


def find_question(output: str) -> str | None:
    """Return the trailing question a harness left unanswered, if any.

    Only the last few non-empty lines are inspected, and a completion marker
    after the question means the harness answered it itself.
    """

    lines = [line.strip() for line in output.splitlines() if line.strip()]
    for line in reversed(lines[-QUESTION_LOOKBACK_LINES:]):
        if any(pattern.search(line) for pattern in COMPLETION_PATTERNS):
            return None
        for pattern in QUESTION_PATTERNS:
            match = pattern.search(line)
            if match:
                captured = match.group(1) if match.groups() else None
                return (captured or line).strip()
    return None


def find_modified_files(output: str) -> tuple[str, ...]:
    seen: list[str] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        for pattern in FILE_OPERATION_PATTERNS:
            match = pattern.match(line)
            if match:
                path = match.group(1).strip()
                if path not in seen:
                    seen.append(path)
                break
    return tuple(seen)
