"""Completion markers embedded in agent output.

Agents report outcomes with short marker lines. Matching tolerates markdown
decoration (bold, headers, bullets, code ticks) around a marker.
"""

import re

DEVELOPER_FINISHED = "✅ DEVELOPER_FINISHED_SUCCESSFULLY"
FINISHED = "✅ FINISHED_SUCCESSFULLY"
FAILED = "❌ FAILED"
APPROVED = "✅ APPROVED"
REJECTED = "❌ REJECTED"
COMMIT_SHA = "📍 Commit SHA:"
CONFLICT_RESOLVED = "✅ CONFLICT_RESOLVED"
CONFLICT_UNRESOLVABLE = "❌ CONFLICT_UNRESOLVABLE"

_MARKDOWN = re.compile(r"[*#\-_`]")
_SHA = re.compile(r"[0-9a-fA-F]{7,40}")


def _clean(text: str) -> str:
    return _MARKDOWN.sub("", text)


def has_marker(output: str | None, marker: str) -> bool:
    """True if marker appears in output, ignoring markdown characters."""
    if not output:
        return False
    return _clean(marker) in _clean(output)


def extract_marker_value(output: str | None, prefix: str) -> str | None:
    """The first whitespace-delimited token following prefix, if any."""
    if not output:
        return None
    match = re.search(
        re.escape(_clean(prefix)) + r"\s*(\S+)", _clean(output), re.IGNORECASE
    )
    return match.group(1).strip() if match else None


def extract_commit_sha(output: str | None) -> str | None:
    value = extract_marker_value(output, COMMIT_SHA)
    if value and _SHA.fullmatch(value):
        return value
    return None


def developer_reported_failure(output: str | None) -> bool:
    return has_marker(output, FAILED)


def developer_reported_success(output: str | None) -> bool:
    return has_marker(output, DEVELOPER_FINISHED) or has_marker(output, FINISHED)


def review_verdict(output: str | None) -> bool | None:
    """True for approval, False for rejection, None when no verdict is given.

    A rejection anywhere in the output wins over an approval.
    """
    if has_marker(output, REJECTED):
        return False
    if has_marker(output, APPROVED):
        return True
    return None


def extract_feedback(output: str | None) -> str:
    """Text after the verdict marker, used as feedback for the next attempt."""
    if not output:
        return ""
    for marker in (REJECTED, APPROVED):
        index = output.find(marker)
        if index != -1:
            remainder = output[index + len(marker) :].strip(" \n:*")
            if remainder:
                return remainder
    return output.strip()
