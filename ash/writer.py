from __future__ import annotations

import datetime as dt
import logging
import re
from pathlib import Path

from .model import Changeset, Comment, Diff, Hunk

LOG = logging.getLogger(__name__)

REPLY_INDENT = "    "
COMMENT_PREFIX = "# "
COMMENT_DELIMITER = "---"
NOTE_PREFIX = "###"
NULL_PATH = "/dev/null"
COMMENT_ESCAPE = "\\"

COMMENT_DELIM_RE = re.compile(r"^#\s+---")
COMMENT_HEADER_RE = re.compile(r"^#\s+\[(?P<id>\d+)\]\s+\|(?P<author>[^|]+)\|(?P<timestamp>.*)")


def format_timestamp(milliseconds: int) -> str:
    # Go's time.ANSIC layout: "Mon Jan  2 15:04:05 2006".
    moment = dt.datetime.fromtimestamp(milliseconds / 1000)
    return f"{moment:%a %b} {moment.day:>2} {moment:%H:%M:%S %Y}"


def escape_comment_text(value: str) -> str:
    """Prefix text lines that would read back as a delimiter or a header."""

    line = COMMENT_PREFIX + value
    if value.startswith(COMMENT_ESCAPE) or COMMENT_DELIM_RE.match(line) or COMMENT_HEADER_RE.match(line):
        return COMMENT_ESCAPE + value
    return value


def unescape_comment_text(value: str) -> str:
    return value[len(COMMENT_ESCAPE) :] if value.startswith(COMMENT_ESCAPE) else value


def render_note(note: str) -> list[str]:
    lines: list[str] = []
    for value in note.split("\n"):
        value = value.rstrip()
        lines.append(f"{NOTE_PREFIX} {value}" if value else NOTE_PREFIX)
    return lines


def _comment_block(diff: Diff, comment: Comment) -> list[str]:
    """Block lines without the leading "# "; replies carry REPLY_INDENT."""

    text = comment.text.strip()
    text_lines = [escape_comment_text(value) for value in text.split("\n")] if text else []
    if comment.is_new:
        block = [*text_lines, COMMENT_DELIMITER]
    else:
        header = f"[{comment.id}] | {comment.author} | {format_timestamp(comment.updated_date)}"
        block = ["", header, "", *text_lines, "", COMMENT_DELIMITER]

    for handle in comment.replies:
        block.extend(REPLY_INDENT + value for value in _comment_block(diff, diff.comment(handle)))
    return block


def render_comments(diff: Diff, handles: list[int]) -> list[str]:
    if not handles:
        return []
    block = [COMMENT_DELIMITER]
    for handle in handles:
        block.extend(_comment_block(diff, diff.comment(handle)))
    return [(COMMENT_PREFIX + value).rstrip() for value in block]


def _hunk_spans(hunk: Hunk) -> tuple[int, int]:
    source, destination = hunk.consumed()
    if source < hunk.source_span or destination < hunk.destination_span:
        # Truncated by Stash; the declared spans would swallow whatever follows.
        LOG.debug(
            "hunk at -%d,+%d is truncated, writing counted spans",
            hunk.source_line,
            hunk.destination_line,
        )
        return source, destination
    return hunk.source_span, hunk.destination_span


def render_hunk(diff: Diff, hunk: Hunk) -> list[str]:
    source_span, destination_span = _hunk_spans(hunk)
    lines = [f"@@ -{hunk.source_line},{source_span} +{hunk.destination_line},{destination_span} @@"]
    for segment in hunk.segments:
        for line in segment.lines:
            lines.append(segment.prefix + line.text)
            lines.extend(render_comments(diff, line.comment_refs))
    return lines


def _header_path(path: str, revision: str) -> str:
    value = path or NULL_PATH
    return f"{value}\t{revision}" if revision else value


def render_diff(changeset: Changeset, diff: Diff) -> list[str]:
    lines: list[str] = []
    if diff.note:
        lines.extend(render_note(diff.note))
    elif not diff.hunks and not diff.has_paths:
        lines.append(NOTE_PREFIX)

    if diff.hunks or diff.has_paths:
        lines.append(f"--- {_header_path(diff.source, changeset.from_hash)}")
        lines.append(f"+++ {_header_path(diff.destination, changeset.to_hash)}")

    lines.extend(render_comments(diff, diff.file_comments))
    for hunk in diff.hunks:
        lines.extend(render_hunk(diff, hunk))
    return lines


def render_changeset(changeset: Changeset) -> str:
    blocks = ["\n".join(render_diff(changeset, diff)) for diff in changeset.diffs]
    if not blocks:
        return ""
    return "\n\n".join(blocks) + "\n"


def write_changeset(changeset: Changeset, output: Path) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(render_changeset(changeset), encoding="utf-8")
