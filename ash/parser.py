"""
Line-oriented state machine that reads a review file back into a Changeset.

States follow the shape of the file: a diff header, then hunk headers each
followed by hunk body lines, with `#` comment blocks (delimiter, header and
text lines) after any body line. Node creation is driven by state changes:
a source marker opens a Diff, a hunk marker opens a Hunk, a change of line
type opens a Segment and every body line becomes a Line.

The parser is deliberately forgiving: lines it does not understand are
skipped, because the file has just been through a text editor. The only
structural failure is a malformed diff header.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from typing import Iterable

from .errors import DocumentParseError, MalformedFieldError
from .model import (
    PREFIX_SEGMENTS,
    SEGMENT_ADDED,
    SEGMENT_CONTEXT,
    SEGMENT_REMOVED,
    Changeset,
    Comment,
    CommentAnchor,
    Diff,
    Hunk,
    Line,
    Segment,
)
from .writer import COMMENT_DELIM_RE, COMMENT_HEADER_RE, NOTE_PREFIX, NULL_PATH, unescape_comment_text

LOG = logging.getLogger(__name__)

STATE_START_OF_FILE = "start-of-file"
STATE_DIFF_HEADER = "diff-header"
STATE_HUNK_HEADER = "hunk-header"
STATE_HUNK_BODY = "hunk-body"
STATE_COMMENT = "comment"
STATE_COMMENT_DELIM = "comment-delim"
STATE_COMMENT_HEADER = "comment-header"

COMMENT_STATES = {STATE_COMMENT, STATE_COMMENT_DELIM, STATE_COMMENT_HEADER}
HUNK_STATES = {STATE_HUNK_HEADER, STATE_HUNK_BODY}

FROM_FILE_RE = re.compile(r"^--- (?P<path>[^\t]+?)(?:\t(?P<revision>.*))?$")
TO_FILE_RE = re.compile(r"^\+\+\+ (?P<path>[^\t]+?)(?:\t(?P<revision>.*))?$")
HUNK_RE = re.compile(
    r"^@@ -(?P<source_line>[^,\s]*),(?P<source_span>\S*)"
    r" \+(?P<destination_line>[^,\s]*),(?P<destination_span>\S*) @@"
)
COMMENT_TEXT_RE = re.compile(r"^#\s*(?P<text>.*)")
INDENT_RE = re.compile(r"^#(\s+)")

TIMESTAMP_FORMAT = "%a %b %d %H:%M:%S %Y"


def parse_number(field: str, value: str, lineno: int | None = None) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise MalformedFieldError(field, value, lineno) from error


def parse_timestamp(value: str, lineno: int | None = None) -> int:
    normalized = " ".join(value.split())
    try:
        moment = dt.datetime.strptime(normalized, TIMESTAMP_FORMAT)
    except ValueError as error:
        raise MalformedFieldError("timestamp", value.strip(), lineno) from error
    return int(moment.timestamp()) * 1000


def indent_size(line: str) -> int:
    match = INDENT_RE.match(line)
    if not match:
        return 0
    return len(match.group(1))


def _header_path(value: str) -> str:
    value = value.strip()
    return "" if value == NULL_PATH else value


class ChangesetParser:
    def __init__(self, *, strict: bool = False) -> None:
        self.strict = strict
        self.warnings: list[str] = []
        self.state = STATE_START_OF_FILE
        self.lineno = 0
        self.changeset = Changeset()

        self._diff: Diff | None = None
        self._header_complete = False
        self._hunk: Hunk | None = None
        self._segment: Segment | None = None
        self._segment_type = SEGMENT_CONTEXT
        self._line: Line | None = None
        self._comment: Comment | None = None
        self._comment_registered = False
        self._indent_known = False
        # Handles registered under the current line (or diff-level region),
        # searched backwards to find a reply's parent.
        self._siblings: list[int] = []

    def feed(self, raw: str) -> None:
        self.lineno += 1
        line = raw.rstrip("\r\n")

        if line.startswith(NOTE_PREFIX):
            self._leave_diff()
            return

        state = self._next_state(line)
        if state is None:
            return

        previous = self.state
        self.state = state
        if state not in COMMENT_STATES:
            self._comment = None

        if state == STATE_DIFF_HEADER:
            self._parse_diff_header(line, previous)
        elif state == STATE_HUNK_HEADER and self._diff is not None:
            self._parse_hunk_header(self._diff, line)
        elif state == STATE_HUNK_BODY and self._hunk is not None:
            self._parse_hunk_body(self._hunk, line)
        elif state == STATE_COMMENT_DELIM:
            self._start_comment()
        elif state == STATE_COMMENT_HEADER:
            self._parse_comment_header(line)
        elif state == STATE_COMMENT:
            self._parse_comment_text(line)

    def finish(self) -> Changeset:
        for diff in self.changeset.diffs:
            for comment in diff.comments:
                comment.text = comment.text.strip()
        return self.changeset

    # transitions

    def _hunk_closed(self) -> bool:
        return self._hunk is None or self._hunk.is_complete

    def _comment_state(self, line: str) -> str | None:
        if COMMENT_DELIM_RE.match(line):
            return STATE_COMMENT_DELIM
        if COMMENT_HEADER_RE.match(line):
            return STATE_COMMENT_HEADER
        if COMMENT_TEXT_RE.match(line):
            return STATE_COMMENT
        return None

    def _next_state(self, line: str) -> str | None:
        head = line[:1]

        if self.state == STATE_START_OF_FILE:
            if head == "-":
                return STATE_DIFF_HEADER
            if head == "#":
                return self._comment_state(line)
            return None

        if self.state == STATE_DIFF_HEADER:
            if head == "@":
                return STATE_HUNK_HEADER
            if head == "#":
                return self._comment_state(line)
            if not line.strip():
                return None
            return STATE_DIFF_HEADER

        # Hunk header, hunk body and comment states share one transition table.
        if head == "#":
            return self._comment_state(line)
        if head == "@":
            return STATE_HUNK_HEADER if self._diff is not None else None
        if head == "-" and self._hunk_closed() and FROM_FILE_RE.match(line):
            return STATE_DIFF_HEADER
        if self._hunk is None:
            return None
        if head in PREFIX_SEGMENTS:
            self._segment_type = PREFIX_SEGMENTS[head]
            return STATE_HUNK_BODY
        if not line and self.state in HUNK_STATES and not self._hunk.is_complete:
            # An empty context line whose single space was eaten by the editor.
            # Blank lines after comment lines are skipped.
            self._segment_type = SEGMENT_CONTEXT
            return STATE_HUNK_BODY
        return None

    # node construction

    def _leave_diff(self) -> None:
        self.state = STATE_START_OF_FILE
        self._diff = None
        self._header_complete = False
        self._hunk = None
        self._segment = None
        self._line = None
        self._comment = None
        self._siblings = []

    def _start_diff(self) -> Diff:
        self._leave_diff()
        self.state = STATE_DIFF_HEADER
        self._diff = Diff()
        self.changeset.diffs.append(self._diff)
        return self._diff

    def _parse_diff_header(self, line: str, previous: str) -> None:
        from_match = FROM_FILE_RE.match(line)
        to_match = TO_FILE_RE.match(line)
        diff = self._diff
        if diff is None or previous != STATE_DIFF_HEADER or (from_match and self._header_complete):
            diff = self._start_diff()

        if from_match:
            diff.source = _header_path(from_match.group("path"))
            if from_match.group("revision"):
                self.changeset.from_hash = from_match.group("revision").strip()
        elif to_match:
            diff.destination = _header_path(to_match.group("path"))
            if to_match.group("revision"):
                self.changeset.to_hash = to_match.group("revision").strip()
            if not self.changeset.path:
                self.changeset.path = diff.destination or diff.source
            self._header_complete = True
        else:
            raise DocumentParseError("expected diff header, but not found", self.lineno)

    def _number(self, field: str, value: str) -> int:
        try:
            return parse_number(field, value, self.lineno)
        except MalformedFieldError as error:
            return self._recover(error)

    def _recover(self, error: MalformedFieldError) -> int:
        if self.strict:
            raise error
        LOG.warning("%s, using 0", error)
        self.warnings.append(str(error))
        return 0

    def _parse_hunk_header(self, diff: Diff, line: str) -> None:
        hunk = Hunk()
        match = HUNK_RE.match(line)
        if match:
            hunk.source_line = self._number("hunk source line", match.group("source_line"))
            hunk.source_span = self._number("hunk source span", match.group("source_span"))
            hunk.destination_line = self._number("hunk destination line", match.group("destination_line"))
            hunk.destination_span = self._number("hunk destination span", match.group("destination_span"))
        else:
            self._recover(MalformedFieldError("hunk header", line, self.lineno))

        diff.hunks.append(hunk)
        self._hunk = hunk
        self._segment = None
        self._line = None
        self._siblings = []

    def _parse_hunk_body(self, hunk: Hunk, line: str) -> None:
        if self._segment is None or self._segment.type != self._segment_type:
            self._segment = Segment(type=self._segment_type)
            hunk.segments.append(self._segment)

        segment = self._segment
        current = Line(text=line[1:])
        segment.lines.append(current)

        if len(hunk.segments) > 1:
            previous = hunk.segments[-2].lines[-1]
            source_offset = previous.source
            destination_offset = previous.destination
        else:
            source_offset = hunk.source_line - 1
            destination_offset = hunk.destination_line - 1

        position = len(segment.lines)
        if segment.type == SEGMENT_CONTEXT:
            current.source = source_offset + position
            current.destination = destination_offset + position
        elif segment.type == SEGMENT_ADDED:
            current.source = source_offset
            current.destination = destination_offset + position
        elif segment.type == SEGMENT_REMOVED:
            current.source = source_offset + position
            current.destination = destination_offset

        self._line = current
        self._siblings = []

    def _start_comment(self) -> Comment:
        self._comment = Comment()
        self._comment_registered = False
        self._indent_known = False
        return self._comment

    def _parse_comment_header(self, line: str) -> None:
        comment = self._comment
        if comment is None or self._comment_registered or comment.id:
            comment = self._start_comment()

        match = COMMENT_HEADER_RE.match(line)
        if match is None:
            raise DocumentParseError("malformed comment header", self.lineno)
        comment.id = int(match.group("id"))
        comment.author = match.group("author").strip()
        try:
            comment.updated_date = parse_timestamp(match.group("timestamp"), self.lineno)
        except MalformedFieldError as error:
            comment.updated_date = self._recover(error)
        comment.indent = indent_size(line)
        self._indent_known = True

    def _parse_comment_text(self, line: str) -> None:
        comment = self._comment
        if comment is None:
            comment = self._start_comment()

        if not self._comment_registered and line[1:].strip():
            if not self._indent_known:
                comment.indent = indent_size(line)
                self._indent_known = True
            self._register(comment)

        body = line[1:]
        leading = len(body) - len(body.lstrip(" \t"))
        body = unescape_comment_text(body[min(leading, max(comment.indent, 1)) :])
        comment.text += "\n" + body.rstrip()

    def _register(self, comment: Comment) -> None:
        changeset = self.changeset
        if self._line is not None and self._segment is not None and self._diff is not None:
            diff = self._diff
            comment.anchor = CommentAnchor(
                line=self._segment.line_number(self._line),
                line_type=self._segment.type,
                path=diff.destination,
                src_path=diff.source,
                from_hash=changeset.from_hash,
                to_hash=changeset.to_hash,
            )
            roots = self._line.comment_refs
        else:
            if self._diff is None:
                # Review-level comment outside of any file diff.
                self._diff = Diff()
                changeset.diffs.append(self._diff)
            diff = self._diff
            comment.anchor = CommentAnchor(path=diff.destination, src_path=diff.source)
            roots = diff.file_comments

        handle = diff.add_comment(comment)
        parent = self._find_parent(diff, comment)
        if parent is not None:
            parent.replies.append(handle)
        else:
            roots.append(handle)
        self._siblings.append(handle)
        self._comment_registered = True

    def _find_parent(self, diff: Diff, comment: Comment) -> Comment | None:
        for handle in reversed(self._siblings):
            candidate = diff.comment(handle)
            if candidate.indent < comment.indent:
                return candidate
        return None


def parse_lines(lines: Iterable[str], *, strict: bool = False) -> tuple[Changeset, list[str]]:
    parser = ChangesetParser(strict=strict)
    for line in lines:
        parser.feed(line)
    return parser.finish(), parser.warnings


def parse_changeset(text: str, *, strict: bool = False) -> Changeset:
    changeset, _warnings = parse_lines(text.splitlines(), strict=strict)
    return changeset
