from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

LOG = logging.getLogger(__name__)

SEGMENT_CONTEXT = "CONTEXT"
SEGMENT_ADDED = "ADDED"
SEGMENT_REMOVED = "REMOVED"

SEGMENT_PREFIXES = {
    SEGMENT_CONTEXT: " ",
    SEGMENT_ADDED: "+",
    SEGMENT_REMOVED: "-",
}
PREFIX_SEGMENTS = {prefix: kind for kind, prefix in SEGMENT_PREFIXES.items()}


@dataclass
class CommentAnchor:
    line: int = 0
    line_type: str = ""
    path: str = ""
    src_path: str = ""
    from_hash: str = ""
    to_hash: str = ""
    file_type: str = ""

    @property
    def is_line_anchor(self) -> bool:
        return self.line != 0 and bool(self.line_type)

    @property
    def is_file_anchor(self) -> bool:
        return not self.is_line_anchor and bool(self.path or self.src_path)


@dataclass
class Comment:
    id: int = 0
    version: int = 0
    text: str = ""
    author: str = ""
    created_date: int = 0
    updated_date: int = 0
    # Handles into the owning Diff.comments arena.
    replies: list[int] = field(default_factory=list)
    anchor: CommentAnchor = field(default_factory=CommentAnchor)
    indent: int = field(default=0, compare=False, repr=False)

    @property
    def is_new(self) -> bool:
        return self.id == 0


@dataclass
class Line:
    source: int = 0
    destination: int = 0
    text: str = ""
    # Raw ids as sent by Stash; resolved into comment_refs by resolve_comment_ids().
    comment_ids: list[int] = field(default_factory=list)
    comment_refs: list[int] = field(default_factory=list)


@dataclass
class Segment:
    type: str
    lines: list[Line] = field(default_factory=list)

    @property
    def prefix(self) -> str:
        return SEGMENT_PREFIXES.get(self.type, "?")

    def line_number(self, line: Line) -> int:
        if self.type == SEGMENT_ADDED:
            return line.destination
        return line.source


@dataclass
class Hunk:
    source_line: int = 0
    source_span: int = 0
    destination_line: int = 0
    destination_span: int = 0
    segments: list[Segment] = field(default_factory=list)

    def consumed(self) -> tuple[int, int]:
        source = 0
        destination = 0
        for segment in self.segments:
            if segment.type != SEGMENT_ADDED:
                source += len(segment.lines)
            if segment.type != SEGMENT_REMOVED:
                destination += len(segment.lines)
        return source, destination

    @property
    def is_complete(self) -> bool:
        source, destination = self.consumed()
        return source >= self.source_span and destination >= self.destination_span


@dataclass
class Diff:
    source: str = ""
    destination: str = ""
    hunks: list[Hunk] = field(default_factory=list)
    # Owns every comment of this diff, replies included.
    comments: list[Comment] = field(default_factory=list)
    file_comments: list[int] = field(default_factory=list)
    note: str = ""

    @property
    def has_paths(self) -> bool:
        return bool(self.source or self.destination)

    @property
    def path(self) -> str:
        return self.destination or self.source

    def add_comment(self, comment: Comment) -> int:
        self.comments.append(comment)
        return len(self.comments) - 1

    def comment(self, handle: int) -> Comment:
        return self.comments[handle]

    def comment_index(self) -> dict[int, int]:
        index: dict[int, int] = {}
        for handle, comment in enumerate(self.comments):
            if comment.id:
                index.setdefault(comment.id, handle)
        return index

    def iter_lines(self) -> Iterator[tuple[Hunk, Segment, Line]]:
        for hunk in self.hunks:
            for segment in hunk.segments:
                for line in segment.lines:
                    yield hunk, segment, line

    def iter_comments(self) -> Iterator[tuple[Comment, Comment | None]]:
        """Depth-first, pre-order walk in the order the writer renders comments."""

        def walk(handles: list[int], parent: Comment | None) -> Iterator[tuple[Comment, Comment | None]]:
            for handle in handles:
                comment = self.comments[handle]
                yield comment, parent
                yield from walk(comment.replies, comment)

        yield from walk(self.file_comments, None)
        for _hunk, _segment, line in self.iter_lines():
            yield from walk(line.comment_refs, None)


@dataclass
class Changeset:
    diffs: list[Diff] = field(default_factory=list)
    path: str = ""
    from_hash: str = ""
    to_hash: str = ""
    whitespace: str = ""

    def iter_lines(self) -> Iterator[tuple[Diff, Hunk, Segment, Line]]:
        for diff in self.diffs:
            for hunk, segment, line in diff.iter_lines():
                yield diff, hunk, segment, line

    def iter_comments(self) -> Iterator[tuple[Diff, Comment, Comment | None]]:
        for diff in self.diffs:
            for comment, parent in diff.iter_comments():
                yield diff, comment, parent


def resolve_comment_ids(changeset: Changeset) -> None:
    indexes: dict[int, dict[int, int]] = {}
    for diff, _hunk, _segment, line in changeset.iter_lines():
        if not line.comment_ids:
            continue
        index = indexes.get(id(diff))
        if index is None:
            index = indexes[id(diff)] = diff.comment_index()
        for comment_id in line.comment_ids:
            handle = index.get(comment_id)
            if handle is None:
                LOG.debug("line %d refers to unknown comment %d", line.source, comment_id)
                continue
            if handle not in line.comment_refs:
                line.comment_refs.append(handle)


def bind_comment(diff: Diff, handle: int) -> bool:
    """Attach a top-level comment to the line its anchor points at."""

    anchor = diff.comment(handle).anchor
    for _hunk, segment, line in diff.iter_lines():
        if segment.type != anchor.line_type:
            continue
        number = segment.line_number(line)
        if segment.type == SEGMENT_CONTEXT and anchor.file_type == "TO":
            number = line.destination
        if number != anchor.line:
            continue
        if handle not in line.comment_refs:
            line.comment_refs.append(handle)
        return True
    return False


def as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        LOG.warning("ignoring non-numeric value from Stash: %r", value)
        return 0


def path_from_payload(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        if value.get("toString"):
            return str(value["toString"])
        components = value.get("components")
        if isinstance(components, list):
            return "/".join(str(item) for item in components)
    return ""


def anchor_from_payload(payload: dict[str, Any] | None) -> CommentAnchor:
    if not isinstance(payload, dict):
        return CommentAnchor()
    return CommentAnchor(
        line=as_int(payload.get("line")),
        line_type=str(payload.get("lineType") or ""),
        path=path_from_payload(payload.get("path")),
        src_path=path_from_payload(payload.get("srcPath")),
        from_hash=str(payload.get("fromHash") or ""),
        to_hash=str(payload.get("toHash") or ""),
        file_type=str(payload.get("fileType") or ""),
    )


def author_name(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    return str(payload.get("displayName") or payload.get("name") or "")


def comment_from_payload(
    payload: dict[str, Any],
    diff: Diff,
    anchor: CommentAnchor | None = None,
) -> int:
    """Add a comment and its nested replies to the diff arena; returns the handle."""

    if anchor is None:
        anchor = anchor_from_payload(payload.get("anchor"))
    comment = Comment(
        id=as_int(payload.get("id")),
        version=as_int(payload.get("version")),
        text=str(payload.get("text") or ""),
        author=author_name(payload.get("author")),
        created_date=as_int(payload.get("createdDate")),
        updated_date=as_int(payload.get("updatedDate")),
        anchor=anchor,
    )
    handle = diff.add_comment(comment)
    for reply in payload.get("comments") or []:
        if not isinstance(reply, dict):
            continue
        comment.replies.append(comment_from_payload(reply, diff, dataclasses.replace(anchor)))
    return handle


def _line_from_payload(payload: dict[str, Any]) -> Line:
    return Line(
        source=as_int(payload.get("source")),
        destination=as_int(payload.get("destination")),
        text=str(payload.get("line") or ""),
        comment_ids=[as_int(value) for value in payload.get("commentIds") or []],
    )


def _hunk_from_payload(payload: dict[str, Any]) -> Hunk:
    hunk = Hunk(
        source_line=as_int(payload.get("sourceLine")),
        source_span=as_int(payload.get("sourceSpan")),
        destination_line=as_int(payload.get("destinationLine")),
        destination_span=as_int(payload.get("destinationSpan")),
    )
    for segment_payload in payload.get("segments") or []:
        segment_type = str(segment_payload.get("type") or SEGMENT_CONTEXT)
        if segment_type not in SEGMENT_PREFIXES:
            LOG.warning("skipping segment of unknown type %s", segment_type)
            continue
        lines = [_line_from_payload(line) for line in segment_payload.get("lines") or []]
        if not lines:
            continue
        # Keep segments maximal even if Stash splits a run of one type.
        if hunk.segments and hunk.segments[-1].type == segment_type:
            hunk.segments[-1].lines.extend(lines)
            continue
        hunk.segments.append(Segment(type=segment_type, lines=lines))
    return hunk


def diff_from_payload(payload: dict[str, Any], *, with_comments: bool = True) -> Diff:
    diff = Diff(
        source=path_from_payload(payload.get("source")),
        destination=path_from_payload(payload.get("destination")),
        hunks=[_hunk_from_payload(hunk) for hunk in payload.get("hunks") or []],
    )
    if not with_comments:
        return diff
    for comment_payload in payload.get("lineComments") or []:
        if isinstance(comment_payload, dict):
            comment_from_payload(comment_payload, diff)
    for comment_payload in payload.get("fileComments") or []:
        if not isinstance(comment_payload, dict):
            continue
        anchor = anchor_from_payload(comment_payload.get("anchor"))
        anchor.path = anchor.path or diff.destination
        anchor.src_path = anchor.src_path or diff.source
        diff.file_comments.append(comment_from_payload(comment_payload, diff, anchor))
    return diff


def changeset_from_payload(payload: dict[str, Any], path: str = "") -> Changeset:
    changeset = Changeset(
        diffs=[diff_from_payload(diff) for diff in payload.get("diffs") or [] if isinstance(diff, dict)],
        path=path,
        from_hash=str(payload.get("fromHash") or ""),
        to_hash=str(payload.get("toHash") or ""),
        whitespace=str(payload.get("whitespace") or ""),
    )
    resolve_comment_ids(changeset)
    return changeset
