from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from .model import SEGMENT_ADDED, Changeset, Comment, Diff
from .parser import parse_lines
from .writer import render_changeset

LOG = logging.getLogger(__name__)

USAGE_TEXT = (
    "Oh, hello there!\n"
    "\n"
    "Some points about using ash:\n"
    "* Everything beginning with ### will be ignored.\n"
    "* Use one # to start a comment.\n"
    "* You can add line comments after specific lines.\n"
    "* You can add file comments outside of the diff.\n"
    "* You can add review comments outside of the diff (in the overview mode).\n"
    "* If you want to delete comment, you need to remove all it's contents\n"
    "  including header."
)

VIM_MODELINE = "vim: ft=diff"

_DANGLING_SPACE_RE = re.compile(r"[ \t\r\f\v]+$", re.MULTILINE)


def normalize_comment_text(text: str) -> str:
    return _DANGLING_SPACE_RE.sub("", text).strip()


def _excerpt(text: str, limit: int = 48) -> str:
    first = text.strip().split("\n", 1)[0]
    if len(first) > limit:
        return first[: limit - 3] + "..."
    return first


@dataclass(frozen=True)
class ReviewChange:
    comment: Comment

    def payload(self) -> dict[str, Any]:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class LineCommentAdded(ReviewChange):
    def payload(self) -> dict[str, Any]:
        anchor = self.comment.anchor
        return {
            "text": self.comment.text,
            "anchor": {
                "line": anchor.line,
                "lineType": anchor.line_type,
                "fileType": "TO" if anchor.line_type == SEGMENT_ADDED else "FROM",
                "path": anchor.path,
                "srcPath": anchor.src_path,
                "commitRange": {
                    "sinceRevision": {"id": anchor.from_hash},
                    "untilRevision": {"id": anchor.to_hash},
                },
            },
        }

    def describe(self) -> str:
        anchor = self.comment.anchor
        return f"add comment on {anchor.path or anchor.src_path}:{anchor.line} ({anchor.line_type}): {_excerpt(self.comment.text)}"


@dataclass(frozen=True)
class FileCommentAdded(ReviewChange):
    def payload(self) -> dict[str, Any]:
        anchor = self.comment.anchor
        return {
            "text": self.comment.text,
            "anchor": {"path": anchor.path, "srcPath": anchor.src_path},
        }

    def describe(self) -> str:
        anchor = self.comment.anchor
        return f"add comment on file {anchor.path or anchor.src_path}: {_excerpt(self.comment.text)}"


@dataclass(frozen=True)
class ReviewCommentAdded(ReviewChange):
    def payload(self) -> dict[str, Any]:
        return {"text": self.comment.text}

    def describe(self) -> str:
        return f"add review comment: {_excerpt(self.comment.text)}"


@dataclass(frozen=True)
class ReplyAdded(ReviewChange):
    parent: Comment = field(default_factory=Comment)

    def payload(self) -> dict[str, Any]:
        return {"text": self.comment.text, "parent": {"id": self.parent.id}}

    def describe(self) -> str:
        target = f"[{self.parent.id}]" if self.parent.id else "a new comment"
        return f"reply to {target}: {_excerpt(self.comment.text)}"


@dataclass(frozen=True)
class CommentModified(ReviewChange):
    # The saved comment the edit was matched against; carries the version.
    original: Comment = field(default_factory=Comment)

    def payload(self) -> dict[str, Any]:
        return {
            "text": self.comment.text,
            "id": self.original.id,
            "version": self.original.version,
        }

    def describe(self) -> str:
        return f"modify comment [{self.original.id}]: {_excerpt(self.comment.text)}"


@dataclass(frozen=True)
class CommentRemoved(ReviewChange):
    def payload(self) -> dict[str, Any]:
        return {"id": self.comment.id, "version": self.comment.version}

    def describe(self) -> str:
        return f"remove comment [{self.comment.id}] by {self.comment.author or 'unknown'}"


def _fallback_paths(changeset: Changeset) -> tuple[str, str]:
    for diff in changeset.diffs:
        if diff.has_paths:
            return diff.destination, diff.source
    return "", ""


def _classify_new(
    changeset: Changeset,
    diff: Diff,
    comment: Comment,
    parent: Comment | None,
    is_overview: bool,
) -> ReviewChange:
    if parent is not None:
        return ReplyAdded(comment, parent)
    if comment.anchor.is_line_anchor:
        return LineCommentAdded(comment)
    if is_overview:
        return ReviewCommentAdded(comment)

    anchor = comment.anchor
    anchor.path, anchor.src_path = diff.destination, diff.source
    if not diff.has_paths:
        anchor.path, anchor.src_path = _fallback_paths(changeset)
    return FileCommentAdded(comment)


def compare_changesets(
    original: Changeset,
    edited: Changeset,
    *,
    is_overview: bool = False,
) -> list[ReviewChange]:
    """Changes turning ``original`` into ``edited``.

    Additions and modifications come first, in the edited document order,
    followed by removals in the original document order.
    """

    pending: dict[int, Comment] = {}
    for _diff, comment, _parent in original.iter_comments():
        if comment.id:
            pending.setdefault(comment.id, comment)

    changes: list[ReviewChange] = []
    for diff, comment, parent in edited.iter_comments():
        if comment.is_new:
            changes.append(_classify_new(edited, diff, comment, parent, is_overview))
            continue

        existing = pending.pop(comment.id, None)
        if existing is None:
            LOG.debug("comment [%d] is unknown or repeated, ignoring", comment.id)
            continue
        if normalize_comment_text(existing.text) != normalize_comment_text(comment.text):
            changes.append(CommentModified(comment, existing))

    changes.extend(CommentRemoved(comment) for comment in pending.values())
    return changes


@dataclass
class Review:
    changeset: Changeset
    is_overview: bool = False

    def render(self) -> str:
        return render_changeset(self.changeset)

    def add_note(self, note: str, *, first: bool = False) -> None:
        diff = Diff(note=note)
        if first:
            self.changeset.diffs.insert(0, diff)
        else:
            self.changeset.diffs.append(diff)

    def add_usage_note(self) -> None:
        self.add_note(USAGE_TEXT, first=True)

    def add_files_note(self, files: Iterable[str]) -> None:
        names = [name for name in files if name]
        if not names:
            return
        self.add_note("Files changed in this pull request:\n" + "\n".join(f"  {name}" for name in names))

    def file_tag(self) -> str:
        if self.is_overview:
            return "overview"
        name = ""
        for diff in self.changeset.diffs:
            if diff.has_paths:
                name = diff.source or diff.destination
                break
        return f"file={name or self.changeset.path}"

    def add_modeline(self, url: str) -> None:
        self.add_note(f"ash: review-url={url} {self.file_tag()}\n{VIM_MODELINE}")

    def compare(self, edited: Review) -> list[ReviewChange]:
        return compare_changesets(self.changeset, edited.changeset, is_overview=self.is_overview)


def read_review(text: str, *, is_overview: bool = False, strict: bool = False) -> Review:
    changeset, warnings = parse_lines(text.splitlines(), strict=strict)
    if warnings:
        LOG.info("review file parsed with %d warning(s)", len(warnings))
    return Review(changeset=changeset, is_overview=is_overview)
