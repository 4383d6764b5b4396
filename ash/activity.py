"""
Pull request activity feed rendered as one overview document.

Stash reports activities as a list of JSON objects told apart by their
``action`` field. Each known action decodes into one Activity variant
through ACTIVITY_DECODERS; unknown or malformed entries are logged and
skipped so one odd activity does not hide the rest of the feed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .model import (
    Changeset,
    CommentAnchor,
    Diff,
    anchor_from_payload,
    as_int,
    author_name,
    bind_comment,
    comment_from_payload,
    diff_from_payload,
)
from .writer import format_timestamp

LOG = logging.getLogger(__name__)

STATUS_VERBS = {
    "OPENED": "Opened",
    "REOPENED": "Reopened",
    "APPROVED": "Approved",
    "UNAPPROVED": "Unapproved",
    "DECLINED": "Declined",
    "MERGED": "Merged",
    "REVIEWED": "Reviewed",
}


@dataclass
class Activity:
    action: str
    created_date: int = 0
    user: str = ""

    def to_diff(self) -> Diff:
        return Diff(note=f"{self.action.capitalize()} by {self.user}")


@dataclass
class StatusActivity(Activity):
    def to_diff(self) -> Diff:
        verb = STATUS_VERBS.get(self.action, self.action.capitalize())
        note = f"{verb} by {self.user or 'unknown'}"
        if self.created_date:
            note += f" on {format_timestamp(self.created_date)}"
        return Diff(note=note)


@dataclass
class CommitInfo:
    display_id: str
    author: str
    message: str

    def describe(self) -> str:
        return f"{self.display_id} | {self.author} | {self.message}"


@dataclass
class RescopedActivity(Activity):
    added: list[CommitInfo] = field(default_factory=list)
    removed: list[CommitInfo] = field(default_factory=list)

    def to_diff(self) -> Diff:
        parts: list[str] = []
        if self.added:
            parts.append("New commits added:\n\n" + "\n\n".join(commit.describe() for commit in self.added))
        if self.removed:
            parts.append("Commits removed:\n\n" + "\n\n".join(commit.describe() for commit in self.removed))
        return Diff(note="\n\n".join(parts))


@dataclass
class CommentedActivity(Activity):
    comment: dict[str, Any] = field(default_factory=dict)
    anchor: CommentAnchor = field(default_factory=CommentAnchor)
    diff: dict[str, Any] | None = None

    def to_diff(self) -> Diff:
        if self.diff is not None and self.anchor.is_line_anchor:
            diff = diff_from_payload(self.diff, with_comments=False)
            handle = comment_from_payload(self.comment, diff, self.anchor)
            if bind_comment(diff, handle):
                return diff
            LOG.debug("comment %s does not match a line of its diff", self.comment.get("id"))
            diff.file_comments.append(handle)
            return diff

        diff = Diff(source=self.anchor.src_path, destination=self.anchor.path)
        diff.file_comments.append(comment_from_payload(self.comment, diff, self.anchor))
        return diff


def _commits(payload: Any) -> list[CommitInfo]:
    if not isinstance(payload, dict):
        return []
    # Newer servers send "commits", older ones "changesets".
    values = payload.get("commits") or payload.get("changesets") or []
    commits: list[CommitInfo] = []
    for value in values:
        if not isinstance(value, dict):
            continue
        message = str(value.get("message") or "").strip().split("\n", 1)[0]
        commits.append(
            CommitInfo(
                display_id=str(value.get("displayId") or value.get("id") or ""),
                author=author_name(value.get("author")),
                message=message,
            )
        )
    return commits


def _decode_status(payload: dict[str, Any]) -> Activity:
    return StatusActivity(
        action=str(payload["action"]),
        created_date=as_int(payload.get("createdDate")),
        user=author_name(payload.get("user")),
    )


def _decode_rescoped(payload: dict[str, Any]) -> Activity:
    return RescopedActivity(
        action=str(payload["action"]),
        created_date=as_int(payload.get("createdDate")),
        user=author_name(payload.get("user")),
        added=_commits(payload.get("added")),
        removed=_commits(payload.get("removed")),
    )


def _decode_commented(payload: dict[str, Any]) -> Activity:
    comment = payload.get("comment")
    if not isinstance(comment, dict):
        raise ValueError("commented activity without a comment")
    diff = payload.get("diff")
    return CommentedActivity(
        action=str(payload["action"]),
        created_date=as_int(payload.get("createdDate")),
        user=author_name(payload.get("user")),
        comment=comment,
        anchor=anchor_from_payload(payload.get("commentAnchor")),
        diff=diff if isinstance(diff, dict) else None,
    )


ACTIVITY_DECODERS: dict[str, Callable[[dict[str, Any]], Activity]] = {
    "COMMENTED": _decode_commented,
    "RESCOPED": _decode_rescoped,
    "MERGED": _decode_status,
    "APPROVED": _decode_status,
    "UNAPPROVED": _decode_status,
    "DECLINED": _decode_status,
    "OPENED": _decode_status,
    "REOPENED": _decode_status,
    "REVIEWED": _decode_status,
}


def decode_activity(payload: Any) -> Activity | None:
    if not isinstance(payload, dict):
        LOG.warning("skipping activity that is not an object: %r", payload)
        return None
    action = str(payload.get("action") or "")
    decoder = ACTIVITY_DECODERS.get(action)
    if decoder is None:
        LOG.warning("unknown activity action: %s", action or "<missing>")
        return None
    try:
        return decoder(payload)
    except (KeyError, TypeError, ValueError) as error:
        LOG.warning("skipping malformed %s activity: %s", action, error)
        return None


def decode_activities(payload: Any) -> list[Activity]:
    values = payload.get("values") if isinstance(payload, dict) else payload
    activities: list[Activity] = []
    for value in values or []:
        activity = decode_activity(value)
        if activity is not None:
            activities.append(activity)
    return activities


def build_overview(activities: list[Activity]) -> Changeset:
    return Changeset(diffs=[activity.to_diff() for activity in activities])
