from __future__ import annotations

import datetime as dt
from typing import Iterable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .review import (
    CommentModified,
    CommentRemoved,
    ReplyAdded,
    ReviewChange,
)
from .stash import ChangedFile, PullRequestSummary


def format_age(milliseconds: int, now: dt.datetime | None = None) -> str:
    if not milliseconds:
        return "-"
    moment = dt.datetime.fromtimestamp(milliseconds / 1000, tz=dt.timezone.utc)
    now = now or dt.datetime.now(tz=dt.timezone.utc)
    seconds = max(0, int((now - moment).total_seconds()))
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    hours = seconds // 3600
    if hours < 24:
        return f"{hours}h ago"
    if hours < 24 * 7:
        return f"{hours // 24}d ago"
    if hours < 24 * 7 * 4:
        return f"{hours // (24 * 7)}w ago"
    return f"{hours // (24 * 7 * 4)}mon ago"


def state_style(state: str) -> str:
    if state == "OPEN":
        return "green"
    if state == "MERGED":
        return "magenta"
    if state == "DECLINED":
        return "red"
    return "white"


def change_style(change: ReviewChange) -> str:
    if isinstance(change, CommentRemoved):
        return "red"
    if isinstance(change, CommentModified):
        return "yellow"
    if isinstance(change, ReplyAdded):
        return "cyan"
    return "green"


def pull_request_slug(pr: PullRequestSummary) -> str:
    return f"{pr.project.lower()}/{pr.repo}/{pr.id}"


def branch_name(ref: str) -> str:
    return ref.rsplit("/", 1)[-1]


def render_pull_requests(
    console: Console,
    pull_requests: Iterable[PullRequestSummary],
    *,
    title: str = "Pull requests",
    show_state: bool = False,
    show_description: bool = False,
) -> None:
    rows = list(pull_requests)
    table = Table(title=f"{title} ({len(rows)})", header_style="bold magenta")
    table.add_column("pull request", style="cyan", no_wrap=True)
    table.add_column("branch", overflow="ellipsis")
    table.add_column("updated", justify="right", no_wrap=True)
    table.add_column("author", no_wrap=True)
    table.add_column("comments", justify="right")
    table.add_column("approvals", justify="right")
    if show_state:
        table.add_column("state", no_wrap=True)
    table.add_column("pending", overflow="fold")
    for pr in rows:
        cells: list[str | Text] = [
            pull_request_slug(pr),
            branch_name(pr.from_ref),
            format_age(pr.updated_date),
            pr.author or "-",
            str(pr.comment_count),
            f"+{pr.approvals}/{len(pr.reviewers)}",
        ]
        if show_state:
            cells.append(Text(pr.state, style=state_style(pr.state)))
        cells.append(" ".join(pr.pending_reviewers))
        table.add_row(*cells)
    console.print(table)

    if show_description:
        for pr in rows:
            if pr.description:
                console.print(Panel(pr.description, title=pull_request_slug(pr), border_style="blue"))


def render_files(console: Console, files: Iterable[ChangedFile]) -> None:
    rows = list(files)
    table = Table(title=f"Files ({len(rows)})", header_style="bold magenta")
    table.add_column("change", no_wrap=True)
    table.add_column("path", overflow="fold")
    table.add_column("mode", no_wrap=True)
    for item in rows:
        path = item.path or item.src_path
        if item.src_path and item.path and item.src_path != item.path:
            path = f"{item.src_path} -> {item.path}"
        table.add_row(item.type or "-", path, item.exec_flag)
    console.print(table)


def render_change(console: Console, index: int, change: ReviewChange) -> None:
    body = change.comment.text or "(empty)"
    title = Text(f"{index}. {change.describe()}", style=change_style(change))
    console.print(Panel(body, title=title, border_style="blue"))
