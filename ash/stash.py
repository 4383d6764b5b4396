from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import requests

from .activity import Activity, build_overview, decode_activities
from .errors import StashApiError, UnexpectedStatusError
from .model import Changeset, as_int, author_name, changeset_from_payload, path_from_payload
from .review import (
    CommentModified,
    CommentRemoved,
    FileCommentAdded,
    LineCommentAdded,
    ReplyAdded,
    Review,
    ReviewChange,
    ReviewCommentAdded,
)

LOG = logging.getLogger(__name__)

API_PREFIX = "/rest/api/1.0"
DEFAULT_TIMEOUT = 30.0
DEFAULT_ACTIVITY_LIMIT = 25
DEFAULT_PAGE_LIMIT = 100

INBOX_ROLES = {
    "reviewer": ("REVIEWER",),
    "author": ("AUTHOR",),
    "all": ("REVIEWER", "AUTHOR"),
}

ADDING_CHANGES = (LineCommentAdded, FileCommentAdded, ReviewCommentAdded, ReplyAdded)


def check_status(response: requests.Response) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    if status in (400, 401, 404) and response.text:
        raise StashApiError(status, _error_message(response))
    raise UnexpectedStatusError(status)


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip()
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if isinstance(errors, list):
        messages = [str(item.get("message")) for item in errors if isinstance(item, dict) and item.get("message")]
        if messages:
            return "; ".join(messages)
    return response.text.strip()


@dataclass
class PullRequestSummary:
    id: int
    version: int = 0
    title: str = ""
    state: str = ""
    author: str = ""
    description: str = ""
    reviewers: list[str] = field(default_factory=list)
    pending_reviewers: list[str] = field(default_factory=list)
    approvals: int = 0
    comment_count: int = 0
    from_ref: str = ""
    to_ref: str = ""
    project: str = ""
    repo: str = ""
    url: str = ""
    updated_date: int = 0


@dataclass
class ChangedFile:
    path: str
    src_path: str = ""
    type: str = ""
    executable: bool = False
    src_executable: bool = False

    @property
    def exec_flag(self) -> str:
        if self.executable == self.src_executable:
            return ""
        return "+x" if self.executable else "-x"


def _ref_name(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    return str(payload.get("displayId") or payload.get("id") or "")


def summary_from_payload(payload: dict[str, Any]) -> PullRequestSummary:
    reviewers = [item for item in payload.get("reviewers") or [] if isinstance(item, dict)]
    to_ref = payload.get("toRef") if isinstance(payload.get("toRef"), dict) else {}
    repository = to_ref.get("repository") if isinstance(to_ref.get("repository"), dict) else {}
    project = repository.get("project") if isinstance(repository.get("project"), dict) else {}
    links = payload.get("links") if isinstance(payload.get("links"), dict) else {}
    self_links = [item for item in links.get("self") or [] if isinstance(item, dict)]
    return PullRequestSummary(
        id=as_int(payload.get("id")),
        version=as_int(payload.get("version")),
        title=str(payload.get("title") or ""),
        state=str(payload.get("state") or ""),
        author=author_name((payload.get("author") or {}).get("user")),
        description=str(payload.get("description") or ""),
        reviewers=[author_name(item.get("user")) for item in reviewers],
        pending_reviewers=sorted(author_name(item.get("user")) for item in reviewers if not item.get("approved")),
        approvals=sum(1 for item in reviewers if item.get("approved")),
        comment_count=as_int((payload.get("properties") or {}).get("commentCount")),
        from_ref=_ref_name(payload.get("fromRef")),
        to_ref=_ref_name(to_ref),
        project=str(project.get("key") or ""),
        repo=str(repository.get("slug") or ""),
        url=str(self_links[0].get("href") or "") if self_links else "",
        updated_date=as_int(payload.get("updatedDate")),
    )


def changed_file_from_payload(payload: dict[str, Any]) -> ChangedFile:
    return ChangedFile(
        path=path_from_payload(payload.get("path")),
        src_path=path_from_payload(payload.get("srcPath")),
        type=str(payload.get("type") or ""),
        executable=bool(payload.get("executable")),
        src_executable=bool(payload.get("srcExecutable")),
    )


class StashApi:
    def __init__(
        self,
        base_url: str,
        user: str = "",
        password: str = "",
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if user:
            self.session.auth = (user, password)
        self.session.headers.update(
            {
                "Accept": "application/json",
                "X-Atlassian-Token": "no-check",
            }
        )

    def url(self, path: str) -> str:
        return f"{self.base_url}{API_PREFIX}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        url = self.url(path)
        LOG.debug("%s %s params=%s", method, url, params or {})
        response = self.session.request(method, url, params=params, json=json, timeout=self.timeout)
        LOG.debug("%s %s -> %d", method, url, response.status_code)
        check_status(response)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            LOG.debug("response of %s %s is not JSON", method, url)
            return {}

    def get(self, path: str, **params: Any) -> Any:
        return self.request("GET", path, params=params or None)

    def repo(self, project: str, name: str) -> Repo:
        return Repo(self, project, name)

    def get_inbox(self, role: str = "REVIEWER", *, limit: int = DEFAULT_PAGE_LIMIT) -> list[PullRequestSummary]:
        payload = self.get("dashboard/pull-requests", role=role, state="OPEN", limit=limit)
        values = (payload.get("values") or []) if isinstance(payload, dict) else []
        LOG.debug("Stash returned %d pull requests for role %s", len(values), role)
        return [summary_from_payload(value) for value in values if isinstance(value, dict)]


class Repo:
    def __init__(self, api: StashApi, project: str, name: str) -> None:
        self.api = api
        # "projects/KEY" or "users/slug"
        self.project = project
        self.name = name

    @property
    def path(self) -> str:
        return f"{self.project}/repos/{self.name}"

    def pull_request(self, pr_id: int) -> PullRequest:
        return PullRequest(self, pr_id)

    def list_pull_requests(self, state: str = "OPEN", *, limit: int = DEFAULT_PAGE_LIMIT) -> list[PullRequestSummary]:
        payload = self.api.get(f"{self.path}/pull-requests", state=state.upper(), limit=limit)
        values = (payload.get("values") or []) if isinstance(payload, dict) else []
        return [summary_from_payload(value) for value in values if isinstance(value, dict)]


class PullRequest:
    def __init__(self, repo: Repo, pr_id: int) -> None:
        self.repo = repo
        self.id = pr_id

    @property
    def api(self) -> StashApi:
        return self.repo.api

    @property
    def path(self) -> str:
        return f"{self.repo.path}/pull-requests/{self.id}"

    def get_info(self) -> PullRequestSummary:
        return summary_from_payload(self.api.get(self.path))

    def get_review(
        self,
        file_path: str,
        *,
        ignore_whitespace: bool = False,
        context_lines: int | None = None,
    ) -> Review:
        params: dict[str, Any] = {"withComments": "true"}
        if ignore_whitespace:
            params["whitespace"] = "ignore-all"
        if context_lines is not None:
            params["contextLines"] = context_lines
        payload = self.api.get(f"{self.path}/diff/{quote(file_path)}", **params)
        return Review(changeset_from_payload(payload, path=file_path))

    def get_activities(self, limit: int = DEFAULT_ACTIVITY_LIMIT) -> list[Activity]:
        return decode_activities(self.api.get(f"{self.path}/activities", limit=limit))

    def get_files(self, *, limit: int = DEFAULT_PAGE_LIMIT) -> list[ChangedFile]:
        payload = self.api.get(f"{self.path}/changes", limit=limit)
        values = (payload.get("values") or []) if isinstance(payload, dict) else []
        return [changed_file_from_payload(value) for value in values if isinstance(value, dict)]

    def get_overview(self, limit: int = DEFAULT_ACTIVITY_LIMIT) -> Changeset:
        return build_overview(self.get_activities(limit))

    def approve(self) -> None:
        self.api.request("POST", f"{self.path}/approve")

    def decline(self) -> None:
        version = self.get_info().version
        self.api.request("POST", f"{self.path}/decline", params={"version": version})

    def merge(self) -> None:
        version = self.get_info().version
        self.api.request("POST", f"{self.path}/merge", params={"version": version})

    def apply_change(self, change: ReviewChange) -> None:
        comments = f"{self.path}/comments"
        if isinstance(change, ADDING_CHANGES):
            result = self.api.request("POST", comments, json=change.payload())
            # Later replies to this comment need its id as their parent.
            change.comment.id = as_int(result.get("id")) if isinstance(result, dict) else 0
            change.comment.version = as_int(result.get("version")) if isinstance(result, dict) else 0
            LOG.info("comment added: %d", change.comment.id)
        elif isinstance(change, CommentModified):
            payload = change.payload()
            result = self.api.request(
                "PUT",
                f"{comments}/{payload['id']}",
                params={"version": payload["version"]},
                json=payload,
            )
            if isinstance(result, dict) and "version" in result:
                change.original.version = as_int(result.get("version"))
            LOG.info("comment modified: %d", payload["id"])
        elif isinstance(change, CommentRemoved):
            payload = change.payload()
            self.api.request("DELETE", f"{comments}/{payload['id']}", params={"version": payload["version"]})
            LOG.info("comment removed: %d", payload["id"])
        else:
            raise TypeError(f"unexpected change: {change!r}")
