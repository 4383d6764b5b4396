from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Sequence

from .errors import ConfigError

LOG = logging.getLogger(__name__)

CONFIG_ENV = "ASH_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/ash/config.toml")

STASH_URL_RE = re.compile(
    r"(?P<base>https?://.*?)/"
    r"(?P<project>(?:users|projects)/[^/]+)"
    r"/repos/(?P<repo>[^/]+)"
    r"/pull-requests/(?P<id>\d+)"
)
STASH_REPO_URL_RE = re.compile(
    r"(?P<base>https?://.*?)/"
    r"(?P<project>(?:users|projects)/[^/]+)"
    r"/repos/(?P<repo>[^/]+)/?(?:browse.*)?$"
)
URL_EXAMPLE = "http[s]://<host>/(users|projects)/<project>/repos/<repo>/pull-requests/<id>"

PASSWORD_FLAGS = {"-p", "--pass"}
REDACTED = "******"


@dataclass(frozen=True)
class AshConfig:
    url: str = ""
    user: str = ""
    password: str = ""
    project: str = ""
    editor: str = ""
    debug: int = 0
    no_color: bool = False


@dataclass(frozen=True)
class PullRequestRef:
    base_url: str
    project: str
    repo: str
    pr_id: int = 0

    @property
    def web_url(self) -> str:
        url = f"{self.base_url}/{self.project}/repos/{self.repo}"
        if self.pr_id:
            url += f"/pull-requests/{self.pr_id}"
        return url


def config_path(explicit: str | None = None) -> Path:
    value = explicit or os.environ.get(CONFIG_ENV) or str(DEFAULT_CONFIG_PATH)
    return Path(value).expanduser()


def load_config(path: Path) -> AshConfig:
    if not path.exists():
        LOG.debug("config file %s does not exist", path)
        return AshConfig()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as error:
        raise ConfigError(f"invalid config file {path}: {error}") from error
    except OSError as error:
        raise ConfigError(f"can not access config {path}: {error}") from error

    known = {item.name for item in fields(AshConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        LOG.warning("ignoring unknown config keys in %s: %s", path, ", ".join(unknown))

    try:
        debug = int(data.get("debug") or 0)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"config key 'debug' must be an integer: {data.get('debug')!r}") from error

    return AshConfig(
        url=str(data.get("url") or "").rstrip("/"),
        user=str(data.get("user") or ""),
        password=str(data.get("password") or ""),
        project=str(data.get("project") or ""),
        editor=str(data.get("editor") or ""),
        debug=debug,
        no_color=bool(data.get("no_color", False)),
    )


def merge_config(config: AshConfig, overrides: dict[str, Any]) -> AshConfig:
    """Command line values win over the file; None means "not given"."""

    known = {item.name for item in fields(AshConfig)}
    values = {key: value for key, value in overrides.items() if key in known and value is not None}
    if "url" in values:
        values["url"] = str(values["url"]).rstrip("/")
    return replace(config, **values)


def _project_path(project: str) -> str:
    if project.startswith(("users/", "projects/")):
        return project
    if project[:1] in ("~", "%"):
        return f"users/{project[1:]}"
    return f"projects/{project}"


def resolve_pull_request_ref(
    value: str,
    url: str = "",
    project: str = "",
    *,
    with_id: bool = True,
) -> PullRequestRef:
    """Accept a pull request URL or the ``project/repo/id`` / ``repo/id`` shorthand.

    With ``with_id=False`` the value names a repository (``project/repo`` or
    ``repo``) and the returned ref has ``pr_id == 0``.
    """

    match = STASH_URL_RE.match(value.strip())
    if match:
        return PullRequestRef(
            base_url=match.group("base"),
            project=match.group("project"),
            repo=match.group("repo"),
            pr_id=int(match.group("id")),
        )
    if not with_id:
        match = STASH_REPO_URL_RE.match(value.strip())
        if match:
            return PullRequestRef(base_url=match.group("base"), project=match.group("project"), repo=match.group("repo"))

    shorthand = "<project>/<repo>/<pr>" if with_id else "<project>/<repo>"
    usage = f"pull request should be either a URL ({URL_EXAMPLE}) or the shorthand {shorthand}"
    if not url:
        raise ConfigError(f"--url should be specified for shorthand syntax; {usage}")

    parts = [part for part in value.strip().strip("/").split("/") if part]
    pr_id = 0
    if with_id:
        if not parts or not parts[-1].isdigit():
            raise ConfigError(usage)
        pr_id = int(parts.pop())

    if len(parts) == 2:
        project, repo = parts
    elif len(parts) == 1 and project:
        repo = parts[0]
    else:
        raise ConfigError(usage)

    return PullRequestRef(base_url=url.rstrip("/"), project=_project_path(project), repo=repo, pr_id=pr_id)


def redact_argv(argv: Sequence[str]) -> list[str]:
    redacted: list[str] = []
    hide_next = False
    for arg in argv:
        if hide_next:
            redacted.append(REDACTED)
            hide_next = False
            continue
        flag, sep, _value = arg.partition("=")
        if flag in PASSWORD_FLAGS:
            if sep:
                redacted.append(f"{flag}={REDACTED}")
            else:
                redacted.append(arg)
                hide_next = True
            continue
        redacted.append(arg)
    return redacted
