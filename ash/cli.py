from __future__ import annotations

import argparse
import logging
import os
import shlex
import shutil
import subprocess
import sys
import tempfile
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from operator import methodcaller
from pathlib import Path
from typing import Callable

import requests
from rich.console import Console
from rich.prompt import Confirm

from .config import (
    AshConfig,
    PullRequestRef,
    config_path,
    load_config,
    merge_config,
    redact_argv,
    resolve_pull_request_ref,
)
from .errors import AshError, ConfigError
from .logging_utils import close_log_file, configure_logging
from .render import render_change, render_files, render_pull_requests
from .review import ReplyAdded, Review, ReviewChange, read_review
from .stash import INBOX_ROLES, PullRequest, StashApi
from .writer import write_changeset

LOG = logging.getLogger(__name__)

DEFAULT_ACTIVITIES_LIMIT = 1000
REVIEW_FILE_NAME = "review.diff"
DEBUG_LOG_NAME = "debug.log"
ISSUES_URL = "https://github.com/seletskiy/ash"

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_CHANGES = 2


@dataclass
class RunContext:
    config: AshConfig
    workdir: Path
    console: Console
    keep_workdir: bool = False

    @property
    def debug_log(self) -> Path:
        return self.workdir / DEBUG_LOG_NAME


def _add_global_options(parser: argparse.ArgumentParser) -> None:
    # SUPPRESS keeps a subcommand from overwriting a value given before it.
    group = parser.add_argument_group("global options")
    group.add_argument("--config", default=argparse.SUPPRESS, help="Config TOML path (default: ~/.config/ash/config.toml).")
    group.add_argument("-u", "--user", default=argparse.SUPPRESS, help="Stash username.")
    group.add_argument("-p", "--pass", dest="password", default=argparse.SUPPRESS, help="Stash password.")
    group.add_argument("--url", default=argparse.SUPPRESS, help="Stash server URL.")
    group.add_argument(
        "--project",
        default=argparse.SUPPRESS,
        help="Default project for <repo>/<pr> shorthand.",
    )
    group.add_argument("--debug", type=int, default=argparse.SUPPRESS, help="Verbosity: 0, 1 or 2.")
    group.add_argument("--no-color", action="store_true", default=argparse.SUPPRESS, help="Do not use color in output.")


def parse_ash_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ash",
        description="Review Atlassian Stash pull requests in your text editor.",
    )
    _add_global_options(parser)
    commands = parser.add_subparsers(dest="command", required=True)

    inbox = commands.add_parser("inbox", help="List pull requests waiting for you.")
    _add_global_options(inbox)
    inbox.add_argument("role", nargs="?", choices=sorted(INBOX_ROLES), default="all")
    inbox.add_argument("-d", dest="descriptions", action="store_true", help="Show descriptions.")

    ls_reviews = commands.add_parser("ls-reviews", help="List pull requests of a repository.")
    _add_global_options(ls_reviews)
    ls_reviews.add_argument("repository", help="<project>/<repo> or <repo> with --project.")
    ls_reviews.add_argument("state", nargs="?", choices=["open", "merged", "declined"], default="open")
    ls_reviews.add_argument("-d", dest="descriptions", action="store_true", help="Show descriptions.")

    for name, summary in (
        ("ls", "List files changed in a pull request."),
        ("approve", "Approve a pull request."),
        ("decline", "Decline a pull request."),
        ("merge", "Merge a pull request."),
    ):
        command = commands.add_parser(name, help=summary)
        _add_global_options(command)
        command.add_argument("pull_request", help="Pull request URL or <project>/<repo>/<pr>.")

    review = commands.add_parser("review", help="Review a file or the overview of a pull request.")
    _add_global_options(review)
    review.add_argument("pull_request", help="Pull request URL or <project>/<repo>/<pr>.")
    review.add_argument("file", nargs="?", default="", help="File to review; the overview when omitted.")
    review.add_argument("-w", dest="ignore_whitespace", action="store_true", help="Ignore whitespace.")
    review.add_argument(
        "-l",
        dest="limit",
        type=int,
        default=DEFAULT_ACTIVITIES_LIMIT,
        help=f"Number of activities to retrieve (default: {DEFAULT_ACTIVITIES_LIMIT}).",
    )
    review.add_argument("-e", dest="editor", help="Editor to use; has priority over $EDITOR.")
    review.add_argument("-i", dest="interactive", action="store_true", help="Ask before applying changes.")
    review.add_argument("--input", help="Read the edited review from this file instead of opening an editor.")
    review.add_argument("--output", help="Write the review to this file (or '-' for a temp file) and exit.")
    review.add_argument("--origin", help="Use this review file instead of downloading the review from Stash.")
    return parser.parse_args(argv)


def _merged_config(args: argparse.Namespace) -> AshConfig:
    config = load_config(config_path(getattr(args, "config", None)))
    return merge_config(
        config,
        {
            "url": getattr(args, "url", None),
            "user": getattr(args, "user", None),
            "password": getattr(args, "password", None),
            "project": getattr(args, "project", None),
            "debug": getattr(args, "debug", None),
            "no_color": getattr(args, "no_color", None),
            "editor": getattr(args, "editor", None),
        },
    )


def _base_url(url: str) -> str:
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def open_api(base_url: str, config: AshConfig) -> StashApi:
    if not config.user or not config.password:
        raise ConfigError("--user and --pass should be specified")
    return StashApi(_base_url(base_url), config.user, config.password)


def open_pull_request(ref: PullRequestRef, config: AshConfig) -> PullRequest:
    return open_api(ref.base_url, config).repo(ref.project, ref.repo).pull_request(ref.pr_id)


def _pull_request_ref(value: str, config: AshConfig) -> PullRequestRef:
    return resolve_pull_request_ref(value, _base_url(config.url) if config.url else "", config.project)


def run_inbox(args: argparse.Namespace, ctx: RunContext) -> int:
    if not ctx.config.url:
        raise ConfigError("--url should be specified for inbox")
    api = open_api(ctx.config.url, ctx.config)
    roles = INBOX_ROLES[args.role]
    with ThreadPoolExecutor(max_workers=len(roles)) as pool:
        futures = {role: pool.submit(api.get_inbox, role) for role in roles}
        pull_requests = []
        seen: set[tuple[str, str, int]] = set()
        for role in roles:
            for pr in futures[role].result():
                key = (pr.project, pr.repo, pr.id)
                if key in seen:
                    continue
                seen.add(key)
                pull_requests.append(pr)
    render_pull_requests(ctx.console, pull_requests, title="Inbox", show_description=args.descriptions)
    return EXIT_OK


def run_ls_reviews(args: argparse.Namespace, ctx: RunContext) -> int:
    config = ctx.config
    ref = resolve_pull_request_ref(args.repository, _base_url(config.url) if config.url else "", config.project, with_id=False)
    repo = open_api(ref.base_url, config).repo(ref.project, ref.repo)
    pull_requests = repo.list_pull_requests(args.state)
    render_pull_requests(
        ctx.console,
        pull_requests,
        title=f"{args.state.capitalize()} pull requests",
        show_state=True,
        show_description=args.descriptions,
    )
    return EXIT_OK


def run_ls(args: argparse.Namespace, ctx: RunContext) -> int:
    pr = open_pull_request(_pull_request_ref(args.pull_request, ctx.config), ctx.config)
    LOG.debug("showing list of files in pull request %d", pr.id)
    render_files(ctx.console, pr.get_files())
    return EXIT_OK


def _status_command(action: Callable[[PullRequest], None], done: str) -> Callable[[argparse.Namespace, RunContext], int]:
    def run(args: argparse.Namespace, ctx: RunContext) -> int:
        pr = open_pull_request(_pull_request_ref(args.pull_request, ctx.config), ctx.config)
        action(pr)
        ctx.console.print(f"Pull request successfully {done}")
        return EXIT_OK

    return run


run_approve = _status_command(methodcaller("approve"), "approved")
run_decline = _status_command(methodcaller("decline"), "declined")
run_merge = _status_command(methodcaller("merge"), "merged")


def _load_origin(args: argparse.Namespace, pr: PullRequest) -> Review:
    if args.origin:
        LOG.debug("using origin review from file %s", args.origin)
        text = Path(args.origin).read_text(encoding="utf-8")
        return read_review(text, is_overview=not args.file)

    if args.file:
        LOG.debug("downloading review of %s from Stash", args.file)
        review = pr.get_review(args.file, ignore_whitespace=args.ignore_whitespace)
    else:
        LOG.debug("downloading overview from Stash")
        review = Review(pr.get_overview(args.limit), is_overview=True)

    if not review.changeset.diffs:
        raise AshError("Specified file is not found in pull request.")
    return review


def _write_review_file(review: Review, pr: PullRequest, ref: PullRequestRef, output: Path) -> None:
    info = pr.get_info()
    review.add_usage_note()
    review.add_files_note(item.path or item.src_path for item in pr.get_files())
    review.add_modeline(info.url or ref.web_url)
    LOG.info("writing review to file: %s", output)
    write_changeset(review.changeset, output)


def edit_in_editor(editor: str, path: Path) -> None:
    command = [*shlex.split(editor), str(path)]
    LOG.debug("opening editor: %s", " ".join(command))
    completed = subprocess.run(command, check=False)
    if completed.returncode != 0:
        raise AshError(f"editor exited with status {completed.returncode}")


def confirm_changes(console: Console, changes: list[ReviewChange]) -> bool:
    for index, change in enumerate(changes, start=1):
        render_change(console, index, change)
    return Confirm.ask("Is that what you want to do?", default=True, console=console)


def apply_changes(console: Console, pr: PullRequest, changes: list[ReviewChange]) -> int:
    LOG.debug("applying changes (%d)", len(changes))
    failed = 0
    for index, change in enumerate(changes, start=1):
        console.print(f"({index}/{len(changes)}) applying changes")
        if isinstance(change, ReplyAdded) and not change.parent.id:
            failed += 1
            LOG.error("skipping reply, its parent comment was not created: %s", change.describe())
            continue
        LOG.debug("change payload: %r", change.payload())
        try:
            pr.apply_change(change)
        except (AshError, requests.RequestException) as error:
            failed += 1
            LOG.error("can not apply change: %s", error)
    return EXIT_ERROR if failed else EXIT_OK


def _print_crash(ctx: RunContext, review_file: Path | None) -> None:
    print("", file=sys.stderr)
    print(traceback.format_exc(), file=sys.stderr)
    print("Well, program has crashed. This is probably a bug.", file=sys.stderr)
    print("", file=sys.stderr)
    if review_file is not None:
        print(f"All data you've entered are kept in the file:\n\t{review_file}", file=sys.stderr)
    print(f"Debug log of program execution can be found at:\n\t{ctx.debug_log}", file=sys.stderr)
    print(f"Feel free to open issue or PR on the:\n\t{ISSUES_URL}", file=sys.stderr)


def run_review(args: argparse.Namespace, ctx: RunContext) -> int:
    ref = _pull_request_ref(args.pull_request, ctx.config)
    pr = open_pull_request(ref, ctx.config)
    review = _load_origin(args, pr)

    review_file: Path | None = None
    try:
        if args.input:
            LOG.debug("reading review from file %s", args.input)
            review_file = Path(args.input)
        else:
            review_file = ctx.workdir / REVIEW_FILE_NAME
            if args.output and args.output != "-":
                review_file = Path(args.output)
            _write_review_file(review, pr, ref, review_file)

            if args.output:
                if args.output == "-":
                    ctx.keep_workdir = True
                    print(review_file)
                return EXIT_OK

            editor = ctx.config.editor or os.environ.get("EDITOR", "")
            if not editor:
                ctx.keep_workdir = True
                print(review_file)
                return EXIT_OK
            edit_in_editor(editor, review_file)

        LOG.debug("reading modified review back")
        edited = read_review(review_file.read_text(encoding="utf-8"), is_overview=review.is_overview)
        LOG.debug("comparing old and new reviews")
        changes = review.compare(edited)

        if not changes:
            LOG.info("no changes detected in review file")
            return EXIT_NO_CHANGES

        if args.interactive and not confirm_changes(ctx.console, changes):
            return EXIT_NO_CHANGES

        return apply_changes(ctx.console, pr, changes)
    except AshError as error:
        ctx.keep_workdir = True
        print(f"[error] {error}", file=sys.stderr)
        if review_file is not None:
            print(f"review file is kept at {review_file}", file=sys.stderr)
        return EXIT_ERROR
    except Exception:  # noqa: BLE001
        ctx.keep_workdir = True
        _print_crash(ctx, review_file)
        return EXIT_ERROR


COMMANDS: dict[str, Callable[[argparse.Namespace, RunContext], int]] = {
    "inbox": run_inbox,
    "ls-reviews": run_ls_reviews,
    "ls": run_ls,
    "approve": run_approve,
    "decline": run_decline,
    "merge": run_merge,
    "review": run_review,
}


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = parse_ash_args(argv)
    try:
        config = _merged_config(args)
    except AshError as error:
        print(f"[error] {error}", file=sys.stderr)
        return EXIT_ERROR

    workdir = Path(tempfile.mkdtemp(prefix="ash."))
    ctx = RunContext(config=config, workdir=workdir, console=Console(no_color=config.no_color))
    configure_logging(config.debug, log_file=ctx.debug_log, no_color=config.no_color)
    LOG.debug("cmd line args: %s", " ".join(redact_argv(argv)))

    try:
        return COMMANDS[args.command](args, ctx)
    except (AshError, requests.RequestException, OSError) as error:
        print(f"[error] {error}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        if ctx.keep_workdir:
            LOG.debug("keeping %s", workdir)
        close_log_file(ctx.debug_log)
        if not ctx.keep_workdir:
            shutil.rmtree(workdir, ignore_errors=True)


if __name__ == "__main__":
    raise SystemExit(main())
