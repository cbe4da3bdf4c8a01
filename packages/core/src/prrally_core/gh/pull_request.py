from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import requests
from github import Github, GithubException

from prrally_core.contract import ReviewAction

logger = logging.getLogger(__name__)

_REVIEW_EVENTS = {
    ReviewAction.APPROVE: "APPROVE",
    ReviewAction.REQUEST_CHANGES: "REQUEST_CHANGES",
    ReviewAction.COMMENT: "COMMENT",
}

BOT_SUFFIXES = ("[bot]",)
BOT_LOGINS = frozenset({"github-actions", "dependabot"})
MAX_EXTERNAL_COMMENTS = 20


@dataclass(frozen=True)
class ExternalComment:
    """A comment left on the pull request by an automated reviewer (Copilot, CodeRabbit, ...)."""

    source: str
    body: str
    path: Optional[str] = None
    line: Optional[int] = None


def get_repo(repo_name: str, token: str | None):
    return Github(token).get_repo(repo_name)


def get_pull(repo, pr_number: int):
    return repo.get_pull(pr_number)


def get_pull_requests(repo, state: str = "open"):
    return repo.get_pulls(state=state)


def get_diff(pr):
    return pr.get_files()


def submit_review(pr, action: ReviewAction, body: str):
    """Post a review with the GitHub event matching the reviewer's action."""
    return pr.create_review(body=body, event=_REVIEW_EVENTS[action])


def post_comment(pr, body: str):
    """Post a plain conversation comment (not a review) on the pull request."""
    return pr.create_issue_comment(body)


def is_bot_user(login: str | None) -> bool:
    if not login:
        return False
    return login.endswith(BOT_SUFFIXES) or login in BOT_LOGINS


def fetch_external_comments(pr, limit: int = MAX_EXTERNAL_COMMENTS) -> list[ExternalComment]:
    """Collect bot comments from the diff (inline) and the conversation, capped at limit.

    Either listing failing is logged and skipped; the other one still counts.
    """
    comments: list[ExternalComment] = []

    try:
        for c in pr.get_review_comments():
            login = c.user.login if c.user else None
            if is_bot_user(login):
                comments.append(ExternalComment(source=login, body=c.body or "", path=c.path, line=c.line))
    except (GithubException, requests.RequestException) as e:
        logger.warning("Could not fetch review comments for PR #%s: %s", pr.number, e)

    try:
        for c in pr.get_issue_comments():
            login = c.user.login if c.user else None
            if is_bot_user(login):
                comments.append(ExternalComment(source=login, body=c.body or ""))
    except (GithubException, requests.RequestException) as e:
        logger.warning("Could not fetch discussion comments for PR #%s: %s", pr.number, e)

    return comments[:limit]
