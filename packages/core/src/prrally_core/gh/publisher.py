from __future__ import annotations

import asyncio
import logging

import requests
from github import GithubException

from prrally_core.collaborator import BaseCollaborator, PostKind
from prrally_core.contract import ReviewAction, ReviewerResult, RevieweeCompleted, RevieweeResult
from prrally_core.gh.pull_request import post_comment, submit_review
from prrally_core.prompts import format_blocking_issues, format_comments

logger = logging.getLogger(__name__)

REVIEWER_PREFIX = "[prrally - Reviewer]"
REVIEWEE_PREFIX = "[prrally - Reviewee]"

# PyGithub surfaces API errors as GithubException and transport errors from requests as is.
PUBLISH_ERRORS = (GithubException, requests.RequestException)


def format_review_body(review: ReviewerResult) -> str:
    parts = [f"{REVIEWER_PREFIX}\n\n{review.summary}"]
    if review.blocking_issues:
        parts.append(f"**Blocking issues**\n{format_blocking_issues(review.blocking_issues)}")
    if review.comments:
        parts.append(f"**Comments**\n{format_comments(review.comments)}")
    return "\n\n".join(parts)


def format_fix_body(iteration: int, fix: RevieweeResult) -> str:
    files = "\n".join(f"- `{path}`" for path in fix.files_modified) or "- (none)"
    return f"{REVIEWEE_PREFIX}\n\n**Iteration {iteration}**: {fix.summary}\n\n**Files modified**\n{files}"


class PullRequestPublisher:
    """Posts reviews and completed fixes to the pull request.

    With auto_post off, each post is offered to the collaborator first and only
    goes out when it agrees. Publishing is best effort: a failed post is logged
    and the rally goes on. A collaborator abort (RallyAborted) propagates.
    """

    def __init__(self, pr, collaborator: BaseCollaborator, auto_post: bool = False):
        self.pr = pr
        self.collaborator = collaborator
        self.auto_post = auto_post

    async def publish_review(self, review: ReviewerResult) -> bool:
        """Post review as a PR review. Return True when something was posted."""
        body = format_review_body(review)
        if not await self._confirmed(PostKind.REVIEW, body):
            return False
        # Blocking issues override a declared approval here too.
        action = review.action
        if action is ReviewAction.APPROVE and not review.is_approval:
            action = ReviewAction.REQUEST_CHANGES
        try:
            await asyncio.to_thread(submit_review, self.pr, action, body)
            return True
        except PUBLISH_ERRORS as e:
            if action is not ReviewAction.APPROVE or not isinstance(e, GithubException):
                logger.warning("Failed to post review to PR #%s: %s", self.pr.number, e)
                return False
            # GitHub refuses approval of your own pull request.
            logger.info("APPROVE rejected for PR #%s (%s); posting as COMMENT", self.pr.number, e)
        try:
            await asyncio.to_thread(submit_review, self.pr, ReviewAction.COMMENT, body)
            return True
        except PUBLISH_ERRORS as e:
            logger.warning("Failed to post review to PR #%s: %s", self.pr.number, e)
            return False

    async def publish_fix(self, iteration: int, fix: RevieweeResult) -> bool:
        """Post a completed fix summary as a PR comment. Failed turns are never posted."""
        if not isinstance(fix, RevieweeCompleted):
            return False
        body = format_fix_body(iteration, fix)
        if not await self._confirmed(PostKind.FIX, body):
            return False
        try:
            await asyncio.to_thread(post_comment, self.pr, body)
            return True
        except PUBLISH_ERRORS as e:
            logger.warning("Failed to post fix summary to PR #%s: %s", self.pr.number, e)
            return False

    async def _confirmed(self, kind: PostKind, body: str) -> bool:
        if self.auto_post:
            return True
        if await self.collaborator.confirm_post(kind, body):
            return True
        logger.info("Skipped posting %s to PR #%s", kind.value, self.pr.number)
        return False
