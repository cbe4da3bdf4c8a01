"""Session state machine: drives reviewer and reviewee rounds to a terminal phase.

One RallySession owns one Session. A round looks like this:

    REVIEWER_TURN ─ approve, no blockers ──────────────────────────► APPROVED
         │ otherwise
         ▼
    REVIEWEE_TURN ⇄ NEGOTIATION_PENDING     (permission / clarification)
         │ completed                 │ failed ───────────────────► FAILED
         ▼
    RE_REVIEW_TURN ─ approve, no blockers ─────────────────────────► APPROVED
         │ otherwise: iteration += 1
         ├─ iteration >= max_iterations ─────────────► ITERATION_LIMIT_REACHED
         └─ back to REVIEWEE_TURN with the re-review's findings

A blocking issue always wins over a declared approval. Negotiation never
advances the iteration counter. When a publisher is attached, every review and
every completed fix is offered to the pull request as it happens. Every error is mapped to a terminal phase, so
run() always returns an Outcome.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from prrally_core.contract import (
    ReviewAction,
    ReviewComment,
    ReviewerResult,
    RevieweeCompleted,
    RevieweeFailed,
    RevieweeNeedsPermission,
    RevieweeResult,
    Role,
)
from prrally_core.errors import (
    AgentTimeoutError,
    DecodeError,
    InvalidTransition,
    NegotiationLoopError,
    PermissionBlockedError,
    ProcessError,
    RallyAborted,
    RallyError,
)
from prrally_core.harness import ExecutionHarness
from prrally_core.negotiation import NegotiationKind, NegotiationTracker, resolve_clarification, resolve_permission
from prrally_core.prompts import (
    PromptLoader,
    TemplateKind,
    format_blocking_issues,
    format_changes_summary,
    format_comments,
    format_external_comments,
    git_operations_section,
    render,
)

if TYPE_CHECKING:
    from prrally_core.adapters.base import BaseAdapter
    from prrally_core.collaborator import BaseCollaborator
    from prrally_core.config import RallyConfig
    from prrally_core.diff import BaseDiffProvider, DiffSnapshot
    from prrally_core.gh.publisher import PullRequestPublisher
    from prrally_core.gh.pull_request import ExternalComment

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    CREATED = "created"
    REVIEWER_TURN = "reviewer_turn"
    REVIEWEE_TURN = "reviewee_turn"
    NEGOTIATION_PENDING = "negotiation_pending"
    RE_REVIEW_TURN = "re_review_turn"
    APPROVED = "approved"
    BLOCKED = "blocked"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset(
    {Phase.APPROVED, Phase.BLOCKED, Phase.ITERATION_LIMIT_REACHED, Phase.TIMED_OUT, Phase.FAILED}
)


@dataclass(frozen=True)
class Outcome:
    phase: Phase
    summary: str
    iterations: int
    reason: str = ""  # error details, timeout message, or "aborted"

    @property
    def approved(self) -> bool:
        return self.phase is Phase.APPROVED


@dataclass(frozen=True)
class SessionSnapshot:
    """What the collaborator sees after each transition."""

    session_id: str
    phase: Phase
    iteration: int
    comments: tuple[ReviewComment, ...]
    blocking_issues: tuple[str, ...]
    outcome: Optional[Outcome] = None


@dataclass
class Session:
    snapshot: DiffSnapshot
    max_iterations: int
    per_call_timeout: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    current_snapshot: Optional[DiffSnapshot] = None
    iteration: int = 0
    comments: list[ReviewComment] = field(default_factory=list)
    blocking_issues: list[str] = field(default_factory=list)
    reviews: list[ReviewerResult] = field(default_factory=list)
    fixes: list[RevieweeResult] = field(default_factory=list)
    phase: Phase = Phase.CREATED
    outcome: Optional[Outcome] = None

    def __post_init__(self):
        if self.current_snapshot is None:
            self.current_snapshot = self.snapshot

    def transition(self, phase: Phase) -> None:
        if self.phase.is_terminal:
            raise InvalidTransition(f"Cannot move from terminal phase {self.phase.value} to {phase.value}")
        logger.debug("Session %s: %s -> %s", self.id[:8], self.phase.value, phase.value)
        self.phase = phase

    def finish(self, phase: Phase, summary: str, reason: str = "") -> Outcome:
        if not phase.is_terminal:
            raise InvalidTransition(f"{phase.value} is not a terminal phase")
        self.transition(phase)
        self.outcome = Outcome(phase=phase, summary=summary, iterations=self.iteration, reason=reason)
        return self.outcome

    def record_review(self, review: ReviewerResult) -> None:
        self.reviews.append(review)
        self.comments.extend(review.comments)
        self.blocking_issues.extend(review.blocking_issues)

    def view(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.id,
            phase=self.phase,
            iteration=self.iteration,
            comments=tuple(self.comments),
            blocking_issues=tuple(self.blocking_issues),
            outcome=self.outcome,
        )


class RallySession:
    def __init__(
        self,
        config: RallyConfig,
        snapshot: DiffSnapshot,
        reviewer_adapter: BaseAdapter,
        reviewee_adapter: BaseAdapter,
        collaborator: BaseCollaborator,
        diff_provider: BaseDiffProvider | None = None,
        loader: PromptLoader | None = None,
        harness: ExecutionHarness | None = None,
        publisher: PullRequestPublisher | None = None,
    ):
        self.config = config
        self.session = Session(
            snapshot=snapshot,
            max_iterations=config.max_iterations,
            per_call_timeout=config.timeout_secs,
        )
        self.reviewer = reviewer_adapter
        self.reviewee = reviewee_adapter
        self.collaborator = collaborator
        self.diff_provider = diff_provider
        self.publisher = publisher
        self.loader = loader or PromptLoader(config.prompt_dir, project_root=snapshot.working_dir or ".")
        self.harness = harness or ExecutionHarness(config.timeout_secs, snapshot.working_dir, self.loader)
        self.tracker = NegotiationTracker()
        self._task: asyncio.Task | None = None
        self._cancel_requested = False

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def run(self) -> Outcome:
        """Drive the rally to a terminal phase and return its outcome."""
        self._task = asyncio.current_task()
        try:
            if self._cancel_requested:
                raise asyncio.CancelledError()
            return await self._drive()
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            if self._task is not None and hasattr(self._task, "uncancel"):
                self._task.uncancel()
            logger.warning("Rally aborted during %s", self.session.phase.value)
            return self._finish(Phase.FAILED, "Rally aborted by user", reason="aborted")
        except AgentTimeoutError as e:
            logger.error("Rally timed out: %s", e)
            return self._finish(Phase.TIMED_OUT, f"Timed out: {e}", reason=str(e))
        except RallyAborted as e:
            logger.warning("Rally blocked: %s", e)
            return self._finish(Phase.BLOCKED, "Rally stopped by user", reason=str(e))
        except (DecodeError, ProcessError, NegotiationLoopError, PermissionBlockedError) as e:
            logger.error("Rally failed: %s", e)
            return self._finish(Phase.FAILED, f"{type(e).__name__}: {e}", reason=str(e))
        except RallyError as e:
            logger.error("Rally failed: %s", e)
            return self._finish(Phase.FAILED, str(e), reason=str(e))
        finally:
            self.reviewer.cleanup()
            self.reviewee.cleanup()

    def cancel(self) -> None:
        """Abort the rally. The in-flight backend process is killed."""
        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def state(self) -> SessionSnapshot:
        return self.session.view()

    # ------------------------------------------------------------------ #
    # Protocol                                                             #
    # ------------------------------------------------------------------ #

    async def _drive(self) -> Outcome:
        session = self.session
        snapshot = session.snapshot

        self._transition(Phase.REVIEWER_TURN)
        review = await self._review(
            TemplateKind.INITIAL_REVIEW,
            {
                "repo": snapshot.repo,
                "pr_number": snapshot.pr_number,
                "pr_title": snapshot.title,
                "pr_body": snapshot.body or "(no description)",
                "diff": snapshot.diff,
                "iteration": 1,
            },
            resume=False,
        )

        while True:
            if review.is_approval:
                return self._finish(Phase.APPROVED, review.summary)
            if review.blocking_issues and review.action is ReviewAction.APPROVE:
                logger.warning("Reviewer approved with %d blocking issue(s); treating as request_changes",
                               len(review.blocking_issues))

            session.record_review(review)
            fix = await self._reviewee_turn(review)
            if isinstance(fix, RevieweeFailed):
                return self._finish(Phase.FAILED, fix.summary, reason=fix.error_details)

            self._transition(Phase.RE_REVIEW_TURN)
            current = await self._refresh_snapshot()
            review = await self._review(
                TemplateKind.RE_REVIEW,
                {
                    "repo": current.repo,
                    "pr_number": current.pr_number,
                    "pr_title": current.title,
                    "iteration": session.iteration + 1,
                    "blocking_issues": format_blocking_issues(review.blocking_issues),
                    "changes_summary": format_changes_summary(fix),
                    "updated_diff": current.diff or "(no changes)",
                },
                resume=True,
            )
            session.iteration += 1
            logger.info("Iteration %d/%d concluded", session.iteration, session.max_iterations)

            if review.is_approval:
                return self._finish(Phase.APPROVED, review.summary)
            if session.iteration >= session.max_iterations:
                session.record_review(review)
                return self._finish(
                    Phase.ITERATION_LIMIT_REACHED,
                    f"Reached max iterations ({session.max_iterations}) without approval. {review.summary}",
                )

    async def _review(self, kind: TemplateKind, variables: dict, resume: bool) -> ReviewerResult:
        prompt = render(kind, variables, self.loader)
        review = await self.harness.call(self.reviewer, Role.REVIEWER, prompt, resume=resume)
        logger.info(
            "Reviewer: %s (%d comments, %d blocking)",
            review.action.value,
            len(review.comments),
            len(review.blocking_issues),
        )
        self.collaborator.on_review(self.session.iteration + 1, review)
        if self.publisher is not None:
            await self.publisher.publish_review(review)
        return review

    async def _reviewee_turn(self, review: ReviewerResult) -> RevieweeResult:
        """Run the reviewee until it completes or fails, resolving negotiations on the way."""
        session = self.session
        self._transition(Phase.REVIEWEE_TURN)
        self.tracker.reset()
        prompt = render(
            TemplateKind.FIX_REQUEST,
            {
                "repo": session.snapshot.repo,
                "pr_number": session.snapshot.pr_number,
                "pr_title": session.snapshot.title,
                "iteration": session.iteration + 1,
                "review_action": review.action.value,
                "review_summary": review.summary,
                "review_comments": format_comments(review.comments),
                "blocking_issues": format_blocking_issues(review.blocking_issues),
                "external_comments": format_external_comments(await self._external_comments()),
                "git_operations": git_operations_section(session.snapshot.local_mode),
            },
            self.loader,
        )
        resume = session.iteration > 0

        while True:
            result = await self.harness.call(self.reviewee, Role.REVIEWEE, prompt, resume=resume)
            logger.info("Reviewee: %s", result.status.value)

            if isinstance(result, (RevieweeCompleted, RevieweeFailed)):
                self.tracker.reset()
                session.fixes.append(result)
                self.collaborator.on_fix(session.iteration + 1, result)
                if self.publisher is not None:
                    await self.publisher.publish_fix(session.iteration + 1, result)
                return result

            self._transition(Phase.NEGOTIATION_PENDING)
            if isinstance(result, RevieweeNeedsPermission):
                self.tracker.record(NegotiationKind.PERMISSION)
                prompt, _ = await resolve_permission(
                    self.collaborator,
                    result.permission_request,
                    session.snapshot.local_mode,
                    adapter=self.reviewee,
                    loader=self.loader,
                )
            else:
                self.tracker.record(NegotiationKind.CLARIFICATION)
                prompt = await resolve_clarification(self.collaborator, result.question, loader=self.loader)
            resume = True
            self._transition(Phase.REVIEWEE_TURN)

    async def _external_comments(self) -> list[ExternalComment]:
        if self.diff_provider is None or self.session.snapshot.local_mode:
            return []
        try:
            comments = await asyncio.to_thread(self.diff_provider.external_comments)
        except Exception as e:
            logger.warning("Failed to fetch external comments: %s", e)
            return []
        if comments:
            logger.info("Fetched %d external bot comment(s)", len(comments))
        return comments

    async def _refresh_snapshot(self) -> DiffSnapshot:
        session = self.session
        if self.diff_provider is None:
            return session.current_snapshot
        try:
            session.current_snapshot = await asyncio.to_thread(self.diff_provider.refresh, session.current_snapshot)
        except Exception as e:
            logger.warning("Failed to refresh diff, re-reviewing the previous one: %s", e)
        return session.current_snapshot

    # ------------------------------------------------------------------ #
    # Transitions                                                          #
    # ------------------------------------------------------------------ #

    def _transition(self, phase: Phase) -> None:
        self.session.transition(phase)
        self.collaborator.on_snapshot(self.session.view())

    def _finish(self, phase: Phase, summary: str, reason: str = "") -> Outcome:
        outcome = self.session.finish(phase, summary, reason)
        logger.info("Rally finished: %s after %d iteration(s)", phase.value, outcome.iterations)
        self.collaborator.on_snapshot(self.session.view())
        return outcome
