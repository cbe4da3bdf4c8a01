"""The human-facing side of a rally.

RallySession never talks to a terminal or a UI directly. It reports progress to
a collaborator and, when the reviewee needs a human decision, awaits the
collaborator's answer. That await is the only place the driver yields to the
outside world besides the backend process itself.

  - BaseCollaborator: the interface plus no-op notification hooks
  - ChannelCollaborator: answers arrive as commands on an asyncio queue, so a
    UI running in another task can drive the rally without blocking it
  - HeadlessCollaborator: denies every permission, skips every
    clarification and declines to post anything it is not told to (CI, scripting)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Union

from prrally_core.contract import PermissionRequest, ReviewerResult, RevieweeResult, Role
from prrally_core.errors import RallyAborted

if TYPE_CHECKING:
    from prrally_core.session import SessionSnapshot

logger = logging.getLogger(__name__)


class PostKind(str, Enum):
    REVIEW = "review"
    FIX = "fix"


class BaseCollaborator(ABC):
    # ------------------------------------------------------------------ #
    # Notifications (optional)                                             #
    # ------------------------------------------------------------------ #

    def on_snapshot(self, snapshot: SessionSnapshot) -> None:
        """Called after every state transition."""

    def on_review(self, iteration: int, review: ReviewerResult) -> None:
        """Called with every reviewer result, before it is acted on."""

    def on_fix(self, iteration: int, fix: RevieweeResult) -> None:
        """Called when a reviewee turn ends with completed or failed."""

    def on_agent_output(self, role: Role, text: str) -> None:
        """Called with each line of streamed backend output."""

    # ------------------------------------------------------------------ #
    # Decisions (required)                                                 #
    # ------------------------------------------------------------------ #

    @abstractmethod
    async def request_permission(self, request: PermissionRequest) -> bool:
        """Return True to grant, False to deny. Raise RallyAborted to stop."""

    @abstractmethod
    async def request_clarification(self, question: str) -> str | None:
        """Return an answer, or None to skip. Raise RallyAborted to stop."""

    async def confirm_post(self, kind: PostKind, body: str) -> bool:
        """Return True to post body to the pull request. Raise RallyAborted to stop.

        Only asked when auto_post is off. Declines by default.
        """
        return False


class HeadlessCollaborator(BaseCollaborator):
    """Never grants anything, since nobody is there to ask."""

    async def request_permission(self, request: PermissionRequest) -> bool:
        logger.warning("Headless mode: denying permission for %r (%s)", request.action, request.reason)
        return False

    async def request_clarification(self, question: str) -> str | None:
        logger.warning("Headless mode: skipping clarification %r", question)
        return None

    async def confirm_post(self, kind: PostKind, body: str) -> bool:
        logger.info("Headless mode: not posting %s (auto_post is off)", kind.value)
        return False


# ---------------------------------------------------------------------------
# Channel-based collaborator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionResponse:
    granted: bool


@dataclass(frozen=True)
class ClarificationResponse:
    answer: str


@dataclass(frozen=True)
class SkipClarification:
    pass


@dataclass(frozen=True)
class PostConfirmResponse:
    post: bool


@dataclass(frozen=True)
class Abort:
    pass


Command = Union[PermissionResponse, ClarificationResponse, SkipClarification, PostConfirmResponse, Abort]


@dataclass(frozen=True)
class SnapshotEvent:
    snapshot: SessionSnapshot


@dataclass(frozen=True)
class ReviewEvent:
    iteration: int
    review: ReviewerResult


@dataclass(frozen=True)
class FixEvent:
    iteration: int
    fix: RevieweeResult


@dataclass(frozen=True)
class AgentOutputEvent:
    role: Role
    text: str


@dataclass(frozen=True)
class PermissionRequested:
    request: PermissionRequest


@dataclass(frozen=True)
class ClarificationRequested:
    question: str


@dataclass(frozen=True)
class PostConfirmRequested:
    kind: PostKind
    body: str


Event = Union[
    SnapshotEvent,
    ReviewEvent,
    FixEvent,
    AgentOutputEvent,
    PermissionRequested,
    ClarificationRequested,
    PostConfirmRequested,
]


class ChannelCollaborator(BaseCollaborator):
    """Publishes events to ``events`` and takes answers from ``commands``.

    A command that does not answer the pending request (a leftover permission
    answer while a clarification is pending, say) is logged and dropped.
    """

    def __init__(self):
        self.events: asyncio.Queue[Event] = asyncio.Queue()
        self.commands: asyncio.Queue[Command] = asyncio.Queue()

    def send(self, command: Command) -> None:
        self.commands.put_nowait(command)

    def on_snapshot(self, snapshot: SessionSnapshot) -> None:
        self.events.put_nowait(SnapshotEvent(snapshot))

    def on_review(self, iteration: int, review: ReviewerResult) -> None:
        self.events.put_nowait(ReviewEvent(iteration, review))

    def on_fix(self, iteration: int, fix: RevieweeResult) -> None:
        self.events.put_nowait(FixEvent(iteration, fix))

    def on_agent_output(self, role: Role, text: str) -> None:
        self.events.put_nowait(AgentOutputEvent(role, text))

    async def request_permission(self, request: PermissionRequest) -> bool:
        self.events.put_nowait(PermissionRequested(request))
        command = await self._wait_for(PermissionResponse)
        return command.granted

    async def request_clarification(self, question: str) -> str | None:
        self.events.put_nowait(ClarificationRequested(question))
        command = await self._wait_for(ClarificationResponse, SkipClarification)
        if isinstance(command, SkipClarification):
            return None
        return command.answer

    async def confirm_post(self, kind: PostKind, body: str) -> bool:
        self.events.put_nowait(PostConfirmRequested(kind, body))
        command = await self._wait_for(PostConfirmResponse)
        return command.post

    async def _wait_for(self, *expected: type) -> Command:
        while True:
            command = await self.commands.get()
            if isinstance(command, Abort):
                raise RallyAborted("Rally aborted by user")
            if isinstance(command, expected):
                return command
            logger.warning("Ignoring stale command %r", command)
