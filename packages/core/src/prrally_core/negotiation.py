"""Permission and clarification sub-dialogs inside a reviewee turn.

When the reviewee stops to ask for something, the engine hands the question to
the collaborator, waits for the answer and turns it into the follow-up prompt
for the same reviewee. Nothing is ever granted automatically.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from prrally_core.contract import PermissionRequest, Role
from prrally_core.errors import NegotiationLoopError, PermissionBlockedError
from prrally_core.prompts import TemplateKind, render
from prrally_core.utils.git_guard import check_blocked_git_operation

if TYPE_CHECKING:
    from prrally_core.adapters.base import BaseAdapter
    from prrally_core.collaborator import BaseCollaborator
    from prrally_core.prompts import PromptLoader

logger = logging.getLogger(__name__)

MAX_NEGOTIATION_REPEATS = 3


class NegotiationKind(str, Enum):
    PERMISSION = "permission"
    CLARIFICATION = "clarification"


class NegotiationTracker:
    """Counts requests per kind within one reviewee turn.

    Counts only drop back to zero through reset(), when the turn ends with
    completed or failed, so alternating kinds still hit the limit.
    """

    def __init__(self, limit: int = MAX_NEGOTIATION_REPEATS):
        self.limit = limit
        self.counts: dict[NegotiationKind, int] = {}

    def record(self, kind: NegotiationKind) -> None:
        """Count one request; raise NegotiationLoopError when its kind hits the limit."""
        count = self.counts.get(kind, 0) + 1
        self.counts[kind] = count
        if count >= self.limit:
            raise NegotiationLoopError(kind.value, count)

    def reset(self) -> None:
        self.counts.clear()


async def resolve_permission(
    collaborator: BaseCollaborator,
    request: PermissionRequest,
    local_mode: bool,
    adapter: BaseAdapter | None = None,
    loader: PromptLoader | None = None,
) -> tuple[str, bool]:
    """Ask the collaborator about request; return the follow-up prompt and the decision."""
    logger.info("Reviewee requests permission: %s (%s)", request.action, request.reason)
    granted = await collaborator.request_permission(request)
    if not granted:
        logger.info("Permission denied: %s", request.action)
        return render(TemplateKind.PERMISSION_DENIED, {"action": request.action, "reason": request.reason}, loader), False

    if local_mode:
        reason = check_blocked_git_operation(request.action)
        if reason:
            logger.error("Granted permission blocked in local mode: %s", reason)
            raise PermissionBlockedError(f"Permission for {request.action!r} is not allowed in local mode: {reason}")

    if adapter is not None:
        adapter.allow_tool(Role.REVIEWEE, request.action)
    logger.info("Permission granted: %s", request.action)
    return render(TemplateKind.PERMISSION_GRANTED, {"action": request.action}, loader), True


async def resolve_clarification(
    collaborator: BaseCollaborator,
    question: str,
    loader: PromptLoader | None = None,
) -> str:
    """Ask the collaborator question; return the follow-up prompt."""
    logger.info("Reviewee asks: %s", question)
    answer = await collaborator.request_clarification(question)
    if answer is None:
        return render(TemplateKind.CLARIFICATION_SKIPPED, {"question": question}, loader)
    return render(TemplateKind.CLARIFICATION_ANSWERED, {"question": question, "answer": answer}, loader)
