"""Rally history data models.

Decoupled from prrally_core so the store never imports the engine. The CLI
maps a finished session onto a RallyRecord before calling store.save().
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CommentRecord:
    """A single reviewer comment persisted to the store."""

    file: str
    line: int
    severity: str
    comment: str


@dataclass
class RallyRecord:
    repo: str
    pr_number: int  # 0 for local rallies
    pr_title: str
    reviewer: str  # backend name, e.g. "claude"
    reviewee: str
    head_sha: str
    started_at: str  # ISO-8601 UTC timestamp
    finished_at: str
    outcome: str  # terminal phase, e.g. "approved" | "iteration_limit_reached"
    iterations: int
    summary: str
    blocking_issues: list[str] = field(default_factory=list)
    comments: list[CommentRecord] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.outcome == "approved"
