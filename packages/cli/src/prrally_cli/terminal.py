"""Terminal collaborator: renders rally progress with rich and asks the user on stdin."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from prrally_core.collaborator import BaseCollaborator, PostKind
from prrally_core.contract import PermissionRequest, ReviewerResult, RevieweeFailed, RevieweeResult, Role
from prrally_core.errors import RallyAborted

_SEVERITY_STYLE = {"info": "blue", "warning": "yellow", "blocking": "red"}
_ACTION_STYLE = {"approve": "green", "request_changes": "red", "comment": "yellow"}


class TerminalCollaborator(BaseCollaborator):
    def __init__(self, console: Console | None = None, show_agent_output: bool = False):
        self.console = console or Console()
        self.show_agent_output = show_agent_output
        self._last_phase = None

    def on_snapshot(self, snapshot) -> None:
        if snapshot.phase is self._last_phase:
            return
        self._last_phase = snapshot.phase
        self.console.print(f"[dim]→ {snapshot.phase.value} (iteration {snapshot.iteration})[/dim]")

    def on_review(self, iteration: int, review: ReviewerResult) -> None:
        style = _ACTION_STYLE.get(review.action.value, "white")
        self.console.print(
            Panel(
                review.summary,
                title=f"Reviewer — iteration {iteration} — [{style}]{review.action.value}[/{style}]",
                expand=False,
            )
        )
        if review.comments:
            table = Table(show_header=True, header_style="bold cyan")
            table.add_column("Severity", width=9)
            table.add_column("Location", max_width=40)
            table.add_column("Comment")
            for c in review.comments:
                sev = _SEVERITY_STYLE.get(c.severity.value, "white")
                table.add_row(f"[{sev}]{c.severity.value}[/{sev}]", f"{c.path}:{c.line}", c.body)
            self.console.print(table)
        for issue in review.blocking_issues:
            self.console.print(f"  [red]✗[/red] {issue}")

    def on_fix(self, iteration: int, fix: RevieweeResult) -> None:
        if isinstance(fix, RevieweeFailed):
            self.console.print(f"[red]Reviewee failed:[/red] {fix.summary}\n{fix.error_details}")
            return
        files = ", ".join(fix.files_modified) or "no files"
        self.console.print(Panel(f"{fix.summary}\n\n[dim]Modified: {files}[/dim]", title="Reviewee", expand=False))

    def on_agent_output(self, role: Role, text: str) -> None:
        if self.show_agent_output:
            self.console.print(f"[dim]{role.value}: {text}[/dim]", highlight=False)

    async def request_permission(self, request: PermissionRequest) -> bool:
        self.console.print(
            Panel(
                f"[bold]{request.action}[/bold]\n\n{request.reason}",
                title="[yellow]Reviewee requests permission[/yellow]",
                expand=False,
            )
        )
        # Prompts block; keep them off the event loop.
        choice = await asyncio.to_thread(
            click.prompt,
            "Grant (y), deny (n) or abort the rally (a)",
            type=click.Choice(["y", "n", "a"]),
            default="n",
        )
        if choice == "a":
            raise RallyAborted("Rally aborted at permission prompt")
        return choice == "y"

    async def request_clarification(self, question: str) -> str | None:
        self.console.print(Panel(question, title="[yellow]Reviewee asks[/yellow]", expand=False))
        answer = await asyncio.to_thread(
            click.prompt,
            "Answer (empty to skip, 'abort' to stop the rally)",
            default="",
            show_default=False,
        )
        answer = answer.strip()
        if answer.lower() == "abort":
            raise RallyAborted("Rally aborted at clarification prompt")
        return answer or None

    async def confirm_post(self, kind: PostKind, body: str) -> bool:
        self.console.print(Panel(body, title=f"[cyan]Post {kind.value} to the pull request?[/cyan]", expand=False))
        choice = await asyncio.to_thread(
            click.prompt,
            "Post (y), skip (n) or abort the rally (a)",
            type=click.Choice(["y", "n", "a"]),
            default="y",
        )
        if choice == "a":
            raise RallyAborted(f"Rally aborted while confirming the {kind.value} post")
        return choice == "y"
