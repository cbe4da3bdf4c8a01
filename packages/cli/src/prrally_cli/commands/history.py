"""history command — display past rallies from the store."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

console = Console()

_OUTCOME_STYLE = {
    "approved": "green",
    "iteration_limit_reached": "yellow",
    "blocked": "yellow",
    "timed_out": "red",
    "failed": "red",
}


@click.command("history")
@click.option("--repo", required=True, help="GitHub repository (owner/name), or the directory name for local rallies.")
@click.option("--pr", "pr_number", type=int, default=None, help="Filter by PR number (0 for local rallies).")
@click.option("--limit", default=20, show_default=True, help="Maximum number of records to show.")
@click.pass_context
def history_cmd(ctx, repo: str, pr_number: int | None, limit: int):
    """Show past rallies for a repository."""
    from prrally_store.noop import NoOpStore

    store = ctx.obj.get("store") if ctx.obj else None
    if store is None or isinstance(store, NoOpStore):
        raise click.UsageError("No store configured. Add 'store: sqlite' to .prrally.yml to keep rally history.")

    records = store.list_rallies(repo, pr_number=pr_number)
    if not records:
        console.print("[yellow]No rally records found.[/yellow]")
        return

    # Most recent first, capped at --limit.
    records = list(reversed(records))[:limit]

    table = Table(title=f"Rally History — {repo}", show_header=True, header_style="bold cyan")
    table.add_column("PR", style="bold", width=6)
    table.add_column("Title", max_width=40)
    table.add_column("Agents", width=16)
    table.add_column("Outcome", width=24)
    table.add_column("Iterations", justify="right", width=10)
    table.add_column("Blocking", justify="right", width=8)
    table.add_column("Started At", width=20)

    for r in records:
        style = _OUTCOME_STYLE.get(r.outcome, "white")
        table.add_row(
            f"#{r.pr_number}" if r.pr_number else "local",
            r.pr_title[:40] if r.pr_title else "",
            f"{r.reviewer}/{r.reviewee}",
            f"[{style}]{r.outcome}[/{style}]",
            str(r.iterations),
            str(len(r.blocking_issues)),
            r.started_at[:19].replace("T", " "),
        )

    console.print(table)
