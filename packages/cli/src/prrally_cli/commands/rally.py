"""rally command — let a reviewer and a reviewee agent iterate until approval."""

from __future__ import annotations

import asyncio
import json
import signal
from datetime import datetime, timezone

import click
from rich.console import Console

from prrally_core.adapters import create_adapter
from prrally_core.collaborator import HeadlessCollaborator
from prrally_core.config import SUPPORTED_AGENTS, RallyConfig
from prrally_core.diff import GitHubDiffProvider, LocalDiffProvider
from prrally_core.errors import ConfigError, RallyError
from prrally_core.gh.publisher import PullRequestPublisher
from prrally_core.gh.pull_request import get_pull_requests, get_repo
from prrally_core.session import Outcome, RallySession
from prrally_store.models import CommentRecord, RallyRecord

from prrally_cli.terminal import TerminalCollaborator

console = Console()

_OUTCOME_STYLE = {"approved": "green", "iteration_limit_reached": "yellow", "blocked": "yellow"}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _session_to_record(rally: RallySession, rally_config: RallyConfig, started_at: str) -> RallyRecord:
    """Map a finished RallySession to a RallyRecord for the store.

    The CLI owns this mapping: prrally_core has no store knowledge and
    prrally_store has no core knowledge.
    """
    session = rally.session
    snapshot = session.snapshot
    return RallyRecord(
        repo=snapshot.repo,
        pr_number=snapshot.pr_number,
        pr_title=snapshot.title,
        reviewer=rally_config.reviewer,
        reviewee=rally_config.reviewee,
        head_sha=snapshot.head_sha,
        started_at=started_at,
        finished_at=_utc_now(),
        outcome=session.outcome.phase.value,
        iterations=session.outcome.iterations,
        summary=session.outcome.summary,
        blocking_issues=list(session.blocking_issues),
        comments=[
            CommentRecord(file=c.path, line=c.line, severity=c.severity.value, comment=c.body)
            for c in session.comments
        ],
    )


def _headless_summary(rally: RallySession) -> dict:
    session = rally.session
    outcome = session.outcome
    return {
        "outcome": outcome.phase.value,
        "approved": outcome.approved,
        "iterations": outcome.iterations,
        "summary": outcome.summary,
        "reason": outcome.reason,
        "blocking_issues": list(session.blocking_issues),
        "comments": [
            {"path": c.path, "line": c.line, "severity": c.severity.value, "body": c.body} for c in session.comments
        ],
    }


async def _drive(rally: RallySession) -> Outcome:
    """Run the rally, turning Ctrl-C into a cooperative cancel."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, rally.cancel)
    except (NotImplementedError, RuntimeError):
        # No signal handlers on this platform / outside the main thread.
        pass
    try:
        return await rally.run()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


@click.command("rally")
@click.option("--repo", default=None, help="GitHub repository in owner/name format.")
@click.option(
    "--pr",
    "pr_number",
    type=int,
    default=None,
    help="Pull request number. Omit to list open PRs interactively.",
)
@click.option("--local", "local_mode", is_flag=True, help="Review the local working-tree diff instead of a PR.")
@click.option(
    "--working-dir",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help="Checkout the agents work in.",
)
@click.option("--reviewer", type=click.Choice(SUPPORTED_AGENTS), default=None, help="Reviewer backend. Overrides config file.")
@click.option("--reviewee", type=click.Choice(SUPPORTED_AGENTS), default=None, help="Reviewee backend. Overrides config file.")
@click.option("--max-iterations", type=int, default=None, help="Maximum review rounds. Overrides config file.")
@click.option("--timeout", "timeout_secs", type=int, default=None, help="Per-call timeout in seconds. Overrides config file.")
@click.option(
    "--auto-post/--no-auto-post",
    default=None,
    help="Post reviews and fix summaries to the PR. Overrides config file.",
)
@click.option("--stream", "stream_output", is_flag=True, help="Print the agents' streamed output as it arrives.")
@click.option(
    "--headless",
    is_flag=True,
    help="Non-interactive: deny all permissions, skip all questions, print a JSON summary.",
)
@click.pass_context
def rally_cmd(
    ctx,
    repo: str | None,
    pr_number: int | None,
    local_mode: bool,
    working_dir: str,
    reviewer: str | None,
    reviewee: str | None,
    max_iterations: int | None,
    timeout_secs: int | None,
    auto_post: bool | None,
    stream_output: bool,
    headless: bool,
):
    """Run a review rally on a pull request or a local diff.

    The reviewer agent reviews the change; the reviewee agent fixes what it
    finds, working in --working-dir. This repeats until the reviewer approves
    or max_iterations is reached.

    \b
    Required on PATH:
      claude   Claude Code CLI (for backend "claude")
      codex    Codex CLI (for backend "codex")
    """
    from prrally_core.config import load_config

    obj = ctx.obj or {}
    try:
        config = load_config(
            obj.get("config_path", ".prrally.yml"),
            cli_overrides={
                "reviewer": reviewer,
                "reviewee": reviewee,
                "max_iterations": max_iterations,
                "timeout_secs": timeout_secs,
                "auto_post": auto_post,
            },
        )
        if obj.get("config", {}).get("github_token"):
            config["github_token"] = obj["config"]["github_token"]
        rally_config = RallyConfig.from_dict(config)
    except ConfigError as e:
        raise click.UsageError(str(e))

    if local_mode:
        if repo or pr_number is not None:
            raise click.UsageError("--local cannot be combined with --repo/--pr.")
        provider = LocalDiffProvider(working_dir)
    else:
        if not repo:
            raise click.UsageError("Provide --repo (and --pr), or use --local.")
        token = config.get("github_token")
        if not token:
            raise click.UsageError(
                "No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.\n"
                "Create a token at https://github.com/settings/tokens"
            )
        this_repo = get_repo(repo, token=token)
        if pr_number is None:
            if headless:
                raise click.UsageError("--pr is required with --headless.")
            prs = list(get_pull_requests(this_repo))
            if not prs:
                console.print("[yellow]No open pull requests found.[/yellow]")
                return
            console.print("\nOpen pull requests:")
            for pr in prs:
                console.print(f"  [bold]#{pr.number}[/bold]  {pr.title}")
            pr_number = click.prompt("\nEnter the pull request number", type=int)
        provider = GitHubDiffProvider(repo, pr_number, repo_obj=this_repo, working_dir=working_dir)

    try:
        snapshot = provider.snapshot()
    except RallyError as e:
        raise click.ClickException(str(e))

    collaborator = HeadlessCollaborator() if headless else TerminalCollaborator(console, show_agent_output=stream_output)
    publisher = None if local_mode else PullRequestPublisher(provider.pr, collaborator, auto_post=rally_config.auto_post)

    reviewer_adapter = create_adapter(rally_config.reviewer, rally_config, collaborator.on_agent_output)
    reviewee_adapter = create_adapter(rally_config.reviewee, rally_config, collaborator.on_agent_output)

    if not headless:
        target = "local diff" if local_mode else f"{repo}#{pr_number}"
        console.print(
            f"\n[bold]Rally on {target}[/bold] — reviewer: {rally_config.reviewer}, "
            f"reviewee: {rally_config.reviewee}, max iterations: {rally_config.max_iterations}\n"
        )

    rally = RallySession(
        rally_config,
        snapshot,
        reviewer_adapter,
        reviewee_adapter,
        collaborator,
        diff_provider=provider,
        publisher=publisher,
    )
    started_at = _utc_now()
    outcome = asyncio.run(_drive(rally))

    store = obj.get("store")
    if store is not None:
        store.save(_session_to_record(rally, rally_config, started_at))

    if headless:
        click.echo(json.dumps(_headless_summary(rally), indent=2))
        if not outcome.approved:
            ctx.exit(1)
        return

    style = _OUTCOME_STYLE.get(outcome.phase.value, "red")
    console.print(f"\n[{style}]Rally finished: {outcome.phase.value}[/{style}] after {outcome.iterations} iteration(s)")
    console.print(outcome.summary)
