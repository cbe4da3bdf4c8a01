"""Prompt templates and their rendering.

Templates are plain Markdown files with ``{{name}}`` placeholders. Teams can
override any of them without touching the package; resolution order (highest
priority first):

  1. ``.prrally/prompts/<kind>.md`` in the project being reviewed
  2. ``prompt_dir`` from .prrally.yml
  3. ``$XDG_CONFIG_HOME/prrally/prompts/<kind>.md`` (``~/.config`` by default)
  4. the built-in template shipped with prrally_core

Rendering is pure: it never touches the session, and a missing required
variable is reported instead of being replaced with an empty string.
"""

from __future__ import annotations

import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from prrally_core.errors import PromptVariableError

if TYPE_CHECKING:
    from prrally_core.contract import ReviewComment, RevieweeResult
    from prrally_core.gh.pull_request import ExternalComment

logger = logging.getLogger(__name__)

BUILTIN_TEMPLATES_DIR = Path(__file__).parent / "templates"
LOCAL_PROMPTS_DIR = Path(".prrally") / "prompts"


class TemplateKind(str, Enum):
    INITIAL_REVIEW = "initial_review"
    FIX_REQUEST = "fix_request"
    RE_REVIEW = "re_review"
    PERMISSION_DENIED = "permission_denied"
    PERMISSION_GRANTED = "permission_granted"
    CLARIFICATION_SKIPPED = "clarification_skipped"
    CLARIFICATION_ANSWERED = "clarification_answered"
    FORMAT_REMINDER = "format_reminder"


REQUIRED_VARIABLES: dict[TemplateKind, frozenset[str]] = {
    TemplateKind.INITIAL_REVIEW: frozenset({"repo", "pr_number", "pr_title", "pr_body", "diff", "iteration"}),
    TemplateKind.FIX_REQUEST: frozenset(
        {
            "repo",
            "pr_number",
            "pr_title",
            "iteration",
            "review_action",
            "review_summary",
            "review_comments",
            "blocking_issues",
            "external_comments",
            "git_operations",
        }
    ),
    TemplateKind.RE_REVIEW: frozenset(
        {"repo", "pr_number", "pr_title", "iteration", "blocking_issues", "changes_summary", "updated_diff"}
    ),
    TemplateKind.PERMISSION_DENIED: frozenset({"action", "reason"}),
    TemplateKind.PERMISSION_GRANTED: frozenset({"action"}),
    TemplateKind.CLARIFICATION_SKIPPED: frozenset({"question"}),
    TemplateKind.CLARIFICATION_ANSWERED: frozenset({"question", "answer"}),
    TemplateKind.FORMAT_REMINDER: frozenset({"role", "schema"}),
}


def _global_prompts_dir() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(config_home) / "prrally" / "prompts"


class PromptLoader:
    """Resolve template text for each kind through the override chain."""

    def __init__(self, prompt_dir: str | None = None, project_root: str | Path = "."):
        root = Path(project_root)
        self.local_dir = root / LOCAL_PROMPTS_DIR
        self.prompt_dir: Path | None = None
        if prompt_dir:
            path = Path(prompt_dir).expanduser()
            self.prompt_dir = path if path.is_absolute() else root / path
        self.global_dir = _global_prompts_dir()

    def _candidates(self) -> list[tuple[str, Path | None]]:
        return [
            ("local", self.local_dir),
            ("prompt_dir", self.prompt_dir),
            ("global", self.global_dir),
        ]

    def resolve_source(self, kind: TemplateKind) -> tuple[str, Path]:
        """Return (source name, path) of the template that would be used for kind."""
        filename = f"{TemplateKind(kind).value}.md"
        for source, directory in self._candidates():
            if directory is not None and (directory / filename).is_file():
                return source, directory / filename
        return "builtin", BUILTIN_TEMPLATES_DIR / filename

    def load(self, kind: TemplateKind) -> str:
        source, path = self.resolve_source(kind)
        if source != "builtin":
            try:
                return path.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("Could not read prompt override %s (%s); using built-in template", path, e)
                path = BUILTIN_TEMPLATES_DIR / path.name
        return path.read_text(encoding="utf-8")


_default_loader = PromptLoader()

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def render_template(template: str, variables: dict) -> str:
    """Replace ``{{key}}`` with the matching value. Unknown placeholders are kept.

    Substitution is a single pass, so placeholders inside inserted values stay as written.
    """

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        return str(variables[key]) if key in variables else match.group(0)

    return _PLACEHOLDER.sub(_substitute, template)


def render(template_kind: TemplateKind | str, variables: dict, loader: PromptLoader | None = None) -> str:
    """Render the template for template_kind with variables.

    Raises PromptVariableError when a variable the kind requires is missing.
    """
    kind = TemplateKind(template_kind)
    missing = REQUIRED_VARIABLES[kind] - variables.keys()
    if missing:
        raise PromptVariableError(f"Template {kind.value!r} is missing required variable(s): {', '.join(sorted(missing))}")
    template = (loader or _default_loader).load(kind)
    return render_template(template, variables)


# ---------------------------------------------------------------------------
# Variable formatting helpers
# ---------------------------------------------------------------------------


def format_comments(comments: list[ReviewComment]) -> str:
    if not comments:
        return "None"
    return "\n".join(f"- [{c.severity.value}] {c.path}:{c.line}: {c.body}" for c in comments)


def format_blocking_issues(issues: list[str]) -> str:
    if not issues:
        return "None"
    return "\n".join(f"- {issue}" for issue in issues)


def format_changes_summary(fix: RevieweeResult | None) -> str:
    if fix is None:
        return "No changes recorded"
    files = ", ".join(fix.files_modified) if fix.files_modified else "No files modified"
    return f"{fix.summary}\n\nFiles modified: {files}"


def format_external_comments(comments: list[ExternalComment], max_body_chars: int = 200) -> str:
    """Render bot feedback (Copilot, CodeRabbit, ...) as a prompt section; empty when there is none."""
    if not comments:
        return ""
    lines = []
    for c in comments:
        location = "general"
        if c.path:
            location = f"{c.path}:{c.line}" if c.line else c.path
        body = c.body if len(c.body) <= max_body_chars else c.body[:max_body_chars] + "..."
        lines.append(f"- [{c.source}] {location}: {body}")
    return (
        "## External tool feedback\n\n"
        "The following comments come from automated review tools on the pull request:\n\n"
        + "\n".join(lines)
        + "\n\nAddress them where they are relevant and valid. Do not wait for more feedback from these tools."
    )


def git_operations_section(local_mode: bool) -> str:
    if local_mode:
        return (
            "## Git Operations\n\n"
            "This is a LOCAL-ONLY session. Do NOT run any git write commands "
            "(add, commit, push, stash, switch, branch, merge, rebase, reset, etc.).\n"
            "Only read-only git commands (status, diff, log, show) are allowed.\n"
            "Edit files directly; the user will handle staging and committing."
        )
    return (
        "## Git Operations\n\n"
        "After making changes, commit them locally:\n\n"
        "1. Check status: `git status`\n"
        "2. Stage files: `git add <files>`\n"
        '3. Commit: `git commit -m "fix: <description>"`\n\n'
        "Do NOT push. The user will review and push manually."
    )
