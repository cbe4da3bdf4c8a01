"""Diff snapshots and the providers that produce them.

The engine never computes diffs itself. A provider hands it an immutable
DiffSnapshot at session creation and a refreshed one before every re-review,
after the reviewee has edited the working tree.

Two providers exist:
  - GitHubDiffProvider: the pull request's files via PyGithub. When a local
    checkout is given, refreshes prefer its working-tree diff so the reviewer
    sees uncommitted and unpushed fixes.
  - LocalDiffProvider: `git diff HEAD` plus untracked files, falling back to
    the committed diff against origin/<base>.
"""

from __future__ import annotations

import logging
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path

from prrally_core.errors import RallyError
from prrally_core.gh.pull_request import ExternalComment, fetch_external_comments, get_diff, get_pull, get_repo

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECS = 30

_DIFF_HEADER_RE = re.compile(r"^diff --git a/(?P<old>.+?) b/(?P<new>.+)$")


@dataclass(frozen=True)
class FilePatch:
    path: str
    patch: str


@dataclass(frozen=True)
class DiffSnapshot:
    repo: str
    pr_number: int  # 0 for local diffs
    title: str
    body: str
    files: tuple[FilePatch, ...] = ()
    head_sha: str = ""
    base_branch: str = "main"
    working_dir: str | None = None
    local_mode: bool = False

    @property
    def diff(self) -> str:
        return "\n".join(f.patch for f in self.files)

    @property
    def file_paths(self) -> list[str]:
        return [f.path for f in self.files]


def parse_unified_diff(text: str) -> tuple[FilePatch, ...]:
    """Split a multi-file unified diff into one FilePatch per file."""
    files: list[FilePatch] = []
    path: str | None = None
    lines: list[str] = []
    for line in text.splitlines():
        match = _DIFF_HEADER_RE.match(line)
        if match:
            if path is not None:
                files.append(FilePatch(path, "\n".join(lines)))
            path, lines = match.group("new"), []
        if path is not None:
            lines.append(line)
    if path is not None:
        files.append(FilePatch(path, "\n".join(lines)))
    return tuple(files)


# ---------------------------------------------------------------------------
# git helpers
# ---------------------------------------------------------------------------


def _git(args: list[str], cwd: str, ok_codes: tuple[int, ...] = (0,)) -> str | None:
    """Run git and return stdout, or None if it failed, timed out or is missing."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECS,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        logger.warning("git %s failed: %s", " ".join(args), e)
        return None
    if result.returncode not in ok_codes:
        logger.debug("git %s exited %d: %s", " ".join(args), result.returncode, result.stderr.strip())
        return None
    return result.stdout


def detect_base_branch(working_dir: str) -> str:
    ref = _git(["symbolic-ref", "--short", "refs/remotes/origin/HEAD"], working_dir)
    if ref and ref.strip():
        return ref.strip().split("/", 1)[-1]
    return "main"


def untracked_diff(working_dir: str) -> str:
    """Render untracked files as new-file diffs."""
    listing = _git(["ls-files", "--others", "--exclude-standard"], working_dir)
    if not listing:
        return ""
    parts = []
    for path in listing.splitlines():
        # --no-index exits 1 when the files differ, which is always the case here.
        patch = _git(["diff", "--no-index", "--", "/dev/null", path], working_dir, ok_codes=(0, 1))
        if patch:
            parts.append(patch.rstrip("\n"))
    return "\n".join(parts)


def working_tree_diff(working_dir: str, base_branch: str) -> str:
    """Latest local changes: working tree + staged + untracked, else committed vs origin/base."""
    diff = (_git(["diff", "HEAD"], working_dir) or "").rstrip("\n")
    untracked = untracked_diff(working_dir)
    if untracked:
        diff = f"{diff}\n{untracked}" if diff else untracked
    if diff.strip():
        return diff
    logger.debug("No uncommitted changes; diffing against origin/%s", base_branch)
    return (_git(["diff", f"origin/{base_branch}...HEAD"], working_dir) or "").rstrip("\n")


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class BaseDiffProvider(ABC):
    @abstractmethod
    def snapshot(self) -> DiffSnapshot:
        """Return the initial snapshot for a new session."""

    def refresh(self, previous: DiffSnapshot) -> DiffSnapshot:
        """Return the snapshot to re-review after the reviewee's fixes."""
        return self.snapshot()

    def external_comments(self) -> list[ExternalComment]:
        """Return feedback left on the change by automated reviewers. Local diffs have none."""
        return []


class GitHubDiffProvider(BaseDiffProvider):
    def __init__(
        self,
        repo_name: str,
        pr_number: int,
        token: str | None = None,
        repo_obj=None,
        working_dir: str | None = None,
    ):
        self.repo_name = repo_name
        self.pr_number = pr_number
        self.repo = repo_obj if repo_obj is not None else get_repo(repo_name, token)
        self.working_dir = working_dir
        self.pr = None

    def snapshot(self) -> DiffSnapshot:
        self.pr = get_pull(self.repo, self.pr_number)
        files = tuple(FilePatch(f.filename, f.patch) for f in get_diff(self.pr) if f.patch)
        return DiffSnapshot(
            repo=self.repo_name,
            pr_number=self.pr_number,
            title=self.pr.title or "",
            body=self.pr.body or "",
            files=files,
            head_sha=self.pr.head.sha,
            base_branch=self.pr.base.ref,
            working_dir=self.working_dir,
        )

    def refresh(self, previous: DiffSnapshot) -> DiffSnapshot:
        # The reviewee commits locally and never pushes, so the PR on GitHub
        # lags behind the checkout it is editing.
        if self.working_dir:
            diff = working_tree_diff(self.working_dir, previous.base_branch)
            if diff.strip():
                logger.info("Using local git diff for re-review")
                return replace(previous, files=parse_unified_diff(diff))
            logger.info("Local git diff empty; falling back to the pull request files")
        return self.snapshot()

    def external_comments(self) -> list[ExternalComment]:
        if self.pr is None:
            self.pr = get_pull(self.repo, self.pr_number)
        return fetch_external_comments(self.pr)


class LocalDiffProvider(BaseDiffProvider):
    def __init__(self, working_dir: str = ".", repo_label: str | None = None):
        self.working_dir = str(Path(working_dir).resolve())
        self.repo_label = repo_label or Path(self.working_dir).name

    def snapshot(self) -> DiffSnapshot:
        base_branch = detect_base_branch(self.working_dir)
        diff = working_tree_diff(self.working_dir, base_branch)
        if not diff.strip():
            raise RallyError(
                f"No changes detected: both git diff HEAD and git diff origin/{base_branch}...HEAD are empty"
            )
        head_sha = (_git(["rev-parse", "HEAD"], self.working_dir) or "").strip()
        return DiffSnapshot(
            repo=self.repo_label,
            pr_number=0,
            title="Local diff",
            body="",
            files=parse_unified_diff(diff),
            head_sha=head_sha,
            base_branch=base_branch,
            working_dir=self.working_dir,
            local_mode=True,
        )

    def refresh(self, previous: DiffSnapshot) -> DiffSnapshot:
        # No fallback to the previous diff: an empty diff means the changes are gone.
        diff = working_tree_diff(self.working_dir, previous.base_branch)
        if not diff.strip():
            logger.info("Local diff is empty (no changes detected)")
        return replace(previous, files=parse_unified_diff(diff))
