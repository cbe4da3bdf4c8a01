"""Git safety check for permissions granted during a local-mode rally.

In local mode the reviewee works directly in the user's checkout, so a granted
permission must not let it push, reset, rebase or otherwise rewrite history.
A substring check is not enough (``git status && git push`` contains
``git status``), so commands are split on shell separators and tokenised, and
the usual ways of hiding the git binary are unwrapped:

  - wrappers:            env git push, sudo -u me git push
  - env var prefixes:    GIT_TRACE=1 git push
  - paths:               /usr/bin/git push
  - flags first:         git -C /elsewhere push
  - nested shells:       sh -c 'git push', bash -lc "git status; git push"
"""

from __future__ import annotations

import re
import shlex

ALLOWED_GIT_SUBCOMMANDS = ("status", "diff", "add", "commit", "log", "show", "branch", "switch", "stash")
SHELL_WRAPPERS = ("env", "command", "builtin", "exec", "nohup", "nice", "sudo", "xargs")
SHELL_INTERPRETERS = ("sh", "bash", "zsh", "dash", "ksh", "fish")
MAX_SHELL_NESTING_DEPTH = 3

_BASH_TOOL_RE = re.compile(r"^Bash\((?P<command>.*)\)$", re.DOTALL)
_SEPARATOR_RE = re.compile(r"&&|\|\||[;|&\n]")
_ENV_ASSIGNMENT_RE = re.compile(r"^[A-Za-z0-9_]+=")


def extract_bash_command(action: str) -> str | None:
    """Return the command inside a ``Bash(cmd:*)`` / ``Bash(cmd)`` tool pattern."""
    match = _BASH_TOOL_RE.match(action.strip())
    if not match:
        return None
    command = match.group("command")
    return command[:-2] if command.endswith(":*") else command


def split_shell_commands(command: str) -> list[str]:
    """Split on ``&&``, ``||``, ``;``, ``|``, ``&`` and newlines."""
    return _SEPARATOR_RE.split(command)


def _basename(token: str) -> str:
    return token.rsplit("/", 1)[-1]


def _tokenize(command: str) -> list[str]:
    try:
        return shlex.split(command)
    except ValueError:
        # Unbalanced quotes, usually from a quoted string cut by a separator.
        return command.split()


def _skip_prefixes(tokens: list[str]) -> int:
    """Return the index of the first token after env assignments and wrappers."""
    i = 0
    while i < len(tokens) and _ENV_ASSIGNMENT_RE.match(tokens[i]):
        i += 1
    while i < len(tokens) and _basename(tokens[i]) in SHELL_WRAPPERS:
        i += 1
        while i < len(tokens) and tokens[i].startswith("-"):
            i += 1
            # Conservatively treat the next token as the flag's argument (nice -n 5).
            nxt = tokens[i] if i < len(tokens) else None
            if nxt and not nxt.startswith("-") and _basename(nxt) not in ("git", *SHELL_INTERPRETERS):
                i += 1
        while i < len(tokens) and _ENV_ASSIGNMENT_RE.match(tokens[i]):
            i += 1
    return i


def _interpreter_command(tokens: list[str], start: int) -> str | None:
    """Return the command string of ``sh -c '<cmd>'`` style invocations."""
    if start >= len(tokens) or _basename(tokens[start]) not in SHELL_INTERPRETERS:
        return None
    i = start + 1
    while i < len(tokens) and tokens[i].startswith("-"):
        flag = tokens[i]
        i += 1
        # -c alone, or combined short flags ending in c (-lc, -ic)
        if flag == "-c" or (not flag.startswith("--") and flag.endswith("c")):
            if i < len(tokens):
                return tokens[i].strip("'\"")
            return None
    return None


def _check_command(command: str, depth: int) -> str | None:
    if depth > MAX_SHELL_NESTING_DEPTH:
        return "Shell command nesting too deep; blocked for safety"

    for segment in split_shell_commands(command):
        tokens = _tokenize(segment.strip())
        if not tokens:
            continue
        start = _skip_prefixes(tokens)
        if start >= len(tokens):
            continue

        if _basename(tokens[start]) == "git":
            if start + 1 >= len(tokens):
                return "Bare 'git' command without subcommand is not allowed"
            subcommand = tokens[start + 1].strip("'\"")
            if subcommand.startswith("-"):
                return f"Git command with flags before subcommand is not allowed: {segment.strip()!r}"
            if subcommand not in ALLOWED_GIT_SUBCOMMANDS:
                return f"Git subcommand {subcommand!r} is not in the allowed list ({', '.join(ALLOWED_GIT_SUBCOMMANDS)})"

        inner = _interpreter_command(tokens, start)
        if inner:
            reason = _check_command(inner, depth + 1)
            if reason:
                return reason
    return None


def check_blocked_git_operation(action: str) -> str | None:
    """Return why action is blocked in local mode, or None if it is allowed.

    Non-Bash tools (Read, Edit, Write, ...) are always allowed.
    """
    command = extract_bash_command(action)
    if command is None:
        trimmed = action.strip()
        if trimmed != "git" and not trimmed.startswith("git "):
            return None
        command = trimmed
    if not command.strip():
        return None
    return _check_command(command, 0)
