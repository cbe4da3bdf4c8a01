"""Exception hierarchy for the rally engine.

Every failure an adapter, the harness or a collaborator can produce maps to one
of these classes. RallySession.run() translates each of them into a terminal
phase, so none of them escape to the hosting process.
"""

from __future__ import annotations


class RallyError(Exception):
    """Base class for all prrally errors."""


class ConfigError(RallyError):
    """Raised when the rally configuration is missing or invalid."""


class ProcessError(RallyError):
    """The backend process could not be started, failed, or broke mid-stream.

    ``transient`` is True only for OS-level I/O failures while talking to the
    process. Non-zero exits and missing executables are never transient.
    """

    def __init__(self, message: str, exit_code: int | None = None, transient: bool = False, stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.transient = transient
        self.stderr = stderr


class DecodeError(RallyError):
    """The backend replied, but the reply does not satisfy the output contract."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class AgentTimeoutError(RallyError):
    """An adapter invocation ran past its deadline. The process has been killed."""

    def __init__(self, role: str, timeout: float):
        super().__init__(f"{role} timed out after {timeout:.0f} seconds")
        self.role = role
        self.timeout = timeout


class NegotiationLoopError(RallyError):
    """The reviewee asked for the same kind of negotiation too often within one turn."""

    def __init__(self, kind: str, count: int):
        super().__init__(f"Reviewee requested {kind} {count} times in one turn without making progress")
        self.kind = kind
        self.count = count


class PermissionBlockedError(RallyError):
    """A granted permission was refused by the local-mode git guard."""


class RallyAborted(RallyError):
    """The human collaborator chose to stop the rally."""


class PromptVariableError(RallyError, ValueError):
    """A prompt template was rendered without one of its required variables."""


class InvalidTransition(RallyError):
    """A state-machine transition was attempted out of a terminal phase."""
