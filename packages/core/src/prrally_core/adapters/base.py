"""Base agent adapter implementing the Template Method pattern.

All backends share the same invocation algorithm:
    run()    → _build_command()   ← differs per backend
             → spawn process, stream stdout, enforce deadline
             → _remember_session()
    decode() → _extract_payload() ← differs per backend
             → contract.decode_result()

Subclasses implement two things only:
  - _build_command: the argv for one invocation of the backend CLI
  - _extract_payload: pull the structured JSON object out of the backend's
    output envelope

Process lifetime lives here so every backend gets the same guarantee: when the
deadline passes or the caller is cancelled, the whole process group is killed
and reaped before control returns. Nothing is left running.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from prrally_core.contract import AgentResult, Role, decode_result
from prrally_core.errors import AgentTimeoutError, ProcessError

logger = logging.getLogger(__name__)

# Backends print their whole structured reply on one line.
_STREAM_LIMIT = 16 * 1024 * 1024

StreamHandler = Callable[[Role, str], None]


@dataclass(frozen=True)
class AdapterInvocation:
    """One call to a backend. Created per call and discarded afterwards."""

    role: Role
    prompt: str
    working_dir: Optional[str]
    deadline: float  # event-loop time (loop.time()) after which the call is abandoned
    resume: bool = False  # continue this role's previous backend conversation


class BaseAdapter(ABC):
    NAME: str = "base"
    EXECUTABLE: str = ""
    DEFAULT_TOOLS: dict[Role, list[str]] = {Role.REVIEWER: [], Role.REVIEWEE: []}

    def __init__(
        self,
        additional_tools: dict[Role, list[str]] | None = None,
        stream_handler: StreamHandler | None = None,
    ):
        self.allowed_tools: dict[Role, list[str]] = {role: list(tools) for role, tools in self.DEFAULT_TOOLS.items()}
        for role, tools in (additional_tools or {}).items():
            self.allowed_tools[role].extend(t for t in tools if t not in self.allowed_tools[role])
        self.stream_handler = stream_handler
        self.last_pid: int | None = None
        self._sessions: dict[Role, str] = {}

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    async def run(self, invocation: AdapterInvocation) -> str:
        """Run the backend once and return its raw stdout.

        Raises ProcessError, or AgentTimeoutError once the deadline passes.
        """
        loop = asyncio.get_running_loop()
        timeout = invocation.deadline - loop.time()
        if timeout <= 0:
            raise AgentTimeoutError(invocation.role.value, 0)

        command = self._build_command(invocation)
        logger.debug("%s: spawning %s for %s", self.NAME, command[0], invocation.role.value)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=invocation.working_dir,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError:
            raise ProcessError(f"{self.NAME}: executable {command[0]!r} not found on PATH")
        except OSError as e:
            raise ProcessError(f"{self.NAME}: could not start {command[0]!r}: {e}", transient=True)

        self.last_pid = process.pid
        try:
            stdout, stderr = await asyncio.wait_for(self._communicate(process, invocation.role), timeout)
        except asyncio.TimeoutError:
            await self._terminate(process)
            raise AgentTimeoutError(invocation.role.value, timeout)
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        except OSError as e:
            await self._terminate(process)
            raise ProcessError(f"{self.NAME}: I/O error while reading output: {e}", transient=True)
        except ValueError as e:
            # StreamReader refuses a line longer than its limit.
            await self._terminate(process)
            raise ProcessError(f"{self.NAME}: output line exceeds {_STREAM_LIMIT} bytes: {e}")

        if process.returncode != 0:
            raise ProcessError(
                f"{self.NAME} exited with status {process.returncode}: {stderr.strip()[:500]}",
                exit_code=process.returncode,
                stderr=stderr,
            )

        session_id = self._session_id(stdout)
        if session_id:
            self._sessions[invocation.role] = session_id
        return stdout

    def decode(self, raw: str, role: Role) -> AgentResult:
        """Decode raw backend output into a validated result or raise DecodeError."""
        payload = self._extract_payload(raw)
        return decode_result(payload, role, raw)

    def allow_tool(self, role: Role, action: str) -> None:
        """Let later invocations for role run an action a human granted."""
        if action not in self.allowed_tools[role]:
            self.allowed_tools[role].append(action)

    def session_for(self, role: Role) -> str | None:
        return self._sessions.get(role)

    def cleanup(self) -> None:
        """Release anything the adapter created on disk. Safe to call twice."""

    # ------------------------------------------------------------------ #
    # Abstract: implement in each backend                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _build_command(self, invocation: AdapterInvocation) -> list[str]:
        """Return the argv for one invocation."""

    @abstractmethod
    def _extract_payload(self, raw: str) -> dict:
        """Return the structured reply object, or raise DecodeError."""

    # ------------------------------------------------------------------ #
    # Hooks with defaults                                                  #
    # ------------------------------------------------------------------ #

    def _session_id(self, raw: str) -> str | None:
        return None

    def _describe_line(self, line: str) -> str | None:
        """Turn one line of backend output into text worth showing a human."""
        return line

    # ------------------------------------------------------------------ #
    # Process handling                                                     #
    # ------------------------------------------------------------------ #

    async def _communicate(self, process: asyncio.subprocess.Process, role: Role) -> tuple[str, str]:
        stderr_task = asyncio.ensure_future(process.stderr.read())
        lines: list[str] = []
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace")
                lines.append(line)
                text = self._describe_line(line.rstrip("\n"))
                if text:
                    logger.debug("%s/%s: %s", self.NAME, role.value, text[:200])
                    if self.stream_handler is not None:
                        self.stream_handler(role, text)
            stderr = await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
        await process.wait()
        return "".join(lines), stderr.decode("utf-8", errors="replace")

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        """Kill the process group and wait for the process to be reaped."""
        if process.returncode is None:
            try:
                if hasattr(os, "killpg"):
                    os.killpg(process.pid, signal.SIGKILL)
                else:
                    process.kill()
            except ProcessLookupError:
                pass
        await process.wait()
        logger.debug("Terminated backend process %d", process.pid)
