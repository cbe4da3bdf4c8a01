from __future__ import annotations

import json
import logging
import shutil
import tempfile
from pathlib import Path

from prrally_core.adapters.base import AdapterInvocation, BaseAdapter
from prrally_core.contract import Role, extract_json_block, schema_for
from prrally_core.errors import DecodeError

logger = logging.getLogger(__name__)


def _events(raw: str):
    """Yield the JSON events of a ``codex exec --json`` stream, skipping noise."""
    for line in raw.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            yield event


class CodexAdapter(BaseAdapter):
    """Drives the Codex CLI non-interactively (``codex exec --json``).

    Codex prints a JSONL event stream. The reply is the text of the last
    ``agent_message`` item; the output schema is passed as a file because the
    CLI does not accept it inline.
    """

    NAME = "codex"
    EXECUTABLE = "codex"
    SANDBOX = {Role.REVIEWER: "read-only", Role.REVIEWEE: "workspace-write"}

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._schema_dir: str | None = None

    def _schema_path(self, role: Role) -> str:
        if self._schema_dir is None:
            self._schema_dir = tempfile.mkdtemp(prefix="prrally-codex-")
        path = Path(self._schema_dir) / f"{role.value}.schema.json"
        if not path.exists():
            path.write_text(json.dumps(schema_for(role)), encoding="utf-8")
        return str(path)

    def _build_command(self, invocation: AdapterInvocation) -> list[str]:
        command = [
            self.EXECUTABLE,
            "exec",
            "--json",
            "--skip-git-repo-check",
            "--output-schema",
            self._schema_path(invocation.role),
            "--sandbox",
            self.SANDBOX[invocation.role],
        ]
        if invocation.working_dir:
            command.extend(["-C", invocation.working_dir])
        thread_id = self.session_for(invocation.role)
        if invocation.resume and thread_id:
            command.extend(["resume", thread_id])
        command.append(invocation.prompt)
        return command

    def _extract_payload(self, raw: str) -> dict:
        message = None
        failure = None
        for event in _events(raw):
            kind = event.get("type")
            item = event.get("item") or {}
            if kind == "item.completed" and item.get("type") == "agent_message":
                message = item.get("text")
            elif kind == "turn.failed":
                failure = (event.get("error") or {}).get("message", "turn failed")
            elif kind == "error":
                failure = event.get("message", "unknown error")

        if not message:
            raise DecodeError(f"codex: no agent message in output{f' ({failure})' if failure else ''}", raw=raw)
        return extract_json_block(message)

    def _session_id(self, raw: str) -> str | None:
        for event in _events(raw):
            if event.get("type") == "thread.started":
                return event.get("thread_id")
        return None

    def _describe_line(self, line: str) -> str | None:
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return line or None
        if not isinstance(event, dict) or event.get("type") != "item.completed":
            return None
        item = event.get("item") or {}
        if item.get("type") == "agent_message":
            return item.get("text")
        if item.get("type") == "command_execution":
            return f"$ {item.get('command', '')}"
        if item.get("type") == "reasoning":
            return item.get("text")
        return None

    def cleanup(self) -> None:
        if self._schema_dir is not None:
            shutil.rmtree(self._schema_dir, ignore_errors=True)
            self._schema_dir = None
