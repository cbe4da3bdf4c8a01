from __future__ import annotations

import json
import logging

from prrally_core.adapters.base import AdapterInvocation, BaseAdapter
from prrally_core.contract import Role, extract_json_block, schema_for
from prrally_core.errors import DecodeError

logger = logging.getLogger(__name__)


class ClaudeAdapter(BaseAdapter):
    """Drives the Claude Code CLI in print mode (``claude -p``).

    The reply is a single JSON envelope. When ``--json-schema`` is honoured the
    structured reply arrives in ``structured_output``; older CLI versions only
    fill ``result`` with text, so the JSON block is extracted from it instead.
    """

    NAME = "claude"
    EXECUTABLE = "claude"
    # Reviewer is read-only; reviewee may edit and commit locally but not push.
    DEFAULT_TOOLS = {
        Role.REVIEWER: [
            "Read",
            "Glob",
            "Grep",
            "Bash(git diff:*)",
            "Bash(git log:*)",
            "Bash(git show:*)",
            "Bash(gh pr view:*)",
            "Bash(gh pr diff:*)",
        ],
        Role.REVIEWEE: [
            "Read",
            "Edit",
            "Write",
            "Glob",
            "Grep",
            "Bash(git status:*)",
            "Bash(git diff:*)",
            "Bash(git add:*)",
            "Bash(git commit:*)",
        ],
    }

    def _build_command(self, invocation: AdapterInvocation) -> list[str]:
        command = [
            self.EXECUTABLE,
            "-p",
            invocation.prompt,
            "--output-format",
            "json",
            "--json-schema",
            json.dumps(schema_for(invocation.role)),
            "--allowedTools",
            ",".join(self.allowed_tools[invocation.role]),
        ]
        session_id = self.session_for(invocation.role)
        if invocation.resume and session_id:
            command.extend(["--resume", session_id])
        return command

    @staticmethod
    def _envelope(raw: str) -> dict:
        text = raw.strip()
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            # Some versions print warnings before the envelope; the envelope is the last line.
            lines = [line for line in text.splitlines() if line.strip()]
            try:
                value = json.loads(lines[-1]) if lines else None
            except json.JSONDecodeError:
                value = None
        if not isinstance(value, dict):
            raise DecodeError("claude: output is not a JSON envelope", raw=raw)
        return value

    def _extract_payload(self, raw: str) -> dict:
        envelope = self._envelope(raw)
        if envelope.get("is_error"):
            raise DecodeError(f"claude reported an error: {envelope.get('result') or envelope.get('subtype')}", raw=raw)

        structured = envelope.get("structured_output")
        if isinstance(structured, dict):
            return structured

        result = envelope.get("result")
        if not isinstance(result, str) or not result.strip():
            raise DecodeError("claude: envelope has neither structured_output nor result text", raw=raw)
        return extract_json_block(result)

    def _session_id(self, raw: str) -> str | None:
        try:
            return self._envelope(raw).get("session_id")
        except DecodeError:
            return None

    def _describe_line(self, line: str) -> str | None:
        # The envelope is only meaningful once complete; nothing to stream.
        return None
