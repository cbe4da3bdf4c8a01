"""Tests for agent adapters.

Process handling (spawn, stream, deadline, kill) lives in BaseAdapter and is
tested once through a stub that runs the Python interpreter. Backend-specific
tests cover only what differs: the argv and the output envelope.
"""

import asyncio
import json
import os
import sys
from pathlib import Path

import pytest

from prrally_core.adapters import ClaudeAdapter, CodexAdapter, create_adapter
from prrally_core.adapters.base import AdapterInvocation, BaseAdapter
from prrally_core.config import RallyConfig
from prrally_core.contract import REVIEWEE_SCHEMA, ReviewAction, RevieweeNeedsPermission, ReviewerResult, Role
from prrally_core.errors import AgentTimeoutError, DecodeError, ProcessError

REVIEW = {"action": "approve", "summary": "LGTM", "comments": [], "blocking_issues": []}
PERMISSION = {
    "status": "needs_permission",
    "summary": "Need to run tests",
    "files_modified": ["app.py"],
    "question": None,
    "permission_request": {"action": "Bash(pytest:*)", "reason": "verify the fix"},
    "error_details": None,
}


def _invocation(role=Role.REVIEWER, prompt="Review this", working_dir=None, deadline=0.0, resume=False):
    return AdapterInvocation(role=role, prompt=prompt, working_dir=working_dir, deadline=deadline, resume=resume)


class _PythonAdapter(BaseAdapter):
    """Runs a Python snippet instead of a real backend."""

    NAME = "python"

    def __init__(self, code, **kwargs):
        super().__init__(**kwargs)
        self.code = code

    def _build_command(self, invocation):
        return [sys.executable, "-c", self.code]

    def _extract_payload(self, raw):
        return json.loads(raw)


def _run_with_timeout(adapter, timeout, role=Role.REVIEWER):
    async def main():
        deadline = asyncio.get_running_loop().time() + timeout
        return await adapter.run(_invocation(role=role, deadline=deadline))

    return asyncio.run(main())


def _pid_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


# ---------------------------------------------------------------------------
# Shared process handling, tested once through the stub
# ---------------------------------------------------------------------------


class TestBaseAdapterRun:
    def test_returns_stdout_and_decodes(self):
        adapter = _PythonAdapter(f"print({json.dumps(json.dumps(REVIEW))})")

        raw = _run_with_timeout(adapter, 30)
        result = adapter.decode(raw, Role.REVIEWER)

        assert isinstance(result, ReviewerResult)
        assert result.action is ReviewAction.APPROVE

    def test_streams_lines_to_handler(self):
        seen = []
        adapter = _PythonAdapter("print('one'); print('two')", stream_handler=lambda role, text: seen.append((role, text)))

        _run_with_timeout(adapter, 30, role=Role.REVIEWEE)

        assert seen == [(Role.REVIEWEE, "one"), (Role.REVIEWEE, "two")]

    def test_non_zero_exit_is_not_transient(self):
        adapter = _PythonAdapter("import sys; sys.stderr.write('boom'); sys.exit(3)")

        with pytest.raises(ProcessError) as exc_info:
            _run_with_timeout(adapter, 30)

        assert exc_info.value.exit_code == 3
        assert exc_info.value.transient is False
        assert "boom" in exc_info.value.stderr

    def test_missing_executable(self, mocker):
        adapter = _PythonAdapter("")
        mocker.patch.object(adapter, "_build_command", return_value=["prrally-no-such-binary-xyz"])

        with pytest.raises(ProcessError) as exc_info:
            _run_with_timeout(adapter, 30)

        assert "not found" in str(exc_info.value)
        assert exc_info.value.transient is False

    def test_deadline_already_passed_does_not_spawn(self, mocker):
        adapter = _PythonAdapter("print('hi')")
        spawn = mocker.patch("asyncio.create_subprocess_exec")

        with pytest.raises(AgentTimeoutError):
            _run_with_timeout(adapter, -1)

        spawn.assert_not_called()

    def test_timeout_kills_process(self):
        adapter = _PythonAdapter("import time; time.sleep(30)")

        with pytest.raises(AgentTimeoutError) as exc_info:
            _run_with_timeout(adapter, 0.5)

        assert exc_info.value.role == "reviewer"
        assert adapter.last_pid is not None
        assert not _pid_alive(adapter.last_pid)

    def test_cancellation_kills_process(self):
        adapter = _PythonAdapter("import time; time.sleep(30)")

        async def main():
            deadline = asyncio.get_running_loop().time() + 30
            task = asyncio.ensure_future(adapter.run(_invocation(deadline=deadline)))
            while adapter.last_pid is None:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(main())

        assert not _pid_alive(adapter.last_pid)

    def test_overlong_output_line_kills_process(self, mocker):
        mocker.patch("prrally_core.adapters.base._STREAM_LIMIT", 1024)
        adapter = _PythonAdapter("import sys, time; sys.stdout.write('x' * 8192 + '\\n'); sys.stdout.flush(); time.sleep(30)")

        with pytest.raises(ProcessError) as exc_info:
            _run_with_timeout(adapter, 30)

        assert "exceeds" in str(exc_info.value)
        assert not _pid_alive(adapter.last_pid)


class TestAllowedTools:
    def test_additional_tools_merged_without_duplicates(self):
        adapter = ClaudeAdapter(additional_tools={Role.REVIEWEE: ["Bash(cargo test:*)", "Read"]})

        tools = adapter.allowed_tools[Role.REVIEWEE]
        assert "Bash(cargo test:*)" in tools
        assert tools.count("Read") == 1
        assert "Bash(cargo test:*)" not in adapter.allowed_tools[Role.REVIEWER]

    def test_allow_tool_is_idempotent(self):
        adapter = ClaudeAdapter()
        adapter.allow_tool(Role.REVIEWEE, "Bash(make:*)")
        adapter.allow_tool(Role.REVIEWEE, "Bash(make:*)")

        assert adapter.allowed_tools[Role.REVIEWEE].count("Bash(make:*)") == 1

    def test_default_tool_lists_are_not_shared(self):
        first = ClaudeAdapter()
        first.allow_tool(Role.REVIEWEE, "Bash(make:*)")

        assert "Bash(make:*)" not in ClaudeAdapter().allowed_tools[Role.REVIEWEE]


class TestCreateAdapter:
    def test_known_backends(self):
        config = RallyConfig()
        assert isinstance(create_adapter("claude", config), ClaudeAdapter)
        assert isinstance(create_adapter("codex", config), CodexAdapter)

    def test_unknown_backend_raises(self):
        with pytest.raises(ValueError, match="Unsupported agent"):
            create_adapter("gemini", RallyConfig())

    def test_passes_additional_tools_per_role(self):
        config = RallyConfig(reviewee_additional_tools=["Bash(npm test:*)"])

        adapter = create_adapter("claude", config)

        assert "Bash(npm test:*)" in adapter.allowed_tools[Role.REVIEWEE]


# ---------------------------------------------------------------------------
# Claude Code CLI
# ---------------------------------------------------------------------------


class TestClaudeAdapter:
    def test_build_command(self):
        adapter = ClaudeAdapter()
        command = adapter._build_command(_invocation(role=Role.REVIEWEE, prompt="Fix it"))

        assert command[:3] == ["claude", "-p", "Fix it"]
        assert command[command.index("--output-format") + 1] == "json"
        assert json.loads(command[command.index("--json-schema") + 1]) == REVIEWEE_SCHEMA
        assert "Edit" in command[command.index("--allowedTools") + 1].split(",")
        assert "--resume" not in command

    def test_resume_uses_stored_session(self):
        adapter = ClaudeAdapter()
        adapter._sessions[Role.REVIEWEE] = "sess-123"

        resumed = adapter._build_command(_invocation(role=Role.REVIEWEE, resume=True))
        fresh = adapter._build_command(_invocation(role=Role.REVIEWEE, resume=False))

        assert resumed[resumed.index("--resume") + 1] == "sess-123"
        assert "--resume" not in fresh

    def test_resume_without_session_starts_fresh(self):
        command = ClaudeAdapter()._build_command(_invocation(role=Role.REVIEWER, resume=True))
        assert "--resume" not in command

    def test_decodes_structured_output(self):
        raw = json.dumps({"type": "result", "structured_output": PERMISSION, "session_id": "s1"})

        result = ClaudeAdapter().decode(raw, Role.REVIEWEE)

        assert isinstance(result, RevieweeNeedsPermission)
        assert result.permission_request.action == "Bash(pytest:*)"

    def test_decodes_fenced_json_in_result_text(self):
        text = f"Here is my review:\n```json\n{json.dumps(REVIEW)}\n```"
        raw = json.dumps({"type": "result", "result": text})

        result = ClaudeAdapter().decode(raw, Role.REVIEWER)

        assert result.summary == "LGTM"

    def test_envelope_after_warning_lines(self):
        raw = "warning: something\n" + json.dumps({"structured_output": REVIEW})
        assert ClaudeAdapter().decode(raw, Role.REVIEWER).action is ReviewAction.APPROVE

    def test_is_error_raises_decode_error(self):
        raw = json.dumps({"is_error": True, "result": "Credit balance is too low"})

        with pytest.raises(DecodeError, match="Credit balance"):
            ClaudeAdapter().decode(raw, Role.REVIEWER)

    def test_not_json_raises_decode_error(self):
        with pytest.raises(DecodeError) as exc_info:
            ClaudeAdapter().decode("Segmentation fault", Role.REVIEWER)
        assert exc_info.value.raw == "Segmentation fault"

    def test_session_id_extracted(self):
        raw = json.dumps({"structured_output": REVIEW, "session_id": "abc"})
        assert ClaudeAdapter()._session_id(raw) == "abc"
        assert ClaudeAdapter()._session_id("garbage") is None


# ---------------------------------------------------------------------------
# Codex CLI
# ---------------------------------------------------------------------------


def _codex_stream(*events):
    return "\n".join(json.dumps(e) for e in events)


def _agent_message(text):
    return {"type": "item.completed", "item": {"type": "agent_message", "text": text}}


class TestCodexAdapter:
    def test_build_command_per_role(self):
        adapter = CodexAdapter()
        try:
            reviewer = adapter._build_command(_invocation(role=Role.REVIEWER, working_dir="/work"))
            reviewee = adapter._build_command(_invocation(role=Role.REVIEWEE, prompt="Fix"))
        finally:
            adapter.cleanup()

        assert reviewer[:3] == ["codex", "exec", "--json"]
        assert reviewer[reviewer.index("--sandbox") + 1] == "read-only"
        assert reviewer[reviewer.index("-C") + 1] == "/work"
        assert reviewer[-1] == "Review this"
        assert reviewee[reviewee.index("--sandbox") + 1] == "workspace-write"
        assert "-C" not in reviewee

    def test_schema_written_to_file_and_cleaned_up(self):
        adapter = CodexAdapter()
        command = adapter._build_command(_invocation(role=Role.REVIEWEE))
        schema_path = Path(command[command.index("--output-schema") + 1])

        assert json.loads(schema_path.read_text()) == REVIEWEE_SCHEMA

        adapter.cleanup()
        adapter.cleanup()
        assert not schema_path.exists()

    def test_resume_thread(self):
        adapter = CodexAdapter()
        adapter._sessions[Role.REVIEWEE] = "thread-9"
        try:
            command = adapter._build_command(_invocation(role=Role.REVIEWEE, prompt="Go on", resume=True))
        finally:
            adapter.cleanup()

        assert command[-3:] == ["resume", "thread-9", "Go on"]

    def test_decodes_last_agent_message(self):
        raw = _codex_stream(
            {"type": "thread.started", "thread_id": "t1"},
            _agent_message("Let me look at the diff first."),
            {"type": "item.completed", "item": {"type": "command_execution", "command": "git diff"}},
            _agent_message(json.dumps(REVIEW)),
            {"type": "turn.completed"},
        )

        result = CodexAdapter().decode(raw, Role.REVIEWER)

        assert result.action is ReviewAction.APPROVE

    def test_skips_non_json_lines(self):
        raw = "Reading prompt from stdin...\n" + _codex_stream(_agent_message(json.dumps(REVIEW)))
        assert CodexAdapter().decode(raw, Role.REVIEWER).summary == "LGTM"

    def test_no_agent_message_reports_failure(self):
        raw = _codex_stream({"type": "turn.failed", "error": {"message": "rate limited"}})

        with pytest.raises(DecodeError, match="rate limited"):
            CodexAdapter().decode(raw, Role.REVIEWER)

    def test_thread_id_extracted(self):
        raw = _codex_stream({"type": "thread.started", "thread_id": "t42"}, _agent_message("{}"))
        assert CodexAdapter()._session_id(raw) == "t42"

    def test_describe_line(self):
        adapter = CodexAdapter()
        command = json.dumps({"type": "item.completed", "item": {"type": "command_execution", "command": "ls"}})

        assert adapter._describe_line(command) == "$ ls"
        assert adapter._describe_line(json.dumps(_agent_message("hi"))) == "hi"
        assert adapter._describe_line(json.dumps({"type": "turn.started"})) is None
