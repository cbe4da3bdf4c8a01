"""Tests for the permission and clarification sub-dialogs."""

import asyncio

import pytest

from prrally_core.adapters import ClaudeAdapter
from prrally_core.collaborator import BaseCollaborator
from prrally_core.contract import PermissionRequest, Role
from prrally_core.errors import NegotiationLoopError, PermissionBlockedError
from prrally_core.negotiation import NegotiationKind, NegotiationTracker, resolve_clarification, resolve_permission


class _Answering(BaseCollaborator):
    def __init__(self, granted=False, answer=None):
        self.granted = granted
        self.answer = answer

    async def request_permission(self, request):
        return self.granted

    async def request_clarification(self, question):
        return self.answer


class TestNegotiationTracker:
    def test_third_request_of_a_kind_raises(self):
        tracker = NegotiationTracker(limit=3)
        tracker.record(NegotiationKind.PERMISSION)
        tracker.record(NegotiationKind.PERMISSION)

        with pytest.raises(NegotiationLoopError) as exc_info:
            tracker.record(NegotiationKind.PERMISSION)
        assert exc_info.value.kind == "permission"
        assert exc_info.value.count == 3

    def test_alternating_kinds_still_hit_the_limit(self):
        tracker = NegotiationTracker(limit=3)
        tracker.record(NegotiationKind.PERMISSION)
        tracker.record(NegotiationKind.CLARIFICATION)
        tracker.record(NegotiationKind.PERMISSION)
        tracker.record(NegotiationKind.CLARIFICATION)

        with pytest.raises(NegotiationLoopError) as exc_info:
            tracker.record(NegotiationKind.PERMISSION)
        assert exc_info.value.kind == "permission"
        assert exc_info.value.count == 3

    def test_reset(self):
        tracker = NegotiationTracker(limit=2)
        tracker.record(NegotiationKind.CLARIFICATION)
        tracker.reset()
        tracker.record(NegotiationKind.CLARIFICATION)
        assert tracker.counts == {NegotiationKind.CLARIFICATION: 1}


class TestResolvePermission:
    REQUEST = PermissionRequest(action="Bash(npm test:*)", reason="run the suite")

    def test_denied(self):
        prompt, granted = asyncio.run(resolve_permission(_Answering(granted=False), self.REQUEST, local_mode=False))

        assert granted is False
        assert "denied" in prompt
        assert "run the suite" in prompt

    def test_granted_extends_adapter_tools(self):
        adapter = ClaudeAdapter()

        prompt, granted = asyncio.run(
            resolve_permission(_Answering(granted=True), self.REQUEST, local_mode=False, adapter=adapter)
        )

        assert granted is True
        assert "granted" in prompt
        assert "Bash(npm test:*)" in adapter.allowed_tools[Role.REVIEWEE]

    def test_granted_git_push_blocked_in_local_mode(self):
        request = PermissionRequest(action="Bash(git status && git push:*)", reason="ship it")

        with pytest.raises(PermissionBlockedError, match="push"):
            asyncio.run(resolve_permission(_Answering(granted=True), request, local_mode=True))

    def test_denied_git_push_in_local_mode_is_just_denied(self):
        request = PermissionRequest(action="git push", reason="ship it")

        _, granted = asyncio.run(resolve_permission(_Answering(granted=False), request, local_mode=True))

        assert granted is False

    def test_git_push_allowed_outside_local_mode(self):
        request = PermissionRequest(action="git push", reason="ship it")

        _, granted = asyncio.run(resolve_permission(_Answering(granted=True), request, local_mode=False))

        assert granted is True


class TestResolveClarification:
    def test_answered(self):
        prompt = asyncio.run(resolve_clarification(_Answering(answer="Use UTC"), "Which timezone?"))
        assert "Which timezone?" in prompt
        assert "Use UTC" in prompt

    def test_skipped(self):
        prompt = asyncio.run(resolve_clarification(_Answering(answer=None), "Which timezone?"))
        assert "not answered" in prompt
