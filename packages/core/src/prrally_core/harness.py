"""Execution harness: deadlines and bounded retries around adapter calls.

Keeping the retry policy here means every adapter's run() stays focused on a
single attempt, and the policy is defined once:

  - transient ProcessError (OS-level I/O failure): retried once
  - ProcessError from a non-zero exit or missing executable: never retried
  - DecodeError: retried once with a format reminder appended to the prompt;
    a second consecutive DecodeError propagates
  - AgentTimeoutError: never retried; the session ends instead
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from prrally_core.adapters.base import AdapterInvocation
from prrally_core.contract import AgentResult, Role, schema_for
from prrally_core.errors import DecodeError, ProcessError
from prrally_core.prompts import TemplateKind, render

if TYPE_CHECKING:
    from prrally_core.adapters.base import BaseAdapter
    from prrally_core.prompts import PromptLoader

logger = logging.getLogger(__name__)


class ExecutionHarness:
    MAX_TRANSIENT_RETRIES: int = 1
    MAX_DECODE_ATTEMPTS: int = 2
    RETRY_DELAY: float = 1.0

    def __init__(self, timeout_secs: float, working_dir: str | None = None, loader: PromptLoader | None = None):
        self.timeout_secs = timeout_secs
        self.working_dir = working_dir
        self.loader = loader

    def _deadline(self) -> float:
        return asyncio.get_running_loop().time() + self.timeout_secs

    async def call(self, adapter: BaseAdapter, role: Role, prompt: str, resume: bool = False) -> AgentResult:
        """Run one turn for role and return its validated result."""
        current_prompt = prompt
        for attempt in range(1, self.MAX_DECODE_ATTEMPTS + 1):
            invocation = AdapterInvocation(
                role=role,
                prompt=current_prompt,
                working_dir=self.working_dir,
                deadline=self._deadline(),
                resume=resume,
            )
            raw = await self._run_with_retry(adapter, invocation)
            try:
                return adapter.decode(raw, role)
            except DecodeError as e:
                if attempt == self.MAX_DECODE_ATTEMPTS:
                    logger.error(
                        "%s: %s reply still unreadable after %d attempts: %s", adapter.NAME, role.value, attempt, e
                    )
                    raise
                logger.warning(
                    "%s: could not decode %s reply (%s). Retrying with a format reminder. Raw: %s",
                    adapter.NAME,
                    role.value,
                    e,
                    e.raw[:200],
                )
                current_prompt = prompt + render(
                    TemplateKind.FORMAT_REMINDER,
                    {"role": role.value, "schema": json.dumps(schema_for(role), indent=2)},
                    self.loader,
                )
        raise AssertionError("unreachable")

    async def _run_with_retry(self, adapter: BaseAdapter, invocation: AdapterInvocation) -> str:
        for attempt in range(self.MAX_TRANSIENT_RETRIES + 1):
            try:
                return await adapter.run(invocation)
            except ProcessError as e:
                if not e.transient or attempt == self.MAX_TRANSIENT_RETRIES:
                    raise
                logger.warning(
                    "%s: transient error (attempt %d/%d): %s. Retrying in %.0fs...",
                    adapter.NAME,
                    attempt + 1,
                    self.MAX_TRANSIENT_RETRIES + 1,
                    e,
                    self.RETRY_DELAY,
                )
                await asyncio.sleep(self.RETRY_DELAY)
                invocation = replace(invocation, deadline=self._deadline())
        raise AssertionError("unreachable")
