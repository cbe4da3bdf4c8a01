from __future__ import annotations

from prrally_core.adapters.base import AdapterInvocation, BaseAdapter, StreamHandler
from prrally_core.adapters.claude import ClaudeAdapter
from prrally_core.adapters.codex import CodexAdapter
from prrally_core.config import SUPPORTED_AGENTS, RallyConfig
from prrally_core.contract import Role

__all__ = ["AdapterInvocation", "BaseAdapter", "ClaudeAdapter", "CodexAdapter", "create_adapter"]

_ADAPTERS: dict[str, type[BaseAdapter]] = {
    "claude": ClaudeAdapter,
    "codex": CodexAdapter,
}


def create_adapter(name: str, config: RallyConfig, stream_handler: StreamHandler | None = None) -> BaseAdapter:
    """Instantiate the adapter for a backend name from the configuration."""
    adapter_cls = _ADAPTERS.get(name)
    if adapter_cls is None:
        raise ValueError(f"Unsupported agent: {name!r}. Supported: {', '.join(SUPPORTED_AGENTS)}")
    return adapter_cls(
        additional_tools={
            Role.REVIEWER: config.reviewer_additional_tools,
            Role.REVIEWEE: config.reviewee_additional_tools,
        },
        stream_handler=stream_handler,
    )
