"""Abstract store interface.

The CLI depends on BaseStore, not on a concrete backend, so rally history can
go to SQLite today and somewhere else tomorrow without touching the CLI.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prrally_store.models import RallyRecord


class BaseStore(ABC):
    """Pluggable persistence layer for rally history.

    Implementations must work in CI where no interactive credentials exist;
    anything they need comes from constructor arguments.
    """

    @abstractmethod
    def save(self, record: RallyRecord) -> None:
        """Persist a finished rally."""

    @abstractmethod
    def list_rallies(self, repo: str, pr_number: int | None = None) -> list[RallyRecord]:
        """Return rallies for a repo, optionally filtered by PR number.

        Returns an empty list if there are none. Never raises for a missing repo.
        """

    def close(self) -> None:
        """Release any resources held by the store. Safe to call on every store."""
