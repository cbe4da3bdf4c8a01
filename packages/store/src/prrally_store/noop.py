"""No-op store, the default when no store is configured.

Using a NoOpStore rather than None lets the CLI always call store.save()
without conditional checks.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prrally_store.base import BaseStore

if TYPE_CHECKING:
    from prrally_store.models import RallyRecord


class NoOpStore(BaseStore):
    """Discards every record. Switch to SQLiteStore with ``store: sqlite`` in .prrally.yml."""

    def save(self, record: RallyRecord) -> None:
        pass

    def list_rallies(self, repo: str, pr_number: int | None = None) -> list[RallyRecord]:
        return []
