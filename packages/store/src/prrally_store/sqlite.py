"""SQLiteStore — local file-based rally history.

SQLite ships with Python, so history needs no extra dependency, and indexed
lookups on repo / pr_number stay fast as the table grows. Point ``store_path``
at a location shared between CI jobs to keep history across runs.

Schema:
  rallies  — one row per finished rally. Comments and blocking issues are
             JSON columns, so reads never need a JOIN.
"""

from __future__ import annotations

import json
import logging
import sqlite3

from prrally_store.base import BaseStore
from prrally_store.models import CommentRecord, RallyRecord

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS rallies (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    repo                  TEXT NOT NULL,
    pr_number             INTEGER NOT NULL,
    pr_title              TEXT,
    reviewer              TEXT,
    reviewee              TEXT,
    head_sha              TEXT,
    started_at            TEXT,
    finished_at           TEXT,
    outcome               TEXT,
    iterations            INTEGER DEFAULT 0,
    summary               TEXT,
    blocking_issues_json  TEXT DEFAULT '[]',
    comments_json         TEXT DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_rallies_repo ON rallies (repo);
CREATE INDEX IF NOT EXISTS idx_rallies_pr   ON rallies (repo, pr_number);
"""


class SQLiteStore(BaseStore):
    """Stores rally history in a local SQLite database file (``.prrally.db`` by default)."""

    def __init__(self, db_path: str = ".prrally.db"):
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def save(self, record: RallyRecord) -> None:
        comments_json = json.dumps(
            [{"file": c.file, "line": c.line, "severity": c.severity, "comment": c.comment} for c in record.comments]
        )
        self._conn.execute(
            """
            INSERT INTO rallies
              (repo, pr_number, pr_title, reviewer, reviewee, head_sha, started_at,
               finished_at, outcome, iterations, summary, blocking_issues_json, comments_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.repo,
                record.pr_number,
                record.pr_title,
                record.reviewer,
                record.reviewee,
                record.head_sha,
                record.started_at,
                record.finished_at,
                record.outcome,
                record.iterations,
                record.summary,
                json.dumps(record.blocking_issues),
                comments_json,
            ),
        )
        self._conn.commit()
        logger.debug("Saved rally for %s#%d (%s)", record.repo, record.pr_number, record.outcome)

    def list_rallies(self, repo: str, pr_number: int | None = None) -> list[RallyRecord]:
        if pr_number is not None:
            rows = self._conn.execute(
                "SELECT * FROM rallies WHERE repo=? AND pr_number=? ORDER BY started_at",
                (repo, pr_number),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM rallies WHERE repo=? ORDER BY started_at",
                (repo,),
            ).fetchall()

        return [self._row_to_record(r) for r in rows]

    def close(self) -> None:
        self._conn.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> RallyRecord:
        comments = [
            CommentRecord(
                file=c.get("file", ""),
                line=c.get("line", 0),
                severity=c.get("severity", "info"),
                comment=c.get("comment", ""),
            )
            for c in json.loads(row["comments_json"] or "[]")
        ]
        return RallyRecord(
            repo=row["repo"],
            pr_number=row["pr_number"],
            pr_title=row["pr_title"] or "",
            reviewer=row["reviewer"] or "",
            reviewee=row["reviewee"] or "",
            head_sha=row["head_sha"] or "",
            started_at=row["started_at"] or "",
            finished_at=row["finished_at"] or "",
            outcome=row["outcome"] or "",
            iterations=row["iterations"],
            summary=row["summary"] or "",
            blocking_issues=json.loads(row["blocking_issues_json"] or "[]"),
            comments=comments,
        )
