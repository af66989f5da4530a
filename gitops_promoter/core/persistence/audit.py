"""
Audit ledger — append-only promotion log.

Every promotion attempt writes an entry to an NDJSON (newline-delimited
JSON) file, whether it committed, opened a review, was a no-op, or
failed. The commit history stays the authoritative trail of *changes*;
this file also remembers the attempts that never produced one.

The ledger is append-only: entries are never modified or deleted.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_PATH = ".state/promotions.ndjson"


class AuditEntry(BaseModel):
    """A single audit log entry."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation_id: str = ""
    operation_type: str = ""       # promote, merge, close, revert

    # What was asked
    environment: str = ""
    source_commit: str = ""
    requested_by: str = ""

    # What happened
    status: str = ""               # committed, review_opened, already_promoted, ..., failed
    revision: str | None = None
    review_id: str | None = None
    edits: int = 0
    duration_ms: int = 0

    # Failure (if any)
    error_kind: str | None = None
    error: str | None = None

    # Extensible context
    context: dict[str, Any] = Field(default_factory=dict)


class AuditWriter:
    """Append-only audit ledger writer.

    Each call to write() appends a single JSON line. Concurrent
    promotions to different environments share one writer, so appends
    are serialized by a lock.
    """

    def __init__(self, path: Path | None = None, project_root: Path | None = None):
        if path is not None:
            self._path = path
        elif project_root is not None:
            self._path = project_root / DEFAULT_AUDIT_PATH
        else:
            self._path = Path(DEFAULT_AUDIT_PATH)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: AuditEntry) -> None:
        """Append an audit entry to the ledger."""
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"

        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(line)
                logger.debug("Audit entry written: %s/%s", entry.operation_type, entry.operation_id)
            except OSError as e:
                logger.error("Failed to write audit entry: %s", e)

    def read_all(self) -> list[AuditEntry]:
        """Read all entries from the ledger, oldest first."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(AuditEntry.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("Skipping corrupt audit entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read audit ledger: %s", e)

        return entries

    def read_recent(self, n: int = 20, environment: str | None = None) -> list[AuditEntry]:
        """Read the most recent N entries, optionally for one environment."""
        entries = self.read_all()
        if environment:
            entries = [e for e in entries if e.environment == environment]
        return entries[-n:]
