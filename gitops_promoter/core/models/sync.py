"""
SyncState — what the sync controller reports about an environment.

Owned by the controller. The engine only reads it; desired_revision
moves when committed configuration moves, never by direct write.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel


class SyncStatus(StrEnum):
    """Reconciliation status of an environment."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    DEGRADED = "Degraded"
    PROGRESSING = "Progressing"


class SyncState(BaseModel):
    """Desired vs live revision for one environment."""

    environment: str
    desired_revision: str | None = None
    live_revision: str | None = None
    status: SyncStatus = SyncStatus.OUT_OF_SYNC
    message: str = ""

    @property
    def in_sync(self) -> bool:
        return self.status == SyncStatus.SYNCED
