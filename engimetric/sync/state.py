"""
Sync State

One record per (team, integration). `is_syncing` is the advisory lock; the
timestamps give observability and liveness:

    idle --start--> running --complete--> idle (last_synced_at)
                    running --fail/reap--> idle (last_failed_at)
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel

from engimetric.kernel.time import coerce_utc


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SyncState(BaseModel):
    team_id: int
    integration: str
    is_syncing: bool = False
    last_started_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    last_synced_at: datetime | None = None
    last_failed_at: datetime | None = None

    @property
    def status(self) -> SyncStatus:
        if self.is_syncing:
            return SyncStatus.RUNNING
        if self.last_synced_at is None and self.last_failed_at is None:
            return SyncStatus.IDLE
        if self.last_failed_at is None:
            return SyncStatus.SUCCEEDED
        if self.last_synced_at is None:
            return SyncStatus.FAILED
        if coerce_utc(self.last_failed_at) > coerce_utc(self.last_synced_at):
            return SyncStatus.FAILED
        return SyncStatus.SUCCEEDED

    def is_stale(self, now: datetime, threshold: timedelta) -> bool:
        """Running without a heartbeat inside `threshold` (a missing heartbeat counts as stale)."""
        if not self.is_syncing:
            return False
        if self.last_heartbeat_at is None:
            return True
        return coerce_utc(self.last_heartbeat_at) < coerce_utc(now) - threshold
