"""
Sync State Repository

Persists the per-(team, integration) lock and timestamps in `sync_states`.

Every call runs in its own short internal session, so lock transitions commit
independently of the sync's data transaction. Timestamps come from the
application clock so detection and writes share one time source.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import text

from engimetric.db.client import get_db_session
from engimetric.db.rls import rls_context
from engimetric.kernel.time import coerce_utc, utc_now
from engimetric.sync.state import SyncState

logger = structlog.get_logger()

_COLUMNS = """
    team_id, integration, is_syncing, last_started_at,
    last_heartbeat_at, last_synced_at, last_failed_at
"""

# Ties a write to the claim that issued it; a reaped run must not touch its successor.
_CLAIM_FILTER = "AND last_started_at = :started_at"


def _row_to_state(row: Any) -> SyncState:
    return SyncState(
        team_id=int(row["team_id"]),
        integration=str(row["integration"]),
        is_syncing=bool(row.get("is_syncing") or False),
        last_started_at=row.get("last_started_at"),
        last_heartbeat_at=row.get("last_heartbeat_at"),
        last_synced_at=row.get("last_synced_at"),
        last_failed_at=row.get("last_failed_at"),
    )


def stale_cutoff(threshold_minutes: int, now: datetime | None = None) -> datetime:
    return (now or utc_now()) - timedelta(minutes=threshold_minutes)


class SyncStateRepository:
    """Database-backed sync state storage."""

    async def get_state(self, team_id: int, integration: str) -> SyncState | None:
        with rls_context(None, is_internal=True):
            async with get_db_session() as session:
                rows = await session.execute(
                    text(
                        f"""
                        SELECT {_COLUMNS}
                        FROM sync_states
                        WHERE team_id = :team_id AND integration = :integration
                        """
                    ),
                    {"team_id": team_id, "integration": integration},
                )
                row = rows.mappings().first()
        return _row_to_state(row) if row else None

    async def list_states(self, team_id: int) -> list[SyncState]:
        with rls_context(None, is_internal=True):
            async with get_db_session() as session:
                rows = await session.execute(
                    text(
                        f"""
                        SELECT {_COLUMNS}
                        FROM sync_states
                        WHERE team_id = :team_id
                        ORDER BY integration ASC
                        """
                    ),
                    {"team_id": team_id},
                )
                results = rows.mappings().all()
        return [_row_to_state(row) for row in results]

    async def mark_start(self, team_id: int, integration: str) -> None:
        """Unconditionally mark the pair running (upsert)."""
        with rls_context(None, is_internal=True):
            async with get_db_session() as session:
                await session.execute(
                    text(
                        """
                        INSERT INTO sync_states (
                            team_id, integration, is_syncing, last_started_at, last_heartbeat_at
                        ) VALUES (
                            :team_id, :integration, TRUE, :now, :now
                        )
                        ON CONFLICT (team_id, integration)
                        DO UPDATE SET
                            is_syncing = TRUE,
                            last_started_at = EXCLUDED.last_started_at,
                            last_heartbeat_at = EXCLUDED.last_heartbeat_at
                        """
                    ),
                    {"team_id": team_id, "integration": integration, "now": utc_now()},
                )

    async def try_mark_start(self, team_id: int, integration: str) -> datetime | None:
        """
        Atomically claim the pair.

        Returns the claim's `last_started_at`, which identifies this run in
        later heartbeat and completion calls, or None when another sync holds
        the pair. The conditional upsert makes check-and-set a single
        statement, so two concurrent callers can never both observe success.
        """
        with rls_context(None, is_internal=True):
            async with get_db_session() as session:
                rows = await session.execute(
                    text(
                        """
                        INSERT INTO sync_states (
                            team_id, integration, is_syncing, last_started_at, last_heartbeat_at
                        ) VALUES (
                            :team_id, :integration, TRUE, :now, :now
                        )
                        ON CONFLICT (team_id, integration)
                        DO UPDATE SET
                            is_syncing = TRUE,
                            last_started_at = EXCLUDED.last_started_at,
                            last_heartbeat_at = EXCLUDED.last_heartbeat_at
                        WHERE sync_states.is_syncing = FALSE
                        RETURNING last_started_at
                        """
                    ),
                    {"team_id": team_id, "integration": integration, "now": utc_now()},
                )
                row = rows.mappings().first()
        if row is None:
            logger.info("Sync lock held elsewhere", team_id=team_id, integration=integration)
            return None
        return coerce_utc(row["last_started_at"])

    async def update_heartbeat(
        self,
        team_id: int,
        integration: str,
        *,
        started_at: datetime | None = None,
    ) -> bool:
        """
        Refresh the heartbeat of a running sync.

        False if the pair is no longer running, or if `started_at` is given and
        a newer claim has replaced it.
        """
        with rls_context(None, is_internal=True):
            async with get_db_session() as session:
                rows = await session.execute(
                    text(
                        f"""
                        UPDATE sync_states
                        SET last_heartbeat_at = :now
                        WHERE team_id = :team_id
                          AND integration = :integration
                          AND is_syncing = TRUE
                          {_CLAIM_FILTER if started_at is not None else ""}
                        RETURNING team_id
                        """
                    ),
                    {
                        "team_id": team_id,
                        "integration": integration,
                        "now": utc_now(),
                        "started_at": started_at,
                    },
                )
                return rows.first() is not None

    async def mark_complete(
        self,
        team_id: int,
        integration: str,
        *,
        started_at: datetime | None = None,
    ) -> bool:
        """
        Record a successful sync and release the lock.

        With `started_at` only the claim that started at that instant is
        released; a run that was reaped and replaced leaves the row alone and
        gets False back.
        """
        return await self._finish(team_id, integration, "last_synced_at", started_at)

    async def mark_failed(
        self,
        team_id: int,
        integration: str,
        *,
        started_at: datetime | None = None,
    ) -> bool:
        return await self._finish(team_id, integration, "last_failed_at", started_at)

    async def _finish(
        self,
        team_id: int,
        integration: str,
        column: str,
        started_at: datetime | None,
    ) -> bool:
        params = {"team_id": team_id, "integration": integration, "now": utc_now()}
        if started_at is None:
            statement = f"""
                INSERT INTO sync_states (team_id, integration, is_syncing, {column})
                VALUES (:team_id, :integration, FALSE, :now)
                ON CONFLICT (team_id, integration)
                DO UPDATE SET
                    is_syncing = FALSE,
                    {column} = EXCLUDED.{column}
                RETURNING team_id
            """
        else:
            statement = f"""
                UPDATE sync_states
                SET is_syncing = FALSE,
                    {column} = :now
                WHERE team_id = :team_id
                  AND integration = :integration
                  {_CLAIM_FILTER}
                RETURNING team_id
            """
            params["started_at"] = started_at

        with rls_context(None, is_internal=True):
            async with get_db_session() as session:
                rows = await session.execute(text(statement), params)
                finished = rows.first() is not None
        if not finished:
            logger.warning(
                "Sync claim superseded, leaving newer run's state untouched",
                team_id=team_id,
                integration=integration,
                started_at=started_at.isoformat() if started_at else None,
            )
        return finished

    async def detect_stale(self, threshold_minutes: int) -> list[SyncState]:
        """Running rows whose heartbeat is older than the threshold (or missing)."""
        with rls_context(None, is_internal=True):
            async with get_db_session() as session:
                rows = await session.execute(
                    text(
                        f"""
                        SELECT {_COLUMNS}
                        FROM sync_states
                        WHERE is_syncing = TRUE
                          AND (last_heartbeat_at IS NULL OR last_heartbeat_at < :cutoff)
                        ORDER BY team_id ASC, integration ASC
                        """
                    ),
                    {"cutoff": stale_cutoff(threshold_minutes)},
                )
                results = rows.mappings().all()
        return [_row_to_state(row) for row in results]

    async def mark_stale_failed(self, team_id: int, integration: str, threshold_minutes: int) -> bool:
        """
        Force a stale sync to failed.

        Re-checks staleness in the same statement so a heartbeat that landed
        after detection keeps the sync alive.
        """
        now = utc_now()
        with rls_context(None, is_internal=True):
            async with get_db_session() as session:
                rows = await session.execute(
                    text(
                        """
                        UPDATE sync_states
                        SET is_syncing = FALSE, last_failed_at = :now
                        WHERE team_id = :team_id
                          AND integration = :integration
                          AND is_syncing = TRUE
                          AND (last_heartbeat_at IS NULL OR last_heartbeat_at < :cutoff)
                        RETURNING team_id
                        """
                    ),
                    {
                        "team_id": team_id,
                        "integration": integration,
                        "now": now,
                        "cutoff": stale_cutoff(threshold_minutes, now),
                    },
                )
                return rows.first() is not None


_state_repo: SyncStateRepository | None = None


def get_sync_state_repo() -> SyncStateRepository:
    global _state_repo
    if _state_repo is None:
        _state_repo = SyncStateRepository()
    return _state_repo
