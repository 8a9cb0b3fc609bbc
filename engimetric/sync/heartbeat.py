"""Scoped heartbeat task for a running sync."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Protocol

import structlog

logger = structlog.get_logger()


class HeartbeatTarget(Protocol):
    async def update_heartbeat(
        self,
        team_id: int,
        integration: str,
        *,
        started_at: datetime | None = None,
    ) -> bool: ...


async def _beat(
    team_id: int,
    integration: str,
    interval_seconds: float,
    state_repo: HeartbeatTarget,
    started_at: datetime | None,
) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            alive = await state_repo.update_heartbeat(team_id, integration, started_at=started_at)
        except Exception as exc:
            # A missed beat is recovered by the next one; the reaper only fires after several.
            logger.warning(
                "Failed to update sync heartbeat",
                team_id=team_id,
                integration=integration,
                error=str(exc),
            )
            continue
        if not alive:
            # Reaped or replaced by a newer claim; further beats would be ignored.
            logger.warning(
                "Sync claim lost, stopping heartbeat",
                team_id=team_id,
                integration=integration,
            )
            return


@asynccontextmanager
async def heartbeat(
    team_id: int,
    integration: str,
    *,
    interval_seconds: float,
    state_repo: HeartbeatTarget,
    started_at: datetime | None = None,
) -> AsyncIterator[asyncio.Task]:
    """
    Refresh `last_heartbeat_at` every `interval_seconds` while the block runs.

    `started_at` pins the beats to one claim. The task ends early once that
    claim is gone, and is cancelled and awaited on every exit, including
    cancellation of the enclosing task.
    """
    task = asyncio.create_task(_beat(team_id, integration, interval_seconds, state_repo, started_at))
    try:
        yield task
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
