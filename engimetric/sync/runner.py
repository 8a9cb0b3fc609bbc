"""
Tracked Sync Runner

Wraps one orchestrator call in the sync-state lifecycle:

    check lock -> claim lock -> heartbeat -> run -> mark complete / failed

A pair that is already running is skipped with a warning. The claim is an
atomic conditional upsert, so of several concurrent starts exactly one runs.
Its `last_started_at` travels with the run: heartbeat and completion writes
only touch the row while that claim is still the current one.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Awaitable, Callable

import structlog
from pydantic import BaseModel

from engimetric.config import get_settings
from engimetric.db.client import get_db_session
from engimetric.db.rls import rls_context
from engimetric.integrations.registry import AdapterRegistry, get_registry
from engimetric.kernel.errors import NotFoundError, TeamFrozenError
from engimetric.sync.heartbeat import heartbeat
from engimetric.sync.orchestrator import (
    DEFAULT_MONTHS_BACK,
    SyncResult,
    build_adapter_sync,
    sync_integration_data,
)
from engimetric.sync.state_repo import SyncStateRepository, get_sync_state_repo
from engimetric.teams.repo import TeamRepository, get_team_repo

logger = structlog.get_logger()

SyncRunner = Callable[[], Awaitable[SyncResult]]


class TrackedSyncStatus(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TrackedSyncOutcome(BaseModel):
    team_id: int
    integration: str
    status: TrackedSyncStatus
    result: SyncResult | None = None
    error: str | None = None


async def _mark_failed_quietly(
    state_repo: SyncStateRepository,
    team_id: int,
    integration: str,
    started_at: datetime,
) -> None:
    try:
        await state_repo.mark_failed(team_id, integration, started_at=started_at)
    except Exception as exc:
        # The lock stays set; the stale reaper clears it once heartbeats stop.
        logger.error("Failed to mark sync failed", team_id=team_id, integration=integration, error=str(exc))


async def run_tracked_sync(
    team_id: int,
    integration: str,
    runner: SyncRunner,
    *,
    trigger: str = "scheduled",
    state_repo: SyncStateRepository | None = None,
    heartbeat_interval_seconds: float | None = None,
    raise_on_failure: bool = False,
) -> TrackedSyncOutcome:
    """
    Run `runner` holding the (team, integration) lock.

    Failures are logged and recorded as `last_failed_at`. They are re-raised
    only with `raise_on_failure` (user-triggered syncs surface the error).
    """
    state_repo = state_repo or get_sync_state_repo()
    interval = heartbeat_interval_seconds or get_settings().heartbeat_interval_seconds
    log = logger.bind(team_id=team_id, integration=integration, trigger=trigger)

    state = await state_repo.get_state(team_id, integration)
    if state is not None and state.is_syncing:
        log.warning("Sync already in progress, skipping")
        return TrackedSyncOutcome(team_id=team_id, integration=integration, status=TrackedSyncStatus.SKIPPED)

    started_at = await state_repo.try_mark_start(team_id, integration)
    if started_at is None:
        log.warning("Sync claimed by a concurrent run, skipping")
        return TrackedSyncOutcome(team_id=team_id, integration=integration, status=TrackedSyncStatus.SKIPPED)

    log.info("Sync started")
    try:
        async with heartbeat(
            team_id,
            integration,
            interval_seconds=interval,
            state_repo=state_repo,
            started_at=started_at,
        ):
            result = await runner()
    except asyncio.CancelledError:
        log.warning("Sync cancelled")
        await _mark_failed_quietly(state_repo, team_id, integration, started_at)
        raise
    except Exception as exc:
        log.error("Sync failed", error=str(exc), error_type=type(exc).__name__)
        await _mark_failed_quietly(state_repo, team_id, integration, started_at)
        if raise_on_failure:
            raise
        return TrackedSyncOutcome(
            team_id=team_id,
            integration=integration,
            status=TrackedSyncStatus.FAILED,
            error=str(exc),
        )

    try:
        await state_repo.mark_complete(team_id, integration, started_at=started_at)
    except Exception as exc:
        log.error("Failed to mark sync complete", error=str(exc))
    log.info(
        "Sync completed",
        months_synced=len(result.months_synced),
        records=result.records_fetched,
        skipped_reason=result.skipped_reason,
    )
    return TrackedSyncOutcome(
        team_id=team_id,
        integration=integration,
        status=TrackedSyncStatus.SUCCEEDED,
        result=result,
    )


async def trigger_user_sync(
    team_id: int,
    integration: str,
    month: str,
    *,
    acting_user_id: int,
    months_back: int = DEFAULT_MONTHS_BACK,
    registry: AdapterRegistry | None = None,
    team_repo: TeamRepository | None = None,
    state_repo: SyncStateRepository | None = None,
    sync_fn: Callable[..., Awaitable[SyncResult]] = sync_integration_data,
) -> TrackedSyncOutcome:
    """
    User-initiated sync (`sync-month` / `full-sync`).

    Rejects unknown integrations and frozen teams before anything is fetched
    or locked. Errors propagate so the HTTP layer can report them.
    """
    registry = registry or get_registry()
    team_repo = team_repo or get_team_repo()

    adapter = registry.get(integration)

    with rls_context(acting_user_id):
        async with get_db_session() as session:
            team = await team_repo.fetch_team_by_id(session, team_id)
    if team is None:
        raise NotFoundError(message="Team not found", code="team.not_found", meta={"team_id": team_id})
    if team.is_frozen:
        logger.warning("Rejected sync for frozen team", team_id=team_id, integration=integration)
        raise TeamFrozenError(team_id=team_id, reason=team.frozen_reason)

    fetch_fn, process_fn = build_adapter_sync(adapter)
    runner = partial(
        sync_fn,
        team_id,
        integration,
        month,
        fetch_fn,
        process_fn,
        months_back,
        acting_user_id=acting_user_id,
    )
    return await run_tracked_sync(
        team_id,
        integration,
        runner,
        trigger="user",
        state_repo=state_repo,
        raise_on_failure=True,
    )
