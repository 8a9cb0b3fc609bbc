"""
Integration Sync API Routes

- POST /integrations/{integration}/sync-month  quick sync of one month
- POST /integrations/{integration}/full-sync   re-sync the last 12 months
- GET  /integrations/{integration}/sync-state  lock and timestamps for the caller's team
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from engimetric.api.auth import AuthContext, get_auth_context
from engimetric.kernel.errors import EngimetricError, SyncInProgressError
from engimetric.kernel.time import current_month
from engimetric.sync.runner import TrackedSyncOutcome, TrackedSyncStatus, trigger_user_sync
from engimetric.sync.state_repo import get_sync_state_repo

logger = structlog.get_logger()

router = APIRouter(prefix="/integrations", tags=["Integrations"])

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
FULL_SYNC_MONTHS = 12


class SyncMonthRequest(BaseModel):
    month: str = Field(..., pattern=MONTH_PATTERN, description="Month to sync (YYYY-MM)")


class FullSyncRequest(BaseModel):
    month: str | None = Field(None, pattern=MONTH_PATTERN, description="Newest month (defaults to current)")


class SyncResponse(BaseModel):
    message: str
    team_id: int
    integration: str
    status: TrackedSyncStatus
    months_synced: list[str] = Field(default_factory=list)
    months_skipped: list[str] = Field(default_factory=list)
    records_fetched: int = 0
    members_updated: int = 0
    skipped_reason: str | None = None


class SyncStateResponse(BaseModel):
    team_id: int
    integration: str
    status: str
    is_syncing: bool
    last_started_at: datetime | None = None
    last_heartbeat_at: datetime | None = None
    last_synced_at: datetime | None = None
    last_failed_at: datetime | None = None


def _to_response(outcome: TrackedSyncOutcome, message: str) -> SyncResponse:
    result = outcome.result
    return SyncResponse(
        message=message,
        team_id=outcome.team_id,
        integration=outcome.integration,
        status=outcome.status,
        months_synced=result.months_synced if result else [],
        months_skipped=result.months_skipped if result else [],
        records_fetched=result.records_fetched if result else 0,
        members_updated=result.members_updated if result else 0,
        skipped_reason=result.skipped_reason if result else None,
    )


async def _run_user_sync(
    ctx: AuthContext,
    integration: str,
    month: str,
    months_back: int,
) -> TrackedSyncOutcome:
    try:
        outcome = await trigger_user_sync(
            ctx.team_id,
            integration,
            month,
            acting_user_id=ctx.user_id,
            months_back=months_back,
        )
    except EngimetricError:
        raise
    except Exception as exc:
        logger.error(
            "User sync failed",
            team_id=ctx.team_id,
            integration=integration,
            month=month,
            error=str(exc),
        )
        raise HTTPException(status_code=500, detail=f"Failed to sync {integration} data: {exc}") from exc

    if outcome.status == TrackedSyncStatus.SKIPPED:
        raise SyncInProgressError(team_id=ctx.team_id, integration=integration)
    return outcome


@router.post("/{integration}/sync-month", response_model=SyncResponse)
async def sync_month(
    integration: str,
    request: SyncMonthRequest,
    ctx: AuthContext = Depends(get_auth_context),
) -> SyncResponse:
    outcome = await _run_user_sync(ctx, integration, request.month, 1)
    return _to_response(outcome, f"{integration} data synced for {request.month}")


@router.post("/{integration}/full-sync", response_model=SyncResponse)
async def full_sync(
    integration: str,
    request: FullSyncRequest | None = None,
    ctx: AuthContext = Depends(get_auth_context),
) -> SyncResponse:
    month = (request.month if request else None) or current_month()
    outcome = await _run_user_sync(ctx, integration, month, FULL_SYNC_MONTHS)
    return _to_response(outcome, f"Full {integration} sync completed")


@router.get("/{integration}/sync-state", response_model=SyncStateResponse)
async def get_sync_state(
    integration: str,
    ctx: AuthContext = Depends(get_auth_context),
) -> SyncStateResponse:
    state = await get_sync_state_repo().get_state(ctx.team_id, integration)
    if state is None:
        return SyncStateResponse(
            team_id=ctx.team_id,
            integration=integration,
            status="idle",
            is_syncing=False,
        )
    return SyncStateResponse(
        team_id=state.team_id,
        integration=state.integration,
        status=state.status.value,
        is_syncing=state.is_syncing,
        last_started_at=state.last_started_at,
        last_heartbeat_at=state.last_heartbeat_at,
        last_synced_at=state.last_synced_at,
        last_failed_at=state.last_failed_at,
    )
