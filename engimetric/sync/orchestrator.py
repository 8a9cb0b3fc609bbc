"""
Sync Orchestrator

Runs one (team, integration) sync over a range of months:

1. Load the integration's settings; missing or disabled means nothing to do.
2. Load the team's members (with aliases) once.
3. Walk `months_back` months backward from `starting_month`, newest first.
   Each month: fetch raw records, process them into per-member deltas,
   additively merge them into the metrics store.

User-triggered syncs run every month inside one transaction under the user's
RLS identity, so a failure rolls back the whole call. Scheduler-triggered
syncs run under the internal identity with a short session per unit of work,
so no connection is held while waiting on the provider.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, Awaitable, Callable, Iterator, Sequence

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from engimetric.db.client import get_db_session
from engimetric.db.rls import rls_context
from engimetric.integrations.base import (
    DateRange,
    IntegrationAdapter,
    IntegrationSettings,
    MemberDeltas,
    RawRecord,
    parse_month,
)
from engimetric.integrations.settings_repo import IntegrationSettingsRepository, get_settings_repo
from engimetric.kernel.errors import ValidationError
from engimetric.metrics.store import MetricsStore, get_metrics_store, normalize_member_deltas
from engimetric.teams.models import TeamMember
from engimetric.teams.repo import TeamMemberRepository, get_member_repo

logger = structlog.get_logger()

DEFAULT_MONTHS_BACK = 12

FetchFn = Callable[[IntegrationSettings, DateRange], Awaitable[list[RawRecord]]]
ProcessFn = Callable[[Sequence[RawRecord], Sequence[TeamMember]], MemberDeltas]
SessionScope = Callable[[], AsyncContextManager[AsyncSession]]


class SyncResult(BaseModel):
    team_id: int
    integration: str
    months_synced: list[str] = Field(default_factory=list)
    months_skipped: list[str] = Field(default_factory=list)
    records_fetched: int = 0
    members_updated: int = 0
    skipped_reason: str | None = None


def month_range(starting_month: str, months_back: int) -> Iterator[tuple[str, DateRange]]:
    """Yield (YYYY-MM, calendar range) for `months_back` months, newest first."""
    if months_back < 1:
        raise ValidationError(message="months_back must be at least 1", code="sync.invalid_months_back")
    year, month = parse_month(starting_month)
    for _ in range(months_back):
        label = f"{year:04d}-{month:02d}"
        yield label, DateRange.for_month(label)
        month -= 1
        if month == 0:
            year, month = year - 1, 12


def build_adapter_sync(adapter: IntegrationAdapter) -> tuple[FetchFn, ProcessFn]:
    """The (fetch, process) pair the orchestrator expects, bound to an adapter."""
    return adapter.fetch_data, adapter.process_records


def _reuse(session: AsyncSession) -> SessionScope:
    @asynccontextmanager
    async def _scope():
        yield session

    return _scope


async def _run_months(
    *,
    team_id: int,
    integration_name: str,
    starting_month: str,
    fetch_fn: FetchFn,
    process_fn: ProcessFn,
    months_back: int,
    session_scope: SessionScope,
    settings_repo: IntegrationSettingsRepository,
    member_repo: TeamMemberRepository,
    metrics_store: MetricsStore,
) -> SyncResult:
    result = SyncResult(team_id=team_id, integration=integration_name)
    months = list(month_range(starting_month, months_back))

    async with session_scope() as session:
        settings = await settings_repo.fetch_integration(session, team_id, integration_name)
        if settings is None:
            logger.info("Integration not configured, nothing to sync", team_id=team_id, integration=integration_name)
            result.skipped_reason = "not_configured"
            return result
        if not settings.enabled:
            logger.info("Integration disabled, nothing to sync", team_id=team_id, integration=integration_name)
            result.skipped_reason = "disabled"
            return result
        members = await member_repo.list_with_aliases(session, team_id)

    for month, date_range in months:
        records = await fetch_fn(settings, date_range)
        if not records:
            logger.warning("No data returned for month", team_id=team_id, integration=integration_name, month=month)
            result.months_skipped.append(month)
            continue

        result.records_fetched += len(records)
        processed = process_fn(records, members)
        deltas = normalize_member_deltas(processed, integration_name)
        if deltas:
            async with session_scope() as session:
                result.members_updated += await metrics_store.save_data(session, team_id, deltas, month)
        result.months_synced.append(month)
        logger.info(
            "Synced month",
            team_id=team_id,
            integration=integration_name,
            month=month,
            records=len(records),
            members=len(deltas),
        )

    return result


async def sync_integration_data(
    team_id: int,
    integration_name: str,
    starting_month: str,
    fetch_fn: FetchFn,
    process_fn: ProcessFn,
    months_back: int = DEFAULT_MONTHS_BACK,
    acting_user_id: int | None = None,
    *,
    settings_repo: IntegrationSettingsRepository | None = None,
    member_repo: TeamMemberRepository | None = None,
    metrics_store: MetricsStore | None = None,
) -> SyncResult:
    """
    Sync `integration_name` for `team_id` over `months_back` months ending at `starting_month`.

    Errors from fetching (including missing credentials) propagate to the caller.
    """
    kwargs: dict[str, Any] = {
        "team_id": team_id,
        "integration_name": integration_name,
        "starting_month": starting_month,
        "fetch_fn": fetch_fn,
        "process_fn": process_fn,
        "months_back": months_back,
        "settings_repo": settings_repo or get_settings_repo(),
        "member_repo": member_repo or get_member_repo(),
        "metrics_store": metrics_store or get_metrics_store(),
    }

    if acting_user_id is not None:
        with rls_context(acting_user_id):
            async with get_db_session() as session:
                return await _run_months(session_scope=_reuse(session), **kwargs)

    with rls_context(None, is_internal=True):
        return await _run_months(session_scope=get_db_session, **kwargs)
