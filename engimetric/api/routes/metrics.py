"""
Metrics API Routes

Read-only views over the caller's team member metrics.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from engimetric.api.auth import AuthContext, get_auth_context
from engimetric.db.client import get_db_session
from engimetric.integrations.base import parse_month
from engimetric.kernel.errors import ValidationError
from engimetric.metrics.aggregation import (
    AggregatedMetrics,
    ContributionRow,
    MetricFilter,
    get_aggregated_metrics,
    get_contributions,
)
from engimetric.teams.models import TeamMember
from engimetric.teams.repo import get_member_repo

router = APIRouter(prefix="/metrics", tags=["Metrics"])


class ContributionsResponse(BaseModel):
    start: str
    end: str
    contributions: list[ContributionRow]


async def _load_members(team_id: int) -> list[TeamMember]:
    async with get_db_session() as session:
        return await get_member_repo().list_with_aliases(session, team_id)


@router.get("", response_model=AggregatedMetrics)
async def get_metrics(
    month: str | None = Query(None, description="Only this month (YYYY-MM)"),
    integration: str | None = Query(None, description="Only this integration"),
    metric: str | None = Query(None, description="Only this metric"),
    ctx: AuthContext = Depends(get_auth_context),
) -> AggregatedMetrics:
    if month:
        parse_month(month)
    members = await _load_members(ctx.team_id)
    return get_aggregated_metrics(
        members,
        MetricFilter(month=month, integration=integration, metric=metric),
    )


@router.get("/contributions", response_model=ContributionsResponse)
async def get_team_contributions(
    start: str = Query(..., description="First month (YYYY-MM)"),
    end: str = Query(..., description="Last month (YYYY-MM)"),
    integration: str | None = Query(None),
    ctx: AuthContext = Depends(get_auth_context),
) -> ContributionsResponse:
    if parse_month(start) > parse_month(end):
        raise ValidationError(message="start must not be after end", code="metrics.invalid_range")
    members = await _load_members(ctx.team_id)
    return ContributionsResponse(
        start=start,
        end=end,
        contributions=get_contributions(members, start, end, integration),
    )
