"""
Team Repository

Raw SQL reads over teams and team_members. Callers own the session so that a
sync can read and write inside one transaction.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from engimetric.teams.models import Team, TeamMember

logger = structlog.get_logger()


def coerce_json(value: Any) -> dict[str, Any]:
    """JSONB columns read through text() may arrive as str depending on driver codecs."""
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value) if value else {}
    return dict(value)


def _row_to_team(row: Any) -> Team:
    return Team(
        id=int(row["id"]),
        slug=str(row["slug"]),
        name=str(row["name"]),
        owner_id=row.get("owner_id"),
        is_frozen=bool(row.get("is_frozen") or False),
        frozen_reason=row.get("frozen_reason"),
    )


def _row_to_member(row: Any) -> TeamMember:
    return TeamMember(
        id=int(row["id"]),
        team_id=int(row["team_id"]),
        full_name=str(row["full_name"]),
        email=row.get("email"),
        user_id=row.get("user_id"),
        aliases=list(row.get("aliases") or []),
        metrics=coerce_json(row.get("metrics")),
    )


class TeamRepository:
    async def fetch_all_teams(self, session: AsyncSession) -> list[Team]:
        """All teams ordered by id, which keeps slot assignment stable across restarts."""
        rows = await session.execute(
            text(
                """
                SELECT id, slug, name, owner_id, is_frozen, frozen_reason
                FROM teams
                ORDER BY id ASC
                """
            )
        )
        return [_row_to_team(row) for row in rows.mappings().all()]

    async def fetch_team_by_id(self, session: AsyncSession, team_id: int) -> Team | None:
        rows = await session.execute(
            text(
                """
                SELECT id, slug, name, owner_id, is_frozen, frozen_reason
                FROM teams
                WHERE id = :team_id
                """
            ),
            {"team_id": team_id},
        )
        row = rows.mappings().first()
        return _row_to_team(row) if row else None


class TeamMemberRepository:
    async def list_with_aliases(self, session: AsyncSession, team_id: int) -> list[TeamMember]:
        rows = await session.execute(
            text(
                """
                SELECT id, team_id, full_name, email, user_id, aliases, metrics
                FROM team_members
                WHERE team_id = :team_id
                ORDER BY id ASC
                """
            ),
            {"team_id": team_id},
        )
        members = [_row_to_member(row) for row in rows.mappings().all()]
        logger.debug("Loaded team members", team_id=team_id, count=len(members))
        return members


_team_repo: TeamRepository | None = None
_member_repo: TeamMemberRepository | None = None


def get_team_repo() -> TeamRepository:
    global _team_repo
    if _team_repo is None:
        _team_repo = TeamRepository()
    return _team_repo


def get_member_repo() -> TeamMemberRepository:
    global _member_repo
    if _member_repo is None:
        _member_repo = TeamMemberRepository()
    return _member_repo
