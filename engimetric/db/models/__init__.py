"""Database models."""

from engimetric.db.models.teams import (
    Base,
    Team,
    TeamMember,
    TeamSettings,
    UserTeam,
)
from engimetric.db.models.sync import SyncStateRecord

__all__ = [
    "Base",
    "Team",
    "TeamMember",
    "TeamSettings",
    "UserTeam",
    "SyncStateRecord",
]
