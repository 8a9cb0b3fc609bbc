"""Team read models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class Team(BaseModel):
    id: int
    slug: str
    name: str
    owner_id: int | None = None
    is_frozen: bool = False
    frozen_reason: str | None = None


class TeamMember(BaseModel):
    """A tracked contributor with the aliases used to match provider records."""

    id: int
    team_id: int
    full_name: str
    email: str | None = None
    user_id: int | None = None
    aliases: list[str] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)

    def matches_alias(self, identity: str | None) -> bool:
        """Exact, case-sensitive match against the member's aliases."""
        if not identity:
            return False
        return identity in self.aliases
