"""
Team Database Models

SQLAlchemy models for the tenant boundary: teams, their users, tracked
members and the per-team integration settings blob.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Team(Base):
    """Tenant unit owning members, settings and sync state."""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(Integer, nullable=True, index=True)

    # Freezing blocks all writes and syncs
    is_frozen = Column(Boolean, nullable=False, default=False)
    frozen_reason = Column(Text, nullable=True)
    is_demo = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    members = relationship("TeamMember", back_populates="team", cascade="all, delete-orphan")
    settings = relationship("TeamSettings", back_populates="team", uselist=False, cascade="all, delete-orphan")


class UserTeam(Base):
    """Membership of an application user in a team (drives RLS)."""

    __tablename__ = "user_teams"
    __table_args__ = (UniqueConstraint("user_id", "team_id", name="user_teams_user_team_unique"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(50), nullable=False, default="member")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TeamMember(Base):
    """
    A tracked contributor.

    `metrics` is nested as month (YYYY-MM) -> integration -> metric -> int.
    """

    __tablename__ = "team_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    user_id = Column(Integer, nullable=True)
    aliases = Column(ARRAY(Text), nullable=False, default=list)
    metrics = Column(JSONB, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    team = relationship("Team", back_populates="members")


class TeamSettings(Base):
    """One row per team; `integrations` maps integration name -> {enabled, ...fields}."""

    __tablename__ = "settings"

    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True)
    integrations = Column(JSONB, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    team = relationship("Team", back_populates="settings")
