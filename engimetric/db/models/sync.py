"""Sync state model: one lock/observability row per (team, integration)."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String

from engimetric.db.models.teams import Base


class SyncStateRecord(Base):
    __tablename__ = "sync_states"
    __table_args__ = (
        Index("sync_states_running_heartbeat_idx", "is_syncing", "last_heartbeat_at"),
    )

    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True)
    integration = Column(String(50), primary_key=True)

    is_syncing = Column(Boolean, nullable=False, default=False)
    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_failed_at = Column(DateTime(timezone=True), nullable=True)
