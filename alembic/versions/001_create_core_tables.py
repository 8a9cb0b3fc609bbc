"""Create teams, members, settings and sync state tables.

Revision ID: 001_core_tables
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB

# revision identifiers, used by Alembic.
revision: str = "001_core_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "teams",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("owner_id", sa.Integer, nullable=True),
        sa.Column("is_frozen", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("frozen_reason", sa.Text, nullable=True),
        sa.Column("is_demo", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("teams_owner_idx", "teams", ["owner_id"])

    op.create_table(
        "user_teams",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, nullable=False),
        sa.Column("team_id", sa.Integer, sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(50), nullable=False, server_default="member"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "team_id", name="user_teams_user_team_unique"),
    )
    op.create_index("user_teams_user_idx", "user_teams", ["user_id"])
    op.create_index("user_teams_team_idx", "user_teams", ["team_id"])

    op.create_table(
        "team_members",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("team_id", sa.Integer, sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("user_id", sa.Integer, nullable=True),
        sa.Column("aliases", ARRAY(sa.Text), nullable=False, server_default="{}"),
        sa.Column("metrics", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("team_members_team_idx", "team_members", ["team_id"])

    op.create_table(
        "settings",
        sa.Column("team_id", sa.Integer, sa.ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("integrations", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "sync_states",
        sa.Column("team_id", sa.Integer, sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
        sa.Column("integration", sa.String(50), nullable=False),
        sa.Column("is_syncing", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("team_id", "integration", name="sync_states_pkey"),
    )
    op.create_index(
        "sync_states_running_heartbeat_idx",
        "sync_states",
        ["is_syncing", "last_heartbeat_at"],
    )

    # Team-scoped tables are visible to members of the team (app.current_user_id)
    # or to internal work (app.is_internal).
    for table in ("team_members", "settings", "sync_states"):
        op.execute(
            f"""
            DO $$
            BEGIN
                EXECUTE 'ALTER TABLE {table} ENABLE ROW LEVEL SECURITY';
                EXECUTE 'ALTER TABLE {table} FORCE ROW LEVEL SECURITY';
                EXECUTE 'CREATE POLICY {table}_team_isolation ON {table}
                         USING (
                            current_setting(''app.is_internal'', true) = ''true''
                            OR team_id IN (
                                SELECT ut.team_id FROM user_teams ut
                                WHERE ut.user_id::text = current_setting(''app.current_user_id'', true)
                            )
                         )';
            END
            $$;
            """
        )


def downgrade() -> None:
    for table in ("sync_states", "settings", "team_members"):
        op.execute(f"DROP POLICY IF EXISTS {table}_team_isolation ON {table}")
    op.drop_index("sync_states_running_heartbeat_idx", table_name="sync_states")
    op.drop_table("sync_states")
    op.drop_table("settings")
    op.drop_index("team_members_team_idx", table_name="team_members")
    op.drop_table("team_members")
    op.drop_index("user_teams_team_idx", table_name="user_teams")
    op.drop_index("user_teams_user_idx", table_name="user_teams")
    op.drop_table("user_teams")
    op.drop_index("teams_owner_idx", table_name="teams")
    op.drop_table("teams")
