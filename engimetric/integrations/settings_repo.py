"""
Integration Settings Repository

Reads the per-team `settings.integrations` blob and decrypts secret fields
on the way out.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from engimetric.integrations.base import IntegrationSettings
from engimetric.integrations.catalogue import INTEGRATION_CATALOGUE, build_default_settings
from engimetric.integrations.encryption import decrypt_integration_fields
from engimetric.teams.repo import coerce_json

logger = structlog.get_logger()


class IntegrationSettingsRepository:
    async def _load_blob(self, session: AsyncSession, team_id: int) -> dict[str, Any] | None:
        rows = await session.execute(
            text("SELECT integrations FROM settings WHERE team_id = :team_id"),
            {"team_id": team_id},
        )
        row = rows.mappings().first()
        if row is None:
            return None
        return coerce_json(row.get("integrations"))

    def _to_settings(self, name: str, raw: Any) -> IntegrationSettings:
        if not isinstance(raw, dict):
            logger.warning("Malformed integration settings entry", integration=name)
            return IntegrationSettings(enabled=False)
        values = decrypt_integration_fields(raw, INTEGRATION_CATALOGUE.get(name))
        return IntegrationSettings(**values)

    async def fetch_settings(self, session: AsyncSession, team_id: int) -> dict[str, IntegrationSettings] | None:
        """All integrations for a team, or None when the team has no settings row."""
        blob = await self._load_blob(session, team_id)
        if blob is None:
            return None
        return {name: self._to_settings(name, raw) for name, raw in blob.items()}

    async def fetch_integration(
        self,
        session: AsyncSession,
        team_id: int,
        integration: str,
    ) -> IntegrationSettings | None:
        blob = await self._load_blob(session, team_id)
        if blob is None or integration not in blob:
            return None
        return self._to_settings(integration, blob[integration])

    async def fetch_enabled_names(self, session: AsyncSession, team_id: int) -> list[str]:
        """Enabled integration names, read without decrypting anything."""
        blob = await self._load_blob(session, team_id) or {}
        return [
            name
            for name, raw in blob.items()
            if isinstance(raw, dict) and bool(raw.get("enabled"))
        ]

    async def create_defaults(self, session: AsyncSession, team_id: int) -> None:
        """Insert the default settings row for a new team; existing rows are left alone."""
        await session.execute(
            text(
                """
                INSERT INTO settings (team_id, integrations, updated_at)
                VALUES (:team_id, CAST(:integrations AS JSONB), NOW())
                ON CONFLICT (team_id) DO NOTHING
                """
            ),
            {"team_id": team_id, "integrations": json.dumps(build_default_settings())},
        )


_settings_repo: IntegrationSettingsRepository | None = None


def get_settings_repo() -> IntegrationSettingsRepository:
    global _settings_repo
    if _settings_repo is None:
        _settings_repo = IntegrationSettingsRepository()
    return _settings_repo
