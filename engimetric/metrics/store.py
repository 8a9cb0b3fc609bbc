"""
Metrics Store

Additive merge of metric deltas into `team_members.metrics`
(month -> integration -> metric -> non-negative int).

`save_data` is not idempotent: saving the same deltas twice counts them
twice. Callers hold the (team, integration) sync lock so each month is
written at most once per sync cycle.
"""

from __future__ import annotations

import copy
import json
import math
from typing import Any, Mapping

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from engimetric.teams.repo import coerce_json

logger = structlog.get_logger()

# integration -> metric -> value
IntegrationDeltas = dict[str, dict[str, int]]
# member id -> integration -> metric -> value
TeamDeltas = dict[int, IntegrationDeltas]


def coerce_metric_value(value: Any) -> int | None:
    """Return `value` as a non-negative int, or None if it cannot be stored."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer() or value < 0:
            return None
        return int(value)
    return None


def normalize_member_deltas(
    processed: Mapping[Any, Mapping[str, Any]] | None,
    integration: str,
) -> TeamDeltas:
    """
    Turn adapter output (member id -> metric -> value) into store deltas.

    Values that are not non-negative integers are dropped one metric at a
    time with a warning; the rest of the batch is kept.
    """
    deltas: TeamDeltas = {}
    for raw_member_id, metrics in (processed or {}).items():
        try:
            member_id = int(raw_member_id)
        except (TypeError, ValueError):
            logger.warning("Dropping deltas for invalid member id", integration=integration, member_id=raw_member_id)
            continue
        clean: dict[str, int] = {}
        for metric, value in (metrics or {}).items():
            number = coerce_metric_value(value)
            if number is None:
                logger.warning(
                    "Dropping non-numeric metric value",
                    integration=integration,
                    member_id=member_id,
                    metric=metric,
                    value=repr(value),
                )
                continue
            clean[metric] = clean.get(metric, 0) + number
        if clean:
            deltas.setdefault(member_id, {})[integration] = clean
    return deltas


def merge_metric_deltas(
    existing: Mapping[str, Any] | None,
    deltas: Mapping[str, Mapping[str, Any]],
    month: str,
) -> dict[str, Any]:
    """Return a new metrics structure with `deltas` added under `month`. Never mutates `existing`."""
    merged: dict[str, Any] = copy.deepcopy(dict(existing or {}))
    month_bucket = merged.setdefault(month, {})
    for integration, metrics in deltas.items():
        integration_bucket = month_bucket.setdefault(integration, {})
        for metric, value in metrics.items():
            number = coerce_metric_value(value)
            if number is None:
                logger.warning(
                    "Dropping non-numeric metric value",
                    integration=integration,
                    metric=metric,
                    month=month,
                )
                continue
            current = coerce_metric_value(integration_bucket.get(metric, 0)) or 0
            integration_bucket[metric] = current + number
    return merged


class MetricsStore:
    """Database-backed writes to team member metrics."""

    async def save_data(
        self,
        session: AsyncSession,
        team_id: int,
        deltas: TeamDeltas,
        month: str,
    ) -> int:
        """
        Add `deltas` into every affected member of `team_id` for `month`.

        Rows are locked for the rest of the caller's transaction. Deltas for
        members outside the team are ignored. Returns the number of members written.
        """
        if not deltas:
            return 0

        rows = await session.execute(
            text(
                """
                SELECT id, metrics
                FROM team_members
                WHERE team_id = :team_id
                FOR UPDATE
                """
            ),
            {"team_id": team_id},
        )
        current = {int(row["id"]): coerce_json(row.get("metrics")) for row in rows.mappings().all()}

        unknown = sorted(set(deltas) - set(current))
        if unknown:
            logger.warning(
                "Ignoring deltas for members outside team",
                team_id=team_id,
                member_ids=unknown,
            )

        updated = 0
        for member_id, member_deltas in deltas.items():
            if member_id not in current:
                continue
            merged = merge_metric_deltas(current[member_id], member_deltas, month)
            await session.execute(
                text(
                    """
                    UPDATE team_members
                    SET metrics = CAST(:metrics AS JSONB), updated_at = NOW()
                    WHERE id = :member_id AND team_id = :team_id
                    """
                ),
                {"metrics": json.dumps(merged), "member_id": member_id, "team_id": team_id},
            )
            updated += 1

        logger.info("Saved metric deltas", team_id=team_id, month=month, members=updated)
        return updated


_metrics_store: MetricsStore | None = None


def get_metrics_store() -> MetricsStore:
    global _metrics_store
    if _metrics_store is None:
        _metrics_store = MetricsStore()
    return _metrics_store
