"""Read-path aggregation over member metrics."""

from __future__ import annotations

from typing import Iterable, Sequence

from pydantic import BaseModel, Field

from engimetric.integrations.catalogue import non_additive_metrics
from engimetric.metrics.store import coerce_metric_value
from engimetric.teams.models import TeamMember


class MetricFilter(BaseModel):
    month: str | None = None
    integration: str | None = None
    metric: str | None = None


class AggregatedMetrics(BaseModel):
    # full name -> month -> total of additive metrics
    summary: dict[str, dict[str, int]] = Field(default_factory=dict)
    # full name -> month -> integration -> metric -> value
    detailed: dict[str, dict[str, dict[str, dict[str, int]]]] = Field(default_factory=dict)


class ContributionRow(BaseModel):
    member_id: int
    full_name: str
    month: str
    integration: str
    metrics: dict[str, int]


def _iter_metrics(
    member: TeamMember,
    filters: MetricFilter,
) -> Iterable[tuple[str, str, str, int]]:
    for month, integrations in (member.metrics or {}).items():
        if filters.month and month != filters.month:
            continue
        if not isinstance(integrations, dict):
            continue
        for integration, metrics in integrations.items():
            if filters.integration and integration != filters.integration:
                continue
            if not isinstance(metrics, dict):
                continue
            for metric, value in metrics.items():
                if filters.metric and metric != filters.metric:
                    continue
                number = coerce_metric_value(value)
                if number is None:
                    continue
                yield month, integration, metric, number


def get_aggregated_metrics(
    team_members: Sequence[TeamMember],
    filters: MetricFilter | None = None,
    *,
    non_additive: frozenset[str] | None = None,
) -> AggregatedMetrics:
    """
    Summarize members' metrics.

    Members are keyed by full name; members sharing a name are folded together.
    The summary skips non-additive metrics, the detailed view keeps everything.
    """
    filters = filters or MetricFilter()
    excluded = non_additive if non_additive is not None else non_additive_metrics()
    result = AggregatedMetrics()

    for member in team_members:
        name = member.full_name
        for month, integration, metric, value in _iter_metrics(member, filters):
            month_summary = result.summary.setdefault(name, {})
            month_summary.setdefault(month, 0)
            if metric not in excluded:
                month_summary[month] += value

            bucket = (
                result.detailed.setdefault(name, {})
                .setdefault(month, {})
                .setdefault(integration, {})
            )
            bucket[metric] = bucket.get(metric, 0) + value

    return result


def get_contributions(
    team_members: Sequence[TeamMember],
    start_month: str,
    end_month: str,
    integration: str | None = None,
) -> list[ContributionRow]:
    """Flattened per member/month/integration rows for an inclusive month range."""
    rows: list[ContributionRow] = []
    for member in team_members:
        grouped: dict[tuple[str, str], dict[str, int]] = {}
        for month, name, metric, value in _iter_metrics(member, MetricFilter(integration=integration)):
            # YYYY-MM compares correctly as a string
            if not start_month <= month <= end_month:
                continue
            grouped.setdefault((month, name), {})[metric] = value
        for (month, name), metrics in sorted(grouped.items()):
            rows.append(
                ContributionRow(
                    member_id=member.id,
                    full_name=member.full_name,
                    month=month,
                    integration=name,
                    metrics=metrics,
                )
            )
    return rows
