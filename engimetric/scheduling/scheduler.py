"""
Sync Scheduler

Registers one daily cron trigger per team at its slot, runs the stale-sync
reaper on an interval plus a daily sweep, and optionally rebuilds slots on a
timer so teams created after startup get picked up.

Each (team, integration) sync is an isolated failure domain: errors are
logged per pair and never stop other pairs or the scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Sequence

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from engimetric.config import Settings, get_settings
from engimetric.db.client import get_db_session
from engimetric.db.rls import rls_context
from engimetric.integrations.registry import AdapterRegistry, get_registry
from engimetric.integrations.settings_repo import IntegrationSettingsRepository, get_settings_repo
from engimetric.kernel.time import current_month
from engimetric.scheduling.slots import SlotAssignment, assign_slots, overloaded_slots
from engimetric.sync.orchestrator import SyncResult, build_adapter_sync, sync_integration_data
from engimetric.sync.runner import TrackedSyncOutcome, run_tracked_sync
from engimetric.sync.state import SyncState
from engimetric.sync.state_repo import SyncStateRepository, get_sync_state_repo
from engimetric.teams.repo import TeamRepository, get_team_repo

logger = structlog.get_logger()

REAPER_JOB_ID = "stale_sync_reaper"
SWEEP_JOB_ID = "stale_sync_daily_sweep"
REBUILD_JOB_ID = "slot_rebuild"


def team_job_id(team_id: int) -> str:
    return f"team_sync_{team_id}"


@dataclass(frozen=True)
class TeamRegistration:
    team_id: int
    job_id: str
    assignment: SlotAssignment


class SchedulerState:
    """Registered team triggers keyed by team id. Owned by one SyncScheduler."""

    def __init__(self) -> None:
        self._registrations: dict[int, TeamRegistration] = {}

    def register(self, registration: TeamRegistration) -> None:
        self._registrations[registration.team_id] = registration

    def unregister(self, team_id: int) -> TeamRegistration | None:
        return self._registrations.pop(team_id, None)

    def get(self, team_id: int) -> TeamRegistration | None:
        return self._registrations.get(team_id)

    def team_ids(self) -> list[int]:
        return sorted(self._registrations)

    def __contains__(self, team_id: object) -> bool:
        return team_id in self._registrations

    def __len__(self) -> int:
        return len(self._registrations)


class SyncScheduler:
    """
    Supervisor for scheduled team syncs.

    Example usage:
        scheduler = SyncScheduler()
        await scheduler.start()
        ...
        await scheduler.rebuild_slots()   # pick up new/deleted teams
        ...
        await scheduler.shutdown()
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        scheduler: AsyncIOScheduler | None = None,
        registry: AdapterRegistry | None = None,
        state_repo: SyncStateRepository | None = None,
        team_repo: TeamRepository | None = None,
        settings_repo: IntegrationSettingsRepository | None = None,
        sync_fn: Callable[..., Awaitable[SyncResult]] = sync_integration_data,
    ) -> None:
        self.settings = settings or get_settings()
        self._scheduler = scheduler or AsyncIOScheduler(timezone=self.settings.scheduler_timezone)
        self._registry = registry
        self._state_repo = state_repo or get_sync_state_repo()
        self._team_repo = team_repo or get_team_repo()
        self._settings_repo = settings_repo or get_settings_repo()
        self._sync_fn = sync_fn
        self.state = SchedulerState()

    @property
    def registry(self) -> AdapterRegistry:
        if self._registry is None:
            self._registry = get_registry()
        return self._registry

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    async def start(self) -> None:
        """Start the scheduler, register maintenance jobs and one trigger per team."""
        if self._scheduler.running:
            return
        self._scheduler.start()
        self._register_maintenance_jobs()
        await self.rebuild_slots()
        logger.info("Sync scheduler started", teams=len(self.state))

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
            logger.info("Sync scheduler shutdown")

    def _register_maintenance_jobs(self) -> None:
        settings = self.settings
        self._scheduler.add_job(
            self.reap_stale_syncs,
            trigger=IntervalTrigger(minutes=settings.stale_reaper_interval_minutes),
            id=REAPER_JOB_ID,
            name="Stale sync reaper",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.add_job(
            self.reap_stale_syncs,
            trigger=CronTrigger(
                hour=settings.stale_sweep_hour,
                minute=settings.stale_sweep_minute,
                timezone=settings.scheduler_timezone,
            ),
            id=SWEEP_JOB_ID,
            name="Stale sync daily sweep",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if settings.slot_rebuild_interval_minutes > 0:
            self._scheduler.add_job(
                self._rebuild_job,
                trigger=IntervalTrigger(minutes=settings.slot_rebuild_interval_minutes),
                id=REBUILD_JOB_ID,
                name="Slot rebuild",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def load_team_ids(self) -> list[int]:
        with rls_context(None, is_internal=True):
            async with get_db_session() as session:
                teams = await self._team_repo.fetch_all_teams(session)
        return [team.id for team in teams]

    def register_team(self, assignment: SlotAssignment) -> TeamRegistration:
        """Add (or move) the daily trigger for a team."""
        job_id = team_job_id(assignment.team_id)
        self._scheduler.add_job(
            self.run_team_sync,
            trigger=CronTrigger(
                hour=assignment.hour,
                minute=assignment.minute,
                timezone=self.settings.scheduler_timezone,
            ),
            args=[assignment.team_id],
            id=job_id,
            name=f"Daily sync for team {assignment.team_id}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        registration = TeamRegistration(team_id=assignment.team_id, job_id=job_id, assignment=assignment)
        self.state.register(registration)
        return registration

    def unregister_team(self, team_id: int) -> bool:
        registration = self.state.unregister(team_id)
        if registration is None:
            return False
        if self._scheduler.get_job(registration.job_id):
            self._scheduler.remove_job(registration.job_id)
        logger.info("Unregistered team sync", team_id=team_id)
        return True

    async def rebuild_slots(self, team_ids: Sequence[int] | None = None) -> dict[int, SlotAssignment]:
        """
        Recompute slots from the ordered team list and reconcile registered triggers.

        Teams no longer present are unregistered; triggers whose slot did not
        change are left untouched.
        """
        settings = self.settings
        if team_ids is None:
            team_ids = await self.load_team_ids()

        assignments = assign_slots(
            list(team_ids),
            slots=settings.total_sync_slots,
            window_start_hour=settings.sync_window_start_hour,
            slot_minutes=settings.sync_slot_minutes,
        )

        if settings.max_teams_per_slot:
            crowded = overloaded_slots(assignments.values(), settings.max_teams_per_slot)
            if crowded:
                logger.warning(
                    "Sync slots exceed max teams per slot",
                    max_teams_per_slot=settings.max_teams_per_slot,
                    slots=len(crowded),
                    teams=sum(len(ids) for ids in crowded.values()),
                )

        for team_id in set(self.state.team_ids()) - set(assignments):
            self.unregister_team(team_id)

        changed = 0
        for team_id, assignment in assignments.items():
            existing = self.state.get(team_id)
            if existing is not None and existing.assignment == assignment:
                continue
            self.register_team(assignment)
            changed += 1

        logger.info(
            "Sync slots rebuilt",
            teams=len(assignments),
            changed=changed,
            total_slots=settings.total_sync_slots,
        )
        return assignments

    async def _rebuild_job(self) -> None:
        try:
            await self.rebuild_slots()
        except Exception as exc:
            logger.error("Slot rebuild failed", error=str(exc))

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_team_sync(self, team_id: int) -> list[TrackedSyncOutcome]:
        """
        Daily trigger: sync every enabled integration that has an adapter.

        Frozen teams, and teams deleted since their slot was assigned, are
        skipped without touching any sync state.
        """
        try:
            with rls_context(None, is_internal=True):
                async with get_db_session() as session:
                    team = await self._team_repo.fetch_team_by_id(session, team_id)
                    if team is None or team.is_frozen:
                        enabled = []
                    else:
                        enabled = await self._settings_repo.fetch_enabled_names(session, team_id)
        except Exception as exc:
            logger.error("Failed to load team settings for sync", team_id=team_id, error=str(exc))
            return []

        if team is None:
            logger.warning("Team not found, skipping scheduled sync", team_id=team_id)
            return []
        if team.is_frozen:
            logger.warning("Team is frozen, skipping scheduled sync", team_id=team_id, reason=team.frozen_reason)
            return []

        month = current_month()
        outcomes: list[TrackedSyncOutcome] = []
        for integration in enabled:
            if not self.registry.has(integration):
                logger.warning("No adapter for enabled integration, skipping", team_id=team_id, integration=integration)
                continue
            fetch_fn, process_fn = build_adapter_sync(self.registry.get(integration))
            runner = partial(
                self._sync_fn,
                team_id,
                integration,
                month,
                fetch_fn,
                process_fn,
                self.settings.scheduled_months_back,
            )
            try:
                outcome = await run_tracked_sync(
                    team_id,
                    integration,
                    runner,
                    trigger="scheduled",
                    state_repo=self._state_repo,
                    heartbeat_interval_seconds=self.settings.heartbeat_interval_seconds,
                )
            except Exception as exc:
                logger.error(
                    "Scheduled sync errored before start",
                    team_id=team_id,
                    integration=integration,
                    error=str(exc),
                )
                continue
            outcomes.append(outcome)
        return outcomes

    async def reap_stale_syncs(self) -> list[SyncState]:
        """Force every stale running sync to failed. Returns the reaped rows."""
        threshold = self.settings.stale_sync_threshold_minutes
        try:
            stale = await self._state_repo.detect_stale(threshold)
        except Exception as exc:
            logger.error("Failed to detect stale syncs", error=str(exc))
            return []

        reaped: list[SyncState] = []
        for state in stale:
            try:
                if await self._state_repo.mark_stale_failed(state.team_id, state.integration, threshold):
                    reaped.append(state)
                    logger.warning(
                        "Reaped stale sync",
                        team_id=state.team_id,
                        integration=state.integration,
                        last_heartbeat_at=state.last_heartbeat_at.isoformat() if state.last_heartbeat_at else None,
                    )
            except Exception as exc:
                logger.error(
                    "Failed to reap stale sync",
                    team_id=state.team_id,
                    integration=state.integration,
                    error=str(exc),
                )

        if reaped:
            logger.warning("Stale syncs reaped", count=len(reaped))
        return reaped

    def list_scheduled_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
            }
            for job in self._scheduler.get_jobs()
        ]


_scheduler: SyncScheduler | None = None


def get_scheduler() -> SyncScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = SyncScheduler()
    return _scheduler


async def init_scheduler() -> SyncScheduler:
    scheduler = get_scheduler()
    await scheduler.start()
    return scheduler


async def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        await _scheduler.shutdown()
        _scheduler = None
