"""
Unit tests for SyncScheduler.

APScheduler is replaced by a MagicMock so job registration can be asserted
without a running loop; repositories are in-memory fakes.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from engimetric.config import Settings
from engimetric.integrations.base import IntegrationSettings
from engimetric.integrations.catalogue import GITHUB, JIRA
from engimetric.integrations.registry import AdapterRegistry
from engimetric.scheduling.scheduler import (
    REAPER_JOB_ID,
    REBUILD_JOB_ID,
    SWEEP_JOB_ID,
    SyncScheduler,
    team_job_id,
)
from engimetric.sync.orchestrator import SyncResult
from engimetric.sync.runner import TrackedSyncStatus
from engimetric.sync.state import SyncState
from engimetric.teams.models import Team
from tests.support.db import fake_db_session
from tests.support.fakes import (
    FakeSettingsRepository,
    FakeSyncStateRepository,
    FakeTeamRepository,
    StaticAdapter,
)

pytestmark = pytest.mark.unit

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def patched_session():
    with patch("engimetric.scheduling.scheduler.get_db_session", fake_db_session()):
        yield


@pytest.fixture
def apscheduler():
    mock = MagicMock()
    mock.running = False
    mock.get_job.return_value = object()
    return mock


@pytest.fixture
def registry():
    registry = AdapterRegistry()
    registry.register(StaticAdapter(GITHUB))
    return registry


@pytest.fixture
def state_repo():
    return FakeSyncStateRepository(clock=lambda: NOW)


def _teams(*ids: int) -> FakeTeamRepository:
    return FakeTeamRepository([Team(id=i, slug=f"t{i}", name=f"Team {i}") for i in ids])


def _scheduler(apscheduler, registry, state_repo, *, settings=None, team_repo=None, settings_repo=None, sync_fn=None):
    return SyncScheduler(
        settings=settings or Settings(),
        scheduler=apscheduler,
        registry=registry,
        state_repo=state_repo,
        team_repo=team_repo or _teams(),
        settings_repo=settings_repo or FakeSettingsRepository(),
        sync_fn=sync_fn or AsyncMock(return_value=SyncResult(team_id=1, integration="GitHub")),
    )


def _job_ids(apscheduler) -> list[str]:
    return [c.kwargs["id"] for c in apscheduler.add_job.call_args_list]


class TestStart:
    @pytest.mark.asyncio
    async def test_registers_maintenance_and_team_jobs(self, apscheduler, registry, state_repo):
        scheduler = _scheduler(apscheduler, registry, state_repo, team_repo=_teams(1, 2))

        await scheduler.start()

        apscheduler.start.assert_called_once()
        ids = _job_ids(apscheduler)
        assert REAPER_JOB_ID in ids
        assert SWEEP_JOB_ID in ids
        assert REBUILD_JOB_ID not in ids
        assert team_job_id(1) in ids and team_job_id(2) in ids

    @pytest.mark.asyncio
    async def test_rebuild_job_registered_when_interval_set(self, apscheduler, registry, state_repo):
        settings = Settings(slot_rebuild_interval_minutes=15)
        scheduler = _scheduler(apscheduler, registry, state_repo, settings=settings)

        await scheduler.start()

        assert REBUILD_JOB_ID in _job_ids(apscheduler)

    @pytest.mark.asyncio
    async def test_daily_sweep_fires_at_configured_time(self, apscheduler, registry, state_repo):
        scheduler = _scheduler(apscheduler, registry, state_repo)

        await scheduler.start()

        sweep = next(c for c in apscheduler.add_job.call_args_list if c.kwargs["id"] == SWEEP_JOB_ID)
        trigger = str(sweep.kwargs["trigger"])
        assert "hour='23'" in trigger
        assert "minute='45'" in trigger


class TestRebuildSlots:
    @pytest.mark.asyncio
    async def test_team_jobs_use_slot_times(self, apscheduler, registry, state_repo):
        scheduler = _scheduler(apscheduler, registry, state_repo)

        assignments = await scheduler.rebuild_slots([5, 9])

        assert (assignments[5].hour, assignments[5].minute) == (0, 0)
        assert (assignments[9].hour, assignments[9].minute) == (0, 1)
        call = apscheduler.add_job.call_args_list[-1]
        assert call.kwargs["id"] == team_job_id(9)
        assert call.kwargs["args"] == [9]
        assert call.kwargs["replace_existing"] is True
        assert "minute='1'" in str(call.kwargs["trigger"])

    @pytest.mark.asyncio
    async def test_unchanged_assignments_not_re_registered(self, apscheduler, registry, state_repo):
        scheduler = _scheduler(apscheduler, registry, state_repo)
        await scheduler.rebuild_slots([1, 2])
        apscheduler.add_job.reset_mock()

        await scheduler.rebuild_slots([1, 2, 3])

        assert _job_ids(apscheduler) == [team_job_id(3)]

    @pytest.mark.asyncio
    async def test_removed_team_unregistered_and_others_shift(self, apscheduler, registry, state_repo):
        scheduler = _scheduler(apscheduler, registry, state_repo)
        await scheduler.rebuild_slots([1, 2, 3])
        apscheduler.add_job.reset_mock()

        await scheduler.rebuild_slots([1, 3])

        apscheduler.remove_job.assert_called_once_with(team_job_id(2))
        assert 2 not in scheduler.state
        assert _job_ids(apscheduler) == [team_job_id(3)]
        assert scheduler.state.get(3).assignment.slot == 1

    @pytest.mark.asyncio
    async def test_loads_team_ids_when_not_given(self, apscheduler, registry, state_repo):
        scheduler = _scheduler(apscheduler, registry, state_repo, team_repo=_teams(4, 2))

        assignments = await scheduler.rebuild_slots()

        assert [a.team_id for a in assignments.values()] == [2, 4]

    @pytest.mark.asyncio
    async def test_overload_only_warns(self, apscheduler, registry, state_repo):
        settings = Settings(sync_window_hours=1, sync_slot_minutes=30, max_teams_per_slot=1)
        scheduler = _scheduler(apscheduler, registry, state_repo, settings=settings)

        assignments = await scheduler.rebuild_slots([1, 2, 3])

        assert len(scheduler.state) == 3
        assert assignments[3].slot == 0


class TestRunTeamSync:
    @pytest.mark.asyncio
    async def test_syncs_enabled_integrations_with_adapters(self, apscheduler, registry, state_repo):
        settings_repo = FakeSettingsRepository(
            {
                1: {
                    "GitHub": IntegrationSettings(enabled=True, token="t", org="acme"),
                    "Jira": IntegrationSettings(enabled=True),
                    "Zoom": IntegrationSettings(enabled=False),
                }
            }
        )
        sync_fn = AsyncMock(return_value=SyncResult(team_id=1, integration="GitHub"))
        scheduler = _scheduler(
            apscheduler, registry, state_repo, team_repo=_teams(1), settings_repo=settings_repo, sync_fn=sync_fn
        )

        outcomes = await scheduler.run_team_sync(1)

        assert [(o.integration, o.status) for o in outcomes] == [("GitHub", TrackedSyncStatus.SUCCEEDED)]
        args = sync_fn.await_args.args
        assert args[:2] == (1, "GitHub")
        assert args[5] == 12
        assert "acting_user_id" not in sync_fn.await_args.kwargs

    @pytest.mark.asyncio
    async def test_failure_in_one_integration_does_not_stop_others(self, apscheduler, state_repo):
        registry = AdapterRegistry()
        registry.register(StaticAdapter(GITHUB))
        registry.register(StaticAdapter(JIRA))
        settings_repo = FakeSettingsRepository(
            {
                1: {
                    "GitHub": IntegrationSettings(enabled=True),
                    "Jira": IntegrationSettings(enabled=True),
                }
            }
        )

        async def sync_fn(team_id, integration, *args, **kwargs):
            if integration == "GitHub":
                raise RuntimeError("rate limited")
            return SyncResult(team_id=team_id, integration=integration)

        scheduler = _scheduler(
            apscheduler, registry, state_repo, team_repo=_teams(1), settings_repo=settings_repo, sync_fn=sync_fn
        )

        outcomes = await scheduler.run_team_sync(1)

        assert {o.integration: o.status for o in outcomes} == {
            "GitHub": TrackedSyncStatus.FAILED,
            "Jira": TrackedSyncStatus.SUCCEEDED,
        }
        assert state_repo.states[(1, "GitHub")].last_failed_at == NOW
        assert state_repo.states[(1, "Jira")].last_synced_at == NOW

    @pytest.mark.asyncio
    async def test_running_pair_is_skipped(self, apscheduler, registry, state_repo):
        state_repo.put(SyncState(team_id=1, integration="GitHub", is_syncing=True, last_heartbeat_at=NOW))
        settings_repo = FakeSettingsRepository({1: {"GitHub": IntegrationSettings(enabled=True)}})
        sync_fn = AsyncMock()
        scheduler = _scheduler(
            apscheduler, registry, state_repo, team_repo=_teams(1), settings_repo=settings_repo, sync_fn=sync_fn
        )

        outcomes = await scheduler.run_team_sync(1)

        assert outcomes[0].status == TrackedSyncStatus.SKIPPED
        sync_fn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_settings_load_failure_is_contained(self, apscheduler, registry, state_repo):
        settings_repo = FakeSettingsRepository()
        settings_repo.fetch_enabled_names = AsyncMock(side_effect=ConnectionError("db down"))
        scheduler = _scheduler(apscheduler, registry, state_repo, team_repo=_teams(1), settings_repo=settings_repo)

        assert await scheduler.run_team_sync(1) == []

    @pytest.mark.asyncio
    async def test_frozen_team_is_not_synced(self, apscheduler, registry, state_repo):
        team_repo = FakeTeamRepository([Team(id=1, slug="t1", name="Team 1", is_frozen=True, frozen_reason="billing")])
        settings_repo = FakeSettingsRepository({1: {"GitHub": IntegrationSettings(enabled=True, token="t", org="acme")}})
        sync_fn = AsyncMock()
        scheduler = _scheduler(
            apscheduler, registry, state_repo, team_repo=team_repo, settings_repo=settings_repo, sync_fn=sync_fn
        )

        assert await scheduler.run_team_sync(1) == []

        sync_fn.assert_not_awaited()
        assert state_repo.events == []
        assert (1, "GitHub") not in state_repo.states

    @pytest.mark.asyncio
    async def test_deleted_team_is_not_synced(self, apscheduler, registry, state_repo):
        settings_repo = FakeSettingsRepository({1: {"GitHub": IntegrationSettings(enabled=True)}})
        sync_fn = AsyncMock()
        scheduler = _scheduler(
            apscheduler, registry, state_repo, team_repo=_teams(2), settings_repo=settings_repo, sync_fn=sync_fn
        )

        assert await scheduler.run_team_sync(1) == []

        sync_fn.assert_not_awaited()


class TestReapStaleSyncs:
    @pytest.mark.asyncio
    async def test_reaps_stale_and_keeps_fresh(self, apscheduler, registry, state_repo):
        state_repo.put(
            SyncState(team_id=1, integration="GitHub", is_syncing=True, last_heartbeat_at=NOW - timedelta(minutes=30))
        )
        state_repo.put(
            SyncState(team_id=2, integration="GitHub", is_syncing=True, last_heartbeat_at=NOW - timedelta(minutes=1))
        )
        state_repo.put(SyncState(team_id=3, integration="GitHub", is_syncing=True))
        scheduler = _scheduler(apscheduler, registry, state_repo)

        reaped = await scheduler.reap_stale_syncs()

        assert sorted(s.team_id for s in reaped) == [1, 3]
        assert state_repo.states[(1, "GitHub")].is_syncing is False
        assert state_repo.states[(1, "GitHub")].last_failed_at == NOW
        assert state_repo.states[(2, "GitHub")].is_syncing is True

    @pytest.mark.asyncio
    async def test_reaped_pair_can_start_again(self, apscheduler, registry, state_repo):
        state_repo.put(
            SyncState(team_id=1, integration="GitHub", is_syncing=True, last_heartbeat_at=NOW - timedelta(hours=2))
        )
        scheduler = _scheduler(apscheduler, registry, state_repo)

        await scheduler.reap_stale_syncs()

        assert await state_repo.try_mark_start(1, "GitHub") == NOW

    @pytest.mark.asyncio
    async def test_detection_failure_is_contained(self, apscheduler, registry, state_repo):
        state_repo.detect_stale = AsyncMock(side_effect=ConnectionError("db down"))
        scheduler = _scheduler(apscheduler, registry, state_repo)

        assert await scheduler.reap_stale_syncs() == []


def test_list_scheduled_jobs(apscheduler, registry, state_repo):
    job = MagicMock()
    job.id = REAPER_JOB_ID
    job.name = "Stale sync reaper"
    job.next_run_time = NOW
    apscheduler.get_jobs.return_value = [job]

    jobs = _scheduler(apscheduler, registry, state_repo).list_scheduled_jobs()

    assert jobs == [{"id": REAPER_JOB_ID, "name": "Stale sync reaper", "next_run_time": NOW.isoformat()}]
