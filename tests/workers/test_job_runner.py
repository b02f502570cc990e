"""Tests for single-flight job execution and the arq schedule."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import utc
from gamepulse.config import Settings
from gamepulse.db.models import JobState, Tournament
from gamepulse.errors import NotFoundError
from gamepulse.jobs.registry import JOBS, JobSpec
from gamepulse.jobs.runner import FAILED, SKIPPED, SUCCESS, run_all, run_job
from gamepulse.week_utils import ensure_utc

NOW = utc(2026, 3, 8, 23, 50)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, job_lock_ttl_seconds=600)


async def _state(session_factory, name: str) -> JobState:
    async with session_factory() as db:
        return await db.get(JobState, name)


async def _seed_lock(session_factory, name: str, locked_until) -> None:
    async with session_factory() as db:
        db.add(
            JobState(
                name=name,
                status="running",
                locked_until=locked_until,
                lock_owner="other-worker",
                run_count=1,
                failure_count=0,
                skip_count=0,
            )
        )
        await db.commit()


class TestRunJob:
    async def test_unknown_job(self, session_factory, settings):
        with pytest.raises(NotFoundError):
            await run_job(session_factory, "reticulate_splines", now=NOW, settings=settings)

    async def test_success_is_recorded(self, session_factory, settings):
        outcome = await run_job(session_factory, "tournament_create", now=NOW, settings=settings)

        assert outcome.status == SUCCESS
        assert outcome.result == {"created": ["weekly-2026-W10", "weekly-2026-W11"]}
        assert outcome.as_dict()["started_at"] == NOW.isoformat()

        state = await _state(session_factory, "tournament_create")
        assert state.status == SUCCESS
        assert state.run_count == 1
        assert state.locked_until is None
        assert state.lock_owner is None
        assert ensure_utc(state.last_success_at) == NOW
        assert ensure_utc(state.next_run_at) == NOW + timedelta(weeks=1)

    async def test_held_lock_skips(self, session_factory, settings):
        await _seed_lock(session_factory, "tournament_create", NOW + timedelta(minutes=10))

        outcome = await run_job(session_factory, "tournament_create", now=NOW, settings=settings)

        assert outcome.status == SKIPPED
        state = await _state(session_factory, "tournament_create")
        assert state.skip_count == 1
        assert state.run_count == 1
        assert state.lock_owner == "other-worker"
        async with session_factory() as db:
            assert await db.get(Tournament, "weekly-2026-W10") is None

    async def test_expired_lock_is_taken_over(self, session_factory, settings):
        await _seed_lock(session_factory, "tournament_create", NOW - timedelta(minutes=1))

        outcome = await run_job(session_factory, "tournament_create", now=NOW, settings=settings)

        assert outcome.status == SUCCESS
        state = await _state(session_factory, "tournament_create")
        assert state.run_count == 2
        assert state.lock_owner is None

    async def test_failure_is_recorded_and_lock_released(self, session_factory, settings, monkeypatch):
        async def explode(ctx):
            raise RuntimeError("aggregator crashed")

        monkeypatch.setitem(JOBS, "leaderboard", JobSpec("leaderboard", explode, timedelta(minutes=1)))

        outcome = await run_job(session_factory, "leaderboard", now=NOW, settings=settings)

        assert outcome.status == FAILED
        assert outcome.error == "RuntimeError: aggregator crashed"
        state = await _state(session_factory, "leaderboard")
        assert state.status == FAILED
        assert state.failure_count == 1
        assert state.last_success_at is None
        assert "aggregator crashed" in state.last_error
        assert state.locked_until is None

        # The next trigger can run it again.
        again = await run_job(session_factory, "leaderboard", now=NOW + timedelta(minutes=1), settings=settings)
        assert again.status == FAILED
        assert (await _state(session_factory, "leaderboard")).failure_count == 2


class TestRunAll:
    async def test_every_job_runs_on_an_empty_store(self, session_factory, settings):
        outcomes = await run_all(session_factory, now=utc(2026, 3, 4, 2), settings=settings)
        assert [o.name for o in outcomes] == list(JOBS)
        assert {o.name: o.status for o in outcomes} == {name: SUCCESS for name in JOBS}


class TestWorkerSettings:
    def test_one_cron_job_per_registered_job(self):
        from gamepulse.jobs.worker import TASKS, WorkerSettings

        assert set(TASKS) == set(JOBS)
        assert sorted(c.name for c in WorkerSettings.cron_jobs) == sorted(f"cron:{name}" for name in JOBS)

    def test_schedules(self):
        assert JOBS["tournament_create"].schedule == {"weekday": 6, "hour": 23, "minute": 50}
        assert JOBS["tournament_leaderboard"].schedule["minute"] == set(range(0, 60, 2))
        assert JOBS["campaign_roi"].schedule["hour"] > JOBS["cohorts"].schedule["hour"]
