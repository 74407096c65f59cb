"""Tests for the advisory external-state cache."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from teamsync.clients.exceptions import EntraError
from teamsync.core.cache import ExternalStateCache


@pytest.fixture
def cache(store, grafana, entra):
    return ExternalStateCache(store, grafana, entra, ttl_seconds=30)


@pytest.fixture
def populated(store, grafana, entra):
    org = store.create_org(1, "Main")
    grafana.add_team(1, "platform")
    grafana.add_team(1, "unmapped")
    grafana.add_user("alice@example.com")
    entra.add_group("g-1", "gapp_ops_grf_platform", "alice@example.com")
    entra.add_group("g-2", "other")
    store.create_mapping(org.id, "Platform", "g-1")
    return org


class TestExternalStateCache:
    """Refresh behaviour and snapshot contents."""

    @pytest.mark.asyncio
    async def test_first_read_loads_snapshot(self, cache, populated):
        snapshot = await cache.get()

        teams = {t.team_name: t for t in snapshot.grafana_teams}
        assert teams["platform"].mapped_group_ids == ["g-1"]
        assert not teams["unmapped"].mapped
        groups = {g.group.id: g.mapped for g in snapshot.entra_groups}
        assert groups == {"g-1": True, "g-2": False}
        assert len(snapshot.grafana_users) == 1
        assert len(snapshot.entra_users) == 1
        assert snapshot.refreshed_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_fetch(self, cache, grafana, populated):
        grafana.delays["list_users"] = 0.05

        first, second = await asyncio.gather(cache.refresh(), cache.refresh())

        assert first is second
        assert len(grafana.calls_to("list_users")) == 1

    @pytest.mark.asyncio
    async def test_fresh_snapshot_served_from_cache(self, cache, grafana, populated):
        await cache.get()
        await cache.get()

        assert len(grafana.calls_to("list_users")) == 1

    @pytest.mark.asyncio
    async def test_stale_read_returns_old_data_and_refreshes(self, cache, grafana, populated):
        old = await cache.get()
        old.refreshed_at = datetime.now(timezone.utc) - timedelta(minutes=5)

        served = await cache.get()

        assert served is old
        assert cache.refreshing
        await cache._inflight
        assert cache.snapshot is not old
        assert len(grafana.calls_to("list_users")) == 2

    @pytest.mark.asyncio
    async def test_source_errors_kept_per_source(self, cache, entra, populated):
        entra.failures["list_groups"] = EntraError("Entra API error: Server error: 503", status_code=503)

        snapshot = await cache.get(force=True)

        assert snapshot.entra_groups == []
        assert "503" in snapshot.entra_groups_error
        assert snapshot.entra_users_error is None
        assert snapshot.grafana_teams_error is None
        assert snapshot.grafana_teams

    @pytest.mark.asyncio
    async def test_run_periodically_stops_on_event(self, cache, grafana, populated):
        stop = asyncio.Event()
        cache.ttl_seconds = 0

        task = asyncio.create_task(cache.run_periodically(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

        assert grafana.calls_to("list_users")
