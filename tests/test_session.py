"""Tests for the console session."""

from datetime import timedelta

import pytest

from zevops.errors import DeviceRequestError, DeviceTransportError
from zevops.history import InMemoryHistoryRepository, time_bucket
from zevops.models import HealthPoint, HealthSample, Statistics
from zevops.session import ConsoleSession


def _session(fake_client, scheduler, config, repository=None, **kwargs):
    return ConsoleSession(
        config=config,
        client=fake_client,
        scheduler=scheduler,
        repository=repository or InMemoryHistoryRepository(),
        confirm=lambda prompt: True,
        notify=lambda level, message: None,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_start_seeds_and_starts_timers(fake_client, scheduler, config):
    """Test the initial load."""
    now = scheduler.now()
    fake_client.history = [
        HealthSample(timestamp=now - timedelta(hours=1), cpu_percent=5.0),
        HealthSample(timestamp=now - timedelta(minutes=30), cpu_percent=6.0),
    ]
    session = _session(fake_client, scheduler, config)

    await session.start()

    assert fake_client.connected
    assert session.is_live and session.online
    assert session.status.active_meters == 7
    assert session.statistics.total_users == 3
    assert session.maintenance.update_availability.updates_available
    assert len(session.history) == 3
    assert sorted(scheduler.pending_names()) == ["health", "statistics"]


@pytest.mark.asyncio
async def test_polling_intervals(fake_client, scheduler, config):
    """Test that health polls every 5s and statistics every 30s."""
    session = _session(fake_client, scheduler, config, check_updates_on_start=False)
    await session.start()

    await scheduler.advance(60)

    assert fake_client.count("get_status") == 1 + 12
    assert fake_client.count("get_statistics") == 1 + 2
    assert fake_client.count("check_for_updates") == 0
    buckets = [time_bucket(p.timestamp) for p in session.history.history]
    assert len(buckets) == len(set(buckets))
    assert len(session.history) < fake_client.count("get_status")


@pytest.mark.asyncio
async def test_failed_poll_marks_offline_and_recovers(fake_client, scheduler, config):
    """Test that a failing health poll keeps the last status and retries."""
    session = _session(fake_client, scheduler, config)
    await session.start()
    previous = session.status

    fake_client.errors["get_status"] = DeviceTransportError("connection refused")
    await scheduler.advance(5)
    assert not session.is_live
    assert not session.online
    assert session.status is previous

    del fake_client.errors["get_status"]
    await scheduler.advance(5)
    assert session.is_live
    assert session.status is not previous


@pytest.mark.asyncio
async def test_online_expires_without_polls(fake_client, scheduler, config):
    """Test the offline threshold for a device that stops answering in time."""
    session = _session(fake_client, scheduler, config)
    await session.start()
    assert session.online

    session.last_status_at = scheduler.now() - timedelta(seconds=config.offline_after + 1)
    assert session.is_live
    assert not session.online


@pytest.mark.asyncio
async def test_statistics_failure_keeps_previous(fake_client, scheduler, config):
    """Test that the statistics slice fails independently of health."""
    session = _session(fake_client, scheduler, config)
    await session.start()

    fake_client.errors["get_statistics"] = DeviceRequestError(500, "db locked")
    await scheduler.advance(30)

    assert not session.statistics_live
    assert session.statistics.total_users == 3
    assert session.is_live

    del fake_client.errors["get_statistics"]
    fake_client.statistics = Statistics(total_users=9)
    await scheduler.advance(30)
    assert session.statistics_live
    assert session.statistics.total_users == 9


@pytest.mark.asyncio
async def test_start_without_server_history_uses_cache(fake_client, scheduler, config):
    """Test seeding from the local cache when the backfill is unavailable."""
    cached = HealthPoint(timestamp=scheduler.now() - timedelta(minutes=10), cpu_percent=44.0)
    fake_client.errors["get_health_history"] = DeviceRequestError(404, "not found")
    session = _session(fake_client, scheduler, config, repository=InMemoryHistoryRepository([cached]))

    await session.start()

    assert session.history.history[0].cpu_percent == 44.0
    assert len(session.history) == 2


@pytest.mark.asyncio
async def test_start_with_device_offline(fake_client, scheduler, config):
    """Test that a session still starts when the device is down."""
    error = DeviceTransportError("connection refused")
    for name in ("get_health_history", "get_status", "get_statistics", "check_for_updates"):
        fake_client.errors[name] = error
    session = _session(fake_client, scheduler, config)

    await session.start()

    assert session.started
    assert not session.is_live
    assert session.status is None
    assert session.statistics is None
    assert sorted(scheduler.pending_names()) == ["health", "statistics"]


@pytest.mark.asyncio
async def test_history_window_applies_while_polling(fake_client, scheduler, config):
    """Test that a backfill point near the window edge expires."""
    now = scheduler.now()
    fake_client.history = [HealthSample(timestamp=now - timedelta(hours=23, minutes=59), cpu_percent=1.0)]
    session = _session(fake_client, scheduler, config, check_updates_on_start=False)
    await session.start()
    assert session.history.history[0].cpu_percent == 1.0

    await scheduler.advance(120)

    assert all(p.cpu_percent != 1.0 for p in session.history.history)
    cutoff = scheduler.now() - timedelta(hours=24)
    assert all(p.timestamp >= cutoff for p in session.history.history)


@pytest.mark.asyncio
async def test_reload_after_reboot(fake_client, scheduler, config):
    """Test that a maintenance reload restarts the session's timers."""
    updates = []
    session = _session(fake_client, scheduler, config, on_update=lambda s: updates.append(s.reload_count))
    await session.start()

    assert await session.maintenance.reboot()
    await scheduler.advance(5)

    assert session.reload_count == 1
    assert not session.reloading
    assert fake_client.count("get_health_history") == 2
    assert fake_client.connected
    assert sorted(scheduler.pending_names()) == ["health", "statistics"]
    assert updates[-1] == 1


@pytest.mark.asyncio
async def test_stop_cancels_everything(fake_client, scheduler, config):
    """Test that teardown leaves no timers, including maintenance ones."""
    session = _session(fake_client, scheduler, config)
    await session.start()
    await session.maintenance.apply_update()
    assert "update-status" in scheduler.pending_names()

    await session.stop()

    assert scheduler.pending() == []
    assert not fake_client.connected
    calls = len(fake_client.calls)
    await scheduler.advance(120)
    assert len(fake_client.calls) == calls


@pytest.mark.asyncio
async def test_context_manager(fake_client, scheduler, config):
    """Test async with usage."""
    async with _session(fake_client, scheduler, config) as session:
        assert session.started

    assert not session.started
    assert scheduler.pending() == []


@pytest.mark.asyncio
async def test_render_callback_errors_are_contained(fake_client, scheduler, config):
    """Test that a failing render callback does not break polling."""
    def broken(session):
        raise RuntimeError("render failed")

    session = _session(fake_client, scheduler, config, on_update=broken)
    await session.start()
    await scheduler.advance(10)

    assert fake_client.count("get_status") == 3
