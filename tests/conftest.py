"""Shared fixtures and fakes for the console tests."""

import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import pytest

from zevops.config import ConsoleConfig
from zevops.models import (
    BackupResult,
    DeviceStatus,
    FactoryResetResult,
    HealthSample,
    LogEntry,
    Statistics,
    UpdateAvailability,
    UpdateProgress,
)
from zevops.timers import ManualScheduler


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config, cache and data directories inside the test's tmp dir."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("ZEV_"):
            monkeypatch.delenv(key)
    return home


@pytest.fixture
def config():
    return ConsoleConfig(device_url="http://zev.test")


@pytest.fixture
def scheduler():
    return ManualScheduler()


class FakeDeviceClient:
    """In-memory stand-in for DeviceClient with scripted answers.

    ``errors`` maps a method name to an exception raised on every call.
    ``update_statuses`` is consumed one item per poll; the last item repeats.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or (lambda: datetime(2025, 1, 1))
        self.calls: List[str] = []
        self.errors: Dict[str, Exception] = {}
        self.connected = False

        self.cpu_percent = 12.5
        self.history: List[HealthSample] = []
        self.statistics = Statistics(total_users=3, total_meters=8, total_invoices=2)
        self.logs: List[LogEntry] = []
        self.availability = UpdateAvailability(
            updates_available=True,
            current_version_id="a1b2c3d4e5",
            remote_version_id="f6e5d4c3b2",
            change_log="Fix meter polling",
        )
        self.update_statuses: List[Union[UpdateProgress, Exception]] = [
            UpdateProgress(phase="running", percent=10, message="Pulling")
        ]
        self.backup_name = "zev_backup_20250101.db"

    def _call(self, name: str) -> None:
        self.calls.append(name)
        error = self.errors.get(name)
        if error is not None:
            raise error

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def connect(self):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *exc_info):
        await self.disconnect()

    async def get_status(self) -> DeviceStatus:
        self._call("get_status")
        return DeviceStatus(
            system_health=HealthSample(
                timestamp=self.clock(),
                cpu_percent=self.cpu_percent,
                memory_percent=40.0,
                disk_percent=55.0,
                uptime_label="3 days",
            ),
            active_meters=7,
            total_meters=8,
        )

    async def get_health_history(self) -> List[HealthSample]:
        self._call("get_health_history")
        return list(self.history)

    async def get_logs(self, limit: int = 100, since=None) -> List[LogEntry]:
        self._call("get_logs")
        return self.logs[:limit]

    async def get_statistics(self) -> Statistics:
        self._call("get_statistics")
        return self.statistics

    async def create_backup(self) -> BackupResult:
        self._call("create_backup")
        return BackupResult(backup_name=self.backup_name)

    async def download_backup(self, backup_name: str, destination: Path) -> Path:
        self._call("download_backup")
        target = Path(destination) / backup_name
        target.write_bytes(b"SQLite format 3\x00")
        return target

    async def restore_backup(self, backup_file) -> dict:
        self._call("restore_backup")
        return {"status": "success"}

    async def reboot(self) -> dict:
        self._call("reboot")
        return {"status": "rebooting"}

    async def factory_reset(self) -> FactoryResetResult:
        self._call("factory_reset")
        return FactoryResetResult(backup_name="pre_reset_backup.db")

    async def check_for_updates(self) -> UpdateAvailability:
        self._call("check_for_updates")
        return self.availability

    async def apply_update(self) -> dict:
        self._call("apply_update")
        return {"status": "started"}

    async def get_update_status(self) -> UpdateProgress:
        self._call("get_update_status")
        item = self.update_statuses.pop(0) if len(self.update_statuses) > 1 else self.update_statuses[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def fake_client(scheduler):
    return FakeDeviceClient(clock=scheduler.now)


def hours_ago(now: datetime, hours: float = 0, minutes: float = 0) -> datetime:
    return now - timedelta(hours=hours, minutes=minutes)
