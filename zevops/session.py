"""Console session: polling timers, health history and maintenance for one device."""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from .client import DeviceClient
from .config import ConsoleConfig
from .errors import ConsoleError
from .history import HealthHistoryStore, HistoryRepository, JsonFileHistoryRepository
from .maintenance import ConfirmCallback, MaintenanceOperationsController, NotifyCallback
from .models import DeviceStatus, LogEntry, Statistics
from .timers import AsyncioScheduler, Scheduler, TimerHandle

logger = structlog.get_logger(__name__)


class ConsoleSession:
    """One open console against one device.

    While started, two timers poll the device: health every 5s and aggregate
    statistics every 30s. Each owns a disjoint slice of state that is replaced
    in one assignment per response. A failing poll marks its slice offline and
    the next tick retries. ``stop()`` cancels every timer the session and its
    maintenance controller own.
    """

    def __init__(
        self,
        config: Optional[ConsoleConfig] = None,
        client: Optional[DeviceClient] = None,
        scheduler: Optional[Scheduler] = None,
        repository: Optional[HistoryRepository] = None,
        confirm: Optional[ConfirmCallback] = None,
        notify: Optional[NotifyCallback] = None,
        on_update: Optional[Callable[["ConsoleSession"], None]] = None,
        check_updates_on_start: bool = True,
    ):
        self.config = config or ConsoleConfig()
        self.client = client or DeviceClient(self.config)
        self.scheduler = scheduler or AsyncioScheduler()
        self.history = HealthHistoryStore(
            repository=repository or JsonFileHistoryRepository(self.config.history_cache_path()),
            clock=self.scheduler.now,
            window=timedelta(hours=self.config.history_window_hours),
            max_points=self.config.history_max_points,
            bucket_seconds=self.config.history_bucket_seconds,
        )
        self.maintenance = MaintenanceOperationsController(
            self.client,
            self.scheduler,
            self.config,
            reload_callback=self.reload,
            confirm=confirm,
            notify=notify,
        )
        self.on_update = on_update
        self.check_updates_on_start = check_updates_on_start

        self.status: Optional[DeviceStatus] = None
        self.statistics: Optional[Statistics] = None
        self.is_live = False
        self.statistics_live = False
        self.last_status_at: Optional[datetime] = None
        self.reload_count = 0
        self.reloading = False
        self.started = False

        self._health_timer: Optional[TimerHandle] = None
        self._stats_timer: Optional[TimerHandle] = None

    async def __aenter__(self) -> "ConsoleSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    @property
    def online(self) -> bool:
        """Live and heard from the device within the offline threshold."""
        if not self.is_live or self.last_status_at is None:
            return False
        age = (self.scheduler.now() - self.last_status_at).total_seconds()
        return age <= self.config.offline_after

    @property
    def timers(self) -> List[TimerHandle]:
        return [t for t in (self._health_timer, self._stats_timer) if t is not None and t.active]

    async def start(self) -> None:
        """Seed the history, take a first reading and start the poll timers."""
        self._cancel_timers()
        await self.client.connect()

        await self._seed_history()
        await self.poll_health()
        await self.poll_statistics()
        if self.check_updates_on_start:
            await self.maintenance.check_for_updates()

        self._health_timer = self.scheduler.call_every(
            self.config.health_poll_interval, self.poll_health, name="health"
        )
        self._stats_timer = self.scheduler.call_every(
            self.config.stats_poll_interval, self.poll_statistics, name="statistics"
        )
        self.started = True
        logger.info(
            "Console session started",
            device=self.config.api_base,
            live=self.is_live,
            history_points=len(self.history),
        )

    async def stop(self) -> None:
        """Tear down: cancel all timers and close the client."""
        self._cancel_timers()
        self.maintenance.shutdown()
        await self.client.disconnect()
        self.started = False
        logger.info("Console session stopped")

    async def reload(self, reason: str = "manual") -> None:
        """Reconnect after the device restarted: reseed and restart polling."""
        logger.info("Reloading console session", reason=reason)
        self.reloading = True
        try:
            self._cancel_timers()
            await self.client.disconnect()
            await self.start()
            self.reload_count += 1
        finally:
            self.reloading = False
        self._changed()

    async def _seed_history(self) -> None:
        try:
            server_history = await self.client.get_health_history()
        except ConsoleError as e:
            logger.warning("Health history unavailable, using local cache only", error=str(e))
            server_history = []
        self.history.seed(server_history)

    async def poll_health(self) -> None:
        """One tick of the health timer."""
        try:
            status = await self.client.get_status()
        except ConsoleError as e:
            if self.is_live:
                logger.warning("Device went offline", error=str(e))
            self.is_live = False
            self._changed()
            return

        self.status = status
        if status.system_health is not None:
            self.history.merge_live(status.system_health)
        if not self.is_live:
            logger.info("Device online")
        self.is_live = True
        self.last_status_at = self.scheduler.now()
        self._changed()

    async def poll_statistics(self) -> None:
        """One tick of the statistics timer."""
        try:
            statistics = await self.client.get_statistics()
        except ConsoleError as e:
            logger.warning("Failed to load statistics", error=str(e))
            self.statistics_live = False
            self._changed()
            return
        self.statistics = statistics
        self.statistics_live = True
        self._changed()

    async def fetch_logs(self, limit: int = 100, since: Optional[datetime] = None) -> List[LogEntry]:
        return await self.client.get_logs(limit=limit, since=since)

    def _cancel_timers(self) -> None:
        for timer in (self._health_timer, self._stats_timer):
            if timer is not None:
                timer.cancel()
        self._health_timer = None
        self._stats_timer = None

    def _changed(self) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(self)
        except Exception as e:
            logger.error("Render callback failed", error=str(e))
