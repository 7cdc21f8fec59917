"""Configuration management for the ZEV device console."""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class ConsoleConfig(BaseSettings):
    """Configuration for the device operations console."""

    model_config = SettingsConfigDict(
        env_prefix="ZEV_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Device
    device_url: str = "http://localhost:8080"
    api_prefix: str = "/api"
    token: Optional[str] = None
    request_timeout: float = 10.0

    # Endpoints (relative to api_prefix)
    status_path: str = "/debug/status"
    health_history_path: str = "/system/health-history"
    logs_path: str = "/dashboard/logs"
    stats_path: str = "/dashboard/stats"
    invoices_path: str = "/billing/invoices"
    backup_path: str = "/system/backup"
    backup_download_path: str = "/system/backup/download"
    restore_path: str = "/system/backup/restore"
    reboot_path: str = "/system/reboot"
    factory_reset_path: str = "/system/factory-reset"
    update_check_path: str = "/system/update/check"
    update_apply_path: str = "/system/update/apply"
    update_status_path: str = "/system/update/status"

    # Polling intervals (seconds)
    health_poll_interval: float = 5.0
    stats_poll_interval: float = 30.0
    update_poll_interval: float = 1.5
    offline_after: float = 10.0  # Status shown offline after this long without a good poll

    # Health history
    history_window_hours: int = 24
    history_max_points: int = 500
    history_bucket_seconds: int = 10

    # Reload delays after operations that restart the device (seconds)
    reboot_reload_delay: float = 5.0
    restore_reload_delay: float = 3.0
    factory_reset_reload_delay: float = 3.0
    update_done_reload_delay: float = 3.0
    update_reconnect_reload_delay: float = 15.0

    # Backups
    backup_dir: Optional[Path] = None
    restore_suffix: str = ".db"

    # Logging
    log_level: str = "WARNING"

    @property
    def api_base(self) -> str:
        """Full base URL of the device API."""
        return self.device_url.rstrip("/") + "/" + self.api_prefix.strip("/")

    @property
    def data_dir(self) -> Path:
        """Get the data directory for the console."""
        data_dir = Path.home() / ".local" / "share" / "zev-console"
        data_dir.mkdir(parents=True, exist_ok=True)
        return data_dir

    @property
    def cache_dir(self) -> Path:
        """Get the cache directory for the console."""
        cache_dir = Path.home() / ".cache" / "zev-console"
        cache_dir.mkdir(parents=True, exist_ok=True)
        return cache_dir

    @property
    def config_dir(self) -> Path:
        """Get the config directory for the console."""
        config_dir = Path.home() / ".config" / "zev-console"
        config_dir.mkdir(parents=True, exist_ok=True)
        return config_dir

    def token_path(self) -> Path:
        return self.config_dir / "token"

    def history_cache_path(self) -> Path:
        return self.cache_dir / "health-history.json"

    def resolved_backup_dir(self) -> Path:
        backup_dir = self.backup_dir or (self.data_dir / "backups")
        backup_dir.mkdir(parents=True, exist_ok=True)
        return backup_dir


def get_config() -> ConsoleConfig:
    """Get a configuration instance."""
    return ConsoleConfig()


def load_token(config: ConsoleConfig) -> Optional[str]:
    """Resolve the bearer credential: explicit setting first, then the token file."""
    if config.token:
        return config.token.strip()
    path = config.token_path()
    try:
        if path.exists():
            token = path.read_text().strip()
            return token or None
    except OSError:
        return None
    return None
