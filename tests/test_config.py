"""Tests for configuration."""

from zevops.config import ConsoleConfig, get_config, load_token


def test_config_defaults():
    """Test default configuration values."""
    config = ConsoleConfig()

    assert config.device_url == "http://localhost:8080"
    assert config.api_base == "http://localhost:8080/api"
    assert config.health_poll_interval == 5.0
    assert config.stats_poll_interval == 30.0
    assert config.history_window_hours == 24
    assert config.history_max_points == 500
    assert config.history_bucket_seconds == 10
    assert config.reboot_reload_delay == 5.0
    assert config.restore_reload_delay == 3.0
    assert config.factory_reset_reload_delay == 3.0
    assert config.update_reconnect_reload_delay == 15.0
    assert config.restore_suffix == ".db"


def test_config_from_environment(monkeypatch):
    """Test that ZEV_ environment variables override defaults."""
    monkeypatch.setenv("ZEV_DEVICE_URL", "http://zev.local:9000/")
    monkeypatch.setenv("ZEV_HEALTH_POLL_INTERVAL", "2.5")

    config = get_config()

    assert config.api_base == "http://zev.local:9000/api"
    assert config.health_poll_interval == 2.5


def test_config_directories():
    """Test that config creates necessary directories."""
    config = ConsoleConfig()

    assert config.data_dir.exists()
    assert config.cache_dir.exists()
    assert config.config_dir.exists()

    assert config.data_dir.is_dir()
    assert config.cache_dir.is_dir()
    assert config.config_dir.is_dir()

    assert config.history_cache_path().parent == config.cache_dir
    assert config.resolved_backup_dir().is_dir()


def test_backup_dir_override(tmp_path):
    """Test that an explicit backup directory is created and used."""
    config = ConsoleConfig(backup_dir=tmp_path / "backups")

    assert config.resolved_backup_dir() == tmp_path / "backups"
    assert (tmp_path / "backups").is_dir()


def test_load_token_prefers_explicit_setting():
    """Test that an explicit token wins over the token file."""
    config = ConsoleConfig(token="  from-settings \n")
    config.token_path().write_text("from-file")

    assert load_token(config) == "from-settings"


def test_load_token_from_file():
    """Test reading the token file."""
    config = ConsoleConfig()
    config.token_path().write_text("from-file\n")

    assert load_token(config) == "from-file"


def test_load_token_missing():
    """Test that a missing or empty token file yields no token."""
    config = ConsoleConfig()
    assert load_token(config) is None

    config.token_path().write_text("   ")
    assert load_token(config) is None
