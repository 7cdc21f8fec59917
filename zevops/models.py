"""Data models for the device operations console."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Optional

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _epoch_millis(value: Any) -> Any:
    # The device reports history timestamps as epoch milliseconds
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    return value


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _none_to_zero(value: Any) -> Any:
    return 0 if value is None else value


def _clamp_percent(value: float) -> float:
    return max(0.0, min(100.0, value))


Instant = Annotated[datetime, BeforeValidator(_epoch_millis), AfterValidator(_as_utc)]
Percent = Annotated[float, BeforeValidator(_none_to_zero), AfterValidator(_clamp_percent)]
Count = Annotated[int, BeforeValidator(_none_to_zero)]


class HealthSample(BaseModel):
    """One health reading of the device as reported by its status endpoint."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: Instant = Field(
        default_factory=utcnow,
        validation_alias=AliasChoices("timestamp", "last_updated"),
    )
    cpu_percent: Percent = Field(0.0, validation_alias=AliasChoices("cpu_percent", "cpu_usage"))
    memory_percent: Percent = 0.0
    memory_used_bytes: Count = Field(0, validation_alias=AliasChoices("memory_used_bytes", "memory_used"))
    memory_total_bytes: Count = Field(0, validation_alias=AliasChoices("memory_total_bytes", "memory_total"))
    disk_percent: Percent = 0.0
    disk_used_bytes: Count = Field(0, validation_alias=AliasChoices("disk_used_bytes", "disk_used"))
    disk_total_bytes: Count = Field(0, validation_alias=AliasChoices("disk_total_bytes", "disk_total"))
    temperature_celsius: float = Field(0.0, validation_alias=AliasChoices("temperature_celsius", "temperature"))  # 0 = unavailable
    uptime_label: str = Field("", validation_alias=AliasChoices("uptime_label", "uptime"))

    @field_validator("temperature_celsius", mode="before")
    @classmethod
    def _missing_temperature(cls, value: Any) -> Any:
        return _none_to_zero(value)

    @property
    def has_temperature(self) -> bool:
        return self.temperature_celsius > 0


class HealthPoint(BaseModel):
    """Reduced health sample kept in the chart history."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: Instant
    cpu_percent: Percent = Field(0.0, validation_alias=AliasChoices("cpu_percent", "cpu_usage"))
    memory_percent: Percent = 0.0
    disk_percent: Percent = 0.0
    temperature_celsius: float = Field(0.0, validation_alias=AliasChoices("temperature_celsius", "temperature"))

    @classmethod
    def from_sample(cls, sample: HealthSample) -> "HealthPoint":
        return cls(
            timestamp=sample.timestamp,
            cpu_percent=sample.cpu_percent,
            memory_percent=sample.memory_percent,
            disk_percent=sample.disk_percent,
            temperature_celsius=sample.temperature_celsius,
        )


class DeviceStatus(BaseModel):
    """Health endpoint payload: current sample plus collector state."""
    model_config = ConfigDict(extra="ignore")

    system_health: Optional[HealthSample] = None
    active_meters: Count = 0
    total_meters: Count = 0
    active_chargers: Count = 0
    total_chargers: Count = 0
    last_collection: Optional[Instant] = None
    next_collection_minutes: Optional[int] = None
    udp_listener_ports: List[int] = Field(
        default_factory=list,
        validation_alias=AliasChoices("udp_listener_ports", "udp_listeners"),
    )
    recent_error_count: Count = Field(0, validation_alias=AliasChoices("recent_error_count", "recent_errors"))

    @field_validator("udp_listener_ports", mode="before")
    @classmethod
    def _missing_ports(cls, value: Any) -> Any:
        return [] if value is None else value


class LogEntry(BaseModel):
    """A single row of the device audit log."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    created_at: Instant
    action: str
    details: Optional[str] = None
    ip_address: Optional[str] = None
    user_id: Optional[int] = None


class Statistics(BaseModel):
    """Aggregate counters shown in the system overview."""
    total_users: Count = 0
    regular_users: Count = 0
    admin_users: Count = 0
    total_buildings: Count = 0
    total_complexes: Count = 0
    total_meters: Count = 0
    total_chargers: Count = 0
    total_invoices: Count = 0


class UpdateAvailability(BaseModel):
    """Result of an update check."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    updates_available: bool = False
    current_version_id: str = Field("", validation_alias=AliasChoices("current_version_id", "current_commit"))
    remote_version_id: str = Field("", validation_alias=AliasChoices("remote_version_id", "remote_commit"))
    change_log: Optional[str] = Field(None, validation_alias=AliasChoices("change_log", "commit_log"))


class UpdatePhase(str, Enum):
    """Phases of the apply-update state machine."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (UpdatePhase.DONE, UpdatePhase.ERROR)


class UpdateProgress(BaseModel):
    """Progress of an update as reported by the device."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    phase: UpdatePhase = UpdatePhase.IDLE
    percent: Percent = 0.0
    message: str = ""
    error: Optional[str] = None

    @field_validator("phase", mode="before")
    @classmethod
    def _normalize_phase(cls, value: Any) -> Any:
        if value is None:
            return UpdatePhase.IDLE
        if isinstance(value, str):
            value = value.strip().lower()
            if value not in {phase.value for phase in UpdatePhase}:
                # Unknown intermediate phases are still "working"
                return UpdatePhase.RUNNING
        return value

    @field_validator("message", mode="before")
    @classmethod
    def _missing_message(cls, value: Any) -> Any:
        return "" if value is None else value


class BackupResult(BaseModel):
    """Device answer to a backup request."""
    model_config = ConfigDict(extra="ignore")

    backup_name: str
    backup_path: Optional[str] = None
    status: str = "success"
    message: str = ""


class FactoryResetResult(BackupResult):
    """Device answer to a factory reset; the device backs up before wiping."""
