"""
ZEV Console - Device Operations Library

Health monitoring, audit log triage and maintenance operations for a
self-hosted ZEV billing device.
"""

__version__ = "0.1.0"
__author__ = "ZEV Console Team"

# Core components
from .config import ConsoleConfig
from .client import DeviceClient
from .errors import (
    ConsoleError,
    DeviceRequestError,
    DeviceTransportError,
    InputValidationError,
)

# Health history
from .history import (
    HealthHistoryStore,
    HistoryRepository,
    InMemoryHistoryRepository,
    JsonFileHistoryRepository,
)

# Log triage
from .classifier import LogCategory, classify, count_by_category, filter_entries

# Maintenance
from .captcha import CaptchaChallenge
from .maintenance import (
    MaintenanceOperationsController,
    Operation,
    OperationState,
    OperationStatus,
)

from .session import ConsoleSession
from .timers import AsyncioScheduler, ManualScheduler, Scheduler, TimerHandle

__all__ = [
    "ConsoleConfig",
    "DeviceClient",
    "ConsoleError",
    "DeviceRequestError",
    "DeviceTransportError",
    "InputValidationError",
    "HealthHistoryStore",
    "HistoryRepository",
    "InMemoryHistoryRepository",
    "JsonFileHistoryRepository",
    "LogCategory",
    "classify",
    "count_by_category",
    "filter_entries",
    "CaptchaChallenge",
    "MaintenanceOperationsController",
    "Operation",
    "OperationState",
    "OperationStatus",
    "ConsoleSession",
    "AsyncioScheduler",
    "ManualScheduler",
    "Scheduler",
    "TimerHandle",
]
