"""Device maintenance operations: backup, restore, reboot, updates, factory reset.

Each operation runs to a terminal state (completed or failed) and always
leaves its control re-enabled, except while a reload it scheduled is still
pending. Several operations restart the device's own server process, so
success is followed by a delayed session reload instead of a confirmation
from the device.

The apply-update path polls the device for progress. A poll that the device
answers with phase ``error`` is a real failure and is shown to the user. A
poll that cannot reach the device is the expected sign that the update is
restarting the server: polling stops and a reload is scheduled after a
longer delay, without an error.
"""

import inspect
import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import structlog

from .captcha import CaptchaChallenge
from .client import DeviceClient
from .config import ConsoleConfig
from .errors import ConsoleError, DeviceRequestError, DeviceTransportError, InputValidationError
from .models import FactoryResetResult, UpdateAvailability, UpdatePhase, UpdateProgress
from .timers import Scheduler, TimerHandle

logger = structlog.get_logger(__name__)

ConfirmCallback = Callable[[str], bool]
NotifyCallback = Callable[[str, str], None]
ReloadCallback = Callable[[str], Union[None, Awaitable[None]]]


class Operation(str, Enum):
    """Maintenance operations offered by the console."""
    BACKUP = "backup"
    RESTORE = "restore"
    REBOOT = "reboot"
    UPDATE_CHECK = "update_check"
    UPDATE_APPLY = "update_apply"
    FACTORY_RESET = "factory_reset"


class OperationState(str, Enum):
    """State of a maintenance operation."""
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    UPLOADING = "uploading"
    REQUESTED = "requested"
    ACKNOWLEDGED = "acknowledged"
    CHECKING = "checking"
    AVAILABLE = "available"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def in_flight(self) -> bool:
        return self in (
            OperationState.IN_PROGRESS,
            OperationState.UPLOADING,
            OperationState.REQUESTED,
            OperationState.CHECKING,
        )


@dataclass
class OperationStatus:
    """Last known state of one operation."""
    state: OperationState = OperationState.IDLE
    error: Optional[str] = None
    result: Any = None
    updated_at: Optional[datetime] = None


def _log_notification(level: str, message: str) -> None:
    logger.info("Operator notification", level=level, message=message)


def _deny(message: str) -> bool:
    logger.warning("Confirmation required but no confirmation handler is set", prompt=message)
    return False


class MaintenanceOperationsController:
    """Runs maintenance operations against the device."""

    def __init__(
        self,
        client: DeviceClient,
        scheduler: Scheduler,
        config: Optional[ConsoleConfig] = None,
        reload_callback: Optional[ReloadCallback] = None,
        confirm: Optional[ConfirmCallback] = None,
        notify: Optional[NotifyCallback] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the controller.

        Args:
            client: Device API client
            scheduler: Source of timers for polling and delayed reloads
            config: Console configuration (intervals, delays, restore suffix)
            reload_callback: Called with a reason when a scheduled reload fires
            confirm: Asks the operator a yes/no question; defaults to "no"
            notify: Shows ``(level, message)`` to the operator
            rng: Random source for captcha challenges
        """
        self.client = client
        self.scheduler = scheduler
        self.config = config or ConsoleConfig()
        self.reload_callback = reload_callback
        self.confirm = confirm or _deny
        self.notify = notify or _log_notification
        self._rng = rng

        self.statuses: Dict[Operation, OperationStatus] = {op: OperationStatus() for op in Operation}
        self.update_availability: Optional[UpdateAvailability] = None
        self.update_progress: Optional[UpdateProgress] = None
        self.captcha: Optional[CaptchaChallenge] = None
        self.factory_reset_dialog_open = False

        self._update_poll: Optional[TimerHandle] = None
        self._update_finished = False
        self._update_seen_running = False

        self._pending_reload: Optional[TimerHandle] = None
        self._reload_operation: Optional[Operation] = None
        self.reload_reason: Optional[str] = None

    # --- State helpers ---

    def status(self, operation: Operation) -> OperationStatus:
        return self.statuses[operation]

    def is_busy(self, operation: Operation) -> bool:
        """Whether the control for ``operation`` must be disabled."""
        if self.statuses[operation].state.in_flight:
            return True
        if operation == Operation.UPDATE_APPLY and self.update_polling:
            return True
        return self.reload_pending and self._reload_operation == operation

    @property
    def update_polling(self) -> bool:
        return self._update_poll is not None and self._update_poll.active

    @property
    def reload_pending(self) -> bool:
        return self._pending_reload is not None and self._pending_reload.active

    def _set(self, operation: Operation, state: OperationState, error: Optional[str] = None, result: Any = None) -> None:
        self.statuses[operation] = OperationStatus(
            state=state,
            error=error,
            result=result,
            updated_at=self.scheduler.now(),
        )
        logger.info("Operation state changed", operation=operation.value, state=state.value, error=error)

    def _fail(self, operation: Operation, label: str, error: Exception) -> None:
        message = str(error)
        self._set(operation, OperationState.FAILED, error=message)
        logger.error(label, operation=operation.value, error=message, error_type=type(error).__name__)
        self.notify("error", f"{label}: {message}")

    # --- Reload scheduling ---

    def _schedule_reload(self, operation: Operation, delay: float, reason: str) -> bool:
        if self.reload_pending:
            logger.debug("Reload already scheduled", reason=reason, pending=self.reload_reason)
            return False
        self.reload_reason = reason
        self._reload_operation = operation
        self._pending_reload = self.scheduler.call_later(
            delay, lambda: self._run_reload(reason), name=f"reload:{reason}"
        )
        logger.info("Reload scheduled", reason=reason, delay=delay)
        return True

    async def _run_reload(self, reason: str) -> None:
        logger.info("Reloading console session", reason=reason)
        self._rearm_after_reload()
        if self.reload_callback is None:
            return
        result = self.reload_callback(reason)
        if inspect.isawaitable(result):
            await result

    def _rearm_after_reload(self) -> None:
        for operation, status in list(self.statuses.items()):
            if status.state.in_flight or (operation == Operation.UPDATE_APPLY and self.update_polling):
                continue
            self.statuses[operation] = OperationStatus()
        if not self.update_polling:
            self.update_progress = None
        # Versions may have changed; the next check repopulates this
        self.update_availability = None
        self._reload_operation = None

    # --- Backup & restore ---

    async def backup(self, destination: Optional[Path] = None) -> Optional[Path]:
        """Create a backup on the device and download it."""
        if self.is_busy(Operation.BACKUP):
            return None
        self._set(Operation.BACKUP, OperationState.IN_PROGRESS)
        try:
            result = await self.client.create_backup()
            target = await self.client.download_backup(
                result.backup_name, destination or self.config.resolved_backup_dir()
            )
        except (ConsoleError, OSError) as e:
            self._fail(Operation.BACKUP, "Backup failed", e)
            return None

        self._set(Operation.BACKUP, OperationState.COMPLETED, result=target)
        self.notify("success", f"Backup created: {result.backup_name}")
        return target

    def validate_restore_file(self, path: Union[str, Path]) -> Path:
        """Reject files that cannot be a database backup before uploading."""
        path = Path(path)
        suffix = self.config.restore_suffix
        if not path.name.endswith(suffix):
            raise InputValidationError(f"Invalid backup file '{path.name}': expected a {suffix} file")
        if not path.is_file():
            raise InputValidationError(f"Backup file not found: {path}")
        return path

    async def restore(self, path: Union[str, Path]) -> bool:
        """Upload a backup; the device restarts, so a reload follows."""
        if self.is_busy(Operation.RESTORE):
            return False
        try:
            backup_file = self.validate_restore_file(path)
        except InputValidationError as e:
            logger.warning("Restore rejected", error=str(e))
            self.notify("error", str(e))
            return False

        if not self.confirm(
            f"Restore the device database from {backup_file.name}? The current database will be overwritten."
        ):
            logger.info("Restore cancelled by operator", backup=backup_file.name)
            return False

        self._set(Operation.RESTORE, OperationState.UPLOADING)
        try:
            await self.client.restore_backup(backup_file)
        except (ConsoleError, OSError) as e:
            self._fail(Operation.RESTORE, "Restore failed", e)
            return False

        self._set(Operation.RESTORE, OperationState.COMPLETED, result=backup_file)
        self.notify("success", "Backup restored. Reconnecting once the device service is back...")
        self._schedule_reload(Operation.RESTORE, self.config.restore_reload_delay, "restore")
        return True

    # --- Reboot ---

    async def reboot(self) -> bool:
        """Reboot the device after explicit confirmation."""
        if self.is_busy(Operation.REBOOT):
            return False
        if not self.confirm("Reboot the device now?"):
            logger.info("Reboot cancelled by operator")
            return False

        self._set(Operation.REBOOT, OperationState.REQUESTED)
        try:
            await self.client.reboot()
        except ConsoleError as e:
            self._fail(Operation.REBOOT, "Reboot failed", e)
            return False

        self._set(Operation.REBOOT, OperationState.ACKNOWLEDGED)
        self.notify("success", "Reboot initiated. Reconnecting shortly...")
        self._schedule_reload(Operation.REBOOT, self.config.reboot_reload_delay, "reboot")
        return True

    # --- Updates ---

    async def check_for_updates(self) -> Optional[UpdateAvailability]:
        """Ask the device whether an update is available.

        Always terminates. On failure the previous availability is kept and
        the error is only logged.
        """
        status = self.statuses[Operation.UPDATE_CHECK]
        if status.state.in_flight:
            return self.update_availability
        self._set(Operation.UPDATE_CHECK, OperationState.CHECKING)
        try:
            availability = await self.client.check_for_updates()
        except ConsoleError as e:
            logger.error("Update check failed", error=str(e))
            self._set(Operation.UPDATE_CHECK, status.state, error=str(e), result=status.result)
            return self.update_availability

        self.update_availability = availability
        self._set(Operation.UPDATE_CHECK, OperationState.AVAILABLE, result=availability)
        return availability

    async def apply_update(self) -> bool:
        """Start applying the available update and begin polling its progress."""
        if self.is_busy(Operation.UPDATE_APPLY):
            return False
        availability = self.update_availability
        if availability is None or not availability.updates_available:
            self.notify("info", "No updates available. Check for updates first.")
            return False
        prompt = (
            f"Apply update {availability.current_version_id[:7] or '?'} -> "
            f"{availability.remote_version_id[:7] or '?'}? The device service will restart."
        )
        if not self.confirm(prompt):
            logger.info("Update cancelled by operator")
            return False

        self._update_finished = False
        self._update_seen_running = False
        self.update_progress = UpdateProgress(phase=UpdatePhase.STARTING, percent=0, message="Starting update")
        self._set(Operation.UPDATE_APPLY, OperationState.IN_PROGRESS)

        try:
            await self.client.apply_update()
        except ConsoleError as e:
            self._update_finished = True
            self.update_progress = UpdateProgress(
                phase=UpdatePhase.ERROR, percent=0, message="Update was rejected", error=str(e)
            )
            self._fail(Operation.UPDATE_APPLY, "Update failed", e)
            return False

        self._update_poll = self.scheduler.call_every(
            self.config.update_poll_interval, self._poll_update_status, name="update-status"
        )
        logger.info("Update accepted, polling status", interval=self.config.update_poll_interval)
        return True

    async def _poll_update_status(self) -> None:
        if self._update_finished:
            self._stop_update_poll()
            return
        try:
            progress = await self.client.get_update_status()
        except DeviceTransportError as e:
            self._update_connection_lost(str(e))
            return
        except DeviceRequestError as e:
            # Gateways answer a bare 5xx while the device service is down;
            # a 5xx with an error body is a failure the device reported
            if e.is_server_error and not e.structured:
                self._update_connection_lost(str(e))
            else:
                self._update_failed(e.message)
            return

        if self._update_finished:
            # A poll that was already in flight when the update finished
            return
        self._apply_update_progress(progress)

    def _apply_update_progress(self, progress: UpdateProgress) -> None:
        phase = progress.phase
        if phase == UpdatePhase.ERROR:
            self._update_failed(progress.error or progress.message or "Update failed")
            return
        if phase == UpdatePhase.DONE:
            self._update_done(progress.message or "Update installed")
            return
        if phase == UpdatePhase.IDLE:
            if self._update_seen_running:
                # The restarted service no longer knows about the update
                self._update_done("Update installed")
            return

        if phase == UpdatePhase.RUNNING:
            self._update_seen_running = True
        shown = self.update_progress.percent if self.update_progress else 0.0
        self.update_progress = UpdateProgress(
            phase=phase,
            percent=max(shown, progress.percent),
            message=progress.message,
        )
        logger.debug("Update progress", phase=phase.value, percent=progress.percent, message=progress.message)

    def _update_failed(self, message: str) -> None:
        self._update_finished = True
        self._stop_update_poll()
        shown = self.update_progress.percent if self.update_progress else 0.0
        self.update_progress = UpdateProgress(
            phase=UpdatePhase.ERROR, percent=shown, message="Update failed", error=message
        )
        self._set(Operation.UPDATE_APPLY, OperationState.FAILED, error=message)
        logger.error("Update failed on device", error=message)
        self.notify("error", f"Update failed: {message}")

    def _update_done(self, message: str) -> None:
        self._update_finished = True
        self._stop_update_poll()
        self.update_progress = UpdateProgress(phase=UpdatePhase.DONE, percent=100, message=message)
        self._set(Operation.UPDATE_APPLY, OperationState.COMPLETED)
        self.notify("success", "Update installed. Reconnecting once the device is back...")
        self._schedule_reload(Operation.UPDATE_APPLY, self.config.update_done_reload_delay, "update")

    def _update_connection_lost(self, reason: str) -> None:
        self._update_finished = True
        self._stop_update_poll()
        if self.update_progress is not None:
            self.update_progress = self.update_progress.model_copy(
                update={"message": "Device is restarting, reconnecting..."}
            )
        self._set(Operation.UPDATE_APPLY, OperationState.ACKNOWLEDGED)
        logger.info("Device unreachable during update, assuming restart", reason=reason)
        self._schedule_reload(
            Operation.UPDATE_APPLY, self.config.update_reconnect_reload_delay, "update-reconnect"
        )

    def _stop_update_poll(self) -> None:
        if self._update_poll is not None:
            self._update_poll.cancel()
            self._update_poll = None

    # --- Factory reset ---

    def open_factory_reset(self) -> CaptchaChallenge:
        """Open the confirmation dialog with a fresh challenge."""
        self.captcha = CaptchaChallenge.generate(self._rng)
        self.factory_reset_dialog_open = True
        return self.captcha

    def answer_captcha(self, text: str) -> bool:
        if self.captcha is None:
            return False
        return self.captcha.answer(text)

    @property
    def can_confirm_factory_reset(self) -> bool:
        return (
            self.factory_reset_dialog_open
            and self.captcha is not None
            and self.captcha.is_valid
            and not self.is_busy(Operation.FACTORY_RESET)
        )

    def require_solved_captcha(self) -> CaptchaChallenge:
        if not self.factory_reset_dialog_open or self.captcha is None:
            raise InputValidationError("Open the factory reset dialog first")
        if not self.captcha.is_valid:
            raise InputValidationError("Solve the verification challenge before resetting")
        return self.captcha

    def close_factory_reset(self) -> None:
        self.factory_reset_dialog_open = False
        self.captcha = None

    async def confirm_factory_reset(self) -> Optional[FactoryResetResult]:
        """Wipe the device. Requires a solved challenge."""
        if self.is_busy(Operation.FACTORY_RESET):
            return None
        try:
            self.require_solved_captcha()
        except InputValidationError as e:
            logger.warning("Factory reset refused", error=str(e))
            self.notify("error", str(e))
            return None

        self._set(Operation.FACTORY_RESET, OperationState.IN_PROGRESS)
        try:
            result = await self.client.factory_reset()
        except ConsoleError as e:
            # Dialog and challenge stay as they are for another attempt
            self._fail(Operation.FACTORY_RESET, "Factory reset failed", e)
            return None

        self._set(Operation.FACTORY_RESET, OperationState.COMPLETED, result=result)
        self.notify("success", f"Factory reset complete. Backup saved as {result.backup_name}")
        self.close_factory_reset()
        self._schedule_reload(Operation.FACTORY_RESET, self.config.factory_reset_reload_delay, "factory-reset")
        return result

    # --- Lifecycle ---

    def shutdown(self) -> None:
        """Cancel the update poll and any pending reload."""
        self._stop_update_poll()
        if self._pending_reload is not None:
            self._pending_reload.cancel()
            self._pending_reload = None
        self._reload_operation = None
