"""Async REST client for the ZEV device API."""

import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx
import structlog
from pydantic import TypeAdapter, ValidationError

from .config import ConsoleConfig, load_token
from .errors import DeviceRequestError, DeviceTransportError
from .models import (
    BackupResult,
    DeviceStatus,
    FactoryResetResult,
    HealthSample,
    LogEntry,
    Statistics,
    UpdateAvailability,
    UpdateProgress,
)

logger = structlog.get_logger(__name__)

_samples_adapter = TypeAdapter(List[HealthSample])
_logs_adapter = TypeAdapter(List[LogEntry])


class DeviceClient:
    """Client for the device's REST API.

    Every request carries the bearer credential. Failures are raised as
    ``DeviceTransportError`` when the request could not complete and as
    ``DeviceRequestError`` when the device answered with an error status.
    """

    def __init__(
        self,
        config: Optional[ConsoleConfig] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the device client.

        Args:
            config: Console configuration (URL, paths, timeout)
            token: Bearer credential; resolved from config/token file if omitted
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.config = config or ConsoleConfig()
        self.token = token if token is not None else load_token(self.config)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._client is not None:
            return
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._client = httpx.AsyncClient(
            base_url=self.config.api_base,
            headers=headers,
            timeout=self.config.request_timeout,
            transport=self._transport,
            follow_redirects=True,
        )
        logger.debug("Device client opened", base_url=self.config.api_base)

    async def disconnect(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Device client closed")

    async def __aenter__(self) -> "DeviceClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if self._client is None:
            await self.connect()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.warning("Device unreachable", method=method, path=path, error=str(e) or type(e).__name__)
            raise DeviceTransportError(str(e) or type(e).__name__, path=path) from e

        if response.is_error:
            error = _request_error(response, path)
            logger.warning(
                "Device returned error",
                method=method,
                path=path,
                status=response.status_code,
                error=error.message,
                structured=error.structured,
            )
            raise error
        return response

    async def _json(self, method: str, path: str, **kwargs) -> Any:
        response = await self._request(method, path, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise DeviceRequestError(response.status_code, "Malformed JSON response", path=path) from e

    def _parse(self, model, data: Any, path: str):
        try:
            if isinstance(model, TypeAdapter):
                return model.validate_python(data)
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning("Unexpected response shape", path=path, error=str(e))
            raise DeviceRequestError(200, f"Unexpected response from {path}", path=path) from e

    # --- Health ---

    async def get_status(self) -> DeviceStatus:
        """Current system health plus collector status."""
        path = self.config.status_path
        return self._parse(DeviceStatus, await self._json("GET", path), path)

    async def get_health_history(self) -> List[HealthSample]:
        """Server-side health backfill used to seed the console history."""
        path = self.config.health_history_path
        data = await self._json("GET", path)
        if isinstance(data, dict):
            data = data.get("history") or data.get("points") or []
        return self._parse(_samples_adapter, data or [], path)

    # --- Logs & statistics ---

    async def get_logs(self, limit: int = 100, since: Optional[datetime] = None) -> List[LogEntry]:
        """Audit log entries, newest first."""
        path = self.config.logs_path
        params: Dict[str, Any] = {"limit": limit}
        if since is not None:
            if since.tzinfo is None:
                since = since.astimezone()
            params["since"] = since.isoformat()
        data = await self._json("GET", path, params=params)
        return self._parse(_logs_adapter, data or [], path)

    async def get_statistics(self) -> Statistics:
        """Aggregate counters; the invoice total is counted client-side."""
        stats = await self._json("GET", self.config.stats_path)
        invoices = await self._json("GET", self.config.invoices_path)
        data = dict(stats or {})
        data["total_invoices"] = len(invoices) if isinstance(invoices, list) else 0
        return self._parse(Statistics, data, self.config.stats_path)

    # --- Backup & restore ---

    async def create_backup(self) -> BackupResult:
        path = self.config.backup_path
        return self._parse(BackupResult, await self._json("POST", path), path)

    async def download_backup(self, backup_name: str, destination: Path) -> Path:
        """Stream a backup artifact into ``destination`` (a directory or file path)."""
        target = _backup_target(destination, backup_name)
        target.parent.mkdir(parents=True, exist_ok=True)

        if self._client is None:
            await self.connect()
        path = self.config.backup_download_path
        # Streamed into a temp file beside the target; only a complete artifact gets the real name
        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=".backup-", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as f:
                async with self._client.stream("GET", path, params={"file": backup_name}) as response:
                    if response.is_error:
                        await response.aread()
                        raise _request_error(response, path)
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
            os.replace(tmp_path, target)
        except httpx.TransportError as e:
            logger.warning("Backup download interrupted", backup=backup_name, error=str(e) or type(e).__name__)
            raise DeviceTransportError(str(e) or type(e).__name__, path=path) from e
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

        logger.info("Backup downloaded", backup=backup_name, path=str(target))
        return target

    async def restore_backup(self, backup_file: Union[str, Path]) -> Dict[str, Any]:
        """Upload a database backup; the device restarts its service afterwards."""
        backup_file = Path(backup_file)
        with open(backup_file, "rb") as f:
            files = {"backup": (backup_file.name, f, "application/octet-stream")}
            return await self._json("POST", self.config.restore_path, files=files) or {}

    # --- Device control ---

    async def reboot(self) -> Dict[str, Any]:
        return await self._json("POST", self.config.reboot_path) or {}

    async def factory_reset(self) -> FactoryResetResult:
        path = self.config.factory_reset_path
        return self._parse(FactoryResetResult, await self._json("POST", path), path)

    # --- Updates ---

    async def check_for_updates(self) -> UpdateAvailability:
        path = self.config.update_check_path
        return self._parse(UpdateAvailability, await self._json("GET", path), path)

    async def apply_update(self) -> Dict[str, Any]:
        return await self._json("POST", self.config.update_apply_path) or {}

    async def get_update_status(self) -> UpdateProgress:
        path = self.config.update_status_path
        return self._parse(UpdateProgress, await self._json("GET", path), path)


def _request_error(response: httpx.Response, path: str) -> DeviceRequestError:
    """Build the error for a failed response, keeping the device's own text if it sent one."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("error", "message", "detail"):
            if data.get(key):
                return DeviceRequestError(response.status_code, str(data[key]), path=path, structured=True)
    text = response.text.strip()
    message = text or response.reason_phrase or f"HTTP {response.status_code}"
    return DeviceRequestError(response.status_code, message, path=path)


def _backup_target(destination: Union[str, Path], backup_name: str) -> Path:
    """Resolve where a downloaded backup goes.

    An existing directory, a path ending in a separator or a path without a
    suffix is treated as a directory and the device's backup name is kept.
    """
    raw = str(destination)
    destination = Path(destination)
    is_dir = (
        destination.is_dir()
        or raw.endswith(("/", os.sep))
        or (not destination.exists() and not destination.suffix)
    )
    if is_dir:
        return destination / Path(backup_name).name
    return destination
