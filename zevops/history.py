"""Bounded health history merged from a server snapshot and live polling.

The device keeps its own 24h health backfill; the console seeds from it once
per session and then appends every polled sample. Both sources describe the
same timeline without coordination, so points are deduplicated on 10 second
buckets with the first writer winning.
"""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from bisect import insort
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, Union

import structlog
from pydantic import TypeAdapter, ValidationError

from .models import HealthPoint, HealthSample

logger = structlog.get_logger(__name__)

HealthHistory = Tuple[HealthPoint, ...]

DEFAULT_WINDOW = timedelta(hours=24)
DEFAULT_MAX_POINTS = 500
DEFAULT_BUCKET_SECONDS = 10

_points_adapter = TypeAdapter(List[HealthPoint])


def to_point(sample: Union[HealthSample, HealthPoint]) -> HealthPoint:
    """Reduce a sample to the fields the chart history keeps."""
    if isinstance(sample, HealthPoint):
        return sample
    return HealthPoint.from_sample(sample)


def time_bucket(timestamp: datetime, bucket_seconds: int = DEFAULT_BUCKET_SECONDS) -> int:
    """Quantize a timestamp to its bucket number."""
    return round(timestamp.timestamp() / bucket_seconds)


def merge_sample(
    history: Sequence[HealthPoint],
    point: HealthPoint,
    bucket_seconds: int = DEFAULT_BUCKET_SECONDS,
) -> HealthHistory:
    """Insert ``point`` unless its bucket is already taken.

    Returns ``history`` unchanged (as a tuple) when a point in the same bucket
    exists; the earlier writer wins.
    """
    bucket = time_bucket(point.timestamp, bucket_seconds)
    if any(time_bucket(p.timestamp, bucket_seconds) == bucket for p in history):
        return tuple(history)

    merged = list(history)
    insort(merged, point, key=lambda p: p.timestamp)
    return tuple(merged)


def merge_many(
    history: Sequence[HealthPoint],
    points: Iterable[HealthPoint],
    bucket_seconds: int = DEFAULT_BUCKET_SECONDS,
) -> HealthHistory:
    result = tuple(history)
    for point in points:
        result = merge_sample(result, point, bucket_seconds)
    return result


def trim_history(
    history: Sequence[HealthPoint],
    now: datetime,
    window: timedelta = DEFAULT_WINDOW,
    max_points: int = DEFAULT_MAX_POINTS,
) -> HealthHistory:
    """Drop points older than ``now - window``, then keep the newest ``max_points``."""
    cutoff = now - window
    kept = [p for p in history if p.timestamp >= cutoff]
    if len(kept) > max_points:
        kept = kept[-max_points:]
    return tuple(kept)


class HistoryRepository(ABC):
    """Client-side cache of the health history, for continuity across reloads."""

    @abstractmethod
    def load(self) -> List[HealthPoint]:
        """Return the stored points; corrupt or missing data yields ``[]``."""

    @abstractmethod
    def save(self, points: Sequence[HealthPoint]) -> None:
        """Replace the stored points."""


class InMemoryHistoryRepository(HistoryRepository):
    """Repository kept in process memory."""

    def __init__(self, points: Optional[Sequence[HealthPoint]] = None):
        self.points: List[HealthPoint] = list(points or [])
        self.saves = 0

    def load(self) -> List[HealthPoint]:
        return list(self.points)

    def save(self, points: Sequence[HealthPoint]) -> None:
        self.points = list(points)
        self.saves += 1


class JsonFileHistoryRepository(HistoryRepository):
    """Repository backed by a JSON file, written atomically."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> List[HealthPoint]:
        try:
            if not self.path.exists():
                return []
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if isinstance(raw, dict):
                raw = raw.get("points", [])
            return _points_adapter.validate_python(raw)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable health history cache", path=str(self.path), error=str(e))
            return []

    def save(self, points: Sequence[HealthPoint]) -> None:
        payload = {
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "points": _points_adapter.dump_python(list(points), mode="json"),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".history-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.warning("Could not persist health history", path=str(self.path), error=str(e))


class HealthHistoryStore:
    """Owns the current health history of a console session."""

    def __init__(
        self,
        repository: Optional[HistoryRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
        window: timedelta = DEFAULT_WINDOW,
        max_points: int = DEFAULT_MAX_POINTS,
        bucket_seconds: int = DEFAULT_BUCKET_SECONDS,
    ):
        self.repository = repository or InMemoryHistoryRepository()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.window = window
        self.max_points = max_points
        self.bucket_seconds = bucket_seconds
        self._history: HealthHistory = ()

    @property
    def history(self) -> HealthHistory:
        return self._history

    def __len__(self) -> int:
        return len(self._history)

    def latest(self) -> Optional[HealthPoint]:
        return self._history[-1] if self._history else None

    def seed(self, server_history: Iterable[Union[HealthSample, HealthPoint]]) -> HealthHistory:
        """Build the session history from the device backfill and the local cache.

        Server points are merged first, so they win bucket collisions against
        cached points.
        """
        server_points = sorted((to_point(s) for s in server_history), key=lambda p: p.timestamp)
        cached = self.repository.load()

        history = merge_many((), server_points, self.bucket_seconds)
        history = merge_many(history, cached, self.bucket_seconds)
        self._replace(self.trim(history))

        logger.info(
            "Health history seeded",
            server_points=len(server_points),
            cached_points=len(cached),
            points=len(self._history),
        )
        return self._history

    def merge_live(
        self,
        sample: Union[HealthSample, HealthPoint],
        previous: Optional[Sequence[HealthPoint]] = None,
    ) -> HealthHistory:
        """Append a polled sample, dropping it if its bucket is already taken."""
        base = self._history if previous is None else tuple(previous)
        merged = merge_sample(base, to_point(sample), self.bucket_seconds)
        if len(merged) == len(base):
            logger.debug("Duplicate health sample dropped", timestamp=str(to_point(sample).timestamp))
        self._replace(self.trim(merged))
        return self._history

    def trim(self, history: Optional[Sequence[HealthPoint]] = None) -> HealthHistory:
        """Apply the retention window and size cap."""
        base = self._history if history is None else history
        return trim_history(base, self.clock(), self.window, self.max_points)

    def clear(self) -> None:
        self._replace(())

    def _replace(self, history: HealthHistory) -> None:
        self._history = history
        self.repository.save(history)
