"""Tests for the bounded health history."""

import json
from datetime import datetime, timedelta, timezone

from zevops.history import (
    HealthHistoryStore,
    InMemoryHistoryRepository,
    JsonFileHistoryRepository,
    merge_many,
    merge_sample,
    time_bucket,
    trim_history,
)
from zevops.models import HealthPoint, HealthSample

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _point(at, cpu=10.0):
    return HealthPoint(timestamp=at, cpu_percent=cpu, memory_percent=20.0, disk_percent=30.0)


def test_time_bucket():
    """Test that timestamps are quantized to 10 second buckets."""
    assert time_bucket(NOW + timedelta(seconds=1)) == time_bucket(NOW + timedelta(seconds=4))
    assert time_bucket(NOW + timedelta(seconds=1)) != time_bucket(NOW + timedelta(seconds=11))


def test_merge_first_writer_wins():
    """Test that a second point in the same bucket is dropped."""
    history = merge_sample((), _point(NOW, cpu=10.0))
    history = merge_sample(history, _point(NOW + timedelta(seconds=2), cpu=99.0))

    assert len(history) == 1
    assert history[0].cpu_percent == 10.0


def test_merge_keeps_order():
    """Test that an older point is inserted at its position."""
    history = merge_many((), [_point(NOW), _point(NOW + timedelta(minutes=2))])
    history = merge_sample(history, _point(NOW + timedelta(minutes=1)))

    assert [p.timestamp for p in history] == sorted(p.timestamp for p in history)
    assert len(history) == 3


def test_merge_is_idempotent():
    """Test that merging a history into itself changes nothing."""
    history = merge_many((), [_point(NOW + timedelta(seconds=30 * i)) for i in range(10)])

    assert merge_many(history, history) == history


def test_trim_drops_points_outside_window():
    """Test the 24h retention window."""
    history = (
        _point(NOW - timedelta(hours=25)),
        _point(NOW - timedelta(hours=23, minutes=59)),
        _point(NOW),
    )

    trimmed = trim_history(history, NOW)

    assert [p.timestamp for p in trimmed] == [history[1].timestamp, history[2].timestamp]


def test_trim_caps_point_count():
    """Test that only the newest 500 points are kept."""
    history = tuple(_point(NOW - timedelta(seconds=10 * (599 - i))) for i in range(600))

    trimmed = trim_history(history, NOW)

    assert len(trimmed) == 500
    assert trimmed[0] == history[100]
    assert trimmed[-1] == history[-1]


def test_seed_prefers_server_points():
    """Test that server points win bucket collisions with cached points."""
    cached = [
        _point(NOW - timedelta(minutes=10), cpu=77.0),
        _point(NOW - timedelta(minutes=5, seconds=2), cpu=55.0),
    ]
    repository = InMemoryHistoryRepository(cached)
    store = HealthHistoryStore(repository=repository, clock=lambda: NOW)

    server = [HealthSample(timestamp=NOW - timedelta(minutes=5), cpu_percent=11.0)]
    history = store.seed(server)

    assert len(history) == 2
    assert history[0].cpu_percent == 77.0
    assert history[1].cpu_percent == 11.0
    assert repository.points == list(history)


def test_seed_drops_expired_points():
    """Test that a point just inside the window expires as time passes."""
    now = NOW
    store = HealthHistoryStore(clock=lambda: now)
    store.seed([
        HealthSample(timestamp=NOW - timedelta(hours=23, minutes=59), cpu_percent=5.0),
        HealthSample(timestamp=NOW - timedelta(minutes=1), cpu_percent=6.0),
    ])
    assert len(store) == 2

    now = NOW + timedelta(minutes=2)
    store.merge_live(HealthSample(timestamp=now, cpu_percent=7.0))

    assert [p.cpu_percent for p in store.history] == [6.0, 7.0]


def test_merge_live_drops_duplicates():
    """Test that a repeated sample does not grow the history."""
    store = HealthHistoryStore(clock=lambda: NOW)
    sample = HealthSample(timestamp=NOW, cpu_percent=42.0)

    store.merge_live(sample)
    store.merge_live(sample)
    store.merge_live(HealthSample(timestamp=NOW + timedelta(seconds=3), cpu_percent=1.0))

    assert len(store) == 1
    assert store.latest().cpu_percent == 42.0


def test_merge_live_with_explicit_previous():
    """Test merging onto a caller-supplied history."""
    store = HealthHistoryStore(clock=lambda: NOW)
    previous = (_point(NOW - timedelta(minutes=1)),)

    history = store.merge_live(HealthSample(timestamp=NOW), previous=previous)

    assert len(history) == 2
    assert store.history == history


def test_history_stays_bounded():
    """Test window and cap under a long stream of live samples."""
    clock = {"now": NOW}
    store = HealthHistoryStore(clock=lambda: clock["now"])

    for i in range(2000):
        clock["now"] = NOW + timedelta(seconds=10 * i)
        store.merge_live(HealthSample(timestamp=clock["now"], cpu_percent=float(i % 100)))
        assert len(store) <= 500

    history = store.history
    assert all(history[i].timestamp < history[i + 1].timestamp for i in range(len(history) - 1))
    assert history[0].timestamp >= clock["now"] - timedelta(hours=24)
    assert len({time_bucket(p.timestamp) for p in history}) == len(history)


def test_clear():
    """Test that clearing also empties the repository."""
    repository = InMemoryHistoryRepository([_point(NOW)])
    store = HealthHistoryStore(repository=repository, clock=lambda: NOW)
    store.seed([])
    assert len(store) == 1

    store.clear()

    assert len(store) == 0
    assert repository.points == []


def test_json_repository_persists_points(tmp_path):
    """Test that the file cache survives a new repository instance."""
    path = tmp_path / "cache" / "history.json"
    points = [_point(NOW - timedelta(minutes=1)), _point(NOW, cpu=66.6)]

    JsonFileHistoryRepository(path).save(points)
    loaded = JsonFileHistoryRepository(path).load()

    assert loaded == points
    assert json.loads(path.read_text())["points"][1]["cpu_percent"] == 66.6


def test_json_repository_tolerates_bad_data(tmp_path):
    """Test that missing or corrupt caches load as empty."""
    path = tmp_path / "history.json"
    repository = JsonFileHistoryRepository(path)
    assert repository.load() == []

    path.write_text("{not json")
    assert repository.load() == []

    path.write_text(json.dumps({"points": [{"cpu_percent": "lots"}]}))
    assert repository.load() == []

    path.write_text(json.dumps({"points": "nonsense"}))
    assert repository.load() == []


def test_seed_survives_corrupt_cache(tmp_path):
    """Test that a corrupt cache does not prevent seeding."""
    path = tmp_path / "history.json"
    path.write_text("garbage")
    store = HealthHistoryStore(repository=JsonFileHistoryRepository(path), clock=lambda: NOW)

    store.seed([HealthSample(timestamp=NOW, cpu_percent=3.0)])

    assert len(store) == 1
    assert len(JsonFileHistoryRepository(path).load()) == 1
