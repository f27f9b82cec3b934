"""
Tests for the capacity registry and versioned cells.
"""

import threading
import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from evacflow.config import CapacityConfig
from evacflow.errors import StaleStateConflict, UnknownResource
from evacflow.events import EventManager, EventType
from evacflow.models.node import Destination, DestinationStatus
from evacflow.state.capacity import CapacityRegistry
from evacflow.state.versioned import VersionedMap


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def create_registry(capacity: int = 100, clock=None, events=None, **config) -> CapacityRegistry:
    registry = CapacityRegistry(CapacityConfig(**config), events, clock or FakeClock())
    registry.add_destination(Destination("shelter_a", 10.77, 106.70, capacity))
    return registry


class TestReserveRelease:

    def test_reserve_clamps_at_capacity(self):
        registry = create_registry(10)
        assert registry.reserve("shelter_a", 7) == 7
        assert registry.reserve("shelter_a", 7) == 3
        assert registry.reserve("shelter_a", 1) == 0
        assert registry.status("shelter_a").occupancy == 10
        assert registry.status("shelter_a").status == DestinationStatus.FULL

    def test_release_never_below_zero(self):
        registry = create_registry(10)
        registry.reserve("shelter_a", 3)
        assert registry.release("shelter_a", 5) == 3
        assert registry.status("shelter_a").occupancy == 0

    def test_non_positive_reserve_is_noop(self):
        registry = create_registry(10)
        assert registry.reserve("shelter_a", 0) == 0
        assert registry.reserve("shelter_a", -2) == 0
        assert registry.status("shelter_a").occupancy == 0

    def test_unknown_destination(self):
        registry = create_registry(10)
        with pytest.raises(UnknownResource):
            registry.reserve("nowhere", 1)

    def test_concurrent_updates_are_not_lost(self):
        registry = create_registry(100000, max_cas_retries=64)
        reserved = []
        lock = threading.Lock()

        def worker():
            count = 0
            for _ in range(200):
                count += registry.reserve("shelter_a", 1)
            with lock:
                reserved.append(count)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(reserved) == 1600
        assert registry.status("shelter_a").occupancy == 1600

    def test_concurrent_reserve_and_release_net_to_zero(self):
        registry = create_registry(100000, max_cas_retries=64)

        def worker():
            for _ in range(100):
                registry.reserve("shelter_a", 2)
                registry.release("shelter_a", 2)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert registry.status("shelter_a").occupancy == 0


class TestFillPrediction:

    def test_no_rate_no_prediction(self):
        registry = create_registry(1000)
        assert registry.predict_fill_time("shelter_a") is None

    def test_slow_fill_stays_active(self):
        clock = FakeClock(0.0)
        registry = create_registry(1000, clock=clock)
        registry.reserve("shelter_a", 100)
        # 100 people / 300 s leaves 900 places for 2700 s
        assert registry.predict_fill_time("shelter_a") == pytest.approx(2700.0)
        assert registry.status("shelter_a").status == DestinationStatus.ACTIVE
        assert not registry.is_excluded("shelter_a")

    def test_imminent_fill_marks_full(self):
        clock = FakeClock(0.0)
        registry = create_registry(1000, clock=clock)
        registry.reserve("shelter_a", 100)
        clock.now = 10.0
        registry.reserve("shelter_a", 300)
        assert registry.predict_fill_time("shelter_a") == pytest.approx(450.0)
        assert registry.status("shelter_a").status == DestinationStatus.FULL
        assert registry.is_excluded("shelter_a")

    def test_window_slides_back_to_active(self):
        clock = FakeClock(0.0)
        registry = create_registry(1000, clock=clock)
        registry.reserve("shelter_a", 400)
        assert registry.status("shelter_a").status == DestinationStatus.FULL

        clock.now = 400.0
        assert registry.refresh() == ["shelter_a"]
        assert registry.status("shelter_a").status == DestinationStatus.ACTIVE
        assert registry.predict_fill_time("shelter_a") is None

    def test_releases_offset_fill_rate(self):
        registry = create_registry(1000)
        registry.reserve("shelter_a", 400)
        registry.release("shelter_a", 400)
        assert registry.predict_fill_time("shelter_a") is None


class TestStatusAndTelemetry:

    def test_sync_occupancy_reports_overflow(self):
        registry = create_registry(10)
        registry.sync_occupancy("shelter_a", 14)
        state = registry.status("shelter_a")
        assert state.occupancy == 14
        assert state.overflow == 4
        assert state.remaining == 0
        assert state.status == DestinationStatus.FULL

    def test_close_and_reopen(self):
        registry = create_registry(10)
        assert registry.close("shelter_a", reason="flooded")
        assert not registry.close("shelter_a")
        assert registry.reserve("shelter_a", 1) == 0
        assert registry.status("shelter_a").closed_reason == "flooded"

        assert registry.reopen("shelter_a")
        assert registry.status("shelter_a").status == DestinationStatus.ACTIVE
        assert registry.reserve("shelter_a", 1) == 1

    def test_set_capacity(self):
        registry = create_registry(10)
        registry.reserve("shelter_a", 10)
        registry.set_capacity("shelter_a", 5000)
        assert registry.status("shelter_a").max_capacity == 5000
        assert registry.status("shelter_a").remaining == 4990

    def test_snapshot_excludes_closed_and_full(self):
        clock = FakeClock()
        registry = CapacityRegistry(CapacityConfig(), None, clock)
        for name, capacity in [("a", 5), ("b", 1000), ("c", 1000)]:
            registry.add_destination(Destination(name, 10.77, 106.70, capacity))
        registry.reserve("a", 5)
        registry.close("c")

        snapshot = registry.snapshot()
        assert snapshot.excluded == frozenset({"a", "c"})
        assert snapshot.active_ids == ["b"]
        assert not snapshot.is_candidate("missing")

        # Later writes do not leak into an existing snapshot
        registry.reserve("b", 3)
        assert snapshot.states["b"].occupancy == 0

    def test_capacity_warning_event(self):
        events = EventManager()
        registry = create_registry(10, events=events)
        registry.reserve("shelter_a", 8)
        assert not events.get_history(EventType.CAPACITY_WARNING)
        registry.reserve("shelter_a", 1)
        warnings = events.get_history(EventType.CAPACITY_WARNING)
        assert len(warnings) == 1
        assert warnings[0].data['destination_id'] == "shelter_a"

    def test_status_change_event(self):
        events = EventManager()
        registry = create_registry(10, events=events)
        registry.close("shelter_a")
        changes = events.get_history(EventType.DESTINATION_STATUS_CHANGED)
        assert changes[-1].data['new_status'] == "closed"


class TestVersionedMap:

    def test_update_returns_result(self):
        cells = VersionedMap()
        cells.register("k", 1)
        assert cells.update("k", lambda v: (v + 1, "done")) == "done"
        assert cells.get("k") == 2
        assert cells.cell("k").version == 1

    def test_same_object_skips_write(self):
        cells = VersionedMap()
        cells.register("k", 1)
        cells.update("k", lambda v: (v, None))
        assert cells.cell("k").version == 0

    def test_register_is_idempotent(self):
        cells = VersionedMap()
        cells.register("k", 1)
        cells.register("k", 99)
        assert cells.get("k") == 1
        assert len(cells) == 1

    def test_repeated_conflicts_raise(self):
        cells = VersionedMap(max_retries=3)
        cell = cells.register("k", 0)
        retries = []

        def interfering(value):
            # Another writer wins the race every time
            _, version = cell.read()
            cell.compare_and_set(version, value + 100)
            return value + 1, None

        with pytest.raises(StaleStateConflict):
            cells.update("k", interfering, on_retry=retries.append)
        assert retries == [1, 2, 3]

    def test_unknown_key(self):
        with pytest.raises(UnknownResource):
            VersionedMap().get("missing")
